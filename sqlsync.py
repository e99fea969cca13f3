#!/usr/bin/env python3
"""Keep a tree of SQL Server object scripts in sync with the database.

Usage:
    python sqlsync.py pull [name]
    python sqlsync.py pull-single [name] --objname usp_GetUser --type P
    python sqlsync.py start
    python sqlsync.py bump --conn dev --newversion 1.2.0
    python sqlsync.py list
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from merge_bundle import merge_version_bundle
from mssql_catalog import ObjectNotFoundError, RemoteQueryError
from pull_objects import pull, pull_single
from render_ddl import OBJECT_TYPES
from sync_settings import DEFAULT_CONFIG_FILE, Settings, SettingsError, bump_version, get_setting, load_settings
from watch_triggers import run_watch, staging_dir

PLACEHOLDER = "n/a"


def cmd_pull(args: argparse.Namespace) -> int:
    sett = get_setting(load_settings(args.config), args.name)
    print(f"Pulling from {sett.connection.server} ...", flush=True)
    print(asyncio.run(pull(sett)))
    print(f"Generated {merge_version_bundle(sett)}")
    return 0


def cmd_pull_single(args: argparse.Namespace) -> int:
    sett = get_setting(load_settings(args.config), args.name)
    print(f"Pulling {args.objname} from {sett.connection.server} ...", flush=True)
    print(asyncio.run(pull_single(sett, args.type, args.objname)))
    print(f"Generated {merge_version_bundle(sett)}")
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    for sett in settings:
        directory = staging_dir(sett)
        if directory is not None:
            print(f"Listening to directory {directory}", flush=True)
    try:
        asyncio.run(run_watch(settings))
    except KeyboardInterrupt:
        print("Stopped watching.")
    return 0


def cmd_bump(args: argparse.Namespace) -> int:
    path = bump_version(args.config, args.conn, args.newversion)
    print(f"Set {args.conn} to version {args.newversion} in {path}")
    return 0


def format_settings_table(settings: list[Settings]) -> str:
    head = ["Name", "Server", "Port", "Database", "User", "Version"]
    rows = [head]
    for sett in settings:
        conn = sett.connection
        rows.append(
            [
                sett.name or PLACEHOLDER,
                conn.server or PLACEHOLDER,
                str(conn.port) if conn.port else PLACEHOLDER,
                conn.database or PLACEHOLDER,
                conn.user or PLACEHOLDER,
                sett.current_version or PLACEHOLDER,
            ]
        )
    widths = [max(len(row[i]) for row in rows) for i in range(len(head))]
    lines = ["  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip() for row in rows]
    lines.insert(1, "  ".join("-" * w for w in widths))
    return "\n".join(lines)


def cmd_list(args: argparse.Namespace) -> int:
    print(format_settings_table(load_settings(args.config)))
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync SQL Server object scripts to disk")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_FILE, help=f"Config file (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("pull", help="Generate scripts for all procedures, views, functions, etc.")
    p.add_argument("name", nargs="?", help="Setting name (default: first setting)")
    p.set_defaults(func=cmd_pull)

    p = sub.add_parser("pull-single", help="Generate the script for one object")
    p.add_argument("name", nargs="?", help="Setting name (default: first setting)")
    p.add_argument("--objname", required=True, help="Object name, e.g. usp_GetUser")
    p.add_argument("--type", required=True, type=str.upper, choices=sorted(OBJECT_TYPES), help="Object type code")
    p.set_defaults(func=cmd_pull_single)

    p = sub.add_parser("start", help="Watch staging directories for trigger files")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("bump", aliases=["b"], help="Set the version scripts are written under")
    p.add_argument("--conn", required=True, help="Setting name to update")
    p.add_argument("--newversion", required=True, help="New version")
    p.set_defaults(func=cmd_bump)

    p = sub.add_parser("list", aliases=["ls"], help="List configured settings")
    p.set_defaults(func=cmd_list)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except SettingsError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except (RemoteQueryError, ObjectNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
