"""Merge a version's procedure and function scripts into one upgrade bundle."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from output_sync import apply_line_endings
from render_ddl import render_audit_header
from sync_settings import Settings

logger = logging.getLogger(__name__)

BUNDLE_LABEL = "Object"
BUNDLE_SEPARATOR = "\n\n\n\n"
MERGED_CATEGORIES = ["procs", "functions"]
MAX_READERS = 8


def bundle_path(settings: Settings, version: str) -> Path:
    return settings.root / version / f"{settings.name} Upgrade {version} - 3 {BUNDLE_LABEL}s.sql"


def version_dirs(settings: Settings, version: str) -> list[Path]:
    dirs: list[Path] = []
    for category in MERGED_CATEGORIES:
        subpath = settings.subpath(category)
        if subpath is None:
            continue
        dirs.append(settings.root / version / subpath)
    return dirs


def list_fragments(directory: Path) -> list[Path]:
    return sorted((p for p in directory.glob("*.sql") if p.is_file()), key=lambda p: p.name)


def read_fragment(path: Path) -> str:
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def merge_version_bundle(settings: Settings, version: str | None = None) -> Path:
    version = version or settings.current_version

    fragments: list[Path] = []
    for directory in version_dirs(settings, version):
        directory.mkdir(parents=True, exist_ok=True)
        fragments.extend(list_fragments(directory))

    # map() yields in submission order, so listing order survives the pool.
    with ThreadPoolExecutor(max_workers=MAX_READERS) as pool:
        contents = list(pool.map(read_fragment, fragments))

    entries = [render_audit_header(settings.name, version, BUNDLE_LABEL)] + contents
    merged = apply_line_endings(BUNDLE_SEPARATOR.join(entries), settings.eol)

    dest = bundle_path(settings, version)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(merged.encode("utf-8"))
    logger.info("Merged %d fragments into %s", len(fragments), dest)
    return dest
