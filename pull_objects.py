"""Regenerate the script tree for one connection, in full or one object at a time."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Any, Callable

from mssql_catalog import ObjectNotFoundError, RemoteSession, open_session
from output_sync import OutputReconciler
from render_ddl import (
    artifact_name,
    category_for_type,
    data,
    job,
    render,
    schema,
    table,
    table_type,
    user_type,
)
from sync_settings import Connection, Settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[Connection], RemoteSession]
Rows = list[dict[str, Any]]

# Categories this tool generates; anything else under root is left alone.
PULLED_CATEGORIES = ["schemas", "tables", "types", "views", "functions", "procs", "triggers", "data", "jobs"]
OBJECT_CATEGORIES = ["views", "functions", "procs", "triggers"]


@dataclasses.dataclass
class Catalog:
    objects: Rows = dataclasses.field(default_factory=list)
    permissions: Rows = dataclasses.field(default_factory=list)
    schemas: Rows = dataclasses.field(default_factory=list)
    tables: Rows = dataclasses.field(default_factory=list)
    columns: Rows = dataclasses.field(default_factory=list)
    primary_keys: Rows = dataclasses.field(default_factory=list)
    foreign_keys: Rows = dataclasses.field(default_factory=list)
    indexes: Rows = dataclasses.field(default_factory=list)
    types: Rows = dataclasses.field(default_factory=list)
    jobs: Rows = dataclasses.field(default_factory=list)
    job_steps: Rows = dataclasses.field(default_factory=list)
    job_schedules: Rows = dataclasses.field(default_factory=list)
    # (schema, name) -> table rows, for tables matched by the data patterns.
    data: dict[tuple[str, str], Rows] = dataclasses.field(default_factory=dict)


def batch_reconciler(settings: Settings) -> OutputReconciler:
    categories = {key: settings.category(key) for key in PULLED_CATEGORIES}
    return OutputReconciler(settings.root, categories, eol=settings.eol)


def single_object_reconciler(settings: Settings) -> OutputReconciler:
    categories = {key: settings.category(key) for key in OBJECT_CATEGORIES}
    return OutputReconciler(
        settings.root,
        categories,
        eol=settings.eol,
        versions=[settings.current_version],
        prune=False,
    )


async def fetch_catalog(settings: Settings, session_factory: SessionFactory = open_session) -> Catalog:
    catalog = Catalog()
    async with session_factory(settings.connection) as session:
        (
            catalog.objects,
            catalog.permissions,
            catalog.schemas,
            catalog.tables,
            catalog.columns,
            catalog.primary_keys,
            catalog.foreign_keys,
            catalog.indexes,
            catalog.types,
        ) = await asyncio.gather(
            session.fetch_objects(),
            session.fetch_permissions(),
            session.fetch_schemas(),
            session.fetch_tables(),
            session.fetch_columns(),
            session.fetch_primary_keys(),
            session.fetch_foreign_keys(),
            session.fetch_indexes(),
            session.fetch_types(),
        )

        if settings.is_enabled("jobs"):
            catalog.jobs, catalog.job_steps, catalog.job_schedules = await asyncio.gather(
                session.fetch_jobs(),
                session.fetch_job_steps(),
                session.fetch_job_schedules(),
            )

        if settings.is_enabled("data"):
            matched = [
                (str(item["schema"]), str(item["name"]))
                for item in catalog.tables
                if settings.includes_data(str(item["schema"]), str(item["name"]))
            ]
            results = await asyncio.gather(*(session.fetch_table_data(s, n) for s, n in matched))
            catalog.data = dict(zip(matched, results))
    return catalog


async def fetch_single(
    settings: Settings,
    object_type: str,
    name: str,
    session_factory: SessionFactory = open_session,
) -> tuple[Rows, Rows]:
    async with session_factory(settings.connection) as session:
        objects, permissions = await asyncio.gather(
            session.fetch_object(object_type, name),
            session.fetch_permissions(),
        )
    return objects, permissions


def write_objects(settings: Settings, reconciler: OutputReconciler, catalog: Catalog) -> None:
    for item in catalog.objects:
        try:
            category = category_for_type(str(item["type"]))
        except ValueError:
            logger.debug("Skipping %s.%s of type %s", item.get("schema"), item.get("name"), item.get("type"))
            continue
        try:
            content = render(str(item["type"]), item, settings, catalog.permissions)
        except ValueError as exc:
            logger.warning("Skipping %s.%s: %s", item.get("schema"), item.get("name"), exc)
            continue
        reconciler.write(category, artifact_name(category, item), content)


def write_catalog(settings: Settings, reconciler: OutputReconciler, catalog: Catalog) -> None:
    for item in catalog.schemas:
        reconciler.write("schemas", artifact_name("schemas", item), schema(item))

    write_objects(settings, reconciler, catalog)

    for item in catalog.tables:
        content = table(item, catalog.columns, catalog.primary_keys, catalog.foreign_keys, catalog.indexes, settings)
        reconciler.write("tables", artifact_name("tables", item), content)

    for item in catalog.types:
        if item.get("type") == "TT":
            content = table_type(item, catalog.columns, settings)
        else:
            content = user_type(item, settings)
        reconciler.write("types", artifact_name("types", item), content)

    tables = {(str(item["schema"]), str(item["name"])): item for item in catalog.tables}
    for key, records in catalog.data.items():
        reconciler.write("data", artifact_name("data", tables[key]), data(tables[key], records, catalog.columns, settings))

    for item in catalog.jobs:
        steps = [step for step in catalog.job_steps if step["job_id"] == item["job_id"]]
        schedules = [sched for sched in catalog.job_schedules if sched["job_id"] == item["job_id"]]
        reconciler.write("jobs", artifact_name("jobs", item), job(item, steps, schedules, settings))


def write_single(
    settings: Settings,
    reconciler: OutputReconciler,
    object_type: str,
    name: str,
    objects: Rows,
    permissions: Rows,
) -> list[Path]:
    if not objects:
        raise ObjectNotFoundError(f"No object {name} of type {object_type} in {settings.connection.database}")
    if len(objects) > 1:
        logger.warning("%d objects named %s; using schema %s", len(objects), name, objects[0].get("schema"))

    item = objects[0]
    category = category_for_type(object_type)
    content = render(object_type, item, settings, permissions)
    filename = artifact_name(category, item)

    written: list[Path] = []
    for version in (settings.current_version, None):
        path = reconciler.write(category, filename, content, version=version)
        if path is not None:
            written.append(path)
    return written


async def pull(settings: Settings, session_factory: SessionFactory = open_session) -> str:
    catalog = await fetch_catalog(settings, session_factory)
    reconciler = batch_reconciler(settings)
    write_catalog(settings, reconciler, catalog)
    return reconciler.finalize()


async def pull_single(
    settings: Settings,
    object_type: str,
    name: str,
    session_factory: SessionFactory = open_session,
) -> str:
    object_type = object_type.strip().upper()
    category_for_type(object_type)
    objects, permissions = await fetch_single(settings, object_type, name, session_factory)
    reconciler = single_object_reconciler(settings)
    write_single(settings, reconciler, object_type, name, objects, permissions)
    return reconciler.finalize()
