"""Regenerate single objects when trigger files appear in a staging directory.

A trigger file is named ``{objectName}.{objectType}``, e.g. ``usp_GetUser.P``.
Only file creation counts as a trigger; edits and removals are just logged.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from merge_bundle import merge_version_bundle
from mssql_catalog import open_session
from output_sync import OutputReconciler
from pull_objects import SessionFactory, fetch_single, single_object_reconciler, write_single
from render_ddl import OBJECT_TYPES
from sync_settings import Settings

logger = logging.getLogger(__name__)


class TriggerParseError(ValueError):
    pass


@dataclasses.dataclass(frozen=True)
class TriggerEvent:
    object_name: str
    object_type: str
    path: Path


def parse_trigger_name(path: str | os.PathLike) -> TriggerEvent:
    filename = Path(path).name
    parts = filename.split(".")
    if len(parts) != 2:
        raise TriggerParseError(f"Expected '<name>.<type>', got {filename!r}")

    object_name, object_type = parts[0].strip(), parts[1].strip().upper()
    if not object_name or not object_type:
        raise TriggerParseError(f"Expected '<name>.<type>', got {filename!r}")
    if object_type not in OBJECT_TYPES:
        raise TriggerParseError(f"Unsupported object type {parts[1]!r} in {filename!r}")
    return TriggerEvent(object_name=object_name, object_type=object_type, path=Path(path))


def is_hidden(path: str | os.PathLike) -> bool:
    return Path(path).name.startswith(".")


def staging_dir(settings: Settings) -> Path | None:
    subpath = settings.subpath("temps")
    if subpath is None:
        return None
    return settings.root / subpath


def remove_trigger(path: Path) -> None:
    try:
        path.unlink()
    except OSError as exc:
        logger.warning("Could not delete trigger file %s: %s", path, exc)


class WatchTriggerPipeline:
    """Turns trigger files for one setting into regenerated scripts.

    Fetches for different events run concurrently. Writing, cache persistence
    and the bundle merge go through one lane per pipeline so the shared
    reconciler only ever sees one writer.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: SessionFactory = open_session,
        reconciler: OutputReconciler | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.reconciler = reconciler or single_object_reconciler(settings)
        self._lane = asyncio.Lock()

    async def handle_added(self, path: str | os.PathLike) -> bool:
        if is_hidden(path):
            return False
        try:
            event = parse_trigger_name(path)
        except TriggerParseError as exc:
            logger.error("Ignoring trigger file %s: %s", path, exc)
            return False

        logger.info("%s %s has been triggered", event.object_type, event.object_name)
        try:
            await self.regenerate(event)
        except Exception:
            logger.exception("Regeneration of %s.%s abandoned", event.object_name, event.object_type)
            return False
        return True

    async def regenerate(self, event: TriggerEvent) -> list[Path]:
        objects, permissions = await fetch_single(
            self.settings, event.object_type, event.object_name, self.session_factory
        )
        remove_trigger(event.path)

        async with self._lane:
            written = await asyncio.to_thread(
                write_single,
                self.settings,
                self.reconciler,
                event.object_type,
                event.object_name,
                objects,
                permissions,
            )
            summary = await asyncio.to_thread(self.reconciler.finalize)
            bundle = await asyncio.to_thread(merge_version_bundle, self.settings)

        logger.info("%s: %s Bundle: %s", event.object_name, summary, bundle)
        return written

    def handle_changed(self, path: str | os.PathLike) -> None:
        logger.debug("File %s has been changed", path)

    def handle_removed(self, path: str | os.PathLike) -> None:
        logger.debug("File %s has been removed", path)


class TriggerFileHandler(FileSystemEventHandler):
    """Hands watchdog events from the observer thread to the event loop."""

    def __init__(self, pipeline: WatchTriggerPipeline, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.pipeline = pipeline
        self.loop = loop

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        asyncio.run_coroutine_threadsafe(self.pipeline.handle_added(path), self.loop)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.pipeline.handle_changed(os.fsdecode(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.pipeline.handle_removed(os.fsdecode(event.src_path))


async def run_watch(
    settings_list: list[Settings],
    session_factory: SessionFactory = open_session,
    stop: asyncio.Event | None = None,
) -> None:
    loop = asyncio.get_running_loop()
    observer = Observer()
    watched = 0

    for settings in settings_list:
        directory = staging_dir(settings)
        if directory is None:
            logger.warning("Setting %s has no temps directory; not watching it", settings.name)
            continue
        directory.mkdir(parents=True, exist_ok=True)
        pipeline = WatchTriggerPipeline(settings, session_factory)
        observer.schedule(TriggerFileHandler(pipeline, loop), str(directory), recursive=False)
        logger.info("Watching %s for %s", directory, settings.name)
        watched += 1

    if not watched:
        logger.error("No staging directories configured; nothing to watch")
        return

    stop = stop or asyncio.Event()
    observer.start()
    try:
        await stop.wait()
    finally:
        observer.stop()
        await asyncio.to_thread(observer.join)
