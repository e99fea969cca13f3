"""Incremental output synchronization for generated SQL artifacts.

A run writes every artifact through an OutputReconciler. The reconciler compares
each write against the tree that existed when it was created (the baseline) and
against the fingerprints persisted by the previous run, then deletes whatever
was not produced again when the run is finalized.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Iterable, Mapping

from sync_settings import Category, Enabled

logger = logging.getLogger(__name__)

CACHE_FILE = ".sqlsync-cache.json"
ARTIFACT_GLOB = "**/*.sql"

UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]+')
RESERVED_FILENAMES = re.compile(r"^(con|prn|aux|nul|com\d|lpt\d)$", flags=re.I)
MAX_FILENAME_LENGTH = 100


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def apply_line_endings(text: str, policy: str) -> str:
    text = normalize_newlines(text)
    if policy == "crlf" or (policy == "auto" and os.linesep == "\r\n"):
        return text.replace("\n", "\r\n")
    return text


def normalize_content(content: str, policy: str) -> str:
    return apply_line_endings(normalize_newlines(content).strip(), policy)


def fingerprint(content: str) -> str:
    """SHA-256 of the trimmed, LF-normalized content.

    Line endings are folded before hashing so the same logical script has the
    same fingerprint whatever EOL policy it was written with.
    """
    text = normalize_newlines(content).strip()
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def sanitize_filename(name: str, replacement: str = "!") -> str:
    cleaned = UNSAFE_FILENAME_CHARS.sub(replacement, name)
    cleaned = re.sub(rf"{re.escape(replacement)}{{2,}}", replacement, cleaned)
    cleaned = cleaned.rstrip(". ")
    stem = cleaned.split(".", 1)[0]
    if not cleaned or cleaned in {".", ".."} or RESERVED_FILENAMES.match(stem):
        cleaned += replacement
    if len(cleaned) > MAX_FILENAME_LENGTH:
        base, dot, ext = cleaned.rpartition(".")
        if dot and len(ext) < 10:
            cleaned = base[: MAX_FILENAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:MAX_FILENAME_LENGTH]
    return cleaned


def cache_key(root: Path, path: Path) -> str:
    rel = os.path.relpath(path, root)
    key = rel.replace("\\", "/")
    while key.startswith("./"):
        key = key[2:]
    return key


class FingerprintCache:
    """Fingerprints of the last emitted artifacts, keyed by root-relative path."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.existing: dict[str, str] = {}
        self.files: dict[str, str] = {}

    def load(self) -> None:
        self.existing = {}
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache %s: %s", self.path, exc)
            return

        files = data.get("files") if isinstance(data, dict) else None
        if not isinstance(files, dict):
            logger.warning("Ignoring malformed cache %s", self.path)
            return
        self.existing = {
            str(key): str(value) for key, value in files.items() if isinstance(value, str)
        }

    def add(self, path: str, value: str) -> None:
        self.files[path] = value

    def __contains__(self, path: str) -> bool:
        return path in self.existing

    def did_change(self, path: str, value: str) -> bool:
        return self.existing.get(path) != value

    def write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps({"files": dict(sorted(self.files.items()))}, indent=2)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(content + "\n", encoding="utf-8")
        os.replace(tmp, self.path)


@dataclasses.dataclass
class ReconciliationStats:
    added: int = 0
    updated: int = 0
    removed: int = 0

    def summary(self) -> str:
        return (
            f"Successfully added {self.added}, updated {self.updated}, "
            f"and removed {self.removed} files."
        )


class OutputReconciler:
    """Owns one run's view of the artifact tree under ``root``.

    ``versions`` adds the version-scoped copy of every enabled category to the
    managed tree. With ``prune=False`` nothing is deleted at finalize, which is
    what single-object regeneration needs.

    The cache file is shared by every reconciler over the same root. Entries
    outside this reconciler's scope are carried through untouched, and a
    non-pruning reconciler carries every entry it did not rewrite. Each round
    (the writes up to a ``finalize``) starts from the tree and cache as they
    are on disk at its first write, so a long-lived reconciler never works from
    a stale snapshot.
    """

    def __init__(
        self,
        root: Path,
        categories: Mapping[str, Category],
        eol: str = "auto",
        versions: Iterable[str] = (),
        prune: bool = True,
    ):
        self.root = Path(root)
        self.categories = dict(categories)
        self.eol = eol
        self.versions = list(versions)
        self.prune = prune
        self.stats = ReconciliationStats()
        self.last_stats: ReconciliationStats | None = None
        self.old_cache = FingerprintCache(self.root / CACHE_FILE)
        self.new_cache = FingerprintCache(self.root / CACHE_FILE)
        self.baseline: set[str] = set()
        self.written: set[str] = set()
        self._stale = False
        self._lock = threading.Lock()
        self._load()

    def managed_dirs(self) -> list[Path]:
        dirs: list[Path] = []
        for cat in self.categories.values():
            if not isinstance(cat, Enabled):
                continue
            dirs.append(self.root / cat.subpath)
            for version in self.versions:
                dirs.append(self.root / version / cat.subpath)
        return dirs

    def in_scope(self, key: str) -> bool:
        for directory in self.managed_dirs():
            if key.startswith(cache_key(self.root, directory) + "/"):
                return True
        return False

    def _load(self) -> None:
        self.baseline = set()
        for directory in self.managed_dirs():
            if not directory.is_dir():
                continue
            for path in directory.glob(ARTIFACT_GLOB):
                if path.is_file():
                    self.baseline.add(cache_key(self.root, path))
        self.old_cache.load()
        self.new_cache.files = {}
        self._stale = False
        logger.debug("Baseline for %s: %d artifacts", self.root, len(self.baseline))

    def target_path(self, category: str, name: str, version: str | None = None) -> Path | None:
        cat = self.categories.get(category)
        if not isinstance(cat, Enabled):
            return None
        base = self.root / version if version else self.root
        return base / cat.subpath / sanitize_filename(name)

    def write(self, category: str, name: str, content: str, version: str | None = None) -> Path | None:
        target = self.target_path(category, name, version)
        if target is None:
            return None

        text = normalize_content(content, self.eol)
        key = cache_key(self.root, target)
        value = fingerprint(text)

        with self._lock:
            if self._stale:
                self._load()

            if key in self.written:
                # Already counted this round.
                outcome = "unchanged"
            elif key not in self.baseline or key not in self.old_cache:
                outcome = "added"
            elif self.old_cache.did_change(key, value):
                outcome = "updated"
            else:
                outcome = "unchanged"

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(text.encode("utf-8"))
            except OSError as exc:
                logger.error("Failed to write %s: %s", target, exc)
                self.baseline.discard(key)
                return None

            self.new_cache.add(key, value)
            if outcome == "added":
                self.stats.added += 1
            elif outcome == "updated":
                self.stats.updated += 1
            self.baseline.discard(key)
            self.written.add(key)

        logger.debug("%s %s", outcome, key)
        return target

    def carried_entries(self) -> dict[str, str]:
        """Entries of the on-disk cache this round leaves as they are."""
        current = FingerprintCache(self.new_cache.path)
        current.load()
        if not self.prune:
            return current.existing
        return {key: value for key, value in current.existing.items() if not self.in_scope(key)}

    def finalize(self) -> str:
        with self._lock:
            if self._stale:
                self._load()

            if self.prune:
                for key in sorted(self.baseline):
                    path = self.root / key
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        logger.debug("Already gone: %s", key)
                        continue
                    except OSError as exc:
                        logger.error("Failed to remove %s: %s", path, exc)
                        continue
                    self.stats.removed += 1
                    logger.debug("removed %s", key)

            self.new_cache.files = {**self.carried_entries(), **self.new_cache.files}
            try:
                self.new_cache.write()
            except OSError as exc:
                logger.error("Failed to write cache %s: %s", self.new_cache.path, exc)

            self.written = set()
            self._stale = True
            self.last_stats, self.stats = self.stats, ReconciliationStats()
            return self.last_stats.summary()
