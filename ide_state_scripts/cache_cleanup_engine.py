#!/usr/bin/env python3
"""Measure and delete IDE cache directories.

Measurement walks each tree with ``os.scandir`` and keeps going past entries it
cannot read; those are collected in ``CacheCleaner.errors``. Deletion handles
each path on its own so one failure never stops the rest of the batch.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

from ide_state_scripts.common import APP_NAME, CRITICAL_DELETE_PATHS, human_bytes
from ide_state_scripts.state_paths import CachePath


@dataclass
class ScanError:
    """An entry skipped while measuring."""

    path: str
    error: str


@dataclass
class CacheDeleteResult:
    """Outcome of a cache deletion batch."""

    dry_run: bool
    succeeded: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    errors: dict[str, str] = field(default_factory=dict)
    freed_bytes: int = 0

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def summary(self) -> str:
        return f"{len(self.succeeded)}/{self.attempted} succeeded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "succeeded": sorted(self.succeeded),
            "failed": sorted(self.failed),
            "errors": self.errors,
            "freed_bytes": self.freed_bytes,
            "freed_human": human_bytes(self.freed_bytes),
            "summary": self.summary(),
        }


def select_protected(cache_paths: Iterable[CachePath]) -> list[CachePath]:
    return [c for c in cache_paths if c.protected]


def select_for_cleanup(cache_paths: Sequence[CachePath], light: bool) -> list[CachePath]:
    """Full cleanup takes everything; light cleanup leaves protected paths alone."""
    if not light:
        return list(cache_paths)
    return [c for c in cache_paths if not c.protected]


class CacheCleaner:
    """Best-effort size measurement and deletion of cache directories."""

    def __init__(self, logger: logging.Logger | None = None, dry_run: bool = False):
        self.logger = logger or logging.getLogger(APP_NAME)
        self.dry_run = dry_run
        self.errors: list[ScanError] = []

    def measure(self, paths: Iterable[str]) -> dict[str, int]:
        self.errors = []
        return {str(p): self._tree_size(Path(p)) for p in paths}

    def delete(self, paths: Iterable[str]) -> CacheDeleteResult:
        result = CacheDeleteResult(dry_run=self.dry_run)

        for p in paths:
            path = Path(p).expanduser()
            path_s = str(path)

            if os.path.realpath(path_s) in CRITICAL_DELETE_PATHS:
                result.failed.add(path_s)
                result.errors[path_s] = "critical_path_protection"
                self.logger.error("cache_delete_refused path=%s", path_s)
                continue

            if not path.exists() and not path.is_symlink():
                result.succeeded.add(path_s)
                continue

            size = self._tree_size(path)
            if self.dry_run:
                result.succeeded.add(path_s)
                result.freed_bytes += size
                continue

            try:
                self._delete_path(path)
            except OSError as exc:
                result.failed.add(path_s)
                result.errors[path_s] = str(exc)
                self.logger.error("cache_delete_failed path=%s err=%s", path_s, exc)
                continue

            result.succeeded.add(path_s)
            result.freed_bytes += size
            self.logger.info("cache_deleted path=%s bytes=%s", path_s, size)

        return result

    def error_dicts(self) -> list[dict[str, str]]:
        return [asdict(e) for e in self.errors]

    def _tree_size(self, root: Path) -> int:
        try:
            st = root.lstat()
        except OSError as exc:
            if root.exists() or root.is_symlink():
                self.errors.append(ScanError(path=str(root), error=str(exc)))
            return 0
        if not stat.S_ISDIR(st.st_mode):
            return int(st.st_size)

        total = 0
        stack = [root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    for entry in it:
                        try:
                            if entry.is_dir(follow_symlinks=False):
                                stack.append(Path(entry.path))
                            else:
                                total += entry.stat(follow_symlinks=False).st_size
                        except OSError as exc:
                            self.errors.append(ScanError(path=entry.path, error=str(exc)))
            except OSError as exc:
                self.errors.append(ScanError(path=str(current), error=str(exc)))
        return total

    @staticmethod
    def _delete_path(path: Path) -> None:
        if path.is_symlink() or path.is_file():
            path.unlink(missing_ok=True)
            return
        if path.is_dir():
            shutil.rmtree(path)
            return
        path.unlink(missing_ok=True)


__all__ = [
    "CacheCleaner",
    "CacheDeleteResult",
    "ScanError",
    "select_for_cleanup",
    "select_protected",
]
