#!/usr/bin/env python3
"""Locate IDE state databases and cache directories on disk.

Probes the conventional VS Code / Cursor layouts on Windows, Linux and macOS.
A location that does not exist is simply left out of the result.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Mapping

from ide_state_scripts.common import APP_NAME, STATE_DB_NAME, file_size

LOGGER = logging.getLogger(APP_NAME)

IDE_NAMES = ("Cursor", "Code")
PROJECT_META_DIRS = (".vscode", ".cursor")

# (relative path under an IDE root, protected from light cleanup)
CACHE_SUBDIRS: tuple[tuple[str, bool], ...] = (
    ("Cache", False),
    ("Code Cache", False),
    ("GPUCache", False),
    ("logs", False),
    ("User/workspaceStorage", True),
    ("User/History", True),
)

PROJECT_LABEL = "Workspace (project) state.vscdb"
GLOBAL_LABEL = "Global state.vscdb"


@dataclass(frozen=True)
class StateDatabase:
    """One state.vscdb file; size is read from disk on every access."""

    path: str
    label: str

    @property
    def size_bytes(self) -> int:
        return file_size(self.path)

    def to_dict(self) -> dict[str, object]:
        return {"path": self.path, "label": self.label, "size_bytes": self.size_bytes}


@dataclass(frozen=True)
class CachePath:
    path: str
    protected: bool = False


class StatePathResolver:
    """Resolve candidate state databases and cache directories."""

    def __init__(
        self,
        cwd: str | Path | None = None,
        home: str | Path | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.home = Path(home) if home is not None else Path.home()
        self.env = env if env is not None else os.environ

    def app_data_bases(self) -> list[Path]:
        bases: list[Path] = []
        app_data = self.env.get("APPDATA")
        if app_data:
            bases.append(Path(app_data))
        bases.extend(
            [
                self.home / "AppData" / "Roaming",
                self.home / ".config",
                self.home / "Library" / "Application Support",
            ]
        )
        return list(dict.fromkeys(bases))

    def ide_roots(self) -> list[Path]:
        return [base / name for base in self.app_data_bases() for name in IDE_NAMES]

    def project_database(self) -> StateDatabase | None:
        for meta in PROJECT_META_DIRS:
            candidate = self.cwd / meta / STATE_DB_NAME
            if candidate.is_file():
                return StateDatabase(str(candidate), PROJECT_LABEL)
        return None

    def workspace_databases(self) -> Iterator[StateDatabase]:
        for root in self.ide_roots():
            storage = root / "User" / "workspaceStorage"
            if not storage.is_dir():
                continue
            try:
                with os.scandir(storage) as it:
                    children = sorted((e for e in it if e.is_dir()), key=lambda e: e.name)
            except OSError as exc:
                LOGGER.warning("workspace_storage_unreadable path=%s err=%s", storage, exc)
                continue
            for child in children:
                candidate = Path(child.path) / STATE_DB_NAME
                if candidate.is_file():
                    yield StateDatabase(str(candidate), f"WorkspaceStorage/{child.name} state.vscdb")

    def global_database(self) -> StateDatabase | None:
        for root in self.ide_roots():
            candidate = root / "User" / "globalStorage" / STATE_DB_NAME
            if candidate.is_file():
                return StateDatabase(str(candidate), GLOBAL_LABEL)
        return None

    def state_databases(self) -> list[StateDatabase]:
        """Project, workspace storage, then global; each resolved file once."""
        found: list[StateDatabase] = []
        seen: set[str] = set()

        def add(db: StateDatabase | None) -> None:
            if db is None:
                return
            real = os.path.realpath(db.path)
            if real in seen:
                return
            seen.add(real)
            found.append(db)

        add(self.project_database())
        for db in self.workspace_databases():
            add(db)
        add(self.global_database())
        return found

    def cache_paths(self) -> list[CachePath]:
        found: list[CachePath] = []
        seen: set[str] = set()
        for root in self.ide_roots():
            if not root.is_dir():
                continue
            for rel, protected in CACHE_SUBDIRS:
                candidate = root / rel
                real = os.path.realpath(candidate)
                if real in seen or not candidate.is_dir():
                    continue
                seen.add(real)
                found.append(CachePath(str(candidate), protected))
        return found


__all__ = [
    "CACHE_SUBDIRS",
    "CachePath",
    "GLOBAL_LABEL",
    "PROJECT_LABEL",
    "StateDatabase",
    "StatePathResolver",
]
