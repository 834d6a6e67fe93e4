#!/usr/bin/env python3
"""Shared constants, helpers, logging and errors for the IDE state cleaner."""

from __future__ import annotations

import datetime as dt
import enum
import logging
import os
import tempfile
from pathlib import Path

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "ide_state_cleaner"
DEFAULT_LOG_FILE = Path.home() / ".local" / "share" / APP_NAME / "actions.log"

DEFAULT_THRESHOLD_MB = 50
TOP_K = 50
MB = 1024 * 1024

STATE_DB_NAME = "state.vscdb"

CLOSE_IDE_HINT = "Make sure Cursor/VS Code is closed before running this tool."
INSTALL_SQLITE_HINT = (
    "Install SQLite: Windows choco install sqlite, macOS brew install sqlite, "
    "Linux apt-get install sqlite3"
)

CRITICAL_DELETE_PATHS = {
    "/",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/lib",
    "/lib64",
    "/proc",
    "/root",
    "/run",
    "/sbin",
    "/sys",
    "/usr",
    "/var",
}


class StateTable(str, enum.Enum):
    """Tables this tool is allowed to name in SQL text."""

    ITEM_TABLE = "ItemTable"
    CURSOR_DISK_KV = "cursorDiskKV"


ALLOWED_TABLES = tuple(t.value for t in StateTable)


# -------------------------------- Errors ------------------------------------ #


class StateCleanerError(Exception):
    """Base class for failures reported to the user."""

    hint = ""

    def __str__(self) -> str:
        base = super().__str__()
        if self.hint and self.hint not in base:
            return f"{base}\n{self.hint}"
        return base


class EngineNotFound(StateCleanerError):
    hint = INSTALL_SQLITE_HINT


class EngineExecutionFailed(StateCleanerError):
    hint = CLOSE_IDE_HINT

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class InvariantViolation(StateCleanerError):
    pass


class StateDatabaseNotFound(StateCleanerError):
    pass


class ConfigurationError(StateCleanerError):
    pass


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if val < 1024.0 or unit == "TB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def bytes_to_mb(size: int) -> float:
    return size / MB


def file_size(path: str | Path) -> int:
    return os.stat(path).st_size


def setup_logger(log_file: Path | None = None, stream: bool = False) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file or Path(os.getenv("STATE_CLEANER_LOG", "") or DEFAULT_LOG_FILE)
    try:
        ensure_parent(chosen)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "actions.log"
        ensure_parent(chosen)

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    if stream:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    return logger


__all__ = [
    "ALLOWED_TABLES",
    "APP_NAME",
    "CRITICAL_DELETE_PATHS",
    "ConfigurationError",
    "DEFAULT_LOG_FILE",
    "DEFAULT_THRESHOLD_MB",
    "EngineExecutionFailed",
    "EngineNotFound",
    "InvariantViolation",
    "MB",
    "STATE_DB_NAME",
    "StateCleanerError",
    "StateDatabaseNotFound",
    "StateTable",
    "TOP_K",
    "bytes_to_mb",
    "file_size",
    "human_bytes",
    "now_utc_iso",
    "setup_logger",
]
