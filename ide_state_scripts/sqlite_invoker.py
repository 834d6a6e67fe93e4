#!/usr/bin/env python3
"""Run one-shot SQL statements through the external ``sqlite3`` shell.

The engine path is discovered once per invoker instance. Output is returned
as raw text; callers split rows with :func:`output_lines` and :func:`split_row`,
which accept either ``|`` or tab as the column separator.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Mapping

from ide_state_scripts.common import (
    APP_NAME,
    CLOSE_IDE_HINT,
    INSTALL_SQLITE_HINT,
    ConfigurationError,
    EngineExecutionFailed,
    EngineNotFound,
)

LOGGER = logging.getLogger(APP_NAME)

ENGINE_COMMAND = "sqlite3"


def known_engine_paths(env: Mapping[str, str]) -> list[str]:
    paths = [
        r"C:\Program Files\SQLite\sqlite3.exe",
        r"C:\Program Files (x86)\SQLite\sqlite3.exe",
    ]
    local_app_data = env.get("LOCALAPPDATA")
    if local_app_data:
        paths.append(str(Path(local_app_data) / "Programs" / "sqlite3" / "sqlite3.exe"))
    paths.extend(["/usr/bin/sqlite3", "/usr/local/bin/sqlite3", "/opt/homebrew/bin/sqlite3"])
    return paths


def parse_timeout(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(
            f"STATE_CLEANER_SQLITE_TIMEOUT must be a number of seconds, got {raw!r}"
        ) from None
    if value <= 0:
        raise ConfigurationError(f"STATE_CLEANER_SQLITE_TIMEOUT must be positive, got {raw!r}")
    return value


class SqliteInvoker:
    """Locate the sqlite3 shell and run statements against a database file."""

    def __init__(
        self,
        engine_path: str | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.env = env if env is not None else os.environ
        self.configured_path = engine_path or self.env.get("STATE_CLEANER_SQLITE") or None
        if timeout is None and self.env.get("STATE_CLEANER_SQLITE_TIMEOUT"):
            timeout = parse_timeout(self.env["STATE_CLEANER_SQLITE_TIMEOUT"])
        self.timeout = timeout
        self.calls = 0
        self._engine: str | None = None

    def locate(self) -> str:
        if self._engine is not None:
            return self._engine

        if self.configured_path:
            if not Path(self.configured_path).is_file():
                raise EngineNotFound(f"Configured sqlite3 not found: {self.configured_path}")
            self._engine = self.configured_path
        else:
            found = shutil.which(ENGINE_COMMAND)
            if found is None:
                found = next((p for p in known_engine_paths(self.env) if Path(p).is_file()), None)
            if found is None:
                raise EngineNotFound(f"{ENGINE_COMMAND} command not found. {INSTALL_SQLITE_HINT}")
            self._engine = found

        LOGGER.info("sqlite_engine path=%s", self._engine)
        return self._engine

    def run(self, db_path: str | Path, sql: str) -> str:
        engine = self.locate()
        self.calls += 1
        command = [engine, "-batch", str(db_path), sql]
        try:
            cp = subprocess.run(
                command,
                text=True,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise EngineExecutionFailed(
                f"sqlite3 timed out after {exc.timeout}s on {db_path}\n{CLOSE_IDE_HINT}"
            ) from exc
        except OSError as exc:
            raise EngineExecutionFailed(f"Failed to start sqlite3: {exc}", str(exc)) from exc

        if cp.returncode != 0:
            stderr = (cp.stderr or "").strip()
            LOGGER.error("sqlite_failed db=%s rc=%s err=%s", db_path, cp.returncode, stderr)
            raise EngineExecutionFailed(
                f"sqlite3 exited with {cp.returncode}: {stderr or cp.stdout.strip()}", stderr
            )
        return cp.stdout


# ------------------------------ Text helpers -------------------------------- #


def output_lines(text: str) -> list[str]:
    return [line for line in text.strip().splitlines() if line.strip()]


def split_row(line: str, fields: int = 2) -> list[str]:
    """Split one output row from the right.

    Each cut is made at whichever of ``|`` or tab comes last, so a key that
    itself contains the other separator stays intact.
    """
    parts: list[str] = []
    rest = line
    for _ in range(fields - 1):
        cut = max(rest.rfind("|"), rest.rfind("\t"))
        if cut < 0:
            break
        parts.insert(0, rest[cut + 1 :])
        rest = rest[:cut]
    parts.insert(0, rest)
    parts += [""] * (fields - len(parts))
    return [p.strip() for p in parts]


def parse_int(text: str) -> int:
    value = text.strip()
    if not value:
        return 0
    try:
        return int(float(value))
    except ValueError as exc:
        raise EngineExecutionFailed(f"Unexpected sqlite3 output: {value!r}") from exc


def quote_literal(value: str) -> str:
    if "\x00" in value:
        raise ValueError("NUL characters are not allowed in a pattern")
    return "'" + value.replace("'", "''") + "'"


__all__ = [
    "ENGINE_COMMAND",
    "SqliteInvoker",
    "known_engine_paths",
    "output_lines",
    "parse_int",
    "parse_timeout",
    "quote_literal",
    "split_row",
]
