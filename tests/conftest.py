import hashlib
import os
import sqlite3
import tempfile
from pathlib import Path

import pytest

os.environ.setdefault(
    "STATE_CLEANER_LOG", str(Path(tempfile.gettempdir()) / "ide_state_cleaner_tests" / "actions.log")
)

from ide_state_scripts.common import EngineExecutionFailed  # noqa: E402
from ide_state_scripts.state_db_engine import MaintenanceSession  # noqa: E402
from ide_state_scripts.state_paths import StatePathResolver  # noqa: E402


class RecordingInvoker:
    """Runs each statement through the sqlite3 module and prints rows like the sqlite3 shell."""

    def __init__(self, separator: str = "|"):
        self.separator = separator
        self.statements: list[tuple[str, str]] = []
        self.calls = 0

    def locate(self) -> str:
        return "sqlite3"

    def run(self, db_path, sql: str) -> str:
        self.calls += 1
        self.statements.append((str(db_path), sql))
        conn = sqlite3.connect(str(db_path), isolation_level=None)
        try:
            rows = conn.execute(sql).fetchall()
        except sqlite3.Error as exc:
            raise EngineExecutionFailed(f"Error: {exc}", str(exc)) from exc
        finally:
            conn.close()
        return "".join(
            self.separator.join("" if v is None else str(v) for v in row) + "\n" for row in rows
        )

    def count(self, fragment: str) -> int:
        return sum(1 for _, sql in self.statements if fragment in sql)


def create_state_db(path: Path, item_rows=(), kv_rows=(), with_kv: bool = True) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    conn.executemany("INSERT INTO ItemTable(key, value) VALUES (?, ?)", list(item_rows))
    if with_kv:
        conn.execute("CREATE TABLE cursorDiskKV (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
        conn.executemany("INSERT INTO cursorDiskKV(key, value) VALUES (?, ?)", list(kv_rows))
    conn.commit()
    conn.close()
    return path


def query(path: Path, sql: str) -> list[tuple]:
    conn = sqlite3.connect(str(path))
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


def sha256(path: Path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


def bubble_rows(n: int = 10, size: int = 20_000) -> list[tuple[str, bytes]]:
    return [(f"bubbleId:{i}", b"b" * size) for i in range(1, n + 1)]


@pytest.fixture
def invoker() -> RecordingInvoker:
    return RecordingInvoker()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def resolver(home: Path, project: Path) -> StatePathResolver:
    return StatePathResolver(cwd=project, home=home, env={})


@pytest.fixture
def global_db_path(home: Path) -> Path:
    return home / ".config" / "Cursor" / "User" / "globalStorage" / "state.vscdb"


@pytest.fixture
def session(resolver: StatePathResolver, invoker: RecordingInvoker) -> MaintenanceSession:
    return MaintenanceSession(resolver=resolver, invoker=invoker)
