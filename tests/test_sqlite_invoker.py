import shutil
import sys

import pytest

from conftest import create_state_db
from ide_state_scripts import sqlite_invoker
from ide_state_scripts.common import ConfigurationError, EngineExecutionFailed, EngineNotFound
from ide_state_scripts.sqlite_invoker import SqliteInvoker, output_lines, parse_int, quote_literal, split_row

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as the engine")


def fake_engine(tmp_path, body: str):
    script = tmp_path / "fake-sqlite3"
    script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    script.chmod(0o755)
    return str(script)


@posix_only
def test_run_passes_batch_db_and_sql(tmp_path):
    engine = fake_engine(tmp_path, 'printf "%s\\n" "$@"')
    inv = SqliteInvoker(engine_path=engine, env={})

    out = inv.run(tmp_path / "x.vscdb", "SELECT 1;")

    assert out.splitlines() == ["-batch", str(tmp_path / "x.vscdb"), "SELECT 1;"]
    assert inv.calls == 1


@posix_only
def test_nonzero_exit_raises_with_stderr(tmp_path):
    engine = fake_engine(tmp_path, 'echo "Error: database is locked" >&2; exit 5')
    inv = SqliteInvoker(engine_path=engine, env={})

    with pytest.raises(EngineExecutionFailed) as info:
        inv.run(tmp_path / "x.vscdb", "VACUUM;")

    assert info.value.stderr == "Error: database is locked"
    assert "exited with 5" in str(info.value)
    assert "closed" in str(info.value)


@posix_only
def test_timeout_raises_execution_failed(tmp_path):
    engine = fake_engine(tmp_path, "exec sleep 5")
    inv = SqliteInvoker(engine_path=engine, timeout=0.2, env={})

    with pytest.raises(EngineExecutionFailed, match="timed out"):
        inv.run(tmp_path / "x.vscdb", "VACUUM;")


def test_configured_engine_missing(tmp_path):
    inv = SqliteInvoker(engine_path=str(tmp_path / "nope"), env={})
    with pytest.raises(EngineNotFound) as info:
        inv.locate()
    assert "Install SQLite" in str(info.value)


def test_env_configures_engine_and_timeout(tmp_path):
    inv = SqliteInvoker(
        env={"STATE_CLEANER_SQLITE": str(tmp_path / "sqlite3"), "STATE_CLEANER_SQLITE_TIMEOUT": "7.5"}
    )
    assert inv.configured_path == str(tmp_path / "sqlite3")
    assert inv.timeout == 7.5


def test_locate_is_memoized(monkeypatch):
    lookups = []

    def which(cmd):
        lookups.append(cmd)
        return "/opt/bin/sqlite3"

    monkeypatch.setattr(sqlite_invoker.shutil, "which", which)
    inv = SqliteInvoker(env={})

    assert inv.locate() == "/opt/bin/sqlite3"
    assert inv.locate() == "/opt/bin/sqlite3"
    assert lookups == ["sqlite3"]


def test_locate_falls_back_to_known_paths(monkeypatch, tmp_path):
    local = tmp_path / "local"
    exe = local / "Programs" / "sqlite3" / "sqlite3.exe"
    exe.parent.mkdir(parents=True)
    exe.write_text("", encoding="utf-8")
    monkeypatch.setattr(sqlite_invoker.shutil, "which", lambda cmd: None)
    monkeypatch.setattr(sqlite_invoker, "known_engine_paths", lambda env: ["/definitely/missing", str(exe)])

    assert SqliteInvoker(env={"LOCALAPPDATA": str(local)}).locate() == str(exe)


def test_locate_reports_missing_engine(monkeypatch):
    monkeypatch.setattr(sqlite_invoker.shutil, "which", lambda cmd: None)
    monkeypatch.setattr(sqlite_invoker, "known_engine_paths", lambda env: [])

    with pytest.raises(EngineNotFound):
        SqliteInvoker(env={}).locate()


def test_known_paths_include_localappdata():
    paths = sqlite_invoker.known_engine_paths({"LOCALAPPDATA": "/la"})
    assert any(p.startswith("/la") for p in paths)
    assert "/usr/bin/sqlite3" in paths


@pytest.mark.skipif(shutil.which("sqlite3") is None, reason="sqlite3 shell not installed")
def test_real_engine_round_trip(tmp_path):
    db = create_state_db(tmp_path / "state.vscdb", item_rows=[("a|b", b"xyz")])
    inv = SqliteInvoker(env={})

    assert inv.run(db, "PRAGMA quick_check;").strip() == "ok"
    rows = output_lines(inv.run(db, "SELECT key, LENGTH(value) FROM ItemTable;"))
    assert split_row(rows[0]) == ["a|b", "3"]


def test_split_row_handles_both_separators():
    assert split_row("bubbleId:1|2.5") == ["bubbleId:1", "2.5"]
    assert split_row("bubbleId:1\t2.5") == ["bubbleId:1", "2.5"]
    assert split_row("odd|key|0.10") == ["odd|key", "0.10"]
    assert split_row("lonely") == ["lonely", ""]
    assert split_row("a\tb|1.5") == ["a\tb", "1.5"]
    assert split_row("a|b\t1.5") == ["a|b", "1.5"]
    assert split_row("k|1|2", 3) == ["k", "1", "2"]


def test_parse_int():
    assert parse_int(" 42\n") == 42
    assert parse_int("") == 0
    with pytest.raises(EngineExecutionFailed):
        parse_int("Error: no such table")


def test_quote_literal():
    assert quote_literal("bubbleId:%") == "'bubbleId:%'"
    assert quote_literal("it's") == "'it''s'"
    with pytest.raises(ValueError):
        quote_literal("a\x00b")


def test_output_lines_drops_blanks():
    assert output_lines("\nItemTable\n\ncursorDiskKV\n") == ["ItemTable", "cursorDiskKV"]


@pytest.mark.parametrize("raw", ["soon", "", "0", "-3"])
def test_bad_timeout_setting_is_a_configuration_error(raw):
    with pytest.raises(ConfigurationError, match="STATE_CLEANER_SQLITE_TIMEOUT"):
        sqlite_invoker.parse_timeout(raw)


def test_bad_timeout_env_fails_at_construction():
    with pytest.raises(ConfigurationError):
        SqliteInvoker(env={"STATE_CLEANER_SQLITE_TIMEOUT": "ten"})
