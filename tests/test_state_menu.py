from conftest import bubble_rows, create_state_db, query
from ide_state_scripts.state_menu import StateMenu, ask_yes_no


def scripted(*answers):
    queue = list(answers)

    def input_fn(prompt):
        if not queue:
            raise EOFError
        return queue.pop(0)

    return input_fn


def run_menu(session, *answers):
    printed = []
    code = StateMenu(session, input_fn=scripted(*answers), print_fn=printed.append).run()
    return code, "\n".join(printed)


def test_quit_immediately(session):
    code, out = run_menu(session, "q")
    assert code == 0
    assert "1) Vacuum" in out


def test_unknown_choice_returns_to_main(session):
    _, out = run_menu(session, "9", "q")
    assert "Unknown choice: '9'" in out


def test_end_of_input_quits(session):
    code, _ = run_menu(session)
    assert code == 0


def test_errors_are_shown_and_menu_continues(session, invoker):
    _, out = run_menu(session, "2", "q")
    assert "Error: Global state.vscdb not found." in out
    assert invoker.calls == 0


def test_vacuum_with_default_threshold_skips_small_files(global_db_path, session, invoker):
    create_state_db(global_db_path)

    _, out = run_menu(session, "1", "", "q")

    assert "below threshold, skipping" in out
    assert invoker.calls == 0


def test_vacuum_rejects_bad_threshold(session):
    _, out = run_menu(session, "1", "lots", "q")
    assert "Threshold must be a whole number" in out


def test_prune_confirmed(global_db_path, session):
    db = create_state_db(global_db_path, kv_rows=bubble_rows(5))

    _, out = run_menu(session, "5", "cursorDiskKV", "bubbleId:%", "2", "y", "q")

    assert "Deleted 3 of 5 key(s)" in out
    assert query(db, "SELECT key FROM cursorDiskKV ORDER BY rowid") == [("bubbleId:4",), ("bubbleId:5",)]


def test_prune_declined(global_db_path, session, invoker):
    db = create_state_db(global_db_path, kv_rows=bubble_rows(5))

    _, out = run_menu(session, "5", "cursorDiskKV", "bubbleId:%", "", "", "q")

    assert "Cancelled." in out
    assert invoker.calls == 0
    assert query(db, "SELECT COUNT(*) FROM cursorDiskKV") == [(5,)]


def test_prune_rejects_unknown_table(global_db_path, session, invoker):
    create_state_db(global_db_path)

    _, out = run_menu(session, "5", "users", "q")

    assert "Unknown table: users" in out
    assert invoker.calls == 0


def test_categories_and_integrity(global_db_path, session):
    create_state_db(global_db_path, kv_rows=bubble_rows(2))

    _, out = run_menu(session, "3", "4", "q")

    assert "Item counts by category" in out
    assert "1/1 passed" in out


def test_cache_light_cleanup(home, session):
    root = home / ".config" / "Cursor"
    (root / "Cache").mkdir(parents=True)
    (root / "User" / "workspaceStorage").mkdir(parents=True)

    _, out = run_menu(session, "6", "", "y", "q")

    assert "1/1 succeeded" in out
    assert f"keeping {root / 'User' / 'workspaceStorage'}" in out
    assert not (root / "Cache").exists()
    assert (root / "User" / "workspaceStorage").exists()


def test_ask_yes_no_defaults():
    assert ask_yes_no("ok?", lambda p: "", default_yes=True)
    assert not ask_yes_no("ok?", lambda p: "")
    assert ask_yes_no("ok?", lambda p: "YES")
