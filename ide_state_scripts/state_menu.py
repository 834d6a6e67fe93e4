#!/usr/bin/env python3
"""Interactive menu over the state.vscdb maintenance operations.

The menu is a small state loop: the main screen dispatches to one action
screen, which runs a single operation and returns to the main screen.
Input and output are injectable so the loop can be driven from tests.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Callable

from ide_state_scripts.cache_cleanup_engine import select_protected
from ide_state_scripts.common import ALLOWED_TABLES, DEFAULT_THRESHOLD_MB, MB, StateCleanerError, setup_logger
from ide_state_scripts.sqlite_invoker import SqliteInvoker
from ide_state_scripts.state_db_engine import (
    MaintenanceSession,
    count_categories,
    prune_by_pattern,
    render_analysis,
    render_cache,
    render_categories,
    render_integrity,
    render_prune,
    render_vacuum,
)

MAIN = "main"
QUIT = "quit"

MENU_ITEMS: tuple[tuple[str, str, str], ...] = (
    ("1", "vacuum", "Vacuum state.vscdb files above a size threshold"),
    ("2", "analyze", "Analyze the global state.vscdb (read-only)"),
    ("3", "categories", "Count rows per key category (read-only)"),
    ("4", "integrity", "Check integrity of all state.vscdb files"),
    ("5", "prune", "Delete keys by pattern from the global state.vscdb"),
    ("6", "cache", "Clean IDE cache directories"),
    ("q", QUIT, "Quit"),
)


def ask_yes_no(question: str, input_fn: Callable[[str], str], *, default_yes: bool = False) -> bool:
    prompt = "[Y/n]" if default_yes else "[y/N]"
    raw = input_fn(f"{question} {prompt}: ").strip().lower()
    if not raw:
        return default_yes
    return raw in {"y", "yes"}


class StateMenu:
    """Drives a MaintenanceSession from prompts."""

    def __init__(
        self,
        session: MaintenanceSession,
        input_fn: Callable[[str], str] = input,
        print_fn: Callable[[str], None] = print,
    ):
        self.session = session
        self.input = input_fn
        self.print = print_fn
        self.screens: dict[str, Callable[[], str]] = {
            MAIN: self.main_screen,
            "vacuum": self.vacuum_screen,
            "analyze": self.analyze_screen,
            "categories": self.categories_screen,
            "integrity": self.integrity_screen,
            "prune": self.prune_screen,
            "cache": self.cache_screen,
        }

    def run(self) -> int:
        state = MAIN
        while state != QUIT:
            screen = self.screens[state]
            try:
                state = screen()
            except StateCleanerError as exc:
                self.print(f"Error: {exc}")
                state = MAIN
            except EOFError:
                state = QUIT
        return 0

    def emit(self, lines: list[str]) -> None:
        self.print("\n".join(lines))

    def main_screen(self) -> str:
        self.print("\nIDE state cleaner (close Cursor/VS Code first)")
        for key, _, text in MENU_ITEMS:
            self.print(f"  {key}) {text}")
        choice = self.input("Choose: ").strip().lower()
        for key, state, _ in MENU_ITEMS:
            if choice == key:
                return state
        self.print(f"Unknown choice: {choice!r}")
        return MAIN

    def vacuum_screen(self) -> str:
        raw = self.input(f"Threshold in MB [{DEFAULT_THRESHOLD_MB}]: ").strip()
        if raw and not raw.isdigit():
            self.print("Threshold must be a whole number of MB.")
            return MAIN
        threshold = int(raw) if raw else DEFAULT_THRESHOLD_MB
        result = self.session.vacuum_databases(include_workspace=True, threshold_bytes=threshold * MB)
        self.emit(render_vacuum(result))
        return MAIN

    def analyze_screen(self) -> str:
        self.emit(render_analysis(self.session.analyze_global()))
        return MAIN

    def categories_screen(self) -> str:
        db = self.session.require_global()
        self.emit(render_categories(db.path, count_categories(self.session.invoker, db)))
        return MAIN

    def integrity_screen(self) -> str:
        self.emit(render_integrity(self.session.check_integrity_all()))
        return MAIN

    def prune_screen(self) -> str:
        db = self.session.require_global()
        table = self.input(f"Table ({'/'.join(ALLOWED_TABLES)}) [{ALLOWED_TABLES[0]}]: ").strip() or ALLOWED_TABLES[0]
        if table not in ALLOWED_TABLES:
            self.print(f"Unknown table: {table}")
            return MAIN
        pattern = self.input("Key LIKE pattern (e.g. bubbleId:%): ").strip()
        if not pattern:
            self.print("A pattern is required.")
            return MAIN
        raw = self.input("Keep the last N matches (blank = delete all): ").strip()
        if raw and (not raw.isdigit() or int(raw) < 1):
            self.print("N must be a positive whole number.")
            return MAIN
        keep_last = int(raw) if raw else None

        scope = f"keeping the last {keep_last}" if keep_last else "deleting all matches"
        if not ask_yes_no(f'Delete keys matching "{pattern}" from {table} ({scope})? This cannot be undone.', self.input):
            self.print("Cancelled.")
            return MAIN
        self.emit(render_prune(prune_by_pattern(self.session.invoker, db, table, pattern, keep_last)))
        return MAIN

    def cache_screen(self) -> str:
        light = ask_yes_no("Light cleanup (keep workspaceStorage and History)?", self.input, default_yes=True)
        if light:
            for c in select_protected(self.session.resolver.cache_paths()):
                self.print(f"  keeping {c.path}")
        targets = self.session.cache_targets(light)
        if not targets:
            self.print("No cache directories found.")
            return MAIN
        for c in targets:
            self.print(f"  {c.path}")
        if not ask_yes_no(f"Delete {len(targets)} cache director(y/ies)?", self.input):
            self.print("Cancelled.")
            return MAIN
        self.emit(render_cache(self.session.clean_cache(light)))
        return MAIN


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="ide-state-menu", description="Interactive IDE state cleaner")
    parser.add_argument("--sqlite", default=None, help="Path to the sqlite3 executable")
    parser.add_argument("--log-file", default=None, help="Action log file")
    args = parser.parse_args(argv)

    logger = setup_logger(Path(args.log_file) if args.log_file else None)
    try:
        session = MaintenanceSession(invoker=SqliteInvoker(engine_path=args.sqlite), logger=logger)
    except StateCleanerError as exc:
        print(f"Error: {exc}")
        return 1
    return StateMenu(session).run()


if __name__ == "__main__":
    raise SystemExit(main())
