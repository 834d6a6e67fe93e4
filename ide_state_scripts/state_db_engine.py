#!/usr/bin/env python3
"""Reduce and inspect Cursor / VS Code ``state.vscdb`` files.

Safety-first maintenance for the IDE's SQLite key/value state:
- VACUUM with a size threshold and a checked before/after contract
- Two-stage integrity check (quick_check, then integrity_check)
- Read-only analysis of the largest keys and known key categories
- Pattern-scoped key deletion that can keep the most recent N rows
- Cache directory measurement and cleanup

All SQL goes through the external ``sqlite3`` shell. Close the IDE first:
an open IDE holds locks on these files.

Usage:
  ide-state-clean [--no-workspace] [--global] [--threshold 50]
  ide-state-clean --analyze
  ide-state-clean --analyze --table cursorDiskKV --delete-keys "bubbleId:%" --keep-last 100
  ide-state-clean --check-integrity [--global-only]
  ide-state-clean --count-categories
  ide-state-clean --clean-cache light [--dry-run]
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

from ide_state_scripts.cache_cleanup_engine import CacheCleaner, select_for_cleanup
from ide_state_scripts.common import (
    ALLOWED_TABLES,
    APP_NAME,
    DEFAULT_THRESHOLD_MB,
    MB,
    TOP_K,
    EngineExecutionFailed,
    EngineNotFound,
    InvariantViolation,
    StateCleanerError,
    StateDatabaseNotFound,
    StateTable,
    bytes_to_mb,
    ensure_parent,
    human_bytes,
    now_utc_iso,
    setup_logger,
)
from ide_state_scripts.sqlite_invoker import (
    SqliteInvoker,
    output_lines,
    parse_int,
    quote_literal,
    split_row,
)
from ide_state_scripts.state_paths import CachePath, StateDatabase, StatePathResolver

LOGGER = logging.getLogger(APP_NAME)


# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(frozen=True)
class KeyCategory:
    table: StateTable
    pattern: str
    label: str
    impact: str = ""
    typical_reduction: str = ""


CATEGORIES: tuple[KeyCategory, ...] = (
    KeyCategory(
        StateTable.CURSOR_DISK_KV,
        "bubbleId:%",
        "bubbleId:% (cursorDiskKV) - chat bubbles",
        impact="Deletes stored content of past AI chat bubbles; old conversations can no longer be scrolled back.",
        typical_reduction="Often 100-400+ MB (each chat bubble is ~1-5 MB).",
    ),
    KeyCategory(
        StateTable.CURSOR_DISK_KV,
        "checkpointId:%",
        "checkpointId:% (cursorDiskKV) - Composer checkpoints",
        impact="Deletes saved Composer checkpoints; older Composer states cannot be restored from the UI.",
        typical_reduction="Often 100-300+ MB (each checkpoint ~0.9-1.1 MB).",
    ),
    KeyCategory(
        StateTable.CURSOR_DISK_KV,
        "composerData:%",
        "composerData:% (cursorDiskKV) - Composer session metadata",
        impact="Deletes Composer session metadata such as context and panel state of past sessions.",
        typical_reduction="Typically 1-50+ MB.",
    ),
    KeyCategory(
        StateTable.CURSOR_DISK_KV,
        "agentKv:blob:%",
        "agentKv:blob:% (cursorDiskKV) - agent/blob cache",
        impact="Deletes cached agent/blob data; the IDE may re-download or regenerate some of it.",
        typical_reduction="Often 100-400+ MB (each blob ~0.3-0.9 MB).",
    ),
    KeyCategory(
        StateTable.ITEM_TABLE,
        "cursor.composer%",
        "cursor.composer% (ItemTable) - small UI state",
        impact="Depends on the key pattern; ItemTable holds VS Code and extension state.",
        typical_reduction="Usually under 1 MB.",
    ),
)


@dataclasses.dataclass
class VacuumResult:
    path: str
    label: str
    before_bytes: int
    after_bytes: int
    skipped: bool = False
    reason: str = ""

    @property
    def saved_bytes(self) -> int:
        return self.before_bytes - self.after_bytes

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["saved_bytes"] = self.saved_bytes
        return data


@dataclasses.dataclass
class IntegrityResult:
    path: str
    label: str
    passed: bool
    quick_check: str = ""
    integrity_check: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class TableReport:
    table: str
    total_value_bytes: int = 0
    top_keys: list[tuple[str, float]] = dataclasses.field(default_factory=list)
    skipped_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "total_value_bytes": self.total_value_bytes,
            "total_value_mb": round(bytes_to_mb(self.total_value_bytes), 2),
            "top_keys": [{"key": k, "size_mb": s} for k, s in self.top_keys],
            "skipped_reason": self.skipped_reason,
        }


@dataclasses.dataclass
class AnalysisReport:
    path: str
    size_bytes: int
    tables: list[str]
    table_reports: list[TableReport]

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "size_bytes": self.size_bytes,
            "size_human": human_bytes(self.size_bytes),
            "tables": self.tables,
            "table_reports": [t.to_dict() for t in self.table_reports],
        }


@dataclasses.dataclass
class CategoryCount:
    label: str
    table: str
    pattern: str
    count: int = 0
    estimated_mb: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class PruneResult:
    table: str
    pattern: str
    keep_last: int | None
    matched_count: int
    deleted_count: int
    freed_bytes: int
    state: str

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["freed_human"] = human_bytes(max(0, self.freed_bytes))
        return data


# ----------------------------- Validation ----------------------------------- #


def table_from_name(name: str | StateTable) -> StateTable:
    if isinstance(name, StateTable):
        return name
    try:
        return StateTable(name)
    except ValueError:
        raise InvariantViolation(
            f"Table {name!r} is not allowed; expected one of {', '.join(ALLOWED_TABLES)}"
        ) from None


def validate_keep_last(keep_last: int | None) -> int | None:
    if keep_last is None:
        return None
    if isinstance(keep_last, bool) or not isinstance(keep_last, int) or keep_last < 1:
        raise InvariantViolation(f"keep_last must be a positive integer, got {keep_last!r}")
    return keep_last


def first_line(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[0] if lines else "(no output)"


def as_database(db: StateDatabase | str | Path) -> StateDatabase:
    if isinstance(db, StateDatabase):
        return db
    return StateDatabase(str(db), Path(db).name)


# ----------------------------- Operations ----------------------------------- #


def vacuum(invoker: SqliteInvoker, db: StateDatabase | str | Path) -> VacuumResult:
    db = as_database(db)
    before = db.size_bytes
    try:
        invoker.run(db.path, "VACUUM;")
    except EngineExecutionFailed as exc:
        raise EngineExecutionFailed(f"Failed to run VACUUM on {db.path}: {exc.args[0]}", exc.stderr) from exc
    after = db.size_bytes
    if after > before:
        LOGGER.error("vacuum_grew path=%s before=%s after=%s", db.path, before, after)
        raise InvariantViolation(f"VACUUM grew {db.path} from {before} to {after} bytes")
    LOGGER.info("vacuum_done path=%s before=%s after=%s", db.path, before, after)
    return VacuumResult(db.path, db.label, before, after)


def vacuum_if_above(
    invoker: SqliteInvoker,
    db: StateDatabase | str | Path,
    threshold_bytes: int,
) -> VacuumResult:
    db = as_database(db)
    size = db.size_bytes
    if size < threshold_bytes:
        LOGGER.info("vacuum_skipped path=%s size=%s threshold=%s", db.path, size, threshold_bytes)
        return VacuumResult(db.path, db.label, size, size, skipped=True, reason="below threshold")
    return vacuum(invoker, db)


def check_integrity(invoker: SqliteInvoker, db: StateDatabase | str | Path) -> IntegrityResult:
    """quick_check first; integrity_check only runs when quick_check says ok."""
    db = as_database(db)
    quick = invoker.run(db.path, "PRAGMA quick_check;").strip()
    if quick != "ok":
        first = first_line(quick)
        LOGGER.warning("quick_check_failed path=%s err=%s", db.path, first)
        return IntegrityResult(db.path, db.label, False, quick_check=quick, error=first)

    integrity = invoker.run(db.path, "PRAGMA integrity_check;").strip()
    if integrity != "ok":
        first = first_line(integrity)
        LOGGER.warning("integrity_check_failed path=%s err=%s", db.path, first)
        return IntegrityResult(db.path, db.label, False, quick, integrity, error=first)

    return IntegrityResult(db.path, db.label, True, quick, integrity)


def _table_columns(invoker: SqliteInvoker, path: str, table: StateTable) -> set[str]:
    cols = set()
    for line in output_lines(invoker.run(path, f"PRAGMA table_info({table.value});")):
        sep = "\t" if "\t" in line else "|"
        parts = line.split(sep)
        if len(parts) > 1:
            cols.add(parts[1].strip())
    return cols


def analyze(invoker: SqliteInvoker, db: StateDatabase | str | Path, top_k: int = TOP_K) -> AnalysisReport:
    db = as_database(db)
    limit = int(top_k)
    tables = output_lines(
        invoker.run(db.path, "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;")
    )
    tables = [t.strip() for t in tables]

    reports: list[TableReport] = []
    for table in StateTable:
        if table.value not in tables:
            continue
        report = TableReport(table.value)
        reports.append(report)
        try:
            if not {"key", "value"} <= _table_columns(invoker, db.path, table):
                report.skipped_reason = "missing key/value columns"
                continue
            report.total_value_bytes = parse_int(
                invoker.run(db.path, f"SELECT COALESCE(SUM(LENGTH(value)), 0) FROM {table.value};")
            )
            top = invoker.run(
                db.path,
                f"SELECT key, ROUND(LENGTH(value)/1024.0/1024.0, 2) FROM {table.value} "
                f"ORDER BY LENGTH(value) DESC LIMIT {limit};",
            )
            for line in output_lines(top):
                key, size_mb = split_row(line, 2)
                report.top_keys.append((key, round(float(size_mb or 0), 2)))
        except EngineExecutionFailed as exc:
            report.skipped_reason = str(exc)
            LOGGER.error("analyze_table_failed path=%s table=%s err=%s", db.path, table.value, exc)

    return AnalysisReport(db.path, db.size_bytes, tables, reports)


def count_categories(invoker: SqliteInvoker, db: StateDatabase | str | Path) -> list[CategoryCount]:
    db = as_database(db)
    counts: list[CategoryCount] = []
    for cat in CATEGORIES:
        item = CategoryCount(cat.label, cat.table.value, cat.pattern)
        like = quote_literal(cat.pattern)
        try:
            item.count = parse_int(
                invoker.run(db.path, f"SELECT COUNT(*) FROM {cat.table.value} WHERE key LIKE {like};")
            )
            total = parse_int(
                invoker.run(
                    db.path,
                    f"SELECT COALESCE(SUM(LENGTH(value)), 0) FROM {cat.table.value} WHERE key LIKE {like};",
                )
            )
            item.estimated_mb = round(bytes_to_mb(total), 2)
        except EngineExecutionFailed as exc:
            item.error = str(exc)
            LOGGER.error("count_category_failed path=%s pattern=%s err=%s", db.path, cat.pattern, exc)
        counts.append(item)
    return counts


def prune_by_pattern(
    invoker: SqliteInvoker,
    db: StateDatabase | str | Path,
    table: str | StateTable,
    pattern: str,
    keep_last: int | None = None,
) -> PruneResult:
    """Delete rows whose key matches ``pattern``, optionally keeping the newest N.

    Recency is rowid order. Runs VACUUM after any deletion; irreversible.
    An empty pattern is an ordinary LIKE operand and only matches empty keys.
    """
    tbl = table_from_name(table)
    keep_last = validate_keep_last(keep_last)
    db = as_database(db)
    like = quote_literal(pattern)
    count_sql = f"SELECT COUNT(*) FROM {tbl.value} WHERE key LIKE {like};"

    def result(matched: int, deleted: int, freed: int, state: str) -> PruneResult:
        return PruneResult(tbl.value, pattern, keep_last, matched, deleted, freed, state)

    state = "counting"
    try:
        matched = parse_int(invoker.run(db.path, count_sql))
        if matched == 0:
            LOGGER.info("prune_empty path=%s table=%s pattern=%s", db.path, tbl.value, pattern)
            return result(0, 0, 0, "empty")
        if keep_last is not None and matched <= keep_last:
            LOGGER.info("prune_within_retention path=%s matched=%s keep_last=%s", db.path, matched, keep_last)
            return result(matched, 0, 0, "within_retention")

        before = db.size_bytes
        state = "deleting"
        if keep_last is not None:
            invoker.run(
                db.path,
                f"DELETE FROM {tbl.value} WHERE key LIKE {like} AND rowid NOT IN "
                f"(SELECT rowid FROM {tbl.value} WHERE key LIKE {like} ORDER BY rowid DESC LIMIT {keep_last});",
            )
        else:
            invoker.run(db.path, f"DELETE FROM {tbl.value} WHERE key LIKE {like};")
        deleted = matched - parse_int(invoker.run(db.path, count_sql))

        state = "vacuuming"
        after = vacuum(invoker, db).after_bytes
    except StateCleanerError as exc:
        LOGGER.error(
            "prune_failed path=%s table=%s pattern=%s state=%s err=%s", db.path, tbl.value, pattern, state, exc
        )
        raise

    LOGGER.info(
        "prune_done path=%s table=%s pattern=%s matched=%s deleted=%s freed=%s",
        db.path,
        tbl.value,
        pattern,
        matched,
        deleted,
        before - after,
    )
    return result(matched, deleted, before - after, "done")


# ------------------------------- Orchestrator ------------------------------- #


class MaintenanceSession:
    """One run: a resolver, an invoker (memoized engine path) and a cache cleaner."""

    def __init__(
        self,
        resolver: StatePathResolver | None = None,
        invoker: SqliteInvoker | None = None,
        logger: logging.Logger | None = None,
        cache_cleaner: CacheCleaner | None = None,
    ):
        self.logger = logger or LOGGER
        self.resolver = resolver or StatePathResolver()
        self.invoker = invoker or SqliteInvoker()
        self.cache_cleaner = cache_cleaner or CacheCleaner(logger=self.logger)

    def databases(self) -> list[StateDatabase]:
        return self.resolver.state_databases()

    def require_global(self) -> StateDatabase:
        db = self.resolver.global_database()
        if db is None:
            raise StateDatabaseNotFound("Global state.vscdb not found.")
        return db

    def vacuum_databases(
        self,
        include_workspace: bool = True,
        include_global: bool = False,
        threshold_bytes: int = DEFAULT_THRESHOLD_MB * MB,
    ) -> dict[str, Any]:
        if include_workspace:
            targets = self.databases()
        elif include_global:
            gdb = self.resolver.global_database()
            targets = [gdb] if gdb else []
        else:
            targets = []

        results: list[VacuumResult] = []
        failures: list[dict[str, str]] = []
        for db in targets:
            try:
                results.append(vacuum_if_above(self.invoker, db, threshold_bytes))
            except EngineNotFound:
                raise
            except (StateCleanerError, OSError) as exc:
                self.logger.error("vacuum_failed path=%s err=%s", db.path, exc)
                failures.append({"path": db.path, "label": db.label, "error": str(exc)})

        vacuumed = [r for r in results if not r.skipped]
        saved = sum(r.saved_bytes for r in vacuumed)
        return {
            "mode": "vacuum",
            "generated_at": now_utc_iso(),
            "threshold_bytes": threshold_bytes,
            "databases": len(targets),
            "vacuumed": len(vacuumed),
            "skipped": len(results) - len(vacuumed),
            "failed": len(failures),
            "saved_bytes": saved,
            "saved_human": human_bytes(saved),
            "results": [r.to_dict() for r in results],
            "failures": failures,
        }

    def check_integrity_all(self, global_only: bool = False) -> dict[str, Any]:
        if global_only:
            results = [check_integrity(self.invoker, self.require_global())]
        else:
            results = []
            for db in self.databases():
                try:
                    results.append(check_integrity(self.invoker, db))
                except EngineNotFound:
                    raise
                except EngineExecutionFailed as exc:
                    self.logger.error("integrity_failed path=%s err=%s", db.path, exc)
                    results.append(IntegrityResult(db.path, db.label, False, error=str(exc)))

        passed = sum(1 for r in results if r.passed)
        return {
            "mode": "check-integrity",
            "generated_at": now_utc_iso(),
            "passed": passed,
            "total": len(results),
            "summary": f"{passed}/{len(results)} passed",
            "results": [r.to_dict() for r in results],
        }

    def analyze_global(self, top_k: int = TOP_K) -> AnalysisReport:
        return analyze(self.invoker, self.require_global(), top_k=top_k)

    def count_global_categories(self) -> list[CategoryCount]:
        return count_categories(self.invoker, self.require_global())

    def prune_global(self, table: str, pattern: str, keep_last: int | None = None) -> PruneResult:
        return prune_by_pattern(self.invoker, self.require_global(), table, pattern, keep_last)

    def cache_targets(self, light: bool) -> list[CachePath]:
        return select_for_cleanup(self.resolver.cache_paths(), light)

    def measure_cache(self) -> dict[str, Any]:
        paths = self.resolver.cache_paths()
        sizes = self.cache_cleaner.measure(c.path for c in paths)
        total = sum(sizes.values())
        return {
            "mode": "measure-cache",
            "generated_at": now_utc_iso(),
            "paths": [
                {"path": c.path, "protected": c.protected, "bytes": sizes[c.path], "human": human_bytes(sizes[c.path])}
                for c in paths
            ],
            "total_bytes": total,
            "total_human": human_bytes(total),
            "errors": self.cache_cleaner.error_dicts(),
        }

    def clean_cache(self, light: bool, dry_run: bool = False) -> dict[str, Any]:
        targets = self.cache_targets(light)
        self.cache_cleaner.dry_run = dry_run
        result = self.cache_cleaner.delete(c.path for c in targets)
        data = result.to_dict()
        data.update({"mode": "clean-cache", "light": light, "generated_at": now_utc_iso()})
        return data


# -------------------------------- Rendering --------------------------------- #


def render_vacuum(result: dict[str, Any]) -> list[str]:
    lines = [f"Pruning state.vscdb files (threshold {bytes_to_mb(result['threshold_bytes']):.0f} MB)..."]
    if not result["databases"]:
        lines.append("No state.vscdb found (checked project .vscode/.cursor, workspaceStorage, and global).")
    for item in result["results"]:
        lines.append(f"\n{item['label']}:\n  Path: {item['path']}")
        if item["skipped"]:
            lines.append(
                f"  Size: {bytes_to_mb(item['before_bytes']):.2f} MB (below threshold, skipping)"
            )
        else:
            lines.append(f"  Size before: {bytes_to_mb(item['before_bytes']):.2f} MB")
            lines.append(f"  Size after:  {bytes_to_mb(item['after_bytes']):.2f} MB")
    for failure in result["failures"]:
        lines.append(f"\n{failure['label']}:\n  Error: {failure['error']}")
    lines.append(f"\nPruning complete. {result['vacuumed']} database(s) vacuumed, {result['failed']} failed.")
    if result["saved_bytes"] > 0:
        lines.append(f"   Total space reclaimed: {result['saved_human']}")
    lines.append("Note: VACUUM only reclaims free space inside the file; settings are preserved.")
    return lines


def render_integrity(result: dict[str, Any]) -> list[str]:
    lines: list[str] = []
    for item in result["results"]:
        lines.append(f"\n{item['label']}\n  Path: {item['path']}")
        if item["quick_check"]:
            lines.append(f"  PRAGMA quick_check: {first_line(item['quick_check'])}")
        if item["integrity_check"] is not None:
            lines.append(f"  PRAGMA integrity_check: {first_line(item['integrity_check'])}")
        lines.append("  OK: no corruption detected." if item["passed"] else f"  FAILED: {item['error']}")
    lines.append(f"\nIntegrity check complete: {result['summary']}.")
    return lines


def render_analysis(report: AnalysisReport) -> list[str]:
    lines = [
        "=== Global state.vscdb analysis ===",
        f"Path: {report.path}",
        f"File size: {bytes_to_mb(report.size_bytes):.2f} MB",
        f"Tables: {', '.join(report.tables) or '(none)'}",
    ]
    for tr in report.table_reports:
        if tr.skipped_reason:
            lines.append(f"\n(Skipping {tr.table}: {tr.skipped_reason})")
            continue
        lines.append(f"\n{tr.table} total value size: {bytes_to_mb(tr.total_value_bytes):.2f} MB")
        lines.append(f"Top {len(tr.top_keys)} keys by value size:")
        lines.append("-" * 47)
        for key, size_mb in tr.top_keys:
            short = key if len(key) <= 70 else key[:67] + "..."
            lines.append(f"{short:<70} {size_mb:.2f} MB")

    lines.append("\n--- Sub-options to free space (run with the IDE closed) ---")
    for i, cat in enumerate(CATEGORIES, 1):
        lines.append(f"\n{i}) {cat.pattern}  ({cat.table.value})")
        lines.append(f"   Possible reduction: {cat.typical_reduction}")
        lines.append(f"   Impact: {cat.impact}")
        lines.append(
            f'   Command: ide-state-clean --analyze --table {cat.table.value} --delete-keys "{cat.pattern}"'
        )
    return lines


def render_categories(path: str, counts: list[CategoryCount]) -> list[str]:
    lines = [
        "=== Item counts by category (global state.vscdb) ===",
        f"Path: {path}",
        "",
        f"{'Category':<50} | {'Count':>10} | {'Est. size (MB)':>14}",
        f"{'-' * 50}-|-{'-' * 10}-|-{'-' * 14}",
    ]
    for c in counts:
        if c.error:
            lines.append(f"{c.label[:50]:<50} | Error: {first_line(c.error)}")
        else:
            lines.append(f"{c.label[:50]:<50} | {c.count:>10,} | {c.estimated_mb:>14.2f}")
    return lines


def render_prune(result: PruneResult) -> list[str]:
    if result.state == "empty":
        return [f'No keys matching "{result.pattern}" in {result.table}. Nothing to delete.']
    if result.state == "within_retention":
        return [
            f'All {result.matched_count} key(s) match "{result.pattern}". '
            f"Keeping last {result.keep_last}; nothing to delete."
        ]
    return [
        f'Deleted {result.deleted_count} of {result.matched_count} key(s) from {result.table} matching "{result.pattern}".',
        f"Freed: {bytes_to_mb(result.freed_bytes):.2f} MB",
    ]


def render_cache(result: dict[str, Any]) -> list[str]:
    if result["mode"] == "measure-cache":
        lines = [f"{p['human']:>12}  {p['path']}{'  (protected)' if p['protected'] else ''}" for p in result["paths"]]
        lines.append(f"Total: {result['total_human']}")
        if result["errors"]:
            lines.append(f"Skipped {len(result['errors'])} unreadable entries.")
        return lines
    verb = "Would delete" if result["dry_run"] else "Deleted"
    lines = [f"{verb}: {p}" for p in result["succeeded"]]
    lines.extend(f"Failed: {p} ({result['errors'].get(p, '')})" for p in result["failed"])
    lines.append(f"Cache cleanup: {result['summary']}, {result['freed_human']} freed.")
    return lines


# -------------------------------- CLI -------------------------------------- #


def export_json(path: Path, obj: Any) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def require_confirm(args: argparse.Namespace, message: str, input_fn: Callable[[str], str] | None = None) -> bool:
    if getattr(args, "yes", False):
        return True
    ans = (input_fn or input)(f"{message} [y/N]: ").strip().lower()
    return ans in {"y", "yes"}


def positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return n


def non_negative_int(value: str) -> int:
    n = int(value)
    if n < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value}")
    return n


def emit(lines: list[str]) -> None:
    print("\n".join(lines))


def global_or_notice(session: MaintenanceSession, action: str) -> StateDatabase | None:
    """The global database, or None after telling the user it is missing."""
    try:
        return session.require_global()
    except StateDatabaseNotFound:
        print(f"Global state.vscdb not found. Cannot {action}.")
        return None


def not_found(mode: str) -> dict[str, Any]:
    return {"mode": mode, "status": "not_found", "generated_at": now_utc_iso()}


def command_count_categories(session: MaintenanceSession, args: argparse.Namespace) -> dict[str, Any]:
    db = global_or_notice(session, "show counts")
    if db is None:
        return not_found("count-categories")
    counts = count_categories(session.invoker, db)
    emit(render_categories(db.path, counts))
    return {"mode": "count-categories", "path": db.path, "categories": [c.to_dict() for c in counts]}


def command_check_integrity(session: MaintenanceSession, args: argparse.Namespace) -> dict[str, Any]:
    if args.global_only and global_or_notice(session, "check integrity") is None:
        return not_found("check-integrity")
    result = session.check_integrity_all(global_only=args.global_only)
    if not result["total"]:
        print("No state.vscdb found.")
    else:
        emit(render_integrity(result))
    return result


def command_analyze(session: MaintenanceSession, args: argparse.Namespace) -> dict[str, Any]:
    db = global_or_notice(session, "analyze")
    if db is None:
        return not_found("analyze")
    report = analyze(session.invoker, db)
    emit(render_analysis(report))
    out: dict[str, Any] = {"mode": "analyze", "report": report.to_dict()}

    if args.delete_keys:
        print("\n--- Deleting keys by pattern ---")
        scope = f"keeping last {args.keep_last}" if args.keep_last else "deleting all matches"
        if not require_confirm(args, f'Delete keys matching "{args.delete_keys}" from {args.table} ({scope})?'):
            print("Cancelled.")
            out["prune"] = {"status": "cancelled"}
            return out
        result = prune_by_pattern(session.invoker, db, args.table, args.delete_keys, args.keep_last)
        emit(render_prune(result))
        out["prune"] = result.to_dict()
    return out


def command_cache(session: MaintenanceSession, args: argparse.Namespace) -> dict[str, Any]:
    if args.measure_cache and not args.clean_cache:
        result = session.measure_cache()
        emit(render_cache(result))
        return result

    light = args.clean_cache == "light"
    targets = session.cache_targets(light)
    if not targets:
        print("No cache directories found.")
        return {"mode": "clean-cache", "light": light, "succeeded": [], "failed": []}
    if not args.dry_run and not require_confirm(args, f"Delete {len(targets)} cache director(y/ies)?"):
        print("Cancelled.")
        return {"mode": "clean-cache", "status": "cancelled"}
    result = session.clean_cache(light, dry_run=args.dry_run)
    emit(render_cache(result))
    return result


def command_vacuum(session: MaintenanceSession, args: argparse.Namespace) -> dict[str, Any]:
    result = session.vacuum_databases(
        include_workspace=args.workspace,
        include_global=args.global_,
        threshold_bytes=args.threshold * MB,
    )
    emit(render_vacuum(result))
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ide-state-clean",
        description="Reduce and inspect Cursor / VS Code state.vscdb files and caches",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--workspace",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Vacuum every state.vscdb found (project, workspaceStorage and global)",
    )
    parser.add_argument("--global", dest="global_", action="store_true", help="Vacuum the global state.vscdb")
    parser.add_argument("--threshold", type=non_negative_int, default=DEFAULT_THRESHOLD_MB, help="Size in MB below which a file is not vacuumed")
    parser.add_argument("--analyze", action="store_true", help="Report what uses space in the global state.vscdb")
    parser.add_argument("--check-integrity", action="store_true", help="Run PRAGMA quick_check + integrity_check")
    parser.add_argument("--global-only", action="store_true", help="With --check-integrity: check only the global state.vscdb")
    parser.add_argument("--count-categories", action="store_true", help="Show row counts for the known key categories")
    parser.add_argument("--table", choices=ALLOWED_TABLES, default=StateTable.ITEM_TABLE.value, help="Table for --delete-keys")
    parser.add_argument("--delete-keys", default=None, metavar="PATTERN", help="Delete keys matching a SQL LIKE pattern, then VACUUM (with --analyze)")
    parser.add_argument("--keep-last", type=positive_int, default=None, metavar="N", help="With --delete-keys: keep the N most recent matches")
    parser.add_argument("--clean-cache", choices=["light", "full"], default=None, help="Delete IDE cache directories; light keeps workspaceStorage and History")
    parser.add_argument("--measure-cache", action="store_true", help="Report IDE cache directory sizes")
    parser.add_argument("--dry-run", action="store_true", help="With --clean-cache: report without deleting")
    parser.add_argument("--yes", action="store_true", help="Non-interactive yes for confirmations")
    parser.add_argument("--sqlite", default=None, help="Path to the sqlite3 executable")
    parser.add_argument("--log-file", default=None, help="Action log file")
    parser.add_argument("--output", default=None, help="Also write the result as JSON to this file")
    return parser


def dispatch(session: MaintenanceSession, args: argparse.Namespace) -> dict[str, Any]:
    if args.count_categories:
        return command_count_categories(session, args)
    if args.check_integrity:
        return command_check_integrity(session, args)
    if args.analyze:
        return command_analyze(session, args)
    if args.clean_cache or args.measure_cache:
        return command_cache(session, args)
    return command_vacuum(session, args)


def main(argv: list[str] | None = None, session: MaintenanceSession | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.delete_keys is not None and not args.analyze:
        parser.error("--delete-keys requires --analyze")
    if args.keep_last is not None and args.delete_keys is None:
        parser.error("--keep-last requires --delete-keys")

    logger = setup_logger(Path(args.log_file) if args.log_file else None)

    try:
        if session is None:
            session = MaintenanceSession(invoker=SqliteInvoker(engine_path=args.sqlite), logger=logger)
        result = dispatch(session, args)
    except StateCleanerError as exc:
        logger.error("run_failed err=%s", exc)
        print(json.dumps({
            "status": "error",
            "error_type": type(exc).__name__,
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1

    if args.output:
        export_json(Path(args.output), result)
    return 0


__all__ = [
    "AnalysisReport",
    "CATEGORIES",
    "CategoryCount",
    "IntegrityResult",
    "KeyCategory",
    "MaintenanceSession",
    "PruneResult",
    "TableReport",
    "VacuumResult",
    "analyze",
    "build_parser",
    "check_integrity",
    "count_categories",
    "main",
    "prune_by_pattern",
    "table_from_name",
    "vacuum",
    "vacuum_if_above",
]


if __name__ == "__main__":
    raise SystemExit(main())
