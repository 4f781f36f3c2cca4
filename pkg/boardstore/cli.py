"""
boardstore command line.

Usage:
    python -m pkg.boardstore show civil
    python -m pkg.boardstore backup civil --out civil.json
    python -m pkg.boardstore restore civil --file civil.json
    python -m pkg.boardstore restore civil --at 2024-05-01T10:30:00Z
    python -m pkg.boardstore recover civil
    python -m pkg.boardstore migrate

The database comes from --db, $BOARDSTORE_DB or the config file.
"""
import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .backup import BackupService
from .config import Settings
from .errors import BoardStoreError
from .feedback import FeedbackBridge, FeedbackKind
from .migration import MigrationService
from .recovery import RecoveryOrchestrator
from .resilience import ResilienceRunner
from .schema import format_timestamp, parse_timestamp
from .service import BoardService
from .storage import SqliteStorage

logger = logging.getLogger("boardstore")


@dataclass
class Runtime:
    """Everything a command needs, wired over one storage backend."""
    settings: Settings
    service: BoardService
    backups: BackupService
    migration: MigrationService
    recovery: RecoveryOrchestrator
    runner: ResilienceRunner
    feedback: FeedbackBridge


def _print_notice(kind: FeedbackKind, message: str, duration_ms: int) -> None:
    stream = sys.stderr if kind is FeedbackKind.ERROR else sys.stdout
    print(f"[{kind.value}] {message}", file=stream)


def build_runtime(settings: Settings, storage=None) -> Runtime:
    storage = storage if storage is not None else SqliteStorage(settings.db_path)
    feedback = FeedbackBridge()
    feedback.subscribe("notification", _print_notice)

    service = BoardService(storage, default_titles=settings.default_boards)
    backups = BackupService(service)
    migration = MigrationService(service, settings.context_boards)
    recovery = RecoveryOrchestrator(
        service,
        backups,
        feedback,
        retention_days=settings.backup_retention_days,
        titles_for=migration.board_titles_for,
    )
    runner = ResilienceRunner.from_settings(settings, feedback)
    return Runtime(settings, service, backups, migration, recovery, runner, feedback)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Commands
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _write_or_print(text: str, out: Optional[str]) -> None:
    if out:
        Path(out).write_text(text, encoding="utf-8")
        print(f"Wrote {out}")
    else:
        print(text)


async def cmd_show(rt: Runtime, args) -> int:
    data = await rt.service.load_data(args.context)
    print(f"Context: {data.context} (last modified {format_timestamp(data.last_modified)})")
    for board in data.boards:
        print(f"\n[{board.order}] {board.title}  ({board.id})")
        for card in board.cards:
            print(f"    {card.order}. {card.title}  ({card.id})")
            if card.description and args.verbose:
                print(f"       {card.description}")
    return 0


async def cmd_init(rt: Runtime, args) -> int:
    if args.reset:
        await rt.migration.clean_and_reinitialize(args.context)
        print(f"Context '{args.context}' reinitialized")
        return 0
    created = await rt.migration.initialize_context(args.context, args.boards)
    print(f"Context '{args.context}' {'initialized' if created else 'already has data'}")
    return 0


async def cmd_backup(rt: Runtime, args) -> int:
    if args.out:
        snapshot = await rt.runner.retry(lambda: rt.backups.create_backup(args.context), "backup")
        _write_or_print(snapshot, args.out)
    else:
        key = await rt.runner.retry(lambda: rt.backups.save_backup(args.context), "backup")
        print(f"Stored backup {key}")
    return 0


async def cmd_restore(rt: Runtime, args) -> int:
    if args.file:
        snapshot = Path(args.file).read_text(encoding="utf-8")
        data = await rt.backups.restore_backup(args.context, snapshot)
    else:
        when = parse_timestamp(args.at)
        if when is None:
            logger.error(f"Cannot parse --at value '{args.at}'")
            return 2
        data = await rt.recovery.restore_from_backup(args.context, when)
    print(f"Restored context '{args.context}': {len(data.boards)} boards, {data.card_count} cards")
    return 0


async def cmd_export(rt: Runtime, args) -> int:
    snapshot = await rt.runner.retry(rt.backups.export_all, "export")
    _write_or_print(snapshot, args.out)
    return 0


async def cmd_import(rt: Runtime, args) -> int:
    snapshot = Path(args.file).read_text(encoding="utf-8")
    contexts = await rt.backups.import_all(snapshot)
    print(f"Imported {len(contexts)} context(s): {', '.join(contexts)}")
    return 0


async def cmd_recover(rt: Runtime, args) -> int:
    outcome = await rt.recovery.recover(args.context)
    print(f"Context '{args.context}' recovered from {outcome.tier}: {len(outcome.data.boards)} boards")
    return 0


async def cmd_migrate(rt: Runtime, args) -> int:
    if args.context:
        results = {args.context: await rt.migration.migrate_context(args.context)}
    else:
        results = await rt.migration.migrate_all()
    for context, changed in results.items():
        print(f"{context}: {'migrated' if changed else 'up to date'}")
    return 0


async def cmd_list_backups(rt: Runtime, args) -> int:
    backups = await rt.recovery.available_backups(args.context)
    if not backups:
        print(f"No backups for context '{args.context}'")
        return 0
    for b in backups:
        print(f"{format_timestamp(b.effective_time)}  {b.kind:<9}  {b.key}")
    return 0


async def cmd_cleanup(rt: Runtime, args) -> int:
    removed = await rt.recovery.cleanup_old_backups(args.context, args.keep_days)
    print(f"Removed {removed} emergency backup(s)")
    return 0


COMMANDS = {
    "show": cmd_show,
    "init": cmd_init,
    "backup": cmd_backup,
    "restore": cmd_restore,
    "export": cmd_export,
    "import": cmd_import,
    "recover": cmd_recover,
    "migrate": cmd_migrate,
    "list-backups": cmd_list_backups,
    "cleanup": cmd_cleanup,
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Entry point
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="boardstore", description="Local task board store")
    ap.add_argument("--config", default=None, help="Path to config.yaml")
    ap.add_argument("--db", default=None, help="Path to the SQLite database (overrides config)")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("show", help="Print a context's boards and cards")
    p.add_argument("context")
    p.add_argument("-v", "--verbose", action="store_true", help="Include card descriptions")

    p = sub.add_parser("init", help="Create a context's default boards if it has no data")
    p.add_argument("context")
    p.add_argument("--boards", nargs="+", default=None, help="Board titles to create")
    p.add_argument("--reset", action="store_true", help="Wipe existing data first")

    p = sub.add_parser("backup", help="Back up one context")
    p.add_argument("context")
    p.add_argument("--out", default=None, help="Write the snapshot to a file instead of storage")

    p = sub.add_parser("restore", help="Restore one context")
    p.add_argument("context")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("--file", help="Backup snapshot file")
    group.add_argument("--at", help="Time of a stored backup (ISO-8601)")

    p = sub.add_parser("export", help="Export every context")
    p.add_argument("--out", default=None)

    p = sub.add_parser("import", help="Import an export snapshot (all or nothing)")
    p.add_argument("file")

    p = sub.add_parser("recover", help="Recover a context from storage, backups or defaults")
    p.add_argument("context")

    p = sub.add_parser("migrate", help="Bring stored data up to date")
    p.add_argument("context", nargs="?", default=None, help="Context to migrate (default: all)")

    p = sub.add_parser("list-backups", help="List stored backups of a context")
    p.add_argument("context")

    p = sub.add_parser("cleanup", help="Delete old emergency backups")
    p.add_argument("context")
    p.add_argument("--keep-days", type=int, default=None)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.load(args.config)
    except BoardStoreError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    if args.db:
        settings.db_path = args.db
        settings.resolve_paths()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [boardstore] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        rt = build_runtime(settings)
        return asyncio.run(COMMANDS[args.command](rt, args))
    except BoardStoreError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except OSError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
