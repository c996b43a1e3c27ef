#!/usr/bin/env python
"""Operator CLI for the media migration.

Examples:
    python scripts/migrate_media.py batch --limit 200            # dry run
    python scripts/migrate_media.py batch --limit 200 --apply
    python scripts/migrate_media.py status
    python scripts/migrate_media.py failures
    python scripts/migrate_media.py verify "/uploads/calendar/event-1.jpg"
    python scripts/migrate_media.py verify --migrated
    python scripts/migrate_media.py reset CALENDAR/events/event-1.jpg
    python scripts/migrate_media.py rewrite-references --apply
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from apps.api.services.ledger import get_ledger  # noqa: E402
from apps.api.services.media_paths import classify, key_from_file_id  # noqa: E402
from apps.api.services.migration import build_engine  # noqa: E402
from apps.api.services.reference_rewriter import ReferenceRewriter  # noqa: E402
from apps.api.services.resolver import FallbackResolver  # noqa: E402
from apps.api.services.storage_backend import get_media_backends  # noqa: E402

LOGGER = logging.getLogger("migrate_media")


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def cmd_batch(args: argparse.Namespace) -> int:
    cancel = threading.Event()
    # Ctrl-C stops after the file in flight; the ledger keeps everything resumable.
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        engine = build_engine(batch_size=args.limit, cancel_event=cancel)
        dry_run = not args.apply
        if args.all and not dry_run:
            reports = engine.run()
            _print([report.to_dict(include_outcomes=False) for report in reports])
            return 1 if any(report.failed or report.source_errors for report in reports) else 0
        report = engine.run_batch(args.limit, dry_run=dry_run)
        _print(report.to_dict(include_outcomes=args.verbose or dry_run))
        return 1 if report.failed or report.source_errors else 0
    finally:
        signal.signal(signal.SIGINT, previous)


def cmd_status(_args: argparse.Namespace) -> int:
    _print(get_ledger().stats())
    return 0


def cmd_failures(args: argparse.Namespace) -> int:
    failures = get_ledger().failure_report(limit=args.limit)
    _print({"count": len(failures), "failures": failures})
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    if args.migrated:
        report = build_engine().verify_migrated(limit=args.limit)
        _print(report.to_dict())
        return 1 if report.reopened else 0
    if not args.reference:
        print("verify needs a reference or --migrated", file=sys.stderr)
        return 2
    normalization = classify(args.reference)
    presence = FallbackResolver(get_media_backends().chain()).verify(normalization.key)
    _print(
        {
            "file_id": normalization.key.file_id,
            "rule": normalization.rule,
            "double_nested": normalization.double_nested,
            "backends": presence,
        }
    )
    return 0 if any(presence.values()) else 1


def cmd_reset(args: argparse.Namespace) -> int:
    try:
        key = key_from_file_id(args.file_id)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    entry = get_ledger().reset(key)
    LOGGER.info("Reset %s to PENDING", key.file_id)
    _print(entry.to_dict())
    return 0


def cmd_rewrite(args: argparse.Namespace) -> int:
    rewriter = ReferenceRewriter(batch_size=args.batch_size)
    if args.table:
        if not args.column:
            print("--table requires --column", file=sys.stderr)
            return 2
        reports = [rewriter.rewrite_table(args.table, args.column, id_column=args.id_column, dry_run=not args.apply)]
    else:
        reports = rewriter.rewrite_all(dry_run=not args.apply)
    _print([report.to_dict() for report in reports])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Migrate legacy media into the object store")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    batch = sub.add_parser("batch", help="Run one migration batch (dry run unless --apply)")
    batch.add_argument("--limit", type=int, default=None, help="Files to process")
    batch.add_argument("--apply", action="store_true", help="Copy files instead of a dry run")
    batch.add_argument("--all", action="store_true", help="With --apply, keep running batches until done")
    batch.add_argument("--verbose", action="store_true", help="Include per-file outcomes")
    batch.set_defaults(func=cmd_batch)

    status = sub.add_parser("status", help="Ledger counts per status")
    status.set_defaults(func=cmd_status)

    failures = sub.add_parser("failures", help="Failed entries, exhausted first")
    failures.add_argument("--limit", type=int, default=500)
    failures.set_defaults(func=cmd_failures)

    verify = sub.add_parser("verify", help="Verify one reference, or all migrated entries")
    verify.add_argument("reference", nargs="?")
    verify.add_argument("--migrated", action="store_true", help="Check MIGRATED entries against the object store")
    verify.add_argument("--limit", type=int, default=None)
    verify.set_defaults(func=cmd_verify)

    reset = sub.add_parser("reset", help="Reset a ledger entry to PENDING")
    reset.add_argument("file_id", help="BUCKET/path, e.g. CALENDAR/events/event-1.jpg")
    reset.set_defaults(func=cmd_reset)

    rewrite = sub.add_parser("rewrite-references", help="Rewrite stored references to the proxy dialect")
    rewrite.add_argument("--apply", action="store_true", help="Write changes instead of a dry run")
    rewrite.add_argument("--table")
    rewrite.add_argument("--column")
    rewrite.add_argument("--id-column", default="id")
    rewrite.add_argument("--batch-size", type=int, default=500)
    rewrite.set_defaults(func=cmd_rewrite)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
