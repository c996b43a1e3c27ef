"""Migration engine: copy legacy media into the object store, one ledger claim at a time.

Each file walks PENDING -> IN_PROGRESS -> MIGRATED (or FAILED). The engine
never copies a file the destination already holds, verifies every copy
(existence and byte length) before marking it MIGRATED, and records per-file
failures in the ledger instead of aborting the batch. Running the same batch
twice copies zero bytes the second time.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from apps.api import config
from apps.api.services.ledger import LedgerStatus, MigrationLedger
from apps.api.services.media_errors import BackendUnavailable, Conflict, Corrupt, NotFound
from apps.api.services.media_paths import CanonicalKey
from apps.api.services.storage_backend import MediaBackend

LOGGER = logging.getLogger(__name__)

# Per-file outcomes
MIGRATED = "migrated"
ALREADY_PRESENT = "already_present"
ALREADY_MIGRATED = "already_migrated"
IN_FLIGHT = "in_flight"
EXHAUSTED = "exhausted"
CONFLICT = "conflict"
FAILED = "failed"
WOULD_MIGRATE = "would_migrate"


@dataclass
class FileOutcome:
    file_id: str
    outcome: str
    source_backend: str
    bytes_copied: int = 0
    error: str | None = None


@dataclass
class BatchReport:
    run_id: str
    dry_run: bool = False
    scanned: int = 0
    processed: int = 0
    migrated: int = 0
    already_present: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0
    bytes_copied: int = 0
    cancelled: bool = False
    drained: bool = False
    outcomes: List[FileOutcome] = field(default_factory=list)
    # Sources that could not be enumerated; their files wait for a later batch.
    source_errors: List[Dict[str, str]] = field(default_factory=list)

    def record(self, outcome: FileOutcome) -> None:
        self.outcomes.append(outcome)
        self.bytes_copied += outcome.bytes_copied
        if outcome.outcome == MIGRATED:
            self.migrated += 1
        elif outcome.outcome == ALREADY_PRESENT:
            self.already_present += 1
        elif outcome.outcome == FAILED:
            self.failed += 1
        elif outcome.outcome == CONFLICT:
            self.conflicts += 1
        else:
            self.skipped += 1

    def to_dict(self, *, include_outcomes: bool = True) -> Dict[str, Any]:
        payload = asdict(self)
        if not include_outcomes:
            payload.pop("outcomes")
        return payload


@dataclass
class VerifyReport:
    checked: int = 0
    confirmed: int = 0
    reopened: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MigrationEngine:
    """Moves files from the legacy ``sources`` into ``destination``.

    Sources are enumerated in order; a key found in several sources is copied
    from the first one that lists it.
    """

    def __init__(
        self,
        ledger: MigrationLedger,
        destination: MediaBackend,
        sources: Sequence[MediaBackend],
        *,
        batch_size: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.ledger = ledger
        self.destination = destination
        self.sources = list(sources)
        self.batch_size = max(1, config.MIGRATION_BATCH_SIZE if batch_size is None else batch_size)
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Stop after the file currently being copied."""
        self.cancel_event.set()

    def _candidates(self, report: BatchReport) -> Iterator[Tuple[CanonicalKey, MediaBackend]]:
        seen: set[str] = set()
        for source in self.sources:
            keys = iter(source.list())
            while True:
                try:
                    key = next(keys)
                except StopIteration:
                    break
                except BackendUnavailable as exc:
                    LOGGER.warning("[migration] run %s: cannot enumerate %s: %s", report.run_id, source.name, exc.message)
                    report.source_errors.append({"source": source.name, "error": exc.message})
                    break
                if key.file_id in seen:
                    continue
                seen.add(key.file_id)
                yield key, source

    def run_batch(self, limit: int | None = None, *, dry_run: bool = False, run_id: str | None = None) -> BatchReport:
        """Process up to ``limit`` files that still need work.

        Files already MIGRATED, claimed by a live worker, or out of retries are
        skipped without counting against the limit.
        """
        limit = self.batch_size if limit is None else max(1, int(limit))
        report = BatchReport(run_id=run_id or uuid.uuid4().hex, dry_run=dry_run)
        candidates = self._candidates(report)
        while report.processed < limit:
            if self.cancel_event.is_set():
                report.cancelled = True
                LOGGER.info("[migration] run %s cancelled after %d files", report.run_id, report.processed)
                break
            try:
                key, source = next(candidates)
            except StopIteration:
                report.drained = not report.source_errors
                break
            report.scanned += 1
            outcome = self._process(key, source, report.run_id, dry_run=dry_run)
            if outcome.outcome in {MIGRATED, ALREADY_PRESENT, FAILED, CONFLICT, WOULD_MIGRATE}:
                report.processed += 1
            report.record(outcome)

        LOGGER.info(
            "[migration] run %s%s: scanned=%d migrated=%d already_present=%d failed=%d conflicts=%d skipped=%d bytes=%d",
            report.run_id,
            " (dry run)" if dry_run else "",
            report.scanned,
            report.migrated,
            report.already_present,
            report.failed,
            report.conflicts,
            report.skipped,
            report.bytes_copied,
        )
        return report

    def dry_run(self, limit: int | None = None) -> BatchReport:
        return self.run_batch(limit, dry_run=True)

    def run(self, *, max_batches: int | None = None) -> List[BatchReport]:
        """Run batches until the sources are drained, nothing is left to do, or cancellation."""
        reports: List[BatchReport] = []
        while max_batches is None or len(reports) < max_batches:
            report = self.run_batch()
            reports.append(report)
            if report.cancelled or report.drained or report.processed == 0:
                break
        return reports

    def migrate_key(self, key: CanonicalKey, *, run_id: str | None = None) -> FileOutcome:
        """Migrate one key on demand (lazy self-healing after a fallback read)."""
        for source in self.sources:
            if source.exists(key):
                return self._process(key, source, run_id or uuid.uuid4().hex)
        raise NotFound(key.file_id, [source.name for source in self.sources])

    def _process(self, key: CanonicalKey, source: MediaBackend, run_id: str, *, dry_run: bool = False) -> FileOutcome:
        entry = self.ledger.get(key)
        if entry is None:
            if dry_run:
                return FileOutcome(key.file_id, WOULD_MIGRATE, source.name)
            entry = self.ledger.ensure_pending(key, source.name)

        if entry.status is LedgerStatus.MIGRATED:
            return FileOutcome(key.file_id, ALREADY_MIGRATED, source.name)
        if entry.status is LedgerStatus.IN_PROGRESS and not entry.is_stale(self.ledger.lease_seconds, self.ledger.now()):
            return FileOutcome(key.file_id, IN_FLIGHT, source.name)
        if entry.is_exhausted(self.ledger.max_attempts):
            return FileOutcome(key.file_id, EXHAUSTED, source.name, error=entry.last_error)
        if dry_run:
            return FileOutcome(key.file_id, WOULD_MIGRATE, source.name)

        try:
            self.ledger.claim(key, run_id)
        except Conflict as exc:
            LOGGER.info("[migration] %s: %s", key.file_id, exc.message)
            return FileOutcome(key.file_id, CONFLICT, source.name, error=exc.message)

        try:
            copied = self._copy(key, source)
        except Exception as exc:
            LOGGER.warning("[migration] %s: copy from %s failed: %s", key.file_id, source.name, exc)
            try:
                self.ledger.mark_failed(key, run_id, f"{type(exc).__name__}: {exc}")
            except Conflict as lost:
                LOGGER.warning("[migration] %s: %s", key.file_id, lost.message)
            return FileOutcome(key.file_id, FAILED, source.name, error=str(exc))

        try:
            self.ledger.mark_migrated(key, run_id)
        except Conflict as lost:
            # The copy is verified; another worker took over the stale claim.
            LOGGER.warning("[migration] %s: %s", key.file_id, lost.message)
            return FileOutcome(key.file_id, CONFLICT, source.name, bytes_copied=copied or 0, error=lost.message)
        if copied is None:
            return FileOutcome(key.file_id, ALREADY_PRESENT, source.name)
        return FileOutcome(key.file_id, MIGRATED, source.name, bytes_copied=copied)

    def _copy(self, key: CanonicalKey, source: MediaBackend) -> Optional[int]:
        """Copy ``key`` unless the destination already has it. Returns bytes copied or None."""
        if self.destination.exists(key):
            return None
        obj = source.read(key)
        self.destination.write(key, obj.data, obj.content_type)
        size = self.destination.head(key)
        if size is None:
            raise BackendUnavailable(self.destination.name, f"{key.file_id} missing after write")
        if size != obj.size_bytes:
            raise Corrupt(key.file_id, f"destination holds {size} bytes, source has {obj.size_bytes}")
        return obj.size_bytes

    def verify_migrated(self, *, limit: int | None = None) -> VerifyReport:
        """Check MIGRATED entries against the destination; reopen the ones whose object vanished."""
        report = VerifyReport()
        after: str | None = None
        while limit is None or report.checked < limit:
            page_size = 200 if limit is None else min(200, limit - report.checked)
            entries = self.ledger.list_entries(status=LedgerStatus.MIGRATED, after=after, limit=page_size)
            if not entries:
                break
            for entry in entries:
                after = entry.file_id
                report.checked += 1
                key = entry.key
                if self.destination.exists(key):
                    self.ledger.confirm(key)
                    report.confirmed += 1
                else:
                    LOGGER.warning("[migration] %s: marked migrated but missing from %s", key.file_id, self.destination.name)
                    self.ledger.reopen(key, f"missing from {self.destination.name} during verification")
                    report.reopened.append(key.file_id)
        return report


def build_engine(
    *,
    batch_size: int | None = None,
    cancel_event: threading.Event | None = None,
) -> MigrationEngine:
    """Engine wired to the configured backends and shared ledger."""
    from apps.api.services.ledger import get_ledger
    from apps.api.services.storage_backend import get_media_backends

    backends = get_media_backends()
    return MigrationEngine(
        get_ledger(),
        backends.object_store,
        [backends.filesystem, backends.database],
        batch_size=batch_size,
        cancel_event=cancel_event,
    )


__all__ = [
    "BatchReport",
    "FileOutcome",
    "MigrationEngine",
    "VerifyReport",
    "build_engine",
]
