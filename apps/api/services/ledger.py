"""Durable migration ledger: one row per media file moving into the object store.

The ledger is the only serialization point between migration workers. Every
state transition is a single conditional UPDATE (compare-and-set) in Postgres,
so two workers racing for the same file cannot both win a claim.

For unit-test contexts that don't provision Postgres, set MEDIAVAULT_FAKE_DB=1
to use an in-memory implementation with the same compare-and-set semantics.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import psycopg2  # type: ignore
from psycopg2.extras import RealDictCursor  # type: ignore

from apps.api import config
from apps.api.services.media_errors import BackendUnavailable, Conflict, NotFound
from apps.api.services.media_paths import CanonicalKey, key_from_file_id

LOGGER = logging.getLogger(__name__)

TABLE = "media_migration_ledger"
UPLOAD_SOURCE = "upload"

_COLUMNS = (
    "file_id",
    "bucket",
    "path",
    "source_backend",
    "status",
    "attempts",
    "last_error",
    "run_id",
    "started_at",
    "completed_at",
    "verified_at",
    "updated_at",
)
_SELECT = ", ".join(_COLUMNS)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat().replace("+00:00", "Z")
    return str(value)


class LedgerStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    MIGRATED = "MIGRATED"
    FAILED = "FAILED"


@dataclass
class LedgerEntry:
    file_id: str
    bucket: str
    path: str
    source_backend: str
    status: LedgerStatus
    attempts: int = 0
    last_error: str | None = None
    run_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    verified_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> CanonicalKey:
        return key_from_file_id(self.file_id)

    def is_exhausted(self, max_attempts: int) -> bool:
        return self.status is LedgerStatus.FAILED and self.attempts >= max_attempts

    def is_stale(self, lease_seconds: int, now: datetime) -> bool:
        """An IN_PROGRESS claim older than the lease belongs to a dead worker."""
        if self.status is not LedgerStatus.IN_PROGRESS or self.started_at is None:
            return False
        return now - self.started_at > timedelta(seconds=lease_seconds)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for field_name in ("started_at", "completed_at", "verified_at", "updated_at"):
            payload[field_name] = _iso(payload[field_name])
        return payload


def _entry(row: Mapping[str, Any]) -> LedgerEntry:
    return LedgerEntry(
        file_id=str(row["file_id"]),
        bucket=str(row["bucket"]),
        path=str(row["path"]),
        source_backend=str(row.get("source_backend") or ""),
        status=LedgerStatus(row["status"]),
        attempts=int(row.get("attempts") or 0),
        last_error=row.get("last_error"),
        run_id=row.get("run_id"),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        verified_at=row.get("verified_at"),
        updated_at=row.get("updated_at"),
    )


class MigrationLedger:
    """Facade for ledger persistence (Postgres or in-memory)."""

    def __init__(
        self,
        db_url: str | None = None,
        *,
        max_attempts: int | None = None,
        lease_seconds: int | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._db_url_override = db_url
        self.max_attempts = config.MIGRATION_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.lease_seconds = config.CLAIM_LEASE_SECONDS if lease_seconds is None else lease_seconds
        self._clock = clock
        self._fake_lock = threading.Lock()
        self._fake_rows: Dict[str, Dict[str, Any]] = {}

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _use_fake() -> bool:
        return os.getenv(config.FAKE_DB_ENV, "0") == "1"

    def _db_url(self) -> str:
        url = self._db_url_override or os.getenv(config.DB_URL_ENV)
        if not url:
            raise RuntimeError(f"{config.DB_URL_ENV} is not set")
        return url

    @contextmanager
    def _conn(self):
        try:
            conn = psycopg2.connect(
                self._db_url(),
                cursor_factory=RealDictCursor,
                connect_timeout=max(1, int(config.BACKEND_TIMEOUT)),
                # Bounds claim's FOR UPDATE wait on a row held by a stuck transaction.
                options=f"-c statement_timeout={int(config.BACKEND_TIMEOUT * 1000)}",
            )
        except psycopg2.OperationalError as exc:
            raise BackendUnavailable("ledger", f"connect failed: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            conn.rollback()
            raise BackendUnavailable("ledger", str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        if self._use_fake():
            return
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLE} (
                    file_id TEXT PRIMARY KEY,
                    bucket TEXT NOT NULL,
                    path TEXT NOT NULL,
                    source_backend TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    run_id TEXT,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    verified_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                CREATE INDEX IF NOT EXISTS {TABLE}_status_idx ON {TABLE} (status);
                """
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, key: CanonicalKey | str) -> Optional[LedgerEntry]:
        file_id = key.file_id if isinstance(key, CanonicalKey) else key
        if self._use_fake():
            with self._fake_lock:
                row = self._fake_rows.get(file_id)
                return _entry(row) if row else None

        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT {_SELECT} FROM {TABLE} WHERE file_id = %s;", (file_id,))
            row = cur.fetchone()
        return _entry(row) if row else None

    def list_entries(
        self,
        *,
        status: LedgerStatus | None = None,
        after: str | None = None,
        limit: int = 100,
    ) -> List[LedgerEntry]:
        """Entries ordered by file_id, keyset-paginated with ``after``."""
        limit = max(1, int(limit))
        if self._use_fake():
            with self._fake_lock:
                rows = [dict(r) for r in self._fake_rows.values()]
            rows = [
                r
                for r in rows
                if (status is None or r["status"] == status.value) and (after is None or r["file_id"] > after)
            ]
            rows.sort(key=lambda r: r["file_id"])
            return [_entry(r) for r in rows[:limit]]

        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if after is not None:
            clauses.append("file_id > %s")
            params.append(after)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT {_SELECT} FROM {TABLE} {where} ORDER BY file_id LIMIT %s;", tuple(params))
            rows = cur.fetchall() or []
        return [_entry(r) for r in rows]

    def stats(self) -> Dict[str, int]:
        counts = {status.value.lower(): 0 for status in LedgerStatus}
        exhausted = 0
        verified = 0
        if self._use_fake():
            with self._fake_lock:
                rows = [dict(r) for r in self._fake_rows.values()]
            for row in rows:
                counts[row["status"].lower()] += 1
                if row["status"] == LedgerStatus.FAILED.value and row["attempts"] >= self.max_attempts:
                    exhausted += 1
                if row.get("verified_at") is not None:
                    verified += 1
        else:
            with self._conn() as conn, conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT
                        status,
                        COUNT(*) AS total,
                        COUNT(*) FILTER (WHERE attempts >= %s) AS exhausted,
                        COUNT(verified_at) AS verified
                    FROM {TABLE}
                    GROUP BY status;
                    """,
                    (self.max_attempts,),
                )
                for row in cur.fetchall() or []:
                    counts[str(row["status"]).lower()] = int(row["total"])
                    if row["status"] == LedgerStatus.FAILED.value:
                        exhausted = int(row["exhausted"])
                    verified += int(row["verified"])
        counts["total"] = sum(counts[s.value.lower()] for s in LedgerStatus)
        counts["exhausted"] = exhausted
        counts["verified"] = verified
        return counts

    def failure_report(self, *, limit: int = 500) -> List[Dict[str, Any]]:
        """FAILED entries, exhausted ones first, for operator review."""
        entries = self.list_entries(status=LedgerStatus.FAILED, limit=limit)
        report = []
        for entry in entries:
            item = entry.to_dict()
            item["exhausted"] = entry.is_exhausted(self.max_attempts)
            report.append(item)
        report.sort(key=lambda item: (not item["exhausted"], item["file_id"]))
        return report

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def ensure_pending(self, key: CanonicalKey, source_backend: str) -> LedgerEntry:
        """Create a PENDING entry unless one already exists; returns the current entry."""
        now = self._clock()
        if self._use_fake():
            with self._fake_lock:
                row = self._fake_rows.get(key.file_id)
                if row is None:
                    row = {
                        "file_id": key.file_id,
                        "bucket": key.bucket.value,
                        "path": key.path,
                        "source_backend": source_backend,
                        "status": LedgerStatus.PENDING.value,
                        "attempts": 0,
                        "last_error": None,
                        "run_id": None,
                        "started_at": None,
                        "completed_at": None,
                        "verified_at": None,
                        "updated_at": now,
                    }
                    self._fake_rows[key.file_id] = row
                return _entry(row)

        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {TABLE} (file_id, bucket, path, source_backend, status, attempts, updated_at)
                VALUES (%s, %s, %s, %s, 'PENDING', 0, %s)
                ON CONFLICT (file_id) DO NOTHING;
                """,
                (key.file_id, key.bucket.value, key.path, source_backend, now),
            )
            cur.execute(f"SELECT {_SELECT} FROM {TABLE} WHERE file_id = %s;", (key.file_id,))
            row = cur.fetchone()
        return _entry(row)

    def claim(self, key: CanonicalKey, run_id: str) -> LedgerEntry:
        """Atomically move an entry to IN_PROGRESS for ``run_id``.

        Claimable: PENDING, FAILED with attempts left, or IN_PROGRESS whose lease
        expired. Raises Conflict when another worker holds or finished it and
        NotFound when there is no entry.
        """
        now = self._clock()
        stale_before = now - timedelta(seconds=self.lease_seconds)
        if self._use_fake():
            with self._fake_lock:
                row = self._fake_rows.get(key.file_id)
                if row is None:
                    raise NotFound(key.file_id, ["ledger"])
                current = _entry(row)
                claimable = (
                    current.status is LedgerStatus.PENDING
                    or (current.status is LedgerStatus.FAILED and current.attempts < self.max_attempts)
                    or current.is_stale(self.lease_seconds, now)
                )
                if not claimable:
                    raise Conflict(key.file_id, self._conflict_reason(current))
                prev_status, prev_run = row["status"], row["run_id"]
                row.update(status=LedgerStatus.IN_PROGRESS.value, run_id=run_id, started_at=now, updated_at=now)
                claimed = _entry(row)
        else:
            with self._conn() as conn, conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {TABLE} AS l
                    SET status = 'IN_PROGRESS', run_id = %s, started_at = %s, updated_at = %s
                    FROM (
                        SELECT file_id, status AS prev_status, run_id AS prev_run
                        FROM {TABLE}
                        WHERE file_id = %s
                        FOR UPDATE
                    ) AS p
                    WHERE l.file_id = p.file_id
                      AND (
                        l.status = 'PENDING'
                        OR (l.status = 'FAILED' AND l.attempts < %s)
                        OR (l.status = 'IN_PROGRESS' AND l.started_at < %s)
                      )
                    RETURNING {", ".join(f"l.{c}" for c in _COLUMNS)}, p.prev_status, p.prev_run;
                    """,
                    (run_id, now, now, key.file_id, self.max_attempts, stale_before),
                )
                row = cur.fetchone()
            if row is None:
                current_entry = self.get(key)
                if current_entry is None:
                    raise NotFound(key.file_id, ["ledger"])
                raise Conflict(key.file_id, self._conflict_reason(current_entry))
            prev_status, prev_run = row["prev_status"], row["prev_run"]
            claimed = _entry(row)

        if prev_status == LedgerStatus.IN_PROGRESS.value:
            LOGGER.warning(
                "[ledger] %s: took over stale claim from run %s (lease %ss)",
                key.file_id,
                prev_run,
                self.lease_seconds,
            )
        return claimed

    def _conflict_reason(self, entry: LedgerEntry) -> str:
        if entry.status is LedgerStatus.MIGRATED:
            return "already migrated"
        if entry.status is LedgerStatus.FAILED:
            return f"failed {entry.attempts} times; retries exhausted"
        return f"claim held by run {entry.run_id}"

    def _transition(
        self,
        key: CanonicalKey,
        *,
        expect_status: LedgerStatus | None,
        expect_run: str | None,
        updates: Dict[str, Any],
        conflict_message: str,
        increment_attempts: bool = False,
    ) -> LedgerEntry:
        """Apply ``updates`` when the entry is in the expected state; Conflict otherwise."""
        now = self._clock()
        updates = {**updates, "updated_at": now}
        if self._use_fake():
            with self._fake_lock:
                row = self._fake_rows.get(key.file_id)
                if row is None:
                    raise NotFound(key.file_id, ["ledger"])
                if expect_status is not None and row["status"] != expect_status.value:
                    raise Conflict(key.file_id, conflict_message)
                if expect_run is not None and row["run_id"] != expect_run:
                    raise Conflict(key.file_id, conflict_message)
                if increment_attempts:
                    row["attempts"] = int(row["attempts"]) + 1
                row.update({k: (v.value if isinstance(v, Enum) else v) for k, v in updates.items()})
                return _entry(row)

        assignments = [f"{column} = %s" for column in updates]
        params: List[Any] = [v.value if isinstance(v, Enum) else v for v in updates.values()]
        if increment_attempts:
            assignments.append("attempts = attempts + 1")
        where = ["file_id = %s"]
        params.append(key.file_id)
        if expect_status is not None:
            where.append("status = %s")
            params.append(expect_status.value)
        if expect_run is not None:
            where.append("run_id = %s")
            params.append(expect_run)
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {TABLE} SET {', '.join(assignments)} WHERE {' AND '.join(where)} RETURNING {_SELECT};",
                tuple(params),
            )
            row = cur.fetchone()
        if row is None:
            if self.get(key) is None:
                raise NotFound(key.file_id, ["ledger"])
            raise Conflict(key.file_id, conflict_message)
        return _entry(row)

    def mark_migrated(self, key: CanonicalKey, run_id: str) -> LedgerEntry:
        return self._transition(
            key,
            expect_status=LedgerStatus.IN_PROGRESS,
            expect_run=run_id,
            updates={"status": LedgerStatus.MIGRATED, "completed_at": self._clock(), "last_error": None},
            conflict_message=f"claim for run {run_id} was lost before completion",
        )

    def mark_failed(self, key: CanonicalKey, run_id: str, error: str) -> LedgerEntry:
        entry = self._transition(
            key,
            expect_status=LedgerStatus.IN_PROGRESS,
            expect_run=run_id,
            updates={"status": LedgerStatus.FAILED, "last_error": error[:2000]},
            conflict_message=f"claim for run {run_id} was lost before failure was recorded",
            increment_attempts=True,
        )
        if entry.is_exhausted(self.max_attempts):
            LOGGER.warning("[ledger] %s: retries exhausted after %d attempts", key.file_id, entry.attempts)
        return entry

    def confirm(self, key: CanonicalKey) -> LedgerEntry:
        """Record that a MIGRATED entry's object was seen in the object store."""
        return self._transition(
            key,
            expect_status=LedgerStatus.MIGRATED,
            expect_run=None,
            updates={"verified_at": self._clock()},
            conflict_message="only migrated entries can be confirmed",
        )

    def reopen(self, key: CanonicalKey, reason: str) -> LedgerEntry:
        """Send a MIGRATED entry back to PENDING (its object went missing)."""
        return self._transition(
            key,
            expect_status=LedgerStatus.MIGRATED,
            expect_run=None,
            updates={
                "status": LedgerStatus.PENDING,
                "last_error": reason,
                "completed_at": None,
                "verified_at": None,
                "run_id": None,
            },
            conflict_message="only migrated entries can be reopened",
        )

    def reset(self, key: CanonicalKey) -> LedgerEntry:
        """Operator reset: back to PENDING with a fresh retry budget."""
        return self._transition(
            key,
            expect_status=None,
            expect_run=None,
            updates={
                "status": LedgerStatus.PENDING,
                "attempts": 0,
                "last_error": None,
                "run_id": None,
                "started_at": None,
                "completed_at": None,
                "verified_at": None,
            },
            conflict_message="reset failed",
        )

    def record_migrated(self, key: CanonicalKey, source_backend: str = UPLOAD_SOURCE) -> LedgerEntry:
        """Upsert an entry straight to MIGRATED (new uploads written to the object store)."""
        now = self._clock()
        if self._use_fake():
            with self._fake_lock:
                row = self._fake_rows.get(key.file_id)
                if row is None:
                    row = {
                        "file_id": key.file_id,
                        "bucket": key.bucket.value,
                        "path": key.path,
                        "source_backend": source_backend,
                        "attempts": 0,
                        "run_id": None,
                        "started_at": None,
                    }
                    self._fake_rows[key.file_id] = row
                row.update(
                    status=LedgerStatus.MIGRATED.value,
                    last_error=None,
                    completed_at=now,
                    verified_at=now,
                    updated_at=now,
                )
                return _entry(row)

        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {TABLE} (
                    file_id, bucket, path, source_backend, status, attempts, completed_at, verified_at, updated_at
                )
                VALUES (%s, %s, %s, %s, 'MIGRATED', 0, %s, %s, %s)
                ON CONFLICT (file_id) DO UPDATE
                SET status = 'MIGRATED',
                    last_error = NULL,
                    completed_at = EXCLUDED.completed_at,
                    verified_at = EXCLUDED.verified_at,
                    updated_at = EXCLUDED.updated_at
                RETURNING {_SELECT};
                """,
                (key.file_id, key.bucket.value, key.path, source_backend, now, now, now),
            )
            row = cur.fetchone()
        return _entry(row)


_ledger_instance: MigrationLedger | None = None
_ledger_lock = threading.Lock()


def get_ledger() -> MigrationLedger:
    global _ledger_instance
    if _ledger_instance is None:
        with _ledger_lock:
            if _ledger_instance is None:
                _ledger_instance = MigrationLedger()
    return _ledger_instance


def set_ledger(ledger: MigrationLedger | None) -> None:
    """Install (or clear, with None) the shared ledger. Useful for testing."""
    global _ledger_instance
    with _ledger_lock:
        _ledger_instance = ledger


__all__ = [
    "LedgerEntry",
    "LedgerStatus",
    "MigrationLedger",
    "get_ledger",
    "set_ledger",
]
