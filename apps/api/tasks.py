"""Celery tasks for media migration.

Usage:
    from apps.api.tasks import run_migration_batch_task
    result = run_migration_batch_task.delay(limit=100)
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

import redis
from celery import states
from celery.result import AsyncResult

from apps.api.celery_app import celery_app
from apps.api.config import REDIS_URL
from apps.api.services.ledger import get_ledger
from apps.api.services.media_errors import BackendUnavailable
from apps.api.services.media_paths import CanonicalKey, key_from_file_id
from apps.api.services.migration import build_engine

LOGGER = logging.getLogger(__name__)

BATCH_LOCK_KEY = "mediavault:job_lock:migration_batch"
BATCH_LOCK_TTL = 3600  # matches task_time_limit

# Redis client for job locking
_redis_client: Optional[redis.Redis] = None


def _get_redis() -> redis.Redis:
    """Get or create Redis client for job locking."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    return _redis_client


def _acquire_batch_lock(job_id: str, ttl: int = BATCH_LOCK_TTL) -> bool:
    """Allow one migration batch at a time across workers.

    Ledger claims already keep files single-flight; this only avoids two
    batches walking the same sources concurrently.
    """
    try:
        r = _get_redis()
        existing = r.get(BATCH_LOCK_KEY)
        if existing:
            result = AsyncResult(existing, app=celery_app)
            if result.state in (states.PENDING, states.RECEIVED, states.STARTED):
                return False
            # Old job finished - delete stale lock before acquiring
            r.delete(BATCH_LOCK_KEY)
            LOGGER.info("Cleaned up stale migration batch lock (job=%s state=%s)", existing, result.state)
        return bool(r.set(BATCH_LOCK_KEY, job_id, nx=True, ex=ttl))
    except redis.RedisError as e:
        LOGGER.error("Failed to acquire migration batch lock: %s", e)
        return False


def _release_batch_lock(job_id: str) -> None:
    try:
        r = _get_redis()
        if r.get(BATCH_LOCK_KEY) == job_id:
            r.delete(BATCH_LOCK_KEY)
    except redis.RedisError as e:
        LOGGER.warning("Failed to release migration batch lock: %s", e)


@celery_app.task(bind=True, name="tasks.run_migration_batch")
def run_migration_batch_task(self, limit: Optional[int] = None, dry_run: bool = False) -> Dict[str, Any]:
    job_id = self.request.id
    if not _acquire_batch_lock(job_id):
        return {"status": "skipped", "reason": "another migration batch is running", "job_id": job_id}
    try:
        report = build_engine().run_batch(limit, dry_run=dry_run, run_id=job_id)
        return report.to_dict(include_outcomes=False)
    finally:
        _release_batch_lock(job_id)


@celery_app.task(
    bind=True,
    name="tasks.migrate_media_key",
    autoretry_for=(BackendUnavailable,),
    retry_backoff=True,
    max_retries=3,
)
def migrate_media_key_task(self, file_id: str) -> Dict[str, Any]:
    outcome = build_engine().migrate_key(key_from_file_id(file_id), run_id=self.request.id)
    return asdict(outcome)


def schedule_migration(key: CanonicalKey, source: str) -> None:
    """Resolver hook: record the key as PENDING and enqueue its copy."""
    get_ledger().ensure_pending(key, source)
    migrate_media_key_task.delay(key.file_id)


def get_job_status(job_id: str) -> Dict[str, Any]:
    """Get status of a Celery job.

    Args:
        job_id: Celery task ID

    Returns:
        Dict with job_id, state, result (if finished), error (if failed)
    """
    result = AsyncResult(job_id, app=celery_app)

    # Map Celery states to simplified API states
    state_map = {
        states.PENDING: "queued",
        states.RECEIVED: "queued",
        states.STARTED: "in_progress",
        states.SUCCESS: "success",
        states.FAILURE: "failed",
        states.RETRY: "retrying",
        states.REVOKED: "cancelled",
    }

    response: Dict[str, Any] = {
        "job_id": job_id,
        "state": state_map.get(result.state, "unknown"),
        "raw_state": result.state,
    }
    if result.ready():
        if result.successful():
            response["result"] = result.result
        else:
            response["error"] = str(result.result)
    return response
