"""Celery application configuration for MEDIAVAULT background jobs.

This module sets up Celery with Redis as broker and result backend.
Used for migration batches and the single-key copies scheduled when a read
is served from a legacy backend.

Worker command:
    celery -A apps.api.celery_app:celery_app worker -l info
"""

from __future__ import annotations

import os

from kombu import Queue
from celery import Celery

from apps.api.config import CELERY_BROKER_URL, CELERY_RESULT_BACKEND

celery_app = Celery(
    "mediavault",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_time_limit=3600,        # 1 hour hard cap per batch
    task_soft_time_limit=3300,
    task_track_started=True,     # Track STARTED state
    result_expires=86400,        # Batch reports kept for a day
    worker_prefetch_multiplier=1,  # Don't hog tasks; process one at a time
    task_acks_late=True,           # Ack after completion; the ledger makes redelivery safe
    broker_connection_retry_on_startup=True,
)

# Auto-discover tasks from all task modules
celery_app.autodiscover_tasks(["apps.api.tasks"])

MIGRATION_QUEUES = {
    "tasks.run_migration_batch": "MEDIAVAULT_MIGRATION_BATCH",
    "tasks.migrate_media_key": "MEDIAVAULT_MIGRATION_KEY",
}

celery_app.conf.task_routes = {
    task_name: {"queue": queue_name}
    for task_name, queue_name in MIGRATION_QUEUES.items()
}

# Explicit queue declarations so workers know what to consume
_all_queue_names = set(MIGRATION_QUEUES.values()) | {"celery"}
celery_app.conf.task_queues = [Queue(q) for q in sorted(_all_queue_names)]
celery_app.conf.task_default_queue = "celery"

# Allow overriding worker concurrency via env for dev perf tuning
celery_app.conf.worker_concurrency = int(os.getenv("CELERY_WORKER_CONCURRENCY", "2"))
