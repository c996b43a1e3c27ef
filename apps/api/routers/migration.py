"""Migration control endpoints: trigger batches, inspect and reset the ledger."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from apps.api.services.ledger import get_ledger
from apps.api.services.media_errors import InvalidMedia
from apps.api.services.media_paths import key_from_file_id
from apps.api.services.migration import build_engine

LOGGER = logging.getLogger(__name__)
router = APIRouter(prefix="/migration", tags=["migration"])


class BatchRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=10_000, description="Files to process (default: configured batch size)")
    dry_run: bool = Field(False, description="Enumerate and report without copying")
    run_async: bool = Field(False, description="Queue the batch on a Celery worker")


class VerifyRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1)


@router.post("/batch")
def run_batch(req: BatchRequest | None = None) -> Dict[str, Any]:
    req = req or BatchRequest()
    if req.run_async:
        from apps.api.tasks import run_migration_batch_task

        result = run_migration_batch_task.delay(limit=req.limit, dry_run=req.dry_run)
        LOGGER.info("[migration] queued batch job %s", result.id)
        return {"job_id": result.id, "state": "queued"}

    report = build_engine().run_batch(req.limit, dry_run=req.dry_run)
    return report.to_dict()


@router.post("/verify")
def verify_migrated(req: VerifyRequest | None = None) -> Dict[str, Any]:
    """Confirm MIGRATED entries against the object store; reopen missing ones."""
    req = req or VerifyRequest()
    return build_engine().verify_migrated(limit=req.limit).to_dict()


@router.get("/status")
def migration_status() -> Dict[str, Any]:
    return {"ledger": get_ledger().stats()}


@router.get("/failures")
def migration_failures(limit: int = Query(500, ge=1, le=5000)) -> Dict[str, Any]:
    failures = get_ledger().failure_report(limit=limit)
    return {"count": len(failures), "failures": failures}


@router.post("/reset/{file_id:path}")
def reset_entry(file_id: str) -> Dict[str, Any]:
    """Operator reset of one ledger entry back to PENDING with a fresh retry budget."""
    try:
        key = key_from_file_id(file_id)
    except ValueError as exc:
        raise InvalidMedia(str(exc), {"file_id": file_id}) from exc
    entry = get_ledger().reset(key)
    LOGGER.info("[migration] reset %s", key.file_id)
    return entry.to_dict()


@router.get("/jobs/{job_id}")
def migration_job(job_id: str) -> Dict[str, Any]:
    from apps.api.tasks import get_job_status

    return get_job_status(job_id)
