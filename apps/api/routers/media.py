"""Media upload, proxy and resolution endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict
from urllib.parse import quote

from fastapi import APIRouter, File, Form, Query, UploadFile
from fastapi.responses import RedirectResponse, Response

from apps.api import config
from apps.api.services.ingest import build_ingestor
from apps.api.services.ledger import get_ledger
from apps.api.services.media_errors import NotFound
from apps.api.services.media_paths import (
    PROXY_PREFIX,
    canonical_url,
    classify,
    placeholder_url,
    proxy_url,
)
from apps.api.services.resolver import (
    FallbackResolver,
    MigrationScheduler,
    ResolveMode,
    ledger_scheduler,
)
from apps.api.services.storage_backend import get_media_backends

LOGGER = logging.getLogger(__name__)
router = APIRouter()

CACHE_CONTROL = "public, max-age=86400"


def _scheduler() -> MigrationScheduler | None:
    mode = config.LAZY_MIGRATION_MODE
    if mode == "celery":
        from apps.api.tasks import schedule_migration

        return schedule_migration
    if mode == "ledger":
        return ledger_scheduler(get_ledger())
    return None


def _resolver() -> FallbackResolver:
    return FallbackResolver(get_media_backends().chain(), scheduler=_scheduler())


def _serve(reference: str, mode: ResolveMode) -> Response:
    key = classify(reference).key
    try:
        resolved = _resolver().resolve(key, mode)
    except NotFound as exc:
        exc.details["placeholder_url"] = placeholder_url(key.bucket)
        raise

    headers = {"X-Media-Backend": resolved.backend, "X-Media-Key": quote(key.file_id)}
    if resolved.action is ResolveMode.REDIRECT:
        return RedirectResponse(resolved.redirect_url, status_code=302, headers=headers)
    if resolved.migration_scheduled:
        headers["X-Media-Migration"] = "scheduled"
    headers["Cache-Control"] = CACHE_CONTROL
    obj = resolved.obj
    return Response(content=obj.data, media_type=obj.content_type, headers=headers)


@router.post("/media")
def upload_media(
    file: UploadFile = File(..., description="Media file"),
    category: str = Form("", description="Content category, form field name or bucket"),
    filename: str | None = Form(None, description="Override the uploaded file name"),
    content_type: str | None = Form(None, description="Content type override"),
) -> Dict[str, Any]:
    """Store a new upload directly in the object store under a canonical key."""
    data = file.file.read()
    key = build_ingestor().ingest(
        data,
        filename or file.filename,
        category,
        content_type or file.content_type,
    )
    return {
        "file_id": key.file_id,
        "bucket": key.bucket.value,
        "path": key.path,
        "canonical_url": canonical_url(key),
        "proxy_url": proxy_url(key),
        "size_bytes": len(data),
    }


@router.get(f"{PROXY_PREFIX}/{{reference:path}}")
def storage_proxy(
    reference: str,
    mode: ResolveMode = Query(ResolveMode.STREAM, description="stream bytes or redirect to the object store"),
) -> Response:
    """Serve any proxy-dialect reference through the fallback chain."""
    # The path parameter arrives decoded; re-encode it so '#', '?' and '%'
    # in file names survive the normalizer's single decode.
    return _serve(f"{PROXY_PREFIX}/{quote(reference)}", mode)


@router.get("/media/resolve")
def resolve_media(
    reference: str = Query(..., min_length=1, description="Any historical media reference"),
    mode: ResolveMode = Query(ResolveMode.REDIRECT),
) -> Response:
    return _serve(reference, mode)


@router.get("/media/verify")
def verify_media(reference: str = Query(..., min_length=1)) -> Dict[str, Any]:
    """Report where a reference resolves and which backends hold it."""
    normalization = classify(reference)
    key = normalization.key
    entry = get_ledger().get(key)
    return {
        "reference": reference,
        "file_id": key.file_id,
        "bucket": key.bucket.value,
        "path": key.path,
        "rule": normalization.rule,
        "double_nested": normalization.double_nested,
        "canonical_url": canonical_url(key),
        "proxy_url": proxy_url(key),
        "backends": _resolver().verify(key),
        "ledger": entry.to_dict() if entry else None,
    }
