from __future__ import annotations

import logging
import os
from typing import Dict, Tuple

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api import config
from apps.api.errors import install_error_handlers
from apps.api.routers import media, migration

app = FastAPI(title="MediaVault API", version="0.1.0")
install_error_handlers(app)
LOGGER = logging.getLogger(__name__)

ui_origin = os.environ.get("UI_ORIGIN", "http://localhost:3000")
origins = {ui_origin, "http://localhost:3000"}
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)
app.include_router(media.router, tags=["media"])
app.include_router(migration.router)


def _db_configured() -> bool:
    return os.getenv(config.FAKE_DB_ENV, "0") == "1" or bool(os.getenv(config.DB_URL_ENV))


@app.on_event("startup")
async def _ensure_schema() -> None:
    """Create the ledger and blob tables when Postgres is configured."""
    if os.getenv(config.FAKE_DB_ENV, "0") == "1" or not os.getenv(config.DB_URL_ENV):
        return
    from apps.api.services.ledger import get_ledger
    from apps.api.services.storage_backend import get_media_backends

    try:
        get_ledger().ensure_schema()
        database = get_media_backends().database
        ensure = getattr(database, "ensure_schema", None)
        if ensure is not None:
            ensure()
        LOGGER.info("[startup] media schema ready")
    except Exception as e:
        LOGGER.warning("[startup] Failed to ensure media schema: %s", e)


def _check_storage() -> Tuple[str, str | None, str]:
    from apps.api.services.storage_backend import get_media_backends

    backend_type = os.environ.get("STORAGE_BACKEND", config.STORAGE_BACKEND)
    try:
        primary = get_media_backends().object_store
        client = getattr(primary, "client", None)
        if client is not None:
            client.head_bucket(Bucket=primary.bucket)
        return "ok", None, backend_type
    except Exception as exc:
        return "error", str(exc), backend_type


def _check_db() -> Tuple[str, str | None]:
    if not _db_configured():
        return "unconfigured", None
    from apps.api.services.ledger import get_ledger

    try:
        get_ledger().stats()
        return "ok", None
    except Exception as exc:
        return "error", str(exc)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/healthz")
def healthz() -> JSONResponse:
    """Lightweight health check for load balancers and uptime probes."""

    storage_status, storage_detail, storage_backend = _check_storage()
    db_status, db_detail = _check_db()

    overall_ok = storage_status == "ok" and db_status in {"ok", "unconfigured"}
    payload: Dict[str, object] = {
        "status": "ok" if overall_ok else "error",
        "version": app.version or "unknown",
        "storage": storage_status,
        "storage_backend": storage_backend,
        "db": db_status,
    }
    details: Dict[str, str] = {}
    if storage_detail:
        details["storage"] = storage_detail
    if db_detail:
        details["db"] = db_detail
    if details:
        payload["details"] = details

    return JSONResponse(status_code=200 if overall_ok else 503, content=payload)


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("apps.api.main:app", host=config.API_HOST, port=config.API_PORT)
