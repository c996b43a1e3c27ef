"""Upload ingestion: new media goes straight to the object store under a canonical key."""

from __future__ import annotations

import logging
from mimetypes import guess_extension
from typing import Optional

from apps.api import config
from apps.api.services.bucket_router import BUCKET_SUBDIRS, Bucket, route
from apps.api.services.ledger import MigrationLedger
from apps.api.services.media_errors import BackendUnavailable, Conflict, InvalidMedia
from apps.api.services.media_paths import (
    UNNAMED,
    CanonicalKey,
    create_media_filename,
    infer_content_type,
    sanitize_filename,
    split_extension,
)
from apps.api.services.storage import retry_transient
from apps.api.services.storage_backend import MediaBackend

LOGGER = logging.getLogger(__name__)

MAX_NAME_ATTEMPTS = 5


def _key_for(bucket: Bucket, filename: str) -> CanonicalKey:
    subdir = BUCKET_SUBDIRS[bucket]
    return CanonicalKey(bucket, f"{subdir}/{filename}" if subdir else filename)


class UploadIngestor:
    """Writes uploads to the object store, never overwriting an existing key.

    The optional ``mirror`` backend receives a best-effort copy; its failures
    are logged and do not fail the upload.
    """

    def __init__(
        self,
        object_store: MediaBackend,
        ledger: MigrationLedger | None = None,
        *,
        mirror: MediaBackend | None = None,
        max_bytes: int | None = None,
    ) -> None:
        self.object_store = object_store
        self.ledger = ledger
        self.mirror = mirror
        self.max_bytes = config.MAX_UPLOAD_BYTES if max_bytes is None else max_bytes

    def _filename(self, filename: str | None, content_type: str | None) -> str:
        name = sanitize_filename(filename)
        if name != UNNAMED:
            return name
        ext = guess_extension(content_type or "") or ""
        return create_media_filename("media", ext)

    def _free_key(self, bucket: Bucket, filename: str) -> CanonicalKey:
        key = _key_for(bucket, filename)
        stem, ext = split_extension(filename)
        for _ in range(MAX_NAME_ATTEMPTS):
            if not self.object_store.exists(key):
                return key
            LOGGER.info("[ingest] %s already exists; deriving a new name", key.file_id)
            key = _key_for(bucket, create_media_filename(stem, ext))
        raise Conflict(key.file_id, f"no free name for {filename} after {MAX_NAME_ATTEMPTS} attempts")

    def ingest(
        self,
        data: bytes,
        filename: str | None,
        category: str | None,
        content_type: str | None = None,
    ) -> CanonicalKey:
        if not data:
            raise InvalidMedia("Upload is empty", {"filename": filename})
        if len(data) > self.max_bytes:
            raise InvalidMedia(
                f"Upload exceeds {self.max_bytes} bytes",
                {"filename": filename, "size_bytes": len(data), "max_bytes": self.max_bytes},
            )

        name = self._filename(filename, content_type)
        bucket = route(category, name)
        key = self._free_key(bucket, name)
        ctype = content_type or infer_content_type(key.filename)

        retry_transient(lambda: self.object_store.write(key, data, ctype), f"ingest {key.file_id}")
        if not self.object_store.exists(key):
            raise BackendUnavailable(self.object_store.name, f"{key.file_id} not visible after upload")
        LOGGER.info("[ingest] stored %s (%d bytes, %s)", key.file_id, len(data), ctype)

        if self.ledger is not None:
            try:
                self.ledger.record_migrated(key)
            except Exception as exc:
                LOGGER.warning("[ingest] could not record %s in ledger: %s", key.file_id, exc)
        if self.mirror is not None:
            try:
                self.mirror.write(key, data, ctype)
            except Exception as exc:
                LOGGER.warning("[ingest] mirror write failed for %s: %s", key.file_id, exc)
        return key


def build_ingestor(*, mirror: Optional[bool] = None) -> UploadIngestor:
    """Ingestor wired to the configured backends and shared ledger."""
    from apps.api.services.ledger import get_ledger
    from apps.api.services.storage_backend import get_media_backends

    backends = get_media_backends()
    use_mirror = config.MIRROR_UPLOADS if mirror is None else mirror
    return UploadIngestor(
        backends.object_store,
        get_ledger(),
        mirror=backends.filesystem if use_mirror else None,
    )


__all__ = ["UploadIngestor", "build_ingestor"]
