"""Storage backend abstraction for media files.

Three backends hold media bytes, all addressed by CanonicalKey:
- ObjectStoreBackend: S3-compatible object store, the authoritative primary
- LocalFilesystemBackend: legacy on-disk uploads (canonical and legacy layouts)
- DatabaseBlobBackend: legacy ``media_files`` backup table in Postgres

``get_media_backends()`` builds the configured trio. STORAGE_BACKEND selects
the primary:
- "s3" or "minio": ObjectStoreBackend
- "local": a canonical-layout LocalFilesystemBackend stands in for the object
  store (development only)
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import psycopg2  # type: ignore
from botocore.exceptions import BotoCoreError, ClientError  # type: ignore
from psycopg2.extras import RealDictCursor  # type: ignore

from apps.api import config
from apps.api.services.bucket_router import (
    BUCKET_SUBDIRS,
    Bucket,
    all_legacy_directories,
    legacy_directories,
)
from apps.api.services.media_errors import BackendUnavailable, Corrupt, NotFound, Unsupported
from apps.api.services.media_paths import (
    CanonicalKey,
    infer_content_type,
    key_for_stored_path,
    key_from_file_id,
)
from apps.api.services.storage import (
    client_error_code,
    create_s3_client,
    ensure_bucket,
    retry_transient,
)

LOGGER = logging.getLogger(__name__)

OBJECT_STORE = "object_store"
FILESYSTEM = "filesystem"
DATABASE = "database"

CACHE_CONTROL_IMMUTABLE = "max-age=31536000,public"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_TMP_SUFFIX = ".tmp"


@dataclass
class StorageObject:
    """Bytes of a media file plus where they came from."""

    data: bytes
    content_type: str
    size_bytes: int
    backend: str
    key: CanonicalKey


class MediaBackend(ABC):
    """Abstract base class for media backends.

    ``read`` raises NotFound for absent keys; transient failures surface as
    BackendUnavailable. Operations a backend cannot perform raise Unsupported.
    """

    name: str = "backend"

    @abstractmethod
    def head(self, key: CanonicalKey) -> Optional[int]:
        """Return the stored byte length, or None when the key is absent."""
        ...

    def exists(self, key: CanonicalKey) -> bool:
        return self.head(key) is not None

    @abstractmethod
    def read(self, key: CanonicalKey) -> StorageObject:
        ...

    @abstractmethod
    def write(self, key: CanonicalKey, data: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    def list(self, bucket: Bucket | None = None) -> Iterator[CanonicalKey]:
        """Lazily enumerate stored keys, optionally restricted to one bucket."""
        ...

    def delete(self, key: CanonicalKey) -> None:
        raise Unsupported(self.name, "delete")


# -----------------------------------------------------------------------------
# Local filesystem
# -----------------------------------------------------------------------------


class LocalFilesystemBackend(MediaBackend):
    """Media files on local disk.

    Reads try the canonical layout (``root/{path}``) first, then every legacy
    directory spelling for the key's bucket. Writes always land in the
    canonical layout.
    """

    def __init__(self, root: str | Path | None = None, *, name: str = FILESYSTEM, legacy: bool = True) -> None:
        self.root = Path(root or config.MEDIA_ROOT)
        self.name = name
        self.legacy = legacy
        self._lock = threading.Lock()

    def _inside_root(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.root.resolve())
        except ValueError:
            return False
        return True

    def _candidates(self, key: CanonicalKey) -> List[Path]:
        # Same search space as ``list``: a legacy file belongs to ``key`` only
        # when its relative path keys to it.
        paths = [self.root / key.path]
        if self.legacy:
            own = legacy_directories(key.bucket)
            for directory in own + [d for d in all_legacy_directories() if d not in own]:
                relative = f"{directory}/{key.filename}" if directory else key.filename
                candidate = self.root / relative
                if candidate in paths or key_for_stored_path(relative) != key:
                    continue
                paths.append(candidate)
        return [path for path in paths if self._inside_root(path)]

    def _locate(self, key: CanonicalKey) -> Optional[Path]:
        for path in self._candidates(key):
            if path.is_file():
                return path
        return None

    def head(self, key: CanonicalKey) -> Optional[int]:
        path = self._locate(key)
        if path is None:
            return None
        return path.stat().st_size

    def read(self, key: CanonicalKey) -> StorageObject:
        path = self._locate(key)
        if path is None:
            raise NotFound(key.file_id, [self.name])
        data = path.read_bytes()
        return StorageObject(
            data=data,
            content_type=infer_content_type(key.filename),
            size_bytes=len(data),
            backend=self.name,
            key=key,
        )

    def write(self, key: CanonicalKey, data: bytes, content_type: str) -> None:
        target = self.root / key.path
        if not self._inside_root(target):
            raise ValueError(f"Refusing to write outside media root: {key.file_id}")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}{_TMP_SUFFIX}")
        try:
            tmp_path.write_bytes(data)
            tmp_path.replace(target)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def _scan_plan(self, bucket: Bucket | None) -> List[Tuple[str, Optional[Bucket]]]:
        """Directories to scan, each with the bucket its layout fixes (None: key by path)."""
        if self.legacy:
            return [(directory, None) for directory in all_legacy_directories()]
        buckets: Iterable[Bucket] = [bucket] if bucket else list(Bucket)
        return [(BUCKET_SUBDIRS[current], current) for current in buckets]

    def list(self, bucket: Bucket | None = None) -> Iterator[CanonicalKey]:
        seen: set[str] = set()
        for directory, layout_bucket in self._scan_plan(bucket):
            base = self.root / directory if directory else self.root
            if not base.is_dir():
                continue
            for entry in sorted(base.iterdir()):
                if not entry.is_file() or entry.name.startswith(".") or entry.name.endswith(_TMP_SUFFIX):
                    continue
                relative = f"{directory}/{entry.name}" if directory else entry.name
                if layout_bucket is not None:
                    key = CanonicalKey(layout_bucket, relative)
                else:
                    key = key_for_stored_path(relative)
                if (bucket is not None and key.bucket is not bucket) or key.file_id in seen:
                    continue
                seen.add(key.file_id)
                yield key

    def delete(self, key: CanonicalKey) -> None:
        with self._lock:
            for path in self._candidates(key):
                if path.is_file():
                    path.unlink()


# -----------------------------------------------------------------------------
# Object store (S3 / MinIO)
# -----------------------------------------------------------------------------


class ObjectStoreBackend(MediaBackend):
    """S3-compatible object store; one physical bucket, object key ``{BUCKET}/{path}``."""

    name = OBJECT_STORE

    def __init__(
        self,
        client: Any = None,
        bucket: str | None = None,
        *,
        visibility_attempts: int = 5,
        visibility_delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self.bucket = bucket or config.S3_BUCKET
        self.visibility_attempts = max(1, visibility_attempts)
        self.visibility_delay = visibility_delay
        self._sleep = sleep
        self._client_lock = threading.Lock()

    @property
    def client(self) -> Any:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    client = create_s3_client()
                    ensure_bucket(client, self.bucket)
                    self._client = client
        return self._client

    def _call(self, description: str, operation: Callable[[], Any]) -> Any:
        try:
            return retry_transient(operation, description, sleep=self._sleep)
        except (ClientError, BotoCoreError) as exc:
            raise BackendUnavailable(self.name, f"{description} failed: {exc}") from exc

    def head(self, key: CanonicalKey) -> Optional[int]:
        def _head() -> Optional[int]:
            try:
                resp = self.client.head_object(Bucket=self.bucket, Key=key.object_key)
            except ClientError as exc:
                if client_error_code(exc) in _MISSING_CODES:
                    return None
                raise
            return int(resp.get("ContentLength", 0))

        return self._call(f"head {key.object_key}", _head)

    def read(self, key: CanonicalKey) -> StorageObject:
        def _get() -> Optional[Dict[str, Any]]:
            try:
                resp = self.client.get_object(Bucket=self.bucket, Key=key.object_key)
            except ClientError as exc:
                if client_error_code(exc) in _MISSING_CODES:
                    return None
                raise
            return {"data": resp["Body"].read(), "content_type": resp.get("ContentType")}

        result = self._call(f"get {key.object_key}", _get)
        if result is None:
            raise NotFound(key.file_id, [self.name])
        data = result["data"]
        return StorageObject(
            data=data,
            content_type=result["content_type"] or infer_content_type(key.filename),
            size_bytes=len(data),
            backend=self.name,
            key=key,
        )

    def write(self, key: CanonicalKey, data: bytes, content_type: str) -> None:
        """Upload ``data`` and wait until the object is visible with the right size."""
        self._call(
            f"put {key.object_key}",
            lambda: self.client.put_object(
                Bucket=self.bucket,
                Key=key.object_key,
                Body=data,
                ContentType=content_type or infer_content_type(key.filename),
                CacheControl=CACHE_CONTROL_IMMUTABLE,
            ),
        )
        expected = len(data)
        for attempt in range(self.visibility_attempts):
            size = self.head(key)
            if size is not None:
                if size != expected:
                    raise Corrupt(key.file_id, f"object store reports {size} bytes, wrote {expected}")
                return
            self._sleep(self.visibility_delay * (2 ** attempt))
        raise BackendUnavailable(self.name, f"{key.object_key} not visible after write")

    def list(self, bucket: Bucket | None = None) -> Iterator[CanonicalKey]:
        prefix = f"{bucket.value}/" if bucket else ""
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []) or []:
                    try:
                        yield key_from_file_id(item["Key"])
                    except ValueError:
                        LOGGER.debug("[object-store] skipping non-media key %s", item.get("Key"))
        except (ClientError, BotoCoreError) as exc:
            raise BackendUnavailable(self.name, f"list {prefix or '*'} failed: {exc}") from exc

    def delete(self, key: CanonicalKey) -> None:
        self._call(
            f"delete {key.object_key}",
            lambda: self.client.delete_object(Bucket=self.bucket, Key=key.object_key),
        )


# -----------------------------------------------------------------------------
# Database blob (legacy media_files table)
# -----------------------------------------------------------------------------


def _row_key(row: Dict[str, Any]) -> Optional[CanonicalKey]:
    directory = (row.get("directory") or "").strip("/")
    filename = row.get("filename") or ""
    if not filename:
        return None
    return key_for_stored_path(f"{directory}/{filename}" if directory else filename)


class DatabaseBlobBackend(MediaBackend):
    """Blob rows in the ``media_files`` table (append-only backup copy).

    Rows are matched by filename and then by the key their directory/filename
    pair normalizes to, so legacy directory spellings resolve to the same key
    that ``list`` reports.
    """

    name = DATABASE
    PAGE_SIZE = 200

    def __init__(self, db_url: str | None = None, *, timeout: float | None = None) -> None:
        self._db_url_override = db_url
        self.timeout = config.BACKEND_TIMEOUT if timeout is None else timeout
        self._fake_lock = threading.Lock()
        self._fake_rows: List[Dict[str, Any]] = []
        self._fake_next_id = 1

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
                connect_timeout=max(1, int(self.timeout)),
                options=f"-c statement_timeout={int(self.timeout * 1000)}",
            )
        except psycopg2.OperationalError as exc:
            raise BackendUnavailable(self.name, f"connect failed: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            conn.rollback()
            raise BackendUnavailable(self.name, str(exc)) from exc
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
                """
                CREATE TABLE IF NOT EXISTS media_files (
                    id SERIAL PRIMARY KEY,
                    filename TEXT NOT NULL,
                    directory TEXT NOT NULL DEFAULT '',
                    file_data BYTEA NOT NULL,
                    file_size INTEGER NOT NULL,
                    mime_type TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                CREATE INDEX IF NOT EXISTS media_files_filename_idx ON media_files (filename);
                """
            )

    def insert_row(self, *, filename: str, directory: str, data: bytes, mime_type: str | None = None) -> int:
        """Append a blob row; returns its id."""
        if self._use_fake():
            with self._fake_lock:
                row_id = self._fake_next_id
                self._fake_next_id += 1
                self._fake_rows.append(
                    {
                        "id": row_id,
                        "filename": filename,
                        "directory": directory,
                        "file_data": bytes(data),
                        "file_size": len(data),
                        "mime_type": mime_type,
                    }
                )
            return row_id

        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO media_files (filename, directory, file_data, file_size, mime_type)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id;
                """,
                (filename, directory, psycopg2.Binary(data), len(data), mime_type),
            )
            row = cur.fetchone()
        return int(row["id"])

    def _rows_for(self, key: CanonicalKey, *, with_data: bool) -> List[Dict[str, Any]]:
        if self._use_fake():
            with self._fake_lock:
                rows = [dict(r) for r in self._fake_rows if r["filename"] == key.filename]
            rows.sort(key=lambda r: r["id"], reverse=True)
            return rows

        columns = "id, filename, directory, file_size, mime_type"
        if with_data:
            columns += ", file_data"
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT {columns} FROM media_files WHERE filename = %s ORDER BY id DESC;",
                (key.filename,),
            )
            return [dict(row) for row in cur.fetchall() or []]

    def _match(self, key: CanonicalKey, *, with_data: bool) -> Optional[Dict[str, Any]]:
        for row in self._rows_for(key, with_data=with_data):
            if _row_key(row) == key:
                return row
        return None

    def head(self, key: CanonicalKey) -> Optional[int]:
        row = self._match(key, with_data=False)
        if row is None:
            return None
        return int(row.get("file_size") or 0)

    def read(self, key: CanonicalKey) -> StorageObject:
        row = self._match(key, with_data=True)
        if row is None:
            raise NotFound(key.file_id, [self.name])
        data = bytes(row["file_data"])
        return StorageObject(
            data=data,
            content_type=row.get("mime_type") or infer_content_type(key.filename),
            size_bytes=len(data),
            backend=self.name,
            key=key,
        )

    def write(self, key: CanonicalKey, data: bytes, content_type: str) -> None:
        directory = key.file_id.rsplit("/", 1)[0]
        self.insert_row(filename=key.filename, directory=directory, data=data, mime_type=content_type)

    def _page(self, after_id: int) -> List[Dict[str, Any]]:
        if self._use_fake():
            with self._fake_lock:
                rows = [
                    {"id": r["id"], "filename": r["filename"], "directory": r["directory"]}
                    for r in self._fake_rows
                    if r["id"] > after_id
                ]
            rows.sort(key=lambda r: r["id"])
            return rows[: self.PAGE_SIZE]

        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, filename, directory
                FROM media_files
                WHERE id > %s
                ORDER BY id
                LIMIT %s;
                """,
                (after_id, self.PAGE_SIZE),
            )
            return [dict(row) for row in cur.fetchall() or []]

    def list(self, bucket: Bucket | None = None) -> Iterator[CanonicalKey]:
        seen: set[str] = set()
        after_id = 0
        while True:
            rows = self._page(after_id)
            if not rows:
                return
            for row in rows:
                after_id = max(after_id, int(row["id"]))
                key = _row_key(row)
                if key is None or (bucket is not None and key.bucket is not bucket):
                    continue
                if key.file_id in seen:
                    continue
                seen.add(key.file_id)
                yield key

    def delete(self, key: CanonicalKey) -> None:
        raise Unsupported(self.name, "delete")


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------


@dataclass
class MediaBackends:
    """The configured backends, in fallback precedence order."""

    object_store: MediaBackend
    filesystem: MediaBackend
    database: MediaBackend

    def chain(self) -> List[MediaBackend]:
        return [self.object_store, self.filesystem, self.database]

    def by_name(self, name: str) -> MediaBackend:
        for backend in self.chain():
            if backend.name == name:
                return backend
        raise KeyError(name)


_backends_instance: MediaBackends | None = None
_backends_lock = threading.Lock()


def get_media_backends(force_type: str | None = None) -> MediaBackends:
    """Get the configured backend trio (cached)."""
    global _backends_instance

    if _backends_instance is not None and force_type is None:
        return _backends_instance

    with _backends_lock:
        # Double-check after acquiring lock
        if _backends_instance is not None and force_type is None:
            return _backends_instance

        backend_type = (force_type or os.environ.get("STORAGE_BACKEND", config.STORAGE_BACKEND)).lower()
        media_root = Path(config.MEDIA_ROOT)
        if backend_type in ("s3", "minio"):
            primary: MediaBackend = ObjectStoreBackend()
        elif backend_type == "local":
            primary = LocalFilesystemBackend(media_root / "object-store", name=OBJECT_STORE, legacy=False)
        else:
            LOGGER.error(
                "[storage-backend] Unknown STORAGE_BACKEND '%s', defaulting to s3. Valid options: s3, minio, local",
                backend_type,
            )
            primary = ObjectStoreBackend()

        _backends_instance = MediaBackends(
            object_store=primary,
            filesystem=LocalFilesystemBackend(media_root),
            database=DatabaseBlobBackend(),
        )
        LOGGER.info("[storage-backend] Initialized media backends (primary=%s)", backend_type)
        return _backends_instance


def set_media_backends(backends: MediaBackends | None) -> None:
    """Install (or clear, with None) the cached backends. Useful for testing."""
    global _backends_instance
    with _backends_lock:
        _backends_instance = backends


__all__ = [
    "DATABASE",
    "FILESYSTEM",
    "OBJECT_STORE",
    "DatabaseBlobBackend",
    "LocalFilesystemBackend",
    "MediaBackend",
    "MediaBackends",
    "ObjectStoreBackend",
    "StorageObject",
    "get_media_backends",
    "set_media_backends",
]
