"""Rewrite media references stored in business tables into the canonical proxy dialect.

Business rows hold references as single strings, Postgres arrays, or JSON
arrays (sometimes JSON encoded inside a text column). Only strings that look
like our own media are rewritten; external URLs and free text are left alone.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple
from urllib.parse import urlsplit

import psycopg2  # type: ignore
from psycopg2 import errors as pg_errors  # type: ignore
from psycopg2 import sql  # type: ignore
from psycopg2.extras import Json, RealDictCursor  # type: ignore

from apps.api import config
from apps.api.services.media_paths import PROXY_SEGMENT, PathNormalizer, get_normalizer, proxy_url

LOGGER = logging.getLogger(__name__)

# (table, columns) pairs that hold media references on the platform.
DEFAULT_REFERENCE_COLUMNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("events", ("mediaUrls", "mediaUrl")),
    ("forum_posts", ("mediaUrls",)),
    ("forum_comments", ("mediaUrls",)),
    ("users", ("avatarUrl",)),
    ("real_estate_listings", ("mediaUrls",)),
    ("banner_slides", ("imageUrl",)),
    ("vendor_categories", ("imageUrl",)),
    ("products", ("imageUrl", "imageUrls")),
)

MEDIA_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".avif", ".heic", ".bmp",
    ".mp4", ".mov", ".webm", ".m4v", ".pdf",
}


def looks_like_media_reference(value: str, normalizer: PathNormalizer | None = None) -> bool:
    """True for references we host: object-store URLs, proxy paths, and local media paths."""
    text = value.strip()
    if not text or text.startswith("data:"):
        return False
    norm = normalizer or get_normalizer()
    parts = urlsplit(text.replace("\\", "/"))
    if parts.scheme in {"http", "https"} or parts.netloc:
        return (parts.hostname or "").lower() in norm.hosts
    if PROXY_SEGMENT in parts.path:
        return True
    return PurePosixPath(parts.path).suffix.lower() in MEDIA_EXTENSIONS


def rewrite_reference(value: str, normalizer: PathNormalizer | None = None) -> str:
    norm = normalizer or get_normalizer()
    if not looks_like_media_reference(value, norm):
        return value
    return proxy_url(norm.normalize(value))


def rewrite_value(value: Any, normalizer: PathNormalizer | None = None) -> Tuple[Any, bool]:
    """Return ``(new_value, changed)`` for a column value.

    Handles plain strings, lists of strings, and JSON arrays encoded as text.
    Anything else is returned unchanged.
    """
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            try:
                decoded = json.loads(stripped)
            except ValueError:
                decoded = None
            if isinstance(decoded, list):
                rewritten, changed = rewrite_value(decoded, normalizer)
                return (json.dumps(rewritten) if changed else value), changed
        new = rewrite_reference(value, normalizer)
        return new, new != value
    if isinstance(value, list):
        out: List[Any] = []
        changed = False
        for item in value:
            new_item, item_changed = rewrite_value(item, normalizer)
            out.append(new_item)
            changed = changed or item_changed
        return out, changed
    return value, False


@dataclass
class RewriteReport:
    table: str
    column: str
    dry_run: bool
    scanned: int = 0
    changed: int = 0
    skipped_reason: str | None = None
    samples: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReferenceRewriter:
    """Bulk rewriter over psycopg2; keyset-paginated by ``id_column``."""

    SAMPLE_LIMIT = 10

    def __init__(
        self,
        db_url: str | None = None,
        *,
        batch_size: int = 500,
        normalizer: PathNormalizer | None = None,
        connect: Callable[[], Any] | None = None,
    ) -> None:
        self._db_url_override = db_url
        self.batch_size = max(1, batch_size)
        self.normalizer = normalizer or get_normalizer()
        self._connect = connect

    def _db_url(self) -> str:
        url = self._db_url_override or os.getenv(config.DB_URL_ENV)
        if not url:
            raise RuntimeError(f"{config.DB_URL_ENV} is not set")
        return url

    @contextmanager
    def _conn(self):
        if self._connect is not None:
            conn = self._connect()
        else:
            conn = psycopg2.connect(self._db_url(), cursor_factory=RealDictCursor, connect_timeout=3)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _column_type(self, cur, table: str, column: str) -> str | None:
        cur.execute(
            "SELECT data_type FROM information_schema.columns WHERE table_name = %s AND column_name = %s;",
            (table, column),
        )
        row = cur.fetchone()
        return row["data_type"] if row else None

    def rewrite_table(self, table: str, column: str, *, id_column: str = "id", dry_run: bool = True) -> RewriteReport:
        report = RewriteReport(table=table, column=column, dry_run=dry_run)
        with self._conn() as conn, conn.cursor() as cur:
            data_type = self._column_type(cur, table, column)
            if data_type is None:
                report.skipped_reason = "column not found"
                LOGGER.warning("[rewrite] %s.%s does not exist; skipping", table, column)
                return report
            is_json = data_type in {"json", "jsonb"}
            select = sql.SQL("SELECT {id}, {col} FROM {table} WHERE {id} > %s ORDER BY {id} LIMIT %s").format(
                id=sql.Identifier(id_column), col=sql.Identifier(column), table=sql.Identifier(table)
            )
            update = sql.SQL("UPDATE {table} SET {col} = %s WHERE {id} = %s").format(
                id=sql.Identifier(id_column), col=sql.Identifier(column), table=sql.Identifier(table)
            )
            last_id: Any = None
            while True:
                if last_id is None:
                    cur.execute(
                        sql.SQL("SELECT {id}, {col} FROM {table} ORDER BY {id} LIMIT %s").format(
                            id=sql.Identifier(id_column), col=sql.Identifier(column), table=sql.Identifier(table)
                        ),
                        (self.batch_size,),
                    )
                else:
                    cur.execute(select, (last_id, self.batch_size))
                rows = cur.fetchall() or []
                if not rows:
                    break
                for row in rows:
                    last_id = row[id_column]
                    report.scanned += 1
                    new_value, changed = rewrite_value(row[column], self.normalizer)
                    if not changed:
                        continue
                    report.changed += 1
                    if len(report.samples) < self.SAMPLE_LIMIT:
                        report.samples.append({"id": last_id, "old": row[column], "new": new_value})
                    if not dry_run:
                        cur.execute(update, (Json(new_value) if is_json else new_value, last_id))
        LOGGER.info(
            "[rewrite] %s.%s%s: scanned=%d changed=%d",
            table,
            column,
            " (dry run)" if dry_run else "",
            report.scanned,
            report.changed,
        )
        return report

    def rewrite_all(
        self,
        tables: Iterable[Tuple[str, Sequence[str]]] = DEFAULT_REFERENCE_COLUMNS,
        *,
        dry_run: bool = True,
    ) -> List[RewriteReport]:
        reports: List[RewriteReport] = []
        for table, columns in tables:
            for column in columns:
                try:
                    reports.append(self.rewrite_table(table, column, dry_run=dry_run))
                except (pg_errors.UndefinedTable, pg_errors.UndefinedColumn) as exc:
                    LOGGER.warning("[rewrite] skipping %s.%s: %s", table, column, exc)
                    reports.append(
                        RewriteReport(table=table, column=column, dry_run=dry_run, skipped_reason=str(exc).strip())
                    )
        return reports


__all__ = [
    "DEFAULT_REFERENCE_COLUMNS",
    "ReferenceRewriter",
    "RewriteReport",
    "looks_like_media_reference",
    "rewrite_reference",
    "rewrite_value",
]
