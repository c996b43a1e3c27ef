from __future__ import annotations

import json

import pytest
from psycopg2 import sql
from psycopg2.extras import Json

from apps.api.services.media_paths import PathNormalizer
from apps.api.services.reference_rewriter import (
    ReferenceRewriter,
    looks_like_media_reference,
    rewrite_value,
)

NORMALIZER = PathNormalizer(object_store_host="objects.test", legacy_hosts=["object-storage.replit.app"], scheme="https")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("https://objects.test/CALENDAR/events/a.jpg", "/storage-proxy/CALENDAR/events/a.jpg"),
        ("https://object-storage.replit.app/FORUM/FORUM/forum/p.png", "/storage-proxy/FORUM/forum/p.png"),
        ("/uploads/calendar/a.jpg", "/storage-proxy/CALENDAR/events/a.jpg"),
        ("/uploads/Real Estate/house.jpg", "/storage-proxy/LISTING/real-estate-media/house.jpg"),
        ("/api/storage-proxy/BANNER/banner-slides/s.png", "/storage-proxy/BANNER/banner-slides/s.png"),
        ("my photo.jpg", "/storage-proxy/DEFAULT/my%20photo.jpg"),
    ],
)
def test_media_strings_are_rewritten_to_proxy_form(value, expected) -> None:
    assert rewrite_value(value, NORMALIZER) == (expected, True)


@pytest.mark.parametrize(
    "value",
    [
        "/storage-proxy/CALENDAR/events/a.jpg",
        "/storage-proxy/DEFAULT/my%20photo.jpg",
        "https://example.com/pic.jpg",
        "data:image/png;base64,AAAA",
        "hello world",
        "",
        None,
        42,
    ],
)
def test_canonical_and_foreign_values_are_left_alone(value) -> None:
    assert rewrite_value(value, NORMALIZER) == (value, False)


def test_lists_rewrite_only_media_items() -> None:
    new, changed = rewrite_value(["/uploads/forum/p.png", "https://example.com/x.jpg"], NORMALIZER)
    assert changed
    assert new == ["/storage-proxy/FORUM/forum/p.png", "https://example.com/x.jpg"]


def test_json_array_text_is_rewritten_as_json() -> None:
    new, changed = rewrite_value('["/uploads/forum/p.png"]', NORMALIZER)
    assert changed
    assert json.loads(new) == ["/storage-proxy/FORUM/forum/p.png"]


def test_looks_like_media_reference() -> None:
    assert looks_like_media_reference("https://objects.test/DEFAULT/a.png", NORMALIZER)
    assert not looks_like_media_reference("https://example.com/a.png", NORMALIZER)
    assert looks_like_media_reference("/storage-proxy/DEFAULT/a", NORMALIZER)
    assert not looks_like_media_reference("/about/team", NORMALIZER)


# -----------------------------------------------------------------------------
# Table rewrites against a fake psycopg2 connection
# -----------------------------------------------------------------------------


def _render(query) -> str:
    if isinstance(query, str):
        return query
    if isinstance(query, sql.Composed):
        return "".join(_render(part) for part in query.seq)
    if isinstance(query, sql.SQL):
        return query.string
    if isinstance(query, sql.Identifier):
        return ".".join(query.strings)
    return str(query)


class _FakeTable:
    def __init__(self, column: str, rows: dict, data_type: str | None = "text") -> None:
        self.column = column
        self.rows = dict(rows)
        self.data_type = data_type
        self.updates: list = []


class _FakeCursor:
    def __init__(self, table: _FakeTable) -> None:
        self.table = table
        self._result: list = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None) -> None:
        text = _render(query)
        if "information_schema" in text:
            self._result = [{"data_type": self.table.data_type}] if self.table.data_type else []
        elif text.startswith("SELECT"):
            after, limit = (None, params[0]) if len(params) == 1 else params
            ids = sorted(i for i in self.table.rows if after is None or i > after)[:limit]
            self._result = [{"id": i, self.table.column: self.table.rows[i]} for i in ids]
        elif text.startswith("UPDATE"):
            value, row_id = params
            stored = value.adapted if isinstance(value, Json) else value
            self.table.rows[row_id] = stored
            self.table.updates.append((row_id, value))
        else:  # pragma: no cover
            raise AssertionError(f"unexpected query {text}")

    def fetchone(self):
        return self._result[0] if self._result else None

    def fetchall(self):
        return list(self._result)


class _FakeConnection:
    def __init__(self, table: _FakeTable) -> None:
        self.table = table
        self.commits = 0
        self.closed = False

    def cursor(self):
        return _FakeCursor(self.table)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


def _rewriter(table: _FakeTable, batch_size: int = 2) -> ReferenceRewriter:
    return ReferenceRewriter(batch_size=batch_size, normalizer=NORMALIZER, connect=lambda: _FakeConnection(table))


def test_rewrite_table_dry_run_reports_without_writing() -> None:
    table = _FakeTable(
        "imageUrl",
        {1: "/uploads/banner-slides/a.jpg", 2: "https://example.com/b.jpg", 3: "/uploads/calendar/c.jpg"},
    )

    report = _rewriter(table).rewrite_table("banner_slides", "imageUrl", dry_run=True)

    assert report.scanned == 3
    assert report.changed == 2
    assert table.updates == []
    assert report.samples[0] == {"id": 1, "old": "/uploads/banner-slides/a.jpg", "new": "/storage-proxy/BANNER/banner-slides/a.jpg"}


def test_rewrite_table_apply_is_idempotent() -> None:
    table = _FakeTable("mediaUrls", {1: ["/uploads/forum/a.png"], 2: [], 3: ["/uploads/forum/b.png"]})

    first = _rewriter(table).rewrite_table("forum_posts", "mediaUrls", dry_run=False)
    assert first.changed == 2
    assert table.rows[1] == ["/storage-proxy/FORUM/forum/a.png"]

    second = _rewriter(table).rewrite_table("forum_posts", "mediaUrls", dry_run=False)
    assert second.changed == 0
    assert len(table.updates) == 2


def test_rewrite_table_wraps_json_columns() -> None:
    table = _FakeTable("mediaUrls", {1: ["/uploads/calendar/a.jpg"]}, data_type="jsonb")

    _rewriter(table).rewrite_table("events", "mediaUrls", dry_run=False)

    (_row_id, value), = table.updates
    assert isinstance(value, Json)
    assert table.rows[1] == ["/storage-proxy/CALENDAR/events/a.jpg"]


def test_missing_column_is_skipped() -> None:
    table = _FakeTable("imageUrl", {}, data_type=None)

    reports = _rewriter(table).rewrite_all([("vendor_categories", ("imageUrl",))], dry_run=True)

    assert len(reports) == 1
    assert reports[0].skipped_reason == "column not found"
