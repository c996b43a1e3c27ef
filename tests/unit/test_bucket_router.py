from __future__ import annotations

import pytest

from apps.api.services import bucket_router
from apps.api.services.bucket_router import Bucket, route


@pytest.mark.parametrize(
    ("category", "bucket"),
    [
        ("banner", Bucket.BANNER),
        ("bannerImage", Bucket.BANNER),
        ("bannerVideo", Bucket.BANNER),
        ("banner-slides", Bucket.BANNER),
        ("BANNER", Bucket.BANNER),
        ("calendar", Bucket.CALENDAR),
        ("events", Bucket.CALENDAR),
        ("eventMedia", Bucket.CALENDAR),
        ("calendar_media", Bucket.CALENDAR),
        ("forum", Bucket.FORUM),
        ("forumMedia", Bucket.FORUM),
        ("forum-posts", Bucket.FORUM),
        ("comments", Bucket.FORUM),
        ("listing", Bucket.LISTING),
        ("Real Estate", Bucket.LISTING),
        ("real_estate", Bucket.LISTING),
        ("REAL_ESTATE", Bucket.LISTING),
        ("for-sale", Bucket.LISTING),
        ("vendors", Bucket.DEFAULT),
        ("avatars", Bucket.DEFAULT),
        ("community-media", Bucket.DEFAULT),
        ("DEFAULT", Bucket.DEFAULT),
    ],
)
def test_category_synonyms(category, bucket) -> None:
    assert route(category) is bucket


@pytest.mark.parametrize(
    ("filename", "bucket"),
    [
        ("bannerImage-1-2.jpg", Bucket.BANNER),
        ("event-1.jpg", Bucket.CALENDAR),
        ("forumMedia-3.png", Bucket.FORUM),
        ("listing-9.webp", Bucket.LISTING),
        ("media-1700000000000-1.png", Bucket.DEFAULT),
        ("minutes.PDF", Bucket.DEFAULT),
        ("holiday.png", Bucket.DEFAULT),
    ],
)
def test_filename_hint_when_category_is_missing(filename, bucket) -> None:
    assert route(None, filename) is bucket
    assert route("", filename) is bucket


def test_known_category_beats_filename_hint() -> None:
    assert route("forum", "event-1.jpg") is Bucket.FORUM


def test_unknown_category_falls_back_to_filename_then_default() -> None:
    assert route("mystery", "event-1.jpg") is Bucket.CALENDAR
    assert route("mystery", "photo.jpg") is Bucket.DEFAULT
    assert route(None) is Bucket.DEFAULT


def test_every_bucket_has_a_canonical_subdir_listed_first() -> None:
    for bucket in Bucket:
        assert bucket_router.LEGACY_DIRECTORIES[bucket][0] == bucket_router.BUCKET_SUBDIRS[bucket]


def test_legacy_directories_include_uploads_variants() -> None:
    dirs = bucket_router.legacy_directories(Bucket.CALENDAR)
    assert dirs[0] == "events"
    assert "uploads/calendar" in dirs
    assert "uploads" in bucket_router.legacy_directories(Bucket.DEFAULT)


def test_synonym_table_keys_are_in_token_form() -> None:
    for token in bucket_router.CATEGORY_SYNONYMS:
        assert token == bucket_router.category_token(token)


def test_is_category_token() -> None:
    assert bucket_router.is_category_token("Forum_Media")
    assert bucket_router.is_category_token("uploads") is False
    assert bucket_router.is_category_token(None) is False
