from __future__ import annotations

import logging
import re

import pytest

from apps.api.services.bucket_router import Bucket
from apps.api.services.media_paths import (
    CanonicalKey,
    PathNormalizer,
    create_media_filename,
    infer_content_type,
    key_for_stored_path,
    key_from_file_id,
    placeholder_url,
    proxy_url,
    sanitize_filename,
)

HOST = "objects.test"
LEGACY_HOST = "object-storage.replit.app"


@pytest.fixture
def normalizer() -> PathNormalizer:
    return PathNormalizer(object_store_host=HOST, legacy_hosts=[LEGACY_HOST], scheme="https")


@pytest.mark.parametrize(
    ("reference", "file_id", "rule"),
    [
        (f"https://{HOST}/CALENDAR/events/event-1.jpg", "CALENDAR/events/event-1.jpg", "object-store-url"),
        (f"https://{LEGACY_HOST}/REAL_ESTATE/house.jpg", "LISTING/real-estate-media/house.jpg", "object-store-url"),
        (f"//{HOST}/FORUM/forum/pic.png", "FORUM/forum/pic.png", "object-store-url"),
        ("/storage-proxy/CALENDAR/events/event-1.jpg", "CALENDAR/events/event-1.jpg", "proxy-path"),
        ("/api/storage-proxy/BANNER/banner-slides/slide.png", "BANNER/banner-slides/slide.png", "proxy-path"),
        ("/storage-proxy/direct-forum/pic.png", "FORUM/forum/pic.png", "proxy-path"),
        ("/uploads/calendar/event-1.jpg", "CALENDAR/events/event-1.jpg", "category-path"),
        ("uploads\\forum-media\\pic.png", "FORUM/forum/pic.png", "category-path"),
        ("/uploads/Real Estate/house.jpg", "LISTING/real-estate-media/house.jpg", "category-path"),
        ("/uploads/banner-slides/hero.mp4", "BANNER/banner-slides/hero.mp4", "category-path"),
        ("/uploads/media/events/flyer.png", "CALENDAR/events/flyer.png", "category-path"),
        ("bannerImage-1700000000000-42.jpg", "BANNER/banner-slides/bannerImage-1700000000000-42.jpg", "filename"),
        ("event-1.jpg", "CALENDAR/events/event-1.jpg", "filename"),
        ("agenda.pdf", "DEFAULT/agenda.pdf", "filename"),
        ("photo.jpg", "DEFAULT/photo.jpg", "default"),
        ("https://cdn.example.com/somewhere/photo.jpg", "DEFAULT/photo.jpg", "default"),
    ],
)
def test_reference_dialects_normalize_to_one_key(normalizer, reference, file_id, rule) -> None:
    result = normalizer.classify(reference)
    assert result.key.file_id == file_id
    assert result.rule == rule


@pytest.mark.parametrize(
    "reference",
    [
        "/uploads/calendar/x.jpg",
        "/calendar/x.jpg",
        "/events/x.jpg",
        "uploads/events/x.jpg",
        "/calendar-media/x.jpg",
        "/uploads/calendar/x.jpg?v=3#top",
        "https://legacy.example.com/uploads/calendar/x.jpg",
        "/storage-proxy/CALENDAR/events/x.jpg",
        f"https://{HOST}/CALENDAR/events/x.jpg",
    ],
)
def test_calendar_dialects_share_one_key(normalizer, reference) -> None:
    assert normalizer.normalize(reference) == CanonicalKey(Bucket.CALENDAR, "events/x.jpg")


def test_object_store_url_takes_priority_over_category_segments(normalizer) -> None:
    key = normalizer.normalize(f"https://{HOST}/FORUM/forum/events/event-9.jpg")
    assert key == CanonicalKey(Bucket.FORUM, "forum/event-9.jpg")


def test_unknown_host_is_not_treated_as_object_store(normalizer) -> None:
    result = normalizer.classify("https://elsewhere.test/BANNER/photo.jpg")
    assert result.rule != "object-store-url"
    assert result.key.bucket is Bucket.BANNER


@pytest.mark.parametrize(
    "reference",
    [
        "/storage-proxy/CALENDAR/CALENDAR/events/event-1.jpg",
        f"https://{HOST}/CALENDAR/events/events/event-1.jpg",
        "/uploads/events/events/event-1.jpg",
    ],
)
def test_double_nesting_is_collapsed_and_logged(normalizer, reference, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="apps.api.services.media_paths"):
        result = normalizer.classify(reference)
    assert result.key.file_id == "CALENDAR/events/event-1.jpg"
    assert result.double_nested
    assert any("double-nested" in record.getMessage() for record in caplog.records)


def test_single_nesting_is_not_flagged(normalizer) -> None:
    assert not normalizer.classify("/storage-proxy/CALENDAR/events/event-1.jpg").double_nested
    assert not normalizer.classify(f"https://{HOST}/FORUM/forum/pic.png").double_nested


def test_percent_encoded_segments_are_decoded(normalizer) -> None:
    key = normalizer.normalize("/storage-proxy/DEFAULT/my%20photo.jpg")
    assert key.path == "my photo.jpg"


def test_reference_without_filename_gets_unnamed(normalizer) -> None:
    key = normalizer.normalize("/uploads/events/")
    assert key.file_id == "CALENDAR/events/unnamed"


@pytest.mark.parametrize("reference", ["", "   "])
def test_empty_reference_is_rejected(normalizer, reference) -> None:
    with pytest.raises(ValueError):
        normalizer.classify(reference)


@pytest.mark.parametrize(
    "key",
    [
        CanonicalKey(Bucket.BANNER, "banner-slides/hero image.jpg"),
        CanonicalKey(Bucket.CALENDAR, "events/event-1.jpg"),
        CanonicalKey(Bucket.FORUM, "forum/pic.png"),
        CanonicalKey(Bucket.LISTING, "real-estate-media/house.jpg"),
        CanonicalKey(Bucket.DEFAULT, "agenda.pdf"),
    ],
)
def test_normalize_is_idempotent_over_every_output_form(normalizer, key) -> None:
    assert normalizer.normalize(normalizer.canonical_url(key)) == key
    assert normalizer.normalize(proxy_url(key)) == key
    assert normalizer.normalize(key.file_id) == key


@pytest.mark.parametrize(
    "key",
    [
        CanonicalKey(Bucket.FORUM, "forum/photo#1.jpg"),
        CanonicalKey(Bucket.FORUM, "forum/what?.png"),
        CanonicalKey(Bucket.DEFAULT, "a%41.pdf"),
    ],
)
def test_urls_round_trip_reserved_characters(normalizer, key) -> None:
    assert normalizer.normalize(normalizer.canonical_url(key)) == key
    assert normalizer.normalize(proxy_url(key)) == key


def test_canonical_url_shape(normalizer) -> None:
    key = CanonicalKey(Bucket.BANNER, "banner-slides/hero image.jpg")
    assert normalizer.canonical_url(key) == f"https://{HOST}/BANNER/banner-slides/hero%20image.jpg"
    assert proxy_url(key) == "/storage-proxy/BANNER/banner-slides/hero%20image.jpg"


@pytest.mark.parametrize("path", ["", "events/", "../secret", "events/./x.jpg"])
def test_canonical_key_rejects_bad_paths(path) -> None:
    with pytest.raises(ValueError):
        CanonicalKey(Bucket.CALENDAR, path)


def test_key_from_file_id_roundtrip_and_rejects_unknown_bucket() -> None:
    key = key_from_file_id("LISTING/real-estate-media/house.jpg")
    assert key == CanonicalKey(Bucket.LISTING, "real-estate-media/house.jpg")
    with pytest.raises(ValueError):
        key_from_file_id("calendar/events/x.jpg")
    with pytest.raises(ValueError):
        key_from_file_id("NOPE/x.jpg")
    with pytest.raises(ValueError):
        key_from_file_id("CALENDAR")


def test_create_media_filename_format() -> None:
    name = create_media_filename("bannerImage", ".JPG")
    assert re.fullmatch(r"bannerImage-\d{13}-\d+\.jpg", name)
    assert create_media_filename("media", "png").endswith(".png")


def test_sanitize_filename() -> None:
    assert sanitize_filename("..\\..\\evil.png") == "evil.png"
    assert sanitize_filename("a/b/c.jpg") == "c.jpg"
    assert sanitize_filename("bad\x00name.jpg") == "badname.jpg"
    assert sanitize_filename("..") == "unnamed"
    assert sanitize_filename(None) == "unnamed"


def test_infer_content_type() -> None:
    assert infer_content_type("a.jpg") == "image/jpeg"
    assert infer_content_type("a.webp") == "image/webp"
    assert infer_content_type("a.unknownext") == "application/octet-stream"


def test_placeholder_per_bucket() -> None:
    assert placeholder_url(Bucket.CALENDAR).startswith("/public/placeholders/")
    assert placeholder_url(Bucket.CALENDAR) != placeholder_url(Bucket.BANNER)


@pytest.mark.parametrize(
    ("reference", "file_id"),
    [
        ("http://[broken/uploads/x.jpg", "DEFAULT/x.jpg"),
        ("https://[::1/uploads/events/x.jpg?v=2#top", "CALENDAR/events/x.jpg"),
        ("//[oops/banner-slides/slide.png", "BANNER/banner-slides/slide.png"),
    ],
)
def test_malformed_urls_fall_back_to_their_path(normalizer, reference, file_id) -> None:
    assert normalizer.normalize(reference).file_id == file_id


def test_stored_paths_key_like_references(normalizer) -> None:
    assert key_for_stored_path("uploads/bannerImage-1-2.jpg").file_id == "BANNER/banner-slides/bannerImage-1-2.jpg"
    assert key_for_stored_path("forum-media/photo#1.jpg") == CanonicalKey(Bucket.FORUM, "forum/photo#1.jpg")
    assert key_for_stored_path("uploads\\Real Estate\\a%41.jpg").path == "real-estate-media/a%41.jpg"
