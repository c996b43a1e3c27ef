"""Content-category routing for media buckets.

Every signal that has ever identified where a media file belongs (URL path
segments, upload form field names, legacy directory names) is listed in one
static table. Adding a spelling means adding a row here, never a branch in the
callers.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Tuple


class Bucket(str, Enum):
    BANNER = "BANNER"
    CALENDAR = "CALENDAR"
    FORUM = "FORUM"
    LISTING = "LISTING"
    DEFAULT = "DEFAULT"


# Canonical per-bucket subdirectory inside the object store. DEFAULT is flat.
BUCKET_SUBDIRS: Dict[Bucket, str] = {
    Bucket.BANNER: "banner-slides",
    Bucket.CALENDAR: "events",
    Bucket.FORUM: "forum",
    Bucket.LISTING: "real-estate-media",
    Bucket.DEFAULT: "",
}

# Bucket identifiers used by older object-store layouts.
LEGACY_BUCKET_NAMES: Dict[str, Bucket] = {
    "REAL_ESTATE": Bucket.LISTING,
    "REAL-ESTATE": Bucket.LISTING,
    "VENDORS": Bucket.DEFAULT,
    "COMMUNITY": Bucket.DEFAULT,
    "AVATAR": Bucket.DEFAULT,
}

# Keys are stored in token form (see ``category_token``).
CATEGORY_SYNONYMS: Dict[str, Bucket] = {
    # Banner slides
    "banner": Bucket.BANNER,
    "banners": Bucket.BANNER,
    "banner-slide": Bucket.BANNER,
    "banner-slides": Bucket.BANNER,
    "bannerslides": Bucket.BANNER,
    "bannerimage": Bucket.BANNER,
    "bannervideo": Bucket.BANNER,
    "slide": Bucket.BANNER,
    "slides": Bucket.BANNER,
    # Calendar events
    "calendar": Bucket.CALENDAR,
    "calendar-media": Bucket.CALENDAR,
    "calendar-events": Bucket.CALENDAR,
    "event": Bucket.CALENDAR,
    "events": Bucket.CALENDAR,
    "event-media": Bucket.CALENDAR,
    "eventmedia": Bucket.CALENDAR,
    # Forum
    "forum": Bucket.FORUM,
    "forums": Bucket.FORUM,
    "forum-media": Bucket.FORUM,
    "forummedia": Bucket.FORUM,
    "forum-posts": Bucket.FORUM,
    "post": Bucket.FORUM,
    "posts": Bucket.FORUM,
    "thread": Bucket.FORUM,
    "threads": Bucket.FORUM,
    "comment": Bucket.FORUM,
    "comments": Bucket.FORUM,
    # Listings (real estate / for sale)
    "listing": Bucket.LISTING,
    "listings": Bucket.LISTING,
    "real-estate": Bucket.LISTING,
    "real-estate-media": Bucket.LISTING,
    "realestate": Bucket.LISTING,
    "for-sale": Bucket.LISTING,
    "for-sale-media": Bucket.LISTING,
    "forsale": Bucket.LISTING,
    "property": Bucket.LISTING,
    "properties": Bucket.LISTING,
    "classifieds": Bucket.LISTING,
    # Generic media
    "default": Bucket.DEFAULT,
    "general": Bucket.DEFAULT,
    "vendor": Bucket.DEFAULT,
    "vendors": Bucket.DEFAULT,
    "vendor-media": Bucket.DEFAULT,
    "community": Bucket.DEFAULT,
    "community-media": Bucket.DEFAULT,
    "content-media": Bucket.DEFAULT,
    "avatar": Bucket.DEFAULT,
    "avatars": Bucket.DEFAULT,
    "profile": Bucket.DEFAULT,
    "icons": Bucket.DEFAULT,
    "products": Bucket.DEFAULT,
    "announcement": Bucket.DEFAULT,
    "news": Bucket.DEFAULT,
}

# Ordered: the first matching filename prefix wins.
FILENAME_PREFIX_RULES: Tuple[Tuple[str, Bucket], ...] = (
    ("bannerimage-", Bucket.BANNER),
    ("bannervideo-", Bucket.BANNER),
    ("banner-", Bucket.BANNER),
    ("slide-", Bucket.BANNER),
    ("eventmedia-", Bucket.CALENDAR),
    ("event-", Bucket.CALENDAR),
    ("events-", Bucket.CALENDAR),
    ("calendar-", Bucket.CALENDAR),
    ("forummedia-", Bucket.FORUM),
    ("forum-", Bucket.FORUM),
    ("post-", Bucket.FORUM),
    ("comment-", Bucket.FORUM),
    ("listingimage-", Bucket.LISTING),
    ("listing-", Bucket.LISTING),
    ("real-estate-", Bucket.LISTING),
    ("property-", Bucket.LISTING),
    ("forsale-", Bucket.LISTING),
    # Generic upload handlers shared by several features.
    ("mediafile-", Bucket.DEFAULT),
    ("media-", Bucket.DEFAULT),
    ("upload-", Bucket.DEFAULT),
    ("file-", Bucket.DEFAULT),
)

EXTENSION_RULES: Dict[str, Bucket] = {
    ".pdf": Bucket.DEFAULT,
    ".doc": Bucket.DEFAULT,
    ".docx": Bucket.DEFAULT,
    ".txt": Bucket.DEFAULT,
    ".csv": Bucket.DEFAULT,
    ".xls": Bucket.DEFAULT,
    ".xlsx": Bucket.DEFAULT,
}

# Directory spellings that have held each bucket's files on disk or in the
# media_files backup table. Canonical subdirectory first.
LEGACY_DIRECTORIES: Dict[Bucket, Tuple[str, ...]] = {
    Bucket.BANNER: ("banner-slides",),
    Bucket.CALENDAR: ("events", "calendar", "calendar-media"),
    Bucket.FORUM: ("forum", "forum-media"),
    Bucket.LISTING: ("real-estate-media", "Real Estate", "for-sale-media"),
    Bucket.DEFAULT: (
        "",
        "media",
        "vendor-media",
        "community-media",
        "content-media",
        "avatars",
        "icons",
        "products",
        "generated",
        "attached_assets",
    ),
}
UPLOADS_PREFIX = "uploads"

_TOKEN_RE = re.compile(r"[\s_]+")


def category_token(value: str) -> str:
    """Fold a category spelling to its table form (case, spaces, underscores)."""
    return _TOKEN_RE.sub("-", value.strip().lower())


def category_bucket(value: str | None) -> Optional[Bucket]:
    """Return the bucket for a known category spelling, or None."""
    if not value:
        return None
    return CATEGORY_SYNONYMS.get(category_token(value))


def is_category_token(value: str | None) -> bool:
    return category_bucket(value) is not None


def bucket_from_name(value: str | None) -> Optional[Bucket]:
    """Parse a bucket identifier as it appears in object-store and proxy URLs."""
    if not value:
        return None
    upper = value.strip().upper()
    try:
        return Bucket(upper)
    except ValueError:
        return LEGACY_BUCKET_NAMES.get(upper)


def route_filename(filename: str | None) -> Optional[Bucket]:
    """Best-guess bucket from filename prefix conventions and extension."""
    if not filename:
        return None
    name = PurePosixPath(filename).name.lower()
    for prefix, bucket in FILENAME_PREFIX_RULES:
        if name.startswith(prefix):
            return bucket
    return EXTENSION_RULES.get(PurePosixPath(name).suffix)


def route(category: str | None, filename: str | None = None) -> Bucket:
    """Map a content-origin signal to its bucket. Never fails.

    ``category`` may be a bucket name, a synonym, a form field name or a legacy
    directory. When it is missing or unknown the filename is used as a hint;
    anything unclassified lands in DEFAULT.
    """
    bucket = bucket_from_name(category) or category_bucket(category)
    if bucket is not None:
        return bucket
    return route_filename(filename) or Bucket.DEFAULT


def legacy_directories(bucket: Bucket) -> List[str]:
    """Relative directories (including ``uploads/`` variants) that may hold ``bucket`` files."""
    dirs: List[str] = []
    for name in LEGACY_DIRECTORIES[bucket]:
        dirs.append(name)
    for name in LEGACY_DIRECTORIES[bucket]:
        dirs.append(f"{UPLOADS_PREFIX}/{name}" if name else UPLOADS_PREFIX)
    return dirs


def all_legacy_directories() -> List[str]:
    seen: List[str] = []
    for bucket in Bucket:
        for name in legacy_directories(bucket):
            if name not in seen:
                seen.append(name)
    return seen


__all__ = [
    "BUCKET_SUBDIRS",
    "Bucket",
    "CATEGORY_SYNONYMS",
    "all_legacy_directories",
    "bucket_from_name",
    "category_bucket",
    "category_token",
    "is_category_token",
    "legacy_directories",
    "route",
    "route_filename",
]
