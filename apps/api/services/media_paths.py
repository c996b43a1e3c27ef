"""Canonical media keys and the reference normalizer.

Media references have been written in many dialects over the years: absolute
object-store URLs, ``/storage-proxy/`` paths (with and without an ``/api``
prefix), legacy ``/uploads/<category>/`` paths, Windows separators, doubled
bucket segments, bare filenames. ``normalize`` maps all of them onto one
``CanonicalKey`` so every consumer compares the same string.

Rules are tried in priority order from ``PathNormalizer.rules``; the first rule
that claims a reference decides its bucket.
"""

from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass
from mimetypes import guess_type
from pathlib import PurePosixPath
from typing import Callable, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote, urlsplit

from apps.api import config
from apps.api.services.bucket_router import (
    BUCKET_SUBDIRS,
    Bucket,
    bucket_from_name,
    category_bucket,
    route_filename,
)

LOGGER = logging.getLogger(__name__)

PROXY_SEGMENT = "storage-proxy"
PROXY_PREFIX = f"/{PROXY_SEGMENT}"
DIRECT_FORUM_ALIAS = "direct-forum"
UNNAMED = "unnamed"

PLACEHOLDER_URLS = {
    Bucket.BANNER: "/public/placeholders/banner.jpg",
    Bucket.CALENDAR: "/public/placeholders/event.svg",
    Bucket.FORUM: "/public/placeholders/forum.jpg",
    Bucket.LISTING: "/public/placeholders/listing.jpg",
    Bucket.DEFAULT: "/public/placeholders/media.png",
}

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_QUERY_OR_FRAGMENT_RE = re.compile(r"[?#]")
_AUTHORITY_RE = re.compile(r"^(?:[A-Za-z][A-Za-z0-9+.-]*:)?//[^/]*")


@dataclass(frozen=True)
class CanonicalKey:
    """Identity of a stored media file: bucket plus bucket-relative path."""

    bucket: Bucket
    path: str

    def __post_init__(self) -> None:
        if not self.path or any(part in {"", ".", ".."} for part in self.path.split("/")):
            raise ValueError(f"Invalid canonical path {self.path!r}")

    @property
    def file_id(self) -> str:
        return f"{self.bucket.value}/{self.path}"

    @property
    def filename(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def object_key(self) -> str:
        """Key inside the physical object-store bucket."""
        return self.file_id

    def __str__(self) -> str:
        return self.file_id


@dataclass(frozen=True)
class Normalization:
    """Diagnostic result of ``classify``."""

    key: CanonicalKey
    rule: str
    double_nested: bool = False


@dataclass(frozen=True)
class _Reference:
    raw: str
    scheme: str
    host: str
    segments: Tuple[str, ...]
    dir_segments: Tuple[str, ...]
    filename: Optional[str]


# A rule returns (bucket, consumed_bucket_segment, remaining_dir_segments) or None.
_RuleResult = Optional[Tuple[Bucket, bool, Sequence[str]]]


def _split(text: str) -> Tuple[str, str, str]:
    """Return (scheme, host, path); an unparseable authority degrades to a bare path."""
    try:
        parts = urlsplit(text)
        # netloc is set for absolute and protocol-relative ("//host/path") URLs
        host = (parts.hostname or "").lower() if parts.netloc else ""
        return parts.scheme, host, parts.path
    except ValueError as exc:
        LOGGER.debug("[normalize] unparseable URL %r (%s); using its path", text, exc)
    path = _QUERY_OR_FRAGMENT_RE.split(text, maxsplit=1)[0]
    return "", "", _AUTHORITY_RE.sub("", path, count=1)


def _parse(reference: str) -> _Reference:
    text = reference.strip().replace("\\", "/")
    scheme, host, path = _split(text)
    segments = tuple(
        unquote(segment)
        for segment in path.split("/")
        if segment.strip() and segment not in {".", ".."}
    )
    if not segments:
        return _Reference(text, scheme, host, (), (), None)
    if path.endswith("/"):
        return _Reference(text, scheme, host, segments, segments, None)
    return _Reference(text, scheme, host, segments, segments[:-1], segments[-1])


def _rule_object_store_url(ref: _Reference, hosts: Iterable[str]) -> _RuleResult:
    if not ref.host or ref.host not in hosts or not ref.dir_segments:
        return None
    bucket = bucket_from_name(ref.dir_segments[0])
    if bucket is None:
        return None
    return bucket, True, ref.dir_segments[1:]


def _rule_proxy_path(ref: _Reference) -> _RuleResult:
    dirs = [segment.lower() for segment in ref.dir_segments]
    if PROXY_SEGMENT not in dirs[:2]:
        return None
    idx = dirs.index(PROXY_SEGMENT)
    if idx == 1 and dirs[0] != "api":
        return None
    rest = ref.dir_segments[idx + 1 :]
    if not rest:
        return None
    if rest[0].lower() == DIRECT_FORUM_ALIAS:
        return Bucket.FORUM, True, rest[1:]
    bucket = bucket_from_name(rest[0])
    if bucket is None:
        return None
    return bucket, True, rest[1:]


def _rule_category_path(ref: _Reference) -> _RuleResult:
    # The directory nearest the filename is the most specific signal; generic
    # DEFAULT spellings only win when nothing more specific is present.
    fallback: Optional[Bucket] = None
    for segment in reversed(ref.dir_segments):
        bucket = category_bucket(segment)
        if bucket is None:
            continue
        if bucket is not Bucket.DEFAULT:
            return bucket, False, ref.dir_segments
        fallback = fallback or bucket
    if fallback is not None:
        return fallback, False, ref.dir_segments
    return None


def _rule_filename(ref: _Reference) -> _RuleResult:
    bucket = route_filename(ref.filename)
    if bucket is None:
        return None
    return bucket, False, ref.dir_segments


def _rule_default(ref: _Reference) -> _RuleResult:
    return Bucket.DEFAULT, False, ref.dir_segments


def sanitize_filename(name: str | None) -> str:
    """Reduce ``name`` to a safe single path segment (``"unnamed"`` when nothing is left)."""
    if not name:
        return UNNAMED
    leaf = name.replace("\\", "/").rsplit("/", 1)[-1]
    leaf = _CONTROL_CHARS_RE.sub("", leaf).strip()
    if leaf in {"", ".", ".."}:
        return UNNAMED
    return leaf


def _is_double_nested(bucket: Bucket, consumed: bool, dirs: Sequence[str]) -> bool:
    # Bucket names are upper case; FORUM's lower-case subdirectory must not count as a repeat.
    bucket_hits = list(dirs).count(bucket.value) + (1 if consumed else 0)
    lowered = [segment.lower() for segment in dirs]
    subdir = BUCKET_SUBDIRS[bucket]
    subdir_hits = lowered.count(subdir) if subdir else 0
    return bucket_hits >= 2 or subdir_hits >= 2


class PathNormalizer:
    """Pure reference normalizer bound to a set of object-store hosts."""

    def __init__(
        self,
        object_store_host: str | None = None,
        legacy_hosts: Iterable[str] | None = None,
        scheme: str | None = None,
    ) -> None:
        self.object_store_host = (object_store_host or config.OBJECT_STORE_HOST).lower()
        legacy = config.LEGACY_OBJECT_STORE_HOSTS if legacy_hosts is None else legacy_hosts
        self.hosts = frozenset({self.object_store_host, *(h.lower() for h in legacy)})
        self.scheme = scheme or config.PUBLIC_SCHEME
        self.rules: List[Tuple[str, Callable[[_Reference], _RuleResult]]] = [
            ("object-store-url", lambda ref: _rule_object_store_url(ref, self.hosts)),
            ("proxy-path", _rule_proxy_path),
            ("category-path", _rule_category_path),
            ("filename", _rule_filename),
            ("default", _rule_default),
        ]

    def classify(self, reference: str) -> Normalization:
        if reference is None or not str(reference).strip():
            raise ValueError("reference must be a non-empty string")
        ref = _parse(str(reference))
        for tag, rule in self.rules:
            result = rule(ref)
            if result is None:
                continue
            bucket, consumed, dirs = result
            filename = sanitize_filename(ref.filename)
            subdir = BUCKET_SUBDIRS[bucket]
            key = CanonicalKey(bucket, f"{subdir}/{filename}" if subdir else filename)
            double_nested = _is_double_nested(bucket, consumed, dirs)
            if double_nested:
                LOGGER.info("[normalize] collapsed double-nested reference %s -> %s", reference, key.file_id)
            return Normalization(key=key, rule=tag, double_nested=double_nested)
        raise AssertionError("default rule always matches")

    def normalize(self, reference: str) -> CanonicalKey:
        return self.classify(reference).key

    def canonical_url(self, key: CanonicalKey) -> str:
        return f"{self.scheme}://{self.object_store_host}/{key.bucket.value}/{quote(key.path)}"


_DEFAULT_NORMALIZER: PathNormalizer | None = None


def get_normalizer() -> PathNormalizer:
    global _DEFAULT_NORMALIZER
    if _DEFAULT_NORMALIZER is None:
        _DEFAULT_NORMALIZER = PathNormalizer()
    return _DEFAULT_NORMALIZER


def normalize(reference: str) -> CanonicalKey:
    """Map any known reference dialect to its CanonicalKey.

    Total over non-empty strings: unrecognised input lands in DEFAULT with a
    best-effort filename. Raises ValueError for empty input only.
    """
    return get_normalizer().normalize(reference)


def classify(reference: str) -> Normalization:
    return get_normalizer().classify(reference)


def key_for_stored_path(relative_path: str) -> CanonicalKey:
    """Key a file stored at ``relative_path`` (a raw, unencoded path) answers to.

    Legacy files on disk and in the blob table are keyed exactly as a reference
    to their path would normalize, so reads and migration agree on one key.
    """
    return normalize(quote(relative_path.replace("\\", "/").strip("/")))


def canonical_url(key: CanonicalKey) -> str:
    """Absolute object-store URL for ``key``; ``normalize`` maps it back to ``key``."""
    return get_normalizer().canonical_url(key)


def proxy_url(key: CanonicalKey) -> str:
    return f"{PROXY_PREFIX}/{key.bucket.value}/{quote(key.path)}"


def placeholder_url(bucket: Bucket) -> str:
    return PLACEHOLDER_URLS.get(bucket, PLACEHOLDER_URLS[Bucket.DEFAULT])


def key_from_file_id(file_id: str) -> CanonicalKey:
    """Rebuild a key from its stored ``file_id`` form (``BUCKET/path``)."""
    bucket_name, sep, path = file_id.partition("/")
    bucket = bucket_from_name(bucket_name)
    if not sep or bucket is None or bucket.value != bucket_name:
        raise ValueError(f"Not a file_id: {file_id!r}")
    return CanonicalKey(bucket, path)


def create_media_filename(prefix: str, extension: str | None = None) -> str:
    """``{prefix}-{epoch_ms}-{random}{ext}``, the naming used by upload handlers."""
    ext = extension or ""
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    stamp = int(time.time() * 1000)
    suffix = random.randint(0, 999_999_999)
    return f"{prefix}-{stamp}-{suffix}{ext.lower()}"


def infer_content_type(name: str) -> str:
    """Best-effort MIME inference from a file name."""
    mime, _ = guess_type(name)
    if mime:
        return mime
    lowered = name.lower()
    if lowered.endswith(".webp"):
        return "image/webp"
    if lowered.endswith((".heic", ".heif")):
        return "image/heic"
    if lowered.endswith(".avif"):
        return "image/avif"
    if lowered.endswith(".mov"):
        return "video/quicktime"
    return "application/octet-stream"


def split_extension(filename: str) -> Tuple[str, str]:
    path = PurePosixPath(filename)
    return path.stem or UNNAMED, path.suffix


__all__ = [
    "CanonicalKey",
    "Normalization",
    "PathNormalizer",
    "canonical_url",
    "classify",
    "create_media_filename",
    "get_normalizer",
    "infer_content_type",
    "key_for_stored_path",
    "key_from_file_id",
    "normalize",
    "placeholder_url",
    "proxy_url",
    "sanitize_filename",
    "split_extension",
]
