"""Fallback resolver: find a media reference across backends in precedence order.

The object store is authoritative. A hit in any other backend is served from
that backend and the key is handed to the migration scheduler, so reads heal
the object store lazily.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from apps.api.services.media_errors import BackendUnavailable, NotFound
from apps.api.services.media_paths import CanonicalKey, PathNormalizer, get_normalizer
from apps.api.services.storage_backend import MediaBackend, StorageObject

LOGGER = logging.getLogger(__name__)

MigrationScheduler = Callable[[CanonicalKey, str], None]


class ResolveMode(str, Enum):
    STREAM = "stream"
    REDIRECT = "redirect"


@dataclass
class ResolvedMedia:
    key: CanonicalKey
    backend: str
    action: ResolveMode
    redirect_url: str | None = None
    obj: StorageObject | None = None
    migration_scheduled: bool = False


class FallbackResolver:
    def __init__(
        self,
        backends: Sequence[MediaBackend],
        *,
        scheduler: MigrationScheduler | None = None,
        normalizer: PathNormalizer | None = None,
    ) -> None:
        if not backends:
            raise ValueError("at least one backend is required")
        self.backends = list(backends)
        self.scheduler = scheduler
        self.normalizer = normalizer or get_normalizer()

    @property
    def primary(self) -> MediaBackend:
        return self.backends[0]

    def resolve(self, reference: str | CanonicalKey, mode: ResolveMode = ResolveMode.STREAM) -> ResolvedMedia:
        """Locate ``reference`` and either stream its bytes or redirect to the object store.

        Raises NotFound when no backend has it, or BackendUnavailable when none
        has it and at least one backend could not be asked.
        """
        key = reference if isinstance(reference, CanonicalKey) else self.normalizer.normalize(reference)
        unavailable: List[str] = []
        for index, backend in enumerate(self.backends):
            try:
                if index == 0 and mode is ResolveMode.REDIRECT:
                    if not backend.exists(key):
                        continue
                    return ResolvedMedia(
                        key=key,
                        backend=backend.name,
                        action=ResolveMode.REDIRECT,
                        redirect_url=self.normalizer.canonical_url(key),
                    )
                obj = backend.read(key)
            except NotFound:
                continue
            except BackendUnavailable as exc:
                LOGGER.warning("[resolver] %s unavailable while resolving %s: %s", backend.name, key.file_id, exc.message)
                unavailable.append(backend.name)
                continue

            resolved = ResolvedMedia(key=key, backend=backend.name, action=ResolveMode.STREAM, obj=obj)
            if index > 0:
                LOGGER.info("[resolver] %s served from fallback %s", key.file_id, backend.name)
                resolved.migration_scheduled = self._schedule(key, backend.name)
            return resolved

        if unavailable:
            raise BackendUnavailable(",".join(unavailable), f"{key.file_id} not found; some backends unreachable")
        raise NotFound(key.file_id, [backend.name for backend in self.backends])

    def _schedule(self, key: CanonicalKey, source: str) -> bool:
        if self.scheduler is None:
            return False
        try:
            self.scheduler(key, source)
        except Exception as exc:
            # The read already succeeded; healing is retried on the next fallback hit.
            LOGGER.warning("[resolver] could not schedule migration for %s: %s", key.file_id, exc)
            return False
        return True

    def verify(self, reference: str | CanonicalKey) -> Dict[str, Optional[bool]]:
        """Presence of ``reference`` per backend (None when the backend was unreachable)."""
        key = reference if isinstance(reference, CanonicalKey) else self.normalizer.normalize(reference)
        presence: Dict[str, Optional[bool]] = {}
        for backend in self.backends:
            try:
                presence[backend.name] = backend.exists(key)
            except BackendUnavailable as exc:
                LOGGER.warning("[resolver] %s unavailable while verifying %s: %s", backend.name, key.file_id, exc.message)
                presence[backend.name] = None
        return presence


def ledger_scheduler(ledger) -> MigrationScheduler:
    """Scheduler that only queues the key as PENDING for the next migration batch."""

    def _schedule(key: CanonicalKey, source: str) -> None:
        ledger.ensure_pending(key, source)

    return _schedule


__all__ = [
    "FallbackResolver",
    "MigrationScheduler",
    "ledger_scheduler",
    "ResolveMode",
    "ResolvedMedia",
]
