"""Typed errors raised by the media resolution and migration layer."""

from __future__ import annotations

from typing import Any, Dict


class MediaError(Exception):
    """Base class for media layer errors."""

    code = "MEDIA_ERROR"

    def __init__(self, message: str, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFound(MediaError):
    """Key absent in every backend consulted. Callers may substitute a placeholder."""

    code = "NOT_FOUND"

    def __init__(self, file_id: str, backends: list[str] | None = None) -> None:
        super().__init__(
            f"Media not found: {file_id}",
            {"file_id": file_id, "backends": list(backends or [])},
        )
        self.file_id = file_id


class BackendUnavailable(MediaError):
    """Transient network/database failure; retried with bounded backoff by the caller."""

    code = "BACKEND_UNAVAILABLE"

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"[{backend}] {message}", {"backend": backend})
        self.backend = backend


class Unsupported(MediaError):
    """Operation not implemented by a backend."""

    code = "UNSUPPORTED"

    def __init__(self, backend: str, operation: str) -> None:
        super().__init__(
            f"Backend '{backend}' does not support '{operation}'",
            {"backend": backend, "operation": operation},
        )
        self.backend = backend
        self.operation = operation


class Conflict(MediaError):
    """A single-flight claim on a ledger entry was lost to another worker."""

    code = "CONFLICT"

    def __init__(self, file_id: str, message: str = "claim held by another worker") -> None:
        super().__init__(f"{file_id}: {message}", {"file_id": file_id})
        self.file_id = file_id


class Corrupt(MediaError):
    """Byte length or content-type mismatch detected after a write."""

    code = "CORRUPT"

    def __init__(self, file_id: str, message: str) -> None:
        super().__init__(f"{file_id}: {message}", {"file_id": file_id})
        self.file_id = file_id


class InvalidMedia(MediaError):
    """Upload payload rejected before any backend was touched."""

    code = "INVALID_MEDIA"


__all__ = [
    "BackendUnavailable",
    "Conflict",
    "Corrupt",
    "InvalidMedia",
    "MediaError",
    "NotFound",
    "Unsupported",
]
