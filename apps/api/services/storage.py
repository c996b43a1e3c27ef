"""Object-store client construction and transient-error retry helpers."""

from __future__ import annotations

import logging
import ssl
import time
from typing import Any, Callable, Dict, TypeVar

from botocore.exceptions import ConnectionError as BotoConnectionError  # type: ignore
from urllib3.exceptions import SSLError as Urllib3SSLError

from apps.api import config
from apps.api.services.media_errors import BackendUnavailable

LOGGER = logging.getLogger(__name__)

# Retry configuration for transient backend errors
TRANSIENT_MAX_RETRIES = 3
TRANSIENT_RETRY_BASE_DELAY = 0.5  # seconds
TRANSIENT_RETRY_MAX_DELAY = 8.0  # seconds

_TRANSIENT_S3_CODES = {
    "RequestTimeout",
    "RequestTimeoutException",
    "SlowDown",
    "ServiceUnavailable",
    "InternalError",
    "Throttling",
    "503",
    "500",
}

T = TypeVar("T")


def _boto3():
    import boto3  # type: ignore

    return boto3


def client_error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


def _is_retryable_error(exc: Exception) -> bool:
    """Check if an exception is a retryable network/SSL/throttling error."""
    if isinstance(exc, BackendUnavailable):
        return True
    # SSL errors
    if isinstance(exc, (ssl.SSLError, Urllib3SSLError, ConnectionError, TimeoutError, BotoConnectionError)):
        return True
    # Check nested exceptions for SSL errors
    if exc.__cause__ is not None and isinstance(exc.__cause__, (ssl.SSLError, Urllib3SSLError)):
        return True
    if client_error_code(exc) in _TRANSIENT_S3_CODES:
        return True
    # Botocore connection errors are wrapped in several exception types
    exc_str = str(exc).lower()
    if any(kw in exc_str for kw in ("ssl", "connection reset", "connection aborted", "timeout", "timed out")):
        return True
    return False


def retry_transient(
    operation: Callable[[], T],
    description: str,
    *,
    max_retries: int = TRANSIENT_MAX_RETRIES,
    base_delay: float = TRANSIENT_RETRY_BASE_DELAY,
    max_delay: float = TRANSIENT_RETRY_MAX_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute a backend operation with exponential backoff for transient errors.

    Args:
        operation: Callable that performs the backend call
        description: Human-readable description for logging
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)

    Returns:
        Result of the operation

    Raises:
        Exception: Re-raises the last exception if it is not transient or all retries fail
    """
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except Exception as exc:
            if not _is_retryable_error(exc) or attempt >= max_retries:
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            LOGGER.warning(
                "Retryable error on %s (attempt %d/%d), retrying in %.1fs: %s",
                description,
                attempt + 1,
                max_retries + 1,
                delay,
                exc,
            )
            sleep(delay)
    raise RuntimeError("Retry loop exited unexpectedly")


def create_s3_client(
    *,
    endpoint_url: str | None = None,
    region: str | None = None,
    timeout: float | None = None,
) -> Any:
    """Build a boto3 S3 client whose every call carries connect/read timeouts."""
    from botocore.config import Config  # type: ignore

    boto3_mod = _boto3()
    seconds = config.BACKEND_TIMEOUT if timeout is None else timeout
    client_kwargs: Dict[str, object] = {
        "region_name": region or config.AWS_REGION,
        "config": Config(
            connect_timeout=seconds,
            read_timeout=seconds,
            retries={"max_attempts": 2, "mode": "standard"},
        ),
    }
    endpoint = endpoint_url or config.OBJECT_STORE_ENDPOINT
    if endpoint:
        client_kwargs["endpoint_url"] = endpoint
    return boto3_mod.client("s3", **client_kwargs)


def ensure_bucket(client: Any, bucket: str, *, region: str | None = None, auto_create: bool | None = None) -> None:
    """Verify the physical bucket exists, creating it when S3_AUTO_CREATE is set."""
    from botocore.exceptions import ClientError  # type: ignore

    create = config.S3_AUTO_CREATE if auto_create is None else auto_create
    region_name = region or config.AWS_REGION
    try:
        client.head_bucket(Bucket=bucket)
    except ClientError as exc:
        if not create:
            raise RuntimeError(
                f"Bucket {bucket} does not exist. Create it or set S3_AUTO_CREATE=1"
            ) from exc
        create_kwargs: Dict[str, Any] = {"Bucket": bucket}
        if region_name != "us-east-1":
            create_kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region_name}
        client.create_bucket(**create_kwargs)
        LOGGER.info("[object-store] created bucket %s", bucket)


__all__ = [
    "client_error_code",
    "create_s3_client",
    "ensure_bucket",
    "retry_transient",
]
