"""Central configuration for the MEDIAVAULT API.

Consolidates environment-based config for Redis, Celery, storage backends,
the media database and the migration engine.
"""

import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def _csv(name: str, default: str = "") -> tuple:
    return tuple(item.strip().lower() for item in os.getenv(name, default).split(",") if item.strip())


# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Celery Configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)

# Storage Configuration
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "s3")
S3_BUCKET = os.getenv("MEDIAVAULT_S3_BUCKET", os.getenv("AWS_S3_BUCKET", "mediavault"))
AWS_REGION = os.getenv("AWS_DEFAULT_REGION", "us-east-1")
S3_AUTO_CREATE = _flag("S3_AUTO_CREATE")
OBJECT_STORE_ENDPOINT = os.getenv("MEDIAVAULT_OBJECT_STORE_ENDPOINT")
OBJECT_STORE_HOST = os.getenv("MEDIAVAULT_OBJECT_STORE_HOST", "objects.mediavault.dev")
# Hosts that served the object store in earlier deployments (comma separated)
LEGACY_OBJECT_STORE_HOSTS = _csv("MEDIAVAULT_LEGACY_OBJECT_STORE_HOSTS", "object-storage.replit.app")
PUBLIC_SCHEME = os.getenv("MEDIAVAULT_PUBLIC_SCHEME", "https")
MEDIA_ROOT = os.getenv("MEDIAVAULT_MEDIA_ROOT", "data/media")
MIRROR_UPLOADS = _flag("MEDIAVAULT_MIRROR_UPLOADS")

# Database Configuration
DB_URL_ENV = "DB_URL"
FAKE_DB_ENV = "MEDIAVAULT_FAKE_DB"

# Backend call timeout (seconds) applied to S3 and Postgres calls
BACKEND_TIMEOUT = float(os.getenv("MEDIAVAULT_BACKEND_TIMEOUT", "10"))

# Migration Configuration
MIGRATION_BATCH_SIZE = int(os.getenv("MEDIAVAULT_MIGRATION_BATCH_SIZE", "50"))
MIGRATION_MAX_ATTEMPTS = int(os.getenv("MEDIAVAULT_MIGRATION_MAX_ATTEMPTS", "3"))
CLAIM_LEASE_SECONDS = int(os.getenv("MEDIAVAULT_CLAIM_LEASE_SECONDS", "900"))  # 15 minutes
# How fallback reads heal the object store: "celery" (enqueue a copy), "ledger" (queue as PENDING), "off"
LAZY_MIGRATION_MODE = os.getenv("MEDIAVAULT_LAZY_MIGRATION", "celery").strip().lower()

# Upload Configuration
MAX_UPLOAD_BYTES = int(os.getenv("MEDIAVAULT_MAX_UPLOAD_BYTES", str(100 * 1024 * 1024)))

# API Configuration
API_HOST = os.getenv("API_HOST", "localhost")
API_PORT = int(os.getenv("API_PORT", "8000"))
