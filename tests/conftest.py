import io
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("MEDIAVAULT_FAKE_DB", "1")
os.environ.setdefault("MEDIAVAULT_LAZY_MIGRATION", "ledger")

from apps.api.services.ledger import MigrationLedger, set_ledger  # noqa: E402
from apps.api.services.storage_backend import (  # noqa: E402
    DatabaseBlobBackend,
    LocalFilesystemBackend,
    MediaBackends,
    ObjectStoreBackend,
    set_media_backends,
)

TEST_BUCKET = "mediavault-test"


class _FakePaginator:
    def __init__(self, client: "FakeS3Client", page_size: int = 2) -> None:
        self.client = client
        self.page_size = page_size

    def paginate(self, Bucket, Prefix=""):  # noqa: N803 (boto shape)
        self.client._check_down()
        keys = sorted(key for (bucket, key) in self.client.objects if bucket == Bucket and key.startswith(Prefix))
        for start in range(0, len(keys), self.page_size):
            chunk = keys[start : start + self.page_size]
            yield {"Contents": [{"Key": key, "Size": len(self.client.objects[(Bucket, key)]["Body"])} for key in chunk]}
        if not keys:
            yield {"KeyCount": 0}


class FakeS3Client:
    """In-memory stand-in for the handful of S3 calls the object store backend makes."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], dict] = {}
        self.put_keys: list[str] = []
        self.down = False

    def _check_down(self) -> None:
        if self.down:
            raise EndpointConnectionError(endpoint_url="https://objects.test")

    @staticmethod
    def _missing(operation: str, code: str = "404") -> ClientError:
        return ClientError({"Error": {"Code": code, "Message": "Not Found"}}, operation)

    def head_bucket(self, Bucket):  # noqa: N803
        self._check_down()
        return {}

    def put_object(self, Bucket, Key, Body, ContentType=None, CacheControl=None):  # noqa: N803
        self._check_down()
        data = Body if isinstance(Body, (bytes, bytearray)) else Body.read()
        self.objects[(Bucket, Key)] = {"Body": bytes(data), "ContentType": ContentType, "CacheControl": CacheControl}
        self.put_keys.append(Key)
        return {"ETag": '"fake-etag"'}

    def head_object(self, Bucket, Key):  # noqa: N803
        self._check_down()
        obj = self.objects.get((Bucket, Key))
        if obj is None:
            raise self._missing("HeadObject")
        return {"ContentLength": len(obj["Body"]), "ContentType": obj["ContentType"]}

    def get_object(self, Bucket, Key):  # noqa: N803
        self._check_down()
        obj = self.objects.get((Bucket, Key))
        if obj is None:
            raise self._missing("GetObject", "NoSuchKey")
        return {"Body": io.BytesIO(obj["Body"]), "ContentType": obj["ContentType"], "ContentLength": len(obj["Body"])}

    def delete_object(self, Bucket, Key):  # noqa: N803
        self._check_down()
        self.objects.pop((Bucket, Key), None)
        return {}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return _FakePaginator(self)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def object_store(fake_s3) -> ObjectStoreBackend:
    return ObjectStoreBackend(client=fake_s3, bucket=TEST_BUCKET, sleep=lambda _seconds: None)


@pytest.fixture
def media_root(tmp_path) -> Path:
    root = tmp_path / "media"
    root.mkdir()
    return root


@pytest.fixture
def filesystem(media_root) -> LocalFilesystemBackend:
    return LocalFilesystemBackend(media_root)


@pytest.fixture
def database() -> DatabaseBlobBackend:
    return DatabaseBlobBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock) -> MigrationLedger:
    return MigrationLedger(max_attempts=3, lease_seconds=900, clock=clock)


@pytest.fixture
def media_backends(object_store, filesystem, database, ledger):
    """Install the fake backend trio and ledger as the process-wide singletons."""
    backends = MediaBackends(object_store=object_store, filesystem=filesystem, database=database)
    set_media_backends(backends)
    set_ledger(ledger)
    yield backends
    set_media_backends(None)
    set_ledger(None)
