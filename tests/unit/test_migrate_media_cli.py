from __future__ import annotations

import importlib.util
import json
from pathlib import Path

import pytest

from apps.api.services.bucket_router import Bucket
from apps.api.services.ledger import LedgerStatus
from apps.api.services.media_paths import CanonicalKey

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "migrate_media.py"
KEY = CanonicalKey(Bucket.CALENDAR, "events/event-1.jpg")


@pytest.fixture(scope="module")
def cli():
    spec = importlib.util.spec_from_file_location("migrate_media", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def legacy_file(media_root) -> None:
    legacy = media_root / "uploads" / "calendar"
    legacy.mkdir(parents=True)
    (legacy / "event-1.jpg").write_bytes(b"legacy")


def _output(capsys):
    return json.loads(capsys.readouterr().out)


def test_batch_is_a_dry_run_by_default(cli, media_backends, legacy_file, ledger, capsys) -> None:
    assert cli.main(["batch", "--limit", "10"]) == 0

    payload = _output(capsys)
    assert payload["dry_run"] is True
    assert payload["outcomes"][0]["outcome"] == "would_migrate"
    assert not media_backends.object_store.exists(KEY)
    assert ledger.get(KEY) is None


def test_batch_apply_migrates(cli, media_backends, legacy_file, ledger, capsys) -> None:
    assert cli.main(["batch", "--apply"]) == 0

    payload = _output(capsys)
    assert payload["migrated"] == 1
    assert "outcomes" not in payload
    assert media_backends.object_store.exists(KEY)
    assert ledger.get(KEY).status is LedgerStatus.MIGRATED


def test_status_and_failures(cli, media_backends, ledger, capsys) -> None:
    ledger.ensure_pending(KEY, "filesystem")
    ledger.claim(KEY, "r1")
    ledger.mark_failed(KEY, "r1", "boom")

    assert cli.main(["status"]) == 0
    assert _output(capsys)["failed"] == 1

    assert cli.main(["failures"]) == 0
    failures = _output(capsys)
    assert failures["count"] == 1
    assert failures["failures"][0]["last_error"] == "boom"


def test_verify_reference(cli, media_backends, legacy_file, capsys) -> None:
    assert cli.main(["verify", "/uploads/calendar/event-1.jpg"]) == 0

    payload = _output(capsys)
    assert payload["file_id"] == KEY.file_id
    assert payload["backends"] == {"object_store": False, "filesystem": True, "database": False}


def test_verify_missing_reference_exits_nonzero(cli, media_backends, capsys) -> None:
    assert cli.main(["verify", "/uploads/calendar/nope.jpg"]) == 1


def test_reset(cli, media_backends, ledger, capsys) -> None:
    ledger.ensure_pending(KEY, "filesystem")
    ledger.claim(KEY, "r1")
    ledger.mark_failed(KEY, "r1", "boom")

    assert cli.main(["reset", KEY.file_id]) == 0
    assert _output(capsys)["status"] == "PENDING"
    assert cli.main(["reset", "not-a-file-id"]) == 2


def test_rewrite_references_requires_column_with_table(cli) -> None:
    assert cli.main(["rewrite-references", "--table", "events"]) == 2


def test_rewrite_references_dispatch(cli, monkeypatch, capsys) -> None:
    calls = {}

    class _Report:
        def to_dict(self):
            return {"table": "events", "changed": 0}

    class _FakeRewriter:
        def __init__(self, batch_size=500):
            calls["batch_size"] = batch_size

        def rewrite_all(self, dry_run=True):
            calls["dry_run"] = dry_run
            return [_Report()]

    monkeypatch.setattr(cli, "ReferenceRewriter", _FakeRewriter)

    assert cli.main(["rewrite-references", "--apply", "--batch-size", "50"]) == 0
    assert calls == {"batch_size": 50, "dry_run": False}
    assert _output(capsys) == [{"table": "events", "changed": 0}]
