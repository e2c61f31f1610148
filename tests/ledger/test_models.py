"""Tests for ledger Pydantic models and the store-boundary parse."""

import json
from datetime import datetime, timezone

import pytest

from captchapay.ledger.errors import FetchFailure, MalformedRecord
from captchapay.ledger.models import (
    LedgerPatch,
    UserLedger,
    cache_key,
    default_ledger,
    dump_ledger,
    dump_snapshot,
    parse_ledger,
    parse_snapshot,
    remote_key,
    truncate_ms,
)


class TestUserLedger:

    def test_default_ledger(self):
        ledger = default_ledger()
        assert ledger.points == 0
        assert ledger.captchas_solved == 0
        assert ledger.last_captcha_time is None

    def test_wire_names(self):
        ledger = UserLedger(points=5, captchas_solved=2)
        assert dump_ledger(ledger) == {"points": 5, "captchasSolved": 2, "lastCaptchaTime": None}

    def test_timestamp_serialized_as_epoch_ms(self):
        ts = datetime(2024, 6, 10, 12, 0, 0, 123000, tzinfo=timezone.utc)
        ledger = UserLedger(points=1, captchas_solved=1, last_captcha_time=ts)
        data = dump_ledger(ledger)
        assert data["lastCaptchaTime"] == 1718020800123

    def test_snapshot_roundtrip_preserves_ms(self):
        ts = datetime(2024, 6, 10, 12, 0, 0, 456000, tzinfo=timezone.utc)
        ledger = UserLedger(points=50, captchas_solved=3, last_captcha_time=ts)
        restored = parse_snapshot(dump_snapshot(ledger))
        assert restored == ledger

    def test_frozen(self):
        ledger = default_ledger()
        with pytest.raises(Exception):
            ledger.points = 10

    def test_truncate_ms(self):
        ts = datetime(2024, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)
        assert truncate_ms(ts).microsecond == 123000


class TestParseLedger:

    def test_parses_remote_document(self):
        ledger = parse_ledger({"points": 50, "captchasSolved": 3, "lastCaptchaTime": 1718020800123})
        assert ledger.points == 50
        assert ledger.captchas_solved == 3
        assert ledger.last_captcha_time == datetime(2024, 6, 10, 12, 0, 0, 123000, tzinfo=timezone.utc)

    def test_missing_timestamp_reads_as_none(self):
        ledger = parse_ledger({"points": 0, "captchasSolved": 0})
        assert ledger.last_captcha_time is None

    def test_unknown_keys_ignored(self):
        ledger = parse_ledger({"points": 1, "captchasSolved": 0, "email": "x@example.com"})
        assert ledger.points == 1

    @pytest.mark.parametrize("raw", [
        None,
        [],
        "points",
        {"captchasSolved": 0},
        {"points": 0},
        {"points": -1, "captchasSolved": 0},
        {"points": 0, "captchasSolved": -3},
        {"points": 1.5, "captchasSolved": 0},
        {"points": "10", "captchasSolved": 0},
        {"points": True, "captchasSolved": 0},
        {"points": 0, "captchasSolved": 0, "lastCaptchaTime": True},
        {"points": 0, "captchasSolved": 0, "lastCaptchaTime": "yesterday"},
    ])
    def test_malformed_rejected(self, raw):
        with pytest.raises(MalformedRecord):
            parse_ledger(raw)

    def test_malformed_is_fetch_failure(self):
        with pytest.raises(FetchFailure) as exc_info:
            parse_ledger({"points": -1, "captchasSolved": 0})
        assert str(exc_info.value) == "Failed to load user data"
        assert "points" in exc_info.value.detail

    def test_snapshot_not_json(self):
        with pytest.raises(MalformedRecord):
            parse_snapshot("{not json")


class TestLedgerPatch:

    def test_only_set_fields_serialized(self):
        assert LedgerPatch(points=20).to_wire() == {"points": 20}
        assert LedgerPatch(captchas_solved=4).to_wire() == {"captchasSolved": 4}

    def test_timestamp_in_patch(self):
        ts = datetime(2024, 6, 10, 12, 0, 0, tzinfo=timezone.utc)
        patch = LedgerPatch(points=50, last_captcha_time=ts)
        assert patch.to_wire() == {"points": 50, "lastCaptchaTime": 1718020800000}


class TestKeys:

    def test_remote_key(self):
        assert remote_key("u1") == "users/u1"

    def test_cache_key(self):
        assert cache_key("u1") == "userData_u1"

    def test_snapshot_is_json(self):
        data = json.loads(dump_snapshot(default_ledger()))
        assert data == {"points": 0, "captchasSolved": 0, "lastCaptchaTime": None}
