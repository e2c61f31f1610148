"""Pydantic models for the per-user points ledger.

Wire format (remote documents and device-cache snapshots) uses camelCase
keys and epoch milliseconds for timestamps:

    {"points": 50, "captchasSolved": 3, "lastCaptchaTime": 1718000000000}

Raw records are parsed here, at the store boundary; anything that does not
match the shape raises MalformedRecord instead of leaking into the
synchronizer.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from .errors import MalformedRecord


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

REMOTE_KEY_PREFIX = "users/"
CACHE_KEY_PREFIX = "userData_"


def remote_key(identity: str) -> str:
    """Document key of an identity's ledger in the RemoteStore."""
    return f"{REMOTE_KEY_PREFIX}{identity}"


def cache_key(identity: str) -> str:
    """Snapshot key of an identity's ledger in the DeviceCache."""
    return f"{CACHE_KEY_PREFIX}{identity}"


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // _ONE_MS


def from_epoch_ms(value: int | float) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


def truncate_ms(value: datetime) -> datetime:
    """Drop sub-millisecond precision so in-memory values survive the wire."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def _coerce_timestamp(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        try:
            return from_epoch_ms(value)
        except OverflowError as e:
            raise ValueError(f"timestamp out of range: {value}") from e
    return value


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class UserLedger(BaseModel):
    """Points balance and counters of one identity.

    Immutable: mutations produce a new instance via ``model_copy``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    points: int = Field(ge=0, strict=True)
    captchas_solved: int = Field(alias="captchasSolved", ge=0, strict=True)
    # Document stores drop null leaves, so a missing key reads as None.
    last_captcha_time: datetime | None = Field(default=None, alias="lastCaptchaTime")

    @field_validator("last_captcha_time", mode="before")
    @classmethod
    def _parse_time(cls, v: Any) -> Any:
        return _coerce_timestamp(v)

    @field_serializer("last_captcha_time")
    def _dump_time(self, v: datetime | None) -> int | None:
        return to_epoch_ms(v) if v is not None else None


class LedgerPatch(BaseModel):
    """Partial update payload: only the fields an operation changed."""

    model_config = ConfigDict(populate_by_name=True)

    points: int | None = Field(default=None, ge=0)
    captchas_solved: int | None = Field(default=None, alias="captchasSolved", ge=0)
    last_captcha_time: datetime | None = Field(default=None, alias="lastCaptchaTime")

    @field_serializer("last_captcha_time")
    def _dump_time(self, v: datetime | None) -> int | None:
        return to_epoch_ms(v) if v is not None else None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


def default_ledger() -> UserLedger:
    """Record bootstrapped for an identity with no remote document."""
    return UserLedger(points=0, captchas_solved=0, last_captcha_time=None)


# ---------------------------------------------------------------------------
# Boundary parse / dump
# ---------------------------------------------------------------------------


def parse_ledger(raw: Any) -> UserLedger:
    """Validate a raw remote document into a UserLedger.

    Raises:
        MalformedRecord: if the record is not a mapping of the expected shape.
    """
    if not isinstance(raw, dict):
        raise MalformedRecord(f"expected object, got {type(raw).__name__}")
    try:
        return UserLedger.model_validate(raw)
    except ValidationError as e:
        raise MalformedRecord(str(e)) from e


def parse_snapshot(raw: str) -> UserLedger:
    """Validate a serialized DeviceCache snapshot."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"snapshot is not JSON: {e}") from e
    return parse_ledger(data)


def dump_ledger(ledger: UserLedger) -> dict[str, Any]:
    """Serialize a ledger as a wire document."""
    return ledger.model_dump(mode="json", by_alias=True)


def dump_snapshot(ledger: UserLedger) -> str:
    return json.dumps(dump_ledger(ledger), sort_keys=True)


__all__ = [
    "CACHE_KEY_PREFIX",
    "LedgerPatch",
    "REMOTE_KEY_PREFIX",
    "UserLedger",
    "cache_key",
    "default_ledger",
    "dump_ledger",
    "dump_snapshot",
    "from_epoch_ms",
    "parse_ledger",
    "parse_snapshot",
    "remote_key",
    "to_epoch_ms",
    "truncate_ms",
]
