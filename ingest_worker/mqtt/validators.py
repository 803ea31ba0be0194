"""Validation and normalization of telemetry payloads.

Turns the raw bytes of an MQTT message into a ``Telemetry`` value or a
discard decision. Only ``v`` and ``ts`` are type-checked; every other field
is passed through untouched and persisted with the document.

Timestamp rules for ``ts``:
- absent                -> ingestion time
- number >= 1e12        -> milliseconds since epoch
- number <  1e12        -> seconds since epoch (fraction allowed)
- ISO-8601 string       -> parsed, naive values read as UTC
- anything unparsable   -> ingestion time (never a discard)
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictFloat, StrictInt, StrictStr, ValidationError, field_validator

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MILLISECONDS_THRESHOLD = 1e12

REASON_UNDECODABLE = "undecodable payload"
REASON_NON_STRUCTURED = "non-structured payload"
REASON_SCHEMA = "schema violation"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TelemetryPayload(BaseModel):
    """Schema of a telemetry document.

    Open schema: unknown fields are allowed and kept. ``null`` on a known
    field counts as absent.
    """

    model_config = ConfigDict(extra="allow")

    v: Optional[Union[StrictInt, StrictFloat]] = None
    ts: Optional[Union[StrictInt, StrictFloat, StrictStr]] = None

    @field_validator("v")
    @classmethod
    def validate_value(cls, v):
        if v is not None and not math.isfinite(v):
            raise ValueError("v is not a finite number")
        return v


@dataclass(frozen=True)
class Telemetry:
    """A validated message: normalized event time plus the full document."""

    ts: datetime
    payload: dict[str, Any]


@dataclass
class NormalizationResult:
    """Resultado de normalización."""

    accepted: bool
    telemetry: Optional[Telemetry] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def discard(cls, reason: str, detail: Optional[str] = None) -> "NormalizationResult":
        return cls(accepted=False, reason=reason, detail=detail)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def parse_iso_timestamp(value: str) -> Optional[datetime]:
    """Parses an ISO-8601 string to an aware UTC datetime, None if invalid."""
    text = value.strip()
    if not text:
        return None
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        # Offsets near year 1 or 9999 can shift the instant out of range.
        dt = dt.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None
    return dt.replace(microsecond=dt.microsecond // 1000 * 1000)


def coerce_timestamp(value: Union[int, float, str, None], now: datetime) -> datetime:
    """Normalizes a ``ts`` field to an absolute UTC instant."""
    if value is None:
        return now

    if isinstance(value, str):
        parsed = parse_iso_timestamp(value)
        if parsed is None:
            logger.debug("[NORMALIZER] Unparsable ts=%r, using ingestion time", value)
            return now
        return parsed

    if not math.isfinite(value):
        return now
    try:
        if value >= MILLISECONDS_THRESHOLD:
            millis = round(value)
        else:
            millis = round(value * 1000)
        return EPOCH + timedelta(milliseconds=millis)
    except OverflowError:
        logger.debug("[NORMALIZER] Out of range ts=%r, using ingestion time", value)
        return now


class PayloadNormalizer:
    """Decodes, parses, validates and normalizes raw telemetry bytes."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    def normalize(self, raw: bytes) -> NormalizationResult:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            return NormalizationResult.discard(REASON_UNDECODABLE, str(e))

        try:
            data = json.loads(text, parse_constant=_reject_constant)
        except (ValueError, RecursionError) as e:
            return NormalizationResult.discard(REASON_NON_STRUCTURED, str(e))

        if not isinstance(data, dict):
            return NormalizationResult.discard(
                REASON_SCHEMA, f"expected a JSON object, got {type(data).__name__}"
            )

        try:
            document = TelemetryPayload.model_validate(data)
        except ValidationError as e:
            fields = ",".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            return NormalizationResult.discard(REASON_SCHEMA, f"invalid fields: {fields}")

        ts = coerce_timestamp(document.ts, self._clock())
        return NormalizationResult(accepted=True, telemetry=Telemetry(ts=ts, payload=data))


def normalize_payload(raw: bytes, now: Optional[datetime] = None) -> NormalizationResult:
    """Module-level shortcut, mainly for callers without a custom clock."""
    if now is None:
        return PayloadNormalizer().normalize(raw)
    return PayloadNormalizer(clock=lambda: now).normalize(raw)
