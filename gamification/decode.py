"""Decoding and schema classification of public ledger epoch messages."""

from __future__ import annotations

import datetime as dt
import enum
import json
import re
from dataclasses import dataclass
from typing import Any

from .store import EpochEnergy

__all__ = [
    "MISSING",
    "LedgerRecord",
    "DecodeError",
    "MatchedAtMissing",
    "decode_ledger_message",
    "normalize_ledger_schema",
    "parse_epoch",
    "parse_matched_at",
    "parse_epoch_index",
    "parse_energy_value",
]

EVENT_TYPE_EPOCH_PUBLIC = "epoch.public"
ENERGY_FIELD = "aggregator.summary.zoneEnergyKWhEpoch"

_UTC = dt.timezone.utc
_UNIX_EPOCH = dt.datetime(1970, 1, 1, tzinfo=_UTC)
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_INT_RE = re.compile(r"[+-]?[0-9]+")
_JSON_NUMBER_RE = re.compile(r"-?(?:0|[1-9][0-9]*)(?:\.[0-9]+)?(?:[eE][+-]?[0-9]+)?")
_RFC3339_RE = re.compile(
    r"([0-9]{4})-([0-9]{2})-([0-9]{2})T([0-9]{2}):([0-9]{2}):([0-9]{2})"
    r"(?:\.([0-9]+))?(?:(Z)|([+-])([0-9]{2}):([0-9]{2}))"
)


class _Missing(enum.Enum):
    MISSING = enum.auto()

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing.MISSING
"""Marks a field that is absent from the payload, as opposed to JSON null."""


class DecodeError(ValueError):
    """A ledger payload could not be decoded.

    Carries the message type and schema version when they were read before the failure.
    """

    def __init__(self, message: str, *, message_type: str = "", schema: str = "") -> None:
        super().__init__(message)
        self.message_type = message_type
        self.schema = schema


class MatchedAtMissing(DecodeError):
    """A payload that requires matchedAt does not carry it."""

    def __init__(self, message: str = "matchedAt missing", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


@dataclass(frozen=True)
class LedgerRecord:
    """A decoded ledger message."""

    energy: EpochEnergy
    schema: str = ""
    message_type: str = ""
    energy_absent: bool = False


@dataclass(frozen=True)
class _JSONNumber:
    text: str


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid character {name!r} looking for beginning of value")


_DECODER = json.JSONDecoder(
    parse_int=_JSONNumber,
    parse_float=_JSONNumber,
    parse_constant=_reject_constant,
)


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (_JSONNumber, int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _quoted(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _int64(text: str) -> int | None:
    if not _INT_RE.fullmatch(text):
        return None
    number = int(text)
    return number if _INT64_MIN <= number <= _INT64_MAX else None


def _float(text: str) -> float | None:
    if not text.isascii() or "_" in text or text != text.strip():
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if number in (float("inf"), float("-inf")) and "inf" not in text.lower():
        return None
    return number


def _number_text(value: Any) -> str | None:
    """The numeric text of a value that a JSON number target would accept."""
    if isinstance(value, _JSONNumber):
        return value.text
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value) if value == value and abs(value) != float("inf") else None
    if isinstance(value, str) and _JSON_NUMBER_RE.fullmatch(value):
        return value
    return None


def _parse_rfc3339(text: str) -> dt.datetime | None:
    match = _RFC3339_RE.fullmatch(text)
    if not match:
        return None
    year, month, day, hour, minute, second = (int(match.group(i)) for i in range(1, 7))
    micro = int(((match.group(7) or "") + "000000")[:6])
    if match.group(8):
        offset = dt.timedelta(0)
    else:
        off_hours, off_minutes = int(match.group(10)), int(match.group(11))
        if off_hours >= 24 or off_minutes >= 60:
            return None
        offset = dt.timedelta(hours=off_hours, minutes=off_minutes)
        if match.group(9) == "-":
            offset = -offset
    try:
        moment = dt.datetime(year, month, day, hour, minute, second, micro, tzinfo=dt.timezone(offset))
        return moment.astimezone(_UTC)
    except (ValueError, OverflowError):
        return None


def _from_millis(millis: int, field: str) -> dt.datetime:
    try:
        return _UNIX_EPOCH + dt.timedelta(milliseconds=millis)
    except OverflowError as exc:
        raise DecodeError(f"{field} {millis} out of range") from exc


def normalize_ledger_schema(message_type: str, schema: str) -> tuple[str, bool]:
    """Classify a message's type and schema version.

    Returns the normalized schema name and whether the pair is a valid public epoch.
    """
    typ = message_type.strip()
    sch = schema.strip()
    normalized = sch.lower()
    if not typ and not sch:
        return "legacy", True
    if not typ:
        return normalized, False
    if typ.lower() != EVENT_TYPE_EPOCH_PUBLIC:
        return normalized, False
    if not sch:
        return "legacy", True
    if not normalized:
        return "", False
    return normalized, True


def parse_epoch(value: Any = MISSING) -> dt.datetime:
    """Resolve the legacy epoch field: an RFC 3339 string or Unix milliseconds."""
    if value is MISSING:
        raise DecodeError("epoch field missing")
    if value is None or isinstance(value, str):
        trimmed = (value or "").strip()
        if not trimmed:
            raise DecodeError("epoch string empty")
        moment = _parse_rfc3339(trimmed)
        if moment is not None:
            return moment
        millis = _int64(trimmed)
        if millis is not None:
            return _from_millis(millis, "epoch")
        raise DecodeError(f"unsupported epoch string {_quoted(trimmed)}")
    text = _number_text(value)
    if text is not None:
        millis = _int64(text)
        if millis is not None:
            return _from_millis(millis, "epoch")
        number = _float(text)
        if number is not None and abs(number) != float("inf"):
            return _from_millis(int(number), "epoch")
    raise DecodeError("epoch format not recognized")


def parse_matched_at(value: Any = MISSING) -> dt.datetime:
    """Resolve the matchedAt field, an RFC 3339 timestamp string."""
    if value is MISSING:
        raise MatchedAtMissing()
    if value is not None and not isinstance(value, str):
        raise DecodeError(f"matchedAt decode: cannot unmarshal {_kind(value)} into string")
    trimmed = (value or "").strip()
    if not trimmed:
        raise DecodeError("matchedAt empty")
    moment = _parse_rfc3339(trimmed)
    if moment is None:
        raise DecodeError(f"matchedAt parse: cannot parse {_quoted(trimmed)} as RFC 3339")
    return moment


def parse_epoch_index(value: Any = MISSING) -> int | None:
    """Resolve the optional epochIndex field from an integer or a numeric string."""
    if value is MISSING:
        return None
    text = _number_text(value)
    if text is not None:
        index = _int64(text)
        if index is not None:
            return index
    if value is None:
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        index = _int64(trimmed)
        if index is None:
            raise DecodeError(f"parse epochIndex: invalid integer {_quoted(trimmed)}")
        return index
    raise DecodeError("epochIndex format not recognized")


def parse_energy_value(value: Any = MISSING, field: str = ENERGY_FIELD) -> float:
    """Resolve an energy figure from a JSON number or a numeric string."""
    if value is MISSING:
        raise DecodeError(f"{field} missing")
    text = _number_text(value)
    if text is not None:
        number = _float(text)
        if number is not None:
            return number
    if value is None or isinstance(value, str):
        trimmed = (value or "").strip()
        if not trimmed:
            raise DecodeError(f"{field} empty")
        number = _float(trimmed)
        if number is None:
            raise DecodeError(f"parse {field}: invalid number {_quoted(trimmed)}")
        return number
    raise DecodeError(f"{field} format not recognized")


def _load(raw: bytes | bytearray | str) -> Any:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
    text = text.lstrip(" \t\r\n")
    if not text:
        raise DecodeError("decode ledger payload: EOF")
    try:
        value, _ = _DECODER.raw_decode(text)
    except ValueError as exc:
        raise DecodeError(f"decode ledger payload: {exc}") from exc
    return value


def _fields(obj: Any, what: str) -> dict[str, Any] | None:
    """Object members keyed case-insensitively; None for JSON null."""
    if obj is None:
        return None
    if not isinstance(obj, dict):
        raise DecodeError(f"decode ledger payload: cannot unmarshal {_kind(obj)} into {what}")
    return {key.lower(): value for key, value in obj.items()}


def _string_field(fields: dict[str, Any], key: str) -> str:
    value = fields.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError(
            f"decode ledger payload: cannot unmarshal {_kind(value)} into field {key} of type string"
        )
    return value


def decode_ledger_message(raw: bytes | bytearray | str) -> LedgerRecord:
    """Decode a ledger message value, tolerating extra fields.

    Raises DecodeError (or MatchedAtMissing) when the payload cannot be used.
    """
    env = _fields(_load(raw), "ledger envelope") or {}
    type_raw = _string_field(env, "type")
    schema_raw = _string_field(env, "schemaversion")
    zone_raw = _string_field(env, "zoneid")
    aggregator = _fields(env.get("aggregator"), "field aggregator")
    summary = _fields(aggregator.get("summary"), "field aggregator.summary") if aggregator else None

    message_type = type_raw.strip()
    schema = schema_raw.strip()
    zone_id = zone_raw.strip()

    try:
        if not zone_id:
            raise DecodeError("zoneId missing or empty")

        requires_matched_at = message_type == EVENT_TYPE_EPOCH_PUBLIC and schema == "v1"
        if "matchedat" in env:
            matched_at = parse_matched_at(env["matchedat"])
        elif requires_matched_at:
            raise MatchedAtMissing()
        else:
            matched_at = parse_epoch(env.get("epoch", MISSING))

        epoch_index = parse_epoch_index(env.get("epochindex", MISSING))

        energy_raw = summary.get("zoneenergykwhepoch", MISSING) if summary else MISSING
        if energy_raw is MISSING or energy_raw is None:
            energy, absent = 0.0, True
        else:
            energy, absent = parse_energy_value(energy_raw, ENERGY_FIELD), False
    except DecodeError as exc:
        exc.message_type = message_type
        exc.schema = schema
        raise

    return LedgerRecord(
        energy=EpochEnergy(
            zone_id=zone_id,
            matched_at=matched_at,
            energy_kwh=energy,
            epoch_index=epoch_index,
        ),
        schema=schema,
        message_type=message_type,
        energy_absent=absent,
    )