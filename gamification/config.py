"""Runtime settings for the gamification service, resolved from the environment."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, replace

__all__ = [
    "Config",
    "ConfigError",
    "load",
    "split_and_trim",
    "parse_positive_millis",
]

DEFAULT_LISTEN_ADDRESS = ":8085"
DEFAULT_LOG_FILE = "logs/gamification.log"
DEFAULT_READ_TIMEOUT = 5.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0
DEFAULT_KAFKA_BROKERS = "kafka:9092"
DEFAULT_LEDGER_TOPIC = "ledger.public.epochs"
DEFAULT_LEDGER_GROUP = "gamification-ledger"
DEFAULT_POLL_TIMEOUT = 5.0
DEFAULT_MAX_EPOCHS = 1000
DEFAULT_SCHEMA_ACCEPT = "v1,legacy"

_BROKER_KEYS = ("BROKER_ADDRESS", "BROKER_ADDRESSES", "GAMIFICATION_KAFKA_BROKERS", "KAFKA_BROKERS")
_TOPIC_KEYS = ("LEDGER_TOPIC", "GAMIFICATION_LEDGER_TOPIC")
_GROUP_KEYS = ("LEDGER_CONSUMER_GROUP", "GAMIFICATION_LEDGER_GROUP")
_POLL_KEYS = ("LEDGER_POLL_TIMEOUT_MS", "GAMIFICATION_LEDGER_POLL_TIMEOUT_MS")
_MAX_EPOCH_KEYS = ("MAX_EPOCHS_PER_ZONE", "GAMIF_MAX_EPOCHS_PER_ZONE")

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class ConfigError(ValueError):
    """Raised when an environment setting is missing a value or malformed."""


@dataclass(frozen=True)
class Config:
    """Settings of the service. Timeouts are in seconds."""

    listen_address: str = DEFAULT_LISTEN_ADDRESS
    log_file_path: str = os.path.normpath(DEFAULT_LOG_FILE)
    http_read_timeout: float = DEFAULT_READ_TIMEOUT
    http_write_timeout: float = DEFAULT_WRITE_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    kafka_brokers: tuple[str, ...] = ("kafka:9092",)
    ledger_topic: str = DEFAULT_LEDGER_TOPIC
    ledger_group_id: str = DEFAULT_LEDGER_GROUP
    ledger_poll_timeout: float = DEFAULT_POLL_TIMEOUT
    max_epochs_per_zone: int = DEFAULT_MAX_EPOCHS
    ledger_schema_accept: tuple[str, ...] = ("v1", "legacy")


def _atoi(value: str) -> int:
    """Parse a base-10 integer strictly, without surrounding spaces or separators."""
    if not _INT_RE.fullmatch(value):
        raise ValueError(f"invalid syntax: {value!r}")
    number = int(value)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise ValueError(f"value out of range: {value!r}")
    return number


def _lookup(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key)
    return None if value is None else value.strip()


def _first_set(environ: Mapping[str, str], keys: tuple[str, ...]) -> tuple[str, str] | None:
    for key in keys:
        value = _lookup(environ, key)
        if value is not None:
            return key, value
    return None


def split_and_trim(raw: str) -> list[str]:
    """Split on commas, trim each field and drop empty ones."""
    return [field.strip() for field in raw.split(",") if field.strip()]


def parse_positive_millis(value: str) -> float:
    """Parse a positive millisecond count and return it in seconds."""
    if not value.strip():
        raise ConfigError("value cannot be empty")
    try:
        millis = _atoi(value)
    except ValueError as exc:
        raise ConfigError(f"invalid integer: {exc}") from exc
    if millis <= 0:
        raise ConfigError("value must be greater than zero")
    return millis / 1000.0


def _millis_for(key: str, value: str) -> float:
    try:
        return parse_positive_millis(value)
    except ConfigError as exc:
        raise ConfigError(f"{key}: {exc}") from exc


def _resolve_listen_address(environ: Mapping[str, str], default: str) -> str:
    address = _lookup(environ, "GAMIFICATION_LISTEN_ADDRESS")
    if address is not None:
        if not address:
            raise ConfigError("GAMIFICATION_LISTEN_ADDRESS cannot be empty")
        return address
    port = _lookup(environ, "GAMIFICATION_PORT")
    if port is not None:
        if not port:
            raise ConfigError("GAMIFICATION_PORT cannot be empty")
        try:
            _atoi(port)
        except ValueError as exc:
            raise ConfigError(f"GAMIFICATION_PORT: {exc}") from exc
        return port if port.startswith(":") else ":" + port
    return default


def _overrides(environ: Mapping[str, str]) -> dict:
    changes: dict = {}

    log_path = _lookup(environ, "GAMIFICATION_LOG_PATH")
    if log_path is not None:
        if not log_path:
            raise ConfigError("GAMIFICATION_LOG_PATH cannot be empty")
        changes["log_file_path"] = os.path.normpath(log_path)

    for key, field in (
        ("GAMIFICATION_HTTP_READ_TIMEOUT_MS", "http_read_timeout"),
        ("GAMIFICATION_HTTP_WRITE_TIMEOUT_MS", "http_write_timeout"),
        ("GAMIFICATION_SHUTDOWN_TIMEOUT_MS", "shutdown_timeout"),
    ):
        value = _lookup(environ, key)
        if value is not None:
            changes[field] = _millis_for(key, value)

    found = _first_set(environ, _BROKER_KEYS)
    if found:
        key, value = found
        brokers = split_and_trim(value)
        if not brokers:
            raise ConfigError(f"{key} cannot be empty")
        changes["kafka_brokers"] = tuple(brokers)

    for keys, field in ((_TOPIC_KEYS, "ledger_topic"), (_GROUP_KEYS, "ledger_group_id")):
        found = _first_set(environ, keys)
        if found:
            key, value = found
            if not value:
                raise ConfigError(f"{key} cannot be empty")
            changes[field] = value

    found = _first_set(environ, _POLL_KEYS)
    if found:
        key, value = found
        changes["ledger_poll_timeout"] = _millis_for(key, value)

    found = _first_set(environ, _MAX_EPOCH_KEYS)
    if found:
        key, value = found
        try:
            count = _atoi(value)
        except ValueError as exc:
            raise ConfigError(f"{key}: {exc}") from exc
        if count <= 0:
            raise ConfigError(f"{key} must be positive")
        changes["max_epochs_per_zone"] = count

    schemas_raw = _lookup(environ, "LEDGER_SCHEMA_ACCEPT")
    if schemas_raw is not None:
        schemas = split_and_trim(schemas_raw)
        if not schemas:
            raise ConfigError("LEDGER_SCHEMA_ACCEPT cannot be empty")
        changes["ledger_schema_accept"] = tuple(schemas)

    return changes


def load(environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from defaults overridden by environment variables."""
    env = os.environ if environ is None else environ
    base = Config(
        kafka_brokers=tuple(split_and_trim(DEFAULT_KAFKA_BROKERS)),
        ledger_schema_accept=tuple(split_and_trim(DEFAULT_SCHEMA_ACCEPT)),
    )
    address = _resolve_listen_address(env, base.listen_address)
    return replace(base, listen_address=address, **_overrides(env))