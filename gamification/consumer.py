"""Consumption of the public ledger stream into the in-memory zone store."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .decode import (
    DecodeError,
    LedgerRecord,
    MatchedAtMissing,
    decode_ledger_message,
    normalize_ledger_schema,
)
from .logs import log_event
from .metrics import DropReason, Registry
from .store import LogSampler, ZoneStore

__all__ = [
    "LedgerConsumerConfig",
    "Message",
    "MessageSource",
    "FetchTimeout",
    "SourceClosed",
    "BreakerOpen",
    "LedgerConsumer",
]

DEFAULT_POLL_TIMEOUT = 5.0
SCHEMA_SAMPLER_WINDOW = 30.0


class FetchTimeout(Exception):
    """No message arrived within the poll timeout."""


class SourceClosed(Exception):
    """The message source was closed and will deliver nothing more."""


class BreakerOpen(Exception):
    """The circuit breaker in front of the source rejected the fetch."""


@dataclass(frozen=True)
class Message:
    """One record read from the ledger topic."""

    value: bytes
    offset: int = 0
    partition: int = 0
    key: bytes = b""
    topic: str = ""


@runtime_checkable
class MessageSource(Protocol):
    """What the consumer needs from a topic reader."""

    def fetch(self, timeout: float) -> Message:
        """Return the next message or raise FetchTimeout, BreakerOpen or SourceClosed."""
        ...

    def commit(self, message: Message) -> None:
        """Mark a message as processed."""
        ...

    def lag(self) -> float:
        """Number of messages the consumer is behind."""
        ...

    def close(self) -> None:
        """Release the reader."""
        ...


@dataclass(frozen=True)
class LedgerConsumerConfig:
    """Tunables for consuming the public ledger stream. Timeouts are in seconds."""

    brokers: tuple[str, ...]
    topic: str
    group_id: str
    max_epochs_per_zone: int = 1000
    poll_timeout: float = DEFAULT_POLL_TIMEOUT
    accepted_schemas: tuple[str, ...] = ("v1", "legacy")


Logger = logging.Logger | logging.LoggerAdapter


class LedgerConsumer:
    """Reads epochs from a message source and buffers them per zone."""

    def __init__(
        self,
        config: LedgerConsumerConfig,
        logger: Logger | None,
        source: MessageSource,
        metrics: Registry | None = None,
    ) -> None:
        if logger is None:
            raise ValueError("logger must not be nil")
        if not config.brokers:
            raise ValueError("at least one broker is required")
        if not config.topic.strip():
            raise ValueError("ledger topic must not be empty")
        if not config.group_id.strip():
            raise ValueError("consumer group must not be empty")

        display = [schema.strip() for schema in config.accepted_schemas if schema.strip()]
        if not display:
            raise ValueError("at least one accepted ledger schema is required")

        self._config = config
        self._log = logger
        self._source = source
        self._metrics = metrics if metrics is not None else Registry()
        self._poll = config.poll_timeout if config.poll_timeout > 0 else DEFAULT_POLL_TIMEOUT
        self._schemas = frozenset(schema.lower() for schema in display)
        self._schema_display = ",".join(display)
        self._schema_sampler = LogSampler(SCHEMA_SAMPLER_WINDOW)
        self._store = ZoneStore(config.max_epochs_per_zone)
        self._closed = False

    @property
    def config(self) -> LedgerConsumerConfig:
        return self._config

    @property
    def store(self) -> ZoneStore:
        """The buffer the consumed epochs land in."""
        return self._store

    @property
    def metrics(self) -> Registry:
        return self._metrics

    @property
    def poll_timeout(self) -> float:
        """Seconds to wait for each fetch."""
        return self._poll

    @property
    def schema_display(self) -> str:
        """The accepted schemas as configured, comma separated."""
        return self._schema_display

    def close(self) -> None:
        """Close the underlying source; further calls do nothing."""
        if self._closed:
            return
        self._closed = True
        self._source.close()

    def schema_allowed(self, schema: str) -> bool:
        """Whether a normalized schema name is among the accepted ones."""
        return schema.strip().lower() in self._schemas

    def run(self, stop_event: threading.Event) -> None:
        """Consume until the stop event is set or the source is closed."""
        log_event(
            self._log,
            logging.INFO,
            "ledger_consumer_started",
            topic=self._config.topic,
            group=self._config.group_id,
            brokers=",".join(self._config.brokers),
            pollTimeout=f"{self._poll}s",
            maxEpochsPerZone=self._store.max_size,
            acceptedSchemas=self._schema_display,
        )
        try:
            while not stop_event.is_set():
                try:
                    message = self._source.fetch(self._poll)
                except FetchTimeout:
                    self._update_lag()
                    continue
                except BreakerOpen:
                    if stop_event.is_set():
                        return
                    log_event(
                        self._log,
                        logging.WARNING,
                        "ledger_consumer_cb_fast_fail",
                        backoff=f"{self._poll}s",
                    )
                    self._update_lag()
                    if stop_event.wait(self._poll):
                        return
                    continue
                except SourceClosed:
                    self._update_lag()
                    return
                except Exception as exc:  # keep consuming past transient reader failures
                    log_event(self._log, logging.ERROR, "ledger_consumer_fetch_error", err=str(exc))
                    self._update_lag()
                    continue

                self.process(message)

                try:
                    self._source.commit(message)
                except Exception as exc:
                    if not stop_event.is_set():
                        log_event(self._log, logging.ERROR, "ledger_consumer_commit_error", err=str(exc))
                self._update_lag()
        finally:
            log_event(self._log, logging.INFO, "ledger_consumer_stopped")

    def process(self, message: Message) -> DropReason | None:
        """Decode one message and buffer its epoch.

        Returns the reason the message was dropped, or None when it was accepted.
        """
        self._metrics.inc_ledger_message()
        try:
            record = decode_ledger_message(message.value)
        except DecodeError as exc:
            reason = (
                DropReason.MISSING_MATCHED_AT
                if isinstance(exc, MatchedAtMissing)
                else DropReason.JSON_ERROR
            )
            log_event(
                self._log,
                logging.WARNING,
                "ledger_consumer_decode_error",
                err=str(exc),
                offset=message.offset,
                partition=message.partition,
                drop_reason=reason.value,
                **_meta(exc.message_type, exc.schema),
            )
            self._metrics.inc_ledger_decode_drop(reason)
            return reason

        normalized, schema_ok = normalize_ledger_schema(record.message_type, record.schema)
        if not schema_ok or not self.schema_allowed(normalized):
            reason = DropReason.SCHEMA_REJECT
            if self._schema_sampler.allow(f"{record.message_type}|{normalized}"):
                log_event(
                    self._log,
                    logging.WARNING,
                    "ledger_consumer_schema_reject",
                    ledger_consumer_schema_reject=1,
                    offset=message.offset,
                    partition=message.partition,
                    type=record.message_type,
                    schemaVersion=record.schema,
                    normalizedSchema=normalized,
                    acceptedSchemas=self._schema_display,
                    drop_reason=reason.value,
                )
            self._metrics.inc_ledger_decode_drop(reason)
            return reason

        self._metrics.inc_ledger_decode_ok()
        self._buffer(record, message)
        return None

    def _buffer(self, record: LedgerRecord, message: Message) -> None:
        energy = record.energy
        meta = _meta(record.message_type, record.schema)
        if not energy.zone_id:
            log_event(
                self._log,
                logging.WARNING,
                "ledger_consumer_missing_zone",
                offset=message.offset,
                partition=message.partition,
                **meta,
            )
            return

        if record.energy_absent:
            self._metrics.inc_ledger_energy_missing()
            log_event(
                self._log,
                logging.WARNING,
                "ledger_consumer_missing_energy",
                offset=message.offset,
                partition=message.partition,
                zoneId=energy.zone_id,
                energyKWh=0.0,
                ledger_consumer_missing_energy=1,
                **meta,
            )

        depth, evicted = self._store.append(energy.zone_id, energy)
        attrs: dict[str, Any] = {
            "zoneId": energy.zone_id,
            "matchedAt": energy.matched_at,
            "energyKWh": energy.energy_kwh,
            "bufferDepth": depth,
        }
        if energy.epoch_index is not None:
            attrs["epochIndex"] = energy.epoch_index
        if evicted is not None:
            attrs["evictedMatchedAt"] = evicted.matched_at
        attrs.update(meta)
        log_event(self._log, logging.INFO, "ledger_epoch_buffered", **attrs)

    def _update_lag(self) -> None:
        try:
            lag = self._source.lag()
        except Exception as exc:
            log_event(self._log, logging.ERROR, "ledger_consumer_lag_error", err=str(exc))
            return
        self._metrics.set_ledger_lag(float(lag))


def _meta(message_type: str, schema: str) -> dict[str, str]:
    meta: dict[str, str] = {}
    if message_type:
        meta["type"] = message_type
    if schema:
        meta["schemaVersion"] = schema
    return meta