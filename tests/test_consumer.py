import json
import logging
import threading
from collections import deque

import pytest

from gamification.consumer import (
    BreakerOpen,
    FetchTimeout,
    LedgerConsumer,
    LedgerConsumerConfig,
    Message,
    SourceClosed,
)
from gamification.metrics import DropReason, Registry


class _Collector(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def events(self, name):
        return [r for r in self.records if r.getMessage() == name]


class FakeSource:
    def __init__(self, items=(), lag=0, commit_error=None):
        self.items = deque(items)
        self.commits = []
        self.timeouts = []
        self.closed = 0
        self._lag = lag
        self.commit_error = commit_error

    def fetch(self, timeout):
        self.timeouts.append(timeout)
        if not self.items:
            raise SourceClosed()
        item = self.items.popleft()
        if isinstance(item, BaseException):
            raise item
        return item

    def commit(self, message):
        if self.commit_error is not None:
            raise self.commit_error
        self.commits.append(message)

    def lag(self):
        return self._lag

    def close(self):
        self.closed += 1


def _logger():
    logger = logging.Logger("consumer-test", level=logging.INFO)
    collector = _Collector()
    logger.addHandler(collector)
    return logger, collector


def _config(**overrides):
    base = dict(brokers=("kafka:9092",), topic="ledger.public.epochs", group_id="gamification-ledger")
    base.update(overrides)
    return LedgerConsumerConfig(**base)


def _v1(zone="zone-001", energy=42.5, matched_at="2024-05-02T15:04:05Z", schema="v1"):
    return json.dumps(
        {
            "type": "epoch.public",
            "schemaVersion": schema,
            "zoneId": zone,
            "epochIndex": 7,
            "matchedAt": matched_at,
            "aggregator": {"summary": {"zoneEnergyKWhEpoch": energy}},
        }
    ).encode()


def _consumer(source=None, **overrides):
    logger, collector = _logger()
    metrics = Registry()
    consumer = LedgerConsumer(_config(**overrides), logger, source or FakeSource(), metrics)
    return consumer, collector, metrics


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"brokers": ()}, "at least one broker is required"),
        ({"topic": "  "}, "ledger topic must not be empty"),
        ({"group_id": ""}, "consumer group must not be empty"),
        ({"accepted_schemas": (" ", "")}, "at least one accepted ledger schema is required"),
    ],
)
def test_constructor_rejects_invalid_config(overrides, message):
    logger, _ = _logger()
    with pytest.raises(ValueError, match=message):
        LedgerConsumer(_config(**overrides), logger, FakeSource())


def test_constructor_requires_logger():
    with pytest.raises(ValueError, match="logger must not be nil"):
        LedgerConsumer(_config(), None, FakeSource())


def test_defaults_for_poll_and_capacity():
    consumer, _, _ = _consumer(poll_timeout=0, max_epochs_per_zone=0)
    assert consumer.poll_timeout == 5.0
    assert consumer.store.max_size == 1000


def test_schema_display_keeps_configured_text():
    consumer, _, _ = _consumer(accepted_schemas=(" V1 ", "", "legacy"))
    assert consumer.schema_display == "V1,legacy"
    assert consumer.schema_allowed("v1")
    assert consumer.schema_allowed(" LEGACY ")
    assert not consumer.schema_allowed("v2")


def test_process_buffers_v1_epoch():
    consumer, collector, metrics = _consumer()
    result = consumer.process(Message(value=_v1(), offset=3, partition=1))
    assert result is None
    stored = consumer.store.snapshot("zone-001")
    assert len(stored) == 1
    assert stored[0].energy_kwh == 42.5
    assert stored[0].epoch_index == 7
    rendered = metrics.render()
    assert "gamification_ledger_messages_consumed_total{} 1\n" in rendered
    assert "gamification_ledger_decode_ok_total{} 1\n" in rendered
    buffered = collector.events("ledger_epoch_buffered")
    assert len(buffered) == 1
    assert buffered[0].attrs["bufferDepth"] == 1
    assert buffered[0].attrs["schemaVersion"] == "v1"


def test_process_rejects_unknown_schema():
    consumer, collector, metrics = _consumer()
    result = consumer.process(Message(value=_v1(schema="v2")))
    assert result is DropReason.SCHEMA_REJECT
    assert consumer.store.snapshot("zone-001") == []
    assert 'gamification_ledger_decode_drop_total{reason="schema_reject"} 1' in metrics.render()
    assert collector.events("ledger_consumer_schema_reject")[0].attrs["normalizedSchema"] == "v2"


def test_schema_reject_logs_are_sampled():
    consumer, collector, metrics = _consumer()
    for _ in range(3):
        assert consumer.process(Message(value=_v1(schema="v2"))) is DropReason.SCHEMA_REJECT
    assert len(collector.events("ledger_consumer_schema_reject")) == 1
    assert 'gamification_ledger_decode_drop_total{reason="schema_reject"} 3' in metrics.render()


def test_legacy_payload_depends_on_accepted_schemas():
    legacy = json.dumps({"zoneId": "legacy-zone", "epoch": "2024-04-30T10:00:00Z"}).encode()
    accepting, _, _ = _consumer()
    assert accepting.process(Message(value=legacy)) is None
    assert len(accepting.store.snapshot("legacy-zone")) == 1

    strict, _, _ = _consumer(accepted_schemas=("v1",))
    assert strict.process(Message(value=legacy)) is DropReason.SCHEMA_REJECT
    assert strict.store.snapshot("legacy-zone") == []


def test_missing_matched_at_is_classified():
    payload = json.dumps(
        {"type": "epoch.public", "schemaVersion": "v1", "zoneId": "zone-x", "epoch": "2024-05-02T15:00:00Z"}
    ).encode()
    consumer, collector, metrics = _consumer()
    assert consumer.process(Message(value=payload)) is DropReason.MISSING_MATCHED_AT
    assert 'gamification_ledger_decode_drop_total{reason="missing_matchedAt"} 1' in metrics.render()
    event = collector.events("ledger_consumer_decode_error")[0]
    assert event.attrs["drop_reason"] == "missing_matchedAt"
    assert event.attrs["type"] == "epoch.public"


def test_invalid_json_is_a_json_error():
    consumer, _, metrics = _consumer()
    assert consumer.process(Message(value=b"{not json")) is DropReason.JSON_ERROR
    assert 'gamification_ledger_decode_drop_total{reason="json_error"} 1' in metrics.render()
    assert "gamification_ledger_decode_ok_total{} 0\n" in metrics.render()


def test_missing_energy_is_counted_and_stored_as_zero():
    payload = json.dumps(
        {
            "type": "epoch.public",
            "schemaVersion": "v1",
            "zoneId": "zone-no-energy",
            "matchedAt": "2024-05-02T15:04:05Z",
            "aggregator": {"summary": {}},
        }
    ).encode()
    consumer, collector, metrics = _consumer()
    assert consumer.process(Message(value=payload)) is None
    assert consumer.store.snapshot("zone-no-energy")[0].energy_kwh == 0
    assert "gamification_ledger_energy_missing_total{} 1\n" in metrics.render()
    assert len(collector.events("ledger_consumer_missing_energy")) == 1


def test_eviction_is_logged():
    consumer, collector, _ = _consumer(max_epochs_per_zone=1)
    consumer.process(Message(value=_v1(matched_at="2024-05-02T15:00:00Z")))
    consumer.process(Message(value=_v1(matched_at="2024-05-02T15:05:00Z")))
    stored = consumer.store.snapshot("zone-001")
    assert len(stored) == 1
    events = collector.events("ledger_epoch_buffered")
    assert "evictedMatchedAt" not in events[0].attrs
    assert events[1].attrs["evictedMatchedAt"] == events[0].attrs["matchedAt"]
    assert stored[0].matched_at == events[1].attrs["matchedAt"]


def test_run_processes_and_commits_until_closed():
    messages = [Message(value=_v1(zone="zone-a"), offset=0), Message(value=_v1(zone="zone-b"), offset=1)]
    source = FakeSource([messages[0], FetchTimeout(), messages[1]], lag=7)
    consumer, collector, metrics = _consumer(source)
    consumer.run(threading.Event())
    assert source.commits == messages
    assert set(consumer.store.snapshot_all()[1]) == {"zone-a", "zone-b"}
    assert "gamification_ledger_consumer_lag{} 7\n" in metrics.render()
    assert len(collector.events("ledger_consumer_stopped")) == 1
    assert all(timeout == consumer.poll_timeout for timeout in source.timeouts)


def test_run_commits_dropped_messages_too():
    source = FakeSource([Message(value=b"garbage")])
    consumer, _, _ = _consumer(source)
    consumer.run(threading.Event())
    assert len(source.commits) == 1


def test_run_continues_after_fetch_error():
    source = FakeSource([RuntimeError("broker down"), Message(value=_v1())])
    consumer, collector, _ = _consumer(source)
    consumer.run(threading.Event())
    errors = collector.events("ledger_consumer_fetch_error")
    assert [e.attrs["err"] for e in errors] == ["broker down"]
    assert len(consumer.store.snapshot("zone-001")) == 1


def test_run_backs_off_when_breaker_open():
    source = FakeSource([BreakerOpen(), Message(value=_v1())])
    consumer, collector, _ = _consumer(source, poll_timeout=0.01)
    consumer.run(threading.Event())
    assert len(collector.events("ledger_consumer_cb_fast_fail")) == 1
    assert len(source.commits) == 1


def test_run_logs_commit_failures():
    source = FakeSource([Message(value=_v1())], commit_error=RuntimeError("commit failed"))
    consumer, collector, _ = _consumer(source)
    consumer.run(threading.Event())
    assert [e.attrs["err"] for e in collector.events("ledger_consumer_commit_error")] == ["commit failed"]


def test_run_returns_immediately_when_stopped():
    source = FakeSource([Message(value=_v1())])
    consumer, _, _ = _consumer(source)
    stop = threading.Event()
    stop.set()
    consumer.run(stop)
    assert source.timeouts == []
    assert consumer.store.snapshot("zone-001") == []


def test_close_is_idempotent():
    source = FakeSource()
    consumer, _, _ = _consumer(source)
    consumer.close()
    consumer.close()
    assert source.closed == 1