# gamification

A small service that ranks energy zones on a leaderboard. It reads finalized
epochs from a ledger message source, keeps a bounded buffer of recent epochs
for each zone, and periodically recomputes rolling leaderboards over the
`24h` and `7d` windows. The results are served over HTTP (WSGI) together with
health probes and Prometheus-style metrics.

## What it does

- **Ingest** (`gamification.decode`, `gamification.consumer`) – each ledger
  message is decoded with `decode_ledger_message`. Both the `epoch.public` /
  `v1` layout (with `matchedAt` and `aggregator.summary.zoneEnergyKWhEpoch`)
  and the legacy layout (with only `epoch`, as an RFC 3339 string or Unix
  milliseconds) are understood. `LedgerConsumer.process` drops and counts
  messages whose schema is not accepted (`schema_reject`), whose JSON cannot
  be decoded (`json_error`), or that lack a required `matchedAt`
  (`missing_matchedAt`).
- **Store** (`gamification.store`) – `ZoneStore` keeps the newest epochs per
  zone, evicting the oldest once the per-zone limit is reached, and remembers
  the order in which zones were first seen.
- **Score** (`gamification.score`) – `Manager` sums each zone's energy inside
  every window and ranks zones in ascending order of energy; zones with equal
  totals keep their first-seen order.
- **Serve** (`gamification.web`) – the `Router` WSGI application answers:
  - `GET /health` and `GET /health/live` – always `OK`
  - `GET /health/ready` – `OK` once the service is ready, `NOT_READY` (503) otherwise
  - `GET /leaderboard?window=24h` – the ranked entries for a window; unknown
    windows fall back to the first configured one
  - `GET /metrics` – counters, gauges and histograms from `Registry.render`

  Other methods on these paths get `405`, other paths `404`.
  `wrap_with_logging` adds access logs and leaderboard request metrics.
- **Run** (`gamification.app`) – `Application` wires the consumer, the score
  manager and a threaded `wsgiref` HTTP server; `Application.run` serves until
  its stop event is set or a component ends.

## Schema checks

```python
from gamification.decode import normalize_ledger_schema

normalize_ledger_schema("epoch.public", "v1")   # ("v1", True)
normalize_ledger_schema("", "")                 # ("legacy", True)
normalize_ledger_schema("epoch.private", "v1")  # ("v1", False)
```

## Scoring

```python
import datetime as dt
from gamification.store import EpochEnergy, ZoneStore
from gamification.score import Manager, WindowSpec

now = dt.datetime(2024, 7, 10, 15, tzinfo=dt.timezone.utc)
store = ZoneStore(10)
store.append("zone-a", EpochEnergy("zone-a", now - dt.timedelta(hours=1), 5))
store.append("zone-b", EpochEnergy("zone-b", now - dt.timedelta(minutes=30), 2))

manager = Manager(store, windows=[WindowSpec("24h")])
manager.refresh(now)
[e.zone_id for e in manager.snapshot("24h").entries]   # ["zone-b", "zone-a"]
```

## Running the service

`Application` takes a `Config` and an object that satisfies the
`MessageSource` protocol (`fetch`, `commit`, `lag`, `close`):

```python
import threading, time
from gamification.app import Application
from gamification.config import load
from gamification.consumer import FetchTimeout

class IdleSource:
    def fetch(self, timeout):
        time.sleep(timeout)
        raise FetchTimeout()
    def commit(self, message): pass
    def lag(self): return 0
    def close(self): pass

stop = threading.Event()
with Application(load(), IdleSource()) as app:
    app.run(stop)   # blocks until stop.set() is called from elsewhere
```

## Configuration

Settings come from the environment, read by `gamification.config.load` and
`gamification.api_config.load_api_config`.

| Variable | Default | Meaning |
| --- | --- | --- |
| `GAMIFICATION_LISTEN_ADDRESS` / `GAMIFICATION_PORT` | `:8085` | HTTP listen address |
| `GAMIFICATION_LOG_PATH` | `logs/gamification.log` | log file |
| `GAMIFICATION_HTTP_READ_TIMEOUT_MS` | `5000` | request read timeout |
| `GAMIFICATION_HTTP_WRITE_TIMEOUT_MS` | `10000` | response write timeout |
| `GAMIFICATION_SHUTDOWN_TIMEOUT_MS` | `5000` | graceful shutdown limit |
| `BROKER_ADDRESS`, `BROKER_ADDRESSES`, `GAMIFICATION_KAFKA_BROKERS`, `KAFKA_BROKERS` | `kafka:9092` | brokers, comma separated |
| `LEDGER_TOPIC` / `GAMIFICATION_LEDGER_TOPIC` | `ledger.public.epochs` | ledger topic |
| `LEDGER_CONSUMER_GROUP` / `GAMIFICATION_LEDGER_GROUP` | `gamification-ledger` | consumer group |
| `LEDGER_POLL_TIMEOUT_MS` / `GAMIFICATION_LEDGER_POLL_TIMEOUT_MS` | `5000` | poll timeout |
| `MAX_EPOCHS_PER_ZONE` / `GAMIF_MAX_EPOCHS_PER_ZONE` | `1000` | buffered epochs per zone |
| `LEDGER_SCHEMA_ACCEPT` | `v1,legacy` | accepted schemas |
| `GAMIF_HTTP_PORT` | `8085` | port reported in the startup log |
| `GAMIF_WINDOWS` | `24h,7d` | leaderboard windows |
| `GAMIF_REFRESH_EVERY` | `60s` | refresh interval (duration or whole seconds) |

`Config` holds timeouts in seconds. Invalid values for the service settings
raise `ConfigError`; invalid values for the HTTP settings quietly fall back to
the defaults.

## What it does not do

- It has no Kafka client. The broker, topic and group settings are recorded
  and logged, but messages come from whatever `MessageSource` you hand to
  `Application` or `LedgerConsumer`.
- There is no command that starts the service; it is started from Python as
  shown above.
- Leaderboards and buffered epochs live in memory only and are lost when the
  process stops.

## Integration check

With a compose file in the working directory and `docker` and `bash`
available, the end-to-end check starts the services, publishes a sample epoch
through the console producer in the `kafka` container, waits for it to appear
on the leaderboard at `localhost:8085`, and scans the `gamification` and
`ledger` logs for "epoch field missing":

```
gamification-sanity
```

It exits with a non-zero status if any step fails, and appends its JSON log to
`logs/dev/gamification-integration.log`.