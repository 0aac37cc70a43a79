"""End-to-end sanity check of the gamification service in a compose environment."""

from __future__ import annotations

import datetime as dt
import json
import logging
import math
import os
import signal
import subprocess
import sys
import threading
import time
import urllib.error
import urllib.request
from typing import Any

from .logs import log_event

__all__ = [
    "SanityError",
    "build_payload",
    "check_leaderboard",
    "contains_epoch_warning",
    "wait_for_http",
    "ensure_services",
    "publish_sample",
    "wait_for_leaderboard_entry",
    "ensure_no_epoch_warnings",
    "build_logger",
    "run",
    "main",
]

READY_URL = "http://localhost:8085/health/ready"
LEADERBOARD_URL = "http://localhost:8085/leaderboard?window=24h"
DEFAULT_LOG_PATH = os.path.join("logs", "dev", "gamification-integration.log")
ZONE_ID = "zone-001"
ENERGY_TOLERANCE = 0.0001
REQUEST_TIMEOUT = 5.0
POLL_INTERVAL = 5.0
WAIT_TIMEOUT = 120.0

_UTC = dt.timezone.utc
_LOG = logging.getLogger("gamification.sanity")
_LEVELS = {logging.WARNING: "WARN", logging.CRITICAL: "ERROR"}


class SanityError(Exception):
    """The sanity check failed."""


def _utc(moment: dt.datetime) -> dt.datetime:
    return moment.replace(tzinfo=_UTC) if moment.tzinfo is None else moment.astimezone(_UTC)


def _format_rfc3339(moment: dt.datetime) -> str:
    return _utc(moment).strftime("%Y-%m-%dT%H:%M:%SZ")


def _format_rfc3339_nano(moment: dt.datetime) -> str:
    moment = _utc(moment)
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    return text + "Z"


def build_payload(now: dt.datetime | None = None) -> dict[str, Any]:
    """The sample public epoch published to the ledger topic."""
    moment = _utc(now) if now is not None else dt.datetime.now(_UTC)
    return {
        "type": "epoch.public",
        "schemaVersion": "v1",
        "zoneId": ZONE_ID,
        "epochIndex": 7,
        "matchedAt": _format_rfc3339_nano(moment),
        "aggregator": {"summary": {"zoneEnergyKWhEpoch": 42.5}},
        "energyKWh_total": 99.1,
        "epoch": _format_rfc3339_nano(moment - dt.timedelta(minutes=5)),
    }


def _string(document: dict, key: str) -> str:
    value = document.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key} is not a string")
    return value


def check_leaderboard(body: bytes | str, zone_id: str, expected_energy: float) -> bool:
    """Check a leaderboard response for the zone's entry.

    Returns True when the entry carries the expected energy and False while it is
    absent. Raises SanityError on a wrong scope, window or energy, and ValueError
    when the body cannot be decoded.
    """
    document = json.loads(body)
    if not isinstance(document, dict):
        raise ValueError("leaderboard payload is not an object")
    scope = _string(document, "scope")
    window = _string(document, "window")
    if scope.lower() != "global":
        raise SanityError(f"unexpected scope {json.dumps(scope)}")
    if window.lower() != "24h":
        raise SanityError(f"unexpected window {json.dumps(window)}")
    entries = document.get("entries") or []
    if not isinstance(entries, list):
        raise ValueError("field entries is not a list")
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError("leaderboard entry is not an object")
        entry_zone = _string(entry, "zoneId")
        if entry_zone.casefold() != zone_id.casefold():
            continue
        energy = float(entry.get("energyKWh") or 0.0)
        if math.fabs(energy - expected_energy) <= ENERGY_TOLERANCE:
            log_event(_LOG, logging.INFO, "leaderboard_entry_verified", zoneId=entry_zone, energyKWh=energy)
            return True
        raise SanityError(
            f"zone {entry_zone} energy mismatch: got {energy:.4f} want {expected_energy:.4f}"
        )
    log_event(_LOG, logging.INFO, "leaderboard_entry_pending", entries=len(entries))
    return False


def contains_epoch_warning(output: bytes | str) -> bool:
    """Whether log output mentions a missing epoch field, ignoring case."""
    text = output.decode("utf-8", errors="replace") if isinstance(output, (bytes, bytearray)) else output
    return "epoch field missing" in text.lower()


def _status(url: str) -> int | None:
    try:
        with urllib.request.urlopen(url, timeout=REQUEST_TIMEOUT) as response:
            return response.status
    except urllib.error.HTTPError as exc:
        exc.close()
        return exc.code
    except (urllib.error.URLError, OSError):
        return None


def wait_for_http(
    url: str,
    timeout: float = WAIT_TIMEOUT,
    interval: float = POLL_INTERVAL,
    stop_event: threading.Event | None = None,
) -> int:
    """Poll a URL until it answers 200. Returns the number of requests made."""
    stop = stop_event if stop_event is not None else threading.Event()
    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        if stop.is_set():
            raise SanityError("interrupted")
        if time.monotonic() > deadline:
            raise SanityError("timeout waiting for http endpoint")
        attempts += 1
        if _status(url) == 200:
            log_event(_LOG, logging.INFO, "http_endpoint_ready", url=url)
            return attempts
        log_event(_LOG, logging.INFO, "http_endpoint_wait", url=url)
        if stop.wait(interval):
            raise SanityError("interrupted")


def ensure_services() -> None:
    """Start the services the check needs with docker compose."""
    log_event(_LOG, logging.INFO, "starting_services")
    command = ["docker", "compose", "up", "-d", "kafka", "topic-init", "ledger", "gamification"]
    try:
        subprocess.run(command, check=True)
    except (subprocess.CalledProcessError, OSError) as exc:
        raise SanityError(f"docker compose up: {exc}") from exc
    log_event(_LOG, logging.INFO, "services_started")


def publish_sample(zone_id: str, payload: dict[str, Any]) -> None:
    """Publish a keyed sample epoch through the console producer in the kafka container."""
    compact = json.dumps(payload, separators=(",", ":"))
    script = (
        "docker compose exec -T kafka kafka-console-producer.sh --bootstrap-server kafka:9092 "
        "--topic ledger.public.epochs --property parse.key=true --property key.separator='::' "
        f"<<'EOF'\n{zone_id}::{compact}\nEOF"
    )
    log_event(_LOG, logging.INFO, "publishing_sample", zoneId=zone_id)
    try:
        subprocess.run(["bash", "-c", script], check=True)
    except (subprocess.CalledProcessError, OSError) as exc:
        raise SanityError(f"publish sample: {exc}") from exc
    log_event(_LOG, logging.INFO, "sample_published", zoneId=zone_id)


def wait_for_leaderboard_entry(
    zone_id: str,
    expected_energy: float,
    timeout: float = WAIT_TIMEOUT,
    stop_event: threading.Event | None = None,
) -> float:
    """Poll the 24h leaderboard until the zone shows up. Returns the expected energy."""
    stop = stop_event if stop_event is not None else threading.Event()
    deadline = time.monotonic() + timeout
    while True:
        if stop.is_set():
            raise SanityError("interrupted")
        if time.monotonic() > deadline:
            raise SanityError(f"timeout waiting for leaderboard entry for {zone_id}")
        try:
            with urllib.request.urlopen(LEADERBOARD_URL, timeout=REQUEST_TIMEOUT) as response:
                status, body = response.status, response.read()
        except urllib.error.HTTPError as exc:
            exc.close()
            status, body = exc.code, b""
        except (urllib.error.URLError, OSError) as exc:
            log_event(_LOG, logging.WARNING, "leaderboard_request_failed", err=str(exc))
            status, body = None, b""
        if status == 200:
            try:
                if check_leaderboard(body, zone_id, expected_energy):
                    return expected_energy
            except ValueError as exc:
                log_event(_LOG, logging.WARNING, "leaderboard_decode_failed", err=str(exc))
        if stop.wait(POLL_INTERVAL):
            raise SanityError("interrupted")


def ensure_no_epoch_warnings(since: dt.datetime, service: str) -> None:
    """Fail if the service's logs since the given instant report a missing epoch field."""
    since_value = _format_rfc3339(since)
    log_event(_LOG, logging.INFO, "checking_logs", service=service, since=since_value)
    command = ["docker", "compose", "logs", "--no-color", "--since", since_value, service]
    try:
        result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=True)
    except (subprocess.CalledProcessError, OSError) as exc:
        raise SanityError(f"docker compose logs {service}: {exc}") from exc
    if contains_epoch_warning(result.stdout or b""):
        raise SanityError(f"found 'epoch field missing' in {service} logs")
    log_event(_LOG, logging.INFO, "logs_clean", service=service)


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        moment = dt.datetime.fromtimestamp(record.created).astimezone()
        document: dict[str, Any] = {
            "time": moment.isoformat(timespec="milliseconds"),
            "level": _LEVELS.get(record.levelno, record.levelname),
            "msg": record.getMessage(),
        }
        document.update(getattr(record, "attrs", None) or {})
        return json.dumps(document, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, dt.datetime):
        return value.isoformat()
    return str(value)


def build_logger(path: str | os.PathLike[str] = DEFAULT_LOG_PATH) -> logging.Logger:
    """Configure the check's JSON logger, writing to stdout and appending to a file."""
    path = os.fspath(path)
    directory = os.path.dirname(path)
    try:
        if directory:
            os.makedirs(directory, exist_ok=True)
    except OSError as exc:
        raise SanityError(f"create log directory: {exc}") from exc
    for handler in list(_LOG.handlers):
        _LOG.removeHandler(handler)
        handler.close()
    try:
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    except OSError as exc:
        raise SanityError(f"open log file: {exc}") from exc
    _LOG.setLevel(logging.INFO)
    _LOG.propagate = False
    formatter = _JSONFormatter()
    for handler in (logging.StreamHandler(sys.stdout), file_handler):
        handler.setLevel(logging.INFO)
        handler.setFormatter(formatter)
        _LOG.addHandler(handler)
    log_event(_LOG, logging.INFO, "logger_initialized", log_path=path)
    return _LOG


def run(logger: logging.Logger, stop_event: threading.Event | None = None) -> None:
    """Bring the stack up, publish a sample epoch and verify the leaderboard and logs."""
    stop = stop_event if stop_event is not None else threading.Event()
    try:
        os.stat("docker-compose.yml")
    except OSError as exc:
        raise SanityError(f"docker-compose.yml not found: {exc}") from exc

    ensure_services()
    try:
        wait_for_http(READY_URL, WAIT_TIMEOUT, POLL_INTERVAL, stop)
    except SanityError as exc:
        raise SanityError(f"gamification readiness: {exc}") from exc

    payload = build_payload()
    since = dt.datetime.now(_UTC)
    publish_sample(ZONE_ID, payload)
    expected = payload["aggregator"]["summary"]["zoneEnergyKWhEpoch"]
    wait_for_leaderboard_entry(ZONE_ID, expected, WAIT_TIMEOUT, stop)
    ensure_no_epoch_warnings(since, "gamification")
    ensure_no_epoch_warnings(since, "ledger")
    log_event(logger, logging.INFO, "integration_sanity_checks_passed", zoneId=ZONE_ID)


def main(argv: list[str] | None = None) -> int:
    """Run the sanity check; returns the process exit status. Takes no options."""
    stop = threading.Event()
    installed = False
    previous: Any = None
    try:
        previous = signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
        installed = True
    except ValueError:
        pass
    try:
        try:
            logger = build_logger()
        except SanityError as exc:
            print(f"logger init failed: {exc}", file=sys.stderr)
            return 1
        try:
            run(logger, stop)
        except SanityError as exc:
            log_event(logger, logging.ERROR, "integration_sanity_failed", err=str(exc))
            return 1
        log_event(logger, logging.INFO, "integration_sanity_complete")
        return 0
    finally:
        for handler in list(_LOG.handlers):
            _LOG.removeHandler(handler)
            handler.close()
        if installed:
            signal.signal(signal.SIGINT, previous)