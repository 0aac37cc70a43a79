"""WSGI routing for health checks, the leaderboard and metrics."""

from __future__ import annotations

import datetime as dt
import json
import logging
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Protocol
from urllib.parse import parse_qs

from .health import HealthState
from .logs import log_event
from .metrics import Registry
from .score import GLOBAL_SCOPE, Leaderboard, WindowSpec

__all__ = [
    "LeaderboardSource",
    "Router",
    "resolve_allowed_windows",
    "leaderboard_payload",
    "wrap_with_logging",
]

LEADERBOARD_PATH = "/leaderboard"
_TEXT = "text/plain; charset=utf-8"
_JSON = "application/json"
_METRICS_TYPE = "text/plain; version=0.0.4"
_CANONICAL_WINDOWS = ("24h", "7d")
_UTC = dt.timezone.utc

Logger = logging.Logger | logging.LoggerAdapter
WSGIApp = Callable[[dict, Callable], Iterable[bytes]]


class LeaderboardSource(Protocol):
    """What the leaderboard endpoint reads from."""

    @property
    def windows(self) -> list[WindowSpec]: ...

    def snapshot(self, window: str) -> Leaderboard | None: ...


@dataclass
class _Response:
    status: int
    content_type: str
    body: bytes
    extra_headers: list[tuple[str, str]] = field(default_factory=list)


def _null_logger() -> logging.Logger:
    logger = logging.Logger("gamification.web.null")
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def _canonical() -> tuple[dict[str, str], list[str]]:
    return {name: name for name in _CANONICAL_WINDOWS}, list(_CANONICAL_WINDOWS)


def resolve_allowed_windows(source: LeaderboardSource | None) -> tuple[dict[str, str], list[str]]:
    """The window names a source offers, lower-cased and deduplicated, plus their order.

    Falls back to 24h and 7d when the source offers none.
    """
    if source is None:
        return _canonical()
    allowed: dict[str, str] = {}
    for window in source.windows or ():
        name = window.name.strip().lower()
        if name and name not in allowed:
            allowed[name] = name
    if not allowed:
        return _canonical()
    return allowed, list(allowed)


def _format_rfc3339(moment: dt.datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=_UTC)
    if moment.utcoffset() == dt.timedelta(0):
        return moment.strftime("%Y-%m-%dT%H:%M:%SZ")
    return moment.replace(microsecond=0).isoformat()


def _json_number(value: float) -> float | int:
    if isinstance(value, float) and math.isfinite(value) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _encode_json(payload: Any) -> bytes:
    text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    for char, escaped in (
        ("&", "\\u0026"),
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return (text + "\n").encode("utf-8")


def leaderboard_payload(
    source: LeaderboardSource | None,
    requested: str,
    allowed: dict[str, str],
    order: list[str],
) -> dict[str, Any]:
    """Build the leaderboard JSON document for a requested window name.

    Unknown windows resolve to the first allowed one (or 24h).
    """
    normalized = requested.strip().lower()
    if normalized in allowed:
        resolved = allowed[normalized]
    else:
        resolved = order[0] if order else "24h"

    board = source.snapshot(resolved) if source is not None else None
    if board is None:
        board = Leaderboard()
    generated = board.generated_at or dt.datetime.now(_UTC)

    return {
        "generatedAt": _format_rfc3339(generated),
        "scope": GLOBAL_SCOPE,
        "window": resolved,
        "entries": [
            {"rank": entry.rank, "zoneId": entry.zone_id, "energyKWh": _json_number(entry.energy_kwh)}
            for entry in board.entries
        ],
    }


class Router:
    """The service's WSGI application."""

    def __init__(
        self,
        logger: Logger | None = None,
        health: HealthState | None = None,
        source: LeaderboardSource | None = None,
        metrics: Registry | None = None,
    ) -> None:
        self._log = logger if logger is not None else _null_logger()
        self._health = health if health is not None else HealthState()
        self._source = source
        self._metrics = metrics if metrics is not None else Registry()
        self._allowed, self._order = resolve_allowed_windows(source)
        self._routes: dict[str, Callable[[dict], _Response]] = {
            "/health": self._live,
            "/health/live": self._live,
            "/health/ready": self._ready,
            LEADERBOARD_PATH: self._leaderboard,
            "/metrics": self._metrics_page,
        }

    def __call__(self, environ: dict, start_response: Callable) -> list[bytes]:
        response = self._dispatch(environ)
        headers = [
            ("Content-Type", response.content_type),
            ("Content-Length", str(len(response.body))),
            *response.extra_headers,
        ]
        phrase = HTTPStatus(response.status).phrase
        start_response(f"{response.status} {phrase}", headers)
        return [response.body]

    def _dispatch(self, environ: dict) -> _Response:
        path = environ.get("PATH_INFO") or "/"
        handler = self._routes.get(path)
        if handler is None:
            return _Response(HTTPStatus.NOT_FOUND, _TEXT, b"not found")
        if environ.get("REQUEST_METHOD", "GET") != "GET":
            return _Response(
                HTTPStatus.METHOD_NOT_ALLOWED,
                _TEXT,
                b"method not allowed",
                [("Allow", "GET")],
            )
        return handler(environ)

    def _live(self, environ: dict) -> _Response:
        return _Response(HTTPStatus.OK, _TEXT, b"OK")

    def _ready(self, environ: dict) -> _Response:
        if not self._health.ready:
            return _Response(HTTPStatus.SERVICE_UNAVAILABLE, _TEXT, b"NOT_READY")
        return _Response(HTTPStatus.OK, _TEXT, b"OK")

    def _metrics_page(self, environ: dict) -> _Response:
        return _Response(HTTPStatus.OK, _METRICS_TYPE, self._metrics.render().encode("utf-8"))

    def _leaderboard(self, environ: dict) -> _Response:
        query = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
        requested = query.get("window", [""])[0].strip()
        payload = leaderboard_payload(self._source, requested, self._allowed, self._order)
        log_event(
            self._log,
            logging.INFO,
            "leaderboard_response_ready",
            requested_window=requested,
            resolved_window=payload["window"],
            defaulted=requested.lower() not in self._allowed,
            entry_count=len(payload["entries"]),
        )
        return _Response(HTTPStatus.OK, _JSON, _encode_json(payload))


def wrap_with_logging(logger: Logger, app: WSGIApp, metrics: Registry | None = None) -> WSGIApp:
    """Wrap a WSGI app with access logging and leaderboard request metrics."""

    def middleware(environ: dict, start_response: Callable) -> list[bytes]:
        started = time.perf_counter()
        status = int(HTTPStatus.OK)

        def recording_start_response(status_line: str, headers: list, exc_info: Any = None) -> Any:
            nonlocal status
            status = int(status_line.split(" ", 1)[0])
            if exc_info is not None:
                return start_response(status_line, headers, exc_info)
            return start_response(status_line, headers)

        result = app(environ, recording_start_response)
        try:
            body = list(result)
        finally:
            close = getattr(result, "close", None)
            if close is not None:
                close()

        elapsed = time.perf_counter() - started
        path = environ.get("PATH_INFO") or "/"
        log_event(
            logger,
            logging.INFO,
            "http_request",
            method=environ.get("REQUEST_METHOD", "GET"),
            path=path,
            status=status,
            duration=f"{elapsed:.6f}s",
        )
        if path == LEADERBOARD_PATH and metrics is not None:
            metrics.observe_leaderboard_request(status, elapsed)
        return body

    return middleware