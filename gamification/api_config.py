"""Environment toggles of the HTTP layer."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

__all__ = ["APIConfig", "load_api_config", "parse_windows", "parse_duration"]

DEFAULT_HTTP_PORT = 8085
DEFAULT_WINDOWS_RAW = "24h,7d"
DEFAULT_REFRESH_RAW = "60s"

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_COMPONENT = r"(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"([+-]?)((?:{_COMPONENT})+)")
_PART_RE = re.compile(r"([0-9]*\.?[0-9]*)(ns|us|µs|μs|ms|s|m|h)")
_INT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class APIConfig:
    """HTTP settings: port, leaderboard windows and refresh interval in seconds."""

    http_port: int
    windows: tuple[str, ...]
    refresh_every: float


def _go_duration(raw: str) -> float:
    """Parse a duration such as "1h30m" or "250ms" into seconds."""
    if raw in ("0", "+0", "-0"):
        return 0.0
    match = _DURATION_RE.fullmatch(raw)
    if not match:
        raise ValueError(f"invalid duration {raw!r}")
    sign, body = match.groups()
    total = sum(float(number) * _UNITS[unit] for number, unit in _PART_RE.findall(body))
    return -total if sign == "-" else total


def parse_duration(raw: str) -> float:
    """Return a positive duration in seconds, or 0 when the text is not one.

    Accepts duration strings with units and, failing that, a plain count of seconds.
    """
    if not raw.strip():
        return 0.0
    try:
        seconds = _go_duration(raw)
    except ValueError:
        pass
    else:
        if seconds > 0:
            return seconds
    if _INT_RE.fullmatch(raw):
        count = int(raw)
        if count > 0:
            return float(count)
    return 0.0


def parse_windows(raw: str) -> list[str]:
    """Split a comma list of window names, lower-cased and without duplicates."""
    result: list[str] = []
    for chunk in raw.split(","):
        name = chunk.strip().lower()
        if name and name not in result:
            result.append(name)
    return result


def load_api_config(environ: Mapping[str, str] | None = None) -> APIConfig:
    """Read the HTTP settings; missing or malformed values keep their defaults."""
    env = os.environ if environ is None else environ

    def lookup(key: str) -> str | None:
        value = env.get(key)
        return None if value is None else value.strip()

    port = DEFAULT_HTTP_PORT
    raw_port = lookup("GAMIF_HTTP_PORT")
    if raw_port is not None and _INT_RE.fullmatch(raw_port) and int(raw_port) > 0:
        port = int(raw_port)

    windows = parse_windows(DEFAULT_WINDOWS_RAW)
    raw_windows = lookup("GAMIF_WINDOWS")
    if raw_windows is not None:
        parsed = parse_windows(raw_windows)
        if parsed:
            windows = parsed

    refresh = parse_duration(DEFAULT_REFRESH_RAW)
    raw_refresh = lookup("GAMIF_REFRESH_EVERY")
    if raw_refresh is not None:
        parsed_refresh = parse_duration(raw_refresh)
        if parsed_refresh > 0:
            refresh = parsed_refresh

    return APIConfig(http_port=port, windows=tuple(windows), refresh_every=refresh)