"""In-process metrics rendered in the Prometheus text exposition format."""

from __future__ import annotations

import enum
import math
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

__all__ = ["DropReason", "Histogram", "HistogramSnapshot", "Registry"]

SCORE_REFRESH_BUCKETS = (0.1, 0.25, 0.5, 1, 2, 5, 10, 30)
LEADERBOARD_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2)


class DropReason(str, enum.Enum):
    """Why a ledger payload was dropped instead of being stored."""

    MISSING_MATCHED_AT = "missing_matchedAt"
    SCHEMA_REJECT = "schema_reject"
    JSON_ERROR = "json_error"


def _format_general(value: float) -> str:
    """Format a float as the shortest general representation ("%g" style)."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    sign, digit_tuple, exponent = Decimal(repr(value)).normalize().as_tuple()
    digits = "".join(map(str, digit_tuple))
    point = len(digits) + exponent
    exp = point - 1
    prefix = "-" if sign else ""
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        exp_sign = "-" if exp < 0 else "+"
        return f"{prefix}{mantissa}e{exp_sign}{abs(exp):02d}"
    if point <= 0:
        return f"{prefix}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return prefix + digits + "0" * (point - len(digits))
    return f"{prefix}{digits[:point]}.{digits[point:]}"


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


@dataclass(frozen=True)
class HistogramSnapshot:
    """Point-in-time copy of a histogram's state."""

    buckets: tuple[float, ...]
    counts: tuple[int, ...]
    sum: float
    count: int


class Histogram:
    """Thread-safe histogram over fixed upper bucket edges."""

    def __init__(self, edges: Iterable[float]) -> None:
        self._lock = threading.Lock()
        self._buckets = tuple(sorted(float(edge) for edge in edges))
        self._counts = [0] * len(self._buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        """Record a value; NaN and infinities are ignored, negatives count as zero."""
        if math.isnan(value) or math.isinf(value):
            return
        if value < 0:
            value = 0.0
        with self._lock:
            self._counts = [
                count + (1 if value <= upper else 0)
                for count, upper in zip(self._counts, self._buckets)
            ]
            self._count += 1
            self._sum += value

    def snapshot(self) -> HistogramSnapshot:
        """Return a copy of the buckets, per-bucket counts, sum and count."""
        with self._lock:
            return HistogramSnapshot(
                buckets=self._buckets,
                counts=tuple(self._counts),
                sum=self._sum,
                count=self._count,
            )

    def render(self, name: str) -> list[str]:
        snap = self.snapshot()
        lines: list[str] = []
        cumulative = 0
        for upper, count in zip(snap.buckets, snap.counts):
            cumulative += count
            lines.append(f'{name}_bucket{{le="{_format_general(upper)}"}} {cumulative}')
        lines.append(f'{name}_bucket{{le="+Inf"}} {snap.count}')
        lines.append(f"{name}_sum {snap.sum:f}")
        lines.append(f"{name}_count {snap.count}")
        return lines


class Registry:
    """All metrics of the service, safe for concurrent use."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ledger_messages = 0
        self._ledger_decode_ok = 0
        self._ledger_decode_drops: dict[str, int] = {}
        self._ledger_energy_missing = 0
        self._ledger_lag = 0.0
        self._leaderboard_requests: dict[str, int] = {}
        self.score_refresh_durations = Histogram(SCORE_REFRESH_BUCKETS)
        self.leaderboard_latencies = Histogram(LEADERBOARD_LATENCY_BUCKETS)

    def inc_ledger_message(self) -> None:
        """Count one consumed ledger message."""
        with self._lock:
            self._ledger_messages += 1

    def inc_ledger_decode_ok(self) -> None:
        """Count one ledger message that decoded and passed schema checks."""
        with self._lock:
            self._ledger_decode_ok += 1

    def inc_ledger_decode_drop(self, reason: str | DropReason) -> None:
        """Count one dropped ledger message under the given reason."""
        label = reason.value if isinstance(reason, DropReason) else str(reason)
        if not label.strip():
            label = "unknown"
        with self._lock:
            self._ledger_decode_drops[label] = self._ledger_decode_drops.get(label, 0) + 1

    def inc_ledger_energy_missing(self) -> None:
        """Count one epoch that arrived without aggregator energy."""
        with self._lock:
            self._ledger_energy_missing += 1

    def set_ledger_lag(self, lag: float) -> None:
        """Record the consumer lag; NaN and infinities are ignored, negatives become zero."""
        lag = float(lag)
        if math.isnan(lag) or math.isinf(lag):
            return
        with self._lock:
            self._ledger_lag = max(lag, 0.0)

    def observe_score_refresh(self, seconds: float) -> None:
        """Record how long a leaderboard recomputation took."""
        self.score_refresh_durations.observe(seconds)

    def observe_leaderboard_request(self, status: int, seconds: float) -> None:
        """Record the status code and latency of a leaderboard request."""
        label = str(status)
        with self._lock:
            self._leaderboard_requests[label] = self._leaderboard_requests.get(label, 0) + 1
        self.leaderboard_latencies.observe(seconds)

    @staticmethod
    def _labelled(name: str, label: str, values: dict[str, int]) -> list[str]:
        if not values:
            return [f"{name}{{}} 0"]
        return [
            f'{name}{{{label}="{_escape_label(key)}"}} {values[key]}'
            for key in sorted(values)
        ]

    def render(self) -> str:
        """Export every metric in Prometheus text format."""
        with self._lock:
            messages = self._ledger_messages
            decode_ok = self._ledger_decode_ok
            drops = dict(self._ledger_decode_drops)
            energy_missing = self._ledger_energy_missing
            lag = self._ledger_lag
            requests = dict(self._leaderboard_requests)

        sections = [
            ("gamification_ledger_messages_consumed_total", "counter",
             [f"gamification_ledger_messages_consumed_total{{}} {messages}"]),
            ("gamification_ledger_decode_ok_total", "counter",
             [f"gamification_ledger_decode_ok_total{{}} {decode_ok}"]),
            ("gamification_ledger_decode_drop_total", "counter",
             self._labelled("gamification_ledger_decode_drop_total", "reason", drops)),
            ("gamification_ledger_energy_missing_total", "counter",
             [f"gamification_ledger_energy_missing_total{{}} {energy_missing}"]),
            ("gamification_ledger_consumer_lag", "gauge",
             [f"gamification_ledger_consumer_lag{{}} {_format_general(lag)}"]),
            ("gamification_score_refresh_duration_seconds", "histogram",
             self.score_refresh_durations.render("gamification_score_refresh_duration_seconds")),
            ("gamification_leaderboard_requests_total", "counter",
             self._labelled("gamification_leaderboard_requests_total", "status", requests)),
            ("gamification_leaderboard_request_duration_seconds", "histogram",
             self.leaderboard_latencies.render("gamification_leaderboard_request_duration_seconds")),
        ]
        chunks = []
        for name, kind, body in sections:
            lines = [f"# TYPE {name} {kind}", *body]
            chunks.append("".join(line + "\n" for line in lines) + "\n")
        return "".join(chunks)