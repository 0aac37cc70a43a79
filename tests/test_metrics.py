import math

import pytest

from gamification.metrics import DropReason, Histogram, Registry


def _lines(text):
    return text.splitlines()


def test_fresh_registry_renders_zero_counters():
    lines = _lines(Registry().render())
    assert "gamification_ledger_messages_consumed_total{} 0" in lines
    assert "gamification_ledger_decode_ok_total{} 0" in lines
    assert "gamification_ledger_decode_drop_total{} 0" in lines
    assert "gamification_leaderboard_requests_total{} 0" in lines


def test_render_sections_in_order_with_type_headers():
    text = Registry().render()
    headers = [line for line in _lines(text) if line.startswith("# TYPE")]
    assert headers == [
        "# TYPE gamification_ledger_messages_consumed_total counter",
        "# TYPE gamification_ledger_decode_ok_total counter",
        "# TYPE gamification_ledger_decode_drop_total counter",
        "# TYPE gamification_ledger_energy_missing_total counter",
        "# TYPE gamification_ledger_consumer_lag gauge",
        "# TYPE gamification_score_refresh_duration_seconds histogram",
        "# TYPE gamification_leaderboard_requests_total counter",
        "# TYPE gamification_leaderboard_request_duration_seconds histogram",
    ]
    assert text.endswith("\n\n")


def test_counters_increment():
    registry = Registry()
    registry.inc_ledger_message()
    registry.inc_ledger_message()
    registry.inc_ledger_decode_ok()
    registry.inc_ledger_energy_missing()
    lines = _lines(registry.render())
    assert "gamification_ledger_messages_consumed_total{} 2" in lines
    assert "gamification_ledger_decode_ok_total{} 1" in lines
    assert "gamification_ledger_energy_missing_total{} 1" in lines


def test_drop_reasons_sorted_and_blank_becomes_unknown():
    registry = Registry()
    registry.inc_ledger_decode_drop(DropReason.SCHEMA_REJECT)
    registry.inc_ledger_decode_drop("json_error")
    registry.inc_ledger_decode_drop("   ")
    registry.inc_ledger_decode_drop(DropReason.SCHEMA_REJECT)
    drops = [
        line for line in _lines(registry.render())
        if line.startswith("gamification_ledger_decode_drop_total{")
    ]
    assert drops == [
        'gamification_ledger_decode_drop_total{reason="json_error"} 1',
        'gamification_ledger_decode_drop_total{reason="schema_reject"} 2',
        'gamification_ledger_decode_drop_total{reason="unknown"} 1',
    ]


def test_drop_reason_values_render_as_labels():
    registry = Registry()
    registry.inc_ledger_decode_drop(DropReason.MISSING_MATCHED_AT)
    registry.inc_ledger_decode_drop(DropReason.JSON_ERROR)
    lines = _lines(registry.render())
    assert 'gamification_ledger_decode_drop_total{reason="missing_matchedAt"} 1' in lines
    assert 'gamification_ledger_decode_drop_total{reason="json_error"} 1' in lines


def test_label_values_are_escaped():
    registry = Registry()
    registry.inc_ledger_decode_drop('a"b\\c\nd')
    assert 'gamification_ledger_decode_drop_total{reason="a\\"b\\\\c\\nd"} 1' in _lines(
        registry.render()
    )


@pytest.mark.parametrize(
    "lag, expected",
    [(-5, "0"), (1500, "1500"), (0.5, "0.5"), (2e6, "2e+06")],
)
def test_lag_gauge_formatting(lag, expected):
    registry = Registry()
    registry.set_ledger_lag(lag)
    assert f"gamification_ledger_consumer_lag{{}} {expected}" in _lines(registry.render())


def test_lag_ignores_non_finite_values():
    registry = Registry()
    registry.set_ledger_lag(7)
    registry.set_ledger_lag(math.nan)
    registry.set_ledger_lag(math.inf)
    assert "gamification_ledger_consumer_lag{} 7" in _lines(registry.render())


def test_leaderboard_request_status_label_and_count():
    registry = Registry()
    registry.observe_leaderboard_request(200, 0.02)
    registry.observe_leaderboard_request(200, 0.03)
    registry.observe_leaderboard_request(405, 0.001)
    lines = _lines(registry.render())
    assert 'gamification_leaderboard_requests_total{status="200"} 2' in lines
    assert 'gamification_leaderboard_requests_total{status="405"} 1' in lines
    assert "gamification_leaderboard_request_duration_seconds_count 3" in lines


def test_histogram_sorts_edges_and_ignores_non_finite():
    histogram = Histogram([2, 0.5, 1])
    histogram.observe(math.nan)
    histogram.observe(-math.inf)
    histogram.observe(0.75)
    snap = histogram.snapshot()
    assert snap.buckets == (0.5, 1.0, 2.0)
    assert snap.count == 1
    assert snap.counts == (0, 1, 1)
    assert snap.sum == 0.75


def test_histogram_clamps_negative_values():
    histogram = Histogram([0.1])
    histogram.observe(-3)
    snap = histogram.snapshot()
    assert snap.sum == 0.0
    assert snap.counts == (1,)


def test_histogram_render_inf_bucket_and_sum():
    registry = Registry()
    registry.observe_score_refresh(100.0)
    lines = _lines(registry.render())
    assert 'gamification_score_refresh_duration_seconds_bucket{le="+Inf"} 1' in lines
    assert "gamification_score_refresh_duration_seconds_sum 100.000000" in lines
    assert 'gamification_score_refresh_duration_seconds_bucket{le="30"} 0' in lines
    assert 'gamification_score_refresh_duration_seconds_bucket{le="0.25"} 0' in lines


def test_histogram_bucket_lines_are_non_decreasing():
    registry = Registry()
    for value in (0.05, 0.3, 1.5, 12):
        registry.observe_score_refresh(value)
    values = [
        int(line.rsplit(" ", 1)[1])
        for line in _lines(registry.render())
        if line.startswith("gamification_score_refresh_duration_seconds_bucket")
        and "+Inf" not in line
    ]
    assert len(values) == 8
    assert values == sorted(values)