from __future__ import annotations

from datetime import timedelta

import pytest

from autopilot.brain.data_quality import DataQualityMonitor, check_valuation, check_volatility
from autopilot.core.exceptions import MissingVolatilitySignal, StaleValuation
from tests.unit._helpers import T0, at, vol


def test_fresh_valuation_passes():
    check_valuation(position_id="p", as_of=at(-4), now=T0, freshness_window=timedelta(minutes=5))


def test_old_valuation_is_stale():
    with pytest.raises(StaleValuation) as ei:
        check_valuation(position_id="p", as_of=at(-6), now=T0, freshness_window=timedelta(minutes=5))
    assert ei.value.reason == "too_old"
    assert ei.value.position_id == "p"


def test_out_of_order_valuation_is_stale():
    with pytest.raises(StaleValuation) as ei:
        check_valuation(
            position_id="p",
            as_of=at(-2),
            now=T0,
            freshness_window=timedelta(minutes=5),
            last_valuation_at=at(-1),
        )
    assert ei.value.reason == "out_of_order"


@pytest.mark.parametrize(
    ("signal", "reason"),
    [
        (None, "missing"),
        (vol(0.3, observed_at=at(-30)), "stale"),
        (vol(-0.1), "invalid"),
    ],
)
def test_volatility_checks(signal, reason):
    with pytest.raises(MissingVolatilitySignal) as ei:
        check_volatility(signal, position_id="p", now=T0, max_age=timedelta(minutes=15))
    assert ei.value.reason == reason


def test_usable_volatility_is_returned():
    s = vol(0.3, observed_at=at(-1))
    assert check_volatility(s, position_id="p", now=T0, max_age=timedelta(minutes=15)) is s


def test_monitor_counts_and_alerts(metrics):
    mon = DataQualityMonitor(alert_after=2, metrics=metrics)
    err = StaleValuation("old", position_id="p1", reason="too_old")

    mon.record(err, at=T0)
    assert mon.consecutive("p1") == 1
    assert mon.alerts() == []

    issue = mon.record(err, at=at(1))
    assert issue.consecutive == 2
    assert [a.position_id for a in mon.alerts()] == ["p1"]
    assert metrics.counter(err.code).value == 2.0
    assert metrics.counter("cppi_data_quality_total", code=err.code, position_id="p1").value == 2.0

    mon.clear("p1")
    assert mon.consecutive("p1") == 0
    assert mon.alerts() == []


def test_monitor_clear_forgets_the_last_issue(metrics):
    mon = DataQualityMonitor(alert_after=1, metrics=metrics)
    mon.record(StaleValuation("old", position_id="p1", reason="too_old"), at=T0)
    mon.record(StaleValuation("old", position_id="p2", reason="too_old"), at=T0)

    mon.clear("p1")
    assert "p1" not in mon._last
    assert [a.position_id for a in mon.alerts()] == ["p2"]
