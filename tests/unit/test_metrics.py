from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from autopilot.core.metrics import MetricsRegistry


def test_counters_and_gauges_snapshot(metrics: MetricsRegistry) -> None:
    metrics.counter("cppi_ticks_total").inc()
    metrics.counter("cppi_ticks_total").inc(2)
    metrics.gauge("cppi_open_positions").set(3)

    snap = metrics.snapshot()
    assert snap["counter.cppi_ticks_total"] == 3.0
    assert snap["gauge.cppi_open_positions"] == 3.0


def test_counter_is_thread_safe(metrics: MetricsRegistry) -> None:
    c = metrics.counter("cppi_rebalances_applied_total")
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: c.inc(), range(1000)))
    assert c.value == 1000.0


def test_labelled_series_are_distinct(metrics: MetricsRegistry) -> None:
    metrics.counter("cppi_data_quality_total", position_id="p1", code="x").inc()
    metrics.counter("cppi_data_quality_total", code="x", position_id="p1").inc()
    metrics.counter("cppi_data_quality_total", code="x", position_id="p2").inc()

    snap = metrics.snapshot()
    assert snap["counter.cppi_data_quality_total{code=x,position_id=p1}"] == 2.0
    assert snap["counter.cppi_data_quality_total{code=x,position_id=p2}"] == 1.0


def test_counters_reject_negative_increments(metrics: MetricsRegistry) -> None:
    with pytest.raises(ValueError):
        metrics.counter("cppi_ticks_total").inc(-1)


def test_summary_tracks_count_sum_and_max(metrics: MetricsRegistry) -> None:
    s = metrics.summary("cppi_fill_slippage_bps")
    for v in (5, 12.5, 2.5):
        s.observe(v)

    assert s.mean == pytest.approx(20 / 3)
    snap = metrics.snapshot()
    assert snap["summary.cppi_fill_slippage_bps.count"] == 3.0
    assert snap["summary.cppi_fill_slippage_bps.sum"] == 20.0
    assert snap["summary.cppi_fill_slippage_bps.max"] == 12.5
