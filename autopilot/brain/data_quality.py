"""autopilot.brain.data_quality

Suspect data never drives a rebalance.

A stale valuation skips the tick entirely: the last-known allocation stands.
A missing volatility signal skips only the discretionary checks; floor
protection does not wait for a volatility feed.

Repeated failures are counted per position and surfaced, never fatal.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from autopilot.core.exceptions import DataQualityError, MissingVolatilitySignal, StaleValuation
from autopilot.core.metrics import REGISTRY, MetricsRegistry
from autopilot.core.time import ensure_utc, staleness_ms
from autopilot.core.types import VolatilitySignal

logger = logging.getLogger(__name__)


def check_valuation(
    *,
    position_id: str,
    as_of: datetime,
    now: datetime,
    freshness_window: timedelta,
    last_valuation_at: datetime | None = None,
) -> None:
    """Raise ``StaleValuation`` if ``as_of`` is too old or out of order."""

    as_of = ensure_utc(as_of)
    age = ensure_utc(now) - as_of
    if age > freshness_window:
        raise StaleValuation(
            f"valuation is {age.total_seconds():.0f}s old",
            position_id=position_id,
            reason="too_old",
            context={
                "as_of": as_of.isoformat(),
                "age_ms": staleness_ms(as_of, now=now),
                "freshness_window_s": freshness_window.total_seconds(),
            },
        )
    if last_valuation_at is not None and as_of < ensure_utc(last_valuation_at):
        raise StaleValuation(
            "valuation is older than the last one applied",
            position_id=position_id,
            reason="out_of_order",
            context={"as_of": as_of.isoformat(), "last_valuation_at": last_valuation_at.isoformat()},
        )


def check_volatility(
    signal: VolatilitySignal | None,
    *,
    position_id: str,
    now: datetime,
    max_age: timedelta,
) -> VolatilitySignal:
    if signal is None:
        raise MissingVolatilitySignal("no volatility signal", position_id=position_id, reason="missing")
    age = ensure_utc(now) - ensure_utc(signal.observed_at)
    if age > max_age:
        raise MissingVolatilitySignal(
            f"volatility signal is {age.total_seconds():.0f}s old",
            position_id=position_id,
            reason="stale",
            context={
                "observed_at": signal.observed_at.isoformat(),
                "age_ms": staleness_ms(signal.observed_at, now=now),
            },
        )
    if signal.value < 0:
        raise MissingVolatilitySignal(
            "volatility must be non-negative",
            position_id=position_id,
            reason="invalid",
            context={"value": signal.value},
        )
    return signal


@dataclass(frozen=True, slots=True)
class DataQualityIssue:
    position_id: str
    code: str
    reason: str | None
    consecutive: int
    at: datetime


class DataQualityMonitor:
    """Counts data-quality failures per position and flags repeat offenders."""

    def __init__(self, *, alert_after: int = 3, metrics: MetricsRegistry | None = None) -> None:
        self.alert_after = int(alert_after)
        self.metrics = metrics or REGISTRY
        self._lock = threading.Lock()
        self._consecutive: dict[str, int] = defaultdict(int)
        self._last: dict[str, DataQualityIssue] = {}

    def record(self, err: DataQualityError, *, at: datetime) -> DataQualityIssue:
        pid = err.position_id or ""
        with self._lock:
            self._consecutive[pid] += 1
            issue = DataQualityIssue(
                position_id=pid,
                code=err.code,
                reason=err.reason,
                consecutive=self._consecutive[pid],
                at=at,
            )
            self._last[pid] = issue

        self.metrics.counter(err.code).inc()
        self.metrics.counter("cppi_data_quality_total", code=err.code, position_id=pid).inc()
        if issue.consecutive >= self.alert_after:
            logger.warning(
                "cppi_data_quality_alert",
                extra={"position_id": pid, "code": err.code, "consecutive": issue.consecutive},
            )
        else:
            logger.info("cppi_data_quality_skip", extra={"position_id": pid, "code": err.code})
        return issue

    def clear(self, position_id: str) -> None:
        with self._lock:
            self._consecutive.pop(position_id, None)
            self._last.pop(position_id, None)

    def consecutive(self, position_id: str) -> int:
        with self._lock:
            return int(self._consecutive.get(position_id, 0))

    def alerts(self) -> list[DataQualityIssue]:
        with self._lock:
            return [
                issue
                for pid, issue in self._last.items()
                if self._consecutive.get(pid, 0) >= self.alert_after
            ]
