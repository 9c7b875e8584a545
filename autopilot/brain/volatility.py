"""autopilot.brain.volatility

Realized volatility from a value path, and the low/normal/high regime map.

The engine consumes volatility signals; it does not produce them. This helper
exists for feeds that only have prices and for the simulator.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal

import numpy as np

from autopilot.core.types import VolatilityRegime, VolatilitySignal

# Annualized vol boundaries
LOW_BELOW = 0.25
HIGH_ABOVE = 0.80


def realized_volatility(values: Sequence[float | Decimal], *, periods_per_year: int = 365) -> float:
    """Annualized stdev of log returns. Fewer than three points -> 0.0."""

    arr = np.asarray([float(v) for v in values], dtype=float)
    if arr.size < 3 or np.any(arr <= 0):
        return 0.0
    rets = np.diff(np.log(arr))
    return float(np.std(rets, ddof=1) * np.sqrt(periods_per_year))


def regime_for(vol: float) -> VolatilityRegime:
    if vol < LOW_BELOW:
        return VolatilityRegime.LOW
    if vol > HIGH_ABOVE:
        return VolatilityRegime.HIGH
    return VolatilityRegime.NORMAL


def signal_from_values(
    values: Sequence[float | Decimal],
    *,
    observed_at: datetime,
    periods_per_year: int = 365,
) -> VolatilitySignal:
    vol = realized_volatility(values, periods_per_year=periods_per_year)
    return VolatilitySignal(value=vol, observed_at=observed_at, regime=regime_for(vol))
