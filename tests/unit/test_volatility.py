from __future__ import annotations

import math

from autopilot.brain.volatility import realized_volatility, regime_for, signal_from_values
from autopilot.core.types import VolatilityRegime
from tests.unit._helpers import T0


def test_flat_path_has_zero_vol():
    assert realized_volatility([100, 100, 100, 100]) == 0.0


def test_short_or_invalid_paths_are_zero():
    assert realized_volatility([100, 101]) == 0.0
    assert realized_volatility([100, 0, 101]) == 0.0


def test_alternating_path_vol_is_annualized():
    values = [100, 110, 100, 110, 100]
    v = realized_volatility(values, periods_per_year=1)
    step = math.log(1.1)
    # returns alternate +step/-step; sample stdev with ddof=1
    expected = math.sqrt(4 * step**2 / 3)
    assert math.isclose(v, expected, rel_tol=1e-9)
    assert math.isclose(realized_volatility(values, periods_per_year=4), expected * 2, rel_tol=1e-9)


def test_regimes():
    assert regime_for(0.10) == VolatilityRegime.LOW
    assert regime_for(0.50) == VolatilityRegime.NORMAL
    assert regime_for(1.20) == VolatilityRegime.HIGH


def test_signal_from_values():
    s = signal_from_values([100, 100, 100], observed_at=T0)
    assert s.value == 0.0
    assert s.regime == VolatilityRegime.LOW
    assert s.observed_at == T0
