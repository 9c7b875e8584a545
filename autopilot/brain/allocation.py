"""autopilot.brain.allocation

The CPPI rule and the floor ratchet.

    risky = min(multiplier * max(0, value - floor), value, principal * (cap - 1))
    safe  = value - risky

Pure functions of their inputs. Replaying history must reproduce every target
exactly, so nothing here reads a clock or any shared state.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from autopilot.core.catalog import Strategy
from autopilot.core.types import ONE, ZERO, Money, Position


@dataclass(frozen=True, slots=True)
class AllocationTarget:
    safe: Money
    risky: Money
    cushion: Money
    capped: bool

    @property
    def value(self) -> Money:
        return self.safe + self.risky

    @property
    def risky_ratio(self) -> Decimal:
        v = self.value
        return self.risky / v if v > 0 else ZERO

    @property
    def safe_ratio(self) -> Decimal:
        v = self.value
        return self.safe / v if v > 0 else ZERO

    @property
    def leverage_ratio(self) -> Decimal:
        """Risky exposure per unit of cushion. Equals the multiplier unless capped."""

        return self.risky / self.cushion if self.cushion > 0 else ZERO

    @property
    def floor_locked(self) -> bool:
        return self.cushion <= 0

    def as_tuple(self) -> tuple[Money, Money]:
        return self.safe, self.risky


def compute_target(
    *,
    current_value: Money,
    guaranteed_floor: Money,
    principal: Money,
    multiplier: Decimal,
    cap: Decimal | None = None,
) -> AllocationTarget:
    cushion = max(ZERO, current_value - guaranteed_floor)
    desired = multiplier * cushion

    capped = False
    if desired > current_value:
        desired = current_value
        capped = True
    if cap is not None:
        ceiling = principal * (cap - ONE)
        if desired > ceiling:
            desired = ceiling
            capped = True

    risky = max(ZERO, desired)
    return AllocationTarget(
        safe=current_value - risky,
        risky=risky,
        cushion=cushion,
        capped=capped,
    )


def target(position: Position, strategy: Strategy) -> AllocationTarget:
    """Target safe/risky split for ``position`` under ``strategy``."""

    return compute_target(
        current_value=position.current_value,
        guaranteed_floor=position.guaranteed_floor,
        principal=position.principal,
        multiplier=strategy.multiplier,
        cap=strategy.cap,
    )


def ratchet(position: Position, strategy: Strategy) -> Money:
    """Return the floor after applying the high-water-mark ratchet.

    The floor never moves down. With a cap, the peak counted for ratcheting is
    clamped to ``cap * principal`` so the floor stays below the value ceiling.
    """

    if not strategy.ratchet_enabled:
        return position.guaranteed_floor

    peak = position.peak_value
    if strategy.cap is not None:
        peak = min(peak, position.principal * strategy.cap)
    return max(position.guaranteed_floor, peak * strategy.floor_ratio)
