"""autopilot.execution.paper

Paper executor.

Fills immediately at the instructed target, minus configurable slippage and
cost on the traded notional. Used by the simulator and the tests; it never
touches a venue.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from autopilot.core.config import PaperConfig
from autopilot.core.types import BPS, ZERO, RebalanceInstruction, RebalanceResult, to_decimal


class PaperExecutor:
    def __init__(
        self,
        *,
        config: PaperConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.cfg = config or PaperConfig()
        self.clock = clock
        self.fills: list[RebalanceResult] = []

    def execute(self, instruction: RebalanceInstruction) -> RebalanceResult:
        slippage_bps = to_decimal(self.cfg.slippage_bps)
        cost_rate = to_decimal(self.cfg.cost_rate)

        traded = abs(instruction.target_risky_exposure - instruction.before_risky)
        slip = traded * slippage_bps / BPS
        cost = traded * cost_rate

        # Frictions come out of the safe leg first; the risky leg is never
        # topped up past its target.
        safe = instruction.target_safe_exposure - slip - cost
        risky = instruction.target_risky_exposure
        if safe < 0:
            risky = max(ZERO, risky + safe)
            safe = ZERO

        result = RebalanceResult(
            position_id=instruction.position_id,
            instruction_id=instruction.instruction_id,
            achieved_safe=safe,
            achieved_risky=risky,
            slippage_bps=slippage_bps,
            cost=cost + slip,
            success=True,
            timestamp=self.clock() if self.clock is not None else instruction.issued_at,
        )
        self.fills.append(result)
        return result

    @property
    def total_cost(self) -> Decimal:
        return sum((f.cost for f in self.fills), ZERO)
