"""autopilot.execution.engine

The autopilot engine.

It coordinates a tick; it does not implement one. Per valuation tick:
1) ledger.revalue (freshness gate, bookkeeping, ratchet, trigger)
2) data-quality failures are counted and the decision is skipped
3) an instruction, if any, goes to the executor
4) the fill (or failure) is applied back on the ledger

Batches fan out over a thread pool, one worker per position group, so ticks
for the same position are always applied in arrival order.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from autopilot.brain.data_quality import DataQualityMonitor
from autopilot.brain.health import HealthScore, HealthScorer
from autopilot.core.catalog import StrategyCatalog
from autopilot.core.config import Config
from autopilot.core.database import Database
from autopilot.core.events import EventType
from autopilot.core.exceptions import (
    DataQualityError,
    ExecutionError,
    InvariantViolation,
    ValidationError,
)
from autopilot.core.metrics import REGISTRY, MetricsRegistry
from autopilot.core.time import ensure_utc, utc_now
from autopilot.core.types import (
    FinalSettlement,
    Money,
    RebalanceEvent,
    RebalanceInstruction,
    RebalanceResult,
    ValuationTick,
    VolatilitySignal,
)
from autopilot.execution.executor import RebalanceExecutor
from autopilot.execution.ledger import PositionLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TickOutcome:
    position_id: str
    status: str  # noop|pending|rebalanced|rejected|skipped|settled
    instruction: RebalanceInstruction | None = None
    event: RebalanceEvent | None = None
    error_code: str | None = None


class AutopilotEngine:
    def __init__(
        self,
        ledger: PositionLedger,
        *,
        executor: RebalanceExecutor | None = None,
        monitor: DataQualityMonitor | None = None,
        scorer: HealthScorer | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.config = ledger.config
        self.executor = executor
        self.metrics = metrics or REGISTRY
        self.monitor = monitor or DataQualityMonitor(
            alert_after=self.config.engine.data_quality_alert_after,
            metrics=self.metrics,
        )
        self.scorer = scorer or HealthScorer()
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        db: Database | None = None,
        executor: RebalanceExecutor | None = None,
        restore: bool = False,
    ) -> AutopilotEngine:
        catalog = StrategyCatalog.from_configs(config.strategies)
        if restore and db is not None:
            ledger = PositionLedger.restore(catalog, db, config=config)
        else:
            ledger = PositionLedger(catalog, config=config, db=db)
        return cls(ledger, executor=executor)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def on_tick(
        self,
        tick: ValuationTick,
        *,
        volatility: VolatilitySignal | None = None,
        now: datetime | None = None,
    ) -> TickOutcome:
        ts = ensure_utc(now or self.clock())
        pid = tick.position_id
        self.metrics.counter("cppi_ticks_total").inc()

        try:
            instr = self.ledger.revalue(
                pid,
                tick.value,
                as_of=tick.as_of,
                volatility=volatility,
                now=ts,
                safe_value=tick.safe_value,
                risky_value=tick.risky_value,
            )
        except DataQualityError as e:
            self.monitor.record(e, at=ts)
            if self.ledger.db is not None and e.code != "data_quality.missing_volatility":
                self.ledger.db.append_event(
                    event_type=EventType.DATA_QUALITY_SKIPPED_V1,
                    payload={"position_id": pid, "code": e.code, "reason": e.reason},
                    source="execution.engine",
                    ts=ts,
                )
            logger.info("cppi_tick_skipped", extra={"position_id": pid, "code": e.code, "reason": e.reason})
            return TickOutcome(position_id=pid, status="skipped", error_code=e.code)
        except InvariantViolation:
            self.metrics.counter("cppi_invariant_violations_total").inc()
            raise

        self.monitor.clear(pid)

        if instr is None:
            if self.ledger.settlement(pid) is not None:
                return TickOutcome(position_id=pid, status="settled")
            return TickOutcome(position_id=pid, status="noop")

        return self.dispatch(instr)

    def dispatch(self, instruction: RebalanceInstruction) -> TickOutcome:
        """Hand an instruction to the executor and apply the outcome.

        Without an executor the instruction stays in flight until a result is
        reported through ``apply_result`` or it times out.
        """

        pid = instruction.position_id
        self.metrics.counter("cppi_rebalances_issued_total").inc()
        if self.executor is None:
            return TickOutcome(position_id=pid, status="pending", instruction=instruction)

        try:
            result = self.executor.execute(instruction)
        except ExecutionError as e:
            self.ledger.cancel_rebalance(pid, reason=e.code)
            self.metrics.counter("cppi_rebalances_failed_total").inc()
            logger.warning("cppi_executor_failed", extra={"position_id": pid, "code": e.code})
            return TickOutcome(position_id=pid, status="rejected", instruction=instruction, error_code=e.code)
        except Exception:
            self.ledger.cancel_rebalance(pid, reason="executor_exception")
            self.metrics.counter("cppi_rebalances_failed_total").inc()
            raise

        return self.apply_result(instruction, result)

    def apply_result(self, instruction: RebalanceInstruction, result: RebalanceResult) -> TickOutcome:
        pid = instruction.position_id
        try:
            event = self.ledger.apply_rebalance_result(pid, result)
        except ExecutionError as e:
            self.metrics.counter("cppi_rebalances_failed_total").inc()
            return TickOutcome(position_id=pid, status="rejected", instruction=instruction, error_code=e.code)
        except InvariantViolation:
            self.metrics.counter("cppi_invariant_violations_total").inc()
            raise

        self.metrics.counter("cppi_rebalances_applied_total").inc()
        self.metrics.summary("cppi_fill_slippage_bps").observe(float(result.slippage_bps))
        return TickOutcome(position_id=pid, status="rebalanced", instruction=instruction, event=event)

    def run_ticks(
        self,
        ticks: Iterable[ValuationTick],
        *,
        volatility: Mapping[str, VolatilitySignal] | None = None,
        now: datetime | None = None,
    ) -> list[TickOutcome]:
        """Process a batch. Positions run concurrently, each position's ticks in order.

        An ``InvariantViolation`` in one group does not stop the others; the
        first one seen is re-raised once the batch has drained.
        """

        vols = volatility or {}
        groups: OrderedDict[str, list[ValuationTick]] = OrderedDict()
        for t in ticks:
            groups.setdefault(t.position_id, []).append(t)
        if not groups:
            return []

        def run_group(items: list[ValuationTick]) -> list[TickOutcome]:
            out: list[TickOutcome] = []
            for t in items:
                try:
                    out.append(self.on_tick(t, volatility=vols.get(t.position_id), now=now))
                except ValidationError as e:
                    out.append(TickOutcome(position_id=t.position_id, status="rejected", error_code=e.code))
            return out

        workers = max(1, min(int(self.config.engine.workers), len(groups)))
        outcomes: list[TickOutcome] = []
        fatal: BaseException | None = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cppi-tick") as pool:
            futures = [pool.submit(run_group, items) for items in groups.values()]
            for fut in futures:
                try:
                    outcomes.extend(fut.result())
                except InvariantViolation as e:
                    fatal = fatal or e
        if fatal is not None:
            raise fatal
        return outcomes

    def sweep(self, *, now: datetime | None = None) -> tuple[list[str], list[FinalSettlement]]:
        """Expire overdue instructions and settle matured positions."""

        ts = ensure_utc(now or self.clock())
        expired = self.ledger.expire_in_flight(now=ts)
        if expired:
            self.metrics.counter("cppi_rebalances_timed_out_total").inc(len(expired))
        return expired, self.ledger.settle_matured(now=ts)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def open_position(
        self,
        strategy_id: str,
        principal: Money | int | float | str,
        custom_floor: Money | int | float | str | None = None,
        auto_rebalance: bool = True,
        *,
        owner: str = "anonymous",
        maturity_date: datetime | None = None,
        now: datetime | None = None,
    ) -> str:
        pid = self.ledger.open(
            strategy_id,
            principal,
            custom_floor,
            auto_rebalance,
            owner=owner,
            maturity_date=maturity_date,
            now=now,
        )
        self.metrics.counter("cppi_positions_opened_total").inc()
        self.metrics.gauge("cppi_open_positions").set(len(self.ledger.position_ids()))
        return pid

    def close_position(self, position_id: str, *, now: datetime | None = None) -> FinalSettlement:
        self.monitor.clear(position_id)
        settlement = self.ledger.close(position_id, now=now)
        self.metrics.gauge("cppi_open_positions").set(len(self.ledger.position_ids()))
        return settlement

    def manual_rebalance(self, position_id: str, *, now: datetime | None = None) -> TickOutcome:
        return self.dispatch(self.ledger.manual_rebalance(position_id, now=now))

    def toggle_auto_rebalance(self, position_id: str, enabled: bool | None = None) -> bool:
        return self.ledger.toggle_auto_rebalance(position_id, enabled)

    def raise_floor(self, position_id: str, new_floor: Money | int | float | str) -> Money:
        return self.ledger.raise_floor(position_id, new_floor)

    def emergency_stop(self, position_id: str, reason: str = "emergency_stop") -> None:
        self.ledger.emergency_stop(position_id, reason)

    def resume(self, position_id: str) -> None:
        self.ledger.resume(position_id)

    def health(self, position_id: str) -> HealthScore:
        return self.scorer.score(self.ledger.get(position_id))
