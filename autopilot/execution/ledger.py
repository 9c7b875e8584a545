"""autopilot.execution.ledger

The position ledger: the single source of truth for every open CPPI position.

Contract:
- open / close                       lifecycle
- revalue                            mark to market, ratchet, maybe emit an instruction
- request_rebalance                  emit an instruction (at most one in flight)
- apply_rebalance_result             the only path that moves exposures to a target
- cancel_rebalance / expire_in_flight fail open: try again next tick

One writer per position (per-position lock), positions independent.
Every mutation re-checks the invariants; a broken invariant halts the position
and propagates. Silently repairing a ledger hides capital loss.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from autopilot.brain.allocation import compute_target, ratchet
from autopilot.brain.data_quality import check_valuation, check_volatility
from autopilot.brain.position_sm import PositionStateMachine
from autopilot.brain.trigger import RebalanceTrigger, TriggerDecision, is_floor_breach
from autopilot.core.catalog import Strategy, StrategyCatalog
from autopilot.core.config import Config
from autopilot.core.database import Database
from autopilot.core.events import EventType
from autopilot.core.exceptions import (
    ExecutionRejected,
    ExecutionTimeout,
    InvalidFloor,
    InvalidPrincipal,
    InvariantViolation,
    MissingVolatilitySignal,
    PositionClosed,
    PositionNotFound,
    RebalanceInFlight,
    SlippageExceeded,
    ValidationError,
)
from autopilot.core.time import ensure_utc, utc_now
from autopilot.core.types import (
    BPS,
    ONE,
    ZERO,
    FinalSettlement,
    Money,
    Position,
    PositionState,
    RebalanceEvent,
    RebalanceInstruction,
    RebalanceResult,
    TriggerReason,
    VolatilitySignal,
    to_decimal,
)

logger = logging.getLogger(__name__)


def _new_position_id() -> str:
    return f"pos_{uuid.uuid4().hex[:12]}"


class PositionLedger:
    def __init__(
        self,
        catalog: StrategyCatalog,
        *,
        config: Config | None = None,
        db: Database | None = None,
        trigger: RebalanceTrigger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.catalog = catalog
        self.config = config or Config()
        self.db = db
        self.clock = clock

        eng = self.config.engine
        self.trigger = trigger or RebalanceTrigger(spike_threshold=eng.volatility_spike_threshold)
        self.freshness_window = timedelta(seconds=eng.freshness_window_seconds)
        self.rebalance_timeout = timedelta(seconds=eng.rebalance_timeout_seconds)
        self.volatility_max_age = timedelta(seconds=eng.volatility_max_age_seconds)
        self.require_volatility = bool(eng.require_volatility_signal)
        self.max_slippage_bps = int(eng.max_slippage_bps)
        self.epsilon = Decimal(str(self.config.ledger.epsilon))

        self._sm = PositionStateMachine()
        self._registry_lock = threading.Lock()
        self._history_lock = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._positions: dict[str, Position] = {}
        self._settlements: dict[str, FinalSettlement] = {}
        self._history: list[RebalanceEvent] = []
        self._sequences: dict[str, int] = {}

        if self.db is not None:
            # Strategy ids are immutable: redefining one under the same id is a dedupe conflict.
            for s in self.catalog.values():
                self.db.upsert_strategy(s.to_dict())
                self.db.append_event(
                    event_type=EventType.STRATEGY_REGISTERED_V1,
                    payload=s.to_dict(),
                    source="execution.ledger",
                    dedupe_key=f"strategy:{s.id}",
                )

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    @classmethod
    def restore(cls, catalog: StrategyCatalog, db: Database, *, config: Config | None = None) -> PositionLedger:
        """Rebuild open positions and their rebalance history from the journal tables.

        In-flight instructions are not persisted: after a restart the next tick
        recomputes the target, same as a cancellation.
        """

        ledger = cls(catalog, config=config, db=db)
        for p in db.load_open_positions():
            catalog.require(p.strategy_id)
            ledger._positions[p.id] = p
            ledger._locks[p.id] = threading.RLock()
        events = db.load_rebalance_events(ledger._positions.keys())
        for ev in events:
            ledger._history.append(ev)
            ledger._sequences[ev.position_id] = max(ledger._sequences.get(ev.position_id, 0), ev.sequence)
        logger.info("cppi_ledger_restored", extra={"positions": len(ledger._positions), "events": len(events)})
        return ledger

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, position_id: str) -> Iterator[Position]:
        with self._registry_lock:
            lock = self._locks.get(position_id)
        if lock is None:
            raise self._missing(position_id)
        with lock:
            p = self._positions.get(position_id)
            if p is None:
                raise self._missing(position_id)
            yield p

    def _missing(self, position_id: str) -> Exception:
        if position_id in self._settlements:
            return PositionClosed(f"position {position_id} is closed", position_id=position_id)
        return PositionNotFound(f"position {position_id} not found", position_id=position_id)

    def _now(self, now: datetime | None) -> datetime:
        return ensure_utc(now or self.clock())

    def _journal(self, event_type: EventType, payload: dict[str, Any], *, now: datetime) -> None:
        if self.db is None:
            return
        self.db.append_event(event_type=event_type, payload=payload, source="execution.ledger", ts=now)

    def _persist(self, p: Position, *, closed_at: datetime | None = None) -> None:
        if self.db is not None:
            self.db.save_position(p, closed_at=closed_at)

    def _state_context(self, p: Position) -> dict[str, Any]:
        return {
            "current_value": str(p.current_value),
            "guaranteed_floor": str(p.guaranteed_floor),
            "safe_exposure": str(p.safe_exposure),
            "risky_exposure": str(p.risky_exposure),
            "state": str(p.state),
        }

    def _tolerance(self, value: Money) -> Decimal:
        return self.epsilon * max(abs(value), ONE)

    def _check_invariants(self, p: Position, *, prev_floor: Money, now: datetime) -> None:
        problem: str | None = None
        if p.guaranteed_floor < prev_floor:
            problem = "floor_decreased"
        elif p.safe_exposure < 0 or p.risky_exposure < 0:
            problem = "negative_exposure"
        elif abs(p.safe_exposure + p.risky_exposure - p.current_value) > self._tolerance(p.current_value):
            problem = "allocation_sum_mismatch"
        if problem is None:
            return

        context = self._state_context(p) | {"previous_floor": str(prev_floor)}
        if p.state == PositionState.ACTIVE:
            self._sm.transition(state=p.state, new_state=PositionState.HALTED, reason=problem)
            p.state = PositionState.HALTED
        p.halt_reason = f"invariant:{problem}"
        self._persist(p)
        self._journal(
            EventType.INVARIANT_VIOLATION_V1,
            {"position_id": p.id, "violation": problem, "context": context},
            now=now,
        )
        logger.error("cppi_invariant_violation", extra={"position_id": p.id, "violation": problem})
        raise InvariantViolation(
            f"invariant violated: {problem}",
            position_id=p.id,
            reason=problem,
            context=context,
        )

    def _track_peak(self, p: Position) -> None:
        if p.current_value > p.peak_value:
            p.peak_value = p.current_value
        if p.peak_value > 0:
            p.max_drawdown = max(p.max_drawdown, ONE - p.current_value / p.peak_value)

    def _refresh_cushion(self, p: Position) -> None:
        p.cushion = max(ZERO, p.current_value - p.guaranteed_floor)

    def _mark_to_market(
        self,
        p: Position,
        value: Money,
        safe_value: Money | None,
        risky_value: Money | None,
    ) -> None:
        if safe_value is not None and risky_value is not None:
            safe, risky = safe_value, risky_value
        elif safe_value is not None:
            safe, risky = safe_value, value - safe_value
        elif risky_value is not None:
            safe, risky = value - risky_value, risky_value
        else:
            # P&L lands on the risky leg; a loss larger than the leg spills into safe.
            risky = p.risky_exposure + (value - p.current_value)
            safe = p.safe_exposure
            if risky < 0:
                safe += risky
                risky = ZERO

        if safe < 0 or risky < 0:
            raise ValidationError(
                "leg valuations must be non-negative",
                position_id=p.id,
                reason="negative_leg",
                context={"safe_value": str(safe), "risky_value": str(risky)},
            )
        if abs(safe + risky - value) > self._tolerance(value):
            raise ValidationError(
                "leg valuations do not sum to the position value",
                position_id=p.id,
                reason="leg_mismatch",
                context={"value": str(value), "safe_value": str(safe), "risky_value": str(risky)},
            )

        p.current_value = value
        p.safe_exposure = safe
        p.risky_exposure = risky

    def _issue(self, p: Position, decision: TriggerDecision, *, now: datetime) -> RebalanceInstruction:
        tgt = decision.target
        instr = RebalanceInstruction(
            instruction_id=uuid.uuid4().hex,
            position_id=p.id,
            reason=decision.reason,
            target_safe_exposure=tgt.safe,
            target_risky_exposure=tgt.risky,
            max_slippage_bps=self.max_slippage_bps,
            issued_at=now,
            deadline=now + self.rebalance_timeout,
            before_safe=p.safe_exposure,
            before_risky=p.risky_exposure,
            value_at_issue=p.current_value,
            floor_breach=decision.floor_breach,
        )
        p.in_flight = instr
        self._journal(
            EventType.REBALANCE_REQUESTED_V1,
            {
                "position_id": p.id,
                "instruction_id": instr.instruction_id,
                "reason": str(instr.reason),
                "target_safe": str(instr.target_safe_exposure),
                "target_risky": str(instr.target_risky_exposure),
                "max_slippage_bps": instr.max_slippage_bps,
                "floor_breach": instr.floor_breach,
                "deadline": instr.deadline.isoformat(),
            },
            now=now,
        )
        logger.info(
            "cppi_rebalance_issued",
            extra={
                "position_id": p.id,
                "reason": str(decision.reason),
                "floor_breach": decision.floor_breach,
                "detail": decision.detail,
                "target_risky": str(tgt.risky),
            },
        )
        return instr

    def _clear_in_flight(self, p: Position, *, event_type: EventType, reason: str, now: datetime) -> None:
        instr = p.in_flight
        p.in_flight = None
        if instr is None:
            return
        self._journal(
            event_type,
            {"position_id": p.id, "instruction_id": instr.instruction_id, "reason": reason},
            now=now,
        )

    def _settle(self, p: Position, *, reason: str, now: datetime) -> FinalSettlement:
        if p.in_flight is not None:
            self._clear_in_flight(p, event_type=EventType.REBALANCE_CANCELLED_V1, reason=f"position_{reason}", now=now)

        new_state = PositionState.MATURED if reason == "matured" else PositionState.CLOSED
        self._sm.transition(state=p.state, new_state=new_state, reason=reason)
        p.state = new_state

        settlement = FinalSettlement(
            position_id=p.id,
            owner=p.owner,
            strategy_id=p.strategy_id,
            principal=p.principal,
            final_value=p.current_value,
            total_return=p.total_return,
            guaranteed_floor=p.guaranteed_floor,
            rebalance_count=p.rebalance_count,
            max_drawdown=p.max_drawdown,
            closed_at=now,
            reason=reason,
        )
        with self._registry_lock:
            self._positions.pop(p.id, None)
            self._settlements[p.id] = settlement

        self._persist(p, closed_at=now)
        self._journal(
            EventType.POSITION_CLOSED_V1,
            {
                "position_id": p.id,
                "final_value": str(settlement.final_value),
                "total_return": str(settlement.total_return),
                "reason": reason,
            },
            now=now,
        )
        logger.info(
            "cppi_position_settled",
            extra={"position_id": p.id, "reason": reason, "total_return": str(settlement.total_return)},
        )
        return settlement

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def open(
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
        strategy = self.catalog.require(strategy_id)
        amount = to_decimal(principal)
        if amount <= 0:
            raise InvalidPrincipal("principal must be > 0", reason="non_positive", context={"principal": str(amount)})

        if custom_floor is not None:
            floor = to_decimal(custom_floor)
            if floor < 0 or floor > amount:
                raise InvalidFloor(
                    "custom floor must be within [0, principal]",
                    reason="out_of_range",
                    context={"custom_floor": str(floor), "principal": str(amount)},
                )
        else:
            floor = amount * strategy.floor_ratio

        ts = self._now(now)
        if maturity_date is not None:
            maturity_date = ensure_utc(maturity_date)
            if maturity_date <= ts:
                raise ValidationError("maturity_date must be in the future", reason="maturity_in_past")

        tgt = compute_target(
            current_value=amount,
            guaranteed_floor=floor,
            principal=amount,
            multiplier=strategy.multiplier,
            cap=strategy.cap,
        )
        p = Position(
            id=_new_position_id(),
            strategy_id=strategy.id,
            owner=owner,
            principal=amount,
            guaranteed_floor=floor,
            current_value=amount,
            safe_exposure=tgt.safe,
            risky_exposure=tgt.risky,
            cushion=tgt.cushion,
            peak_value=amount,
            created_at=ts,
            auto_rebalance_enabled=bool(auto_rebalance),
            maturity_date=maturity_date,
            last_valuation_at=ts,
            last_valuation_value=amount,
        )

        with self._registry_lock:
            self._positions[p.id] = p
            self._locks[p.id] = threading.RLock()

        self._persist(p)
        self._journal(
            EventType.POSITION_OPENED_V1,
            {
                "position_id": p.id,
                "strategy_id": p.strategy_id,
                "owner": p.owner,
                "principal": str(p.principal),
                "guaranteed_floor": str(p.guaranteed_floor),
                "safe_exposure": str(p.safe_exposure),
                "risky_exposure": str(p.risky_exposure),
                "auto_rebalance": p.auto_rebalance_enabled,
                "maturity_date": maturity_date.isoformat() if maturity_date else None,
            },
            now=ts,
        )
        logger.info(
            "cppi_position_opened",
            extra={"position_id": p.id, "strategy_id": p.strategy_id, "principal": str(p.principal)},
        )
        return p.id

    def revalue(
        self,
        position_id: str,
        new_value: Money | int | float | str,
        *,
        as_of: datetime | None = None,
        volatility: VolatilitySignal | None = None,
        now: datetime | None = None,
        safe_value: Money | int | float | str | None = None,
        risky_value: Money | int | float | str | None = None,
    ) -> RebalanceInstruction | None:
        """Apply a valuation tick and return a rebalance instruction if one should fire.

        Order: freshness gate, timeout sweep, mark to market, peak and drawdown,
        floor ratchet, invariant check, maturity, trigger. Exposures move toward
        a target only when the executor's fill is applied.

        Raises ``StaleValuation`` before touching state. Raises
        ``MissingVolatilitySignal`` after bookkeeping when the decision had to be
        skipped for lack of a usable signal.
        """

        ts = self._now(now)
        stamp = ensure_utc(as_of) if as_of is not None else ts
        value = to_decimal(new_value)
        safe_leg = to_decimal(safe_value) if safe_value is not None else None
        risky_leg = to_decimal(risky_value) if risky_value is not None else None
        if value < 0:
            raise ValidationError("valuation must be >= 0", position_id=position_id, reason="negative_value")

        with self._locked(position_id) as p:
            # Fills rewrite current_value, so duplicates are matched on the tick itself.
            if p.last_valuation_at == stamp and p.last_valuation_value == value:
                return None

            check_valuation(
                position_id=p.id,
                as_of=stamp,
                now=ts,
                freshness_window=self.freshness_window,
                last_valuation_at=p.last_valuation_at,
            )

            if p.in_flight is not None and ts >= p.in_flight.deadline:
                self._expire_locked(p, now=ts)

            strategy = self.catalog.require(p.strategy_id)
            prev_floor = p.guaranteed_floor

            self._mark_to_market(p, value, safe_leg, risky_leg)
            p.last_valuation_at = stamp
            p.last_valuation_value = value
            self._track_peak(p)

            new_floor = ratchet(p, strategy)
            if new_floor > p.guaranteed_floor:
                p.guaranteed_floor = new_floor
                self._journal(
                    EventType.FLOOR_RAISED_V1,
                    {
                        "position_id": p.id,
                        "previous_floor": str(prev_floor),
                        "new_floor": str(new_floor),
                        "source": "ratchet",
                    },
                    now=ts,
                )
            self._refresh_cushion(p)
            self._check_invariants(p, prev_floor=prev_floor, now=ts)

            if p.maturity_date is not None and ts >= p.maturity_date:
                self._settle(p, reason="matured", now=ts)
                return None

            self._persist(p)

            if p.in_flight is not None:
                if p.in_flight.floor_breach or not (is_floor_breach(p) and p.risky_exposure > 0):
                    return None
                # A pending de-risk toward a non-zero risky target must not outlive a breach.
                self._clear_in_flight(
                    p, event_type=EventType.REBALANCE_CANCELLED_V1, reason="superseded_by_floor_breach", now=ts
                )
                logger.warning(
                    "cppi_rebalance_superseded",
                    extra={"position_id": p.id, "value": str(p.current_value), "floor": str(p.guaranteed_floor)},
                )

            return self._decide(p, strategy, volatility=volatility, now=ts)

    def _decide(
        self,
        p: Position,
        strategy: Strategy,
        *,
        volatility: VolatilitySignal | None,
        now: datetime,
    ) -> RebalanceInstruction | None:
        vol_error: MissingVolatilitySignal | None = None
        signal: VolatilitySignal | None = None
        if volatility is not None or self.require_volatility:
            try:
                signal = check_volatility(
                    volatility,
                    position_id=p.id,
                    now=now,
                    max_age=self.volatility_max_age,
                )
            except MissingVolatilitySignal as e:
                vol_error = e

        decision = self.trigger.evaluate(p, strategy, volatility=signal, now=now)

        if vol_error is not None:
            # Floor protection does not depend on volatility; everything else waits.
            if decision is not None and decision.floor_breach:
                return self._issue(p, decision, now=now)
            self._journal(
                EventType.DATA_QUALITY_SKIPPED_V1,
                {"position_id": p.id, "code": vol_error.code, "reason": vol_error.reason},
                now=now,
            )
            vol_error.context.update(self._state_context(p))
            raise vol_error

        if decision is None:
            return None
        return self._issue(p, decision, now=now)

    def request_rebalance(
        self,
        position_id: str,
        reason: TriggerReason = TriggerReason.MANUAL,
        *,
        now: datetime | None = None,
    ) -> RebalanceInstruction:
        ts = self._now(now)
        with self._locked(position_id) as p:
            if p.in_flight is not None:
                if ts >= p.in_flight.deadline:
                    self._expire_locked(p, now=ts)
                else:
                    raise RebalanceInFlight(
                        "a rebalance is already in flight",
                        position_id=p.id,
                        reason=str(p.in_flight.reason),
                        context={"instruction_id": p.in_flight.instruction_id},
                    )

            strategy = self.catalog.require(p.strategy_id)
            tgt = compute_target(
                current_value=p.current_value,
                guaranteed_floor=p.guaranteed_floor,
                principal=p.principal,
                multiplier=strategy.multiplier,
                cap=strategy.cap,
            )
            decision = TriggerDecision(
                reason=TriggerReason(reason),
                target=tgt,
                floor_breach=is_floor_breach(p),
                detail="requested",
            )
            return self._issue(p, decision, now=ts)

    def manual_rebalance(self, position_id: str, *, now: datetime | None = None) -> RebalanceInstruction:
        return self.request_rebalance(position_id, TriggerReason.MANUAL, now=now)

    def apply_rebalance_result(self, position_id: str, result: RebalanceResult) -> RebalanceEvent:
        ts = ensure_utc(result.timestamp)
        with self._locked(position_id) as p:
            instr = p.in_flight
            if instr is None or instr.instruction_id != result.instruction_id or result.position_id != p.id:
                raise ExecutionRejected(
                    "result does not match the rebalance in flight",
                    position_id=p.id,
                    reason="no_matching_instruction",
                    context={"instruction_id": result.instruction_id} | self._state_context(p),
                )

            if ts > instr.deadline:
                self._clear_in_flight(p, event_type=EventType.REBALANCE_CANCELLED_V1, reason="timeout", now=ts)
                logger.warning("cppi_rebalance_timeout", extra={"position_id": p.id, "late": True})
                raise ExecutionTimeout(
                    "fill arrived after the instruction deadline",
                    position_id=p.id,
                    reason="late_fill",
                    context={"deadline": instr.deadline.isoformat()} | self._state_context(p),
                )

            if not result.success:
                self._clear_in_flight(
                    p, event_type=EventType.REBALANCE_REJECTED_V1, reason=result.error or "executor_failure", now=ts
                )
                logger.warning("cppi_rebalance_rejected", extra={"position_id": p.id, "error": result.error})
                raise ExecutionRejected(
                    result.error or "executor reported failure",
                    position_id=p.id,
                    reason="executor_failure",
                    context=self._state_context(p),
                )

            slippage_bps = to_decimal(result.slippage_bps)
            if slippage_bps > Decimal(instr.max_slippage_bps):
                self._clear_in_flight(p, event_type=EventType.REBALANCE_REJECTED_V1, reason="slippage", now=ts)
                logger.warning(
                    "cppi_slippage_exceeded",
                    extra={"position_id": p.id, "slippage_bps": str(slippage_bps), "max": instr.max_slippage_bps},
                )
                raise SlippageExceeded(
                    f"slippage {slippage_bps}bps > {instr.max_slippage_bps}bps",
                    position_id=p.id,
                    reason="slippage",
                    context=self._state_context(p),
                )

            safe = to_decimal(result.achieved_safe)
            risky = to_decimal(result.achieved_risky)
            new_value = safe + risky
            risky_ceiling = instr.target_risky_exposure * (ONE + Decimal(instr.max_slippage_bps) / BPS)
            if safe < 0 or risky < 0 or risky > risky_ceiling + self._tolerance(new_value):
                self._clear_in_flight(p, event_type=EventType.REBALANCE_REJECTED_V1, reason="fill_out_of_bounds", now=ts)
                raise ExecutionRejected(
                    "fill is outside the instructed allocation",
                    position_id=p.id,
                    reason="fill_out_of_bounds",
                    context={"achieved_safe": str(safe), "achieved_risky": str(risky)} | self._state_context(p),
                )

            prev_floor = p.guaranteed_floor
            before_safe = p.safe_ratio
            before_risky = p.risky_ratio

            p.safe_exposure = safe
            p.risky_exposure = risky
            p.current_value = new_value
            self._track_peak(p)
            self._refresh_cushion(p)
            p.rebalance_count += 1
            p.last_rebalanced_at = ts
            p.in_flight = None
            self._check_invariants(p, prev_floor=prev_floor, now=ts)

            with self._history_lock:
                seq = self._sequences.get(p.id, 0) + 1
                self._sequences[p.id] = seq
                event = RebalanceEvent(
                    position_id=p.id,
                    sequence=seq,
                    trigger=instr.reason,
                    before_safe_allocation=before_safe,
                    after_safe_allocation=p.safe_ratio,
                    before_risky_allocation=before_risky,
                    after_risky_allocation=p.risky_ratio,
                    timestamp=ts,
                    slippage=slippage_bps / BPS,
                    cost_paid=to_decimal(result.cost),
                )
                self._history.append(event)

            self._persist(p)
            if self.db is not None:
                self.db.append_rebalance_event(event)
            self._journal(
                EventType.REBALANCE_APPLIED_V1,
                {
                    "position_id": p.id,
                    "instruction_id": instr.instruction_id,
                    "sequence": seq,
                    "trigger": str(event.trigger),
                    "before_safe_allocation": str(event.before_safe_allocation),
                    "after_safe_allocation": str(event.after_safe_allocation),
                    "before_risky_allocation": str(event.before_risky_allocation),
                    "after_risky_allocation": str(event.after_risky_allocation),
                    "slippage": str(event.slippage),
                    "cost_paid": str(event.cost_paid),
                },
                now=ts,
            )
            logger.info(
                "cppi_rebalance_applied",
                extra={"position_id": p.id, "sequence": seq, "trigger": str(event.trigger)},
            )
            return event

    def cancel_rebalance(self, position_id: str, reason: str = "cancelled", *, now: datetime | None = None) -> bool:
        ts = self._now(now)
        with self._locked(position_id) as p:
            if p.in_flight is None:
                return False
            self._clear_in_flight(p, event_type=EventType.REBALANCE_CANCELLED_V1, reason=reason, now=ts)
            logger.info("cppi_rebalance_cancelled", extra={"position_id": p.id, "reason": reason})
            return True

    def _expire_locked(self, p: Position, *, now: datetime) -> None:
        instr = p.in_flight
        self._clear_in_flight(p, event_type=EventType.REBALANCE_CANCELLED_V1, reason="timeout", now=now)
        logger.warning(
            "cppi_rebalance_timeout",
            extra={"position_id": p.id, "instruction_id": instr.instruction_id if instr else None},
        )

    def expire_in_flight(self, *, now: datetime | None = None) -> list[str]:
        """Cancel every instruction past its deadline. Returns affected position ids."""

        ts = self._now(now)
        expired: list[str] = []
        for pid in self.position_ids():
            try:
                with self._locked(pid) as p:
                    if p.in_flight is not None and ts >= p.in_flight.deadline:
                        self._expire_locked(p, now=ts)
                        expired.append(pid)
            except (PositionNotFound, PositionClosed):
                continue
        return expired

    def toggle_auto_rebalance(
        self,
        position_id: str,
        enabled: bool | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        ts = self._now(now)
        with self._locked(position_id) as p:
            p.auto_rebalance_enabled = (not p.auto_rebalance_enabled) if enabled is None else bool(enabled)
            self._persist(p)
            self._journal(
                EventType.AUTO_REBALANCE_TOGGLED_V1,
                {"position_id": p.id, "enabled": p.auto_rebalance_enabled},
                now=ts,
            )
            return p.auto_rebalance_enabled

    def raise_floor(
        self,
        position_id: str,
        new_floor: Money | int | float | str,
        *,
        now: datetime | None = None,
    ) -> Money:
        ts = self._now(now)
        floor = to_decimal(new_floor)
        with self._locked(position_id) as p:
            if floor < p.guaranteed_floor:
                raise InvalidFloor(
                    "floor can only be raised",
                    position_id=p.id,
                    reason="decrease",
                    context=self._state_context(p),
                )
            if floor > p.current_value:
                raise InvalidFloor(
                    "floor cannot exceed current value",
                    position_id=p.id,
                    reason="above_value",
                    context=self._state_context(p),
                )
            prev = p.guaranteed_floor
            p.guaranteed_floor = floor
            self._refresh_cushion(p)
            self._check_invariants(p, prev_floor=prev, now=ts)
            self._persist(p)
            self._journal(
                EventType.FLOOR_RAISED_V1,
                {"position_id": p.id, "previous_floor": str(prev), "new_floor": str(floor), "source": "operator"},
                now=ts,
            )
            return floor

    def emergency_stop(self, position_id: str, reason: str = "emergency_stop", *, now: datetime | None = None) -> None:
        """Freeze automatic rebalancing pending manual review.

        Floor-breach protection and operator rebalances stay available.
        """

        ts = self._now(now)
        with self._locked(position_id) as p:
            if p.state == PositionState.HALTED:
                return
            self._sm.transition(state=p.state, new_state=PositionState.HALTED, reason=reason)
            p.state = PositionState.HALTED
            p.halt_reason = reason
            self._persist(p)
            self._journal(EventType.POSITION_HALTED_V1, {"position_id": p.id, "reason": reason}, now=ts)
            logger.warning("cppi_position_halted", extra={"position_id": p.id, "reason": reason})

    def resume(self, position_id: str, *, now: datetime | None = None) -> None:
        ts = self._now(now)
        with self._locked(position_id) as p:
            if p.state == PositionState.ACTIVE:
                return
            self._sm.transition(state=p.state, new_state=PositionState.ACTIVE, reason="resume")
            p.state = PositionState.ACTIVE
            p.halt_reason = None
            self._persist(p)
            self._journal(EventType.POSITION_RESUMED_V1, {"position_id": p.id}, now=ts)
            logger.info("cppi_position_resumed", extra={"position_id": p.id})

    def close(self, position_id: str, *, now: datetime | None = None) -> FinalSettlement:
        ts = self._now(now)
        with self._locked(position_id) as p:
            return self._settle(p, reason="closed", now=ts)

    def settle_matured(self, *, now: datetime | None = None) -> list[FinalSettlement]:
        ts = self._now(now)
        out: list[FinalSettlement] = []
        for pid in self.position_ids():
            try:
                with self._locked(pid) as p:
                    if p.maturity_date is not None and ts >= p.maturity_date:
                        out.append(self._settle(p, reason="matured", now=ts))
            except (PositionNotFound, PositionClosed):
                continue
        return out

    # ------------------------------------------------------------------
    # Reads (copies only)
    # ------------------------------------------------------------------

    def position_ids(self) -> list[str]:
        with self._registry_lock:
            return list(self._positions.keys())

    def get(self, position_id: str) -> Position:
        with self._locked(position_id) as p:
            return replace(p)

    def positions(self, *, owner: str | None = None) -> list[Position]:
        out: list[Position] = []
        for pid in self.position_ids():
            try:
                p = self.get(pid)
            except (PositionNotFound, PositionClosed):
                continue
            if owner is None or p.owner == owner:
                out.append(p)
        return out

    def history(self, position_id: str | None = None) -> tuple[RebalanceEvent, ...]:
        """Chronological rebalance log, optionally for one position."""

        with self._history_lock:
            events = tuple(self._history)
        if position_id is None:
            return events
        return tuple(e for e in events if e.position_id == position_id)

    def settlement(self, position_id: str) -> FinalSettlement | None:
        with self._registry_lock:
            return self._settlements.get(position_id)

    def settlements(self) -> list[FinalSettlement]:
        with self._registry_lock:
            return list(self._settlements.values())
