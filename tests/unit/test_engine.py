from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from autopilot.core.catalog import StrategyCatalog
from autopilot.core.config import Config
from autopilot.core.database import Database
from autopilot.core.events import EventType
from autopilot.core.exceptions import ExecutionRejected, InvariantViolation
from autopilot.core.metrics import MetricsRegistry
from autopilot.core.types import RebalanceInstruction, RebalanceResult, ValuationTick, VolatilityRegime
from autopilot.execution.engine import AutopilotEngine
from autopilot.execution.ledger import PositionLedger
from autopilot.execution.paper import PaperExecutor
from tests.unit._helpers import T0, at, vol


class _Failing:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.calls = 0

    def execute(self, instruction: RebalanceInstruction) -> RebalanceResult:
        self.calls += 1
        raise self.exc


@pytest.fixture()
def ledger(catalog: StrategyCatalog) -> PositionLedger:
    return PositionLedger(catalog, config=Config(), clock=lambda: T0)


@pytest.fixture()
def engine(ledger: PositionLedger, metrics: MetricsRegistry) -> AutopilotEngine:
    return AutopilotEngine(ledger, executor=PaperExecutor(), metrics=metrics, clock=lambda: T0)


def _tick(pid: str, value, minutes: float) -> ValuationTick:
    return ValuationTick(position_id=pid, value=Decimal(str(value)), as_of=at(minutes))


def test_tick_inside_the_band_is_a_noop(engine: AutopilotEngine) -> None:
    pid = engine.open_position("cppi_example", 10_000, now=T0)
    out = engine.on_tick(_tick(pid, 10_050, 1), volatility=vol(), now=at(1))
    assert out.status == "noop"
    assert out.instruction is None


def test_tick_rebalances_through_the_executor(engine: AutopilotEngine, metrics: MetricsRegistry) -> None:
    pid = engine.open_position("cppi_example", 10_000, now=T0)
    out = engine.on_tick(_tick(pid, 8_200, 1), volatility=vol(), now=at(1))

    assert out.status == "rebalanced"
    assert out.event is not None and out.event.sequence == 1
    p = engine.ledger.get(pid)
    assert p.risky_exposure == Decimal("600")
    assert p.in_flight is None

    snap = metrics.snapshot()
    assert snap["counter.cppi_ticks_total"] == 1.0
    assert snap["counter.cppi_rebalances_issued_total"] == 1.0
    assert snap["counter.cppi_rebalances_applied_total"] == 1.0
    assert snap["counter.cppi_positions_opened_total"] == 1.0
    assert snap["gauge.cppi_open_positions"] == 1.0
    assert snap["summary.cppi_fill_slippage_bps.count"] == 1.0


def test_resent_tick_does_not_rebalance_twice(engine: AutopilotEngine) -> None:
    pid = engine.open_position("cppi_example", 10_000, now=T0)
    spike = vol(0.95, regime=VolatilityRegime.HIGH)

    first = engine.on_tick(_tick(pid, 8_200, 1), volatility=spike, now=at(1))
    assert first.status == "rebalanced"
    after_fill = engine.ledger.get(pid).current_value
    assert after_fill < Decimal("8200")

    again = engine.on_tick(_tick(pid, 8_200, 1), volatility=spike, now=at(2))
    assert again.status == "noop"
    assert len(engine.ledger.history(pid)) == 1
    assert engine.ledger.get(pid).current_value == after_fill


def test_without_an_executor_the_instruction_stays_pending(ledger: PositionLedger, metrics: MetricsRegistry) -> None:
    engine = AutopilotEngine(ledger, metrics=metrics)
    pid = engine.open_position("cppi_example", 10_000, now=T0)
    out = engine.on_tick(_tick(pid, 8_200, 1), volatility=vol(), now=at(1))
    assert out.status == "pending"
    instr = out.instruction
    assert instr is not None

    result = RebalanceResult(
        position_id=pid,
        instruction_id=instr.instruction_id,
        achieved_safe=Decimal("7600"),
        achieved_risky=Decimal("600"),
        slippage_bps=Decimal("0"),
        cost=Decimal("0"),
        success=True,
        timestamp=at(2),
    )
    applied = engine.apply_result(instr, result)
    assert applied.status == "rebalanced"
    assert engine.ledger.get(pid).rebalance_count == 1


def test_stale_ticks_are_skipped_and_counted(engine: AutopilotEngine) -> None:
    pid = engine.open_position("cppi_example", 10_000, now=T0)
    for i in range(3):
        out = engine.on_tick(_tick(pid, 8_200, -20 + i), volatility=vol(), now=at(i))
        assert out.status == "skipped"
        assert out.error_code == "data_quality.stale_valuation"

    assert engine.monitor.consecutive(pid) == 3
    assert [a.position_id for a in engine.monitor.alerts()] == [pid]
    assert engine.ledger.get(pid).current_value == Decimal("10000")

    engine.on_tick(_tick(pid, 10_000, 4), volatility=vol(), now=at(4))
    assert engine.monitor.consecutive(pid) == 0


def test_missing_volatility_skips_the_decision(engine: AutopilotEngine) -> None:
    pid = engine.open_position("cppi_example", 10_000, now=T0)
    out = engine.on_tick(_tick(pid, 8_200, 1), now=at(1))
    assert out.status == "skipped"
    assert out.error_code == "data_quality.missing_volatility"
    assert engine.ledger.get(pid).current_value == Decimal("8200")


def test_executor_rejection_clears_the_instruction(ledger: PositionLedger, metrics: MetricsRegistry) -> None:
    failing = _Failing(ExecutionRejected("venue down"))
    engine = AutopilotEngine(ledger, executor=failing, metrics=metrics)
    pid = engine.open_position("cppi_example", 10_000, now=T0)

    out = engine.on_tick(_tick(pid, 8_200, 1), volatility=vol(), now=at(1))
    assert out.status == "rejected"
    assert out.error_code == "execution.rejected"
    assert engine.ledger.get(pid).in_flight is None
    assert metrics.snapshot()["counter.cppi_rebalances_failed_total"] == 1.0


def test_unexpected_executor_errors_propagate(ledger: PositionLedger, metrics: MetricsRegistry) -> None:
    engine = AutopilotEngine(ledger, executor=_Failing(RuntimeError("boom")), metrics=metrics)
    pid = engine.open_position("cppi_example", 10_000, now=T0)
    with pytest.raises(RuntimeError):
        engine.on_tick(_tick(pid, 8_200, 1), volatility=vol(), now=at(1))
    assert engine.ledger.get(pid).in_flight is None


def test_run_ticks_keeps_per_position_order(engine: AutopilotEngine) -> None:
    a = engine.open_position("cppi_example", 10_000, owner="alice", now=T0)
    b = engine.open_position("cppi_example", 10_000, owner="bob", now=T0)
    closed = engine.open_position("cppi_example", 10_000, now=T0)
    engine.close_position(closed, now=T0)

    ticks = [
        _tick(a, 10_050, 1),
        _tick(b, 8_200, 1),
        _tick(a, 8_200, 2),
        _tick(closed, 9_000, 1),
        _tick(a, 8_150, 3),
    ]
    vols = {a: vol(), b: vol()}
    outcomes = engine.run_ticks(ticks, volatility=vols, now=at(3))

    by_pid: dict[str, list[str]] = {}
    for o in outcomes:
        by_pid.setdefault(o.position_id, []).append(o.status)
    assert by_pid[a] == ["noop", "rebalanced", "noop"]
    assert by_pid[b] == ["rebalanced"]
    assert by_pid[closed] == ["rejected"]
    assert engine.ledger.get(a).current_value == Decimal("8150")


def test_run_ticks_drains_the_batch_before_raising(
    engine: AutopilotEngine, monkeypatch: pytest.MonkeyPatch
) -> None:
    good = engine.open_position("cppi_example", 10_000, now=T0)
    bad = engine.open_position("cppi_example", 10_000, now=T0)
    original = engine.ledger.revalue

    def revalue(position_id, *args, **kwargs):
        if position_id == bad:
            raise InvariantViolation("corrupt", position_id=bad, reason="allocation_sum_mismatch")
        return original(position_id, *args, **kwargs)

    monkeypatch.setattr(engine.ledger, "revalue", revalue)

    with pytest.raises(InvariantViolation):
        engine.run_ticks([_tick(bad, 9_000, 1), _tick(good, 8_200, 1)], volatility={good: vol()}, now=at(1))
    assert engine.ledger.get(good).rebalance_count == 1
    assert engine.metrics.snapshot()["counter.cppi_invariant_violations_total"] == 1.0


def test_run_ticks_empty_batch(engine: AutopilotEngine) -> None:
    assert engine.run_ticks([]) == []


def test_sweep_expires_and_settles(ledger: PositionLedger, metrics: MetricsRegistry) -> None:
    engine = AutopilotEngine(ledger, metrics=metrics)
    pending = engine.open_position("cppi_example", 10_000, now=T0)
    due = engine.open_position("cppi_example", 10_000, maturity_date=at(30), now=T0)
    engine.on_tick(_tick(pending, 8_200, 1), volatility=vol(), now=at(1))

    expired, settled = engine.sweep(now=at(31))
    assert expired == [pending]
    assert [s.position_id for s in settled] == [due]
    assert metrics.snapshot()["counter.cppi_rebalances_timed_out_total"] == 1.0


def test_manual_rebalance_and_health(engine: AutopilotEngine) -> None:
    pid = engine.open_position("cppi_example", 10_000, now=T0)
    out = engine.manual_rebalance(pid, now=T0)
    assert out.status == "rebalanced"
    assert out.event is not None
    assert str(out.event.trigger) == "manual"

    health = engine.health(pid)
    assert health.score > 0


def test_from_config_restores_from_the_journal(test_config: Config, temp_dir: Path) -> None:
    db = Database(temp_dir / "autopilot.db")
    first = AutopilotEngine.from_config(test_config, db=db, executor=PaperExecutor())
    pid = first.open_position("cppi_balanced", 10_000, owner="carol")

    second = AutopilotEngine.from_config(test_config, db=db, restore=True)
    assert second.ledger.get(pid).owner == "carol"
    assert "cppi_ratchet" in second.ledger.catalog
    assert db.get_events(event_type=EventType.POSITION_OPENED_V1)[0].payload["position_id"] == pid
    db.close()
