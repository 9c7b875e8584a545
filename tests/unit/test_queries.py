from __future__ import annotations

from decimal import Decimal

import pytest

from autopilot.core.catalog import StrategyCatalog
from autopilot.core.config import Config
from autopilot.core.exceptions import PositionNotFound
from autopilot.execution.ledger import PositionLedger
from autopilot.execution.paper import PaperExecutor
from autopilot.execution.queries import PositionQueries
from tests.unit._helpers import T0, at, vol


@pytest.fixture()
def ledger(catalog: StrategyCatalog) -> PositionLedger:
    return PositionLedger(catalog, config=Config(), clock=lambda: T0)


def _rebalance(ledger: PositionLedger, pid: str, minutes: float) -> None:
    instr = ledger.manual_rebalance(pid, now=at(minutes))
    ledger.apply_rebalance_result(pid, PaperExecutor().execute(instr))


def test_position_view_serializes_money_as_strings(ledger: PositionLedger) -> None:
    pid = ledger.open("cppi_example", 10_000, owner="alice", now=T0)
    view = PositionQueries(ledger).position(pid)
    d = view.to_dict()

    assert d["principal"] == "10000"
    assert Decimal(d["risky_exposure"]) == Decimal("6000")
    assert d["risk_level"] == "Conservative"
    assert d["rebalance_in_flight"] is False
    assert d["health"]["status"] == "Good"
    assert d["health"]["score"] == 80


def test_position_view_lists_allowed_actions(ledger: PositionLedger) -> None:
    pid = ledger.open("cppi_example", 10_000, now=T0)
    queries = PositionQueries(ledger)

    active = queries.position(pid).to_dict()["allowed_actions"]
    assert "halt" in active
    assert "resume" not in active
    assert active == sorted(active)

    ledger.emergency_stop(pid, now=at(1))
    halted = queries.position(pid).allowed_actions
    assert "resume" in halted
    assert "halt" not in halted


def test_positions_by_owner(ledger: PositionLedger) -> None:
    ledger.open("cppi_example", 10_000, owner="alice", now=T0)
    ledger.open("cppi_aggressive", 10_000, owner="bob", now=T0)
    q = PositionQueries(ledger)
    assert [v.position.owner for v in q.positions_by_owner("bob")] == ["bob"]
    assert len(q.positions_by_owner()) == 2


def test_history_is_most_recent_first_and_limited(ledger: PositionLedger) -> None:
    pid = ledger.open("cppi_example", 10_000, now=T0)
    for i in range(3):
        _rebalance(ledger, pid, i)

    q = PositionQueries(ledger)
    seqs = [e.sequence for e in q.history(pid)]
    assert seqs == [3, 2, 1]
    assert [e.sequence for e in q.history(pid, limit=2)] == [3, 2]
    assert q.history(pid, limit=0) == []


def test_history_survives_close_but_not_unknown_ids(ledger: PositionLedger) -> None:
    pid = ledger.open("cppi_example", 10_000, now=T0)
    _rebalance(ledger, pid, 0)
    ledger.close(pid, now=at(1))

    q = PositionQueries(ledger)
    assert len(q.history(pid)) == 1
    with pytest.raises(PositionNotFound):
        q.history("pos_missing")


def test_pool_stats_empty(ledger: PositionLedger) -> None:
    stats = PositionQueries(ledger).pool_stats()
    assert stats.total_positions == 0
    assert stats.total_aum == Decimal("0")


def test_pool_stats_aggregates_open_positions(ledger: PositionLedger) -> None:
    a = ledger.open("cppi_example", 10_000, now=T0)
    ledger.open("cppi_aggressive", 10_000, now=T0)
    ledger.revalue(a, 7_900, as_of=at(1), now=at(1), volatility=vol())

    stats = PositionQueries(ledger).pool_stats()
    assert stats.total_positions == 2
    assert stats.total_aum == Decimal("17900")
    assert stats.average_multiplier == Decimal("4.25")
    assert stats.average_floor_protection == Decimal("0.8")
    assert stats.success_rate == Decimal("0.5")
    assert stats.total_rebalances == 0
    # a holds 3900 risky against a target of 0; b is on target at 10000
    assert stats.risk_budget_utilization == Decimal("1.39")
    assert stats.to_dict()["success_rate"] == "0.5"
