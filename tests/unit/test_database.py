from __future__ import annotations

import sqlite3
from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from autopilot.core.catalog import StrategyCatalog
from autopilot.core.database import Database
from autopilot.core.events import EventType
from autopilot.core.exceptions import DedupeConflictError, EventStoreError
from autopilot.core.types import PositionState, RebalanceEvent, TriggerReason
from tests.unit._helpers import T0, make_position


def _event(seq: int, pid: str = "pos_test") -> RebalanceEvent:
    return RebalanceEvent(
        position_id=pid,
        sequence=seq,
        trigger=TriggerReason.DRIFT,
        before_safe_allocation=Decimal("0.4"),
        after_safe_allocation=Decimal("0.9"),
        before_risky_allocation=Decimal("0.6"),
        after_risky_allocation=Decimal("0.1"),
        timestamp=T0,
        slippage=Decimal("0.0005"),
        cost_paid=Decimal("1.25"),
    )


@pytest.fixture()
def db(temp_dir: Path):
    d = Database(temp_dir / "autopilot.db")
    for s in StrategyCatalog.default().values():
        d.upsert_strategy(s.to_dict())
    yield d
    d.close()


def test_append_and_query_round_trip(db: Database) -> None:
    e = db.append_event(event_type=EventType.POSITION_HALTED_V1, payload={"position_id": "p1", "reason": "x"})
    got = db.get_events(event_type=EventType.POSITION_HALTED_V1, limit=10)
    assert got[0].id == e.id
    assert got[0].payload["position_id"] == "p1"


def test_hash_chain_verifies_and_detects_tampering(db: Database) -> None:
    db.append_event(event_type=EventType.POSITION_HALTED_V1, payload={"position_id": "p1"})
    db.append_event(event_type=EventType.POSITION_RESUMED_V1, payload={"position_id": "p1"})
    assert db.verify_hash_chain() is True

    with db.conn:
        db.conn.execute("UPDATE events SET payload = ? WHERE rowid = 1", ('{"position_id":"p2"}',))
    assert db.verify_hash_chain() is False


def test_dedup_is_idempotent_and_conflicts_on_payload_change(db: Database) -> None:
    k = "strategy:cppi_balanced"
    e1 = db.append_event(event_type=EventType.STRATEGY_REGISTERED_V1, payload={"id": "a"}, dedupe_key=k)
    e2 = db.append_event(event_type=EventType.STRATEGY_REGISTERED_V1, payload={"id": "a"}, dedupe_key=k)
    assert e1.id == e2.id

    with pytest.raises(DedupeConflictError):
        db.append_event(event_type=EventType.STRATEGY_REGISTERED_V1, payload={"id": "b"}, dedupe_key=k)


def test_typed_payloads_are_validated(db: Database) -> None:
    with pytest.raises(PydanticValidationError):
        db.append_event(event_type=EventType.POSITION_CLOSED_V1, payload={"position_id": "p1", "reason": "bogus"})


def test_positions_round_trip_as_decimal(db: Database) -> None:
    p = make_position(value="8200.10", floor="8000", risky="4200.10", strategy_id="cppi_balanced")
    db.save_position(p)
    p.state = PositionState.HALTED
    p.halt_reason = "emergency_stop"
    db.save_position(p)

    (loaded,) = db.load_open_positions()
    assert loaded.current_value == Decimal("8200.10")
    assert loaded.risky_exposure == Decimal("4200.10")
    assert loaded.cushion == Decimal("200.10")
    assert loaded.state == PositionState.HALTED
    assert loaded.created_at == T0

    p.state = PositionState.CLOSED
    db.save_position(p, closed_at=T0)
    assert db.load_open_positions() == []


def test_rebalance_log_is_append_only(db: Database) -> None:
    db.save_position(make_position(strategy_id="cppi_balanced"))
    db.append_rebalance_event(_event(1))
    db.append_rebalance_event(_event(2))

    with pytest.raises(EventStoreError):
        db.append_rebalance_event(_event(2))

    with pytest.raises(sqlite3.DatabaseError):
        with db.conn:
            db.conn.execute("UPDATE rebalance_events SET cost_paid = '0'")
    with pytest.raises(sqlite3.DatabaseError):
        with db.conn:
            db.conn.execute("DELETE FROM rebalance_events")

    events = db.load_rebalance_events(["pos_test"])
    assert [e.sequence for e in events] == [1, 2]
    assert events[0].cost_paid == Decimal("1.25")
    assert db.load_rebalance_events([]) == []
