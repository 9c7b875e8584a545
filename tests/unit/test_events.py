from __future__ import annotations

import pytest
from pydantic import ValidationError

from autopilot.core.events import (
    EventType,
    RebalanceRequestedPayload,
    canonical_json,
    payload_hash,
    payload_model_for,
    validate_payload,
)
from autopilot.core.models import compute_event_hash


def test_event_type_enum_contains_expected_members() -> None:
    # Contract: no scattered strings.
    assert EventType.REBALANCE_APPLIED_V1.value == "rebalance.applied.v1"
    assert EventType.POSITION_OPENED_V1.value.startswith("ledger.")
    assert EventType.INVARIANT_VIOLATION_V1.value.startswith("system.")


def test_payload_models_validate() -> None:
    p = RebalanceRequestedPayload(
        position_id="p1",
        instruction_id="i1",
        reason="drift",
        target_safe="7600",
        target_risky="600",
        max_slippage_bps=50,
        deadline="2026-03-02T09:32:00+00:00",
    )
    assert p.floor_breach is False

    with pytest.raises(ValidationError):
        RebalanceRequestedPayload(**{**p.model_dump(), "reason": "panic"})


def test_validate_payload_passes_untyped_events_through() -> None:
    assert payload_model_for(EventType.FLOOR_RAISED_V1) is None
    raw = {"position_id": "p1", "old_floor": "8000", "new_floor": "8100"}
    assert validate_payload(EventType.FLOOR_RAISED_V1, raw) == raw


def test_canonical_json_is_stable() -> None:
    a = {"b": 2, "a": 1}
    b = {"a": 1, "b": 2}
    assert canonical_json(a) == canonical_json(b)
    assert payload_hash(a) == payload_hash(b)


def test_event_hash_links_to_previous() -> None:
    payload = {"position_id": "p1"}
    h1 = compute_event_hash(prev_hash=None, event_type=EventType.POSITION_HALTED_V1, payload=payload)
    h2 = compute_event_hash(prev_hash=h1, event_type=EventType.POSITION_HALTED_V1, payload=payload)
    assert h1 != h2
    assert len(h2) == 64
