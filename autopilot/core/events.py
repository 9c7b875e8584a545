"""autopilot.core.events

The event contract is the primitive.

Every ledger mutation that matters to an auditor is journaled as one of these.
Money travels as strings so the hash chain never sees float noise.
"""

from __future__ import annotations

import hashlib
import json
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel


class EventType(StrEnum):
    """Canonical event type registry.

    Naming: ``{category}.{domain}.{version}``.
    """

    # Catalog
    STRATEGY_REGISTERED_V1 = "catalog.strategy_registered.v1"

    # Ledger lifecycle
    POSITION_OPENED_V1 = "ledger.position_opened.v1"
    POSITION_CLOSED_V1 = "ledger.position_closed.v1"
    POSITION_HALTED_V1 = "ledger.position_halted.v1"
    POSITION_RESUMED_V1 = "ledger.position_resumed.v1"
    AUTO_REBALANCE_TOGGLED_V1 = "ledger.auto_rebalance_toggled.v1"
    FLOOR_RAISED_V1 = "ledger.floor_raised.v1"

    # Rebalance transaction
    REBALANCE_REQUESTED_V1 = "rebalance.requested.v1"
    REBALANCE_APPLIED_V1 = "rebalance.applied.v1"
    REBALANCE_REJECTED_V1 = "rebalance.rejected.v1"
    REBALANCE_CANCELLED_V1 = "rebalance.cancelled.v1"

    # System
    DATA_QUALITY_SKIPPED_V1 = "system.data_quality_skipped.v1"
    INVARIANT_VIOLATION_V1 = "system.invariant_violation.v1"


# -----------------
# Typed payloads
# -----------------


class PositionOpenedPayload(BaseModel):
    position_id: str
    strategy_id: str
    owner: str
    principal: str
    guaranteed_floor: str
    safe_exposure: str
    risky_exposure: str
    auto_rebalance: bool
    maturity_date: str | None = None


class RebalanceRequestedPayload(BaseModel):
    position_id: str
    instruction_id: str
    reason: Literal["drift", "volatility", "scheduled", "manual"]
    target_safe: str
    target_risky: str
    max_slippage_bps: int
    floor_breach: bool = False
    deadline: str


class RebalanceAppliedPayload(BaseModel):
    position_id: str
    instruction_id: str
    sequence: int
    trigger: Literal["drift", "volatility", "scheduled", "manual"]
    before_safe_allocation: str
    after_safe_allocation: str
    before_risky_allocation: str
    after_risky_allocation: str
    slippage: str
    cost_paid: str


class PositionClosedPayload(BaseModel):
    position_id: str
    final_value: str
    total_return: str
    reason: Literal["closed", "matured"]


_EVENT_PAYLOAD_MODELS: dict[EventType, type[BaseModel]] = {
    EventType.POSITION_OPENED_V1: PositionOpenedPayload,
    EventType.REBALANCE_REQUESTED_V1: RebalanceRequestedPayload,
    EventType.REBALANCE_APPLIED_V1: RebalanceAppliedPayload,
    EventType.POSITION_CLOSED_V1: PositionClosedPayload,
}


def payload_model_for(event_type: EventType) -> type[BaseModel] | None:
    return _EVENT_PAYLOAD_MODELS.get(event_type)


def validate_payload(event_type: EventType, payload: dict[str, Any]) -> dict[str, Any]:
    """Round-trip ``payload`` through its typed model when one is registered."""

    model = payload_model_for(event_type)
    if model is None:
        return dict(payload)
    return model.model_validate(payload).model_dump(mode="json")


def canonical_json(data: Any) -> str:
    """Canonical JSON serialization used for hashing and dedupe."""

    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def payload_hash(payload: BaseModel | dict[str, Any]) -> str:
    """SHA-256 hash of canonical payload JSON."""

    obj = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()
