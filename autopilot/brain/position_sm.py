"""autopilot.brain.position_sm

Position lifecycle state machine.

ACTIVE <-> HALTED -> CLOSED | MATURED

Deterministic. It does *not* move capital; it restricts which ledger operations
are allowed in each state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from autopilot.core.types import PositionState


ALLOWED_TRANSITIONS: Final[dict[PositionState, set[PositionState]]] = {
    PositionState.ACTIVE: {PositionState.HALTED, PositionState.CLOSED, PositionState.MATURED},
    PositionState.HALTED: {PositionState.ACTIVE, PositionState.CLOSED, PositionState.MATURED},
    PositionState.CLOSED: set(),
    PositionState.MATURED: set(),
}


ALLOWED_ACTIONS: Final[dict[PositionState, set[str]]] = {
    PositionState.ACTIVE: {
        "revalue",
        "rebalance",
        "apply_result",
        "toggle_auto",
        "raise_floor",
        "halt",
        "close",
    },
    # Halted positions still track value and still honor floor protection and
    # operator-initiated rebalances.
    PositionState.HALTED: {"revalue", "rebalance", "apply_result", "toggle_auto", "raise_floor", "resume", "close"},
    PositionState.CLOSED: set(),
    PositionState.MATURED: set(),
}


@dataclass(frozen=True, slots=True)
class PositionTransition:
    previous: PositionState
    new: PositionState
    reason: str


class PositionStateMachine:
    def transition(self, *, state: PositionState, new_state: PositionState, reason: str) -> PositionTransition:
        allowed = ALLOWED_TRANSITIONS.get(state, set())
        if new_state not in allowed:
            raise ValueError(f"Invalid transition {state} -> {new_state}")
        return PositionTransition(previous=state, new=new_state, reason=reason)

    def allowed_actions(self, *, state: PositionState) -> set[str]:
        return set(ALLOWED_ACTIONS.get(state, set()))

    def can(self, *, state: PositionState, action: str) -> bool:
        return action in ALLOWED_ACTIONS.get(state, set())
