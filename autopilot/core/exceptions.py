"""autopilot.core.exceptions

Errors are part of the interface.

Four families, four behaviors:
- validation: caller mistakes, reported synchronously, never retried
- execution: transient, the next tick is the retry
- data quality: skip the decision for this tick, count it
- invariant: fatal for the position, never swallowed
"""

from __future__ import annotations

from typing import Any


class AutopilotError(Exception):
    """Base exception for the CPPI autopilot."""

    code: str = "autopilot.error"

    def __init__(
        self,
        message: str = "",
        *,
        position_id: str | None = None,
        reason: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or str(self.args[0])
        self.position_id = position_id
        self.reason = reason
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.position_id is not None:
            out["position_id"] = self.position_id
        if self.reason is not None:
            out["reason"] = self.reason
        if self.context:
            out["context"] = self.context
        return out


class ConfigError(AutopilotError):
    """Configuration is missing, invalid, or inconsistent."""

    code = "config.invalid"


class EventStoreError(AutopilotError):
    """Event store failures: schema, IO, integrity, or invariants."""

    code = "journal.error"


class DedupeConflictError(EventStoreError):
    """Deduplication key reused with different payload."""

    code = "journal.dedupe_conflict"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(AutopilotError):
    """The request is malformed. Retrying will not help."""

    code = "validation.error"


class InvalidStrategy(ValidationError):
    """Strategy is unknown or its parameters are out of range."""

    code = "validation.invalid_strategy"


class InvalidFloor(ValidationError):
    """Floor is negative, above principal, or would decrease."""

    code = "validation.invalid_floor"


class InvalidPrincipal(ValidationError):
    """Principal must be strictly positive."""

    code = "validation.invalid_principal"


class PositionNotFound(ValidationError):
    """No open position with this id."""

    code = "validation.position_not_found"


class PositionClosed(ValidationError):
    """Position is already settled."""

    code = "validation.position_closed"


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionError(AutopilotError):
    """Execution did not complete. The position keeps its prior allocation."""

    code = "execution.error"


class SlippageExceeded(ExecutionError):
    """Reported fill slipped more than the instruction allowed."""

    code = "execution.slippage_exceeded"


class ExecutionTimeout(ExecutionError):
    """No fill arrived before the instruction deadline."""

    code = "execution.timeout"


class ExecutionRejected(ExecutionError):
    """Executor reported failure, or the result does not match the instruction."""

    code = "execution.rejected"


class RebalanceInFlight(ExecutionError):
    """A rebalance instruction is already outstanding for this position."""

    code = "execution.in_flight"


# ---------------------------------------------------------------------------
# Data quality
# ---------------------------------------------------------------------------


class DataQualityError(AutopilotError):
    """Input data is suspect. The decision for this tick is skipped."""

    code = "data_quality.error"


class StaleValuation(DataQualityError):
    """Valuation is older than the freshness window or older than the last one applied."""

    code = "data_quality.stale_valuation"


class MissingVolatilitySignal(DataQualityError):
    """No usable volatility signal for this tick."""

    code = "data_quality.missing_volatility"


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


class InvariantViolation(AutopilotError):
    """A ledger invariant broke. The position is halted for manual review."""

    code = "invariant.violation"
