from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query

from api.auth import AuthDep
from api.deps import get_engine, get_queries
from api.schemas.common import ErrorResponse, StatusResponse
from api.schemas.positions import (
    EmergencyStopRequest,
    InstructionResponse,
    OpenPositionRequest,
    OpenPositionResponse,
    PositionResponse,
    RaiseFloorRequest,
    RebalanceEventResponse,
    RebalanceResultRequest,
    RevalueRequest,
    RevalueResponse,
    SettlementResponse,
    ToggleAutoRequest,
)
from autopilot.brain.volatility import regime_for
from autopilot.core.time import ensure_utc, utc_now
from autopilot.core.types import (
    FinalSettlement,
    RebalanceEvent,
    RebalanceInstruction,
    RebalanceResult,
    ValuationTick,
    VolatilityRegime,
    VolatilitySignal,
)
from autopilot.execution.engine import AutopilotEngine, TickOutcome
from autopilot.execution.queries import PositionQueries

router = APIRouter(
    prefix="/positions",
    dependencies=[AuthDep],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)


def instruction_response(instr: RebalanceInstruction) -> InstructionResponse:
    return InstructionResponse(
        instruction_id=instr.instruction_id,
        position_id=instr.position_id,
        reason=str(instr.reason),
        target_safe_exposure=str(instr.target_safe_exposure),
        target_risky_exposure=str(instr.target_risky_exposure),
        max_slippage_bps=instr.max_slippage_bps,
        issued_at=instr.issued_at,
        deadline=instr.deadline,
        floor_breach=instr.floor_breach,
    )


def event_response(ev: RebalanceEvent) -> RebalanceEventResponse:
    return RebalanceEventResponse(
        position_id=ev.position_id,
        sequence=ev.sequence,
        trigger=str(ev.trigger),
        before_safe_allocation=str(ev.before_safe_allocation),
        after_safe_allocation=str(ev.after_safe_allocation),
        before_risky_allocation=str(ev.before_risky_allocation),
        after_risky_allocation=str(ev.after_risky_allocation),
        timestamp=ev.timestamp,
        slippage=str(ev.slippage),
        cost_paid=str(ev.cost_paid),
    )


def _settlement_response(s: FinalSettlement) -> SettlementResponse:
    return SettlementResponse(
        position_id=s.position_id,
        owner=s.owner,
        strategy_id=s.strategy_id,
        principal=str(s.principal),
        final_value=str(s.final_value),
        total_return=str(s.total_return),
        guaranteed_floor=str(s.guaranteed_floor),
        rebalance_count=s.rebalance_count,
        max_drawdown=str(s.max_drawdown),
        closed_at=s.closed_at,
        reason=s.reason,
    )


def _outcome_response(out: TickOutcome) -> RevalueResponse:
    return RevalueResponse(
        position_id=out.position_id,
        status=out.status,
        instruction=instruction_response(out.instruction) if out.instruction else None,
        error_code=out.error_code,
    )


@router.get("", response_model=list[PositionResponse])
def list_positions(
    owner: str | None = Query(default=None),
    queries: PositionQueries = Depends(get_queries),
) -> list[PositionResponse]:
    return [PositionResponse(**v.to_dict()) for v in queries.positions_by_owner(owner)]


@router.post("", response_model=OpenPositionResponse, status_code=201)
def open_position(
    payload: OpenPositionRequest,
    engine: AutopilotEngine = Depends(get_engine),
) -> OpenPositionResponse:
    pid = engine.open_position(
        payload.strategy_id,
        payload.principal,
        payload.custom_floor,
        payload.auto_rebalance,
        owner=payload.owner,
        maturity_date=payload.maturity_date,
    )
    return OpenPositionResponse(position_id=pid)


@router.get("/{position_id}", response_model=PositionResponse)
def get_position(
    position_id: str = Path(..., description="Position id"),
    queries: PositionQueries = Depends(get_queries),
) -> PositionResponse:
    return PositionResponse(**queries.position(position_id).to_dict())


@router.post("/{position_id}/revalue", response_model=RevalueResponse)
def revalue(
    payload: RevalueRequest,
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> RevalueResponse:
    now = utc_now()
    as_of = ensure_utc(payload.as_of) if payload.as_of else now

    signal = None
    if payload.volatility is not None:
        signal = VolatilitySignal(
            value=float(payload.volatility),
            observed_at=ensure_utc(payload.volatility_observed_at) if payload.volatility_observed_at else as_of,
            regime=VolatilityRegime(payload.regime) if payload.regime else regime_for(float(payload.volatility)),
        )

    tick = ValuationTick(
        position_id=position_id,
        value=payload.value,
        as_of=as_of,
        safe_value=payload.safe_value,
        risky_value=payload.risky_value,
    )
    return _outcome_response(engine.on_tick(tick, volatility=signal, now=now))


@router.post("/{position_id}/rebalance", response_model=RevalueResponse)
def manual_rebalance(
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> RevalueResponse:
    return _outcome_response(engine.manual_rebalance(position_id))


@router.post("/{position_id}/rebalance-result", response_model=RebalanceEventResponse)
def rebalance_result(
    payload: RebalanceResultRequest,
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> RebalanceEventResponse:
    result = RebalanceResult(
        position_id=position_id,
        instruction_id=payload.instruction_id,
        achieved_safe=payload.achieved_safe,
        achieved_risky=payload.achieved_risky,
        slippage_bps=payload.slippage_bps,
        cost=payload.cost,
        success=payload.success,
        timestamp=ensure_utc(payload.timestamp) if payload.timestamp else utc_now(),
        error=payload.error,
    )
    return event_response(engine.ledger.apply_rebalance_result(position_id, result))


@router.post("/{position_id}/cancel-rebalance")
def cancel_rebalance(
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> dict:
    return {"cancelled": engine.ledger.cancel_rebalance(position_id, reason="operator")}


@router.get("/{position_id}/rebalances", response_model=list[RebalanceEventResponse])
def position_rebalances(
    position_id: str = Path(..., description="Position id"),
    limit: int | None = Query(default=None, ge=1, le=500),
    queries: PositionQueries = Depends(get_queries),
) -> list[RebalanceEventResponse]:
    return [event_response(e) for e in queries.history(position_id, limit=limit)]


@router.post("/{position_id}/close", response_model=SettlementResponse)
def close_position(
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> SettlementResponse:
    return _settlement_response(engine.close_position(position_id))


@router.post("/{position_id}/toggle-auto")
def toggle_auto(
    payload: ToggleAutoRequest,
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> dict:
    return {"auto_rebalance_enabled": engine.toggle_auto_rebalance(position_id, payload.enabled)}


@router.post("/{position_id}/raise-floor")
def raise_floor(
    payload: RaiseFloorRequest,
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> dict:
    return {"guaranteed_floor": str(engine.raise_floor(position_id, payload.new_floor))}


@router.post("/{position_id}/emergency-stop", response_model=StatusResponse)
def emergency_stop(
    payload: EmergencyStopRequest,
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> StatusResponse:
    engine.emergency_stop(position_id, payload.reason)
    return StatusResponse(status="halted")


@router.post("/{position_id}/resume", response_model=StatusResponse)
def resume(
    position_id: str = Path(..., description="Position id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> StatusResponse:
    engine.resume(position_id)
    return StatusResponse(status="active")
