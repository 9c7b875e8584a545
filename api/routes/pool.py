from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from api.auth import AuthDep
from api.deps import get_queries
from api.routes.positions import event_response
from api.schemas.pool import PoolStatsResponse
from api.schemas.positions import RebalanceEventResponse
from autopilot.execution.queries import PositionQueries

router = APIRouter(dependencies=[AuthDep])


@router.get("/pool/stats", response_model=PoolStatsResponse)
def pool_stats(queries: PositionQueries = Depends(get_queries)) -> PoolStatsResponse:
    return PoolStatsResponse(**queries.pool_stats().to_dict())


@router.get("/rebalances", response_model=list[RebalanceEventResponse])
def rebalances(
    limit: int | None = Query(default=None, ge=1, le=500),
    queries: PositionQueries = Depends(get_queries),
) -> list[RebalanceEventResponse]:
    return [event_response(e) for e in queries.history(limit=limit)]
