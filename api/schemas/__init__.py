from api.schemas.common import ErrorResponse, StatusResponse
from api.schemas.pool import PoolStatsResponse, StrategyResponse
from api.schemas.positions import (
    InstructionResponse,
    OpenPositionRequest,
    PositionResponse,
    RebalanceEventResponse,
    RevalueRequest,
    SettlementResponse,
)

__all__ = [
    "ErrorResponse",
    "InstructionResponse",
    "OpenPositionRequest",
    "PoolStatsResponse",
    "PositionResponse",
    "RebalanceEventResponse",
    "RevalueRequest",
    "SettlementResponse",
    "StatusResponse",
    "StrategyResponse",
]
