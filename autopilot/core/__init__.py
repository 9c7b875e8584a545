"""autopilot.core

Money types, the strategy catalog, config, errors and the journal. Nothing in
here imports from ``autopilot.brain`` or ``autopilot.execution``.
"""

from .catalog import Strategy, StrategyCatalog
from .config import Config
from .database import Database
from .events import EventType
from .exceptions import AutopilotError
from .metrics import REGISTRY, MetricsRegistry
from .models import Event
from .time import ensure_utc, parse_dt, staleness_ms, utc_now
from .types import Money, Position, PositionState, TriggerReason

__all__ = [
    "REGISTRY",
    "AutopilotError",
    "Config",
    "Database",
    "Event",
    "EventType",
    "MetricsRegistry",
    "Money",
    "Position",
    "PositionState",
    "Strategy",
    "StrategyCatalog",
    "TriggerReason",
    "ensure_utc",
    "parse_dt",
    "staleness_ms",
    "utc_now",
]
