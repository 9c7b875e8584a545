"""autopilot.core.catalog

Strategy templates. Immutable once registered, shared read-only by every position.

A strategy is pure data: multiplier, floor ratio, optional cap, drift threshold.
Versioning is by id: publish ``balanced-v2``, never edit ``balanced``.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from autopilot.core.exceptions import InvalidStrategy
from autopilot.core.types import ONE, ZERO, to_decimal

if TYPE_CHECKING:
    from autopilot.core.config import StrategyConfig


@dataclass(frozen=True, slots=True)
class Strategy:
    id: str
    name: str
    multiplier: Decimal
    floor_ratio: Decimal
    rebalance_threshold: Decimal
    cap: Decimal | None = None
    ratchet_enabled: bool = False
    scheduled_interval: timedelta | None = None
    description: str = ""

    def __post_init__(self) -> None:
        for name in ("multiplier", "floor_ratio", "rebalance_threshold"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if self.cap is not None:
            object.__setattr__(self, "cap", to_decimal(self.cap))

        if self.multiplier < ONE:
            raise InvalidStrategy(f"{self.id}: multiplier must be >= 1", reason="multiplier")
        if not (ZERO < self.floor_ratio <= ONE):
            raise InvalidStrategy(f"{self.id}: floor_ratio must be in (0, 1]", reason="floor_ratio")
        if self.rebalance_threshold <= ZERO:
            raise InvalidStrategy(f"{self.id}: rebalance_threshold must be > 0", reason="rebalance_threshold")
        if self.cap is not None and self.cap <= ONE:
            raise InvalidStrategy(f"{self.id}: cap must be > 1 when set", reason="cap")
        if self.scheduled_interval is not None and self.scheduled_interval <= timedelta(0):
            raise InvalidStrategy(f"{self.id}: scheduled_interval must be positive", reason="scheduled_interval")

    @property
    def risk_level(self) -> str:
        if self.multiplier <= Decimal("3"):
            return "Conservative"
        if self.multiplier <= Decimal("4.5"):
            return "Balanced"
        return "Aggressive"

    @classmethod
    def from_config(cls, cfg: StrategyConfig) -> Strategy:
        interval = cfg.scheduled_interval_seconds
        return cls(
            id=cfg.id,
            name=cfg.name,
            multiplier=to_decimal(cfg.multiplier),
            floor_ratio=to_decimal(cfg.floor_ratio),
            rebalance_threshold=to_decimal(cfg.rebalance_threshold),
            cap=to_decimal(cfg.cap) if cfg.cap is not None else None,
            ratchet_enabled=bool(cfg.ratchet_enabled),
            scheduled_interval=timedelta(seconds=interval) if interval else None,
            description=cfg.description,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "multiplier": str(self.multiplier),
            "floor_ratio": str(self.floor_ratio),
            "rebalance_threshold": str(self.rebalance_threshold),
            "cap": str(self.cap) if self.cap is not None else None,
            "ratchet_enabled": self.ratchet_enabled,
            "scheduled_interval_seconds": (
                int(self.scheduled_interval.total_seconds()) if self.scheduled_interval else None
            ),
            "risk_level": self.risk_level,
            "description": self.description,
        }


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    Strategy(
        id="cppi_conservative",
        name="Conservative CPPI",
        multiplier=Decimal("3"),
        floor_ratio=Decimal("0.90"),
        rebalance_threshold=Decimal("0.05"),
    ),
    Strategy(
        id="cppi_balanced",
        name="Balanced CPPI",
        multiplier=Decimal("4"),
        floor_ratio=Decimal("0.85"),
        rebalance_threshold=Decimal("0.03"),
        cap=Decimal("1.5"),
    ),
    Strategy(
        id="cppi_aggressive",
        name="Aggressive CPPI",
        multiplier=Decimal("5.5"),
        floor_ratio=Decimal("0.80"),
        rebalance_threshold=Decimal("0.02"),
    ),
)


class StrategyCatalog(Mapping[str, Strategy]):
    """Read-only registry. Safe to share across threads without locking."""

    def __init__(self, strategies: Iterable[Strategy] = ()) -> None:
        data: dict[str, Strategy] = {}
        for s in strategies:
            if s.id in data:
                raise InvalidStrategy(f"duplicate strategy id: {s.id}", reason="duplicate")
            data[s.id] = s
        self._strategies = MappingProxyType(data)

    @classmethod
    def default(cls) -> StrategyCatalog:
        return cls(DEFAULT_STRATEGIES)

    @classmethod
    def from_configs(cls, configs: Iterable[StrategyConfig]) -> StrategyCatalog:
        items = [Strategy.from_config(c) for c in configs]
        return cls(items) if items else cls.default()

    def require(self, strategy_id: str) -> Strategy:
        s = self._strategies.get(strategy_id)
        if s is None:
            raise InvalidStrategy(f"unknown strategy: {strategy_id}", reason="unknown")
        return s

    def __getitem__(self, key: str) -> Strategy:
        return self._strategies[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._strategies)

    def __len__(self) -> int:
        return len(self._strategies)
