"""autopilot.core.config

Two config surfaces only:
1) `config/default.yaml` + `config/presets/*.yaml`
2) Environment variables (`CPPI_` prefix, `__` for nesting)

Everything else is derived.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from autopilot.core.exceptions import ConfigError


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class StrategyConfig(BaseModel):
    """One catalog entry. Numbers are kept as strings in YAML to avoid float drift."""

    id: str
    name: str
    multiplier: str | float
    floor_ratio: str | float
    rebalance_threshold: str | float
    cap: str | float | None = None
    ratchet_enabled: bool = False
    scheduled_interval_seconds: int | None = None
    description: str = ""


class EngineConfig(BaseModel):
    freshness_window_seconds: int = 300
    rebalance_timeout_seconds: int = 120
    max_slippage_bps: int = 50
    volatility_spike_threshold: float = 0.80
    volatility_max_age_seconds: int = 900
    require_volatility_signal: bool = True
    data_quality_alert_after: int = 3
    workers: int = 4

    @field_validator("freshness_window_seconds", "rebalance_timeout_seconds", "workers")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be >= 1")
        return v

    @field_validator("max_slippage_bps")
    @classmethod
    def slippage_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_slippage_bps must be >= 0")
        return v


class LedgerConfig(BaseModel):
    epsilon: float = 1e-6
    history_limit: int = 20


class PaperConfig(BaseModel):
    slippage_bps: float = 5.0
    cost_rate: float = 0.0006


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5060
    auth_token: str = ""
    executor: Literal["external", "paper"] = "external"


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    data_dir: Path = Path("data")
    config_dir: Path = Path("config")

    preset: Literal["conservative", "balanced", "aggressive", "custom"] = "balanced"

    engine: EngineConfig = Field(default_factory=EngineConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    strategies: list[StrategyConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = {"env_prefix": "CPPI_", "env_nested_delimiter": "__"}

    @model_validator(mode="after")
    def strategy_ids_unique(self) -> Config:
        ids = [s.id for s in self.strategies]
        if len(ids) != len(set(ids)):
            raise ValueError("strategy ids must be unique")
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {path}") from e

        preset_name = raw.get("preset", "balanced")
        preset_path = path.parent / "presets" / f"{preset_name}.yaml"
        if preset_path.exists():
            preset_data = yaml.safe_load(preset_path.read_text()) or {}
            raw = _deep_merge(preset_data, raw)

        return cls(**raw)

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")

    @classmethod
    def load(cls, repo_root: Path | None = None) -> Config:
        """User config if present, else repo defaults, else built-in defaults."""

        root = repo_root or Path.cwd()
        user_path = root / "config" / "user.yaml"
        if user_path.exists():
            return cls.from_yaml(user_path)
        default_path = root / "config" / "default.yaml"
        if default_path.exists():
            return cls.from_yaml(default_path)
        return cls()
