from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from autopilot.core.config import Config, EngineConfig
from autopilot.core.exceptions import ConfigError


def test_config_loads_from_yaml_and_preset_chain(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    cfg_dir = tmp_path / "config"
    presets = cfg_dir / "presets"
    presets.mkdir(parents=True)

    (cfg_dir / "default.yaml").write_text("preset: conservative\nengine:\n  workers: 2\n")
    (presets / "conservative.yaml").write_text("engine:\n  freshness_window_seconds: 120\n  workers: 8\n")

    cfg = Config.from_yaml(cfg_dir / "default.yaml")
    assert cfg.preset == "conservative"
    assert cfg.engine.freshness_window_seconds == 120
    # explicit config wins over the preset
    assert cfg.engine.workers == 2


def test_repo_defaults_load(test_config: Config) -> None:
    assert test_config.preset == "balanced"
    assert test_config.engine.max_slippage_bps == 50
    assert {s.id for s in test_config.strategies} >= {"cppi_conservative", "cppi_balanced", "cppi_aggressive"}


def test_config_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CPPI_ENGINE__MAX_SLIPPAGE_BPS", "75")
    cfg = Config()  # BaseSettings reads env
    assert cfg.engine.max_slippage_bps == 75


def test_config_from_yaml_raises_if_missing(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        Config.from_yaml(tmp_path / "missing.yaml")


def test_config_from_yaml_raises_on_bad_yaml(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("engine: [unclosed\n")
    with pytest.raises(ConfigError):
        Config.from_yaml(p)


def test_engine_config_validators() -> None:
    with pytest.raises(ValidationError):
        EngineConfig(rebalance_timeout_seconds=0)
    with pytest.raises(ValidationError):
        EngineConfig(max_slippage_bps=-1)


def test_duplicate_strategy_ids_rejected() -> None:
    s = {"id": "x", "name": "x", "multiplier": "3", "floor_ratio": "0.8", "rebalance_threshold": "0.05"}
    with pytest.raises(ValidationError):
        Config(strategies=[s, s])


def test_load_falls_back_to_builtin_defaults(tmp_path: Path) -> None:
    cfg = Config.load(tmp_path)
    assert cfg.preset == "balanced"
    assert cfg.strategies == []
