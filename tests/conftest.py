from __future__ import annotations

import shutil
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# uv/pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from autopilot.core.catalog import DEFAULT_STRATEGIES, Strategy, StrategyCatalog  # noqa: E402
from autopilot.core.config import Config  # noqa: E402
from autopilot.core.metrics import MetricsRegistry  # noqa: E402


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def test_config(temp_dir: Path) -> Config:
    """Config fixture that points data_dir to a temp directory."""

    repo_root = Path(__file__).resolve().parents[1]
    cfg_src = repo_root / "config" / "default.yaml"
    cfg_dst_dir = temp_dir / "config"
    cfg_dst_dir.mkdir(parents=True, exist_ok=True)

    # copy default + presets
    shutil.copy2(cfg_src, cfg_dst_dir / "default.yaml")
    shutil.copytree(repo_root / "config" / "presets", cfg_dst_dir / "presets")

    c = Config.from_yaml(cfg_dst_dir / "default.yaml")
    return c.model_copy(update={"data_dir": temp_dir / "data", "config_dir": cfg_dst_dir})


@pytest.fixture()
def example_strategy() -> Strategy:
    """m=3, floor 80% of principal, 5% drift band."""

    return Strategy(
        id="cppi_example",
        name="Worked example",
        multiplier=Decimal("3"),
        floor_ratio=Decimal("0.80"),
        rebalance_threshold=Decimal("0.05"),
    )


@pytest.fixture()
def catalog(example_strategy: Strategy) -> StrategyCatalog:
    ratchet = Strategy(
        id="cppi_ratchet",
        name="Ratchet",
        multiplier=Decimal("4"),
        floor_ratio=Decimal("0.85"),
        rebalance_threshold=Decimal("0.03"),
        ratchet_enabled=True,
    )
    return StrategyCatalog([*DEFAULT_STRATEGIES, example_strategy, ratchet])


@pytest.fixture()
def metrics() -> MetricsRegistry:
    return MetricsRegistry()

