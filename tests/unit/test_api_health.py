from __future__ import annotations

import pytest

from autopilot import __version__
from tests.unit._api_test_client import AUTH, build_app, make_client


@pytest.mark.anyio
async def test_health_returns_version(temp_dir, test_config):
    app = build_app(test_config, temp_dir)

    async with make_client(app) as ac:
        r = await ac.get("/api/v1/health")
        assert r.status_code == 200
        data = r.json()
        assert data["version"] == __version__
        assert "uptime_seconds" in data
        assert data["open_positions"] == 0
        assert data["data_quality_alerts"] == 0
        assert data["db_size_bytes"] >= 0

    app.state.db.close()


@pytest.mark.anyio
async def test_health_counts_open_positions(temp_dir, test_config):
    app = build_app(test_config, temp_dir)

    async with make_client(app) as ac:
        r = await ac.post(
            "/api/v1/positions", json={"strategy_id": "cppi_balanced", "principal": "1000"}, headers=AUTH
        )
        assert r.status_code == 201
        r = await ac.get("/api/v1/health")
        assert r.json()["open_positions"] == 1

    app.state.db.close()
