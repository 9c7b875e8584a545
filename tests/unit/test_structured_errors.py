from __future__ import annotations

import pytest

from api.errors import ApiError
from autopilot.core.exceptions import InvariantViolation, SlippageExceeded, StaleValuation
from tests.unit._api_test_client import build_app, make_client


@pytest.mark.anyio
async def test_api_error_handler_json_shape(temp_dir, test_config):
    app = build_app(test_config, temp_dir)

    @app.get("/api/v1/_test/error")
    def _raise() -> None:
        raise ApiError(code="test.error", message="boom", status=418, detail="extra")

    async with make_client(app) as ac:
        r = await ac.get("/api/v1/_test/error")
        assert r.status_code == 418
        js = r.json()
        assert js == {"error": {"code": "test.error", "message": "boom", "detail": "extra"}}

    app.state.db.close()


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("exc", "status", "code"),
    [
        (SlippageExceeded("slipped", position_id="p1", reason="slippage"), 409, "execution.slippage_exceeded"),
        (StaleValuation("old", position_id="p1", reason="too_old"), 422, "data_quality.stale_valuation"),
        (InvariantViolation("broken", position_id="p1", reason="floor_decreased"), 500, "invariant.violation"),
    ],
)
async def test_autopilot_errors_map_to_status_codes(temp_dir, test_config, exc, status, code):
    app = build_app(test_config, temp_dir)

    @app.get("/api/v1/_test/autopilot")
    def _raise() -> None:
        raise exc

    async with make_client(app) as ac:
        r = await ac.get("/api/v1/_test/autopilot")
        assert r.status_code == status
        err = r.json()["error"]
        assert err["code"] == code
        assert err["position_id"] == "p1"
        assert err["reason"] == exc.reason

    app.state.db.close()
