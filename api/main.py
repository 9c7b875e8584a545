from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from api.errors import ApiError, api_error_handler, autopilot_error_handler
from api.routes import get_api_router
from autopilot import __version__
from autopilot.core.config import Config
from autopilot.core.exceptions import AutopilotError, ConfigError
from autopilot.core.logging import configure_logging


def create_app(config: Config | None = None) -> FastAPI:
    start = time.monotonic()

    # Security check: refuse to start with empty auth_token unless explicitly overridden
    config = config or Config.load(Path.cwd())
    auth_token = str(config.api.auth_token or "")
    insecure_ok = os.environ.get("CPPI_INSECURE_OK", "").lower() in ("1", "true", "yes")

    if not auth_token and not insecure_ok:
        msg = (
            "SECURITY ERROR: API auth_token is empty\n"
            "\n"
            "Set CPPI_API__AUTH_TOKEN environment variable or add to config:\n"
            "  api:\n"
            "    auth_token: your-secret-token\n"
            "\n"
            "To run without auth (dev/test only), set CPPI_INSECURE_OK=1"
        )
        raise RuntimeError(msg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(app.state.config.logging)

        from autopilot.core.database import Database

        created_db = False
        if getattr(app.state, "db", None) is None:
            app.state.db = Database(Path.cwd() / "data" / "autopilot.db")
            created_db = True

        yield

        if created_db:
            app.state.db.close()

    openapi_tags = [
        {"name": "health", "description": "Liveness and version metadata."},
        {"name": "strategies", "description": "The immutable strategy catalog."},
        {"name": "positions", "description": "Position lifecycle, valuation ticks and rebalance fills."},
        {"name": "pool", "description": "Aggregate statistics and the rebalance log."},
    ]

    app = FastAPI(
        title="CPPI Autopilot API",
        description="Constant proportion portfolio insurance autopilot",
        version=__version__,
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.started_at = start
    app.state.config = config

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(AutopilotError, autopilot_error_handler)

    app.include_router(get_api_router(), prefix="/api/v1")
    return app


# Module-level app for uvicorn (e.g. `uvicorn api.main:app`).
# Guarded so test imports don't crash when auth_token isn't configured.
try:
    app = create_app()
except (RuntimeError, ConfigError):
    app = None
