from __future__ import annotations

import threading
from functools import lru_cache
from pathlib import Path

from fastapi import Request

from autopilot.core.config import Config
from autopilot.core.database import Database
from autopilot.execution.engine import AutopilotEngine
from autopilot.execution.paper import PaperExecutor
from autopilot.execution.queries import PositionQueries

_engine_lock = threading.Lock()


@lru_cache
def _repo_root() -> Path:
    # Assume running from repo root (uvicorn started there). Fallback to parent of this file.
    here = Path(__file__).resolve()
    for p in [Path.cwd(), here.parent.parent]:
        if (p / "config" / "default.yaml").exists():
            return p
    return Path.cwd()


@lru_cache
def _load_config() -> Config:
    return Config.load(_repo_root())


def get_config(request: Request) -> Config:
    cfg = getattr(request.app.state, "config", None)
    return cfg or _load_config()


def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is not None:
        return db
    with _engine_lock:
        db = getattr(request.app.state, "db", None)
        if db is None:
            db = Database(_repo_root() / "data" / "autopilot.db")
            request.app.state.db = db
    return db


def get_engine(request: Request) -> AutopilotEngine:
    """One engine per app, restored from the journal on first use."""

    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        return engine
    config = get_config(request)
    db = get_db(request)
    with _engine_lock:
        engine = getattr(request.app.state, "engine", None)
        if engine is None:
            executor = PaperExecutor(config=config.paper) if config.api.executor == "paper" else None
            engine = AutopilotEngine.from_config(config, db=db, executor=executor, restore=True)
            request.app.state.engine = engine
    return engine


def get_queries(request: Request) -> PositionQueries:
    engine = get_engine(request)
    return PositionQueries(engine.ledger, scorer=engine.scorer)
