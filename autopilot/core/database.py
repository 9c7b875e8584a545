"""autopilot.core.database

The journal: append-only events with a hash chain, plus the three tables a
restart needs (strategies, positions, rebalance log).

Money columns are TEXT. SQLite REAL would round the ledger.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from autopilot.core.events import EventType, canonical_json, payload_hash, validate_payload
from autopilot.core.exceptions import DedupeConflictError, EventStoreError
from autopilot.core.models import Event, compute_event_hash
from autopilot.core.time import ensure_utc, parse_dt, utc_now
from autopilot.core.types import (
    Position,
    PositionState,
    RebalanceEvent,
    TriggerReason,
)

SCHEMA = """
-- ============================================================
-- Core Events (hash chain, append-only)
-- ============================================================
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    ts TEXT NOT NULL,
    source TEXT,
    dedupe_key TEXT,
    payload TEXT NOT NULL,
    prev_hash TEXT,
    hash TEXT NOT NULL UNIQUE,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_events_type ON events(type);
CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);

CREATE TABLE IF NOT EXISTS event_dedup (
    dedupe_key TEXT PRIMARY KEY,
    event_id TEXT NOT NULL REFERENCES events(id),
    payload_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- ============================================================
-- Strategies (immutable templates)
-- ============================================================
CREATE TABLE IF NOT EXISTS strategies (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    multiplier TEXT NOT NULL,
    floor_ratio TEXT NOT NULL,
    rebalance_threshold TEXT NOT NULL,
    cap TEXT,
    ratchet_enabled INTEGER NOT NULL DEFAULT 0,
    scheduled_interval_seconds INTEGER,
    description TEXT
);

-- ============================================================
-- Positions
-- ============================================================
CREATE TABLE IF NOT EXISTS positions (
    id TEXT PRIMARY KEY,
    strategy_id TEXT NOT NULL REFERENCES strategies(id),
    owner TEXT NOT NULL,
    principal TEXT NOT NULL,
    guaranteed_floor TEXT NOT NULL,
    current_value TEXT NOT NULL,
    safe_exposure TEXT NOT NULL,
    risky_exposure TEXT NOT NULL,
    peak_value TEXT NOT NULL,
    max_drawdown TEXT NOT NULL,
    rebalance_count INTEGER NOT NULL DEFAULT 0,
    auto_rebalance_enabled INTEGER NOT NULL DEFAULT 1,
    maturity_date TEXT,
    created_at TEXT NOT NULL,
    last_rebalanced_at TEXT,
    last_valuation_at TEXT,
    last_valuation_value TEXT,
    state TEXT NOT NULL DEFAULT 'active' CHECK(state IN ('active', 'halted', 'closed', 'matured')),
    halt_reason TEXT,
    closed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_positions_owner ON positions(owner);
CREATE INDEX IF NOT EXISTS idx_positions_state ON positions(state);

-- ============================================================
-- Rebalance log (append-only, keyed by position + sequence)
-- ============================================================
CREATE TABLE IF NOT EXISTS rebalance_events (
    position_id TEXT NOT NULL REFERENCES positions(id),
    sequence INTEGER NOT NULL,
    trigger TEXT NOT NULL CHECK(trigger IN ('drift', 'volatility', 'scheduled', 'manual')),
    before_safe_allocation TEXT NOT NULL,
    after_safe_allocation TEXT NOT NULL,
    before_risky_allocation TEXT NOT NULL,
    after_risky_allocation TEXT NOT NULL,
    ts TEXT NOT NULL,
    slippage TEXT NOT NULL,
    cost_paid TEXT NOT NULL,
    PRIMARY KEY (position_id, sequence)
);

CREATE TRIGGER IF NOT EXISTS rebalance_events_no_update
BEFORE UPDATE ON rebalance_events
BEGIN
    SELECT RAISE(ABORT, 'rebalance_events is append-only');
END;

CREATE TRIGGER IF NOT EXISTS rebalance_events_no_delete
BEFORE DELETE ON rebalance_events
BEGIN
    SELECT RAISE(ABORT, 'rebalance_events is append-only');
END;
"""


def _dt_to_iso(dt: datetime | None) -> str | None:
    return None if dt is None else ensure_utc(dt).isoformat()


def _iso_to_dt(value: str | None) -> datetime | None:
    return None if value is None else parse_dt(value)


@dataclass
class Database:
    """Event-sourced SQLite database with hash chain."""

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()
        self._last_hash = self._get_last_hash()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.executescript(SCHEMA)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
            self.conn.execute("PRAGMA foreign_keys=ON")

    def _get_last_hash(self) -> str | None:
        row = self.conn.execute("SELECT hash FROM events ORDER BY rowid DESC LIMIT 1").fetchone()
        return None if row is None else str(row[0])

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def append_event(
        self,
        *,
        event_type: EventType,
        payload: dict[str, Any],
        source: str | None = None,
        dedupe_key: str | None = None,
        ts: datetime | None = None,
    ) -> Event:
        """Append a single event.

        Dedup semantics:
        - If dedupe_key is new: insert.
        - If dedupe_key exists with same payload_hash: idempotent (return existing event).
        - If dedupe_key exists with different payload_hash: conflict.
        """

        with self._lock:
            now = ensure_utc(ts or utc_now())

            payload_canon = json.loads(canonical_json(validate_payload(event_type, payload)))
            p_hash = payload_hash(payload_canon)

            if dedupe_key is not None:
                row = self.conn.execute(
                    "SELECT event_id, payload_hash FROM event_dedup WHERE dedupe_key = ?",
                    (dedupe_key,),
                ).fetchone()
                if row is not None:
                    if str(row[1]) != p_hash:
                        raise DedupeConflictError(f"dedupe_key conflict for {dedupe_key}: payload changed")
                    existing = self.conn.execute("SELECT * FROM events WHERE id = ?", (str(row[0]),)).fetchone()
                    if existing is None:
                        raise EventStoreError("dedup index points to missing event")
                    return self._row_to_event(existing)

            eid = str(uuid.uuid4())
            prev = self._last_hash
            h = compute_event_hash(prev_hash=prev, event_type=event_type, payload=payload_canon)

            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO events (id, type, ts, source, dedupe_key, payload, prev_hash, hash)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            eid,
                            str(event_type),
                            _dt_to_iso(now),
                            source,
                            dedupe_key,
                            canonical_json(payload_canon),
                            prev,
                            h,
                        ),
                    )
                    if dedupe_key is not None:
                        self.conn.execute(
                            """
                            INSERT INTO event_dedup (dedupe_key, event_id, payload_hash, created_at)
                            VALUES (?, ?, ?, datetime('now'))
                            """,
                            (dedupe_key, eid, p_hash),
                        )
            except sqlite3.IntegrityError as e:
                raise EventStoreError(str(e)) from e

            self._last_hash = h
            return Event(
                id=eid,
                type=event_type,
                ts=now,
                source=source,
                dedupe_key=dedupe_key,
                payload=payload_canon,
                prev_hash=prev,
                hash=h,
            )

    def get_events(
        self,
        *,
        event_type: EventType | None = None,
        since: datetime | None = None,
        source: str | None = None,
        limit: int = 100,
    ) -> list[Event]:
        q = "SELECT * FROM events WHERE 1=1"
        params: list[Any] = []
        if event_type is not None:
            q += " AND type = ?"
            params.append(str(event_type))
        if source is not None:
            q += " AND source = ?"
            params.append(source)
        if since is not None:
            q += " AND ts >= ?"
            params.append(_dt_to_iso(since))
        q += " ORDER BY rowid DESC LIMIT ?"
        params.append(limit)

        rows = self.conn.execute(q, tuple(params)).fetchall()
        return [self._row_to_event(r) for r in rows]

    def verify_hash_chain(self) -> bool:
        rows = self.conn.execute("SELECT type, payload, prev_hash, hash FROM events ORDER BY rowid ASC").fetchall()
        prev: str | None = None
        for row in rows:
            if (row[2] or None) != prev:
                return False
            expected = compute_event_hash(
                prev_hash=prev,
                event_type=EventType(str(row[0])),
                payload=json.loads(str(row[1])),
            )
            if expected != str(row[3]):
                return False
            prev = expected
        return True

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            id=str(row["id"]),
            type=EventType(str(row["type"])),
            ts=_iso_to_dt(str(row["ts"])) or utc_now(),
            source=row["source"],
            dedupe_key=row["dedupe_key"],
            payload=json.loads(row["payload"]),
            prev_hash=row["prev_hash"],
            hash=str(row["hash"]),
        )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def upsert_strategy(self, data: dict[str, Any]) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO strategies (
                    id, name, multiplier, floor_ratio, rebalance_threshold, cap,
                    ratchet_enabled, scheduled_interval_seconds, description
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    data["id"],
                    data["name"],
                    data["multiplier"],
                    data["floor_ratio"],
                    data["rebalance_threshold"],
                    data.get("cap"),
                    1 if data.get("ratchet_enabled") else 0,
                    data.get("scheduled_interval_seconds"),
                    data.get("description", ""),
                ),
            )

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def save_position(self, p: Position, *, closed_at: datetime | None = None) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO positions (
                    id, strategy_id, owner, principal, guaranteed_floor, current_value,
                    safe_exposure, risky_exposure, peak_value, max_drawdown, rebalance_count,
                    auto_rebalance_enabled, maturity_date, created_at, last_rebalanced_at,
                    last_valuation_at, last_valuation_value, state, halt_reason, closed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    guaranteed_floor = excluded.guaranteed_floor,
                    current_value = excluded.current_value,
                    safe_exposure = excluded.safe_exposure,
                    risky_exposure = excluded.risky_exposure,
                    peak_value = excluded.peak_value,
                    max_drawdown = excluded.max_drawdown,
                    rebalance_count = excluded.rebalance_count,
                    auto_rebalance_enabled = excluded.auto_rebalance_enabled,
                    last_rebalanced_at = excluded.last_rebalanced_at,
                    last_valuation_at = excluded.last_valuation_at,
                    last_valuation_value = excluded.last_valuation_value,
                    state = excluded.state,
                    halt_reason = excluded.halt_reason,
                    closed_at = excluded.closed_at
                """,
                (
                    p.id,
                    p.strategy_id,
                    p.owner,
                    str(p.principal),
                    str(p.guaranteed_floor),
                    str(p.current_value),
                    str(p.safe_exposure),
                    str(p.risky_exposure),
                    str(p.peak_value),
                    str(p.max_drawdown),
                    int(p.rebalance_count),
                    1 if p.auto_rebalance_enabled else 0,
                    _dt_to_iso(p.maturity_date),
                    _dt_to_iso(p.created_at),
                    _dt_to_iso(p.last_rebalanced_at),
                    _dt_to_iso(p.last_valuation_at),
                    None if p.last_valuation_value is None else str(p.last_valuation_value),
                    str(p.state),
                    p.halt_reason,
                    _dt_to_iso(closed_at),
                ),
            )

    def load_open_positions(self) -> list[Position]:
        rows = self.conn.execute(
            "SELECT * FROM positions WHERE state IN ('active', 'halted') ORDER BY created_at ASC"
        ).fetchall()
        out: list[Position] = []
        for r in rows:
            principal = Decimal(r["principal"])
            floor = Decimal(r["guaranteed_floor"])
            value = Decimal(r["current_value"])
            out.append(
                Position(
                    id=str(r["id"]),
                    strategy_id=str(r["strategy_id"]),
                    owner=str(r["owner"]),
                    principal=principal,
                    guaranteed_floor=floor,
                    current_value=value,
                    safe_exposure=Decimal(r["safe_exposure"]),
                    risky_exposure=Decimal(r["risky_exposure"]),
                    cushion=max(Decimal("0"), value - floor),
                    peak_value=Decimal(r["peak_value"]),
                    created_at=_iso_to_dt(r["created_at"]) or utc_now(),
                    max_drawdown=Decimal(r["max_drawdown"]),
                    rebalance_count=int(r["rebalance_count"]),
                    auto_rebalance_enabled=bool(r["auto_rebalance_enabled"]),
                    maturity_date=_iso_to_dt(r["maturity_date"]),
                    last_rebalanced_at=_iso_to_dt(r["last_rebalanced_at"]),
                    last_valuation_at=_iso_to_dt(r["last_valuation_at"]),
                    last_valuation_value=(
                        None if r["last_valuation_value"] is None else Decimal(r["last_valuation_value"])
                    ),
                    state=PositionState(str(r["state"])),
                    halt_reason=r["halt_reason"],
                )
            )
        return out

    # ------------------------------------------------------------------
    # Rebalance log
    # ------------------------------------------------------------------

    def append_rebalance_event(self, ev: RebalanceEvent) -> None:
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    """
                    INSERT INTO rebalance_events (
                        position_id, sequence, trigger, before_safe_allocation, after_safe_allocation,
                        before_risky_allocation, after_risky_allocation, ts, slippage, cost_paid
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        ev.position_id,
                        int(ev.sequence),
                        str(ev.trigger),
                        str(ev.before_safe_allocation),
                        str(ev.after_safe_allocation),
                        str(ev.before_risky_allocation),
                        str(ev.after_risky_allocation),
                        _dt_to_iso(ev.timestamp),
                        str(ev.slippage),
                        str(ev.cost_paid),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise EventStoreError(str(e)) from e

    def load_rebalance_events(self, position_ids: Iterable[str] | None = None) -> list[RebalanceEvent]:
        q = "SELECT * FROM rebalance_events"
        params: tuple[Any, ...] = ()
        if position_ids is not None:
            ids = list(position_ids)
            if not ids:
                return []
            q += f" WHERE position_id IN ({','.join('?' for _ in ids)})"
            params = tuple(ids)
        q += " ORDER BY ts ASC, position_id ASC, sequence ASC"
        rows = self.conn.execute(q, params).fetchall()
        return [
            RebalanceEvent(
                position_id=str(r["position_id"]),
                sequence=int(r["sequence"]),
                trigger=TriggerReason(str(r["trigger"])),
                before_safe_allocation=Decimal(r["before_safe_allocation"]),
                after_safe_allocation=Decimal(r["after_safe_allocation"]),
                before_risky_allocation=Decimal(r["before_risky_allocation"]),
                after_risky_allocation=Decimal(r["after_risky_allocation"]),
                timestamp=_iso_to_dt(r["ts"]) or utc_now(),
                slippage=Decimal(r["slippage"]),
                cost_paid=Decimal(r["cost_paid"]),
            )
            for r in rows
        ]
