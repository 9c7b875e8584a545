"""autopilot.core.models

The event envelope is immutable. The journal is append-only.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from autopilot.core.events import EventType, canonical_json


class Event(BaseModel):
    """Immutable journal record."""

    id: str
    type: EventType
    ts: datetime
    source: str | None = None
    dedupe_key: str | None = None
    payload: dict[str, Any]
    prev_hash: str | None = None
    hash: str

    model_config = {"frozen": True}


def compute_event_hash(
    *,
    prev_hash: str | None,
    event_type: EventType,
    payload: dict[str, Any],
) -> str:
    """Hash = sha256(prev_hash | type | canonical_payload_json)."""

    data = "|".join([prev_hash or "", str(event_type), canonical_json(payload)])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
