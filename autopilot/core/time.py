"""autopilot.core.time

The only time helper surface in the codebase.

Every timestamp inside the engine is an aware UTC datetime.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return an aware UTC datetime."""

    return datetime.now(tz=UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_dt(value: str) -> datetime:
    """Parse an ISO-8601 datetime string into an aware UTC datetime.

    Accepts:
    - `Z` suffix
    - explicit offsets
    - naive timestamps (assumed UTC)

    Raises:
        ValueError: if parsing fails.
    """

    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(v))


def staleness_ms(observed_at: datetime, *, now: datetime | None = None) -> int:
    """Return staleness in milliseconds.

    Args:
        observed_at: When the underlying data was observed.
        now: Override clock for testing.
    """

    ref = ensure_utc(now or utc_now())
    return int((ref - ensure_utc(observed_at)).total_seconds() * 1000)
