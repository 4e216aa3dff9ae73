"""Time source for the engine; components accept a clock so runs can be replayed."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
