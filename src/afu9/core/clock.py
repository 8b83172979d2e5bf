from __future__ import annotations

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how timestamps are stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds") + "Z"


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)
