"""
Time and identifier helpers shared by the pipeline.

Timestamps are stored as ISO-8601 UTC strings with millisecond precision
(e.g. 2025-06-24T14:30:00.125Z) so they sort lexicographically and compare
exactly, which the conversation dedup key relies on.
"""

import uuid
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    """Render an aware datetime as ISO-8601 UTC with millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_ts(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp back into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return str(uuid.uuid4())
