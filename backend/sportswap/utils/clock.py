"""Time helpers shared by the store and the views."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now, matching what the store hands back from DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
