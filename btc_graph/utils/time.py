"""Time utility functions for import bookkeeping."""

from datetime import datetime, timezone


def get_current_utc() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def format_duration(seconds: float) -> str:
    """Format elapsed seconds as HH:MM:SS (hours may exceed 24)."""
    total = int(max(seconds, 0))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
