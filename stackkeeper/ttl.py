"""
TTL (Time To Live) expiration timestamps for managed stacks.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

DEFAULT_TTL_MINUTES = 8 * 60

# The TTL schedule endpoint only accepts whole minutes ending in ":00Z".
TTL_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:00Z"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_expiration(ttl_minutes: int = DEFAULT_TTL_MINUTES, now: Optional[datetime] = None) -> str:
    """
    Compute the absolute expiration timestamp for a TTL schedule.

    Sub-minute precision is discarded (truncated, never rounded).

    Args:
        ttl_minutes: Minutes from now until expiration
        now: Reference time (defaults to the current UTC time)

    Returns:
        Timestamp in format YYYY-MM-DDTHH:MM:00Z
    """
    if now is None:
        now = utcnow()
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    expires_at = now.astimezone(timezone.utc) + timedelta(minutes=ttl_minutes)
    return expires_at.strftime(TTL_TIMESTAMP_FORMAT)


def parse_expiration(timestamp: str) -> datetime:
    """Parse a TTL timestamp back into an aware datetime."""
    return datetime.fromisoformat(timestamp.replace("Z", "+00:00"))


def is_expired(timestamp: Optional[str], now: Optional[datetime] = None) -> bool:
    """
    Check if a TTL timestamp lies in the past.

    Args:
        timestamp: TTL timestamp or None
        now: Reference time (defaults to the current UTC time)

    Returns:
        True if expired, False if not expired, unset or unparseable
    """
    if not timestamp:
        return False

    try:
        expires_at = parse_expiration(timestamp)
    except (ValueError, TypeError):
        return False

    return (now or utcnow()) > expires_at
