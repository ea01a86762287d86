"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from ipaddress import ip_address
from typing import Any, Optional

from tokenward.storage.models import Session, User, utcnow

# Rows with no expiry are removed by cleanup once they are this old
STALE_SESSION_AGE = timedelta(days=30)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as a timezone-aware UTC datetime.

    Naive values are assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalize an IP address to its canonical string form.

    Unparseable values are kept verbatim; the column is informational only.
    """
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return text


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def is_cleanup_candidate(session: Session, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    expires_at = ensure_utc(session.expires_at)
    if expires_at is not None:
        return expires_at < now
    return ensure_utc(session.created_at) < now - STALE_SESSION_AGE


def session_from_row(row: Any) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        refresh_token=row["refresh_token"],
        created_at=ensure_utc(safe_row_value(row, "created_at")) or utcnow(),
        expires_at=ensure_utc(safe_row_value(row, "expires_at")),
        user_agent=safe_row_value(row, "user_agent"),
        ip_address=normalize_ip_address(safe_row_value(row, "ip_address")),
        is_valid=bool(safe_row_value(row, "is_valid", True)),
    )


def user_from_row(row: Any) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        full_name=safe_row_value(row, "full_name") or "",
        created_at=ensure_utc(safe_row_value(row, "created_at")) or utcnow(),
        is_active=bool(safe_row_value(row, "is_active", True)),
    )
