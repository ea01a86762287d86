from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    full_name: str = ""
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class Session:
    """One durable row per issued refresh token.

    ``is_valid`` only ever moves from ``True`` to ``False``.
    """

    id: str
    user_id: str
    refresh_token: str
    created_at: datetime
    expires_at: Optional[datetime]
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_valid: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            created_at=utcnow(),
            expires_at=expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())
