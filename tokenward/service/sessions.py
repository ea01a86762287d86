from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Protocol, TypeVar

from tokenward.logging import get_logger
from tokenward.service.audit import (
    ACTION_REFRESH_TOKEN,
    ACTION_SESSION_CREATE,
    ACTION_SESSION_INVALIDATE,
    EVENT_TYPE_AUTH,
    EVENT_TYPE_SESSION,
    AuditEvent,
    AuditSink,
    emit_audit,
)
from tokenward.service.device import DeviceInfo, parse_user_agent
from tokenward.service.errors import (
    AuthenticationError,
    ConflictError,
    InternalError,
    NotFoundError,
)
from tokenward.service.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TokenClaims,
    TokenCodec,
)
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import Session, User

logger = get_logger(__name__)

T = TypeVar("T")


class SessionStore(Protocol):
    def create_refresh_session(self, session: Session) -> Session:
        ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        ...

    def get_sessions_by_user(
        self, user_id: str, *, valid_only: bool = False
    ) -> List[Session]:
        ...

    def get_session_by_id_and_user(
        self, session_id: str, user_id: str
    ) -> Optional[Session]:
        ...

    def invalidate_by_refresh_token(self, refresh_token: str) -> int:
        ...

    def invalidate_by_session_and_user(self, session_id: str, user_id: str) -> int:
        ...

    def invalidate_all_by_user(self, user_id: str) -> int:
        ...

    def cleanup_expired(self) -> int:
        ...


class TokenIndex(Protocol):
    async def put_refresh_token(
        self, token_id: str, user_id: str, ttl_seconds: float
    ) -> None:
        ...

    async def get_refresh_token_user(self, token_id: str) -> Optional[str]:
        ...

    async def delete_refresh_token(self, token_id: str) -> None:
        ...


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    user: User
    token_type: str = "bearer"


@dataclass
class SessionView:
    id: str
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: datetime
    expires_at: Optional[datetime]
    is_current: bool
    device_info: DeviceInfo

    @classmethod
    def from_session(cls, session: Session, *, is_current: bool) -> "SessionView":
        return cls(
            id=session.id,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            created_at=session.created_at,
            expires_at=session.expires_at,
            is_current=is_current,
            device_info=parse_user_agent(session.user_agent),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_current": self.is_current,
            "device_info": self.device_info.to_dict(),
        }


class SessionService:
    """Session lifecycle over a refresh token index and a durable session store.

    A refresh is honoured only when the index still holds the token ID AND the
    durable row is valid and unexpired. The two stores are never updated in
    one transaction; every path below is written so that a partial failure
    leaves the session unusable rather than usable.
    """

    def __init__(
        self,
        store: SessionStore,
        index: TokenIndex,
        users: UserDirectory,
        codec: TokenCodec,
        *,
        audit: Optional[AuditSink] = None,
        store_timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.index = index
        self.users = users
        self.codec = codec
        self.audit = audit
        self.store_timeout_seconds = store_timeout_seconds

    async def _index_call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.store_timeout_seconds)

    def _store_call(self, operation: str, fn: Callable[..., T], *args, **kwargs) -> T:
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            logger.error(
                "session_store_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("session store unavailable") from exc

    async def _discard_index_entry(self, token_id: str, *, reason: str) -> bool:
        """Best-effort removal of a refresh token from the index."""
        try:
            await self._index_call(self.index.delete_refresh_token(token_id))
        except Exception as exc:
            logger.warning(
                "refresh_token_cache_delete_failed",
                token_id=token_id,
                reason=reason,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True

    def _decode_stored_token(self, refresh_token: str) -> Optional[TokenClaims]:
        try:
            return self.codec.validate(refresh_token)
        except AuthenticationError:
            # Expired tokens have already aged out of the index
            return None

    async def create_session(
        self,
        user: User,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthTokens:
        access = self.codec.issue_access_token(user.id, user.email, user.full_name)
        refresh = self.codec.issue_refresh_token(user.id)
        token_id = refresh.claims.token_id
        audit_event = AuditEvent(
            event_type=EVENT_TYPE_SESSION,
            action=ACTION_SESSION_CREATE,
            resource="session",
            user_id=user.id,
            ip_address=ip_address or "",
            user_agent=user_agent,
        )

        try:
            await self._index_call(
                self.index.put_refresh_token(
                    token_id, user.id, self.codec.refresh_ttl_seconds
                )
            )
        except Exception as exc:
            logger.error(
                "refresh_token_cache_write_failed",
                user_id=user.id,
                token_id=token_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            emit_audit(self.audit, audit_event.failed("token index unavailable"))
            raise InternalError("failed to create session") from exc

        session = Session.new(
            user_id=user.id,
            refresh_token=refresh.token,
            expires_at=refresh.claims.expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        try:
            self.store.create_refresh_session(session)
        except Exception as exc:
            # Undo the index write so no orphan entry outlives the failed insert
            await self._discard_index_entry(token_id, reason="session_persist_failed")
            logger.error(
                "session_persist_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            emit_audit(self.audit, audit_event.failed("session could not be recorded"))
            if isinstance(exc, ConstraintViolation):
                raise ConflictError(
                    "session could not be recorded", detail=exc.detail
                ) from exc
            raise InternalError("failed to create session") from exc

        logger.info("session_created", user_id=user.id, session_id=session.id)
        emit_audit(self.audit, replace(audit_event, resource_id=session.id))
        return AuthTokens(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=self.codec.access_ttl_seconds,
            user=user,
        )

    async def refresh_session(self, refresh_token: str) -> AuthTokens:
        claims = self.codec.validate(refresh_token)
        if claims.kind != REFRESH_TOKEN:
            raise AuthenticationError("invalid token type")

        try:
            indexed_owner = await self._index_call(
                self.index.get_refresh_token_user(claims.token_id)
            )
        except Exception as exc:
            # An unreachable index denies the refresh; it never means "absent"
            logger.error(
                "refresh_token_cache_read_failed",
                token_id=claims.token_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("unable to verify refresh token") from exc
        if indexed_owner is None:
            raise AuthenticationError("refresh token not found or expired")

        session = self._store_call(
            "get_session_by_refresh_token",
            self.store.get_session_by_refresh_token,
            refresh_token,
        )
        if session is None or not session.is_valid:
            raise AuthenticationError("session not found or invalid")
        if session.is_expired():
            raise AuthenticationError("session expired")
        if not (indexed_owner == claims.user_id == session.user_id):
            logger.warning(
                "refresh_token_owner_mismatch",
                token_id=claims.token_id,
                session_id=session.id,
            )
            raise AuthenticationError("session not found or invalid")

        user = self._store_call("get_user", self.users.get_user, session.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("user not found")

        access = self.codec.issue_access_token(user.id, user.email, user.full_name)
        logger.info("session_refreshed", user_id=user.id, session_id=session.id)
        emit_audit(
            self.audit,
            AuditEvent(
                event_type=EVENT_TYPE_AUTH,
                action=ACTION_REFRESH_TOKEN,
                resource="session",
                user_id=user.id,
                resource_id=session.id,
            ),
        )
        return AuthTokens(
            access_token=access.token,
            refresh_token=refresh_token,
            expires_in=self.codec.access_ttl_seconds,
            user=user,
        )

    async def invalidate_session(self, refresh_token: str) -> None:
        claims = self.codec.validate(refresh_token)
        if claims.kind != REFRESH_TOKEN:
            raise AuthenticationError("invalid token type")
        await self._discard_index_entry(claims.token_id, reason="logout")
        changed = self._store_call(
            "invalidate_by_refresh_token",
            self.store.invalidate_by_refresh_token,
            refresh_token,
        )
        logger.info("session_invalidated", user_id=claims.user_id, changed=changed)
        emit_audit(
            self.audit,
            AuditEvent(
                event_type=EVENT_TYPE_SESSION,
                action=ACTION_SESSION_INVALIDATE,
                resource="session",
                user_id=claims.user_id,
            ),
        )

    async def invalidate_all_sessions(self, user_id: str) -> int:
        sessions = self._store_call(
            "get_sessions_by_user", self.store.get_sessions_by_user, user_id
        )
        skipped = 0
        cache_failures = 0
        for session in sessions:
            claims = self._decode_stored_token(session.refresh_token)
            if claims is None:
                skipped += 1
                continue
            if not await self._discard_index_entry(
                claims.token_id, reason="invalidate_all"
            ):
                cache_failures += 1

        changed = self._store_call(
            "invalidate_all_by_user", self.store.invalidate_all_by_user, user_id
        )
        logger.info(
            "all_sessions_invalidated",
            user_id=user_id,
            changed=changed,
            skipped_tokens=skipped,
            cache_failures=cache_failures,
        )
        emit_audit(
            self.audit,
            AuditEvent(
                event_type=EVENT_TYPE_SESSION,
                action=ACTION_SESSION_INVALIDATE,
                resource="session",
                user_id=user_id,
                resource_id="*",
            ),
        )
        return changed

    async def invalidate_specific_session(self, user_id: str, session_id: str) -> None:
        session = self._store_call(
            "get_session_by_id_and_user",
            self.store.get_session_by_id_and_user,
            session_id,
            user_id,
        )
        if session is None:
            raise NotFoundError("session not found")

        claims = self._decode_stored_token(session.refresh_token)
        if claims is not None:
            await self._discard_index_entry(claims.token_id, reason="revoke_session")

        self._store_call(
            "invalidate_by_session_and_user",
            self.store.invalidate_by_session_and_user,
            session_id,
            user_id,
        )
        logger.info("session_revoked", user_id=user_id, session_id=session_id)
        emit_audit(
            self.audit,
            AuditEvent(
                event_type=EVENT_TYPE_SESSION,
                action=ACTION_SESSION_INVALIDATE,
                resource="session",
                user_id=user_id,
                resource_id=session_id,
            ),
        )

    async def get_user_sessions(
        self, user_id: str, current_refresh_token: Optional[str] = None
    ) -> List[SessionView]:
        # Listing shows every row still marked valid; rows past expires_at stay
        # listed until cleanup_expired_sessions removes them.
        sessions = self._store_call(
            "get_sessions_by_user",
            self.store.get_sessions_by_user,
            user_id,
            valid_only=True,
        )
        current_session_id: Optional[str] = None
        if current_refresh_token:
            current = self._store_call(
                "get_session_by_refresh_token",
                self.store.get_session_by_refresh_token,
                current_refresh_token,
            )
            if current is not None and current.user_id == user_id:
                current_session_id = current.id
        return [
            SessionView.from_session(s, is_current=s.id == current_session_id)
            for s in sessions
        ]

    async def validate_access_token(self, token: str) -> TokenClaims:
        claims = self.codec.validate(token)
        if claims.kind != ACCESS_TOKEN:
            raise AuthenticationError("invalid token type")
        return claims

    async def get_current_session_id(self, refresh_token: str) -> str:
        session = self._store_call(
            "get_session_by_refresh_token",
            self.store.get_session_by_refresh_token,
            refresh_token,
        )
        if session is None:
            raise NotFoundError("session not found")
        return session.id

    async def cleanup_expired_sessions(self) -> int:
        removed = self._store_call("cleanup_expired", self.store.cleanup_expired)
        logger.info("expired_sessions_cleaned", removed=removed)
        return removed
