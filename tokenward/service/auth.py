from __future__ import annotations

from typing import Optional, Protocol

from tokenward.logging import get_logger
from tokenward.service.audit import (
    ACTION_LOGIN,
    ACTION_LOGIN_FAILED,
    ACTION_LOGOUT,
    ACTION_REGISTER,
    EVENT_TYPE_AUTH,
    AuditEvent,
    AuditSink,
    emit_audit,
)
from tokenward.service.errors import (
    AuthenticationError,
    ConflictError,
    InternalError,
    ServiceError,
    ValidationError,
)
from tokenward.service.passwords import PasswordHasher
from tokenward.service.sessions import AuthTokens, SessionService
from tokenward.service.tokens import TokenClaims, TokenCodec
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

_INVALID_CREDENTIALS = "invalid email or password"


class AuthStore(Protocol):
    def create_user(
        self, email: str, full_name: str = "", *, is_active: bool = True
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Credential checks layered over ``SessionService``.

    Every outcome of register, login and logout is written to the audit sink.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionService,
        *,
        hasher: Optional[PasswordHasher] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.hasher = hasher or PasswordHasher()
        self.audit = audit
        self.logger = logger

    def _auth_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            event_type=EVENT_TYPE_AUTH,
            action=action,
            resource="user",
            user_id=user_id,
            resource_id=user_id,
            ip_address=ip_address or "",
            user_agent=user_agent,
        )
        emit_audit(self.audit, event.failed(error) if error else event)

    def register(
        self,
        email: str,
        password: str,
        full_name: str = "",
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

        try:
            user = self.store.create_user(normalized, (full_name or "").strip())
        except ConstraintViolation as exc:
            self._auth_event(
                ACTION_REGISTER,
                ip_address=ip_address,
                user_agent=user_agent,
                error="email already exists",
            )
            raise ConflictError("email already exists", detail=exc.detail) from exc
        except Exception as exc:
            self.logger.error(
                "user_create_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise InternalError("failed to create user") from exc

        password_hash, algo = self.hasher.hash(password)
        try:
            self.store.save_password(user.id, password_hash, algo)
        except Exception as exc:
            self.logger.error(
                "password_save_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("failed to create user") from exc

        self.logger.info("user_registered", user_id=user.id)
        self._auth_event(
            ACTION_REGISTER,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != self.hasher.algo:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self.hasher.verify(stored_hash, password)

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthTokens:
        normalized = normalize_email(email)
        if not normalized or not password:
            raise ValidationError("email and password are required")

        try:
            user = self.store.get_user_by_email(normalized)
            verified = bool(user) and self.verify_password(user.id, password)
        except Exception as exc:
            self.logger.error(
                "login_lookup_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise InternalError("login unavailable") from exc

        if not verified or not user.is_active:
            self._auth_event(
                ACTION_LOGIN_FAILED,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
                error=_INVALID_CREDENTIALS,
            )
            raise AuthenticationError(_INVALID_CREDENTIALS)

        try:
            tokens = await self.sessions.create_session(user, user_agent, ip_address)
        except ServiceError as exc:
            self._auth_event(
                ACTION_LOGIN_FAILED,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                error=exc.message,
            )
            raise
        self._auth_event(
            ACTION_LOGIN, user_id=user.id, ip_address=ip_address, user_agent=user_agent
        )
        return tokens

    async def logout(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        try:
            claims = self.sessions.codec.validate(refresh_token)
        except AuthenticationError as exc:
            self._auth_event(
                ACTION_LOGOUT,
                ip_address=ip_address,
                user_agent=user_agent,
                error=exc.message,
            )
            raise
        try:
            await self.sessions.invalidate_session(refresh_token)
        except ServiceError as exc:
            self._auth_event(
                ACTION_LOGOUT,
                user_id=claims.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                error=exc.message,
            )
            raise
        self._auth_event(
            ACTION_LOGOUT,
            user_id=claims.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def authenticate(self, authorization_header: Optional[str]) -> TokenClaims:
        token = TokenCodec.extract_from_auth_header(authorization_header)
        if token is None:
            raise AuthenticationError("missing bearer token")
        return await self.sessions.validate_access_token(token)
