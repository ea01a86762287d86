from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.errors import MalformedTokenError, TokenExpiredError

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
TOKEN_KINDS = (ACCESS_TOKEN, REFRESH_TOKEN)

_BEARER_PREFIX = "Bearer "


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    kind: str
    token_id: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    issuer: str
    email: str = ""
    full_name: str = ""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "user_id": self.user_id,
            "type": self.kind,
            "sub": self.user_id,
            "iat": int(self.issued_at.timestamp()),
            "nbf": int(self.not_before.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "iss": self.issuer,
            "jti": self.token_id,
        }
        if self.kind == ACCESS_TOKEN:
            payload["email"] = self.email
            payload["full_name"] = self.full_name
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        """Build claims from a decoded payload.

        Raises ``MalformedTokenError`` when a required claim is missing or has
        the wrong type.
        """
        try:
            user_id = payload["user_id"]
            kind = payload["type"]
            token_id = payload["jti"]
            exp = int(payload["exp"])
            iat = int(payload.get("iat", exp))
            nbf = int(payload.get("nbf", iat))
            issuer = payload["iss"]
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("invalid token") from exc
        if not isinstance(user_id, str) or not user_id:
            raise MalformedTokenError("invalid token")
        if not isinstance(token_id, str) or not token_id:
            raise MalformedTokenError("invalid token")
        if kind not in TOKEN_KINDS:
            raise MalformedTokenError("invalid token")
        sub = payload.get("sub")
        if sub is not None and sub != user_id:
            raise MalformedTokenError("invalid token")
        return cls(
            user_id=user_id,
            kind=kind,
            token_id=token_id,
            issued_at=_from_timestamp(iat),
            not_before=_from_timestamp(nbf),
            expires_at=_from_timestamp(exp),
            issuer=issuer,
            email=payload.get("email") or "",
            full_name=payload.get("full_name") or "",
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims


class TokenCodec:
    """Issue and validate HS256-signed access and refresh tokens.

    Validation covers the header algorithm, signature, issuer and time
    bounds. Revocation is not checked here.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            leeway_seconds=settings.token_leeway_seconds,
        )

    def issue_access_token(
        self, user_id: str, email: str, full_name: str
    ) -> IssuedToken:
        return self._issue(
            user_id, ACCESS_TOKEN, self.access_ttl_seconds, email=email, full_name=full_name
        )

    def issue_refresh_token(self, user_id: str) -> IssuedToken:
        return self._issue(user_id, REFRESH_TOKEN, self.refresh_ttl_seconds)

    def _issue(
        self,
        user_id: str,
        kind: str,
        ttl_seconds: int,
        *,
        email: str = "",
        full_name: str = "",
    ) -> IssuedToken:
        now = int(self._clock())
        claims = TokenClaims(
            user_id=user_id,
            kind=kind,
            token_id=str(uuid.uuid4()),
            issued_at=_from_timestamp(now),
            not_before=_from_timestamp(now),
            expires_at=_from_timestamp(now + ttl_seconds),
            issuer=self.issuer,
            email=email,
            full_name=full_name,
        )
        return IssuedToken(token=self._encode_jwt(claims.to_payload()), claims=claims)

    def validate(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(token)
        claims = TokenClaims.from_payload(payload)
        now = self._clock()
        if claims.expires_at.timestamp() <= now - self.leeway_seconds:
            raise TokenExpiredError("token has expired")
        if claims.not_before.timestamp() > now + self.leeway_seconds:
            raise TokenExpiredError("token is not yet valid")
        return claims

    @staticmethod
    def extract_from_auth_header(header: Optional[str]) -> Optional[str]:
        """Return the token from an ``Authorization: Bearer <token>`` value."""
        if not header or not header.startswith(_BEARER_PREFIX):
            return None
        token = header[len(_BEARER_PREFIX):].strip()
        return token or None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise MalformedTokenError("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("invalid token")

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError("invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedTokenError("invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise MalformedTokenError("invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("invalid token")
        if not isinstance(payload, dict):
            raise MalformedTokenError("invalid token")
        if payload.get("iss") != self.issuer:
            raise MalformedTokenError("invalid token")
        return payload
