from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Optional, Protocol

from tokenward.logging import get_logger, sanitize_error_message
from tokenward.storage.models import utcnow

logger = get_logger(__name__)

EVENT_TYPE_AUTH = "authentication"
EVENT_TYPE_SESSION = "session"

ACTION_LOGIN = "login"
ACTION_LOGIN_FAILED = "login_failed"
ACTION_LOGOUT = "logout"
ACTION_REGISTER = "register"
ACTION_REFRESH_TOKEN = "refresh_token"
ACTION_SESSION_CREATE = "session_create"
ACTION_SESSION_INVALIDATE = "session_invalidate"


@dataclass
class AuditEvent:
    event_type: str
    action: str
    resource: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: str = ""
    user_agent: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def failed(self, error_message: str) -> "AuditEvent":
        return replace(self, success=False, error_message=error_message)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(Protocol):
    def log(self, event: AuditEvent) -> None:
        ...


class StructlogAuditSink:
    """Write audit events as ``audit_event`` structlog records."""

    def __init__(self) -> None:
        self.logger = get_logger("tokenward.audit")

    def log(self, event: AuditEvent) -> None:
        record = event.to_dict()
        # "timestamp" belongs to the log processor chain
        record["occurred_at"] = record.pop("timestamp")
        self.logger.info("audit_event", **record)


def emit_audit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Deliver ``event`` to ``sink`` without ever failing the caller."""
    if sink is None:
        return
    if event.error_message:
        event = replace(event, error_message=sanitize_error_message(event.error_message))
    try:
        sink.log(event)
    except Exception as exc:
        logger.warning(
            "audit_sink_failed",
            action=event.action,
            error_type=type(exc).__name__,
            error=str(exc),
        )
