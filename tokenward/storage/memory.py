from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.storage.common import (
    ensure_utc,
    is_cleanup_candidate,
    normalize_ip_address,
)
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import Session, User, utcnow


class MemoryStore:
    """In-memory user directory and session store for tests and local development.

    State is kept in process and, when ``fs_root`` is given, snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users
    def create_user(
        self, email: str, full_name: str = "", *, is_active: bool = True
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                full_name=full_name,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions; callers always receive copies of the stored rows
    def create_refresh_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            if session.id in self.sessions or any(
                existing.refresh_token == session.refresh_token
                for existing in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already recorded", {"field": "refresh_token"}
                )
            stored = replace(
                session, ip_address=normalize_ip_address(session.ip_address)
            )
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            for s in self.sessions.values():
                if s.refresh_token == refresh_token:
                    return replace(s)
            return None

    def get_sessions_by_user(
        self, user_id: str, *, valid_only: bool = False
    ) -> List[Session]:
        with self._data_lock:
            # Reversed insertion order breaks created_at ties newest-first
            owned = [
                replace(s)
                for s in reversed(list(self.sessions.values()))
                if s.user_id == user_id and (s.is_valid or not valid_only)
            ]
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return owned

    def _owned_session(self, session_id: str, user_id: str) -> Optional[Session]:
        sess = self.sessions.get(session_id)
        if sess is None or sess.user_id != user_id:
            return None
        return sess

    def get_session_by_id_and_user(
        self, session_id: str, user_id: str
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self._owned_session(session_id, user_id)
            return replace(sess) if sess else None

    def _invalidate(self, sessions: List[Session]) -> int:
        changed = 0
        for sess in sessions:
            if sess.is_valid:
                sess.is_valid = False
                changed += 1
        if changed:
            self._persist_state()
        return changed

    def invalidate_by_refresh_token(self, refresh_token: str) -> int:
        with self._data_lock:
            return self._invalidate(
                [s for s in self.sessions.values() if s.refresh_token == refresh_token]
            )

    def invalidate_by_session_and_user(self, session_id: str, user_id: str) -> int:
        with self._data_lock:
            sess = self._owned_session(session_id, user_id)
            return self._invalidate([sess] if sess else [])

    def invalidate_all_by_user(self, user_id: str) -> int:
        with self._data_lock:
            return self._invalidate(
                [s for s in self.sessions.values() if s.user_id == user_id]
            )

    def count_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            return sum(
                1 for s in self.sessions.values() if is_cleanup_candidate(s, now)
            )

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if is_cleanup_candidate(s, now)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
        return len(stale)

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_utc(datetime.fromisoformat(raw)) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            full_name=data.get("full_name", ""),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            is_active=data.get("is_active", True),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "is_valid": session.is_valid,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            expires_at=self._deserialize_datetime(data.get("expires_at")),
            user_agent=data.get("user_agent"),
            ip_address=normalize_ip_address(data.get("ip_address")),
            is_valid=data.get("is_valid", True),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
