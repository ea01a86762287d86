from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local refresh token index used when Redis is unavailable.

    Only valid for a single process; entries vanish on restart, which fails
    closed because refreshes then find no index entry.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def put_refresh_token(
        self, token_id: str, user_id: str, ttl_seconds: float
    ) -> None:
        expires_at = self._clock() + max(1.0, float(ttl_seconds))
        with self._lock:
            self._entries[token_id] = (user_id, expires_at)

    async def get_refresh_token_user(self, token_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(token_id)
            if entry is None:
                return None
            user_id, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(token_id, None)
                return None
            return user_id

    async def delete_refresh_token(self, token_id: str) -> None:
        with self._lock:
            self._entries.pop(token_id, None)

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for _, expires_at in self._entries.values() if expires_at > now)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
