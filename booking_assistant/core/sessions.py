from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from booking_assistant.config.settings import SESSION_TTL_SECONDS


logger = logging.getLogger("booking.sessions")


class SessionRegistry:
    """Process-local map of conversation id to the caller's email and timezone.

    Tool calls often omit the invitee email or timezone; the values given when
    the conversation was started are used instead. Entries whose conversation
    never sent an end event expire ``ttl_seconds`` after they were started.
    """

    def __init__(self, ttl_seconds: float = SESSION_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def _purge_expired(self) -> None:
        # caller holds the lock
        now = time.monotonic()
        expired = [cid for cid, state in self._sessions.items() if state["expires_at"] <= now]
        for cid in expired:
            del self._sessions[cid]
        if expired:
            logger.info("Expired %d abandoned sessions", len(expired))

    def start(self, conversation_id: str, email: Optional[str] = None, timezone_name: Optional[str] = None) -> None:
        with self._lock:
            self._purge_expired()
            self._sessions[conversation_id] = {
                "email": email,
                "timezone": timezone_name,
                "started_at": datetime.now(timezone.utc).isoformat(),
                "expires_at": time.monotonic() + self.ttl_seconds,
            }
        logger.info("Session started: %s (%s)", conversation_id, email or "no email")

    def get(self, conversation_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not conversation_id:
            return None
        with self._lock:
            self._purge_expired()
            state = self._sessions.get(conversation_id)
            return dict(state) if state else None

    def end(self, conversation_id: Optional[str]) -> bool:
        if not conversation_id:
            return False
        with self._lock:
            removed = self._sessions.pop(conversation_id, None)
        if removed is not None:
            logger.info("Session ended: %s", conversation_id)
        return removed is not None

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._sessions)
