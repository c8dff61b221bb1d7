# anidao/sessions.py
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from anidao.models import User
from anidao.telegram_auth import SESSION_TTL, session_expiry

logger = logging.getLogger(__name__)

@dataclass
class SessionRecord:
    token: str
    user_id: int
    user: dict  # public snapshot taken at login
    expires_at: datetime

    def remaining(self, now: Optional[datetime] = None):
        return self.expires_at - (now or datetime.now(timezone.utc))

class SessionManager:
    """
    Server-side sessions: the cookie carries only an opaque token.
    Sessions last 3 days from login with a hard cutoff (no sliding renewal).
    Expired sessions are swept at most once per ``purge_interval`` when a new
    one is created, so abandoned tokens do not accumulate.
    """

    max_age = int(SESSION_TTL.total_seconds())
    purge_interval = timedelta(minutes=1)

    def __init__(self):
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self._last_purge: Optional[datetime] = None

    def create(self, user: User, now: Optional[datetime] = None) -> SessionRecord:
        now = now or datetime.now(timezone.utc)
        if self._last_purge is None or now - self._last_purge >= self.purge_interval:
            self.purge_expired(now)
        expires = session_expiry(now)
        snapshot = user.public_dict()
        snapshot["session_expiry"] = expires.isoformat()
        rec = SessionRecord(secrets.token_urlsafe(32), user.id, snapshot, expires)
        with self._lock:
            self._sessions[rec.token] = rec
        logger.info("Created session for user id=%s (expires %s)", user.id, expires.isoformat())
        return rec

    def get(self, token: Optional[str], now: Optional[datetime] = None) -> Optional[SessionRecord]:
        """Return the live session for token; an expired one is destroyed and None returned."""
        if not token:
            return None
        now = now or datetime.now(timezone.utc)
        with self._lock:
            rec = self._sessions.get(token)
            if rec is None:
                return None
            if now > rec.expires_at:
                self._sessions.pop(token, None)
                logger.info("Session for user id=%s expired", rec.user_id)
                return None
            return rec

    def destroy(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            self._last_purge = now
            dead = [t for t, r in self._sessions.items() if now > r.expires_at]
            for t in dead:
                del self._sessions[t]
        if dead:
            logger.debug("Purged %d expired sessions", len(dead))
        return len(dead)

    def __len__(self):
        return len(self._sessions)
