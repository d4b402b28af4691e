"""Operator sessions and their quota-bounded transient storage."""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request, status

from rowbridge.core.config import settings
from rowbridge.core.errors import (
    APIException,
    ErrorCategory,
    ErrorCode,
    StorageQuotaExceeded,
)

logger = logging.getLogger(__name__)


class SessionManager:
    """Manages operator sessions.

    Each session owns a small key/value ``storage`` area bounded by
    ``quota_bytes``, measured as the UTF-8 size of keys plus values. It plays
    the part a browser's session storage plays for a single-page client: the
    uploaded file and the mapping live there between requests.
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        self._sessions: dict[str, dict] = {}
        self.quota_bytes = quota_bytes or settings.session_storage_quota_bytes

    def create_session(self) -> str:
        """Create a new session and return session ID."""
        session_id = secrets.token_urlsafe(32)
        now = datetime.now(timezone.utc)

        self._sessions[session_id] = {
            "session_id": session_id,
            "created_at": now,
            "last_activity": now,
            "storage": {},
        }

        logger.info(f"Created session {session_id[:8]}...")
        return session_id

    def get_session(self, session_id: str) -> Optional[dict]:
        """Get session data if valid."""
        session = self._sessions.get(session_id)
        if not session:
            return None

        now = datetime.now(timezone.utc)
        idle_timeout = timedelta(seconds=settings.session_idle_timeout)
        if now - session["last_activity"] > idle_timeout:
            logger.info(f"Session {session_id[:8]}... expired (idle timeout)")
            del self._sessions[session_id]
            return None

        max_age = timedelta(seconds=settings.session_max_age)
        if now - session["created_at"] > max_age:
            logger.info(f"Session {session_id[:8]}... expired (max age)")
            del self._sessions[session_id]
            return None

        session["last_activity"] = now
        return session

    def delete_session(self, session_id: str) -> None:
        """Delete a session."""
        if session_id in self._sessions:
            logger.info(f"Deleted session {session_id[:8]}...")
            del self._sessions[session_id]

    # Storage

    @staticmethod
    def _entry_size(key: str, value: str) -> int:
        return len(key.encode("utf-8")) + len(value.encode("utf-8"))

    def storage_used(self, session: dict) -> int:
        return sum(self._entry_size(k, v) for k, v in session["storage"].items())

    def storage_set(self, session: dict, key: str, value: str) -> None:
        """Write ``value`` under ``key``; raises StorageQuotaExceeded when it does not fit."""
        storage = session["storage"]
        previous = storage.get(key)
        used = self.storage_used(session)
        if previous is not None:
            used -= self._entry_size(key, previous)
        needed = self._entry_size(key, value)
        available = self.quota_bytes - used
        if needed > available:
            raise StorageQuotaExceeded(needed=needed, available=available)
        storage[key] = value

    def storage_get(self, session: dict, key: str) -> Optional[str]:
        return session["storage"].get(key)

    def storage_remove(self, session: dict, key: str) -> None:
        session["storage"].pop(key, None)


session_manager = SessionManager()


def get_session(request: Request) -> dict:
    """Get current session from request."""
    session_id = request.session.get("session_id")
    if not session_id:
        raise APIException(
            code=ErrorCode.SESSION_REQUIRED,
            message="No upload session. Upload a file first.",
            category=ErrorCategory.AUTHENTICATION,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    session = session_manager.get_session(session_id)
    if not session:
        raise APIException(
            code=ErrorCode.SESSION_EXPIRED,
            message="Session expired or invalid",
            category=ErrorCategory.AUTHENTICATION,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    return session


def get_or_create_session(request: Request) -> dict:
    """Return the current session, starting a new one when there is none."""
    session_id = request.session.get("session_id")
    session = session_manager.get_session(session_id) if session_id else None
    if session is None:
        session_id = session_manager.create_session()
        request.session["session_id"] = session_id
        session = session_manager.get_session(session_id)
    return session
