"""
Client sessions.

A session keeps the latest enriched context for one client plus a bounded
history of context updates and executed actions.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple

from toolgate.errors import SessionNotFoundError
from toolgate.models import HistoryEntry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60


class Session:
    def __init__(self, session_id: str, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.id = session_id
        self.history_limit = history_limit
        self.created_at = time.time()
        self.last_activity = self.created_at
        # Held by the gateway around every read-modify-write of the context.
        self.lock = asyncio.Lock()
        self._context: Optional[Dict[str, Any]] = None
        self._history: List[HistoryEntry] = []

    @property
    def context(self) -> Optional[Dict[str, Any]]:
        """A deep copy of the current context, or None before the first update."""
        return copy.deepcopy(self._context)

    @property
    def history(self) -> List[HistoryEntry]:
        return list(self._history)

    def update_context(self, context: Dict[str, Any]) -> None:
        self._context = copy.deepcopy(context)
        self._append(
            HistoryEntry(
                kind="context_update",
                data={
                    "summary": context.get("summary", ""),
                    "selected_element_count": len(context.get("selected_elements") or []),
                },
            )
        )

    def record_action(self, action: str, parameters: Dict[str, Any], result: Any) -> None:
        message = getattr(result, "message", None)
        if message is None and isinstance(result, dict):
            message = result.get("message")
        self._append(
            HistoryEntry(
                kind="action_execution",
                data={
                    "action": action,
                    "parameters": copy.deepcopy(parameters),
                    "result_summary": message or "Action executed",
                },
            )
        )

    def _append(self, entry: HistoryEntry) -> None:
        self.last_activity = time.time()
        self._history.append(entry)
        if len(self._history) > self.history_limit:
            del self._history[: len(self._history) - self.history_limit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "history_length": len(self._history),
            "has_context": self._context is not None,
        }


class SessionManager:
    """Registry of sessions keyed by id."""

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.history_limit = history_limit
        self._sessions: Dict[str, Session] = {}

    def _new_id(self) -> str:
        while True:
            session_id = f"session_{secrets.token_hex(8)}"
            if session_id not in self._sessions:
                return session_id

    def create_session(self) -> Session:
        session = Session(self._new_id(), self.history_limit)
        self._sessions[session.id] = session
        logger.info(f"Created new session: {session.id}")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_or_create_session(self, session_id: str) -> Tuple[Session, bool]:
        session = self._sessions.get(session_id)
        if session is not None:
            logger.debug(f"Retrieved existing session: {session_id}")
            return session, False

        session = Session(session_id, self.history_limit)
        self._sessions[session_id] = session
        logger.info(f"Created new session with ID: {session_id}")
        return session, True

    def delete_session(self, session_id: str) -> bool:
        logger.info(f"Deleting session: {session_id}")
        return self._sessions.pop(session_id, None) is not None

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [self._sessions[session_id].to_dict() for session_id in sorted(self._sessions)]

    def cleanup_expired(self, ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS) -> int:
        now = time.time()
        expired = [sid for sid, session in self._sessions.items() if now - session.last_activity > ttl_seconds]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
