"""
Shared utilities for toolgate.

- Request context (correlation IDs, server tracking)
- Logging setup
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(context)s%(name)s: %(message)s"

# =============================================================================
# Request Context (Correlation IDs)
# =============================================================================

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_server_id: ContextVar[Optional[str]] = ContextVar("server_id", default=None)


def generate_request_id() -> str:
    """Generate a short unique request ID."""
    return uuid.uuid4().hex[:8]


def set_request_context(request_id: Optional[str] = None, server_id: Optional[str] = None) -> None:
    """
    Set the current request context.

    Args:
        request_id: Unique request identifier
        server_id: Tool server the request targets (if any)
    """
    if request_id:
        _request_id.set(request_id)
    if server_id:
        _server_id.set(server_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def get_server_id() -> Optional[str]:
    return _server_id.get()


def clear_request_context() -> None:
    _request_id.set(None)
    _server_id.set(None)


class ContextFilter(logging.Filter):
    """Adds a ``context`` attribute (``[request/server] ``) to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = [part for part in (get_request_id(), get_server_id()) if part]
        record.context = f"[{'/'.join(parts)}] " if parts else ""
        return True


def configure_logging(level: str = "info") -> None:
    """
    Configure root logging with the request context filter.

    Call once at startup. Safe to call again; handlers are reused.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not root.handlers:
        root.addHandler(logging.StreamHandler())

    context_filter = ContextFilter()
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in root.handlers:
        if not any(isinstance(f, ContextFilter) for f in handler.filters):
            handler.addFilter(context_filter)
        handler.setFormatter(formatter)
