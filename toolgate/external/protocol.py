"""
Wire format for stdio tool servers.

Every unit on the wire is one JSON object terminated by a newline. Outbound
envelopes carry an ``id`` plus ``method`` or ``type``; inbound replies carry
the matching ``id`` plus either a result or ``{"error": {"message": ...}}``.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from toolgate.errors import ProtocolError

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 4 * 1024 * 1024

# Keys that belong to the envelope rather than to the payload.
_ENVELOPE_KEYS = {"id", "requestId", "jsonrpc", "status", "error"}


def new_operation_id() -> str:
    return uuid.uuid4().hex


def encode_message(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def decode_line(line: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"Invalid JSON line: {exc}", {"line": line[:200].decode("utf-8", "replace")}) from exc
    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object", {"line": line[:200].decode("utf-8", "replace")})
    return message


def is_ready_signal(message: Dict[str, Any]) -> bool:
    return message.get("type") == "ready" and "id" not in message


class LineDecoder:
    """Incremental newline splitter for a byte stream."""

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES):
        self._buffer = b""
        self._max_line_bytes = max_line_bytes

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[bytes]:
        self._buffer += chunk
        lines: List[bytes] = []
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            if line.strip():
                lines.append(line)
        if len(self._buffer) > self._max_line_bytes:
            logger.warning(f"Dropping {len(self._buffer)} buffered bytes without a line terminator")
            self._buffer = b""
        return lines


@dataclass(slots=True)
class Reply:
    id: str
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_reply(message: Dict[str, Any]) -> Optional[Reply]:
    """Interpret an inbound object as a reply; None when it carries no id."""
    reply_id = message.get("id", message.get("requestId"))
    if reply_id is None:
        return None
    reply_id = str(reply_id)

    error = message.get("error")
    if error is not None or message.get("status") == "error":
        if isinstance(error, dict):
            text = str(error.get("message") or "Unknown error")
        else:
            text = str(error or "Unknown error")
        return Reply(id=reply_id, error=text)

    if "result" in message:
        return Reply(id=reply_id, result=message["result"])
    return Reply(id=reply_id, result={k: v for k, v in message.items() if k not in _ENVELOPE_KEYS})


def extract_json_objects(text: str, max_pending_chars: Optional[int] = None) -> Tuple[List[Dict[str, Any]], str]:
    """
    Pull every complete top-level ``{...}`` object out of free-form text.

    This is boundary matching, not a parser: braces are balanced while
    skipping over string literals, and each balanced span that decodes as a
    JSON object is returned in arrival order. Text between objects is
    dropped. A ``{`` that cannot begin an object, or whose balanced span
    fails to decode, is treated as noise and scanning resumes right after
    it. An unterminated object at the end is returned as the remainder so
    the next chunk can complete it, unless it is longer than
    ``max_pending_chars``, in which case its opening brace is dropped too.
    """
    objects: List[Dict[str, Any]] = []
    pos = 0

    while True:
        start = text.find("{", pos)
        if start == -1:
            _log_noise(text[pos:])
            return objects, ""
        _log_noise(text[pos:start])

        end = _match_brace(text, start)
        if end == -1:
            too_long = max_pending_chars is not None and len(text) - start > max_pending_chars
            if _opens_object(text, start) and not too_long and not _envelope_follows(text, start):
                return objects, text[start:]
            pos = start + 1
            continue

        candidate = text[start:end + 1]
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            logger.debug(f"Discarding stray brace before {len(candidate) - 1} chars")
            pos = start + 1
            continue
        if isinstance(value, dict):
            objects.append(value)
        pos = end + 1


def _opens_object(text: str, start: int) -> bool:
    # a JSON object continues with a key or closes immediately
    rest = text[start + 1:].lstrip()
    return not rest or rest[0] in "\"}"


def _envelope_follows(text: str, start: int) -> bool:
    """True when a complete JSON-RPC envelope starts after an unterminated brace."""
    index = text.find("{", start + 1)
    while index != -1:
        end = _match_brace(text, index)
        if end == -1:
            return False
        try:
            value = json.loads(text[index:end + 1])
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict) and "jsonrpc" in value:
            return True
        index = text.find("{", index + 1)
    return False


def _match_brace(text: str, start: int) -> int:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return -1


def _log_noise(text: str) -> None:
    text = text.strip()
    if text:
        logger.debug(f"Diagnostic output: {text[:200]}")
