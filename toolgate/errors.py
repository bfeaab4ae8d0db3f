from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional


@dataclass
class GatewayError(Exception):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None

    status_code: ClassVar[int] = 500

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details or {}}

    def to_public_dict(self) -> Dict[str, Any]:
        # details stay server-side
        return {"success": False, "error": self.message, "code": self.code}


class ConfigNotFoundError(GatewayError):
    status_code = 404

    def __init__(self, server_id: str):
        super().__init__(
            code="config_not_found",
            message=f"Server configuration not found: {server_id}",
            details={"server_id": server_id},
        )


class ServerDisabledError(GatewayError):
    status_code = 409

    def __init__(self, server_id: str):
        super().__init__(
            code="server_disabled",
            message=f"Server is disabled: {server_id}",
            details={"server_id": server_id},
        )


class ConnectionFailedError(GatewayError):
    status_code = 502

    def __init__(self, server_id: str, reason: str):
        super().__init__(
            code="connection_failed",
            message=f"Could not reach server {server_id}",
            details={"server_id": server_id, "reason": reason},
        )


class RequestTimeoutError(GatewayError):
    status_code = 504

    def __init__(self, server_id: str, operation_id: str, timeout_ms: int):
        super().__init__(
            code="timeout",
            message=f"Request to {server_id} timed out after {timeout_ms}ms",
            details={"server_id": server_id, "operation_id": operation_id, "timeout_ms": timeout_ms},
        )


class ProtocolError(GatewayError):
    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="protocol_error", message=message, details=details)


class ProcessExitedError(GatewayError):
    status_code = 503

    def __init__(self, server_id: str, reason: str = "stopped"):
        super().__init__(
            code="process_exited",
            message=f"Process for server {server_id} {reason}",
            details={"server_id": server_id, "reason": reason},
        )


class UnknownToolError(GatewayError):
    status_code = 404

    def __init__(self, server_id: str, tool_name: str):
        super().__init__(
            code="unknown_tool",
            message=f"Unknown tool '{tool_name}' on server {server_id}",
            details={"server_id": server_id, "tool": tool_name},
        )


class UnknownActionError(GatewayError):
    status_code = 404

    def __init__(self, action: str):
        super().__init__(
            code="unknown_action",
            message=f'Action "{action}" is not implemented.',
            details={"action": action},
        )


class SessionNotFoundError(GatewayError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(
            code="session_not_found",
            message="Session not found",
            details={"session_id": session_id},
        )


class InvalidResourceError(GatewayError):
    status_code = 400

    def __init__(self, uri: str):
        super().__init__(
            code="invalid_resource",
            message=f"Invalid resource URI: {uri}",
            details={"uri": uri},
        )


class ValidationFailedError(GatewayError):
    status_code = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="validation_error", message=message, details=details)
