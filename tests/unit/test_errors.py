"""
Unit tests for toolgate/errors.py - gateway error classes.
"""

import pytest

from toolgate.errors import (
    ConfigNotFoundError,
    ConnectionFailedError,
    GatewayError,
    InvalidResourceError,
    ProcessExitedError,
    ProtocolError,
    RequestTimeoutError,
    ServerDisabledError,
    SessionNotFoundError,
    UnknownActionError,
    UnknownToolError,
    ValidationFailedError,
)


class TestGatewayError:
    """Tests for the base GatewayError class."""

    def test_create_error(self):
        """Test creating a basic GatewayError."""
        error = GatewayError(code="test_error", message="Test message")
        assert error.code == "test_error"
        assert error.message == "Test message"
        assert error.details is None
        assert str(error) == "Test message"

    def test_to_dict_without_details(self):
        """Test to_dict fills in empty details."""
        result = GatewayError(code="my_code", message="My message").to_dict()
        assert result == {"code": "my_code", "message": "My message", "details": {}}

    def test_public_dict_hides_details(self):
        """Test the client-facing shape leaves out internal details."""
        error = ConnectionFailedError("fs1", "spawn failed: /usr/bin/secret")
        assert error.to_public_dict() == {
            "success": False,
            "error": "Could not reach server fs1",
            "code": "connection_failed",
        }

    def test_is_exception(self):
        with pytest.raises(GatewayError):
            raise ProtocolError("bad frame")


class TestErrorSubclasses:
    """Tests for the concrete error kinds."""

    @pytest.mark.parametrize(
        "error,code,status",
        [
            (ConfigNotFoundError("x"), "config_not_found", 404),
            (ServerDisabledError("x"), "server_disabled", 409),
            (ConnectionFailedError("x", "refused"), "connection_failed", 502),
            (RequestTimeoutError("x", "op_1", 100), "timeout", 504),
            (ProtocolError("bad"), "protocol_error", 502),
            (ProcessExitedError("x"), "process_exited", 503),
            (UnknownToolError("x", "t"), "unknown_tool", 404),
            (UnknownActionError("a"), "unknown_action", 404),
            (SessionNotFoundError("s"), "session_not_found", 404),
            (InvalidResourceError("u"), "invalid_resource", 400),
            (ValidationFailedError("v"), "validation_error", 422),
        ],
    )
    def test_code_and_status(self, error, code, status):
        assert error.code == code
        assert error.status_code == status

    def test_timeout_details(self):
        error = RequestTimeoutError("fs1", "op_7", 250)
        assert error.message == "Request to fs1 timed out after 250ms"
        assert error.details == {"server_id": "fs1", "operation_id": "op_7", "timeout_ms": 250}

    def test_process_exited_reason(self):
        assert ProcessExitedError("fs1").message == "Process for server fs1 stopped"
        assert ProcessExitedError("fs1", "exited with code 1").details["reason"] == "exited with code 1"

    def test_unknown_action_message(self):
        assert UnknownActionError("explode").message == 'Action "explode" is not implemented.'
