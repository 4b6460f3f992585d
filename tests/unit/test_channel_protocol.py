"""Tests for channel message parsing and event building."""

from datetime import datetime

import pytest

from crateflow.channel_protocol import (
    AuthenticateMessage,
    EventType,
    ExecuteCommandMessage,
    PingMessage,
    SubscribeLogsMessage,
    build_event,
    error_event,
    parse_message,
)
from crateflow.utils.exceptions import InvalidMessageError


class TestParseMessage:
    """Test client message validation."""

    def test_known_messages(self):
        """Test that each message type parses into its model."""
        assert isinstance(parse_message({"type": "ping"}), PingMessage)

        auth = parse_message({"type": "authenticate", "token": "abc"})
        assert isinstance(auth, AuthenticateMessage)
        assert auth.token == "abc"

        sub = parse_message({"type": "subscribe_logs", "container_id": " c1 "})
        assert isinstance(sub, SubscribeLogsMessage)
        assert sub.container_id == "c1"

        cmd = parse_message(
            {"type": "execute_command", "container_id": "c1", "command": "ls", "extra": 1}
        )
        assert isinstance(cmd, ExecuteCommandMessage)
        assert cmd.working_dir is None

    def test_authenticate_without_token(self):
        """Test that a missing token parses as empty and is rejected later."""
        assert parse_message({"type": "authenticate"}).token == ""

    @pytest.mark.parametrize(
        "data",
        [
            None,
            [],
            "ping",
            {},
            {"type": "shutdown"},
            {"type": "subscribe_logs"},
            {"type": "subscribe_logs", "container_id": "   "},
            {"type": "execute_command", "container_id": "c1", "command": ""},
        ],
    )
    def test_invalid_messages(self, data):
        """Test that malformed messages raise InvalidMessageError."""
        with pytest.raises(InvalidMessageError) as exc_info:
            parse_message(data)

        assert exc_info.value.code == "invalid_message"


class TestEvents:
    """Test outgoing event construction."""

    def test_build_event(self):
        """Test that events carry type, container and a timestamp."""
        event = build_event(EventType.COMMAND_COMPLETED, "c1", exit_code=0)

        assert event["type"] == "command_completed"
        assert event["container_id"] == "c1"
        assert event["exit_code"] == 0
        datetime.fromisoformat(event["timestamp"])

    def test_build_event_without_container(self):
        """Test that container_id is omitted when not given."""
        assert "container_id" not in build_event(EventType.PONG)

    def test_error_event(self):
        """Test error event shape."""
        event = error_event("Access denied", "unauthorized", "c1")

        assert event["type"] == "error"
        assert event["code"] == "unauthorized"
        assert event["message"] == "Access denied"
        assert event["container_id"] == "c1"
