"""Message and event shapes of the real-time channel."""

from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from crateflow.models.base import utcnow
from crateflow.utils.exceptions import InvalidMessageError


class EventType(str, Enum):
    """Types of events sent to channel clients."""

    WELCOME = "welcome"
    AUTHENTICATED = "authenticated"
    LOG_SUBSCRIPTION_SUCCESS = "log_subscription_success"
    LOG_UNSUBSCRIPTION_SUCCESS = "log_unsubscription_success"
    LOG_ENTRY = "log_entry"
    COMMAND_STARTED = "command_started"
    COMMAND_OUTPUT = "command_output"
    COMMAND_COMPLETED = "command_completed"
    COMMAND_ERROR = "command_error"
    CONTAINER_STATUS = "container_status"
    CONTAINER_STATUS_CHANGE = "container_status_change"
    PONG = "pong"
    ERROR = "error"


class _Message(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class AuthenticateMessage(_Message):
    """Present a bearer token."""

    type: Literal["authenticate"]
    token: str = ""


class SubscribeLogsMessage(_Message):
    """Start receiving a container's log entries."""

    type: Literal["subscribe_logs"]
    container_id: str = Field(min_length=1)


class UnsubscribeLogsMessage(_Message):
    """Stop receiving a container's log entries."""

    type: Literal["unsubscribe_logs"]
    container_id: str = Field(min_length=1)


class ExecuteCommandMessage(_Message):
    """Run a shell command inside a container."""

    type: Literal["execute_command"]
    container_id: str = Field(min_length=1)
    command: str = Field(min_length=1)
    working_dir: Optional[str] = None


class GetContainerStatusMessage(_Message):
    """Query registry status next to a live engine lookup."""

    type: Literal["get_container_status"]
    container_id: str = Field(min_length=1)


class PingMessage(_Message):
    """Keepalive."""

    type: Literal["ping"]


ClientMessage = Annotated[
    Union[
        AuthenticateMessage,
        SubscribeLogsMessage,
        UnsubscribeLogsMessage,
        ExecuteCommandMessage,
        GetContainerStatusMessage,
        PingMessage,
    ],
    Field(discriminator="type"),
]

MESSAGE_TYPES = (
    "authenticate",
    "subscribe_logs",
    "unsubscribe_logs",
    "execute_command",
    "get_container_status",
    "ping",
)

_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_message(data: Any) -> ClientMessage:
    """
    Validate a decoded client message.

    Args:
        data: Decoded JSON value

    Returns:
        Typed message

    Raises:
        InvalidMessageError: If the message is not an object, has an unknown
            type, or is missing required fields
    """
    if not isinstance(data, dict):
        raise InvalidMessageError("Message must be a JSON object")

    message_type = data.get("type")
    if message_type not in MESSAGE_TYPES:
        raise InvalidMessageError(f"Unknown message type: {message_type}")

    try:
        return _message_adapter.validate_python(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) for err in e.errors())
        raise InvalidMessageError(f"Invalid {message_type} message: {fields}") from e


def build_event(
    event_type: EventType, container_id: str | None = None, **payload: Any
) -> Dict[str, Any]:
    """
    Build an outgoing event.

    Args:
        event_type: Event type
        container_id: Container the event concerns, if any
        **payload: Event-specific fields

    Returns:
        JSON-serializable event dictionary
    """
    event: Dict[str, Any] = {"type": event_type.value}
    if container_id is not None:
        event["container_id"] = container_id
    event.update(payload)
    event["timestamp"] = utcnow().isoformat()
    return event


def error_event(message: str, code: str, container_id: str | None = None) -> Dict[str, Any]:
    """Build an error event carrying a stable code."""
    return build_event(EventType.ERROR, container_id, message=message, code=code)
