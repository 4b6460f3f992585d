"""Starlette WebSocket entry point of the real-time channel."""

import json
from typing import Any, Dict

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from crateflow.channel_protocol import error_event
from crateflow.managers.channel_service import ChannelService
from crateflow.utils import get_logger

logger = get_logger(__name__)


class WebSocketTransport:
    """ChannelTransport over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        """
        Initialize WebSocket transport.

        Args:
            websocket: Accepted WebSocket
        """
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        """Whether both sides of the socket are still connected."""
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: Dict[str, Any]) -> None:
        """Send one event as a JSON text frame."""
        await self.websocket.send_text(json.dumps(data, default=str))

    async def close(self, code: int = 1000) -> None:
        """Close the socket."""
        await self.websocket.close(code=code)


async def serve_connection(channel: ChannelService, websocket: WebSocket) -> None:
    """
    Run one channel connection until the client goes away.

    Args:
        channel: Channel service handling the messages
        websocket: Incoming WebSocket, not yet accepted
    """
    await websocket.accept()
    conn = await channel.open_connection(WebSocketTransport(websocket))

    try:
        while conn.is_open:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                channel.enqueue(conn, error_event("Invalid message format", "invalid_message"))
                continue
            await channel.handle_message(conn, data)
    except (WebSocketDisconnect, RuntimeError):
        # RuntimeError: receive on a socket the server already closed
        logger.debug("Channel client disconnected", extra={"connection_id": conn.connection_id})
    finally:
        await channel.close_connection(conn, "client disconnected")


async def channel_endpoint(websocket: WebSocket) -> None:
    """WebSocket route handler; the channel service is taken from app state."""
    runtime = websocket.app.state.runtime
    await serve_connection(runtime.channel, websocket)
