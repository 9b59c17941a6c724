import websockets
from pydantic import ValidationError
from typing import AsyncIterator

from logging_config import get_logger
from schemas.messages import parse_server_message

logger = get_logger(__name__)


class SignalingChannel:
    """WebSocket connection to the hub's ``/ws`` endpoint."""

    def __init__(self, url: str):
        self.url = url
        self._websocket = None

    async def connect(self):
        self._websocket = await websockets.connect(self.url)
        logger.info(f"Connected to signaling hub at {self.url}")

    async def send(self, message):
        if self._websocket is None:
            raise RuntimeError("Signaling channel is not connected")
        await self._websocket.send(message.model_dump_json(by_alias=True))
        logger.debug(f"Sent {message.type}")

    async def messages(self) -> AsyncIterator:
        """Yield validated server messages until the connection closes."""
        if self._websocket is None:
            raise RuntimeError("Signaling channel is not connected")
        try:
            async for raw in self._websocket:
                try:
                    yield parse_server_message(raw)
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed message from hub: {e.errors()[:1]}")
        except websockets.ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")

    async def close(self):
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None
            logger.info("Signaling channel closed")
