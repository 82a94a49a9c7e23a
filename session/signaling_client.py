import asyncio
from typing import AsyncIterator, Optional
from urllib.parse import urlparse, urlunparse

import websockets
from pydantic import ValidationError

from constants import CONNECT_TIMEOUT_SECONDS, SIGNALING_PATH
from errors import RelayConnectError
from schemas.signaling import SignalingModel, Welcome, server_event_adapter
from logging_config import get_logger

logger = get_logger(__name__)


def websocket_url(base_url: str) -> str:
    """http(s)://host:port -> ws(s)://host:port/ws"""
    parsed = urlparse(base_url)
    scheme = {"http": "ws", "https": "wss"}.get(parsed.scheme, parsed.scheme)
    path = parsed.path.rstrip("/")
    if not path.endswith(SIGNALING_PATH):
        path = path + SIGNALING_PATH
    return urlunparse((scheme, parsed.netloc, path, "", "", ""))


class SignalingConnection:
    """A participant's WebSocket to the relay."""

    def __init__(self, websocket, url: str):
        self.websocket = websocket
        self.url = url
        self.member_id: Optional[str] = None
        self._closed = False

    @classmethod
    async def open(cls, base_url: str, timeout: float = CONNECT_TIMEOUT_SECONDS) -> "SignalingConnection":
        url = websocket_url(base_url)
        logger.info(f"Opening signaling connection to {url}")
        try:
            websocket = await asyncio.wait_for(websockets.connect(url), timeout)
        except asyncio.TimeoutError as e:
            raise RelayConnectError(url, TimeoutError(f"timed out after {timeout}s")) from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise RelayConnectError(url, e) from e
        return cls(websocket, url)

    async def send(self, message: SignalingModel):
        logger.debug(f"Sending {message.type} to {self.url}")
        await self.websocket.send(message.to_json())

    async def events(self) -> AsyncIterator[SignalingModel]:
        """Typed inbound events until the connection closes. Malformed frames are skipped."""
        try:
            async for raw in self.websocket:
                try:
                    event = server_event_adapter.validate_json(raw)
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed signaling frame: {e.errors()[:1]}")
                    continue
                if isinstance(event, Welcome):
                    self.member_id = event.member_id
                yield event
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(f"Signaling connection to {self.url} lost: {e}")

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self.websocket.close()
        logger.info(f"Closed signaling connection to {self.url}")
