"""
Realtime channel collaborator and its WebSocket implementation.

Protocol spoken with the streaming service:
- connect to `<url>?token=<access token>`
- receive `{"type": "connection_established", "connection_id": ...}`
- send `{"type": "subscribe", "topic": ...}`
- receive `{"type": "subscription_confirmed", "topic": ...}`
- every later message is a change notification for the topic
"""

import asyncio
import json
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode

import websockets

from shared.errors import ChannelError
from shared.logging import get_logger

MessageHandler = Callable[[Dict[str, Any]], None]

CONTROL_MESSAGES = frozenset({
    "connection_established",
    "subscription_confirmed",
    "unsubscription_confirmed",
    "heartbeat",
    "pong",
})


class Channel(Protocol):
    """An open subscription to one topic."""
    topic: str

    async def close(self) -> None:
        ...

    async def wait_closed(self) -> None:
        """Return when closed by `close()`; raise ChannelError if the channel dropped."""
        ...


class ChannelClient(Protocol):
    async def subscribe(self, topic: str, on_message: MessageHandler) -> Channel:
        """Open a channel; raise ChannelError if it cannot be established."""
        ...


class WebSocketChannel:
    """One WebSocket connection subscribed to one topic."""

    def __init__(self, topic: str, websocket: Any, on_message: MessageHandler):
        self.topic = topic
        self.websocket = websocket
        self.on_message = on_message
        self.logger = get_logger("sync.realtime.channel")
        self._closing = False
        self._reader: Optional[asyncio.Task] = None

    def start(self):
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self):
        try:
            async for raw in self.websocket:
                try:
                    message = json.loads(raw)
                except ValueError:
                    self.logger.warning("Ignoring non-JSON message", topic=self.topic)
                    continue
                if not isinstance(message, dict) or message.get("type") in CONTROL_MESSAGES:
                    continue
                self.on_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            if not self._closing:
                raise ChannelError("Channel closed unexpectedly", details={"topic": self.topic, "error": str(e)})
            return

        if not self._closing:
            raise ChannelError("Channel closed by server", details={"topic": self.topic})

    async def close(self):
        if self._closing:
            return
        self._closing = True
        try:
            await self.websocket.send(json.dumps({"type": "unsubscribe", "topic": self.topic}))
        except websockets.exceptions.ConnectionClosed:
            pass
        await self.websocket.close()
        if self._reader is not None:
            try:
                await self._reader
            except ChannelError:
                pass

    async def wait_closed(self):
        if self._reader is None:
            return
        await asyncio.shield(self._reader)


class WebSocketChannelClient:
    """ChannelClient over the streaming service's WebSocket endpoint."""

    def __init__(
        self,
        url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        handshake_timeout: float = 5.0,
    ):
        self.url = url
        self.token_provider = token_provider
        self.handshake_timeout = handshake_timeout
        self.logger = get_logger("sync.realtime.ws")

    def _uri(self) -> str:
        token = self.token_provider() if self.token_provider else None
        if not token:
            return self.url
        return f"{self.url}?{urlencode({'token': token})}"

    async def subscribe(self, topic: str, on_message: MessageHandler) -> WebSocketChannel:
        websocket = None
        try:
            websocket = await asyncio.wait_for(websockets.connect(self._uri()), self.handshake_timeout)

            hello = json.loads(await asyncio.wait_for(websocket.recv(), self.handshake_timeout))
            if hello.get("type") != "connection_established":
                raise ChannelError("Unexpected handshake", details={"topic": topic, "message": hello})

            await websocket.send(json.dumps({"type": "subscribe", "topic": topic}))
            confirm = json.loads(await asyncio.wait_for(websocket.recv(), self.handshake_timeout))
            if confirm.get("type") != "subscription_confirmed":
                raise ChannelError("Subscription rejected", details={"topic": topic, "message": confirm})

        except ChannelError:
            if websocket is not None:
                await websocket.close()
            raise
        except (OSError, asyncio.TimeoutError, ValueError, websockets.exceptions.WebSocketException) as e:
            if websocket is not None:
                await websocket.close()
            raise ChannelError("Channel connect failed", details={"topic": topic, "error": str(e)})

        self.logger.info("Channel subscribed", topic=topic, connection_id=hello.get("connection_id"))
        channel = WebSocketChannel(topic, websocket, on_message)
        channel.start()
        return channel
