"""
Unit tests for the WebSocket channel client against a local server.
"""

import asyncio
import json
import socket

import pytest
import websockets

from shared.errors import ChannelError
from client_sync.app.realtime.channel import WebSocketChannelClient


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class StreamingServer:
    """Minimal streaming endpoint speaking the subscribe protocol."""

    def __init__(self, confirm: bool = True):
        self.confirm = confirm
        self.subscribed = asyncio.Event()
        self.unsubscribed = asyncio.Event()
        self.connection = None
        self.topics = []

    async def handler(self, websocket, *args):
        self.connection = websocket
        await websocket.send(json.dumps({"type": "connection_established", "connection_id": "c1"}))
        async for raw in websocket:
            message = json.loads(raw)
            if message["type"] == "subscribe":
                self.topics.append(message["topic"])
                reply = "subscription_confirmed" if self.confirm else "error"
                await websocket.send(json.dumps({"type": reply, "topic": message["topic"]}))
                self.subscribed.set()
            elif message["type"] == "unsubscribe":
                self.unsubscribed.set()


class TestWebSocketChannelClient:
    """Test cases for WebSocketChannelClient."""

    @pytest.mark.asyncio
    async def test_subscribe_and_receive(self):
        server = StreamingServer()
        received = []
        async with websockets.serve(server.handler, "127.0.0.1", 0) as ws_server:
            port = ws_server.sockets[0].getsockname()[1]
            client = WebSocketChannelClient(f"ws://127.0.0.1:{port}/ws/stream", token_provider=lambda: "t1")

            channel = await client.subscribe("sync.changes.doc:acme", received.append)
            await server.connection.send(json.dumps({"type": "heartbeat"}))
            await server.connection.send(json.dumps({"type": "document_updated", "slug": "acme"}))
            for _ in range(100):
                if received:
                    break
                await asyncio.sleep(0.01)

            await channel.close()
            await channel.wait_closed()
            await asyncio.wait_for(server.unsubscribed.wait(), timeout=1.0)

        assert server.topics == ["sync.changes.doc:acme"]
        assert received == [{"type": "document_updated", "slug": "acme"}]

    @pytest.mark.asyncio
    async def test_rejected_subscription(self):
        server = StreamingServer(confirm=False)
        async with websockets.serve(server.handler, "127.0.0.1", 0) as ws_server:
            port = ws_server.sockets[0].getsockname()[1]
            client = WebSocketChannelClient(f"ws://127.0.0.1:{port}/ws/stream")

            with pytest.raises(ChannelError):
                await client.subscribe("sync.changes.doc:acme", lambda message: None)

    @pytest.mark.asyncio
    async def test_server_drop_surfaces_as_channel_error(self):
        server = StreamingServer()
        async with websockets.serve(server.handler, "127.0.0.1", 0) as ws_server:
            port = ws_server.sockets[0].getsockname()[1]
            client = WebSocketChannelClient(f"ws://127.0.0.1:{port}/ws/stream")
            channel = await client.subscribe("sync.changes.doc:acme", lambda message: None)

            await server.connection.close()

            with pytest.raises(ChannelError):
                await asyncio.wait_for(channel.wait_closed(), timeout=2.0)

    @pytest.mark.asyncio
    async def test_connect_refused(self):
        client = WebSocketChannelClient(f"ws://127.0.0.1:{free_port()}/ws/stream", handshake_timeout=1.0)

        with pytest.raises(ChannelError):
            await client.subscribe("sync.changes.doc:acme", lambda message: None)
