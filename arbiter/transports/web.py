"""In-process chat transport served over the HTTP app's WebSockets."""

import logging
import uuid
from collections import deque

from fastapi import WebSocket

from arbiter.models.session import ChatMessage, utcnow
from arbiter.transports.base import BotIdentity, EditableStatus, Transport
from arbiter.utils.text import chunk_message

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Fans JSON events out to the WebSockets subscribed to a key."""

    def __init__(self) -> None:
        self.connections: dict[str, list[WebSocket]] = {}

    async def connect(self, key: str, ws: WebSocket) -> None:
        await ws.accept()
        self.connections.setdefault(key, []).append(ws)

    def disconnect(self, key: str, ws: WebSocket) -> None:
        conns = self.connections.get(key, [])
        if ws in conns:
            conns.remove(ws)
        if not conns:
            self.connections.pop(key, None)

    async def send_event(self, key: str, event: dict) -> None:
        for ws in list(self.connections.get(key, [])):
            try:
                await ws.send_json(event)
            except Exception:
                logger.debug("Dropping dead websocket for %s", key, exc_info=True)
                self.disconnect(key, ws)


class WebTransport(Transport, EditableStatus):
    """Chat transport for the built-in HTTP API.

    Inbound messages arrive through ``receive`` (called by
    ``POST /api/messages``). Outbound messages are kept in a bounded
    per-channel history and pushed to ``/ws/channels/{channel_id}``.
    """

    name = "web"

    def __init__(
        self,
        bot_id: str = "arbiter",
        bot_name: str = "Arbiter",
        max_message_length: int = 2000,
        history_size: int = 200,
        connections: ConnectionManager | None = None,
    ) -> None:
        super().__init__()
        self._identity = BotIdentity(id=bot_id, name=bot_name)
        self._max_length = max_message_length
        self._history_size = history_size
        self._history: dict[str, deque[ChatMessage]] = {}
        self.connections = connections or ConnectionManager()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.info("Web transport ready as %s", self._identity.name)

    async def disconnect(self) -> None:
        self._connected = False

    def get_bot_identity(self) -> BotIdentity:
        return self._identity

    def _record(self, message: ChatMessage) -> None:
        channel = self._history.setdefault(message.channel_id, deque(maxlen=self._history_size))
        channel.append(message)

    def _find(self, channel_id: str, message_id: str) -> ChatMessage | None:
        for msg in self._history.get(channel_id, ()):
            if msg.id == message_id:
                return msg
        return None

    async def get_history(self, channel_id: str, limit: int = 20) -> list[ChatMessage]:
        return list(self._history.get(channel_id, ()))[-limit:]

    async def receive(self, message: ChatMessage) -> None:
        """Accept an inbound message from a user."""
        if not message.mentions_bot:
            handle = f"@{self._identity.name}".lower()
            if handle in message.content.lower() or f"<@{self._identity.id}>" in message.content:
                message.mentions_bot = True
        self._record(message)
        await self.connections.send_event(
            message.channel_id, {"type": "message", "message": message.model_dump(mode="json")}
        )
        await self.emit_message(message)

    async def _post(self, channel_id: str, content: str) -> ChatMessage:
        message = ChatMessage(
            id=f"msg-{uuid.uuid4().hex[:12]}",
            content=content,
            author_id=self._identity.id,
            author_name=self._identity.name,
            channel_id=channel_id,
            timestamp=utcnow(),
            transport=self.name,
        )
        self._record(message)
        await self.connections.send_event(
            channel_id, {"type": "message", "message": message.model_dump(mode="json")}
        )
        return message

    async def send(self, channel_id: str, content: str) -> None:
        for chunk in chunk_message(content, self._max_length):
            await self._post(channel_id, chunk)

    async def send_and_get_id(self, channel_id: str, content: str) -> str:
        message = await self._post(channel_id, content[: self._max_length])
        return message.id

    async def edit_message(self, channel_id: str, message_id: str, content: str) -> None:
        message = self._find(channel_id, message_id)
        if message is None:
            raise KeyError(f"Unknown message {message_id} in {channel_id}")
        message.content = content[: self._max_length]
        await self.connections.send_event(
            channel_id,
            {"type": "message_edited", "message": message.model_dump(mode="json")},
        )
