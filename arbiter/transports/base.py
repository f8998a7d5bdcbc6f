"""Chat transport interfaces."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable

from arbiter.models.session import ChatMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ChatMessage], Awaitable[None]]


@dataclass
class BotIdentity:
    id: str
    name: str


class Transport(ABC):
    """A chat network the arbiter listens on and replies through."""

    name: str = "transport"

    def __init__(self) -> None:
        self._handlers: list[MessageHandler] = []

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    async def emit_message(self, message: ChatMessage) -> None:
        """Deliver an inbound message to every handler. A failing handler does not stop the rest."""
        for handler in list(self._handlers):
            try:
                await handler(message)
            except Exception:
                logger.exception("Message handler failed on %s", self.name)

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def send(self, channel_id: str, content: str) -> None:
        ...

    @abstractmethod
    async def get_history(self, channel_id: str, limit: int = 20) -> list[ChatMessage]:
        ...

    @abstractmethod
    def get_bot_identity(self) -> BotIdentity:
        ...


class EditableStatus(ABC):
    """Capability: post a message and edit it in place later."""

    @abstractmethod
    async def send_and_get_id(self, channel_id: str, content: str) -> str:
        ...

    @abstractmethod
    async def edit_message(self, channel_id: str, message_id: str, content: str) -> None:
        ...


def supports_editable_status(transport: Transport) -> bool:
    return isinstance(transport, EditableStatus)
