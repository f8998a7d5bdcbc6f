"""Streams session progress into a chat channel."""

import asyncio
import logging

from arbiter.services.agent_runner import GeneratorEvent
from arbiter.transports.base import EditableStatus, Transport, supports_editable_status

logger = logging.getLogger(__name__)

DISPLAY_LIMIT = 1800
DISPLAY_TAIL = 1750
FINAL_LIMIT = 1500
FINAL_TAIL = 1400


def format_summary(summary: str, success: bool) -> str:
    header = "Changes Complete" if success else "Task Incomplete"
    if len(summary) > DISPLAY_LIMIT:
        summary = summary[:DISPLAY_TAIL] + "\n\n...(truncated)"
    return f"**{header}**\n\n{summary}"


class StatusStream:
    """A live status message for one session.

    On transports with the editable-status capability a single message is
    edited in place, at most once per throttle interval. Elsewhere only
    explicit status notes are sent, as plain messages on ``flush``; raw
    generator output stays in the buffer.
    """

    def __init__(self, transport: Transport, channel_id: str, throttle_seconds: float = 2.0) -> None:
        self._transport = transport
        self._channel_id = channel_id
        self._throttle = throttle_seconds
        self._editable: EditableStatus | None = (
            transport if supports_editable_status(transport) else None
        )
        self._message_id: str | None = None
        self._buffer = ""
        self._unsent: list[str] = []
        self._last_update = 0.0
        self._pending: asyncio.Task | None = None

    @property
    def editable(self) -> bool:
        return self._editable is not None

    @property
    def buffer(self) -> str:
        return self._buffer

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    async def start(self, content: str) -> None:
        self._buffer = content
        self._last_update = self._now()
        if self._editable is not None:
            self._message_id = await self._editable.send_and_get_id(self._channel_id, content)
        else:
            await self._transport.send(self._channel_id, content)

    def append(self, content: str) -> None:
        """Add a status note. Notes are visible on both kinds of transport."""
        self._buffer += content
        self._unsent.append(content.strip())

    async def handle_event(self, event: GeneratorEvent) -> None:
        if event.type == "text":
            self._buffer += "\n" + event.content
        elif event.type == "tool_use":
            self._buffer += f"\n🔧 {event.content}"
        elif event.type == "tool_result":
            self._buffer += "\n✓ Tool completed"
        elif event.type == "error":
            self._buffer += f"\n❌ Error: {event.content}"
        elif event.type == "result":
            self._buffer += f"\n\n📋 **Result:**\n{event.content}"
        else:
            return
        await self._maybe_update()

    async def _maybe_update(self) -> None:
        if self._editable is None:
            return
        elapsed = self._now() - self._last_update
        if elapsed >= self._throttle:
            await self._update()
        elif self._pending is None or self._pending.done():
            self._pending = asyncio.create_task(self._delayed_update(self._throttle - elapsed))

    async def _delayed_update(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._update()

    async def _update(self) -> None:
        if self._editable is None or self._message_id is None:
            return
        content = self._buffer
        if len(content) > DISPLAY_LIMIT:
            content = "...\n" + content[-DISPLAY_TAIL:]
        try:
            await self._editable.edit_message(self._channel_id, self._message_id, content)
        except Exception:
            logger.warning("Failed to update status message in %s", self._channel_id, exc_info=True)
        self._last_update = self._now()

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def flush(self) -> None:
        self._cancel_pending()
        if self._editable is not None:
            self._unsent.clear()
            await self._update()
            return
        notes = "\n".join(n for n in self._unsent if n)
        self._unsent.clear()
        if notes:
            await self._transport.send(self._channel_id, notes)

    async def finalize(self, summary: str, success: bool) -> None:
        """Mark the status message done and post the summary."""
        self._cancel_pending()
        mark = "✅ **Completed**" if success else "❌ **Failed**"
        if self._editable is not None and self._message_id is not None:
            content = self._buffer
            if len(content) > FINAL_LIMIT:
                content = "...\n" + content[-FINAL_TAIL:]
            try:
                await self._editable.edit_message(
                    self._channel_id, self._message_id, f"{content}\n\n{mark}"
                )
            except Exception:
                logger.warning("Failed to finalize status message", exc_info=True)
        else:
            self._unsent.clear()
        try:
            await self._transport.send(self._channel_id, format_summary(summary, success))
        except Exception:
            logger.warning("Failed to send session summary to %s", self._channel_id, exc_info=True)
