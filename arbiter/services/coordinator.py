"""Tracks running sessions and gates restart, shutdown and cleanup on them."""

import asyncio
import logging
import os
import signal
from typing import Any, Awaitable, Callable

from arbiter.errors import CoordinatorRejectedError
from arbiter.models.session import (
    ActionType,
    ActiveSession,
    CoordinatorState,
    PendingAction,
    WorkSession,
    utcnow,
)
from arbiter.utils.text import format_duration

logger = logging.getLogger(__name__)

CleanupHook = Callable[[], Awaitable[None]]


def _default_terminate() -> None:
    logging.shutdown()
    os._exit(0)


class CoordinatorObserver:
    """Receives coordinator lifecycle callbacks. Override what you need."""

    async def on_state_changed(self, old: CoordinatorState, new: CoordinatorState) -> None:
        pass

    async def on_session_registered(self, session: ActiveSession) -> None:
        pass

    async def on_session_completed(
        self, session: ActiveSession, success: bool, summary: str | None
    ) -> None:
        pass

    async def on_action_queued(self, action: PendingAction) -> None:
        pass

    async def on_action_executing(self, action: PendingAction) -> None:
        pass

    async def on_action_completed(self, action: PendingAction) -> None:
        pass

    async def on_all_drained(self) -> None:
        pass

    async def on_notify(self, message: str, channel_id: str | None) -> None:
        pass


class SessionCoordinator:
    """Owns the running/draining/executing state machine.

    New sessions are admitted only while running. Queuing a lifecycle
    action moves to draining; once the last active session completes the
    queued actions run in order. Restart and shutdown end the process
    through the injected ``terminate`` callable.
    """

    def __init__(
        self,
        status_channel_id: str | None = None,
        exit_delay: float = 1.0,
        terminate: Callable[[], Any] | None = None,
    ) -> None:
        self._state = CoordinatorState.running
        self._active: dict[str, ActiveSession] = {}
        self._pending: list[PendingAction] = []
        self._observers: list[CoordinatorObserver] = []
        self._cleanup_hooks: list[CleanupHook] = []
        self._status_channel_id = status_channel_id
        self._exit_delay = exit_delay
        self._terminate = terminate or _default_terminate
        self._action_counter = 0
        self._executor_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # -- observers --------------------------------------------------------

    def add_observer(self, observer: CoordinatorObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: CoordinatorObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def add_cleanup_hook(self, hook: CleanupHook) -> None:
        self._cleanup_hooks.append(hook)

    def set_status_channel(self, channel_id: str | None) -> None:
        self._status_channel_id = channel_id

    @property
    def status_channel_id(self) -> str | None:
        return self._status_channel_id

    async def _dispatch(self, method: str, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                await getattr(observer, method)(*args)
            except Exception:
                logger.exception("Coordinator observer %r failed in %s", observer, method)

    def _fire(self, method: str, *args: Any) -> None:
        """Dispatch from synchronous code without blocking the caller."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, dropping %s", method)
            return
        task = loop.create_task(self._dispatch(method, *args))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _notify(self, message: str, channel_id: str | None = None) -> None:
        logger.info("%s", message.replace("\n", " | "))
        self._fire("on_notify", message, channel_id or self._status_channel_id)

    def _set_state(self, new: CoordinatorState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.info("Coordinator state %s -> %s", old.value, new.value)
        self._fire("on_state_changed", old, new)

    # -- sessions ---------------------------------------------------------

    def get_state(self) -> CoordinatorState:
        return self._state

    def can_start_session(self) -> bool:
        return self._state is CoordinatorState.running

    def get_active_sessions(self) -> list[ActiveSession]:
        return list(self._active.values())

    def get_active_session_count(self) -> int:
        return len(self._active)

    def get_pending_actions(self) -> list[PendingAction]:
        return list(self._pending)

    def register_session(self, session: WorkSession) -> ActiveSession:
        """Admit a session. Check and insert happen without yielding.

        Raises:
            CoordinatorRejectedError: not in the running state.
        """
        if not self.can_start_session():
            raise CoordinatorRejectedError(self.rejection_reason(), state=self._state.value)

        trigger = session.triggered_by
        active = ActiveSession(
            id=session.id,
            channel_id=trigger.channel_id,
            channel_name=trigger.channel_name,
            triggered_by=trigger.author_name,
            description=trigger.content[:100],
        )
        self._active[session.id] = active
        self._fire("on_session_registered", active)
        self._notify(
            f"**Session Started**\n"
            f"ID: `{session.id}`\n"
            f"By: {active.triggered_by}\n"
            f"Task: {active.description}\n"
            f"Active sessions: {len(self._active)}",
            active.channel_id,
        )
        return active

    def rejection_reason(self) -> str:
        if self._pending:
            action = self._pending[0]
            return (
                f"Cannot start new session: {action.type.value} pending "
                f"({action.reason}). Please try again later."
            )
        return f"Cannot start new session while {self._state.value}. Please try again later."

    def complete_session(self, session_id: str, success: bool, summary: str | None = None) -> None:
        active = self._active.pop(session_id, None)
        if active is None:
            logger.warning("complete_session called for unknown session %s", session_id)
            return

        duration = format_duration((utcnow() - active.started_at).total_seconds())
        title = "Session Completed" if success else "Session Failed"
        lines = [f"**{title}**", f"ID: `{session_id}`", f"Duration: {duration}"]
        if summary:
            lines.append(f"Summary: {summary[:200]}")
        lines.append(f"Remaining active: {len(self._active)}")
        self._fire("on_session_completed", active, success, summary)
        self._notify("\n".join(lines), active.channel_id)

        if not self._active and self._state is CoordinatorState.draining:
            logger.info("All sessions drained, executing pending actions")
            self._fire("on_all_drained")
            self._schedule_execution()

    # -- actions ----------------------------------------------------------

    def queue_action(
        self,
        action_type: ActionType | str,
        reason: str,
        requested_by: str | None = None,
        channel_id: str | None = None,
    ) -> PendingAction:
        self._action_counter += 1
        action = PendingAction(
            id=f"action-{self._action_counter}",
            type=ActionType(action_type),
            reason=reason,
            requested_by=requested_by,
            channel_id=channel_id,
        )
        self._pending.append(action)
        logger.info("Queued %s: %s", action.type.value, reason)

        if self._state is CoordinatorState.running:
            self._set_state(CoordinatorState.draining)
        self._fire("on_action_queued", action)

        active_lines = [
            f"- `{s.id}` by {s.triggered_by}: {s.description[:50]}" for s in self._active.values()
        ]
        body = [f"**{action.type.value.capitalize()} Requested**", f"Reason: {reason}"]
        if requested_by:
            body.append(f"By: {requested_by}")
        if active_lines:
            body.append(f"Waiting for {len(active_lines)} active session(s):")
            body.extend(active_lines)
        else:
            body.append("No active sessions, executing now.")
        self._notify("\n".join(body), channel_id)

        if not self._active and self._state is CoordinatorState.draining:
            self._schedule_execution()
        return action

    def request_restart(
        self, reason: str, requested_by: str | None = None, channel_id: str | None = None
    ) -> PendingAction:
        return self.queue_action(ActionType.restart, reason, requested_by, channel_id)

    def request_shutdown(
        self, reason: str, requested_by: str | None = None, channel_id: str | None = None
    ) -> PendingAction:
        return self.queue_action(ActionType.shutdown, reason, requested_by, channel_id)

    def _schedule_execution(self) -> None:
        if self._executor_task is not None and not self._executor_task.done():
            return
        loop = asyncio.get_running_loop()
        # Runs on the next loop iteration, never inside the caller.
        self._executor_task = loop.create_task(self._execute_pending_actions())

    async def join(self) -> None:
        """Wait for an in-flight action execution to finish."""
        if self._executor_task is not None:
            await asyncio.shield(self._executor_task)

    async def _execute_pending_actions(self) -> None:
        self._set_state(CoordinatorState.executing)
        while self._pending:
            action = self._pending.pop(0)
            await self._dispatch("on_action_executing", action)
            await self._dispatch(
                "on_notify",
                f"**Executing {action.type.value.capitalize()}**\nReason: {action.reason}",
                action.channel_id or self._status_channel_id,
            )
            try:
                terminated = await self._run_action(action)
            except Exception as e:
                logger.exception("Action %s failed", action.id)
                await self._dispatch(
                    "on_notify",
                    f"**{action.type.value.capitalize()} Failed**\nError: {e}",
                    action.channel_id or self._status_channel_id,
                )
                continue
            await self._dispatch("on_action_completed", action)
            if terminated:
                self._set_state(CoordinatorState.stopped)
                return
        self._set_state(CoordinatorState.running)

    async def _run_action(self, action: PendingAction) -> bool:
        """Run one action. Returns True when the process was told to exit."""
        channel = action.channel_id or self._status_channel_id
        if action.type is ActionType.cleanup:
            for hook in list(self._cleanup_hooks):
                await hook()
            await self._dispatch("on_notify", "**Cleanup Complete**", channel)
            return False

        if action.type is ActionType.restart:
            text = "**Restarting Now**\nBe right back."
        else:
            text = "**Shutting Down**\nGoodbye."
        await self._dispatch("on_notify", text, channel)
        await asyncio.sleep(self._exit_delay)
        logger.info("Terminating process for %s", action.type.value)
        self._terminate()
        return True

    # -- process integration ----------------------------------------------

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.warning("Signal handlers not supported on this loop")
                return

    def handle_signal(self, sig: signal.Signals) -> None:
        if self._state in (CoordinatorState.draining, CoordinatorState.executing):
            logger.info("Ignoring duplicate %s while %s", sig.name, self._state.value)
            return
        self.request_shutdown(f"Received {sig.name} signal", requested_by="system")

    def notify_startup(self) -> None:
        self._notify("**Bot Online**\nReady to accept tasks.")

    def snapshot(self) -> dict:
        return {
            "state": self._state.value,
            "active_sessions": [s.model_dump(mode="json") for s in self._active.values()],
            "pending_actions": [a.model_dump(mode="json") for a in self._pending],
        }
