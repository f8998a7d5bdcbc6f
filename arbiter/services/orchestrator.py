"""Routes chat messages into decisions and drives code-editing sessions."""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any

from arbiter.config import ArbiterConfig
from arbiter.errors import CoordinatorRejectedError, QueueFullError, SessionNotFoundError, WorkspaceError
from arbiter.models.session import ChatMessage, WorkSession
from arbiter.prompts.conflict_resolution import format_repair_prompt
from arbiter.prompts.continuation import format_continuation_prompt
from arbiter.prompts.session_task import format_task_prompt
from arbiter.services.agent_runner import (
    AgentRunner,
    GeneratorEvent,
    GeneratorResult,
    RunnerFactory,
)
from arbiter.services.checkpoint import (
    clear_checkpoint_request,
    create_checkpoint,
    format_pending_messages,
    get_checkpoint_diff,
    request_checkpoint,
)
from arbiter.services.coordinator import CoordinatorObserver, SessionCoordinator
from arbiter.services.decision import (
    Decider,
    Decision,
    DecisionAction,
    MessageContext,
    acknowledgment,
)
from arbiter.services.message_queue import MessageAggregator, MessageQueue, Priority, QueuedMessage
from arbiter.services.status_stream import StatusStream
from arbiter.services.worktree_service import MergeResult, WorktreeManager
from arbiter.transports.base import Transport
from arbiter.utils.context_manager import ContextManager
from arbiter.utils.text import truncate

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20
MAINTENANCE_INTERVAL = 60.0


class SessionObserver:
    """Session lifecycle callbacks. Override what you need."""

    async def on_session_created(self, session: WorkSession) -> None:
        pass

    async def on_session_updated(self, session: WorkSession, message: ChatMessage) -> None:
        pass

    async def on_session_completed(self, session: WorkSession, success: bool, summary: str) -> None:
        pass


@dataclass
class SessionOutcome:
    session_id: str
    success: bool
    merged: bool
    summary: str
    commit: str = ""


class ChatNotifier(CoordinatorObserver):
    """Delivers coordinator notifications to chat channels."""

    def __init__(self, orchestrator: "Orchestrator") -> None:
        self._orchestrator = orchestrator

    async def on_notify(self, message: str, channel_id: str | None) -> None:
        if not channel_id:
            return
        transport = self._orchestrator.transport_for_channel(channel_id)
        if transport is None:
            logger.debug("No transport for channel %s, notification dropped", channel_id)
            return
        try:
            await transport.send(channel_id, message)
        except Exception:
            logger.warning("Failed to deliver notification to %s", channel_id, exc_info=True)


class Orchestrator:
    """Glues transports, the queue, the decider and session execution together."""

    def __init__(
        self,
        config: ArbiterConfig,
        worktrees: WorktreeManager,
        coordinator: SessionCoordinator,
        queue: MessageQueue,
        aggregator: MessageAggregator,
        decider: Decider,
        runner_factory: RunnerFactory | None = None,
        context: ContextManager | None = None,
    ) -> None:
        self._config = config
        self._worktrees = worktrees
        self._coordinator = coordinator
        self._queue = queue
        self._aggregator = aggregator
        self._decider = decider
        self._runner_factory = runner_factory or functools.partial(
            AgentRunner,
            binary=config.generator_binary,
            abort_grace_seconds=config.abort_grace_seconds,
            timeout_seconds=config.generator_timeout_seconds,
        )
        self._context = context or ContextManager()
        self._transports: dict[str, Transport] = {}
        self._channel_transports: dict[str, str] = {}
        self._observers: list[SessionObserver] = []
        self._session_tasks: set[asyncio.Task] = set()
        # Sessions whose generator has exited; follow-ups can no longer be folded in.
        self._wrapping_up: set[str] = set()
        self._flush_tasks: dict[str, asyncio.Task] = {}
        self._maintenance_task: asyncio.Task | None = None
        self._merge_lock = asyncio.Lock()

        self._queue.set_processor(self._process_queued)
        self._coordinator.add_observer(ChatNotifier(self))
        self._coordinator.add_cleanup_hook(self._worktrees.initialize)

    # -- wiring -----------------------------------------------------------

    @property
    def worktrees(self) -> WorktreeManager:
        return self._worktrees

    @property
    def coordinator(self) -> SessionCoordinator:
        return self._coordinator

    @property
    def queue(self) -> MessageQueue:
        return self._queue

    def add_transport(self, transport: Transport) -> None:
        self._transports[transport.name] = transport
        transport.on_message(functools.partial(self.handle_incoming, transport=transport))

    def get_transport(self, name: str) -> Transport | None:
        return self._transports.get(name)

    def transport_for_channel(self, channel_id: str) -> Transport | None:
        name = self._channel_transports.get(channel_id)
        if name is not None and name in self._transports:
            return self._transports[name]
        return next(iter(self._transports.values()), None)

    def set_status_channel(self, channel_id: str | None) -> None:
        self._coordinator.set_status_channel(channel_id)

    def add_observer(self, observer: SessionObserver) -> None:
        self._observers.append(observer)

    async def _dispatch(self, method: str, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                await getattr(observer, method)(*args)
            except Exception:
                logger.exception("Session observer %r failed in %s", observer, method)

    async def start(self) -> None:
        if self._config.handle_signals:
            self._coordinator.install_signal_handlers()
        if self._config.status_channel_id:
            self._coordinator.set_status_channel(self._config.status_channel_id)
        await self._worktrees.initialize()
        for transport in self._transports.values():
            await transport.connect()
        self._queue.start()
        self._maintenance_task = asyncio.create_task(self._maintenance())
        self._coordinator.notify_startup()
        logger.info("Orchestrator started with transports: %s", ", ".join(self._transports) or "none")

    async def stop(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            self._maintenance_task = None
        for task in self._flush_tasks.values():
            task.cancel()
        self._flush_tasks.clear()
        await self._queue.stop()
        for transport in self._transports.values():
            try:
                await transport.disconnect()
            except Exception:
                logger.warning("Error disconnecting %s", transport.name, exc_info=True)

    async def _maintenance(self) -> None:
        while True:
            await asyncio.sleep(MAINTENANCE_INTERVAL)
            self._queue.cleanup()
            self._aggregator.cleanup()

    async def wait_for_sessions(self) -> None:
        """Wait until every spawned session task has finished."""
        while self._session_tasks:
            await asyncio.gather(*list(self._session_tasks), return_exceptions=True)

    # -- inbound ----------------------------------------------------------

    async def handle_incoming(self, message: ChatMessage, transport: Transport) -> None:
        """Entry point for every inbound chat message."""
        if message.author_id == transport.get_bot_identity().id:
            return
        self._channel_transports[message.channel_id] = transport.name

        session = self._worktrees.find_session_by_channel(message.channel_id)
        if session is not None:
            await self._handle_follow_up(session, message, transport)
            return

        priority = Priority.normal
        if message.mentions_bot or message.is_direct or message.reply_to_id:
            priority = Priority.high
        try:
            self._queue.enqueue(message, priority=priority)
        except QueueFullError:
            logger.warning("Queue full, dropping message %s from %s", message.id, message.author_name)

    async def _handle_follow_up(
        self, session: WorkSession, message: ChatMessage, transport: Transport
    ) -> None:
        if session.id in self._wrapping_up:
            self._worktrees.add_message_to_session(session.id, message)
            logger.info("Follow-up %s arrived after generation for %s", message.id, session.id)
            await transport.send(
                message.channel_id,
                f"⏳ `{session.branch_name}` is already committing and merging, so "
                f'"{truncate(message.content, 50)}" can\'t be folded in. '
                "Please send it again once it finishes.",
            )
            return

        request_checkpoint(session, message)
        self._worktrees.add_message_to_session(session.id, message)
        try:
            self._queue.enqueue(message, session_id=session.id, priority=Priority.high)
        except QueueFullError:
            logger.warning("Queue full, follow-up %s tracked on session only", message.id)
        logger.info("Follow-up for session %s, checkpoint requested", session.id)
        await transport.send(
            message.channel_id,
            f'📝 Got it! Will incorporate "{truncate(message.content, 50)}" '
            "after the current operation completes.",
        )

    async def _process_queued(self, item: QueuedMessage) -> None:
        message = item.message
        transport = self._transports.get(message.transport) or self.transport_for_channel(
            message.channel_id
        )
        if transport is None:
            logger.warning("No transport for message %s", message.id)
            return

        if item.session_id:
            session = self._worktrees.get_session(item.session_id)
            if session is not None:
                self._worktrees.add_message_to_session(session.id, message)
                await self._dispatch("on_session_updated", session, message)
            return

        result = self._aggregator.add_message(message)
        if result.should_aggregate:
            self._cancel_flush(message.channel_id)
            await self._handle_batch(result.messages, transport)
        elif item.priority in (Priority.urgent, Priority.high):
            self._cancel_flush(message.channel_id)
            await self._handle_batch(self._aggregator.force_aggregate(message.channel_id), transport)
        elif message.channel_id not in self._flush_tasks:
            self._flush_tasks[message.channel_id] = asyncio.create_task(
                self._delayed_flush(message.channel_id, transport)
            )

    def _cancel_flush(self, channel_id: str) -> None:
        task = self._flush_tasks.pop(channel_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _delayed_flush(self, channel_id: str, transport: Transport) -> None:
        await asyncio.sleep(self._aggregator.window_seconds)
        self._flush_tasks.pop(channel_id, None)
        messages = self._aggregator.force_aggregate(channel_id)
        try:
            await self._handle_batch(messages, transport)
        except Exception:
            logger.exception("Failed to handle batch for %s", channel_id)

    async def _build_context(self, message: ChatMessage, transport: Transport) -> MessageContext:
        identity = transport.get_bot_identity()
        try:
            history = await transport.get_history(message.channel_id, HISTORY_LIMIT)
        except Exception:
            logger.warning("Could not fetch history for %s", message.channel_id, exc_info=True)
            history = []
        return MessageContext(bot_id=identity.id, bot_name=identity.name, messages=history)

    async def _handle_batch(self, messages: list[ChatMessage], transport: Transport) -> None:
        if not messages:
            return
        primary = messages[-1]

        session = self._worktrees.find_session_by_channel(primary.channel_id)
        if session is not None:
            for message in messages:
                await self._handle_follow_up(session, message, transport)
            return

        context = await self._build_context(primary, transport)
        decision = await self._decider.decide(primary, context)
        logger.info(
            "Decision for %s: %s (%.0f%%) %s",
            primary.id, decision.action_type.value, decision.confidence, decision.reason,
        )
        await self._act(decision, messages, transport, context)

    async def _act(
        self,
        decision: Decision,
        messages: list[ChatMessage],
        transport: Transport,
        context: MessageContext,
    ) -> None:
        primary = messages[-1]
        channel = primary.channel_id
        action = decision.action_type
        if action is DecisionAction.ignore:
            return

        confident = decision.should_act and decision.confidence >= self._config.confidence_threshold
        if not confident:
            if decision.confidence >= self._config.low_confidence_threshold:
                await transport.send(channel, await self._decider.respond(primary, context))
            return

        if action is DecisionAction.acknowledge:
            await transport.send(channel, acknowledgment(primary))
        elif action in (DecisionAction.respond, DecisionAction.research):
            await transport.send(channel, await self._decider.respond(primary, context))
        elif action is DecisionAction.defer:
            await transport.send(channel, f"I'll hold off on this one for now. {decision.reason}")
        elif action is DecisionAction.code_task:
            self.spawn_session(messages, transport, decision.task_description)

    # -- sessions ---------------------------------------------------------

    def spawn_session(
        self,
        messages: list[ChatMessage],
        transport: Transport,
        task_description: str | None = None,
    ) -> asyncio.Task:
        """Run a session in the background so the queue keeps draining."""
        task = asyncio.create_task(self.run_session(messages, transport, task_description))
        self._session_tasks.add(task)
        task.add_done_callback(self._session_tasks.discard)
        return task

    async def run_session(
        self,
        messages: list[ChatMessage],
        transport: Transport,
        task_description: str | None = None,
    ) -> SessionOutcome | None:
        """Create a workspace for the request and see it through to merge.

        Returns None when no session could be started.
        """
        primary = messages[-1]
        channel = primary.channel_id

        if not self._coordinator.can_start_session():
            await transport.send(channel, f"⏸️ {self._coordinator.rejection_reason()}")
            return None

        description = task_description or primary.content[:50]
        try:
            session = await self._worktrees.create_session(primary, description)
        except WorkspaceError as e:
            logger.error("Session setup failed: %s", e)
            await transport.send(channel, f"❌ Failed to start session: {e}")
            return None

        try:
            self._coordinator.register_session(session)
        except CoordinatorRejectedError as e:
            await self._worktrees.abandon_session(session.id)
            await transport.send(channel, f"⏸️ {e}")
            return None

        for message in messages[:-1]:
            self._worktrees.add_message_to_session(session.id, message)
        await self._dispatch("on_session_created", session)
        logger.info("Started session %s for %s", session.id, primary.author_name)

        stream = StatusStream(transport, channel, self._config.status_throttle_seconds)
        try:
            await stream.start(
                f"🔧 **Working in an isolated worktree**\n"
                f"Branch: `{session.branch_name}`\n"
                f"Task: {description}\n\n"
                f"⏳ Preparing prompt..."
            )
            return await self._drive_session(session, stream, transport)
        except Exception as e:
            logger.exception("Session %s failed", session.id)
            self._worktrees.mark_failed(session.id)
            self._coordinator.complete_session(session.id, False, str(e))
            await stream.finalize(
                f"**Session failed**\n\nError: {e}\n\n"
                f"Branch `{session.branch_name}` and its workspace have been kept.",
                False,
            )
            await self._dispatch("on_session_completed", session, False, str(e))
            return SessionOutcome(session.id, success=False, merged=False, summary=str(e))
        finally:
            self._wrapping_up.discard(session.id)

    async def _initial_prompt(self, session: WorkSession, transport: Transport) -> str:
        trigger = session.triggered_by
        context = await self._build_context(trigger, transport)
        codebase = await asyncio.to_thread(
            self._context.build_codebase_context, session.worktree_path
        )
        ordered = sorted(session.related_messages, key=lambda m: m.timestamp)
        request = "\n".join(m.content for m in ordered) or trigger.content
        return format_task_prompt(
            request=request,
            author_name=trigger.author_name,
            channel_name=trigger.channel_name,
            branch_name=session.branch_name,
            working_dir=session.worktree_path,
            history=context.messages,
            codebase_context=codebase,
            approach=session.task_description,
        )

    async def _generate(self, session: WorkSession, stream: StatusStream, prompt: str) -> GeneratorResult:
        """Run the generator, resuming from a checkpoint each time new instructions arrive."""
        while True:
            runner = self._runner_factory()
            checkpoint_requested = False

            async def on_event(event: GeneratorEvent) -> None:
                nonlocal checkpoint_requested
                await stream.handle_event(event)
                if (
                    event.type == "tool_result"
                    and session.should_checkpoint
                    and not checkpoint_requested
                ):
                    logger.info("Checkpoint requested for %s, stopping generator", session.id)
                    checkpoint_requested = True
                    runner.abort()

            result = await runner.execute(prompt, session.worktree_path, on_event)
            logger.info("Generator for %s exited with %s", session.id, result.exit_code)

            finished_with_pending = result.success and session.should_checkpoint
            if not (checkpoint_requested or finished_with_pending):
                return result
            prompt = await self._checkpoint(session, stream)

    async def _checkpoint(self, session: WorkSession, stream: StatusStream) -> str:
        stream.append("\n\n🔄 Incorporating new instructions...")
        await stream.flush()
        commit = await create_checkpoint(session, self._worktrees)
        diff = await get_checkpoint_diff(session, self._worktrees, commit)
        if commit:
            stream.append(f"\n📝 Checkpoint {session.checkpoint_count} committed: `{commit[:8]}`")
        pending = clear_checkpoint_request(session)
        logger.info("Resuming %s with new instructions:\n%s", session.id, format_pending_messages(pending))
        prompt = format_continuation_prompt(
            session.triggered_by.content, diff, pending, session.checkpoint_count
        )
        stream.append(f"\n🚀 Continuing with {len(pending)} new instruction(s)...\n")
        await stream.flush()
        return prompt

    async def _drive_session(
        self, session: WorkSession, stream: StatusStream, transport: Transport
    ) -> SessionOutcome:
        trigger = session.triggered_by
        description = session.task_description[:50]

        prompt = await self._initial_prompt(session, transport)
        stream.append("\n\n🚀 Running generator...\n")
        await stream.flush()
        result = await self._generate(session, stream, prompt)
        self._wrapping_up.add(session.id)

        if not result.success:
            self._worktrees.mark_failed(session.id)
            self._coordinator.complete_session(session.id, False, f"Exit code: {result.exit_code}")
            await stream.finalize(
                f"**Task failed**\n\nExit code: {result.exit_code}\n\n"
                f"Branch `{session.branch_name}` and its workspace have been kept for debugging.\n\n"
                f"Output: {result.summary[:1500]}",
                False,
            )
            await self._dispatch("on_session_completed", session, False, result.summary)
            return SessionOutcome(session.id, success=False, merged=False, summary=result.summary)

        stream.append("\n\n📝 Committing changes...")
        await stream.flush()
        message = f"Self-edit: {description}\n\nRequested by: {trigger.author_name}"
        if session.checkpoint_count:
            message += f"\nIncluded {session.checkpoint_count} checkpoint(s)"
        commit = await self._worktrees.commit_changes(session.id, message)
        commit = commit or (session.commits[-1] if session.commits else "")

        if not commit:
            self._coordinator.complete_session(session.id, True, "No changes made")
            await self._cleanup_workspace(session)
            await stream.finalize(
                f"**No changes were made**\n\nThe generator finished without modifying any files.\n\n"
                f"Summary: {result.summary[:1500]}",
                True,
            )
            await self._dispatch("on_session_completed", session, True, result.summary)
            return SessionOutcome(session.id, success=True, merged=False, summary=result.summary)

        stream.append("\n\n🔀 Merging to main...")
        await stream.flush()
        merge = await self._merge_with_repair(session, stream)

        if not merge.success:
            self._coordinator.complete_session(session.id, False, merge.error)
            await self._cleanup_workspace(session)
            self._worktrees.mark_failed(session.id)
            await stream.finalize(
                f"**Changes committed but merge failed**\n\nError: {merge.error}\n\n"
                f"Branch `{session.branch_name}` has been kept for manual resolution.\n"
                f"Commit: `{commit[:8]}`",
                False,
            )
            await self._dispatch("on_session_completed", session, False, merge.error)
            return SessionOutcome(
                session.id, success=False, merged=False, summary=merge.error, commit=commit
            )

        self._coordinator.complete_session(session.id, True, description)
        await self._cleanup_workspace(session)
        await stream.finalize(
            f"**Changes merged to main!**\n\n"
            f"Commit: `{commit[:8]}`\n"
            f"Branch: `{session.branch_name}`\n"
            f"Checkpoints: {session.checkpoint_count}\n\n"
            f"**Summary:**\n{result.summary[:1500]}",
            True,
        )
        await self._dispatch("on_session_completed", session, True, result.summary)
        if self._config.restart_on_merge:
            self._coordinator.request_restart(
                f"Code merged to main: {description}", trigger.author_name, trigger.channel_id
            )
        return SessionOutcome(session.id, success=True, merged=True, summary=result.summary, commit=commit)

    async def _merge_with_repair(self, session: WorkSession, stream: StatusStream) -> MergeResult:
        """Merge, letting the generator unblock a failed merge a bounded number of times."""
        async with self._merge_lock:
            result = await self._worktrees.merge_to_main(session.id)
            attempt = 0
            while (
                not result.success
                and result.conflict_type is not None
                and attempt < self._config.merge_repair_attempts
            ):
                attempt += 1
                logger.info(
                    "Repairing %s merge for %s (attempt %d)",
                    result.conflict_type.value, session.id, attempt,
                )
                stream.append(
                    f"\n\n⚠️ Merge blocked ({result.conflict_type.value}). "
                    f"Running repair attempt {attempt}...\n"
                )
                await stream.flush()
                prompt = format_repair_prompt(
                    result.conflict_type,
                    result.conflict_details or result.error,
                    session.branch_name,
                    self._worktrees.default_branch,
                    self._worktrees.repo_path,
                    attempt=attempt,
                )
                repair = await self._runner_factory().execute(
                    prompt, self._worktrees.repo_path, stream.handle_event
                )
                if not repair.success:
                    stream.append(f"\n\n❌ Repair failed: {repair.summary[:500]}")
                    await stream.flush()
                    break
                stream.append("\n\n✅ Repair finished, retrying merge...")
                await stream.flush()
                result = await self._worktrees.merge_to_main(session.id)
            return result

    async def _cleanup_workspace(self, session: WorkSession) -> None:
        try:
            await self._worktrees.complete_session(session.id)
        except (WorkspaceError, SessionNotFoundError, OSError):
            logger.warning("Workspace cleanup failed for %s", session.id, exc_info=True)

    # -- queries ----------------------------------------------------------

    def get_sessions(self) -> list[WorkSession]:
        return self._worktrees.get_sessions()
