import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from arbiter.config import ArbiterConfig, configure_logging, load_config
from arbiter.models.session import (
    ActionType,
    ChatMessage,
    CoordinatorState,
    PendingAction,
    WorkSession,
)
from arbiter.services.coordinator import CoordinatorObserver, SessionCoordinator
from arbiter.services.decision import AnthropicDecider, Decider
from arbiter.services.message_queue import MessageAggregator, MessageQueue
from arbiter.services.orchestrator import Orchestrator, SessionObserver
from arbiter.services.worktree_service import WorktreeManager
from arbiter.transports.web import ConnectionManager, WebTransport

logger = logging.getLogger(__name__)

EVENTS_KEY = "events"


class EventBroadcaster(SessionObserver, CoordinatorObserver):
    """Forwards session and coordinator events to ``/ws/events`` subscribers."""

    def __init__(self, connections: ConnectionManager) -> None:
        self._connections = connections

    async def _send(self, event: dict) -> None:
        await self._connections.send_event(EVENTS_KEY, event)

    async def on_session_created(self, session: WorkSession) -> None:
        await self._send({"type": "session_created", "session": session.model_dump(mode="json")})

    async def on_session_updated(self, session: WorkSession, message: ChatMessage) -> None:
        await self._send({
            "type": "session_updated",
            "session_id": session.id,
            "message": message.model_dump(mode="json"),
        })

    async def on_session_completed(self, session: WorkSession, success: bool, summary: str) -> None:
        await self._send({
            "type": "session_completed",
            "session": session.model_dump(mode="json"),
            "success": success,
            "summary": summary,
        })

    async def on_state_changed(self, old: CoordinatorState, new: CoordinatorState) -> None:
        await self._send({"type": "coordinator_state", "old": old.value, "new": new.value})

    async def on_action_queued(self, action: PendingAction) -> None:
        await self._send({"type": "action_queued", "action": action.model_dump(mode="json")})

    async def on_action_executing(self, action: PendingAction) -> None:
        await self._send({"type": "action_executing", "action": action.model_dump(mode="json")})

    async def on_notify(self, message: str, channel_id: str | None) -> None:
        await self._send({"type": "notification", "message": message, "channel_id": channel_id})


@dataclass
class Runtime:
    config: ArbiterConfig
    worktrees: WorktreeManager
    coordinator: SessionCoordinator
    queue: MessageQueue
    aggregator: MessageAggregator
    orchestrator: Orchestrator
    transport: WebTransport
    events: ConnectionManager


def build_runtime(
    config: ArbiterConfig,
    decider: Decider | None = None,
    terminate: Callable[[], Any] | None = None,
    runner_factory: Callable | None = None,
) -> Runtime:
    """Wire every service for one process. Nothing is started here."""
    worktrees = WorktreeManager(
        repo_path=config.repo_path,
        worktree_base=config.worktree_base,
        default_branch=config.default_branch,
        shared_dirs=config.shared_dirs,
    )
    coordinator = SessionCoordinator(
        status_channel_id=config.status_channel_id,
        exit_delay=config.exit_delay,
        terminate=terminate,
    )
    queue = MessageQueue(max_queue_size=config.queue_max_size, process_delay=config.queue_process_delay)
    aggregator = MessageAggregator(window=config.aggregation_window)
    orchestrator = Orchestrator(
        config=config,
        worktrees=worktrees,
        coordinator=coordinator,
        queue=queue,
        aggregator=aggregator,
        decider=decider or AnthropicDecider(model=config.model),
        runner_factory=runner_factory,
    )
    transport = WebTransport(max_message_length=config.message_limit)
    orchestrator.add_transport(transport)

    events = ConnectionManager()
    broadcaster = EventBroadcaster(events)
    orchestrator.add_observer(broadcaster)
    coordinator.add_observer(broadcaster)
    return Runtime(
        config=config,
        worktrees=worktrees,
        coordinator=coordinator,
        queue=queue,
        aggregator=aggregator,
        orchestrator=orchestrator,
        transport=transport,
        events=events,
    )


class ActionRequest(BaseModel):
    type: ActionType
    reason: str
    requested_by: str | None = None
    channel_id: str | None = None


class InboundMessage(BaseModel):
    content: str
    author_id: str
    author_name: str
    channel_id: str
    channel_name: str | None = None
    id: str | None = None
    reply_to_id: str | None = None
    mentions_bot: bool = False


def get_runtime(request: Request) -> Runtime:
    runtime = request.app.state.runtime
    if runtime is None:
        raise HTTPException(status_code=503, detail="Arbiter is not running")
    return runtime


def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            config = load_config()
            configure_logging(config.log_level)
            app.state.runtime = build_runtime(config)
        await app.state.runtime.orchestrator.start()
        try:
            yield
        finally:
            await app.state.runtime.orchestrator.stop()

    app = FastAPI(title="Arbiter", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/sessions")
    async def list_sessions(rt: Runtime = Depends(get_runtime)):
        return [s.model_dump(mode="json") for s in rt.orchestrator.get_sessions()]

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str, rt: Runtime = Depends(get_runtime)):
        session = rt.worktrees.get_session(session_id)
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        return session.model_dump(mode="json")

    @app.get("/api/coordinator")
    async def get_coordinator(rt: Runtime = Depends(get_runtime)):
        return rt.coordinator.snapshot()

    @app.post("/api/coordinator/actions")
    async def queue_action(req: ActionRequest, rt: Runtime = Depends(get_runtime)):
        action = rt.coordinator.queue_action(req.type, req.reason, req.requested_by, req.channel_id)
        return action.model_dump(mode="json")

    @app.get("/api/queue")
    async def queue_stats(rt: Runtime = Depends(get_runtime)):
        return rt.queue.get_stats()

    @app.post("/api/messages")
    async def post_message(req: InboundMessage, rt: Runtime = Depends(get_runtime)):
        message = ChatMessage(
            id=req.id or f"msg-{uuid.uuid4().hex[:12]}",
            content=req.content,
            author_id=req.author_id,
            author_name=req.author_name,
            channel_id=req.channel_id,
            channel_name=req.channel_name,
            reply_to_id=req.reply_to_id,
            mentions_bot=req.mentions_bot,
            transport=rt.transport.name,
        )
        await rt.transport.receive(message)
        return {"id": message.id, "status": "accepted"}

    @app.get("/api/channels/{channel_id}/messages")
    async def channel_messages(channel_id: str, limit: int = 50, rt: Runtime = Depends(get_runtime)):
        history = await rt.transport.get_history(channel_id, limit)
        return [m.model_dump(mode="json") for m in history]

    @app.websocket("/ws/events")
    async def events_socket(ws: WebSocket):
        rt: Runtime | None = ws.app.state.runtime
        if rt is None:
            await ws.close(code=1013)
            return
        await rt.events.connect(EVENTS_KEY, ws)
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            rt.events.disconnect(EVENTS_KEY, ws)

    @app.websocket("/ws/channels/{channel_id}")
    async def channel_socket(ws: WebSocket, channel_id: str):
        rt: Runtime | None = ws.app.state.runtime
        if rt is None:
            await ws.close(code=1013)
            return
        await rt.transport.connections.connect(channel_id, ws)
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            rt.transport.connections.disconnect(channel_id, ws)

    return app


app = create_app()


def run() -> None:
    config = load_config()
    configure_logging(config.log_level)
    uvicorn.run(create_app(build_runtime(config)), host=config.host, port=config.port,
                log_level=config.log_level.lower())
