from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    creating = "creating"
    active = "active"
    committing = "committing"
    rebasing = "rebasing"
    completed = "completed"
    failed = "failed"
    abandoned = "abandoned"


LIVE_STATUSES = frozenset(
    {SessionStatus.creating, SessionStatus.active, SessionStatus.committing, SessionStatus.rebasing}
)


class CoordinatorState(str, Enum):
    running = "running"
    draining = "draining"
    executing = "executing"
    stopped = "stopped"


class ActionType(str, Enum):
    restart = "restart"
    shutdown = "shutdown"
    cleanup = "cleanup"


class Attachment(BaseModel):
    id: str
    filename: str
    url: str = ""
    content_type: str | None = None
    size: int = 0


class ChatMessage(BaseModel):
    id: str
    content: str
    author_id: str
    author_name: str
    channel_id: str
    channel_name: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    transport: str = "web"
    reply_to_id: str | None = None
    mentions_bot: bool = False
    attachments: list[Attachment] = []

    @property
    def is_direct(self) -> bool:
        return self.channel_name == "DM"


class WorkSession(BaseModel):
    id: str
    branch_name: str
    worktree_path: str
    status: SessionStatus = SessionStatus.creating
    triggered_by: ChatMessage
    related_messages: list[ChatMessage] = []
    commits: list[str] = []
    pending_messages: list[ChatMessage] = []
    checkpoint_count: int = 0
    should_checkpoint: bool = False
    task_description: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def touch(self) -> None:
        self.updated_at = utcnow()


class ActiveSession(BaseModel):
    id: str
    channel_id: str
    channel_name: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    triggered_by: str
    description: str


class PendingAction(BaseModel):
    id: str
    type: ActionType
    reason: str
    requested_at: datetime = Field(default_factory=utcnow)
    requested_by: str | None = None
    channel_id: str | None = None
