"""Checkpoint commits for folding new instructions into a running session."""

import logging

from arbiter.errors import WorkspaceError
from arbiter.models.session import ChatMessage, WorkSession
from arbiter.services.worktree_service import WorktreeManager
from arbiter.utils.text import truncate

logger = logging.getLogger(__name__)

CHECKPOINT_BODY = "Automated checkpoint before incorporating new instructions."


def request_checkpoint(session: WorkSession, message: ChatMessage) -> None:
    """Record a follow-up message and flag the session for a checkpoint."""
    session.pending_messages.append(message)
    session.should_checkpoint = True
    session.touch()


def clear_checkpoint_request(session: WorkSession) -> list[ChatMessage]:
    """Reset the checkpoint flag and return the messages that were pending."""
    pending = list(session.pending_messages)
    session.pending_messages = []
    session.should_checkpoint = False
    session.touch()
    return pending


async def create_checkpoint(session: WorkSession, worktrees: WorktreeManager) -> str:
    """Commit work in progress. Returns the commit hash, or "" when nothing changed.

    The checkpoint counter only advances when a commit is actually made.
    """
    changed = await worktrees.get_changed_files(session.id)
    if not changed:
        logger.info("No changes to checkpoint for session %s", session.id)
        return ""

    number = session.checkpoint_count + 1
    commit_hash = await worktrees.commit_changes(
        session.id, f"Checkpoint {number}: Work in progress\n\n{CHECKPOINT_BODY}"
    )
    if commit_hash:
        session.checkpoint_count = number
        logger.info("Created checkpoint %d for %s: %s", number, session.id, commit_hash[:8])
    return commit_hash


async def get_checkpoint_diff(session: WorkSession, worktrees: WorktreeManager, commit: str) -> str:
    """Render what a checkpoint commit contains, for the continuation prompt."""
    if not commit:
        return "No changes detected"
    try:
        diff = await worktrees.get_diff(session.id, commit)
    except WorkspaceError:
        logger.warning("Could not read diff for %s", session.id, exc_info=True)
        return "Unable to retrieve diff"
    return diff.strip() or "No changes detected"


def format_pending_messages(messages: list[ChatMessage]) -> str:
    if not messages:
        return "No pending messages"
    return "\n".join(
        f"{i}. {m.author_name}: {truncate(m.content, 100)}" for i, m in enumerate(messages, start=1)
    )
