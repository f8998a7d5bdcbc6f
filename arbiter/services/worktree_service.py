"""Manages isolated git worktrees for work sessions."""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum

from git import Git, GitCommandError, GitCommandNotFound

from arbiter.errors import SessionNotFoundError, WorkspaceError
from arbiter.models.session import ChatMessage, SessionStatus, WorkSession
from arbiter.utils.text import now_ms, random_base36, slugify, strip_nul, to_base36

logger = logging.getLogger(__name__)

# Applied on top of the inherited environment for every git call, once
# inherited GIT_* variables have been dropped by _scrub_git_environment.
GIT_ENV = {
    "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_EDITOR": "true",
    "GIT_MERGE_AUTOEDIT": "no",
    "LC_ALL": "C",
}

BRANCH_PREFIX = "arbiter/"
REMOTE = "origin"


class ConflictType(str, Enum):
    local_changes = "local_changes"
    untracked_files = "untracked_files"
    merge_conflict = "merge_conflict"
    other = "other"


@dataclass
class MergeResult:
    success: bool
    error: str = ""
    conflict_type: ConflictType | None = None
    conflict_details: str = ""


def classify_merge_error(error_text: str) -> ConflictType:
    """Map git's merge error output to a conflict type.

    The untracked-files message also says "would be overwritten", so it is
    checked first.
    """
    if "untracked working tree files" in error_text:
        return ConflictType.untracked_files
    if "local changes" in error_text or "would be overwritten" in error_text:
        return ConflictType.local_changes
    return ConflictType.other


def _scrub_git_environment() -> None:
    """Drop inherited GIT_* variables such as GIT_DIR or GIT_INDEX_FILE.

    GitPython layers ``env`` over ``os.environ`` and cannot unset keys, so a
    stray GIT_DIR would point every command at another repository. The
    GIT_PYTHON_* settings belong to GitPython itself and are kept.
    """
    stale = [
        key for key in os.environ
        if key.startswith("GIT_") and not key.startswith("GIT_PYTHON_") and key not in GIT_ENV
    ]
    for key in stale:
        logger.debug("Ignoring inherited %s", key)
        os.environ.pop(key, None)


class WorktreeManager:
    """Creates, commits, merges and removes per-session git worktrees.

    All git commands run as argv (never through a shell) with a fixed
    environment, on a worker thread so the event loop stays responsive.
    Commands that touch the main repository's refs or checkout are
    serialized by a repository-wide lock.
    """

    def __init__(
        self,
        repo_path: str,
        worktree_base: str,
        default_branch: str = "main",
        shared_dirs: list[str] | None = None,
    ) -> None:
        self._repo_path = os.path.abspath(repo_path)
        self._worktree_base = os.path.abspath(worktree_base)
        self._default_branch = default_branch
        self._shared_dirs = list(shared_dirs) if shared_dirs is not None else [".venv", "node_modules"]
        self._sessions: dict[str, WorkSession] = {}
        self._repo_lock = asyncio.Lock()

    @property
    def repo_path(self) -> str:
        return self._repo_path

    @property
    def default_branch(self) -> str:
        return self._default_branch

    @property
    def worktree_base(self) -> str:
        return self._worktree_base

    # -- git plumbing ---------------------------------------------------

    async def _git(self, cwd: str, *args: str) -> str:
        """Run ``git <args>`` in cwd and return stdout.

        Raises:
            WorkspaceError: git exited non-zero. ``stderr`` carries git's
                combined stderr and stdout for classification.
        """
        command = [Git.GIT_PYTHON_GIT_EXECUTABLE or "git", *args]
        _scrub_git_environment()
        try:
            return await asyncio.to_thread(Git(cwd).execute, command, env=GIT_ENV)
        except (GitCommandError, GitCommandNotFound) as e:
            output = "\n".join(
                part for part in (_plain(e.stderr), _plain(e.stdout)) if part
            )
            raise WorkspaceError(
                f"git {args[0]} failed: {output or e}",
                command=" ".join(args),
                stderr=output,
            ) from e

    async def _git_quiet(self, cwd: str, *args: str) -> bool:
        """Best-effort git call. Returns False instead of raising."""
        try:
            await self._git(cwd, *args)
            return True
        except WorkspaceError as e:
            logger.debug("Best-effort git %s failed: %s", args[0], e.stderr or e)
            return False

    async def _ref_exists(self, cwd: str, ref: str) -> bool:
        try:
            await self._git(cwd, "rev-parse", "--verify", "--quiet", ref)
            return True
        except WorkspaceError:
            return False

    async def _base_ref(self, cwd: str) -> str:
        remote_ref = f"{REMOTE}/{self._default_branch}"
        if await self._ref_exists(cwd, remote_ref):
            return remote_ref
        return self._default_branch

    # -- lifecycle ------------------------------------------------------

    async def initialize(self) -> None:
        """Ensure the worktree base exists and drop stale worktrees."""
        os.makedirs(self._worktree_base, exist_ok=True)
        async with self._repo_lock:
            if not await self._git_quiet(self._repo_path, "worktree", "prune"):
                logger.warning("git worktree prune failed in %s", self._repo_path)

        for name in sorted(os.listdir(self._worktree_base)):
            path = os.path.join(self._worktree_base, name)
            if not os.path.isdir(path) or os.path.exists(os.path.join(path, ".git")):
                continue
            logger.info("Removing orphaned worktree directory %s", path)
            try:
                await asyncio.to_thread(shutil.rmtree, path)
            except OSError:
                logger.warning("Could not remove %s", path, exc_info=True)

    def _new_identity(self, task_description: str) -> tuple[str, str]:
        stamp = to_base36(now_ms())
        session_id = f"sess-{stamp}-{random_base36(6)}"
        while session_id in self._sessions:
            session_id = f"sess-{stamp}-{random_base36(6)}"
        branch = f"{BRANCH_PREFIX}{slugify(task_description)}-{stamp}"
        return session_id, branch

    async def _unique_branch(self, branch: str) -> str:
        taken = {s.branch_name for s in self._sessions.values()}
        candidate, n = branch, 1
        while candidate in taken or await self._ref_exists(
            self._repo_path, f"refs/heads/{candidate}"
        ):
            n += 1
            candidate = f"{branch}-{n}"
        return candidate

    async def create_session(
        self, trigger_message: ChatMessage, task_description: str = ""
    ) -> WorkSession:
        """Create a branch and worktree for a new session.

        Raises:
            WorkspaceError: the branch or worktree could not be created. Any
                partial state is removed and the session is marked failed.
        """
        description = task_description or trigger_message.content
        session_id, branch = self._new_identity(description)
        path = os.path.join(self._worktree_base, session_id)

        async with self._repo_lock:
            branch = await self._unique_branch(branch)
            session = WorkSession(
                id=session_id,
                branch_name=branch,
                worktree_path=path,
                triggered_by=trigger_message,
                related_messages=[trigger_message],
                task_description=description,
            )
            self._sessions[session_id] = session

            created_branch = False
            try:
                os.makedirs(self._worktree_base, exist_ok=True)
                if not await self._git_quiet(self._repo_path, "fetch", REMOTE):
                    logger.info("No remote to fetch from, branching from local %s", self._default_branch)
                base = await self._base_ref(self._repo_path)
                await self._git(self._repo_path, "branch", branch, base)
                created_branch = True
                await self._git(self._repo_path, "worktree", "add", path, branch)
            except (WorkspaceError, OSError) as e:
                session.status = SessionStatus.failed
                session.touch()
                logger.error("Failed to create session %s: %s", session_id, e)
                await self._remove_worktree(path)
                if created_branch:
                    await self._git_quiet(self._repo_path, "branch", "-D", branch)
                if isinstance(e, WorkspaceError):
                    raise
                raise WorkspaceError(f"Could not create workspace: {e}") from e

        self._link_shared_dirs(path)
        session.status = SessionStatus.active
        session.touch()
        logger.info("Created session %s on %s at %s", session_id, branch, path)
        return session

    def _link_shared_dirs(self, worktree_path: str) -> None:
        for name in self._shared_dirs:
            source = os.path.join(self._repo_path, name)
            target = os.path.join(worktree_path, name)
            if not os.path.isdir(source) or os.path.lexists(target):
                continue
            try:
                os.symlink(source, target, target_is_directory=True)
                logger.debug("Linked %s into %s", name, worktree_path)
            except OSError:
                logger.warning("Could not link %s into %s", name, worktree_path, exc_info=True)

    # -- session registry -----------------------------------------------

    def get_session(self, session_id: str) -> WorkSession | None:
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> WorkSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_sessions(self) -> list[WorkSession]:
        return list(self._sessions.values())

    def get_active_sessions(self) -> list[WorkSession]:
        return [s for s in self._sessions.values() if s.is_live]

    def find_session_by_channel(self, channel_id: str) -> WorkSession | None:
        """Return the session currently working for a channel, if any."""
        for session in self._sessions.values():
            if (
                session.triggered_by.channel_id == channel_id
                and session.status
                in (SessionStatus.active, SessionStatus.committing, SessionStatus.rebasing)
            ):
                return session
        return None

    def add_message_to_session(self, session_id: str, message: ChatMessage) -> None:
        session = self._require(session_id)
        if all(m.id != message.id for m in session.related_messages):
            session.related_messages.append(message)
        session.touch()

    # -- worktree operations --------------------------------------------

    async def commit_changes(self, session_id: str, message: str) -> str:
        """Stage everything and commit. Returns the hash, or "" if nothing changed."""
        session = self._require(session_id)
        session.status = SessionStatus.committing
        session.touch()
        try:
            await self._git(session.worktree_path, "add", "-A")
            staged = await self._git(session.worktree_path, "diff", "--cached", "--name-only")
            if not staged.strip():
                logger.info("Nothing to commit for session %s", session_id)
                return ""

            trigger = session.triggered_by
            full_message = strip_nul(
                f"{message}\n\nTriggered by: {trigger.author_name}\n"
                f"Channel: {trigger.channel_name or 'DM'}"
            )
            await self._git(session.worktree_path, "commit", "-m", full_message)
            commit_hash = (await self._git(session.worktree_path, "rev-parse", "HEAD")).strip()
            session.commits.append(commit_hash)
            logger.info("Committed %s in session %s", commit_hash[:8], session_id)
            return commit_hash
        finally:
            session.status = SessionStatus.active
            session.touch()

    async def rebase_onto_main(self, session_id: str) -> bool:
        """Rebase the session branch onto the latest default branch."""
        session = self._require(session_id)
        session.status = SessionStatus.rebasing
        session.touch()
        try:
            await self._git_quiet(session.worktree_path, "fetch", REMOTE)
            base = await self._base_ref(session.worktree_path)
            await self._git(session.worktree_path, "rebase", base)
            logger.info("Rebased %s onto %s", session.branch_name, base)
            return True
        except WorkspaceError as e:
            logger.warning("Rebase failed for %s: %s", session_id, e)
            await self._git_quiet(session.worktree_path, "rebase", "--abort")
            return False
        finally:
            session.status = SessionStatus.active
            session.touch()

    async def push_branch(self, session_id: str) -> None:
        session = self._require(session_id)
        await self._git(session.worktree_path, "push", "-u", REMOTE, session.branch_name)
        logger.info("Pushed branch %s", session.branch_name)

    async def merge_to_main(self, session_id: str) -> MergeResult:
        """Merge the session branch into the default branch of the main repo."""
        session = self._sessions.get(session_id)
        if session is None:
            return MergeResult(success=False, error=f"Session {session_id} not found")

        repo = self._repo_path
        branch = session.branch_name
        async with self._repo_lock:
            logger.info("Merging %s into %s", branch, self._default_branch)
            try:
                if not await self._git_quiet(repo, "fetch", REMOTE):
                    logger.info("No remote to fetch from, continuing")
                await self._git(repo, "checkout", self._default_branch)
                if not await self._git_quiet(repo, "pull", REMOTE, self._default_branch):
                    logger.info("No remote to pull from, continuing")

                message = strip_nul(
                    f"Merge {branch}: Self-edit by {session.triggered_by.author_name}"
                )
                try:
                    await self._git(repo, "merge", "--no-ff", "-m", message, branch)
                except WorkspaceError as merge_error:
                    result = await self._classify_failed_merge(merge_error)
                    if result is None:
                        raise
                    logger.warning("Merge of %s blocked: %s", branch, result.conflict_type.value)
                    return result

                if not await self._git_quiet(repo, "push", REMOTE, self._default_branch):
                    logger.info("No remote to push to, continuing")
                logger.info("Merged %s into %s", branch, self._default_branch)
                return MergeResult(success=True)
            except WorkspaceError as e:
                logger.error("Merge of %s failed: %s", branch, e)
                await self._restore_main()
                return MergeResult(
                    success=False,
                    error=f"Merge failed: {e}",
                    conflict_type=ConflictType.other,
                    conflict_details=e.stderr or str(e),
                )

    async def _classify_failed_merge(self, merge_error: WorkspaceError) -> MergeResult | None:
        """Build a MergeResult for a recognised failure, or None for anything else."""
        repo = self._repo_path
        status = await self._git(repo, "status")
        if "Unmerged" in status or "both modified" in status:
            await self._git(repo, "merge", "--abort")
            return MergeResult(
                success=False,
                error="Merge conflict detected.",
                conflict_type=ConflictType.merge_conflict,
                conflict_details=status,
            )

        details = merge_error.stderr or str(merge_error)
        kind = classify_merge_error(details)
        if kind is ConflictType.untracked_files:
            return MergeResult(
                success=False,
                error="Untracked files would be overwritten by merge.",
                conflict_type=kind,
                conflict_details=details,
            )
        if kind is ConflictType.local_changes:
            return MergeResult(
                success=False,
                error="Local changes would be overwritten by merge.",
                conflict_type=kind,
                conflict_details=details,
            )
        return None

    async def _restore_main(self) -> None:
        repo = self._repo_path
        await self._git_quiet(repo, "merge", "--abort")
        if not await self._git_quiet(repo, "checkout", "-f", self._default_branch):
            logger.error("Could not check out %s after failed merge", self._default_branch)
            return
        if not await self._git_quiet(repo, "reset", "--hard", f"{REMOTE}/{self._default_branch}"):
            await self._git_quiet(repo, "reset", "--hard", "HEAD")

    async def _remove_worktree(self, path: str) -> None:
        if not await self._git_quiet(self._repo_path, "worktree", "remove", "--force", path):
            if os.path.exists(path):
                try:
                    await asyncio.to_thread(shutil.rmtree, path)
                except OSError:
                    logger.warning("Could not delete %s", path, exc_info=True)
            await self._git_quiet(self._repo_path, "worktree", "prune")

    async def complete_session(self, session_id: str) -> None:
        """Remove the worktree and mark the session completed. The branch is kept."""
        session = self._require(session_id)
        async with self._repo_lock:
            await self._remove_worktree(session.worktree_path)
        session.status = SessionStatus.completed
        session.touch()
        logger.info("Completed session %s", session_id)

    async def abandon_session(self, session_id: str) -> None:
        """Remove the worktree and delete the branch."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        async with self._repo_lock:
            await self._remove_worktree(session.worktree_path)
            await self._git_quiet(self._repo_path, "branch", "-D", session.branch_name)
        session.status = SessionStatus.abandoned
        session.touch()
        logger.info("Abandoned session %s", session_id)

    def mark_failed(self, session_id: str) -> None:
        session = self._require(session_id)
        session.status = SessionStatus.failed
        session.touch()

    async def get_diff(self, session_id: str, commit: str | None = None) -> str:
        """Patch introduced by ``commit``, new files included.

        Without a commit, returns uncommitted changes to tracked files
        relative to HEAD.
        """
        session = self._require(session_id)
        if commit:
            return await self._git(session.worktree_path, "show", "--format=", "--no-color", commit)
        return await self._git(session.worktree_path, "diff", "HEAD")

    async def get_changed_files(self, session_id: str) -> list[str]:
        session = self._require(session_id)
        status = await self._git(
            session.worktree_path, "status", "--porcelain", "--untracked-files=all"
        )
        files = []
        for line in status.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            files.append(path.strip('"'))
        return files


def _plain(text: str | bytes | None) -> str:
    """Undo GitPython's ``\\n  stderr: '...'`` decoration on error output."""
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = text.strip()
    for prefix in ("stderr:", "stdout:"):
        if text.startswith(prefix):
            text = text[len(prefix):].strip()
            if len(text) >= 2 and text[0] == text[-1] == "'":
                text = text[1:-1]
    return text.strip()
