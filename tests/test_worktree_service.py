"""Tests for WorktreeManager (worktree lifecycle, commits, merges)."""

import asyncio
import os
import re

import pytest
from git import Repo

from arbiter.errors import SessionNotFoundError, WorkspaceError
from arbiter.models.session import SessionStatus
from arbiter.services.worktree_service import (
    ConflictType,
    WorktreeManager,
    classify_merge_error,
)
from tests.conftest import make_message


def write(path: str, name: str, content: str) -> None:
    with open(os.path.join(path, name), "w", encoding="utf-8") as f:
        f.write(content)


def branch_names(repo_path: str) -> list[str]:
    return [h.name for h in Repo(repo_path).heads]


class TestClassifyMergeError:
    def test_untracked_checked_before_overwritten(self):
        text = (
            "error: The following untracked working tree files would be overwritten by merge:\n"
            "\tnew.txt"
        )
        assert classify_merge_error(text) is ConflictType.untracked_files

    def test_local_changes(self):
        text = "error: Your local changes to the following files would be overwritten by merge:"
        assert classify_merge_error(text) is ConflictType.local_changes

    def test_other(self):
        assert classify_merge_error("fatal: refusing to merge unrelated histories") is ConflictType.other


class TestCreateSession:
    async def test_creates_branch_and_worktree(self, worktrees, git_repo):
        session = await worktrees.create_session(make_message("Fix the bug in auth!"))
        assert session.status is SessionStatus.active
        assert re.match(r"^arbiter/fix-the-bug-in-auth-[0-9a-z]+$", session.branch_name)
        assert re.match(r"^sess-[0-9a-z]+-[0-9a-z]{6}$", session.id)
        assert os.path.isfile(os.path.join(session.worktree_path, "app.py"))
        assert session.worktree_path.startswith(worktrees.worktree_base)
        assert session.branch_name in branch_names(git_repo.working_tree_dir)

    async def test_task_description_names_branch(self, worktrees):
        session = await worktrees.create_session(make_message("hello"), "Add login form")
        assert session.branch_name.startswith("arbiter/add-login-form-")
        assert session.task_description == "Add login form"

    async def test_concurrent_sessions_are_isolated(self, worktrees):
        msg = make_message("same request")
        a, b = await asyncio.gather(
            worktrees.create_session(msg), worktrees.create_session(msg)
        )
        assert a.id != b.id
        assert a.branch_name != b.branch_name
        assert a.worktree_path != b.worktree_path
        assert os.path.isdir(a.worktree_path)
        assert os.path.isdir(b.worktree_path)

    async def test_links_shared_dirs(self, git_repo, worktree_base):
        os.makedirs(os.path.join(git_repo.working_tree_dir, "node_modules"))
        manager = WorktreeManager(git_repo.working_tree_dir, worktree_base, shared_dirs=["node_modules"])
        session = await manager.create_session(make_message())
        link = os.path.join(session.worktree_path, "node_modules")
        assert os.path.islink(link)

    async def test_not_a_repo_raises_and_marks_failed(self, tmp_project_dir, worktree_base):
        manager = WorktreeManager(tmp_project_dir, worktree_base)
        with pytest.raises(WorkspaceError):
            await manager.create_session(make_message())
        sessions = manager.get_sessions()
        assert len(sessions) == 1
        assert sessions[0].status is SessionStatus.failed
        assert not os.path.exists(sessions[0].worktree_path)


class TestRegistry:
    async def test_find_by_channel(self, worktrees):
        session = await worktrees.create_session(make_message(channel_id="c9"))
        assert worktrees.find_session_by_channel("c9") is session
        assert worktrees.find_session_by_channel("other") is None

    async def test_find_ignores_finished(self, worktrees):
        session = await worktrees.create_session(make_message(channel_id="c9"))
        await worktrees.complete_session(session.id)
        assert worktrees.find_session_by_channel("c9") is None

    async def test_add_message_dedupes(self, worktrees):
        session = await worktrees.create_session(make_message())
        follow = make_message("also this")
        worktrees.add_message_to_session(session.id, follow)
        worktrees.add_message_to_session(session.id, follow)
        assert len(session.related_messages) == 2

    def test_unknown_session_raises(self, worktrees):
        with pytest.raises(SessionNotFoundError):
            worktrees.add_message_to_session("nope", make_message())
        with pytest.raises(KeyError):
            worktrees.mark_failed("nope")


class TestCommitChanges:
    async def test_commit_with_changes(self, worktrees, git_repo):
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "feature.py", "x = 1\n")

        sha = await worktrees.commit_changes(session.id, "Add feature")
        assert len(sha) == 40
        assert session.commits == [sha]
        assert session.status is SessionStatus.active

        message = Repo(git_repo.working_tree_dir).commit(sha).message
        assert message.startswith("Add feature")
        assert "Triggered by: alice" in message
        assert "Channel: dev" in message

    async def test_commit_without_changes_is_noop(self, worktrees):
        session = await worktrees.create_session(make_message())
        assert await worktrees.commit_changes(session.id, "Nothing") == ""
        assert session.commits == []
        assert session.status is SessionStatus.active

    async def test_dm_channel_footer(self, worktrees, git_repo):
        session = await worktrees.create_session(make_message(channel_name=None))
        write(session.worktree_path, "a.txt", "a\n")
        sha = await worktrees.commit_changes(session.id, "Tweak")
        assert "Channel: DM" in Repo(git_repo.working_tree_dir).commit(sha).message

    async def test_changed_files_and_diff(self, worktrees):
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "app.py", "def greet():\n    return 'hi'\n")
        write(session.worktree_path, "new.txt", "n\n")

        files = await worktrees.get_changed_files(session.id)
        assert sorted(files) == ["app.py", "new.txt"]
        diff = await worktrees.get_diff(session.id)
        assert "return 'hi'" in diff

    async def test_commit_diff_includes_new_files(self, worktrees):
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "fresh.py", "y = 2\n")
        sha = await worktrees.commit_changes(session.id, "Add fresh.py")

        diff = await worktrees.get_diff(session.id, sha)
        assert "new file mode" in diff
        assert "+y = 2" in diff
        assert await worktrees.get_diff(session.id) == ""

    async def test_inherited_git_dir_is_ignored(self, worktrees, git_repo, monkeypatch):
        repo_dir = git_repo.working_tree_dir
        session = await worktrees.create_session(make_message())
        main_before = Repo(repo_dir).head.commit.hexsha
        monkeypatch.setenv("GIT_DIR", os.path.join(repo_dir, ".git"))
        monkeypatch.setenv("GIT_INDEX_FILE", os.path.join(repo_dir, ".git", "index"))
        write(session.worktree_path, "feature.py", "x = 1\n")

        sha = await worktrees.commit_changes(session.id, "Add feature")
        assert "GIT_DIR" not in os.environ
        assert "GIT_INDEX_FILE" not in os.environ
        repo = Repo(repo_dir)
        assert repo.head.commit.hexsha == main_before
        assert repo.commit(session.branch_name).hexsha == sha


class TestMergeToMain:
    async def test_merge_without_remote(self, worktrees, git_repo):
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "feature.py", "x = 1\n")
        await worktrees.commit_changes(session.id, "Add feature")

        result = await worktrees.merge_to_main(session.id)
        assert result.success
        repo = Repo(git_repo.working_tree_dir)
        head = repo.head.commit
        assert len(head.parents) == 2
        assert head.message.startswith(f"Merge {session.branch_name}")
        assert os.path.isfile(os.path.join(git_repo.working_tree_dir, "feature.py"))

    async def test_unknown_session(self, worktrees):
        result = await worktrees.merge_to_main("missing")
        assert not result.success
        assert "not found" in result.error

    async def test_local_changes_blocks_merge(self, worktrees, git_repo):
        repo_dir = git_repo.working_tree_dir
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "app.py", "def greet():\n    return 'branch'\n")
        await worktrees.commit_changes(session.id, "Change greeting")
        before = Repo(repo_dir).head.commit.hexsha
        write(repo_dir, "app.py", "def greet():\n    return 'local edit'\n")

        result = await worktrees.merge_to_main(session.id)
        assert not result.success
        assert result.conflict_type is ConflictType.local_changes
        assert "app.py" in result.conflict_details
        repo = Repo(repo_dir)
        assert repo.head.commit.hexsha == before
        assert repo.active_branch.name == "main"
        # Blocked merges leave the main checkout untouched.
        with open(os.path.join(repo_dir, "app.py"), encoding="utf-8") as f:
            assert "local edit" in f.read()

    async def test_untracked_files_blocks_merge(self, worktrees, git_repo):
        repo_dir = git_repo.working_tree_dir
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "new.txt", "from branch\n")
        await worktrees.commit_changes(session.id, "Add new.txt")
        write(repo_dir, "new.txt", "untracked in main\n")

        result = await worktrees.merge_to_main(session.id)
        assert not result.success
        assert result.conflict_type is ConflictType.untracked_files
        assert "new.txt" in result.conflict_details
        repo = Repo(repo_dir)
        assert repo.active_branch.name == "main"
        assert not os.path.exists(os.path.join(repo_dir, ".git", "MERGE_HEAD"))

    async def test_conflict_is_aborted(self, worktrees, git_repo):
        repo_dir = git_repo.working_tree_dir
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "app.py", "def greet():\n    return 'branch'\n")
        await worktrees.commit_changes(session.id, "Branch greeting")

        write(repo_dir, "app.py", "def greet():\n    return 'main'\n")
        git_repo.index.add(["app.py"])
        git_repo.index.commit("Main greeting")
        before = Repo(repo_dir).head.commit.hexsha

        result = await worktrees.merge_to_main(session.id)
        assert not result.success
        assert result.conflict_type is ConflictType.merge_conflict
        assert "app.py" in result.conflict_details
        repo = Repo(repo_dir)
        assert repo.active_branch.name == "main"
        assert repo.head.commit.hexsha == before
        assert not os.path.exists(os.path.join(repo_dir, ".git", "MERGE_HEAD"))
        assert not repo.is_dirty()

    async def test_merge_serialized(self, worktrees, git_repo):
        a = await worktrees.create_session(make_message("first"))
        b = await worktrees.create_session(make_message("second"))
        write(a.worktree_path, "a.py", "a = 1\n")
        write(b.worktree_path, "b.py", "b = 1\n")
        await worktrees.commit_changes(a.id, "A")
        await worktrees.commit_changes(b.id, "B")

        results = await asyncio.gather(worktrees.merge_to_main(a.id), worktrees.merge_to_main(b.id))
        assert all(r.success for r in results)
        repo_dir = git_repo.working_tree_dir
        assert os.path.isfile(os.path.join(repo_dir, "a.py"))
        assert os.path.isfile(os.path.join(repo_dir, "b.py"))


class TestRebase:
    async def test_rebase_onto_main(self, worktrees, git_repo):
        repo_dir = git_repo.working_tree_dir
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "feature.py", "x = 1\n")
        await worktrees.commit_changes(session.id, "Feature")

        write(repo_dir, "other.py", "y = 2\n")
        git_repo.index.add(["other.py"])
        git_repo.index.commit("Other work on main")

        assert await worktrees.rebase_onto_main(session.id)
        assert os.path.isfile(os.path.join(session.worktree_path, "other.py"))
        assert session.status is SessionStatus.active

    async def test_conflicting_rebase_is_aborted(self, worktrees, git_repo):
        repo_dir = git_repo.working_tree_dir
        session = await worktrees.create_session(make_message())
        write(session.worktree_path, "app.py", "def greet():\n    return 'branch'\n")
        branch_head = await worktrees.commit_changes(session.id, "Branch greeting")

        write(repo_dir, "app.py", "def greet():\n    return 'main'\n")
        git_repo.index.add(["app.py"])
        git_repo.index.commit("Main greeting")

        assert not await worktrees.rebase_onto_main(session.id)
        assert session.status is SessionStatus.active
        worktree_repo = Repo(session.worktree_path)
        assert not os.path.exists(os.path.join(worktree_repo.git_dir, "rebase-merge"))
        assert not os.path.exists(os.path.join(worktree_repo.git_dir, "rebase-apply"))
        assert worktree_repo.active_branch.name == session.branch_name
        assert worktree_repo.head.commit.hexsha == branch_head
        assert not worktree_repo.is_dirty()


class TestTeardown:
    async def test_complete_keeps_branch(self, worktrees, git_repo):
        session = await worktrees.create_session(make_message())
        await worktrees.complete_session(session.id)
        assert session.status is SessionStatus.completed
        assert not os.path.exists(session.worktree_path)
        assert session.branch_name in branch_names(git_repo.working_tree_dir)

    async def test_abandon_deletes_branch(self, worktrees, git_repo):
        session = await worktrees.create_session(make_message())
        await worktrees.abandon_session(session.id)
        assert session.status is SessionStatus.abandoned
        assert not os.path.exists(session.worktree_path)
        assert session.branch_name not in branch_names(git_repo.working_tree_dir)

    async def test_abandon_unknown_is_ignored(self, worktrees):
        await worktrees.abandon_session("missing")

    async def test_initialize_removes_orphans(self, worktrees):
        session = await worktrees.create_session(make_message())
        orphan = os.path.join(worktrees.worktree_base, "sess-orphan")
        os.makedirs(orphan)
        write(orphan, "junk.txt", "left over\n")

        await worktrees.initialize()
        assert not os.path.exists(orphan)
        assert os.path.isdir(session.worktree_path)


class TestRemote:
    async def test_push_and_merge_with_remote(self, git_repo, worktree_base, tmp_project_dir):
        bare = Repo.init(os.path.join(tmp_project_dir, "remote.git"), bare=True)
        git_repo.create_remote("origin", bare.git_dir)
        git_repo.git.push("origin", "main")
        repo_dir = git_repo.working_tree_dir
        manager = WorktreeManager(repo_dir, worktree_base)

        session = await manager.create_session(make_message())
        write(session.worktree_path, "feature.py", "x = 1\n")
        await manager.commit_changes(session.id, "Feature")
        await manager.push_branch(session.id)
        assert session.branch_name in [h.name for h in bare.heads]

        result = await manager.merge_to_main(session.id)
        assert result.success
        assert bare.commit("main").hexsha == Repo(repo_dir).head.commit.hexsha

    async def test_push_without_remote_raises(self, worktrees):
        session = await worktrees.create_session(make_message())
        with pytest.raises(WorkspaceError) as exc:
            await worktrees.push_branch(session.id)
        assert exc.value.command.startswith("push")
