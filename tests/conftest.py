"""Shared test fixtures."""

import itertools
import os
import shutil
import stat
import tempfile

import pytest
from git import Repo

from arbiter.models.session import ChatMessage
from arbiter.services.worktree_service import WorktreeManager

_ids = itertools.count(1)


@pytest.fixture
def tmp_project_dir():
    """Create a temporary project directory and clean up after test."""
    d = tempfile.mkdtemp(prefix="arbiter-test-")
    yield d
    shutil.rmtree(d, ignore_errors=True)


def init_repo(path: str) -> Repo:
    """Initialize a repo on ``main`` with one committed file."""
    repo = Repo.init(path, initial_branch="main")
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Arbiter Test")
        cw.set_value("user", "email", "arbiter@test.local")
        cw.set_value("commit", "gpgsign", "false")
    with open(os.path.join(path, "README.md"), "w", encoding="utf-8") as f:
        f.write("# Test repo\n")
    with open(os.path.join(path, "app.py"), "w", encoding="utf-8") as f:
        f.write("def greet():\n    return 'hello'\n")
    repo.index.add(["README.md", "app.py"])
    repo.index.commit("Initial commit")
    return repo


@pytest.fixture
def git_repo():
    """A fresh git repository with no remote."""
    d = tempfile.mkdtemp(prefix="arbiter-repo-")
    repo = init_repo(d)
    yield repo
    repo.close()
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def worktree_base():
    d = tempfile.mkdtemp(prefix="arbiter-wt-")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def worktrees(git_repo, worktree_base):
    return WorktreeManager(
        repo_path=git_repo.working_tree_dir,
        worktree_base=worktree_base,
        default_branch="main",
    )


def make_message(content: str = "fix the bug in auth", **overrides) -> ChatMessage:
    n = next(_ids)
    data = {
        "id": f"m{n}",
        "content": content,
        "author_id": "u1",
        "author_name": "alice",
        "channel_id": "c1",
        "channel_name": "dev",
    }
    data.update(overrides)
    return ChatMessage(**data)


@pytest.fixture
def message_factory():
    return make_message


def write_script(directory: str, name: str, body: str) -> str:
    """Write an executable shell script and return its path."""
    path = os.path.join(directory, name)
    with open(path, "w", encoding="utf-8") as f:
        f.write("#!/bin/sh\n" + body)
    os.chmod(path, os.stat(path).st_mode | stat.S_IEXEC)
    return path
