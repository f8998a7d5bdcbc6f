"""Tests for SessionCoordinator (draining, action execution, observers)."""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest

from arbiter.errors import CoordinatorRejectedError
from arbiter.models.session import ActionType, CoordinatorState, WorkSession
from arbiter.services.coordinator import CoordinatorObserver, SessionCoordinator
from tests.conftest import make_message


def make_session(session_id: str, channel_id: str = "c1") -> WorkSession:
    return WorkSession(
        id=session_id,
        branch_name=f"arbiter/{session_id}",
        worktree_path=f"/tmp/{session_id}",
        triggered_by=make_message("do the thing", channel_id=channel_id),
    )


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class Recorder(CoordinatorObserver):
    def __init__(self):
        self.notes: list[tuple[str, str | None]] = []
        self.states: list[CoordinatorState] = []
        self.executed: list[str] = []

    async def on_notify(self, message, channel_id):
        self.notes.append((message, channel_id))

    async def on_state_changed(self, old, new):
        self.states.append(new)

    async def on_action_executing(self, action):
        self.executed.append(action.type.value)


@pytest.fixture
def terminate():
    return MagicMock()


@pytest.fixture
def coordinator(terminate):
    return SessionCoordinator(exit_delay=0, terminate=terminate)


class TestSessions:
    async def test_register_and_complete(self, coordinator):
        active = coordinator.register_session(make_session("s1"))
        assert active.triggered_by == "alice"
        assert coordinator.get_active_session_count() == 1
        coordinator.complete_session("s1", True, "done")
        assert coordinator.get_active_session_count() == 0
        assert coordinator.get_state() is CoordinatorState.running

    async def test_complete_unknown_is_ignored(self, coordinator):
        coordinator.complete_session("missing", True)
        assert coordinator.get_active_session_count() == 0

    async def test_completion_notification(self, coordinator):
        recorder = Recorder()
        coordinator.add_observer(recorder)
        coordinator.register_session(make_session("s1", channel_id="c7"))
        coordinator.complete_session("s1", False, "boom")
        await settle()
        text, channel = recorder.notes[-1]
        assert "Session Failed" in text
        assert "Duration: " in text
        assert channel == "c7"


class TestDraining:
    async def test_restart_waits_for_sessions(self, coordinator, terminate):
        coordinator.register_session(make_session("s1"))
        coordinator.register_session(make_session("s2"))

        coordinator.request_restart("deploy")
        assert coordinator.get_state() is CoordinatorState.draining

        coordinator.complete_session("s1", True)
        await settle()
        terminate.assert_not_called()
        assert coordinator.get_state() is CoordinatorState.draining

        coordinator.complete_session("s2", True)
        await coordinator.join()
        terminate.assert_called_once()
        assert coordinator.get_state() is CoordinatorState.stopped

    async def test_executes_on_next_tick_without_sessions(self, coordinator, terminate):
        coordinator.request_shutdown("maintenance")
        # Never inside the caller.
        terminate.assert_not_called()
        assert coordinator.get_state() is CoordinatorState.draining
        await coordinator.join()
        terminate.assert_called_once()

    async def test_rejects_new_sessions_while_draining(self, coordinator):
        coordinator.register_session(make_session("s1"))
        coordinator.request_restart("deploy")
        assert not coordinator.can_start_session()
        with pytest.raises(CoordinatorRejectedError) as exc:
            coordinator.register_session(make_session("s2"))
        assert "restart pending (deploy)" in str(exc.value)
        assert exc.value.state == "draining"

    async def test_actions_run_in_order(self, coordinator, terminate):
        recorder = Recorder()
        coordinator.add_observer(recorder)
        hook = AsyncMock()
        coordinator.add_cleanup_hook(hook)
        coordinator.register_session(make_session("s1"))

        coordinator.queue_action(ActionType.cleanup, "tidy")
        coordinator.queue_action("restart", "deploy")
        assert [a.type for a in coordinator.get_pending_actions()] == [
            ActionType.cleanup,
            ActionType.restart,
        ]
        coordinator.complete_session("s1", True)
        await coordinator.join()

        assert recorder.executed == ["cleanup", "restart"]
        hook.assert_awaited_once()
        terminate.assert_called_once()
        assert coordinator.get_pending_actions() == []

    async def test_cleanup_returns_to_running(self, coordinator, terminate):
        hook = AsyncMock()
        coordinator.add_cleanup_hook(hook)
        coordinator.queue_action(ActionType.cleanup, "tidy")
        await coordinator.join()
        hook.assert_awaited_once()
        terminate.assert_not_called()
        assert coordinator.get_state() is CoordinatorState.running
        assert coordinator.can_start_session()

    async def test_failing_action_is_reported(self, coordinator):
        recorder = Recorder()
        coordinator.add_observer(recorder)
        coordinator.add_cleanup_hook(AsyncMock(side_effect=RuntimeError("disk full")))
        coordinator.queue_action(ActionType.cleanup, "tidy", channel_id="ops")
        await coordinator.join()
        assert any("Cleanup Failed" in text and "disk full" in text for text, _ in recorder.notes)
        assert coordinator.get_state() is CoordinatorState.running

    async def test_unknown_action_type(self, coordinator):
        with pytest.raises(ValueError):
            coordinator.queue_action("reboot", "nope")


class TestObservers:
    async def test_failing_observer_is_isolated(self, coordinator):
        class Broken(CoordinatorObserver):
            async def on_notify(self, message, channel_id):
                raise RuntimeError("observer down")

        recorder = Recorder()
        coordinator.add_observer(Broken())
        coordinator.add_observer(recorder)
        coordinator.notify_startup()
        await settle()
        assert recorder.notes[0][0].startswith("**Bot Online**")

    async def test_status_channel_fallback(self, coordinator):
        recorder = Recorder()
        coordinator.add_observer(recorder)
        coordinator.set_status_channel("status")
        coordinator.notify_startup()
        await settle()
        assert recorder.notes[0][1] == "status"

    async def test_remove_observer(self, coordinator):
        recorder = Recorder()
        coordinator.add_observer(recorder)
        coordinator.remove_observer(recorder)
        coordinator.notify_startup()
        await settle()
        assert recorder.notes == []

    async def test_state_changes_reported(self, coordinator):
        recorder = Recorder()
        coordinator.add_observer(recorder)
        coordinator.queue_action(ActionType.cleanup, "tidy")
        await coordinator.join()
        await settle()
        assert recorder.states == [
            CoordinatorState.draining,
            CoordinatorState.executing,
            CoordinatorState.running,
        ]


class TestSignals:
    async def test_signal_queues_shutdown(self, coordinator):
        coordinator.register_session(make_session("s1"))
        coordinator.handle_signal(signal.SIGTERM)
        pending = coordinator.get_pending_actions()
        assert len(pending) == 1
        assert pending[0].type is ActionType.shutdown
        assert pending[0].reason == "Received SIGTERM signal"
        assert pending[0].requested_by == "system"

    async def test_duplicate_signal_ignored(self, coordinator):
        coordinator.register_session(make_session("s1"))
        coordinator.handle_signal(signal.SIGTERM)
        coordinator.handle_signal(signal.SIGINT)
        assert len(coordinator.get_pending_actions()) == 1


class TestSnapshot:
    async def test_snapshot(self, coordinator):
        coordinator.register_session(make_session("s1"))
        coordinator.request_restart("deploy", requested_by="bob")
        snap = coordinator.snapshot()
        assert snap["state"] == "draining"
        assert snap["active_sessions"][0]["id"] == "s1"
        assert snap["pending_actions"][0]["type"] == "restart"
        assert snap["pending_actions"][0]["requested_by"] == "bob"
