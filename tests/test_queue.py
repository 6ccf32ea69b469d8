"""
Queue worker tests
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeTool, ScriptedPlanner, SleepRecorder, audit_messages, make_steps


def _engine(store, memory, audit, planner=None, tool_factory=None):
    from agent_engine.engine import AgentEngine
    return AgentEngine(
        store, memory, planner or ScriptedPlanner(plan_titles=["Open the page"]), audit,
        executor_factory=tool_factory or (lambda run, preferences: FakeTool()),
        sleep=SleepRecorder(),
        watchdog_seconds=60,
    )


def _mock_engine(store, audit, run_side_effect=None):
    engine = MagicMock()
    engine.store = store
    engine.audit = audit
    engine.run = AsyncMock(side_effect=run_side_effect)
    return engine


class TestTick:
    """Claiming queued runs"""

    @pytest.mark.asyncio
    async def test_tick_runs_queued_runs_to_completion(self, store, memory, audit):
        from agent_engine.models import RunStatus
        from agent_engine.queue import AgentQueue
        engine = _engine(store, memory, audit)
        first = await engine.create_run("Open https://example.com")
        second = await engine.create_run("Open https://example.org")
        queue = AgentQueue(engine, poll_interval=0.01, max_concurrent=2, stuck_threshold_seconds=600)

        started = await queue.tick()
        await queue.wait_idle()

        assert started == [first.id, second.id]
        assert (await store.get_run(first.id)).status == RunStatus.COMPLETED
        assert (await store.get_run(second.id)).status == RunStatus.COMPLETED
        assert queue.active_run_ids == []

    @pytest.mark.asyncio
    async def test_tick_respects_capacity(self, store, audit):
        from agent_engine.models import AgentRun, RunStatus
        from agent_engine.queue import AgentQueue
        release = asyncio.Event()

        async def slow_run(run_id):
            await release.wait()

        engine = _mock_engine(store, audit, slow_run)
        for prompt in ("first", "second", "third"):
            await store.create_run(AgentRun(prompt=prompt))
        queue = AgentQueue(engine, max_concurrent=2, stuck_threshold_seconds=600)

        started = await queue.tick()
        again = await queue.tick()

        assert len(started) == 2
        assert again == []
        assert len(await store.list_runs(RunStatus.QUEUED)) == 1
        assert len(await store.list_runs(RunStatus.RUNNING)) == 2

        release.set()
        await queue.wait_idle()
        assert queue.active_run_ids == []

    @pytest.mark.asyncio
    async def test_engine_exception_marks_run_failed(self, store, audit):
        from agent_engine.models import AgentRun, RunStatus
        from agent_engine.queue import AgentQueue
        engine = _mock_engine(store, audit, RuntimeError("worker exploded"))
        run = await store.create_run(AgentRun(prompt="Open https://example.com"))
        queue = AgentQueue(engine, max_concurrent=1, stuck_threshold_seconds=600)

        await queue.tick()
        await queue.wait_idle()

        stored = await store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error_message == "worker exploded"
        assert stored.finished_at is not None


class TestStuckRecovery:
    """Runs left running by a dead worker"""

    @pytest.mark.asyncio
    async def test_stale_running_run_is_requeued(self, store, audit):
        from agent_engine.checkpoint import Checkpoint
        from agent_engine.models import AgentRun, RunStatus, utcnow
        from agent_engine.queue import AgentQueue
        steps = make_steps(["Open the page"])
        run = await store.create_run(AgentRun(
            prompt="Open https://example.com",
            status=RunStatus.RUNNING,
            plan_state=Checkpoint(steps=steps, active_step_id=steps[0].id).to_dict(),
        ))
        await store.update_run(run.id, updated_at=utcnow() - timedelta(minutes=30))
        queue = AgentQueue(_mock_engine(store, audit), stuck_threshold_seconds=300)

        recovered = await queue.recover_stuck_runs()

        stored = await store.get_run(run.id)
        assert recovered == [run.id]
        assert stored.status == RunStatus.QUEUED
        assert stored.plan_state["resume_requested_at"] is not None
        assert "Run re-queued after stall." in audit_messages(audit, run.id)

    @pytest.mark.asyncio
    async def test_fresh_running_run_is_left_alone(self, store, audit):
        from agent_engine.models import AgentRun, RunStatus
        from agent_engine.queue import AgentQueue
        run = await store.create_run(AgentRun(prompt="Open https://example.com", status=RunStatus.RUNNING))
        queue = AgentQueue(_mock_engine(store, audit), stuck_threshold_seconds=300)

        assert await queue.recover_stuck_runs() == []
        assert (await store.get_run(run.id)).status == RunStatus.RUNNING


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_polls_and_stop_cancels(self, store, memory, audit):
        from agent_engine.models import RunStatus
        from agent_engine.queue import AgentQueue
        engine = _engine(store, memory, audit)
        run = await engine.create_run("Open https://example.com")
        queue = AgentQueue(engine, poll_interval=0.01, max_concurrent=1, stuck_threshold_seconds=600)

        await queue.start()
        for _ in range(200):
            if (await store.get_run(run.id)).status == RunStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await queue.stop()

        assert (await store.get_run(run.id)).status == RunStatus.COMPLETED
        assert queue.active_run_ids == []
