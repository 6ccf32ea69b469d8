"""
Checkpoint document and store tests

The SQL stores run against a throwaway sqlite file through aiosqlite.
"""
import pytest

from fakes import make_steps


async def _sql_stores(tmp_path):
    from agent_engine.database import (
        SqlAuditLogger,
        SqlCheckpointStore,
        SqlMemoryStore,
        create_engine_for,
        create_session_factory,
        init_async_db,
    )
    engine = create_engine_for(f"sqlite:///{tmp_path / 'agent.db'}")
    await init_async_db(engine)
    factory = create_session_factory(engine)
    return engine, SqlCheckpointStore(factory), SqlMemoryStore(factory), SqlAuditLogger(factory)


# ============================================================
# Document
# ============================================================

class TestCheckpointDocument:
    """Serialization and tolerant parsing"""

    def test_round_trip_keeps_plan_and_watermarks(self):
        from agent_engine.checkpoint import Checkpoint, parse_checkpoint
        from agent_engine.models import StepStatus, TaskType
        steps = make_steps(["Open the page", "Collect the names"])
        steps[0].status = StepStatus.COMPLETED
        steps[0].attempts = 1
        checkpoint = Checkpoint(
            steps=steps,
            active_step_id=steps[1].id,
            last_error="Element not found.",
            task_type=TaskType.EXTRACT_INFO,
            approval_requested_step_id=steps[1].id,
            summary_checkpoint=5,
            settings={"max_steps": 8},
            preferences={"require_human_approval": True},
        )

        parsed = parse_checkpoint(checkpoint.to_dict())

        assert [step.id for step in parsed.steps] == [step.id for step in steps]
        assert parsed.steps[0].status == StepStatus.COMPLETED
        assert parsed.steps[0].attempts == 1
        assert parsed.active_step_id == steps[1].id
        assert parsed.last_error == "Element not found."
        assert parsed.task_type == TaskType.EXTRACT_INFO
        assert parsed.approval_requested_step_id == steps[1].id
        assert parsed.summary_checkpoint == 5
        assert parsed.settings == {"max_steps": 8}
        assert parsed.step_index(steps[1].id) == 1
        assert parsed.step_index("missing") == -1

    @pytest.mark.parametrize("raw", [None, "plan", [], {}, {"steps": "nope"}])
    def test_unusable_documents_parse_to_none(self, raw):
        from agent_engine.checkpoint import parse_checkpoint
        assert parse_checkpoint(raw) is None

    def test_junk_fields_fall_back(self):
        from agent_engine.checkpoint import parse_checkpoint
        parsed = parse_checkpoint({
            "steps": [{"title": "Open the page", "status": "exploded"}, "not a step"],
            "active_step_id": 42,
            "summary_checkpoint": "five",
            "task_type": "unknown",
            "settings": ["max_steps"],
        })

        assert len(parsed.steps) == 1
        assert parsed.steps[0].status.value == "pending"
        assert parsed.active_step_id is None
        assert parsed.summary_checkpoint == 0
        assert parsed.task_type is None
        assert parsed.settings == {}


# ============================================================
# In-memory store
# ============================================================

class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        from agent_engine.checkpoint import Checkpoint
        from agent_engine.models import AgentRun, RunStatus
        run = await store.create_run(AgentRun(prompt="Open https://example.com"))
        steps = make_steps(["Open the page"])

        await store.save(run.id, Checkpoint(steps=steps, active_step_id=steps[0].id), status=RunStatus.RUNNING)
        loaded = await store.load(run.id)
        stored = await store.get_run(run.id)

        assert loaded.active_step_id == steps[0].id
        assert stored.status == RunStatus.RUNNING
        assert stored.active_step_id == steps[0].id
        assert stored.checkpointed_at is not None

    @pytest.mark.asyncio
    async def test_returned_runs_are_copies(self, store):
        from agent_engine.models import AgentRun
        run = await store.create_run(AgentRun(prompt="Open https://example.com", plan_state={"steps": []}))

        fetched = await store.get_run(run.id)
        fetched.plan_state["steps"].append({"title": "sneaky"})

        assert (await store.get_run(run.id)).plan_state == {"steps": []}

    @pytest.mark.asyncio
    async def test_override_queue_pops_once(self, store):
        from agent_engine.models import AgentRun
        run = await store.create_run(AgentRun(prompt="Open https://example.com"))

        await store.queue_step_override(run.id, "step-1", "completed")
        await store.queue_step_override(run.id, "step-2", "failed")

        assert await store.pop_step_overrides(run.id) == {"step-1": "completed", "step-2": "failed"}
        assert await store.pop_step_overrides(run.id) == {}

    @pytest.mark.asyncio
    async def test_update_unknown_run_raises(self, store):
        from agent_engine.errors import RunNotFoundError
        with pytest.raises(RunNotFoundError):
            await store.update_run("missing", error_message="x")


# ============================================================
# SQL stores
# ============================================================

class TestSqlStores:
    """SQLAlchemy async stores on sqlite"""

    @pytest.mark.asyncio
    async def test_run_lifecycle(self, tmp_path):
        from agent_engine.checkpoint import Checkpoint
        from agent_engine.models import AgentRun, RunStatus
        engine, store, _, _ = await _sql_stores(tmp_path)
        try:
            first = await store.create_run(AgentRun(prompt="first"))
            second = await store.create_run(AgentRun(prompt="second", agent_browser="firefox", run_headless=False))
            steps = make_steps(["Open the page"])

            await store.save(first.id, Checkpoint(steps=steps, active_step_id=steps[0].id), status=RunStatus.RUNNING)
            await store.queue_step_override(first.id, steps[0].id, "completed")

            loaded = await store.load(first.id)
            stored = await store.get_run(first.id)
            queued = await store.list_runs(RunStatus.QUEUED)
            fetched_second = await store.get_run(second.id)

            assert loaded.steps[0].title == "Open the page"
            assert stored.status == RunStatus.RUNNING
            assert stored.pending_overrides == {steps[0].id: "completed"}
            assert [run.id for run in queued] == [second.id]
            assert fetched_second.agent_browser == "firefox"
            assert fetched_second.run_headless is False
            assert await store.pop_step_overrides(first.id) == {steps[0].id: "completed"}

            assert await store.delete_run(first.id) is True
            assert await store.get_run(first.id) is None
            assert await store.delete_run(first.id) is False
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_memory_and_audit(self, tmp_path):
        from agent_engine.memory import LongTermMemory
        engine, _, memory, audit = await _sql_stores(tmp_path)
        try:
            await memory.add_session("run-1", "Prompt: open the page")
            await memory.add_session("run-1", "Opened the page")
            await memory.add_long_term(LongTermMemory(
                memory_key="shop", run_id="run-1", content="Cookie banner blocks the buy button.",
                tags=["problem-solution"], importance=4, metadata={"problem": "blocked"},
            ))
            await memory.add_long_term(LongTermMemory(
                memory_key="shop", content="Run completed for goal: buy socks.", tags=["agent-run"], importance=3,
            ))
            await audit.log("run-1", "warning", "Step failed.", error="Element not found.")

            session = await memory.list_session("run-1")
            problems = await memory.list_long_term("shop", tags=["problem-solution"])
            everything = await memory.list_long_term("shop")
            entries = await audit.list_entries("run-1")

            assert session == ["Prompt: open the page", "Opened the page"]
            assert len(problems) == 1
            assert problems[0].run_id == "run-1"
            assert problems[0].metadata == {"problem": "blocked"}
            assert [entry.importance for entry in everything] == [4, 3]
            assert [(entry.level, entry.message) for entry in entries] == [("warning", "Step failed.")]
            assert entries[0].metadata == {"error": "Element not found."}
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_long_term_memory_orders_by_importance_then_recency(self, tmp_path):
        from datetime import timedelta
        from agent_engine.memory import LongTermMemory
        from agent_engine.models import utcnow
        engine, _, memory, _ = await _sql_stores(tmp_path)
        try:
            now = utcnow()
            entries = [
                ("Run completed for goal: open the shop.", ["agent-run"], 3),
                ("Dismiss the cookie banner first.", ["problem-solution"], 5),
                ("Run completed for goal: buy socks.", ["agent-run"], 5),
                ("Shop pages load slowly.", ["agent-run"], 1),
                ("Search instead of browsing categories.", ["problem-solution"], 5),
            ]
            for i, (content, tags, importance) in enumerate(entries):
                await memory.add_long_term(LongTermMemory(
                    memory_key="shop", content=content, tags=tags, importance=importance,
                    created_at=now + timedelta(seconds=i),
                ))

            top = await memory.list_long_term("shop", limit=2)
            runs = await memory.list_long_term("shop", tags=["agent-run"], limit=2)

            assert [entry.content for entry in top] == [
                "Search instead of browsing categories.",
                "Run completed for goal: buy socks.",
            ]
            assert [entry.importance for entry in runs] == [5, 3]
            assert runs[0].content == "Run completed for goal: buy socks."
        finally:
            await engine.dispose()
