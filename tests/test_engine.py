"""
engine unit tests

Covers run creation, context preparation, plan initialization and resume,
finalization (status, verification, self-improvement and outcome memory)
and the fatal-error path.
"""
import pytest

from fakes import FakeTool, ScriptedPlanner, SleepRecorder, audit_messages, fail, make_steps


def _engine(store, memory, audit, planner, tool):
    from agent_engine.engine import AgentEngine
    return AgentEngine(
        store, memory, planner, audit,
        executor_factory=lambda run, preferences: tool,
        sleep=SleepRecorder(),
        watchdog_seconds=60,
    )


# ============================================================
# Run creation
# ============================================================

class TestCreateRun:
    """Queued runs carry clamped settings and preferences"""

    @pytest.mark.asyncio
    async def test_create_run_is_queued_with_clamped_settings(self, store, memory, audit):
        from agent_engine.models import RunStatus
        engine = _engine(store, memory, audit, ScriptedPlanner(), FakeTool())

        run = await engine.create_run(
            "Open https://example.com",
            settings={"max_steps": 99, "max_replan_calls": -3},
            preferences={"require_human_approval": True, "planner_model": " big-model "},
            agent_browser="firefox",
            run_headless=False,
        )

        stored = await store.get_run(run.id)
        assert stored.status == RunStatus.QUEUED
        assert stored.plan_state["settings"]["max_steps"] == 20
        assert stored.plan_state["settings"]["max_replan_calls"] == 0
        assert stored.plan_state["preferences"]["require_human_approval"] is True
        assert stored.plan_state["preferences"]["planner_model"] == "big-model"
        assert stored.agent_browser == "firefox"
        assert stored.run_headless is False
        assert "Run created." in audit_messages(audit, run.id)

    @pytest.mark.asyncio
    async def test_unknown_run_raises(self, store, memory, audit):
        from agent_engine.errors import RunNotFoundError
        engine = _engine(store, memory, audit, ScriptedPlanner(), FakeTool())

        with pytest.raises(RunNotFoundError):
            await engine.run("missing")


# ============================================================
# Full runs
# ============================================================

class TestRun:
    """End-to-end runs over the in-memory stores"""

    @pytest.mark.asyncio
    async def test_successful_run_completes_and_records_memory(self, store, memory, audit):
        from agent_engine.models import RunStatus
        planner = ScriptedPlanner(plan_titles=["Open the page", "Read the headline"])
        tool = FakeTool()
        engine = _engine(store, memory, audit, planner, tool)
        run = await engine.create_run("Open https://example.com and read the headline.")

        result = await engine.run(run.id)

        assert result.status == RunStatus.COMPLETED
        assert result.finished_at is not None
        assert result.error_message is None
        assert result.memory_key == run.id
        assert [step["status"] for step in result.plan_state["steps"]] == ["completed", "completed"]
        assert tool.closed is True
        assert len(tool.calls) == 2

        messages = audit_messages(audit, run.id)
        assert "Planner context prepared." in messages
        assert "Plan created." in messages
        assert "Run completed." in messages

        session = await memory.list_session(run.id)
        assert session[0] == "Prompt: Open https://example.com and read the headline."
        outcomes = await memory.list_long_term(run.id, tags=["agent-run"])
        assert len(outcomes) == 1
        assert outcomes[0].content.startswith("Run completed for goal:")

    @pytest.mark.asyncio
    async def test_unresolved_failure_marks_run_failed(self, store, memory, audit):
        from agent_engine.models import RunStatus
        planner = ScriptedPlanner(plan_titles=["Open the page"])
        tool = FakeTool(default=fail("Element not found."))
        engine = _engine(store, memory, audit, planner, tool)
        run = await engine.create_run("Open https://example.com", settings={"max_replan_calls": 0})

        result = await engine.run(run.id)

        assert result.status == RunStatus.FAILED
        assert result.error_message == "Element not found."
        assert result.finished_at is not None
        assert "Run failed." in audit_messages(audit, run.id)

    @pytest.mark.asyncio
    async def test_human_required_failure_waits_for_human(self, store, memory, audit):
        from agent_engine.models import RunStatus
        planner = ScriptedPlanner(plan_titles=["Open the shop"])
        tool = FakeTool([fail("Cloudflare challenge detected; requires human verification.")])
        engine = _engine(store, memory, audit, planner, tool)
        run = await engine.create_run("Open https://shop.example.com")

        result = await engine.run(run.id)

        assert result.status == RunStatus.WAITING_HUMAN
        assert result.requires_human_intervention is True
        assert result.finished_at is None
        assert "Cloudflare" in result.error_message

    @pytest.mark.asyncio
    async def test_tool_exception_fails_run_and_closes_tool(self, store, memory, audit):
        from agent_engine.models import RunStatus
        planner = ScriptedPlanner(plan_titles=["Open the page"])
        tool = FakeTool([RuntimeError("browser crashed")])
        engine = _engine(store, memory, audit, planner, tool)
        run = await engine.create_run("Open https://example.com")

        result = await engine.run(run.id)

        assert result.status == RunStatus.FAILED
        assert result.error_message == "browser crashed"
        assert tool.closed is True
        assert "Run failed with an unexpected error." in audit_messages(audit, run.id)

    @pytest.mark.asyncio
    async def test_verification_and_self_improvement_are_saved(self, store, memory, audit):
        from agent_engine.models import SelfImprovementReview, Verification
        planner = ScriptedPlanner(
            plan_titles=["Open the page"],
            verification=Verification(verdict="pass", evidence=["Headline captured"]),
            self_improvement=SelfImprovementReview(
                summary="Dismiss cookie banners before clicking.",
                mistakes=["Clicked behind an overlay"],
                guardrails=["Check for overlays first"],
            ),
        )
        engine = _engine(store, memory, audit, planner, FakeTool())
        run = await engine.create_run("Open https://example.com")

        await engine.run(run.id)

        assert "Plan verification finished." in audit_messages(audit, run.id)
        assert "Self-improvement review saved." in audit_messages(audit, run.id)
        session = await memory.list_session(run.id)
        assert "Self-improvement: Dismiss cookie banners before clicking." in session
        learned = await memory.list_long_term(run.id, tags=["self-improvement"])
        assert len(learned) == 1
        assert learned[0].metadata["mistakes"] == ["Clicked behind an overlay"]
        assert learned[0].metadata["guardrails"] == ["Check for overlays first"]

    @pytest.mark.asyncio
    async def test_self_improvement_memory_is_loaded_into_context(self, store, memory, audit):
        from agent_engine.memory import LongTermMemory
        await memory.add_long_term(LongTermMemory(
            memory_key="shop",
            content="Close the newsletter modal before searching.",
            summary="Close the newsletter modal before searching.",
            tags=["self-improvement"],
            metadata={"mistakes": ["Searched behind the modal"]},
        ))
        engine = _engine(store, memory, audit, ScriptedPlanner(plan_titles=["Open the shop"]), FakeTool())
        run = await engine.create_run("Open https://shop.example.com", memory_key="shop")

        await engine.run(run.id)

        messages = audit_messages(audit, run.id)
        assert "Self-improvement memory loaded." in messages
        assert "Self-improvement playbook ready." in messages


# ============================================================
# Stop while a step is in flight
# ============================================================

class TestStopDuringRun:
    """A stop issued mid-step is the final status, whatever the step did"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        "Element not found.",
        "Cloudflare challenge detected; requires human verification.",
    ])
    async def test_stop_inside_failing_step_keeps_run_stopped(self, store, memory, audit, error):
        from agent_engine.controls import RunControls
        from agent_engine.models import RunStatus
        controls = RunControls(store, audit)

        class StoppingTool(FakeTool):
            async def invoke(self, kind, request):
                await controls.stop(request.run_id)
                return await super().invoke(kind, request)

        tool = StoppingTool(default=fail(error))
        engine = _engine(store, memory, audit, ScriptedPlanner(plan_titles=["Open the page"]), tool)
        run = await engine.create_run(
            "Open https://example.com", settings={"max_step_attempts": 1, "max_replan_calls": 0},
        )

        result = await engine.run(run.id)

        assert result.status == RunStatus.STOPPED
        assert result.error_message is None
        assert result.requires_human_intervention is False
        messages = audit_messages(audit, run.id)
        assert "Run stopped." in messages
        assert "Run failed." not in messages
        assert "Run requires human intervention." not in messages
        assert tool.closed

    @pytest.mark.asyncio
    async def test_stop_before_tool_crash_keeps_run_stopped(self, store, memory, audit):
        from agent_engine.controls import RunControls
        from agent_engine.models import RunStatus
        controls = RunControls(store, audit)

        class StoppingTool(FakeTool):
            async def invoke(self, kind, request):
                await controls.stop(request.run_id)
                raise RuntimeError("browser crashed")

        tool = StoppingTool()
        engine = _engine(store, memory, audit, ScriptedPlanner(plan_titles=["Open the page"]), tool)
        run = await engine.create_run("Open https://example.com")

        result = await engine.run(run.id)

        assert result.status == RunStatus.STOPPED
        assert result.error_message is None
        messages = audit_messages(audit, run.id)
        assert "Run stopped." in messages
        assert "Run failed with an unexpected error." not in messages
        assert tool.closed

    @pytest.mark.asyncio
    async def test_finalize_does_not_overwrite_a_stopped_run(self, store, memory, audit):
        from fakes import make_runner, make_state
        from agent_engine.models import RunStatus
        from agent_engine.models import LoopExit
        planner = ScriptedPlanner()
        engine = _engine(store, memory, audit, planner, FakeTool())
        state = await make_state(store, make_steps(["Open the page"]))
        state.checkpoint.last_error = "Element not found."
        runner = make_runner(store, memory, audit, planner, FakeTool())
        await store.update_run(state.run.id, status=RunStatus.STOPPED)

        await engine.finalize(state, LoopExit.FAILED, runner)

        stored = await store.get_run(state.run.id)
        assert stored.status == RunStatus.STOPPED
        assert stored.error_message is None
        assert "Run failed." not in audit_messages(audit, state.run.id)
        assert planner.count("self_improvement_review") == 0


# ============================================================
# Resume
# ============================================================

class TestResume:
    """Runs continue from their checkpoint"""

    @pytest.mark.asyncio
    async def test_approved_step_runs_after_requeue(self, store, memory, audit):
        from agent_engine.controls import RunControls
        from agent_engine.models import RunStatus
        planner = ScriptedPlanner(plan_titles=["Fill in the login form"])
        tool = FakeTool()
        engine = _engine(store, memory, audit, planner, tool)
        controls = RunControls(store, audit)
        run = await engine.create_run(
            "Log in to https://example.com", preferences={"require_human_approval": True},
        )

        paused = await engine.run(run.id)
        assert paused.status == RunStatus.WAITING_APPROVAL
        assert tool.calls == []
        step_id = paused.plan_state["approval_requested_step_id"]

        await controls.approve_step(run.id, step_id)
        result = await engine.run(run.id)

        assert result.status == RunStatus.COMPLETED
        assert [call[1].step_id for call in tool.calls] == [step_id]
        assert result.plan_state["approval_granted_step_id"] is None
        assert result.plan_state["approval_requested_step_id"] is None
        assert planner.count("build_plan") == 1
        assert "Run resumed." in audit_messages(audit, run.id)

    @pytest.mark.asyncio
    async def test_resume_request_triggers_resume_review(self, store, memory, audit):
        from agent_engine.controls import RunControls
        from agent_engine.models import PlanReview, RunStatus
        planner = ScriptedPlanner(
            plan_titles=["Open the desktop site"],
            resume_review_result=PlanReview(should_replan=True, reason="Desktop site blocked", steps=make_steps(["Open the mobile site"])),
        )
        tool = FakeTool([fail("Element not found.")])
        engine = _engine(store, memory, audit, planner, tool)
        controls = RunControls(store, audit)
        run = await engine.create_run(
            "Open https://example.com", settings={"max_step_attempts": 1, "max_replan_calls": 0},
        )
        assert (await engine.run(run.id)).status == RunStatus.FAILED

        await controls.resume(run.id)
        result = await engine.run(run.id)

        assert result.status == RunStatus.COMPLETED
        assert planner.count("resume_review") == 1
        assert [step["title"] for step in result.plan_state["steps"]] == ["Open the mobile site"]
        assert result.plan_state["resume_processed_at"] == result.plan_state["resume_requested_at"]


    @pytest.mark.asyncio
    async def test_processed_resume_is_not_reviewed_twice(self, store, memory, audit):
        from agent_engine.controls import RunControls
        from agent_engine.models import RunStatus
        planner = ScriptedPlanner(plan_titles=["Open the page"])
        engine = _engine(store, memory, audit, planner, FakeTool([fail("Element not found.")]))
        controls = RunControls(store, audit)
        run = await engine.create_run("Open https://example.com", settings={"max_step_attempts": 1, "max_replan_calls": 0})
        await engine.run(run.id)
        await controls.resume(run.id)
        await engine.run(run.id)

        await store.update_run(run.id, status=RunStatus.QUEUED)
        result = await engine.run(run.id)

        assert result.status == RunStatus.COMPLETED
        assert planner.count("resume_review") == 1
