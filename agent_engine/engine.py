"""
Agent engine - Prepare → Plan → Execute → Finalize

Top-level orchestrator for one run:
1. prepare the run context (memory key, session memory, model routing)
2. resume the stored plan or build a new one
3. hand the plan to the step runner
4. finalize status, verification and self-improvement memory

The browser executor is created per run and always closed in `finally`.
"""
import asyncio
from typing import Any, Callable, Dict, Optional

from loguru import logger

from .audit import AuditLogger
from .checkpoint import Checkpoint, CheckpointStore, parse_checkpoint
from .errors import RunNotFoundError
from .executors.base import ToolExecutor
from .memory import (
    TAG_AGENT_RUN,
    TAG_SELF_IMPROVEMENT,
    LongTermMemory,
    MemoryStore,
    build_memory_context,
    validate_and_add_long_term_memory,
)
from .models import AgentRun, LoopExit, RunStatus, StepStatus, utcnow
from .planner import Planner
from .plan_utils import splice_plan
from .run_config import (
    ModelSelection,
    RunPreferences,
    RunSettings,
    default_run_settings,
    resolve_run_preferences,
    resolve_run_settings,
)
from .step_runner import RunState, StepRunner

ExecutorFactory = Callable[[AgentRun, RunPreferences], ToolExecutor]

_FINAL_STATUS = {
    LoopExit.DONE: RunStatus.COMPLETED,
    LoopExit.WAITING_HUMAN: RunStatus.WAITING_HUMAN,
    LoopExit.FAILED: RunStatus.FAILED,
}


def playwright_executor_factory(run: AgentRun, preferences: RunPreferences) -> ToolExecutor:
    from .executors.playwright_executor import PlaywrightToolExecutor

    return PlaywrightToolExecutor(
        run_id=run.id,
        browser_name=run.agent_browser,
        headless=run.run_headless,
        ignore_robots_txt=preferences.ignore_robots_txt,
    )


class AgentEngine:
    """
    Agent engine

    Usage:
        engine = AgentEngine(store, memory, planner, audit)
        run = await engine.create_run("Collect the product names on example.com")
        run = await engine.run(run.id)
    """

    def __init__(
        self,
        store: CheckpointStore,
        memory: MemoryStore,
        planner: Planner,
        audit: AuditLogger,
        executor_factory: Optional[ExecutorFactory] = None,
        sleep=asyncio.sleep,
        watchdog_seconds: Optional[float] = None,
    ):
        self.store = store
        self.memory = memory
        self.planner = planner
        self.audit = audit
        self.executor_factory = executor_factory or playwright_executor_factory
        self._sleep = sleep
        self._watchdog_seconds = watchdog_seconds

    async def create_run(
        self,
        prompt: str,
        model: Optional[str] = None,
        memory_key: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        preferences: Optional[Dict[str, Any]] = None,
        agent_browser: Optional[str] = None,
        run_headless: Optional[bool] = None,
    ) -> AgentRun:
        """
        Create a queued run.

        Args:
            prompt: natural-language goal
            settings: per-run limit overrides, clamped on read
            preferences: approval flag, robots.txt and per-review models

        Returns:
            AgentRun: the stored run
        """
        run_settings = resolve_run_settings({"settings": {**default_run_settings().to_dict(), **(settings or {})}})
        run_preferences = resolve_run_preferences({"preferences": preferences or {}})
        run = AgentRun(
            prompt=prompt,
            model=model,
            memory_key=memory_key,
            plan_state={"settings": run_settings.to_dict(), "preferences": run_preferences.to_dict()},
        )
        if agent_browser:
            run.agent_browser = agent_browser
        if run_headless is not None:
            run.run_headless = run_headless
        stored = await self.store.create_run(run)
        await self.audit.log(stored.id, "info", "Run created.", prompt=prompt, settings=run_settings.to_dict())
        logger.info(f"🚀 [AgentEngine] Run created: {stored.id}")
        return stored

    async def run(self, run_id: str) -> AgentRun:
        """
        Execute a run until it completes, fails or pauses.

        Raises:
            RunNotFoundError: no such run
        """
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        run = await self.store.update_run(
            run_id,
            status=RunStatus.RUNNING,
            started_at=run.started_at or utcnow(),
            finished_at=None,
            error_message=None,
            requires_human_intervention=False,
        )
        logger.info(f"🚀 [AgentEngine] ===== Run {run_id} started =====")

        tool: Optional[ToolExecutor] = None
        try:
            run_settings = resolve_run_settings(run.plan_state)
            preferences = resolve_run_preferences(run.plan_state)
            models = ModelSelection.from_preferences(preferences, run.model)
            state = await self.prepare_run_context(run, run_settings, preferences, models)

            tool = self.executor_factory(run, preferences)
            runner = StepRunner(
                self.store,
                self.memory,
                self.planner,
                tool,
                self.audit,
                sleep=self._sleep,
                watchdog_seconds=self._watchdog_seconds,
            )
            await self.initialize_plan(state, runner)

            loop_exit = await runner.run(state)
            logger.info(f"🏁 [AgentEngine] run={run_id} loop exit: {loop_exit.value}")
            await self.finalize(state, loop_exit, runner)
        except Exception as e:
            logger.exception(f"❌ [AgentEngine] run={run_id} crashed: {e}")
            if await self._was_stopped(run_id):
                await self.audit.log(run_id, "warning", "Run stopped.", error=str(e))
            else:
                try:
                    await self.store.update_run(
                        run_id, status=RunStatus.FAILED, error_message=str(e), finished_at=utcnow(),
                    )
                except RunNotFoundError:
                    logger.warning(f"⚠️ [AgentEngine] run={run_id} disappeared before failure could be recorded")
                await self.audit.log(run_id, "error", "Run failed with an unexpected error.", error=str(e))
        finally:
            if tool is not None:
                await tool.close()

        return await self.store.get_run(run_id)

    async def prepare_run_context(
        self,
        run: AgentRun,
        run_settings: RunSettings,
        preferences: RunPreferences,
        models: ModelSelection,
    ) -> RunState:
        """Resolve the memory key, seed session memory and build the planner memory context."""
        memory_key = run.memory_key or run.id
        if run.memory_key != memory_key:
            run = await self.store.update_run(run.id, memory_key=memory_key)

        if not await self.memory.list_session(run.id):
            await self.memory.add_session(run.id, f"Prompt: {run.prompt}")

        context = await build_memory_context(self.memory, run.id, memory_key)
        if context.improvement_count:
            await self.audit.log(run.id, "info", "Self-improvement memory loaded.", count=context.improvement_count)
        if context.playbook:
            await self.audit.log(run.id, "info", "Self-improvement playbook ready.", playbook=context.playbook)
        await self.audit.log(
            run.id,
            "info",
            "Planner context prepared.",
            memory_count=len(context.entries),
            model=models.resolved,
            planner_model=models.planner,
        )
        return RunState(
            run=run,
            checkpoint=Checkpoint(),
            index=0,
            settings=run_settings,
            preferences=preferences,
            models=models,
            memory=context.entries,
            memory_key=memory_key,
        )

    async def initialize_plan(self, state: RunState, runner: StepRunner) -> None:
        """
        Resume the stored plan or build a fresh one, then persist it.

        A resume whose request has not been processed yet gets a resume review
        that may replace the remaining steps.
        """
        run = state.run
        checkpoint = parse_checkpoint(run.plan_state)
        ctx = await runner.planner_context(state)

        if checkpoint is not None and checkpoint.steps:
            index = checkpoint.step_index(checkpoint.active_step_id)
            if index == -1:
                index = next(
                    (i for i, step in enumerate(checkpoint.steps) if step.status != StepStatus.COMPLETED),
                    len(checkpoint.steps),
                )

            if checkpoint.resume_requested_at and checkpoint.resume_requested_at != checkpoint.resume_processed_at:
                review = await self.planner.resume_review(ctx, checkpoint.steps, checkpoint.active_step_id)
                if review is not None and review.should_replan and review.steps:
                    checkpoint.steps = splice_plan(checkpoint.steps, index, review.steps, state.settings.max_steps)
                    if review.meta is not None and review.meta.task_type is not None:
                        checkpoint.task_type = review.meta.task_type
                    await self.audit.log(
                        run.id, "warning", "Plan re-evaluated.",
                        reason=review.reason or "resume",
                        steps=[step.to_dict() for step in checkpoint.steps],
                    )
                checkpoint.resume_processed_at = checkpoint.resume_requested_at

            if index < len(checkpoint.steps):
                step = checkpoint.steps[index]
                # an explicit resume re-arms a step that used up its attempts
                if step.status != StepStatus.COMPLETED and step.attempts >= step.max_attempts:
                    step.attempts = 0
                    step.status = StepStatus.PENDING

            checkpoint.active_step_id = checkpoint.steps[index].id if index < len(checkpoint.steps) else None
            state.checkpoint = checkpoint
            state.index = index
            await self.audit.log(run.id, "info", "Run resumed.", active_step_id=checkpoint.active_step_id, index=index)
            logger.info(f"🔄 [AgentEngine] run={run.id} resumed at step {index}/{len(checkpoint.steps)}")
        else:
            checkpoint = checkpoint or Checkpoint()
            result = await self.planner.build_plan(ctx)
            checkpoint.steps = result.steps[: state.settings.max_steps]
            checkpoint.task_type = result.meta.task_type if result.meta else None
            checkpoint.active_step_id = checkpoint.steps[0].id if checkpoint.steps else None
            state.checkpoint = checkpoint
            state.index = 0
            await self.audit.log(
                run.id, "info", "Plan created.",
                source=result.source,
                steps=[step.to_dict() for step in checkpoint.steps],
                planner_meta=result.meta.to_dict() if result.meta else None,
                hierarchy=result.hierarchy,
            )
            logger.info(f"📋 [AgentEngine] run={run.id} plan created: {len(checkpoint.steps)} step(s) via {result.source}")

        checkpoint.settings = state.settings.to_dict()
        checkpoint.preferences = state.preferences.to_dict()
        await self.store.save(run.id, checkpoint)

    async def _was_stopped(self, run_id: str) -> bool:
        """A stop (or delete) from the controls wins over any status the loop would write."""
        run = await self.store.get_run(run_id)
        return run is None or run.status == RunStatus.STOPPED

    async def finalize(self, state: RunState, loop_exit: LoopExit, runner: StepRunner) -> None:
        """
        Record the run outcome.

        waiting_approval was already persisted by the step runner and a stopped
        run keeps the status its controller set.
        """
        run = state.run
        if loop_exit == LoopExit.WAITING_APPROVAL:
            return
        if loop_exit == LoopExit.STOPPED:
            await self.audit.log(run.id, "warning", "Run stopped.")
            return

        status = _FINAL_STATUS[loop_exit]
        checkpoint = state.checkpoint
        checkpoint.approval_requested_step_id = None
        checkpoint.approval_granted_step_id = None

        error = None
        if status != RunStatus.COMPLETED:
            error = checkpoint.last_error or "Plan could not be completed."

        ctx = await runner.planner_context(state)
        verification = await self.planner.verify_plan(ctx, state.plan)
        if verification is not None:
            await self.audit.log(
                run.id,
                "info" if verification.verdict == "pass" else "warning",
                "Plan verification finished.",
                verdict=verification.verdict,
                evidence=verification.evidence,
                missing=verification.missing,
                summary=verification.summary,
            )

        if await self._was_stopped(run.id):
            await self.audit.log(run.id, "warning", "Run stopped.")
            return

        await self.store.save(
            run.id,
            checkpoint,
            status=status,
            error_message=error,
            requires_human_intervention=status == RunStatus.WAITING_HUMAN,
            finished_at=None if status == RunStatus.WAITING_HUMAN else utcnow(),
        )
        if status == RunStatus.COMPLETED:
            await self.audit.log(run.id, "info", "Run completed.")
        elif status == RunStatus.WAITING_HUMAN:
            await self.audit.log(run.id, "warning", "Run requires human intervention.", error=error)
        else:
            await self.audit.log(run.id, "error", "Run failed.", error=error)

        await self._save_self_improvement(state, status, error, runner)
        await self._save_outcome_memory(state, status, error, runner)
        logger.info(f"🏁 [AgentEngine] ===== Run {run.id} finished: {status.value} =====")

    async def _validation_args(self, state: RunState, runner: StepRunner):
        if not state.models.memory_validation:
            return None, None
        return self.planner, await runner.planner_context(state, state.models.memory_validation)

    async def _save_self_improvement(self, state: RunState, status: RunStatus, error: Optional[str], runner: StepRunner) -> None:
        review = await self.planner.self_improvement_review(
            await runner.planner_context(state), state.plan, status.value, error,
        )
        if review is None or not review.summary:
            return
        await self.memory.add_session_summary(state.run.id, f"Self-improvement: {review.summary}")
        planner, ctx = await self._validation_args(state, runner)
        result = await validate_and_add_long_term_memory(
            self.memory,
            LongTermMemory(
                memory_key=state.memory_key,
                run_id=state.run.id,
                content=review.summary,
                summary=review.summary,
                tags=[TAG_SELF_IMPROVEMENT],
                importance=4,
                metadata={
                    "mistakes": review.mistakes,
                    "improvements": review.improvements,
                    "guardrails": review.guardrails,
                    "tool_adjustments": review.tool_adjustments,
                    "confidence": review.confidence,
                    "status": status.value,
                },
            ),
            planner,
            ctx,
        )
        await self.audit.log(
            state.run.id, "info", "Self-improvement review saved.",
            summary=review.summary, long_term=result.status, reason=result.reason,
        )

    async def _save_outcome_memory(self, state: RunState, status: RunStatus, error: Optional[str], runner: StepRunner) -> None:
        completed = state.completed_count
        content = f"Run {status.value} for goal: {state.run.prompt}. Completed {completed}/{len(state.plan)} steps."
        if error:
            content += f" Last error: {error}"
        planner, ctx = await self._validation_args(state, runner)
        await validate_and_add_long_term_memory(
            self.memory,
            LongTermMemory(
                memory_key=state.memory_key,
                run_id=state.run.id,
                content=content,
                summary=content,
                tags=[TAG_AGENT_RUN],
                importance=3,
                metadata={"status": status.value, "completed_steps": completed, "total_steps": len(state.plan)},
            ),
            planner,
            ctx,
        )
