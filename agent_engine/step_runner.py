"""
Step runner - executes a plan one step at a time

Each iteration produces a single Transition:
- advance: move to the next step
- jump: continue at an explicit index (branch, replan, review splice)
- pause: return control to the engine with a LoopExit

Every state-changing transition is persisted as a checkpoint before the
runner moves on, so a crash resumes from the last decision.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set

from loguru import logger

from config import settings as app_settings
from .approvals import evaluate_approval
from .audit import AuditLogger
from .checkpoint import Checkpoint, CheckpointStore
from .executors.base import ToolExecutor
from .loop_guard import LoopGuard
from .memory import MemoryStore, add_problem_solution_memory
from .models import (
    AgentRun,
    LoopExit,
    PlannerContext,
    PlannerMeta,
    PlanReview,
    PlanStep,
    ReviewAction,
    RunStatus,
    StepStatus,
    StepTool,
    TaskType,
    ToolKind,
    ToolRequest,
    ToolResult,
    utcnow,
)
from .planner import Planner
from .plan_utils import (
    append_task_type_to_prompt,
    is_extraction_step,
    should_evaluate_replan,
    splice_plan,
)
from .run_config import ModelSelection, RunPreferences, RunSettings

HUMAN_REQUIRED_PATTERN = re.compile(r"requires human|cloudflare challenge", re.IGNORECASE)
MEMORY_CONTEXT_LIMIT = 10
SUMMARY_EVERY_COMPLETED = 5
MID_RUN_EVERY_COMPLETED = 3
BLANK_URL = "about:blank"


@dataclass
class Transition:
    kind: str
    index: Optional[int] = None
    exit: Optional[LoopExit] = None

    @classmethod
    def advance(cls) -> "Transition":
        return cls(kind="advance")

    @classmethod
    def jump(cls, index: int) -> "Transition":
        return cls(kind="jump", index=index)

    @classmethod
    def pause(cls, exit: LoopExit) -> "Transition":
        return cls(kind="pause", exit=exit)


@dataclass
class RunState:
    """
    Mutable state of one run's step loop

    The checkpoint owns the plan, last error, task type and watermarks;
    everything else is per-process bookkeeping rebuilt on resume.
    """
    run: AgentRun
    checkpoint: Checkpoint
    index: int
    settings: RunSettings
    preferences: RunPreferences
    models: ModelSelection
    memory: List[str] = field(default_factory=list)
    memory_key: Optional[str] = None
    replan_count: int = 0
    self_check_count: int = 0
    consecutive_failures: int = 0
    stagnation_count: int = 0
    no_context_count: int = 0
    last_stable_url: Optional[str] = None
    last_url: Optional[str] = None
    has_browser_context: bool = False
    last_extraction_check_at: int = 0
    extracted_items: List[str] = field(default_factory=list)
    branched_step_ids: Set[str] = field(default_factory=set)
    brief_step_id: Optional[str] = None
    brief_error: Optional[str] = None
    loop_guard: Optional[LoopGuard] = None

    @property
    def plan(self) -> List[PlanStep]:
        return self.checkpoint.steps

    @plan.setter
    def plan(self, steps: List[PlanStep]) -> None:
        self.checkpoint.steps = steps

    @property
    def replans_left(self) -> bool:
        return self.replan_count < self.settings.max_replan_calls

    @property
    def completed_count(self) -> int:
        return sum(1 for step in self.plan if step.status == StepStatus.COMPLETED)

    def step_id_at(self, index: int) -> Optional[str]:
        return self.plan[index].id if 0 <= index < len(self.plan) else None


class StepRunner:
    """
    Applies branch / replan / approval / loop-guard / maintenance
    policy around each tool call.
    """

    def __init__(
        self,
        store: CheckpointStore,
        memory: MemoryStore,
        planner: Planner,
        tool: ToolExecutor,
        audit: AuditLogger,
        sleep=asyncio.sleep,
        watchdog_seconds: Optional[float] = None,
    ):
        self.store = store
        self.memory = memory
        self.planner = planner
        self.tool = tool
        self.audit = audit
        self._sleep = sleep
        self.watchdog_seconds = app_settings.tool_watchdog_seconds if watchdog_seconds is None else watchdog_seconds

    async def run(self, state: RunState) -> LoopExit:
        """Drive the plan until it finishes or pauses."""
        if state.loop_guard is None:
            state.loop_guard = LoopGuard(
                threshold=state.settings.loop_guard_threshold,
                backoff_base_ms=state.settings.loop_backoff_base_ms,
                backoff_max_ms=state.settings.loop_backoff_max_ms,
                sleep=self._sleep,
            )
        if state.brief_step_id is None:
            state.brief_step_id = state.checkpoint.checkpoint_step_id
            state.brief_error = state.checkpoint.last_error

        while True:
            control_exit = await self._observe_controls(state)
            if control_exit is not None:
                return control_exit
            if state.index >= len(state.plan):
                return LoopExit.DONE

            transition = await self._run_step(state)
            if transition.kind == "pause":
                # a stop requested during the step outranks the step's own pause
                if transition.exit != LoopExit.WAITING_APPROVAL and await self._stop_requested(state):
                    logger.info(f"🛑 [StepRunner] run={state.run.id} stop observed after step")
                    return LoopExit.STOPPED
                return transition.exit
            if transition.kind == "jump":
                state.index = transition.index
            else:
                state.index += 1

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    async def planner_context(self, state: RunState, model: Optional[str] = None) -> PlannerContext:
        return PlannerContext(
            prompt=state.run.prompt,
            memory=list(state.memory),
            model=model or state.models.planner,
            run_id=state.run.id,
            browser_context=await self.tool.context_summary(),
            max_steps=state.settings.max_steps,
            max_step_attempts=state.settings.max_step_attempts,
        )

    async def _save(self, state: RunState, active_step_id: Optional[str], **run_changes: Any) -> None:
        state.checkpoint.active_step_id = active_step_id
        await self.store.save(state.run.id, state.checkpoint, **run_changes)

    async def _stop_requested(self, state: RunState) -> bool:
        run = await self.store.get_run(state.run.id)
        return run is None or run.status == RunStatus.STOPPED

    async def _observe_controls(self, state: RunState) -> Optional[LoopExit]:
        """Stop requests and step-status overrides are honoured between steps."""
        if await self._stop_requested(state):
            logger.info(f"🛑 [StepRunner] run={state.run.id} stop observed")
            return LoopExit.STOPPED

        overrides = await self.store.pop_step_overrides(state.run.id)
        if not overrides:
            return None
        for step_id, status in overrides.items():
            index = state.checkpoint.step_index(step_id)
            if index == -1:
                await self.audit.log(state.run.id, "warning", "Step override ignored; unknown step.", step_id=step_id)
                continue
            step = state.plan[index]
            step.status = StepStatus(status)
            if step.status == StepStatus.PENDING:
                step.attempts = 0
            await self.audit.log(state.run.id, "info", "Step status overridden.", step_id=step_id, status=status)
        await self._save(state, state.step_id_at(state.index))
        return None

    async def _audit_plan_change(self, state: RunState, message: str, reason: str, meta: Optional[PlannerMeta]) -> None:
        await self.audit.log(
            state.run.id,
            "warning",
            message,
            reason=reason,
            steps=[step.to_dict() for step in state.plan],
            planner_meta=meta.to_dict() if meta else None,
        )

    async def _remember_problem(self, state: RunState, problem: Optional[str], countermeasure: str, tag: str, step: PlanStep) -> None:
        validation_ctx = None
        if state.models.memory_validation:
            validation_ctx = await self.planner_context(state, state.models.memory_validation)
        await add_problem_solution_memory(
            self.memory,
            state.memory_key,
            state.run.id,
            problem,
            countermeasure,
            tags=[tag],
            context={"step_id": step.id, "step_title": step.title, "reason": tag},
            planner=self.planner if validation_ctx else None,
            ctx=validation_ctx,
        )

    async def _splice(
        self,
        state: RunState,
        next_index: int,
        candidates: List[PlanStep],
        meta: Optional[PlannerMeta],
        reason: str,
        guard: bool = True,
        count_replan: bool = True,
    ) -> None:
        """Replace everything after the current step with new steps."""
        steps = candidates
        if guard:
            steps = await self.planner.guard_repetition(await self.planner_context(state, state.models.loop_guard), state.plan, candidates) or candidates
        state.plan = splice_plan(state.plan, next_index, steps, state.settings.max_steps)
        if meta is not None and meta.task_type is not None:
            state.checkpoint.task_type = meta.task_type
        if count_replan:
            state.replan_count += 1
        state.checkpoint.last_error = None
        await self._audit_plan_change(state, "Plan re-evaluated.", reason, meta)
        await self._save(state, state.step_id_at(next_index))
        logger.info(f"🧭 [StepRunner] run={state.run.id} plan spliced at {next_index} ({reason})")

    async def _apply_review(
        self,
        state: RunState,
        review: Optional[PlanReview],
        reason: str,
        guard: bool = False,
    ) -> bool:
        if review is None or not review.should_replan or not review.steps:
            return False
        await self._splice(state, state.index + 1, review.steps, review.meta, review.reason or reason, guard=guard)
        return True

    # ------------------------------------------------------------------
    # one step
    # ------------------------------------------------------------------

    async def _run_step(self, state: RunState) -> Transition:
        step = state.plan[state.index]
        if step.status == StepStatus.COMPLETED:
            return Transition.advance()

        if state.preferences.require_human_approval and step.id != state.checkpoint.approval_granted_step_id:
            decision = await evaluate_approval(
                step,
                state.run.prompt,
                self.planner,
                await self.planner_context(state),
                state.models.approval_gate,
            )
            if decision.requires_approval:
                state.checkpoint.approval_requested_step_id = step.id
                await self._save(state, step.id, status=RunStatus.WAITING_APPROVAL)
                await self.audit.log(
                    state.run.id, "warning", "Approval required.",
                    step_id=step.id, step_title=step.title,
                    reason=decision.reason, risk_level=decision.risk_level,
                )
                logger.info(f"🛡️ [StepRunner] run={state.run.id} waiting for approval of '{step.title}'")
                return Transition.pause(LoopExit.WAITING_APPROVAL)

        step.attempts += 1
        step.status = StepStatus.RUNNING
        await self._save(state, step.id)
        await self.audit.log(state.run.id, "info", "Step started.", step_id=step.id, step_title=step.title, attempt=step.attempts)

        if step.tool == StepTool.NONE:
            step.status = StepStatus.COMPLETED
            await self._save(state, state.step_id_at(state.index + 1))
            await self.audit.log(state.run.id, "info", "Step completed without tool.", step_id=step.id)
            await self._maybe_summarize(state)
            return Transition.advance()

        result = await self._invoke_tool(state, step)
        previous_url = state.last_url
        self._record_outcome(state, step, result)

        next_active = state.step_id_at(state.index + 1) if result.ok else step.id
        await self._save(state, next_active)
        await self.audit.log(
            state.run.id,
            "info" if result.ok else "warning",
            "Step completed." if result.ok else "Step failed.",
            step_id=step.id,
            attempt=step.attempts,
            error=result.error,
            url=state.last_url,
        )
        await self._maybe_update_brief(state, next_active)

        if not result.ok and HUMAN_REQUIRED_PATTERN.search(result.error or ""):
            await self.audit.log(state.run.id, "warning", "Human intervention required.", step_id=step.id, error=result.error)
            return Transition.pause(LoopExit.WAITING_HUMAN)

        transition = await self._loop_guard(state, step, result)
        if transition is not None:
            return transition

        if result.ok and state.replans_left:
            review = await self.planner.adaptive_review(
                await self.planner_context(state),
                state.plan,
                state.index,
                "step-complete",
                {"step_id": step.id, "step_title": step.title, "step_status": "completed", "url": state.last_url},
            )
            if await self._apply_review(state, review, "step-complete", guard=True):
                return Transition.jump(state.index + 1)

        if not result.ok:
            return await self._remediate_failure(state, step)

        return await self._maintenance(state, step, previous_url)

    async def _invoke_tool(self, state: RunState, step: PlanStep) -> ToolResult:
        extraction = is_extraction_step(step, state.run.prompt, state.checkpoint.task_type)
        use_full = not state.has_browser_context or state.index == 0 or extraction
        kind = ToolKind.FULL if use_full else ToolKind.OBSERVE
        request = ToolRequest(
            run_id=state.run.id,
            prompt=append_task_type_to_prompt(state.run.prompt, state.checkpoint.task_type),
            step_id=step.id,
            step_title=step.title,
            extraction=extraction,
        )

        async def watchdog() -> None:
            await asyncio.sleep(self.watchdog_seconds)
            logger.warning(f"⏱️ [StepRunner] run={state.run.id} tool call still running after {self.watchdog_seconds}s")
            await self.audit.log(state.run.id, "warning", "Tool call is taking longer than expected.", step_id=step.id)

        watchdog_task = asyncio.create_task(watchdog())
        try:
            return await self.tool.invoke(kind, request)
        finally:
            watchdog_task.cancel()

    def _record_outcome(self, state: RunState, step: PlanStep, result: ToolResult) -> None:
        output = result.output
        url = output.url if output else None
        if output is not None:
            step.snapshot_id = output.snapshot_id
            step.log_count = output.log_count
            state.extracted_items.extend(output.extracted)
            if url and url != BLANK_URL:
                state.has_browser_context = True
        if url:
            state.last_url = url

        if result.ok:
            step.status = StepStatus.COMPLETED
            state.consecutive_failures = 0
            state.checkpoint.last_error = None
            if not url or url == BLANK_URL:
                state.no_context_count += 1
            else:
                state.no_context_count = 0
            if url and url == state.last_stable_url:
                state.stagnation_count += 1
            else:
                state.stagnation_count = 0
                state.last_stable_url = url
        else:
            step.status = StepStatus.FAILED
            state.consecutive_failures += 1
            state.checkpoint.last_error = result.error or "Tool call failed."

    async def _maybe_update_brief(self, state: RunState, active_step_id: Optional[str]) -> None:
        last_error = state.checkpoint.last_error
        if active_step_id == state.brief_step_id and last_error == state.brief_error:
            return
        state.brief_step_id = active_step_id
        state.brief_error = last_error
        brief = await self.planner.checkpoint_brief(await self.planner_context(state), state.plan, active_step_id, last_error)
        if brief is None:
            return
        state.checkpoint.checkpoint_brief = brief.summary
        state.checkpoint.checkpoint_next_actions = brief.next_actions
        state.checkpoint.checkpoint_risks = brief.risks
        state.checkpoint.checkpoint_step_id = active_step_id
        state.checkpoint.checkpoint_created_at = utcnow().isoformat()
        await self._save(state, active_step_id)
        await self.audit.log(state.run.id, "info", "Checkpoint brief updated.", step_id=active_step_id, summary=brief.summary)

    # ------------------------------------------------------------------
    # loop guard
    # ------------------------------------------------------------------

    async def _loop_guard(self, state: RunState, step: PlanStep, result: ToolResult) -> Optional[Transition]:
        guard = state.loop_guard
        signal = guard.record(
            step.title,
            StepStatus.COMPLETED.value if result.ok else StepStatus.FAILED.value,
            step.tool.value,
            state.last_url,
        )
        if not guard.should_review(signal, state.replans_left):
            return None

        backoff_ms = await guard.backoff()
        review = await self.planner.loop_guard_review(
            await self.planner_context(state, state.models.loop_guard),
            state.plan,
            state.index,
            signal,
            state.checkpoint.last_error,
        )
        guard.mark_reviewed()
        action = review.action if review else ReviewAction.CONTINUE
        await self.audit.log(
            state.run.id, "warning", "Loop guard evaluated.",
            action=action.value, reason=review.reason if review else None,
            loop=signal.to_dict(), backoff_ms=backoff_ms, streak=guard.streak,
        )
        logger.warning(f"🔁 [LoopGuard] run={state.run.id} {signal.pattern} -> {action.value}")

        if action == ReviewAction.WAIT_HUMAN:
            state.checkpoint.last_error = review.reason or "Loop guard requested human input."
            await self._save(state, step.id)
            return Transition.pause(LoopExit.WAITING_HUMAN)
        if action == ReviewAction.REPLAN and review.steps:
            await self._splice(state, state.index + 1, review.steps, review.meta, review.reason or "loop-guard")
            return Transition.jump(state.index + 1)
        return None

    # ------------------------------------------------------------------
    # failure remediation
    # ------------------------------------------------------------------

    async def _remediate_failure(self, state: RunState, step: PlanStep) -> Transition:
        """
        While attempts remain: branch (once per step id), else full replan.
        Exhausted or already-branched steps get the dead-end review, then give up.
        """
        last_error = state.checkpoint.last_error
        if step.attempts < step.max_attempts and step.id not in state.branched_step_ids:
            state.branched_step_ids.add(step.id)
            branch = await self.planner.build_plan(
                await self.planner_context(state), mode="branch", previous_plan=state.plan,
                last_error=last_error, failed_step=step,
            )
            if branch.branch_steps:
                insert_at = state.index + 1
                state.plan = state.plan[:insert_at] + branch.branch_steps + state.plan[insert_at:]
                state.checkpoint.last_error = None
                await self.audit.log(
                    state.run.id, "warning", "Plan branch created.",
                    failed_step_id=step.id, branch_steps=[item.to_dict() for item in branch.branch_steps],
                    last_error=last_error,
                )
                await self._remember_problem(state, last_error, "Created branch steps for failed step.", "branch", step)
                await self._save(state, state.step_id_at(insert_at))
                return Transition.jump(insert_at)

            # failure replans share the replan quota
            if state.replans_left:
                replan = await self.planner.build_plan(
                    await self.planner_context(state), mode="plan", previous_plan=state.plan, last_error=last_error,
                )
                if replan.steps:
                    kept = [item for item in state.plan if item.status == StepStatus.COMPLETED]
                    remaining = max(1, state.settings.max_steps - len(kept))
                    state.plan = kept + replan.steps[:remaining]
                    if replan.meta is not None and replan.meta.task_type is not None:
                        state.checkpoint.task_type = replan.meta.task_type
                    state.replan_count += 1
                    state.checkpoint.last_error = None
                    await self._audit_plan_change(state, "Plan created.", "replan-after-failure", replan.meta)
                    await self._remember_problem(state, last_error, "Replanned after failure.", "replan", step)
                    await self._save(state, state.step_id_at(len(kept)))
                    return Transition.jump(len(kept))

        if state.consecutive_failures >= 2 and state.replans_left:
            review = await self.planner.adaptive_review(
                await self.planner_context(state), state.plan, state.index, "dead-end",
                {"consecutive_failures": state.consecutive_failures, "last_error": last_error, "url": state.last_url},
            )
            if await self._apply_review(state, review, "dead-end"):
                await self._remember_problem(
                    state, last_error or "Repeated tool failures (dead-end).", "Replanned due to dead-end.", "dead-end", step,
                )
                return Transition.jump(state.index + 1)

        await self.audit.log(state.run.id, "error", "Step failed; remediation exhausted.", step_id=step.id, error=last_error)
        return Transition.pause(LoopExit.FAILED)

    # ------------------------------------------------------------------
    # maintenance after a successful step
    # ------------------------------------------------------------------

    async def _maybe_summarize(self, state: RunState) -> None:
        completed = state.completed_count
        if completed == 0 or completed % SUMMARY_EVERY_COMPLETED != 0 or completed == state.checkpoint.summary_checkpoint:
            return
        summary = await self.planner.summarize_memory(await self.planner_context(state, state.models.memory_summarization), state.plan)
        if not summary:
            return
        await self.memory.add_session_summary(state.run.id, summary)
        state.memory = (state.memory + [summary])[-MEMORY_CONTEXT_LIMIT:]
        state.checkpoint.summary_checkpoint = completed
        await self.audit.log(state.run.id, "info", "Planner summary saved.", completed_count=completed, summary=summary)
        await self._save(state, state.checkpoint.active_step_id)

    async def _maintenance(self, state: RunState, step: PlanStep, previous_url: Optional[str]) -> Transition:
        next_index = state.index + 1
        completed = state.completed_count

        if state.stagnation_count >= 2 and state.replans_left:
            review = await self.planner.adaptive_review(
                await self.planner_context(state), state.plan, state.index, "stagnation",
                {"url": state.last_url, "stagnation_count": state.stagnation_count},
            )
            if await self._apply_review(state, review, "stagnation"):
                state.stagnation_count = 0
                return Transition.jump(next_index)

        if (
            state.checkpoint.task_type == TaskType.EXTRACT_INFO
            and completed >= 2
            and state.last_extraction_check_at != completed
            and not state.extracted_items
            and state.replans_left
        ):
            state.last_extraction_check_at = completed
            review = await self.planner.adaptive_review(
                await self.planner_context(state), state.plan, state.index, "missing-extraction",
                {"completed_count": completed, "url": state.last_url},
            )
            if await self._apply_review(state, review, "missing-extraction"):
                return Transition.jump(next_index)

        await self._maybe_summarize(state)

        if state.no_context_count >= 2 and state.replans_left:
            review = await self.planner.adaptive_review(
                await self.planner_context(state), state.plan, state.index, "no-context",
                {"no_context_count": state.no_context_count},
            )
            if await self._apply_review(state, review, "no-context"):
                state.no_context_count = 0
                return Transition.jump(next_index)

        if completed > 0 and completed % MID_RUN_EVERY_COMPLETED == 0 and state.replans_left:
            review = await self.planner.mid_run_adaptation(await self.planner_context(state), state.plan, state.index)
            if await self._apply_review(state, review, "mid-run", guard=True):
                return Transition.jump(next_index)

        if state.self_check_count < state.settings.max_self_checks:
            state.self_check_count += 1
            check = await self.planner.self_check(
                await self.planner_context(state, state.models.self_check), state.plan, state.index, state.checkpoint.last_error,
            )
            if check is not None:
                await self.audit.log(
                    state.run.id, "info", "Self-check completed.",
                    action=check.action.value, reason=check.reason, confidence=check.confidence,
                    evidence=check.evidence, questions=check.questions,
                )
                if check.action == ReviewAction.WAIT_HUMAN:
                    state.checkpoint.last_error = check.reason or "Self-check requested human input."
                    await self._save(state, state.step_id_at(next_index))
                    return Transition.pause(LoopExit.WAITING_HUMAN)
                if check.action == ReviewAction.REPLAN and check.steps:
                    await self._splice(state, next_index, check.steps, check.meta, check.reason or "self-check", count_replan=False)
                    return Transition.jump(next_index)

        if previous_url and state.last_url and previous_url != state.last_url and state.replans_left:
            review = await self.planner.adaptive_review(
                await self.planner_context(state), state.plan, state.index, "context-shift",
                {"previous_url": previous_url, "url": state.last_url},
            )
            if await self._apply_review(state, review, "context-shift"):
                await self._remember_problem(
                    state,
                    f"Page context shifted from {previous_url} to {state.last_url}.",
                    "Replanned after context shift.",
                    "context-shift",
                    step,
                )
                return Transition.jump(next_index)

        if should_evaluate_replan(state.index, state.plan, state.settings.replan_every_steps) and state.replans_left:
            review = await self.planner.adaptive_review(
                await self.planner_context(state), state.plan, state.index, "scheduled",
                {"completed_count": completed},
            )
            if await self._apply_review(state, review, "scheduled", guard=True):
                return Transition.jump(next_index)

        return Transition.advance()
