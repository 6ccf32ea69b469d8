"""
Planner interface

One method per review type. Every call is stateless request -> response;
the step runner owns all control flow. A None / empty result always means
"no change", so a planner that cannot answer never blocks the run.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .models import (
    ApprovalDecision,
    CheckpointBrief,
    GuardReview,
    LoopSignal,
    MemoryValidation,
    PlannerContext,
    PlanResult,
    PlanReview,
    PlanStep,
    SelfImprovementReview,
    Verification,
)
from .plan_utils import build_heuristic_steps


class Planner(ABC):
    """Planning service contract"""

    @abstractmethod
    async def build_plan(
        self,
        ctx: PlannerContext,
        mode: str = "plan",
        previous_plan: Optional[List[PlanStep]] = None,
        last_error: Optional[str] = None,
        failed_step: Optional[PlanStep] = None,
    ) -> PlanResult:
        """
        Build a plan.

        Args:
            mode: "plan" for a full plan, "branch" for recovery steps around failed_step
        """

    @abstractmethod
    async def adaptive_review(
        self,
        ctx: PlannerContext,
        plan: List[PlanStep],
        completed_index: int,
        trigger: str,
        signals: Optional[dict] = None,
    ) -> Optional[PlanReview]:
        """Review the remaining plan after a trigger (step-complete, stagnation, dead-end, ...)."""

    @abstractmethod
    async def mid_run_adaptation(self, ctx: PlannerContext, plan: List[PlanStep], completed_index: int) -> Optional[PlanReview]:
        ...

    @abstractmethod
    async def loop_guard_review(
        self,
        ctx: PlannerContext,
        plan: List[PlanStep],
        completed_index: int,
        signal: LoopSignal,
        last_error: Optional[str] = None,
    ) -> Optional[GuardReview]:
        ...

    @abstractmethod
    async def self_check(
        self,
        ctx: PlannerContext,
        plan: List[PlanStep],
        completed_index: int,
        last_error: Optional[str] = None,
    ) -> Optional[GuardReview]:
        ...

    @abstractmethod
    async def resume_review(self, ctx: PlannerContext, plan: List[PlanStep], active_step_id: Optional[str]) -> Optional[PlanReview]:
        ...

    @abstractmethod
    async def approval_gate(self, ctx: PlannerContext, step: PlanStep) -> Optional[ApprovalDecision]:
        ...

    @abstractmethod
    async def guard_repetition(self, ctx: PlannerContext, plan: List[PlanStep], candidates: List[PlanStep]) -> List[PlanStep]:
        """Drop candidate steps that repeat work already planned or done."""

    @abstractmethod
    async def summarize_memory(self, ctx: PlannerContext, plan: List[PlanStep]) -> Optional[str]:
        ...

    @abstractmethod
    async def validate_memory(self, ctx: PlannerContext, content: str, summary: Optional[str] = None) -> Optional[MemoryValidation]:
        ...

    @abstractmethod
    async def checkpoint_brief(
        self,
        ctx: PlannerContext,
        plan: List[PlanStep],
        active_step_id: Optional[str],
        last_error: Optional[str],
    ) -> Optional[CheckpointBrief]:
        ...

    @abstractmethod
    async def verify_plan(self, ctx: PlannerContext, plan: List[PlanStep]) -> Optional[Verification]:
        ...

    @abstractmethod
    async def self_improvement_review(
        self,
        ctx: PlannerContext,
        plan: List[PlanStep],
        status: str,
        last_error: Optional[str],
    ) -> Optional[SelfImprovementReview]:
        ...


class HeuristicPlanner(Planner):
    """
    Offline planner

    Builds the keyword/sentence fallback plan and answers every review with
    "no change". The LLM planner falls back to these answers on any error.
    """

    async def build_plan(self, ctx, mode="plan", previous_plan=None, last_error=None, failed_step=None) -> PlanResult:
        if mode == "branch":
            return PlanResult(steps=[], source="heuristic")
        steps = build_heuristic_steps(ctx.prompt, ctx.max_steps, ctx.max_step_attempts)
        return PlanResult(steps=steps, source="heuristic")

    async def adaptive_review(self, ctx, plan, completed_index, trigger, signals=None):
        return None

    async def mid_run_adaptation(self, ctx, plan, completed_index):
        return None

    async def loop_guard_review(self, ctx, plan, completed_index, signal, last_error=None):
        return None

    async def self_check(self, ctx, plan, completed_index, last_error=None):
        return None

    async def resume_review(self, ctx, plan, active_step_id):
        return None

    async def approval_gate(self, ctx, step):
        return None

    async def guard_repetition(self, ctx, plan, candidates):
        seen = set()
        unique = []
        for step in candidates:
            key = step.title.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            unique.append(step)
        return unique

    async def summarize_memory(self, ctx, plan):
        return None

    async def validate_memory(self, ctx, content, summary=None):
        return None

    async def checkpoint_brief(self, ctx, plan, active_step_id, last_error):
        return None

    async def verify_plan(self, ctx, plan):
        return None

    async def self_improvement_review(self, ctx, plan, status, last_error):
        return None
