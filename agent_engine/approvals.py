"""
Approval gate

A keyword heuristic flags steps that touch accounts, money or irreversible
changes. When the heuristic is inconclusive and an approval-gate model is
configured, the planner gets the final say.
"""
import re
from typing import TYPE_CHECKING, Optional

from loguru import logger

from .models import ApprovalDecision, PlannerContext, PlanStep, StepTool

if TYPE_CHECKING:
    from .planner import Planner

RISKY_ACTION_PATTERN = re.compile(
    r"login|log in|sign in|signup|register|checkout|purchase|pay|payment|card|"
    r"delete|remove|cancel|unsubscribe|transfer|withdraw|submit order|place order|"
    r"invoice|billing|confirm|approve|admin",
    re.IGNORECASE,
)


def requires_human_approval(step: PlanStep, prompt: str) -> bool:
    """Keyword check over the step title and the run prompt; tool-less steps never need approval."""
    if step.tool == StepTool.NONE:
        return False
    return bool(RISKY_ACTION_PATTERN.search(f"{step.title} {prompt}"))


async def evaluate_approval(
    step: PlanStep,
    prompt: str,
    planner: "Planner",
    ctx: PlannerContext,
    gate_model: Optional[str] = None,
) -> ApprovalDecision:
    """
    Decide whether a step must wait for a human grant.

    Args:
        step: step about to run
        prompt: the run prompt
        planner: planner used when the heuristic is inconclusive
        ctx: planner context
        gate_model: approval-gate model; None keeps the decision heuristic-only
    """
    if requires_human_approval(step, prompt):
        return ApprovalDecision(requires_approval=True, reason="Risky action keywords detected.", risk_level="high")
    if step.tool == StepTool.NONE or not gate_model:
        return ApprovalDecision(requires_approval=False)
    decision = await planner.approval_gate(ctx.with_model(gate_model), step)
    if decision is None:
        return ApprovalDecision(requires_approval=False)
    if decision.requires_approval:
        logger.info(f"🛡️ [Approval] Model flagged step '{step.title}': {decision.reason}")
    return decision
