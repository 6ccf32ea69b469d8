"""
LLM planner - OpenAI-compatible /v1/chat/completions client

Every review type is one chat call with a JSON-only system prompt. The
reply is parsed tolerantly (fenced block or trailing object); any HTTP
error, timeout or unparsable reply falls back to the heuristic answer.
"""
import json
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from config import settings
from .models import (
    ApprovalDecision,
    CheckpointBrief,
    GuardReview,
    MemoryValidation,
    PlannerContext,
    PlanResult,
    PlanReview,
    PlanStep,
    ReviewAction,
    SelfImprovementReview,
    Verification,
)
from .planner import HeuristicPlanner
from .plan_utils import (
    build_branch_steps_from_alternatives,
    build_heuristic_steps,
    build_plan_steps_from_specs,
    normalize_plan_hierarchy,
    normalize_planner_meta,
    normalize_string_list,
    parse_plan_json,
    plan_excerpt,
    steps_from_reply,
)

_STEP_SCHEMA = "{title, tool, expectedObservation, successCriteria, phase, priority, dependsOn}"
_CRITIQUE_SCHEMA = "critique: {assumptions[], risks[], unknowns[], safetyChecks[], questions[]}"
_ALTERNATIVES_SCHEMA = f"alternatives: array of {{title, rationale, steps:[{_STEP_SCHEMA}]}}"
_META_TAIL = (
    f"{_CRITIQUE_SCHEMA}. {_ALTERNATIVES_SCHEMA}. taskType is 'web_task' or 'extract_info'. "
    "summary is a short plan summary. constraints and successSignals are arrays."
)

_PLAN_SYSTEM_PROMPT = (
    "You are an agent planner. Output only JSON with keys: goals, critique, alternatives, taskType, "
    "summary, constraints, successSignals. goals: array of {title, successCriteria, priority, dependsOn, "
    f"subgoals:[{{title, successCriteria, priority, dependsOn, steps:[{_STEP_SCHEMA}]}}]}}. {_META_TAIL} "
    "Use 2-4 goals, 1-3 subgoals each, and max {max_steps} total steps. tool is 'playwright' or 'none'. "
    f"If you cannot provide goals, you may include steps: array of {_STEP_SCHEMA}."
)

_BRANCH_SYSTEM_PROMPT = (
    "You are an agent planner. Output only JSON with keys: branchSteps, critique, alternatives, taskType, "
    f"summary, constraints, successSignals. branchSteps: array of {_STEP_SCHEMA}. {_META_TAIL} "
    "Provide 1-4 alternate steps to recover from the failed step. tool is 'playwright' or 'none'."
)

_ADAPTIVE_SYSTEM_PROMPT = (
    "You are an agent replanner. Output only JSON with keys: shouldReplan, reason, goals, critique, "
    "alternatives, taskType, summary, constraints, successSignals. shouldReplan is boolean. If shouldReplan "
    f"is true, include goals (same schema as planner) or steps: array of {_STEP_SCHEMA}. {_META_TAIL} "
    "The user input includes trigger and signals fields; use them to focus the replan."
)

_MID_RUN_SYSTEM_PROMPT = (
    "You are a mid-run adaptation planner. Output only JSON with keys: shouldAdapt, reason, goals, critique, "
    "alternatives, taskType, summary, constraints, successSignals. shouldAdapt is boolean. If shouldAdapt is "
    f"true, include goals (planner schema) or steps: array of {_STEP_SCHEMA}. {_META_TAIL}"
)

_RESUME_SYSTEM_PROMPT = (
    "You are an agent resume planner. Output only JSON with keys: shouldReplan, reason, goals, critique, "
    "alternatives, taskType, summary, constraints, successSignals. shouldReplan is boolean. If shouldReplan "
    f"is true, include goals (same schema as planner) or steps: array of {_STEP_SCHEMA}. {_META_TAIL}"
)

_LOOP_GUARD_SYSTEM_PROMPT = (
    "You are a loop-guard. Output only JSON with keys: action, reason, questions, evidence, goals, critique, "
    "alternatives, taskType, summary, constraints, successSignals. action is 'continue', 'replan', or "
    "'wait_human'. Provide 2-4 questions that test whether the agent is looping. If action is 'replan', "
    f"include goals (planner schema) or steps: array of {_STEP_SCHEMA}."
)

_SELF_CHECK_SYSTEM_PROMPT = (
    "You are an agent self-checker. Output only JSON with keys: action, reason, notes, questions, evidence, "
    "confidence, goals, critique, alternatives, taskType, summary, constraints, successSignals. action is "
    "'continue', 'replan', or 'wait_human'. Provide 5-8 self-questions that test assumptions, evidence "
    "quality, tool choice, and completion criteria. evidence is a list of observable facts from the context. "
    "confidence is 0-100. If action is 'replan', include goals (planner schema) or steps: array of "
    f"{_STEP_SCHEMA}."
)

_APPROVAL_SYSTEM_PROMPT = (
    "You decide whether a planned web action requires human approval. Return only JSON with keys: "
    "requiresApproval (boolean), reason (string), riskLevel (low|medium|high), riskySignals (array). Flag any "
    "step that involves login, payments, deletions, account changes, admin actions, or irreversible changes."
)

_REPETITION_SYSTEM_PROMPT = (
    "You remove unnecessary repetition from plan steps. Return only JSON with keys: steps. steps is an array "
    f"of {_STEP_SCHEMA}. Remove duplicates or redundant steps already covered."
)

_SUMMARY_SYSTEM_PROMPT = (
    "You summarize progress for long-running plans. Return only JSON with keys: summary, keyDecisions[], "
    "risks[]. Keep summary under 80 words."
)

_MEMORY_VALIDATION_SYSTEM_PROMPT = (
    "You validate long-term memory for a web agent. Return only JSON with keys: accepted (boolean), reason, "
    "summary. Reject entries that are vague, duplicated, speculative or contain secrets. summary is an "
    "optional one-sentence rewrite."
)

_BRIEF_SYSTEM_PROMPT = (
    "You generate checkpoint briefs. Return only JSON with keys: summary, nextActions[], risks[]. summary "
    "should be 1-2 sentences. nextActions are concrete next steps."
)

_VERIFY_SYSTEM_PROMPT = (
    "You verify task completion. Return only JSON with keys: verdict ('pass'|'partial'|'fail'), evidence[], "
    "missing[], followUp. Evidence must reference observable facts from the context."
)

_SELF_IMPROVEMENT_SYSTEM_PROMPT = (
    "You are an agent self-improvement reviewer. Return only JSON with keys: summary, mistakes, improvements, "
    "guardrails, toolAdjustments, confidence. summary is a 1-2 sentence learning summary. mistakes, "
    "improvements, guardrails, toolAdjustments are short bullet strings. confidence is 0-100."
)


def _action(value: Any) -> ReviewAction:
    try:
        return ReviewAction(value)
    except ValueError:
        return ReviewAction.CONTINUE


def _number(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class LLMPlanner(HeuristicPlanner):
    """
    Planner backed by an OpenAI-compatible chat endpoint

    Without an API URL every call returns the heuristic answer.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        temperature: Optional[float] = None,
    ):
        self.api_url = (api_url or settings.llm_api_url or "").rstrip("/")
        self.api_token = api_token or settings.llm_api_token
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self.temperature = settings.llm_temperature if temperature is None else temperature

    async def _chat(self, ctx: PlannerContext, system_prompt: str, body: Dict[str, Any], label: str) -> Optional[Dict[str, Any]]:
        """
        Send one JSON-only chat request.

        Returns:
            The parsed reply object, or None on any failure
        """
        if not self.api_url:
            return None

        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        payload = {
            "model": ctx.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": json.dumps(body, ensure_ascii=False, default=str)},
            ],
            "temperature": self.temperature,
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    f"{self.api_url}/v1/chat/completions",
                    json=payload,
                    headers=headers,
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"❌ [Planner] {label} failed: {response.status} - {error_text}")
                        return None

                    result = await response.json()
                    content = (result["choices"][0]["message"]["content"] or "").strip()
        except Exception as e:
            logger.error(f"❌ [Planner] {label} request failed: {e}")
            return None

        parsed = parse_plan_json(content)
        if not isinstance(parsed, dict):
            logger.warning(f"⚠️ [Planner] {label} returned no JSON object: '{content[:200]}'")
            return None
        logger.debug(f"🧠 [Planner] {label} reply keys: {sorted(parsed.keys())}")
        return parsed

    def _base_body(self, ctx: PlannerContext) -> Dict[str, Any]:
        return {
            "prompt": ctx.prompt,
            "memory": ctx.memory,
            "browserContext": ctx.browser_context,
            "maxSteps": ctx.max_steps,
        }

    def _review_steps(self, ctx: PlannerContext, parsed: Dict[str, Any], completed_index: int) -> List[PlanStep]:
        meta = normalize_planner_meta(parsed)
        remaining = max(1, ctx.max_steps - (completed_index + 1))
        return steps_from_reply(parsed, meta, ctx.max_step_attempts, remaining)

    async def build_plan(self, ctx, mode="plan", previous_plan=None, last_error=None, failed_step=None) -> PlanResult:
        body = {
            **self._base_body(ctx),
            "mode": mode,
            "previousPlan": plan_excerpt(previous_plan or []),
            "lastError": last_error,
            "failedStep": plan_excerpt([failed_step])[0] if failed_step else None,
        }
        if mode == "branch":
            parsed = await self._chat(ctx, _BRANCH_SYSTEM_PROMPT, body, "Branch plan")
            if parsed is None:
                return await super().build_plan(ctx, mode, previous_plan, last_error, failed_step)
            meta = normalize_planner_meta(parsed)
            branch_specs = parsed.get("branchSteps") if isinstance(parsed.get("branchSteps"), list) else []
            branch_steps = build_plan_steps_from_specs(branch_specs, meta, False, ctx.max_step_attempts)[:ctx.max_steps]
            if not branch_steps:
                branch_steps = build_branch_steps_from_alternatives(meta.alternatives, ctx.max_step_attempts, ctx.max_steps)
            return PlanResult(steps=[], source="llm", meta=meta, branch_steps=branch_steps)

        system_prompt = _PLAN_SYSTEM_PROMPT.replace("{max_steps}", str(ctx.max_steps))
        parsed = await self._chat(ctx, system_prompt, body, "Plan")
        if parsed is None:
            return await super().build_plan(ctx, mode, previous_plan, last_error, failed_step)
        meta = normalize_planner_meta(parsed)
        steps = steps_from_reply(parsed, meta, ctx.max_step_attempts, ctx.max_steps)
        source = "llm"
        if not steps:
            steps = build_heuristic_steps(ctx.prompt, ctx.max_steps, ctx.max_step_attempts)
            source = "heuristic"
        return PlanResult(
            steps=steps,
            source=source,
            meta=meta,
            hierarchy=normalize_plan_hierarchy(parsed),
            branch_steps=build_branch_steps_from_alternatives(meta.alternatives, ctx.max_step_attempts, ctx.max_steps),
        )

    async def _plan_review(self, ctx, system_prompt, body, label, flag_key, completed_index) -> Optional[PlanReview]:
        parsed = await self._chat(ctx, system_prompt, body, label)
        if parsed is None:
            return None
        meta = normalize_planner_meta(parsed)
        should_replan = parsed.get(flag_key) is True
        steps = self._review_steps(ctx, parsed, completed_index) if should_replan else []
        return PlanReview(
            should_replan=should_replan,
            reason=_text(parsed.get("reason")),
            steps=steps,
            meta=meta,
            hierarchy=normalize_plan_hierarchy(parsed),
            summary=meta.summary,
        )

    async def adaptive_review(self, ctx, plan, completed_index, trigger, signals=None):
        body = {
            **self._base_body(ctx),
            "currentPlan": plan_excerpt(plan),
            "completedIndex": completed_index,
            "trigger": trigger,
            "signals": signals or {},
        }
        return await self._plan_review(ctx, _ADAPTIVE_SYSTEM_PROMPT, body, f"Adaptive review ({trigger})", "shouldReplan", completed_index)

    async def mid_run_adaptation(self, ctx, plan, completed_index):
        body = {**self._base_body(ctx), "currentPlan": plan_excerpt(plan), "completedIndex": completed_index}
        return await self._plan_review(ctx, _MID_RUN_SYSTEM_PROMPT, body, "Mid-run adaptation", "shouldAdapt", completed_index)

    async def resume_review(self, ctx, plan, active_step_id):
        body = {**self._base_body(ctx), "currentPlan": plan_excerpt(plan), "activeStepId": active_step_id}
        active_index = next((i for i, step in enumerate(plan) if step.id == active_step_id), 0)
        return await self._plan_review(ctx, _RESUME_SYSTEM_PROMPT, body, "Resume review", "shouldReplan", active_index - 1)

    async def _guard_review(self, ctx, system_prompt, body, label, completed_index) -> Optional[GuardReview]:
        parsed = await self._chat(ctx, system_prompt, body, label)
        if parsed is None:
            return None
        action = _action(parsed.get("action"))
        meta = normalize_planner_meta(parsed)
        steps = self._review_steps(ctx, parsed, completed_index) if action == ReviewAction.REPLAN else []
        return GuardReview(
            action=action,
            reason=_text(parsed.get("reason")),
            steps=steps,
            meta=meta,
            notes=_text(parsed.get("notes")),
            confidence=_number(parsed.get("confidence")),
            evidence=normalize_string_list(parsed.get("evidence")),
            questions=normalize_string_list(parsed.get("questions")),
        )

    async def loop_guard_review(self, ctx, plan, completed_index, signal, last_error=None):
        body = {
            **self._base_body(ctx),
            "currentPlan": plan_excerpt(plan),
            "completedIndex": completed_index,
            "loopSignal": signal.to_dict(),
            "lastError": last_error,
        }
        return await self._guard_review(ctx, _LOOP_GUARD_SYSTEM_PROMPT, body, "Loop guard", completed_index)

    async def self_check(self, ctx, plan, completed_index, last_error=None):
        body = {
            **self._base_body(ctx),
            "currentPlan": plan_excerpt(plan),
            "completedIndex": completed_index,
            "lastError": last_error,
        }
        return await self._guard_review(ctx, _SELF_CHECK_SYSTEM_PROMPT, body, "Self-check", completed_index)

    async def approval_gate(self, ctx, step):
        body = {
            "prompt": ctx.prompt,
            "step": plan_excerpt([step])[0],
            "browserContext": ctx.browser_context,
        }
        parsed = await self._chat(ctx, _APPROVAL_SYSTEM_PROMPT, body, "Approval gate")
        if parsed is None:
            return None
        return ApprovalDecision(
            requires_approval=parsed.get("requiresApproval") is True,
            reason=_text(parsed.get("reason")),
            risk_level=_text(parsed.get("riskLevel")),
        )

    async def guard_repetition(self, ctx, plan, candidates):
        if len(candidates) < 2:
            return candidates
        body = {
            "prompt": ctx.prompt,
            "memory": ctx.memory,
            "recentSteps": [
                {"title": step.title, "status": step.status.value, "phase": step.phase.value if step.phase else None}
                for step in plan
            ],
            "candidateSteps": plan_excerpt(candidates),
            "maxSteps": ctx.max_steps,
        }
        parsed = await self._chat(ctx, _REPETITION_SYSTEM_PROMPT, body, "Repetition guard")
        if parsed is None or not isinstance(parsed.get("steps"), list) or not parsed["steps"]:
            return await super().guard_repetition(ctx, plan, candidates)
        guarded = build_plan_steps_from_specs(parsed["steps"], None, False, ctx.max_step_attempts)[:ctx.max_steps]
        logger.info(f"🧠 [Planner] Repetition guard: {len(candidates)} -> {len(guarded)} steps")
        return guarded or candidates

    async def summarize_memory(self, ctx, plan):
        body = {**self._base_body(ctx), "steps": plan_excerpt(plan)}
        parsed = await self._chat(ctx, _SUMMARY_SYSTEM_PROMPT, body, "Memory summary")
        if parsed is None:
            return None
        return _text(parsed.get("summary"))

    async def validate_memory(self, ctx, content, summary=None):
        body = {"prompt": ctx.prompt, "memory": ctx.memory, "content": content, "summary": summary}
        parsed = await self._chat(ctx, _MEMORY_VALIDATION_SYSTEM_PROMPT, body, "Memory validation")
        if parsed is None or not isinstance(parsed.get("accepted"), bool):
            return None
        return MemoryValidation(
            accepted=parsed["accepted"],
            reason=_text(parsed.get("reason")),
            summary=_text(parsed.get("summary")),
        )

    async def checkpoint_brief(self, ctx, plan, active_step_id, last_error):
        body = {
            **self._base_body(ctx),
            "currentPlan": plan_excerpt(plan),
            "activeStepId": active_step_id,
            "lastError": last_error,
        }
        parsed = await self._chat(ctx, _BRIEF_SYSTEM_PROMPT, body, "Checkpoint brief")
        if parsed is None:
            return None
        summary = _text(parsed.get("summary"))
        if not summary:
            return None
        return CheckpointBrief(
            summary=summary,
            next_actions=normalize_string_list(parsed.get("nextActions")),
            risks=normalize_string_list(parsed.get("risks")),
        )

    async def verify_plan(self, ctx, plan):
        body = {**self._base_body(ctx), "steps": plan_excerpt(plan)}
        parsed = await self._chat(ctx, _VERIFY_SYSTEM_PROMPT, body, "Verification")
        if parsed is None:
            return None
        verdict = parsed.get("verdict")
        return Verification(
            verdict=verdict if verdict in ("pass", "partial", "fail") else "partial",
            evidence=normalize_string_list(parsed.get("evidence")),
            missing=normalize_string_list(parsed.get("missing")),
            summary=_text(parsed.get("followUp")),
        )

    async def self_improvement_review(self, ctx, plan, status, last_error):
        body = {
            **self._base_body(ctx),
            "steps": plan_excerpt(plan),
            "status": status,
            "lastError": last_error,
        }
        parsed = await self._chat(ctx, _SELF_IMPROVEMENT_SYSTEM_PROMPT, body, "Self-improvement review")
        if parsed is None:
            return None
        summary = _text(parsed.get("summary"))
        if not summary:
            return None
        return SelfImprovementReview(
            summary=summary,
            mistakes=normalize_string_list(parsed.get("mistakes")),
            improvements=normalize_string_list(parsed.get("improvements")),
            guardrails=normalize_string_list(parsed.get("guardrails")),
            tool_adjustments=normalize_string_list(parsed.get("toolAdjustments")),
            confidence=_number(parsed.get("confidence")),
        )
