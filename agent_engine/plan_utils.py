"""
Plan helpers shared by the planner, the step runner and the engine

Pure functions: parsing planner output, building PlanStep lists, the
heuristic fallback plan, and the small predicates the step runner uses.
"""
import json
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import (
    PlannerMeta,
    PlanStep,
    StepPhase,
    StepStatus,
    StepTool,
    TaskType,
    new_id,
)

DEFAULT_STEP_TITLE = "Review the page state."

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_OBJECT = re.compile(r"\{[\s\S]*\}$")
_LOGIN_WORDS = ("login", "log in", "sign in", "signin")
_EXTRACT_VERB = re.compile(r"(extract|collect|find|list|get)\b")
_EXTRACT_TARGET = re.compile(r"(product|email)")


def parse_plan_json(content: str) -> Optional[Any]:
    """
    Parse JSON out of a model reply.

    Accepts a ```json fenced block or a reply whose trailing part is a JSON
    object. Returns None when nothing parses.
    """
    if not content:
        return None
    fenced = _FENCED_JSON.search(content)
    raw = fenced.group(1) if fenced else content
    raw = raw.strip()
    match = _TRAILING_OBJECT.search(raw)
    json_text = match.group(0) if match else raw
    try:
        return json.loads(json_text)
    except (json.JSONDecodeError, ValueError):
        pass
    # prose before and after the object
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(raw[start:end + 1])
    except (json.JSONDecodeError, ValueError):
        return None


def normalize_string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _unique(items: Iterable[str]) -> List[str]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def normalize_task_type(value: Any) -> Optional[TaskType]:
    if value in (TaskType.WEB_TASK.value, TaskType.EXTRACT_INFO.value):
        return TaskType(value)
    return None


def normalize_critique(value: Any) -> Optional[Dict[str, List[str]]]:
    if not isinstance(value, dict):
        return None
    critique = {}
    for key in ("assumptions", "risks", "unknowns", "safetyChecks", "questions"):
        items = normalize_string_list(value.get(key))
        if items:
            critique[key] = items
    return critique or None


def normalize_alternatives(value: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(value, list):
        return None
    alternatives = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        title = entry.get("title").strip() if isinstance(entry.get("title"), str) else ""
        steps = entry.get("steps") if isinstance(entry.get("steps"), list) else []
        if not title or not steps:
            continue
        rationale = entry.get("rationale")
        alternatives.append({
            "title": title,
            "rationale": rationale.strip() if isinstance(rationale, str) else None,
            "steps": steps,
        })
    return alternatives or None


def normalize_planner_meta(parsed: Dict[str, Any]) -> PlannerMeta:
    """Collect critique, alternatives and signals from a planner reply."""
    critique = normalize_critique(parsed.get("critique") or parsed.get("selfCritique"))
    critique_checks = (critique or {}).get("safetyChecks", [])
    critique_questions = (critique or {}).get("questions", [])
    summary = parsed.get("summary")
    return PlannerMeta(
        critique=critique,
        alternatives=normalize_alternatives(parsed.get("alternatives")),
        safety_checks=_unique(critique_checks + normalize_string_list(parsed.get("safetyChecks"))),
        questions=_unique(critique_questions + normalize_string_list(parsed.get("questions"))),
        task_type=normalize_task_type(parsed.get("taskType")),
        summary=summary.strip() or None if isinstance(summary, str) else None,
        constraints=normalize_string_list(parsed.get("constraints")),
        success_signals=normalize_string_list(parsed.get("successSignals")),
    )


def normalize_phase(value: Any) -> Optional[StepPhase]:
    if not isinstance(value, str):
        return None
    try:
        return StepPhase(value.lower())
    except ValueError:
        return None


def normalize_dependencies(value: Any, specs: Sequence[Dict[str, Any]]) -> Optional[List[str]]:
    """Map numeric indexes or step titles onto `step-N` references."""
    if not isinstance(value, list) or not value:
        return None
    if isinstance(value[0], int) and not isinstance(value[0], bool):
        return [f"step-{idx}" for idx in value if isinstance(idx, int) and 0 <= idx < len(specs)]
    if isinstance(value[0], str):
        titles = [str(spec.get("title") or "").strip().lower() for spec in specs]
        refs = []
        for name in value:
            if not isinstance(name, str) or not name.strip():
                continue
            key = name.strip().lower()
            if key in titles:
                refs.append(f"step-{titles.index(key)}")
        return refs
    return None


def _clean_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def build_step(spec: Dict[str, Any], max_attempts: int, specs: Sequence[Dict[str, Any]] = ()) -> PlanStep:
    priority = spec.get("priority")
    return PlanStep(
        id=new_id(),
        title=_clean_text(spec.get("title")) or DEFAULT_STEP_TITLE,
        tool=StepTool.NONE if spec.get("tool") == "none" else StepTool.PLAYWRIGHT,
        status=StepStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
        phase=normalize_phase(spec.get("phase")),
        priority=priority if isinstance(priority, (int, float)) and not isinstance(priority, bool) else None,
        depends_on=normalize_dependencies(spec.get("dependsOn"), specs),
        goal_id=spec.get("goalId"),
        subgoal_id=spec.get("subgoalId"),
        expected_observation=_clean_text(spec.get("expectedObservation")),
        success_criteria=_clean_text(spec.get("successCriteria")),
    )


def build_safety_check_steps(meta: Optional[PlannerMeta], max_attempts: int) -> List[PlanStep]:
    if meta is None:
        return []
    checks = _unique(meta.safety_checks + (meta.critique or {}).get("safetyChecks", []))
    return [
        PlanStep(
            title=f"Safety check: {check}",
            tool=StepTool.NONE,
            phase=StepPhase.OBSERVE,
            max_attempts=max_attempts,
        )
        for check in checks[:3]
    ]


def build_verification_steps(meta: Optional[PlannerMeta], max_attempts: int) -> List[PlanStep]:
    if meta is None:
        return []
    return [
        PlanStep(
            title=f"Verify: {signal}",
            tool=StepTool.NONE,
            phase=StepPhase.VERIFY,
            max_attempts=max_attempts,
        )
        for signal in meta.success_signals[:3]
    ]


def build_plan_steps_from_specs(
    specs: Sequence[Dict[str, Any]],
    meta: Optional[PlannerMeta] = None,
    include_safety: bool = False,
    max_attempts: int = 2,
) -> List[PlanStep]:
    """
    Turn planner step specs into PlanSteps.

    With include_safety, up to three safety-check steps are placed before the
    planned steps and up to three verification steps after them.
    """
    specs = [spec for spec in specs if isinstance(spec, dict)]
    planned = [build_step(spec, max_attempts, specs) for spec in specs]
    if not include_safety:
        return planned
    return (
        build_safety_check_steps(meta, max_attempts)
        + planned
        + build_verification_steps(meta, max_attempts)
    )


def build_branch_steps_from_alternatives(
    alternatives: Optional[List[Dict[str, Any]]],
    max_attempts: int,
    max_steps: int,
) -> List[PlanStep]:
    """Recovery steps taken from the planner's alternatives."""
    if not alternatives:
        return []
    specs: List[Dict[str, Any]] = []
    for alternative in alternatives:
        steps = alternative.get("steps") or []
        if steps:
            for step in steps:
                if isinstance(step, dict):
                    specs.append({**step, "phase": step.get("phase") or StepPhase.RECOVER.value})
        elif _clean_text(alternative.get("title")):
            specs.append({
                "title": alternative["title"].strip(),
                "tool": StepTool.PLAYWRIGHT.value,
                "phase": StepPhase.RECOVER.value,
            })
    if not specs:
        return []
    return build_plan_steps_from_specs(specs, None, True, max_attempts)[:max_steps]


def normalize_plan_hierarchy(parsed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize a goals → subgoals → steps tree; None when there are no goals."""
    goals = parsed.get("goals")
    if not isinstance(goals, list) or not goals:
        return None
    normalized = []
    for goal in goals:
        if not isinstance(goal, dict):
            continue
        subgoals = []
        for subgoal in goal.get("subgoals") or []:
            if not isinstance(subgoal, dict):
                continue
            steps = []
            for step in subgoal.get("steps") or []:
                if not isinstance(step, dict):
                    continue
                steps.append({
                    "title": _clean_text(step.get("title")) or DEFAULT_STEP_TITLE,
                    "tool": "none" if step.get("tool") == "none" else "playwright",
                    "expectedObservation": _clean_text(step.get("expectedObservation")),
                    "successCriteria": _clean_text(step.get("successCriteria")),
                    "phase": step.get("phase"),
                    "priority": step.get("priority"),
                    "dependsOn": step.get("dependsOn"),
                })
            subgoals.append({
                "id": new_id(),
                "title": _clean_text(subgoal.get("title")) or "Supporting task",
                "successCriteria": _clean_text(subgoal.get("successCriteria")),
                "priority": subgoal.get("priority") if isinstance(subgoal.get("priority"), (int, float)) else None,
                "steps": steps,
            })
        normalized.append({
            "id": new_id(),
            "title": _clean_text(goal.get("title")) or "Primary objective",
            "successCriteria": _clean_text(goal.get("successCriteria")),
            "priority": goal.get("priority") if isinstance(goal.get("priority"), (int, float)) else None,
            "subgoals": subgoals,
        })
    return {"goals": normalized} if normalized else None


def flatten_plan_hierarchy(hierarchy: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Step specs in goal order; priority inherits from subgoal, then goal."""
    specs = []
    for goal in hierarchy.get("goals", []):
        for subgoal in goal.get("subgoals", []):
            for step in subgoal.get("steps", []):
                priority = step.get("priority")
                if not isinstance(priority, (int, float)):
                    priority = subgoal.get("priority")
                if not isinstance(priority, (int, float)):
                    priority = goal.get("priority")
                specs.append({
                    **step,
                    "priority": priority,
                    "goalId": goal["id"],
                    "subgoalId": subgoal["id"],
                })
    return specs


def steps_from_reply(parsed: Dict[str, Any], meta: Optional[PlannerMeta], max_attempts: int, max_steps: int) -> List[PlanStep]:
    """Steps from a reply carrying either `goals` or a flat `steps` list."""
    hierarchy = normalize_plan_hierarchy(parsed)
    specs = flatten_plan_hierarchy(hierarchy) if hierarchy else []
    if not specs and isinstance(parsed.get("steps"), list):
        specs = parsed["steps"]
    steps = build_plan_steps_from_specs(specs, meta, True, max_attempts)[:max_steps]
    if not steps and meta is not None:
        steps = build_branch_steps_from_alternatives(meta.alternatives, max_attempts, max_steps)
    return steps


def build_heuristic_plan(prompt: str, max_steps: int = 12) -> List[str]:
    """
    Fallback plan titles when no planner reply is usable.

    Login prompts get a sign-in flow, browse/website prompts a visit-and-read
    flow; anything else is split into sentences.
    """
    normalized = (prompt or "").strip()
    if not normalized:
        return []
    lower = normalized.lower()
    if any(word in lower for word in _LOGIN_WORDS):
        titles = [
            "Open the target website.",
            "Locate the sign-in form.",
            "Fill in the credentials.",
            "Submit the form and wait for the next page.",
            "Verify the expected page or account state.",
        ]
    elif "browse" in lower or "website" in lower:
        titles = [
            "Open the target URL.",
            "Wait for the page to finish loading.",
            "Locate the requested content.",
            "Capture the relevant details.",
        ]
    else:
        titles = [sentence.strip() for sentence in re.split(r"[.!?]\s+", normalized) if sentence.strip()]
    return titles[:max_steps]


def build_heuristic_steps(prompt: str, max_steps: int, max_attempts: int) -> List[PlanStep]:
    return [
        PlanStep(title=title, tool=StepTool.PLAYWRIGHT, phase=StepPhase.ACT, max_attempts=max_attempts)
        for title in build_heuristic_plan(prompt, max_steps)
    ]


def is_extraction_step(step: PlanStep, prompt: str, task_type: Optional[TaskType]) -> bool:
    if task_type == TaskType.EXTRACT_INFO:
        return True
    combined = f"{step.title} {step.expected_observation or ''} {prompt}".lower()
    return bool(_EXTRACT_VERB.search(combined)) and bool(_EXTRACT_TARGET.search(combined))


def should_evaluate_replan(step_index: int, steps: Sequence[PlanStep], replan_every_steps: int) -> bool:
    """Scheduled replan every N steps while at least one step remains."""
    if len(steps) < 3:
        return False
    next_index = step_index + 1
    if next_index >= len(steps):
        return False
    return next_index % replan_every_steps == 0


def append_task_type_to_prompt(prompt: str, task_type: Optional[TaskType]) -> str:
    if not task_type:
        return prompt
    return f"{prompt}\n\nTask type: {task_type.value}"


def splice_plan(plan: List[PlanStep], next_index: int, new_steps: Sequence[PlanStep], max_steps: int) -> List[PlanStep]:
    """
    Keep plan[:next_index] and append the new steps, bounded by max_steps.

    At least one new step is always kept so a replan can make progress.
    """
    remaining = max(1, max_steps - next_index)
    return list(plan[:next_index]) + list(new_steps[:remaining])


def plan_excerpt(plan: Sequence[PlanStep]) -> List[Dict[str, Any]]:
    """Compact plan view sent to the planner."""
    return [
        {
            "id": step.id,
            "title": step.title,
            "status": step.status.value,
            "tool": step.tool.value,
            "expectedObservation": step.expected_observation,
            "successCriteria": step.success_criteria,
        }
        for step in plan
    ]
