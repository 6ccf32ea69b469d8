"""
Run / PlanStep / Review data models

Core data structures of the agent engine:
- AgentRun: one execution instance and its lifecycle status
- PlanStep: one unit of work inside a plan
- ToolRequest / ToolResult: the tool executor contract
- Planner results: PlanResult, PlanReview, GuardReview, ApprovalDecision, ...
- LoopSignal: loop-guard detector output
"""
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    """Run lifecycle status"""
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    WAITING_HUMAN = "waiting_human"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.STOPPED)


class StepStatus(str, Enum):
    """Plan step status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepTool(str, Enum):
    """Tool a step needs"""
    PLAYWRIGHT = "playwright"
    NONE = "none"


class StepPhase(str, Enum):
    OBSERVE = "observe"
    ACT = "act"
    VERIFY = "verify"
    RECOVER = "recover"


class TaskType(str, Enum):
    WEB_TASK = "web_task"
    EXTRACT_INFO = "extract_info"


class ToolKind(str, Enum):
    """full: drive the browser toward the goal; observe: snapshot current state"""
    FULL = "full"
    OBSERVE = "observe"


class ReviewAction(str, Enum):
    CONTINUE = "continue"
    REPLAN = "replan"
    WAIT_HUMAN = "wait_human"


class LoopExit(str, Enum):
    """Why the step loop returned control to the engine"""
    DONE = "done"
    WAITING_APPROVAL = "waiting_approval"
    WAITING_HUMAN = "waiting_human"
    FAILED = "failed"
    STOPPED = "stopped"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns store"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_or_none(enum_cls, value):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass
class PlanStep:
    """
    A single plan step

    Title and tool are fixed at creation; only status, attempts and the
    snapshot fields change while the run progresses.

    Attributes:
        title: what the step should achieve
        tool: playwright / none
        status: pending / running / completed / failed
        attempts: executions so far
        max_attempts: executions allowed before remediation kicks in
    """
    title: str
    tool: StepTool = StepTool.PLAYWRIGHT
    id: str = field(default_factory=new_id)
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    max_attempts: int = 2
    phase: Optional[StepPhase] = None
    priority: Optional[float] = None
    depends_on: Optional[List[str]] = None
    goal_id: Optional[str] = None
    subgoal_id: Optional[str] = None
    expected_observation: Optional[str] = None
    success_criteria: Optional[str] = None
    snapshot_id: Optional[str] = None
    log_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "tool": self.tool.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "phase": self.phase.value if self.phase else None,
            "priority": self.priority,
            "depends_on": list(self.depends_on) if self.depends_on is not None else None,
            "goal_id": self.goal_id,
            "subgoal_id": self.subgoal_id,
            "expected_observation": self.expected_observation,
            "success_criteria": self.success_criteria,
            "snapshot_id": self.snapshot_id,
            "log_count": self.log_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanStep":
        return cls(
            id=str(data.get("id") or new_id()),
            title=str(data.get("title") or "Review the page state."),
            tool=StepTool.NONE if data.get("tool") == "none" else StepTool.PLAYWRIGHT,
            status=_enum_or_none(StepStatus, data.get("status")) or StepStatus.PENDING,
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 2),
            phase=_enum_or_none(StepPhase, data.get("phase")),
            priority=data.get("priority"),
            depends_on=data.get("depends_on"),
            goal_id=data.get("goal_id"),
            subgoal_id=data.get("subgoal_id"),
            expected_observation=data.get("expected_observation"),
            success_criteria=data.get("success_criteria"),
            snapshot_id=data.get("snapshot_id"),
            log_count=data.get("log_count"),
        )


@dataclass
class AgentRun:
    """
    One execution instance

    Attributes:
        prompt: the natural-language goal
        model: model requested by the caller (None uses the configured default)
        memory_key: long-term memory namespace, defaults to the run id
        plan_state: serialized checkpoint document
        pending_overrides: step id -> status corrections not yet applied
    """
    prompt: str
    id: str = field(default_factory=new_id)
    model: Optional[str] = None
    memory_key: Optional[str] = None
    agent_browser: str = "chromium"
    run_headless: bool = True
    status: RunStatus = RunStatus.QUEUED
    error_message: Optional[str] = None
    requires_human_intervention: bool = False
    active_step_id: Optional[str] = None
    plan_state: Optional[Dict[str, Any]] = None
    pending_overrides: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    checkpointed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "prompt": self.prompt,
            "model": self.model,
            "memory_key": self.memory_key,
            "agent_browser": self.agent_browser,
            "run_headless": self.run_headless,
            "status": self.status.value,
            "error_message": self.error_message,
            "requires_human_intervention": self.requires_human_intervention,
            "active_step_id": self.active_step_id,
            "plan_state": self.plan_state,
            "pending_overrides": dict(self.pending_overrides),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "checkpointed_at": _iso(self.checkpointed_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class ToolRequest:
    """Input for one tool invocation"""
    run_id: str
    prompt: str
    step_id: str
    step_title: str
    extraction: bool = False


@dataclass
class ToolOutput:
    snapshot_id: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    log_count: Optional[int] = None
    extracted: List[str] = field(default_factory=list)


@dataclass
class ToolResult:
    """
    Tool execution result

    Attributes:
        ok: whether the tool succeeded
        error: failure description
        output: structured output (snapshot id, url, log count)
    """
    ok: bool
    error: Optional[str] = None
    output: Optional[ToolOutput] = None


@dataclass
class LoopSignal:
    """Loop-guard detector output"""
    reason: str
    pattern: str
    titles: List[str]
    urls: List[Optional[str]]
    statuses: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "pattern": self.pattern,
            "titles": self.titles,
            "urls": self.urls,
            "statuses": self.statuses,
        }


@dataclass
class PlannerMeta:
    """Normalized side information the planner attaches to a plan"""
    critique: Optional[Dict[str, List[str]]] = None
    alternatives: Optional[List[Dict[str, Any]]] = None
    safety_checks: List[str] = field(default_factory=list)
    questions: List[str] = field(default_factory=list)
    task_type: Optional[TaskType] = None
    summary: Optional[str] = None
    constraints: List[str] = field(default_factory=list)
    success_signals: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "critique": self.critique,
            "alternatives": self.alternatives,
            "safety_checks": self.safety_checks,
            "questions": self.questions,
            "task_type": self.task_type.value if self.task_type else None,
            "summary": self.summary,
            "constraints": self.constraints,
            "success_signals": self.success_signals,
        }


@dataclass
class PlannerContext:
    """What every planner call sees"""
    prompt: str
    memory: List[str]
    model: str
    run_id: Optional[str] = None
    browser_context: Optional[Dict[str, Any]] = None
    max_steps: int = 12
    max_step_attempts: int = 2

    def with_model(self, model: Optional[str]) -> "PlannerContext":
        """Same context, routed to another model (no-op when model is empty)"""
        if not model or model == self.model:
            return self
        return replace(self, model=model)


@dataclass
class PlanResult:
    steps: List[PlanStep]
    source: str = "heuristic"
    meta: Optional[PlannerMeta] = None
    hierarchy: Optional[Dict[str, Any]] = None
    branch_steps: List[PlanStep] = field(default_factory=list)


@dataclass
class PlanReview:
    """Adaptive / mid-run / resume review result; no steps means no change"""
    should_replan: bool = False
    reason: Optional[str] = None
    steps: List[PlanStep] = field(default_factory=list)
    meta: Optional[PlannerMeta] = None
    hierarchy: Optional[Dict[str, Any]] = None
    summary: Optional[str] = None


@dataclass
class GuardReview:
    """Loop-guard or self-check decision"""
    action: ReviewAction = ReviewAction.CONTINUE
    reason: Optional[str] = None
    steps: List[PlanStep] = field(default_factory=list)
    meta: Optional[PlannerMeta] = None
    notes: Optional[str] = None
    confidence: Optional[float] = None
    evidence: List[str] = field(default_factory=list)
    questions: List[str] = field(default_factory=list)


@dataclass
class ApprovalDecision:
    requires_approval: bool
    reason: Optional[str] = None
    risk_level: Optional[str] = None


@dataclass
class CheckpointBrief:
    summary: str
    next_actions: List[str] = field(default_factory=list)
    risks: List[str] = field(default_factory=list)


@dataclass
class Verification:
    verdict: str = "partial"  # pass / partial / fail
    evidence: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    summary: Optional[str] = None


@dataclass
class SelfImprovementReview:
    summary: str
    mistakes: List[str] = field(default_factory=list)
    improvements: List[str] = field(default_factory=list)
    guardrails: List[str] = field(default_factory=list)
    tool_adjustments: List[str] = field(default_factory=list)
    confidence: Optional[float] = None


@dataclass
class MemoryValidation:
    accepted: bool
    reason: Optional[str] = None
    summary: Optional[str] = None
