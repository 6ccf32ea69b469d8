"""
Checkpoint model and store

A checkpoint is the versioned document that makes a run resumable: the
plan, the active step, the last error and the approval/summary watermarks.
It lives in the run's `plan_state` so one row carries both the lifecycle
status and the resumable state.
"""
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import RunNotFoundError
from .models import AgentRun, PlanStep, RunStatus, TaskType, utcnow
from .plan_utils import normalize_task_type

CHECKPOINT_VERSION = 1


@dataclass
class Checkpoint:
    """
    Resumable run state

    Attributes:
        steps: the full plan, completed history included
        active_step_id: step to continue from
        summary_checkpoint: completed-step count of the last memory summary
        settings / preferences: per-run configuration, carried unchanged
    """
    steps: List[PlanStep] = field(default_factory=list)
    active_step_id: Optional[str] = None
    last_error: Optional[str] = None
    task_type: Optional[TaskType] = None
    resume_requested_at: Optional[str] = None
    resume_processed_at: Optional[str] = None
    approval_requested_step_id: Optional[str] = None
    approval_granted_step_id: Optional[str] = None
    checkpoint_brief: Optional[str] = None
    checkpoint_next_actions: List[str] = field(default_factory=list)
    checkpoint_risks: List[str] = field(default_factory=list)
    checkpoint_step_id: Optional[str] = None
    checkpoint_created_at: Optional[str] = None
    summary_checkpoint: int = 0
    settings: Dict[str, Any] = field(default_factory=dict)
    preferences: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[str] = None
    version: int = CHECKPOINT_VERSION

    def step_index(self, step_id: Optional[str]) -> int:
        if not step_id:
            return -1
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "steps": [step.to_dict() for step in self.steps],
            "active_step_id": self.active_step_id,
            "last_error": self.last_error,
            "task_type": self.task_type.value if self.task_type else None,
            "resume_requested_at": self.resume_requested_at,
            "resume_processed_at": self.resume_processed_at,
            "approval_requested_step_id": self.approval_requested_step_id,
            "approval_granted_step_id": self.approval_granted_step_id,
            "checkpoint_brief": self.checkpoint_brief,
            "checkpoint_next_actions": list(self.checkpoint_next_actions),
            "checkpoint_risks": list(self.checkpoint_risks),
            "checkpoint_step_id": self.checkpoint_step_id,
            "checkpoint_created_at": self.checkpoint_created_at,
            "summary_checkpoint": self.summary_checkpoint,
            "settings": copy.deepcopy(self.settings),
            "preferences": copy.deepcopy(self.preferences),
            "updated_at": self.updated_at,
        }


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def parse_checkpoint(raw: Any) -> Optional[Checkpoint]:
    """
    Parse a stored plan state.

    Returns None unless the document is a dict whose `steps` is a list.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("steps"), list):
        return None
    summary_checkpoint = raw.get("summary_checkpoint")
    return Checkpoint(
        version=raw.get("version") if isinstance(raw.get("version"), int) else CHECKPOINT_VERSION,
        steps=[PlanStep.from_dict(item) for item in raw["steps"] if isinstance(item, dict)],
        active_step_id=_optional_str(raw.get("active_step_id")),
        last_error=_optional_str(raw.get("last_error")),
        task_type=normalize_task_type(raw.get("task_type")),
        resume_requested_at=_optional_str(raw.get("resume_requested_at")),
        resume_processed_at=_optional_str(raw.get("resume_processed_at")),
        approval_requested_step_id=_optional_str(raw.get("approval_requested_step_id")),
        approval_granted_step_id=_optional_str(raw.get("approval_granted_step_id")),
        checkpoint_brief=_optional_str(raw.get("checkpoint_brief")),
        checkpoint_next_actions=_str_list(raw.get("checkpoint_next_actions")),
        checkpoint_risks=_str_list(raw.get("checkpoint_risks")),
        checkpoint_step_id=_optional_str(raw.get("checkpoint_step_id")),
        checkpoint_created_at=_optional_str(raw.get("checkpoint_created_at")),
        summary_checkpoint=summary_checkpoint if isinstance(summary_checkpoint, int) else 0,
        settings=copy.deepcopy(raw["settings"]) if isinstance(raw.get("settings"), dict) else {},
        preferences=copy.deepcopy(raw["preferences"]) if isinstance(raw.get("preferences"), dict) else {},
        updated_at=_optional_str(raw.get("updated_at")),
    )


class CheckpointStore(ABC):
    """
    Run and checkpoint persistence

    Subclasses implement the run-row primitives; checkpoint save/load and the
    step-override queue are built on top of them.
    """

    @abstractmethod
    async def create_run(self, run: AgentRun) -> AgentRun:
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[AgentRun]:
        ...

    @abstractmethod
    async def update_run(self, run_id: str, **changes: Any) -> AgentRun:
        """
        Apply field changes to a run and bump `updated_at`.

        Raises:
            RunNotFoundError: no such run
        """
        ...

    @abstractmethod
    async def list_runs(self, status: Optional[RunStatus] = None) -> List[AgentRun]:
        """Runs ordered oldest first, optionally filtered by status."""
        ...

    @abstractmethod
    async def delete_run(self, run_id: str) -> bool:
        ...

    async def save(self, run_id: str, checkpoint: Checkpoint, **run_changes: Any) -> None:
        """Persist a checkpoint (and optionally other run fields) in one write."""
        checkpoint.updated_at = utcnow().isoformat()
        await self.update_run(
            run_id,
            plan_state=checkpoint.to_dict(),
            active_step_id=checkpoint.active_step_id,
            checkpointed_at=utcnow(),
            **run_changes,
        )
        logger.debug(
            f"💾 [Checkpoint] run={run_id} saved: steps={len(checkpoint.steps)}, "
            f"active={checkpoint.active_step_id}"
        )

    async def load(self, run_id: str) -> Optional[Checkpoint]:
        run = await self.get_run(run_id)
        if run is None:
            return None
        return parse_checkpoint(run.plan_state)

    async def queue_step_override(self, run_id: str, step_id: str, status: str) -> None:
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        overrides = dict(run.pending_overrides)
        overrides[step_id] = status
        await self.update_run(run_id, pending_overrides=overrides)

    async def pop_step_overrides(self, run_id: str) -> Dict[str, str]:
        run = await self.get_run(run_id)
        if run is None or not run.pending_overrides:
            return {}
        overrides = dict(run.pending_overrides)
        await self.update_run(run_id, pending_overrides={})
        return overrides


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store; runs are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._runs: Dict[str, AgentRun] = {}

    async def create_run(self, run: AgentRun) -> AgentRun:
        self._runs[run.id] = copy.deepcopy(run)
        return copy.deepcopy(run)

    async def get_run(self, run_id: str) -> Optional[AgentRun]:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def update_run(self, run_id: str, **changes: Any) -> AgentRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        changes.setdefault("updated_at", utcnow())
        updated = replace(run, **copy.deepcopy(changes))
        self._runs[run_id] = updated
        return copy.deepcopy(updated)

    async def list_runs(self, status: Optional[RunStatus] = None) -> List[AgentRun]:
        runs = [run for run in self._runs.values() if status is None or run.status == status]
        runs.sort(key=lambda run: run.created_at)
        return [copy.deepcopy(run) for run in runs]

    async def delete_run(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None
