"""
Run controls - stop, resume, approve, override, delete

Controls only change stored state; the step loop observes them at its next
boundary and the queue picks up re-queued runs.
"""
from typing import Optional

from loguru import logger

from .audit import AuditLogger
from .checkpoint import CheckpointStore, parse_checkpoint
from .errors import InvalidRunActionError, RunNotFoundError
from .models import AgentRun, RunStatus, StepStatus, utcnow

OVERRIDE_STATUSES = (StepStatus.PENDING.value, StepStatus.COMPLETED.value, StepStatus.FAILED.value)
_NOT_RESUMABLE = (RunStatus.RUNNING, RunStatus.QUEUED)


class RunControls:
    """
    Operator-facing run actions

    Raises RunNotFoundError for unknown runs and InvalidRunActionError when
    the action does not fit the run's current state.
    """

    def __init__(self, store: CheckpointStore, audit: AuditLogger):
        self.store = store
        self.audit = audit

    async def _get(self, run_id: str) -> AgentRun:
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def stop(self, run_id: str) -> AgentRun:
        run = await self._get(run_id)
        if run.status.is_terminal:
            raise InvalidRunActionError(f"Run is already {run.status.value}.")
        updated = await self.store.update_run(run_id, status=RunStatus.STOPPED, finished_at=utcnow())
        await self.audit.log(run_id, "warning", "Run stop requested.", previous_status=run.status.value)
        logger.info(f"🛑 [RunControls] run={run_id} stopped")
        return updated

    async def resume(self, run_id: str, step_id: Optional[str] = None) -> AgentRun:
        """
        Re-queue a paused, failed or stopped run.

        Args:
            step_id: optional step to continue from; it is reset to pending
                with zero attempts
        """
        run = await self._get(run_id)
        if run.status in _NOT_RESUMABLE:
            raise InvalidRunActionError(f"Run is {run.status.value} and cannot be resumed.")

        checkpoint = parse_checkpoint(run.plan_state)
        if checkpoint is None:
            if step_id:
                raise InvalidRunActionError("Run has no plan to resume from.")
            updated = await self.store.update_run(
                run_id, status=RunStatus.QUEUED, finished_at=None, error_message=None,
                requires_human_intervention=False,
            )
        else:
            if step_id:
                index = checkpoint.step_index(step_id)
                if index == -1:
                    raise InvalidRunActionError(f"Unknown step: {step_id}")
                step = checkpoint.steps[index]
                step.status = StepStatus.PENDING
                step.attempts = 0
                checkpoint.active_step_id = step_id
            checkpoint.resume_requested_at = utcnow().isoformat()
            await self.store.save(
                run_id, checkpoint,
                status=RunStatus.QUEUED, finished_at=None, error_message=None,
                requires_human_intervention=False,
            )
            updated = await self._get(run_id)

        await self.audit.log(run_id, "info", "Run resume requested.", step_id=step_id)
        logger.info(f"🔄 [RunControls] run={run_id} re-queued (step={step_id})")
        return updated

    async def approve_step(self, run_id: str, step_id: str) -> AgentRun:
        run = await self._get(run_id)
        checkpoint = parse_checkpoint(run.plan_state)
        if (
            run.status != RunStatus.WAITING_APPROVAL
            or checkpoint is None
            or checkpoint.approval_requested_step_id != step_id
        ):
            raise InvalidRunActionError(f"Step {step_id} is not awaiting approval.")

        checkpoint.approval_granted_step_id = step_id
        checkpoint.approval_requested_step_id = None
        await self.store.save(run_id, checkpoint, status=RunStatus.QUEUED)
        await self.audit.log(run_id, "info", "Step approved.", step_id=step_id)
        logger.info(f"✅ [RunControls] run={run_id} step={step_id} approved")
        return await self._get(run_id)

    async def override_step_status(self, run_id: str, step_id: str, status: str) -> AgentRun:
        """
        Correct a step's status.

        A running run gets the override queued and applied at its next loop
        boundary; otherwise the checkpoint is edited directly. A run waiting
        for a human is re-queued.
        """
        if status not in OVERRIDE_STATUSES:
            raise InvalidRunActionError(f"Unsupported step status: {status}")
        run = await self._get(run_id)
        checkpoint = parse_checkpoint(run.plan_state)
        if checkpoint is None or checkpoint.step_index(step_id) == -1:
            raise InvalidRunActionError(f"Unknown step: {step_id}")

        if run.status == RunStatus.RUNNING:
            await self.store.queue_step_override(run_id, step_id, status)
            await self.audit.log(run_id, "info", "Step override queued.", step_id=step_id, status=status)
            return await self._get(run_id)

        step = checkpoint.steps[checkpoint.step_index(step_id)]
        step.status = StepStatus(status)
        if step.status == StepStatus.PENDING:
            step.attempts = 0
        if run.status == RunStatus.WAITING_HUMAN:
            # a correction answers the escalation
            checkpoint.last_error = None
            await self.store.save(
                run_id, checkpoint, status=RunStatus.QUEUED, requires_human_intervention=False, error_message=None,
            )
        else:
            await self.store.save(run_id, checkpoint)
        await self.audit.log(run_id, "info", "Step status overridden.", step_id=step_id, status=status)
        return await self._get(run_id)

    async def delete(self, run_id: str, force: bool = False) -> None:
        run = await self._get(run_id)
        if run.status == RunStatus.RUNNING and not force:
            raise InvalidRunActionError("Run is running; stop it first or delete with force.")
        await self.store.delete_run(run_id)
        logger.info(f"🗑️ [RunControls] run={run_id} deleted (force={force})")
