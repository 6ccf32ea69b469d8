"""
Run queue worker

Polls queued runs oldest first, claims them as running and executes up to
`max_concurrent_runs` at once. Runs left `running` without a checkpoint
update for too long (a crashed worker) are re-queued with a resume request.
"""
import asyncio
from datetime import timedelta
from typing import Dict, List, Optional

from loguru import logger

from config import settings
from .audit import AuditLogger
from .checkpoint import CheckpointStore, parse_checkpoint
from .engine import AgentEngine
from .errors import RunNotFoundError
from .models import RunStatus, utcnow


class AgentQueue:
    """
    Background worker that feeds queued runs to the engine

    Usage:
        queue = AgentQueue(engine)
        await queue.start()
        ...
        await queue.stop()
    """

    def __init__(
        self,
        engine: AgentEngine,
        poll_interval: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        stuck_threshold_seconds: Optional[int] = None,
    ):
        self.engine = engine
        self.store: CheckpointStore = engine.store
        self.audit: AuditLogger = engine.audit
        self.poll_interval = settings.queue_poll_interval_seconds if poll_interval is None else poll_interval
        self.max_concurrent = max(1, max_concurrent or settings.max_concurrent_runs)
        self.stuck_threshold = timedelta(
            seconds=settings.stuck_run_threshold_seconds if stuck_threshold_seconds is None else stuck_threshold_seconds
        )
        self._tasks: Dict[str, asyncio.Task] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def active_run_ids(self) -> List[str]:
        return list(self._tasks)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"📥 [AgentQueue] Started (poll={self.poll_interval}s, max_concurrent={self.max_concurrent})"
        )

    async def stop(self) -> None:
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("📥 [AgentQueue] Stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"❌ [AgentQueue] Poll failed: {e}")
            await asyncio.sleep(self.poll_interval)

    async def tick(self) -> List[str]:
        """
        One poll: recover stuck runs, then claim queued runs up to capacity.

        Returns:
            List[str]: ids of runs started by this poll
        """
        await self.recover_stuck_runs()
        started: List[str] = []
        for run in await self.store.list_runs(RunStatus.QUEUED):
            if len(self._tasks) >= self.max_concurrent:
                break
            if run.id in self._tasks:
                continue
            await self.store.update_run(run.id, status=RunStatus.RUNNING)
            self._tasks[run.id] = asyncio.create_task(self._execute(run.id))
            started.append(run.id)
            logger.info(f"📥 [AgentQueue] Claimed run {run.id}")
        return started

    async def _execute(self, run_id: str) -> None:
        try:
            await self.engine.run(run_id)
        except RunNotFoundError:
            logger.warning(f"⚠️ [AgentQueue] run={run_id} deleted before it started")
        except Exception as e:
            logger.exception(f"❌ [AgentQueue] run={run_id} failed: {e}")
            try:
                await self.store.update_run(run_id, status=RunStatus.FAILED, error_message=str(e), finished_at=utcnow())
            except RunNotFoundError:
                logger.warning(f"⚠️ [AgentQueue] run={run_id} deleted before its failure was recorded")
        finally:
            self._tasks.pop(run_id, None)

    async def wait_idle(self) -> None:
        """Wait until every claimed run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def recover_stuck_runs(self) -> List[str]:
        recovered: List[str] = []
        now = utcnow()
        for run in await self.store.list_runs(RunStatus.RUNNING):
            if run.id in self._tasks or now - run.updated_at < self.stuck_threshold:
                continue
            checkpoint = parse_checkpoint(run.plan_state)
            if checkpoint is not None:
                checkpoint.resume_requested_at = now.isoformat()
                await self.store.save(run.id, checkpoint, status=RunStatus.QUEUED)
            else:
                await self.store.update_run(run.id, status=RunStatus.QUEUED)
            await self.audit.log(run.id, "warning", "Run re-queued after stall.", last_update=run.updated_at.isoformat())
            logger.warning(f"⏳ [AgentQueue] Re-queued stuck run {run.id}")
            recovered.append(run.id)
        return recovered
