"""
SQL-backed stores

Each call opens its own session from the factory, so one store instance can
be shared by every concurrently running run.
"""
from typing import Any, AsyncContextManager, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_engine.audit import AuditEntry, AuditLogger
from agent_engine.checkpoint import CheckpointStore
from agent_engine.errors import RunNotFoundError
from agent_engine.memory import LongTermMemory, MemoryStore
from agent_engine.models import AgentRun, RunStatus, utcnow
from agent_engine.database.async_connection import get_async_db_context
from agent_engine.database.tables import (
    AgentAuditLogRow,
    AgentLongTermMemoryRow,
    AgentMemoryItemRow,
    AgentRunRow,
)

_RUN_FIELDS = (
    "id", "prompt", "model", "memory_key", "agent_browser", "run_headless",
    "error_message", "requires_human_intervention", "active_step_id",
    "plan_state", "created_at", "started_at", "finished_at",
    "checkpointed_at", "updated_at",
)


class _SessionMixin:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> AsyncContextManager[AsyncSession]:
        return get_async_db_context(self._session_factory)


def _row_to_run(row: AgentRunRow) -> AgentRun:
    values = {name: getattr(row, name) for name in _RUN_FIELDS}
    values["status"] = RunStatus(row.status)
    values["pending_overrides"] = dict(row.pending_overrides or {})
    values["run_headless"] = bool(row.run_headless)
    values["requires_human_intervention"] = bool(row.requires_human_intervention)
    return AgentRun(**values)


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, RunStatus) else value


class SqlCheckpointStore(_SessionMixin, CheckpointStore):
    """Runs and checkpoints in the agent_runs table"""

    async def create_run(self, run: AgentRun) -> AgentRun:
        async with self._session() as session:
            row = AgentRunRow(
                **{name: getattr(run, name) for name in _RUN_FIELDS},
                status=run.status.value,
                pending_overrides=dict(run.pending_overrides),
            )
            session.add(row)
        return run

    async def get_run(self, run_id: str) -> Optional[AgentRun]:
        async with self._session() as session:
            row = await session.get(AgentRunRow, run_id)
            return _row_to_run(row) if row else None

    async def update_run(self, run_id: str, **changes: Any) -> AgentRun:
        changes.setdefault("updated_at", utcnow())
        async with self._session() as session:
            row = await session.get(AgentRunRow, run_id)
            if row is None:
                raise RunNotFoundError(run_id)
            for name, value in changes.items():
                setattr(row, name, _column_value(value))
            await session.flush()
            return _row_to_run(row)

    async def list_runs(self, status: Optional[RunStatus] = None) -> List[AgentRun]:
        async with self._session() as session:
            stmt = select(AgentRunRow).order_by(AgentRunRow.created_at.asc())
            if status is not None:
                stmt = stmt.where(AgentRunRow.status == status.value)
            result = await session.execute(stmt)
            return [_row_to_run(row) for row in result.scalars().all()]

    async def delete_run(self, run_id: str) -> bool:
        async with self._session() as session:
            row = await session.get(AgentRunRow, run_id)
            if row is None:
                return False
            await session.delete(row)
            await session.execute(delete(AgentAuditLogRow).where(AgentAuditLogRow.run_id == run_id))
            await session.execute(delete(AgentMemoryItemRow).where(AgentMemoryItemRow.run_id == run_id))
            return True


class SqlMemoryStore(_SessionMixin, MemoryStore):
    """Session memory in agent_memory_items, long-term in agent_long_term_memory"""

    async def add_session(self, run_id: str, content: str) -> None:
        async with self._session() as session:
            session.add(AgentMemoryItemRow(run_id=run_id, content=content, created_at=utcnow()))

    async def list_session(self, run_id: str) -> List[str]:
        async with self._session() as session:
            result = await session.execute(
                select(AgentMemoryItemRow)
                .where(AgentMemoryItemRow.run_id == run_id)
                .order_by(AgentMemoryItemRow.id.asc())
            )
            return [row.content for row in result.scalars().all()]

    async def add_long_term(self, entry: LongTermMemory) -> LongTermMemory:
        async with self._session() as session:
            row = AgentLongTermMemoryRow(
                memory_key=entry.memory_key,
                content=entry.content,
                summary=entry.summary,
                tags=list(entry.tags),
                importance=entry.importance,
                details={**entry.metadata, "run_id": entry.run_id} if entry.run_id else dict(entry.metadata),
                created_at=entry.created_at,
            )
            session.add(row)
            await session.flush()
            entry.id = row.id
        return entry

    async def list_long_term(
        self,
        memory_key: str,
        tags: Optional[Sequence[str]] = None,
        limit: int = 4,
    ) -> List[LongTermMemory]:
        stmt = (
            select(AgentLongTermMemoryRow)
            .where(AgentLongTermMemoryRow.memory_key == memory_key)
            .order_by(AgentLongTermMemoryRow.importance.desc(), AgentLongTermMemoryRow.created_at.desc())
        )
        if not tags:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        entries = []
        for row in rows:
            if len(entries) >= limit:
                break
            row_tags = list(row.tags or [])
            # JSON tag arrays are filtered here to stay portable across backends
            if tags and not any(tag in row_tags for tag in tags):
                continue
            details = dict(row.details or {})
            entries.append(LongTermMemory(
                id=row.id,
                memory_key=row.memory_key,
                run_id=details.pop("run_id", None),
                content=row.content,
                summary=row.summary,
                tags=row_tags,
                importance=row.importance or 3,
                metadata=details,
                created_at=row.created_at,
            ))
        return entries


class SqlAuditLogger(_SessionMixin, AuditLogger):
    """Audit entries in agent_audit_logs"""

    def __init__(self, session_factory: async_sessionmaker):
        AuditLogger.__init__(self)
        _SessionMixin.__init__(self, session_factory)

    async def _persist(self, entry: AuditEntry) -> None:
        async with self._session() as session:
            session.add(AgentAuditLogRow(
                run_id=entry.run_id,
                level=entry.level,
                message=entry.message,
                details=entry.metadata,
                created_at=entry.created_at,
            ))

    async def list_entries(self, run_id: str) -> List[AuditEntry]:
        async with self._session() as session:
            result = await session.execute(
                select(AgentAuditLogRow)
                .where(AgentAuditLogRow.run_id == run_id)
                .order_by(AgentAuditLogRow.id.asc())
            )
            return [
                AuditEntry(
                    run_id=row.run_id,
                    level=row.level,
                    message=row.message,
                    metadata=dict(row.details or {}),
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]
