"""
Memory storage for agent runs

Two tiers:
- session memory: rolling, run-scoped summaries (prompt, planner summaries,
  self-improvement notes)
- long-term memory: validated, tagged entries shared by every run with the
  same memory key

Long-term writes go through validate_and_add_long_term_memory; a rejected
entry is logged and skipped, never raised.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from .models import PlannerContext, utcnow

if TYPE_CHECKING:
    from .planner import Planner

SESSION_CONTEXT_LIMIT = 8
MEMORY_CONTEXT_LIMIT = 10
MIN_MEMORY_LENGTH = 12
DUPLICATE_SCAN_LIMIT = 20

TAG_AGENT_RUN = "agent-run"
TAG_SELF_IMPROVEMENT = "self-improvement"
TAG_PROBLEM_SOLUTION = "problem-solution"


@dataclass
class LongTermMemory:
    """
    Long-term memory entry

    Attributes:
        memory_key: namespace shared across runs
        content: full text
        summary: short form used in planner context
        tags: e.g. agent-run, problem-solution, self-improvement
        importance: 1-5, higher sorts first
        metadata: structured context (mistakes, countermeasure, ...)
    """
    memory_key: str
    content: str
    summary: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    importance: int = 3
    metadata: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "memory_key": self.memory_key,
            "run_id": self.run_id,
            "content": self.content,
            "summary": self.summary,
            "tags": list(self.tags),
            "importance": self.importance,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class MemoryWriteResult:
    status: str  # accepted / skipped
    reason: Optional[str] = None
    entry: Optional[LongTermMemory] = None

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"


def sort_long_term(entries: Iterable[LongTermMemory]) -> List[LongTermMemory]:
    return sorted(entries, key=lambda entry: (entry.importance, entry.created_at), reverse=True)


class MemoryStore(ABC):
    """Abstract base class for memory storage."""

    @abstractmethod
    async def add_session(self, run_id: str, content: str) -> None:
        pass

    @abstractmethod
    async def list_session(self, run_id: str) -> List[str]:
        """Session entries for a run, oldest first."""
        pass

    @abstractmethod
    async def add_long_term(self, entry: LongTermMemory) -> LongTermMemory:
        pass

    @abstractmethod
    async def list_long_term(
        self,
        memory_key: str,
        tags: Optional[Sequence[str]] = None,
        limit: int = 4,
    ) -> List[LongTermMemory]:
        """
        Long-term entries for a memory key.

        Args:
            memory_key: namespace
            tags: keep entries carrying any of these tags (None keeps all)
            limit: maximum entries, most important and newest first
        """
        pass

    async def add_session_summary(self, run_id: str, content: str) -> None:
        if content and content.strip():
            await self.add_session(run_id, content.strip())


class InMemoryMemoryStore(MemoryStore):
    """
    In-process memory storage

    Used by tests and one-off CLI runs.
    """

    def __init__(self):
        self._session: Dict[str, List[str]] = {}
        self._long_term: List[LongTermMemory] = []
        self._next_id = 1

    async def add_session(self, run_id: str, content: str) -> None:
        self._session.setdefault(run_id, []).append(content)

    async def list_session(self, run_id: str) -> List[str]:
        return list(self._session.get(run_id, []))

    async def add_long_term(self, entry: LongTermMemory) -> LongTermMemory:
        entry.id = self._next_id
        self._next_id += 1
        self._long_term.append(entry)
        return entry

    async def list_long_term(
        self,
        memory_key: str,
        tags: Optional[Sequence[str]] = None,
        limit: int = 4,
    ) -> List[LongTermMemory]:
        matches = [
            entry for entry in self._long_term
            if entry.memory_key == memory_key
            and (not tags or any(tag in entry.tags for tag in tags))
        ]
        return sort_long_term(matches)[:limit]


def _normalize_text(value: str) -> str:
    return " ".join(value.lower().split())


async def validate_and_add_long_term_memory(
    store: MemoryStore,
    entry: LongTermMemory,
    planner: Optional["Planner"] = None,
    ctx: Optional[PlannerContext] = None,
) -> MemoryWriteResult:
    """
    Validate a long-term entry and store it when accepted.

    Local checks reject short or duplicate content. When a planner and a
    context (routed to the validation model) are given, the model may also
    reject the entry or rewrite its summary.

    Returns:
        MemoryWriteResult: accepted with the stored entry, or skipped with a reason
    """
    content = (entry.content or "").strip()
    if len(content) < MIN_MEMORY_LENGTH:
        logger.info(f"🧠 [Memory] Skipped long-term memory for {entry.memory_key}: low-value")
        return MemoryWriteResult(status="skipped", reason="low-value")

    existing = await store.list_long_term(entry.memory_key, limit=DUPLICATE_SCAN_LIMIT)
    normalized = _normalize_text(content)
    if any(_normalize_text(item.content) == normalized for item in existing):
        logger.info(f"🧠 [Memory] Skipped long-term memory for {entry.memory_key}: duplicate")
        return MemoryWriteResult(status="skipped", reason="duplicate")

    if planner is not None and ctx is not None:
        validation = await planner.validate_memory(ctx, content, entry.summary)
        if validation is not None and not validation.accepted:
            reason = validation.reason or "rejected by validator"
            logger.info(f"🧠 [Memory] Skipped long-term memory for {entry.memory_key}: {reason}")
            return MemoryWriteResult(status="skipped", reason=reason)
        if validation is not None and validation.summary:
            entry.summary = validation.summary

    entry.content = content
    stored = await store.add_long_term(entry)
    logger.debug(f"🧠 [Memory] Stored long-term memory #{stored.id} tags={stored.tags}")
    return MemoryWriteResult(status="accepted", entry=stored)


async def add_problem_solution_memory(
    store: MemoryStore,
    memory_key: Optional[str],
    run_id: str,
    problem: Optional[str],
    countermeasure: Optional[str],
    tags: Sequence[str] = (),
    context: Optional[Dict[str, Any]] = None,
    planner: Optional["Planner"] = None,
    ctx: Optional[PlannerContext] = None,
) -> Optional[MemoryWriteResult]:
    """Record how a failure was countered, e.g. a branch or a replan."""
    if not memory_key or not problem or not countermeasure:
        return None
    summary = f"Problem: {problem} · Countermeasure: {countermeasure}"
    entry = LongTermMemory(
        memory_key=memory_key,
        run_id=run_id,
        content=summary,
        summary=summary,
        tags=[TAG_PROBLEM_SOLUTION, *tags],
        importance=4,
        metadata={"problem": problem, "countermeasure": countermeasure, **(context or {})},
    )
    return await validate_and_add_long_term_memory(store, entry, planner, ctx)


def _collect(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    return [item.strip() for item in values if isinstance(item, str) and item.strip()]


def _add_unique(target: List[str], items: Iterable[str]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


def build_self_improvement_playbook(entries: Sequence[LongTermMemory]) -> Optional[str]:
    """
    Condense self-improvement entries into one context block.

    Returns None when the entries carry nothing usable.
    """
    if not entries:
        return None
    summaries: List[str] = []
    mistakes: List[str] = []
    improvements: List[str] = []
    guardrails: List[str] = []
    tool_adjustments: List[str] = []
    for entry in entries:
        if entry.summary and entry.summary.strip():
            summaries.append(entry.summary.strip())
        meta = entry.metadata or {}
        _add_unique(mistakes, _collect(meta.get("mistakes")))
        _add_unique(improvements, _collect(meta.get("improvements")))
        _add_unique(guardrails, _collect(meta.get("guardrails")))
        _add_unique(tool_adjustments, _collect(meta.get("tool_adjustments")))

    lines = []
    if summaries:
        lines.append(f"Recent learning: {' | '.join(summaries[:2])}")
    if mistakes:
        lines.append(f"Avoid: {' | '.join(mistakes[:4])}")
    if improvements:
        lines.append(f"Improve: {' | '.join(improvements[:4])}")
    if guardrails:
        lines.append(f"Guardrails: {' | '.join(guardrails[:4])}")
    if tool_adjustments:
        lines.append(f"Tool tweaks: {' | '.join(tool_adjustments[:3])}")
    if not lines:
        return None
    return "Self-improvement playbook:\n" + "\n".join(lines)


@dataclass
class MemoryContext:
    entries: List[str]
    improvement_count: int = 0
    playbook: Optional[str] = None


async def build_memory_context(store: MemoryStore, run_id: str, memory_key: str) -> MemoryContext:
    """
    Assemble the memory lines every planner call sees.

    Last session entries, then long-term entries (general, problem-solution,
    self-improvement), then the playbook; capped at the newest ten lines.
    """
    session = (await store.list_session(run_id))[-SESSION_CONTEXT_LIMIT:]
    general = await store.list_long_term(memory_key, limit=4)
    problems = await store.list_long_term(memory_key, tags=[TAG_PROBLEM_SOLUTION], limit=4)
    improvements = await store.list_long_term(memory_key, tags=[TAG_SELF_IMPROVEMENT], limit=3)
    playbook = build_self_improvement_playbook(improvements)

    long_term = [
        f"Long-term memory: {entry.summary or entry.content}"
        for entry in [*general, *problems, *improvements]
        if entry.summary or entry.content
    ]
    entries = [*session, *long_term]
    if playbook:
        entries.append(playbook)
    return MemoryContext(
        entries=entries[-MEMORY_CONTEXT_LIMIT:],
        improvement_count=len(improvements),
        playbook=playbook,
    )
