"""
Audit trail for agent runs

Every decision the engine takes (plan built, step failed, loop detected,
approval requested, ...) is written here and mirrored to loguru.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from loguru import logger

from .models import utcnow

LEVELS = ("info", "warning", "error")


@dataclass
class AuditEntry:
    run_id: str
    level: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "level": self.level,
            "message": self.message,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


class AuditLogger:
    """
    In-process audit logger

    Keeps entries in memory for inspection; subclasses persist them.
    Persistence errors are logged and swallowed so the run loop never
    fails because of its audit trail.
    """

    def __init__(self):
        self.entries: List[AuditEntry] = []

    async def log(self, run_id: str, level: str, message: str, **metadata: Any) -> None:
        if level not in LEVELS:
            level = "info"
        entry = AuditEntry(run_id=run_id, level=level, message=message, metadata=metadata)
        logger.log(level.upper(), f"📝 [Audit] run={run_id} {message}")
        try:
            await self._persist(entry)
        except Exception as e:
            logger.error(f"📝 [Audit] Failed to persist audit entry for run={run_id}: {e}")

    async def _persist(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    async def list_entries(self, run_id: str) -> List[AuditEntry]:
        return [entry for entry in self.entries if entry.run_id == run_id]
