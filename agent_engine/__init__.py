"""
Agent engine - autonomous plan → execute → observe → replan runs over a browser tool
"""
from .audit import AuditEntry, AuditLogger
from .checkpoint import Checkpoint, CheckpointStore, InMemoryCheckpointStore, parse_checkpoint
from .controls import RunControls
from .engine import AgentEngine
from .errors import InvalidRunActionError, RunNotFoundError
from .memory import InMemoryMemoryStore, LongTermMemory, MemoryStore
from .models import AgentRun, LoopExit, PlanStep, RunStatus, StepStatus, StepTool, ToolKind, ToolResult
from .planner import HeuristicPlanner, Planner
from .queue import AgentQueue
from .step_runner import RunState, StepRunner

__all__ = [
    "AgentEngine", "AgentQueue", "RunControls", "StepRunner", "RunState",
    "Planner", "HeuristicPlanner",
    "Checkpoint", "CheckpointStore", "InMemoryCheckpointStore", "parse_checkpoint",
    "MemoryStore", "InMemoryMemoryStore", "LongTermMemory",
    "AuditLogger", "AuditEntry",
    "AgentRun", "PlanStep", "RunStatus", "StepStatus", "StepTool", "ToolKind", "ToolResult", "LoopExit",
    "RunNotFoundError", "InvalidRunActionError",
]
