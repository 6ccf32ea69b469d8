"""
Database models for the agent engine

Design:
1. Every column carries a comment
2. Runs use the uuid string as primary key so ids are stable across stores
3. Plan state, overrides, tags and metadata are JSON documents
"""
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base

from agent_engine.models import RunStatus, utcnow


Base = declarative_base()


class AgentRunRow(Base):
    """
    Run row - lifecycle status plus the resumable checkpoint document
    """
    __tablename__ = "agent_runs"

    id = Column(String(36), primary_key=True, comment="Run UUID")
    prompt = Column(Text, nullable=False, comment="Natural-language goal")
    model = Column(String(128), nullable=True, comment="Requested model; null uses the configured default")
    memory_key = Column(String(255), nullable=True, index=True, comment="Long-term memory namespace")
    agent_browser = Column(String(32), default="chromium", comment="Browser engine: chromium/firefox/webkit")
    run_headless = Column(Boolean, default=True, comment="Launch the browser headless")

    # String instead of SQLEnum so the column stays portable across backends
    status = Column(String(32), default=RunStatus.QUEUED.value, index=True, comment="queued/running/waiting_approval/waiting_human/completed/failed/stopped")
    error_message = Column(Text, nullable=True, comment="Last fatal or unresolved error")
    requires_human_intervention = Column(Boolean, default=False, comment="Paused waiting for a human")
    active_step_id = Column(String(36), nullable=True, comment="Step the run continues from")
    plan_state = Column(JSON, nullable=True, comment="Checkpoint document")
    pending_overrides = Column(JSON, default=dict, comment="Step id -> status corrections not yet applied")

    created_at = Column(DateTime, default=utcnow, comment="Creation time")
    started_at = Column(DateTime, nullable=True, comment="Last claim time")
    finished_at = Column(DateTime, nullable=True, comment="Terminal time")
    checkpointed_at = Column(DateTime, nullable=True, comment="Last checkpoint write")
    updated_at = Column(DateTime, default=utcnow, comment="Last update; drives stuck-run recovery")

    __table_args__ = (
        Index("idx_agent_runs_status_created", "status", "created_at"),
    )


class AgentAuditLogRow(Base):
    """
    Audit row - one line of the run's decision trail
    """
    __tablename__ = "agent_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True, comment="Auto-increment primary key")
    run_id = Column(String(36), nullable=False, index=True, comment="Owning run")
    level = Column(String(16), nullable=False, comment="info/warning/error")
    message = Column(Text, nullable=False, comment="Audit message")
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True, comment="Structured context")
    created_at = Column(DateTime, default=utcnow, comment="Creation time")


class AgentMemoryItemRow(Base):
    """
    Session memory row - rolling, run-scoped summaries
    """
    __tablename__ = "agent_memory_items"

    id = Column(Integer, primary_key=True, autoincrement=True, comment="Auto-increment primary key")
    run_id = Column(String(36), nullable=False, index=True, comment="Owning run")
    content = Column(Text, nullable=False, comment="Summary text")
    created_at = Column(DateTime, default=utcnow, comment="Creation time")


class AgentLongTermMemoryRow(Base):
    """
    Long-term memory row - validated, tagged knowledge shared across runs
    """
    __tablename__ = "agent_long_term_memory"

    id = Column(Integer, primary_key=True, autoincrement=True, comment="Auto-increment primary key")
    memory_key = Column(String(255), nullable=False, index=True, comment="Memory namespace")
    content = Column(Text, nullable=False, comment="Memory content")
    summary = Column(Text, nullable=True, comment="Short summary")
    tags = Column(JSON, default=list, comment="Tags such as agent-run, problem-solution")
    importance = Column(Integer, default=3, comment="Importance 1-5")
    details = Column("metadata", JSON, nullable=True, comment="Structured context")
    created_at = Column(DateTime, default=utcnow, comment="Creation time")
