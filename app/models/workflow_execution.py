from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.schema import Index, UniqueConstraint

from app.database import Base, JSONType


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value)


def active_key_for(workflow_id: str, user_id: str) -> str:
    return f"{workflow_id}:{user_id}"


class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"

    execution_id = Column(String(36), primary_key=True)

    # No FK: execution history outlives a deleted workflow.
    workflow_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    trigger_data = Column(JSONType, nullable=False, default=dict)
    variables = Column(JSONType, nullable=False, default=dict)

    status = Column(String(16), nullable=False, default=ExecutionStatus.PENDING.value)
    current_step_index = Column(Integer, nullable=False, default=0)
    graph_version = Column(Integer, nullable=False)

    # Set while unterminated, NULL once terminal. Unique => one live execution per (workflow, user).
    active_key = Column(String(128), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    waiting_until = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("active_key", name="uq_workflow_executions_active_key"),
        Index("ix_workflow_executions_workflow_user", "workflow_id", "user_id", "started_at"),
        Index("ix_workflow_executions_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
