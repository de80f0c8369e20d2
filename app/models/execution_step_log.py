from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.schema import Index

from app.database import Base


class StepLogOutcome(str, Enum):
    SENT = "sent"
    SUPPRESSED = "suppressed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStepLog(Base):
    __tablename__ = "workflow_execution_step_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    execution_id = Column(String(36), nullable=False, index=True)
    workflow_id = Column(String(36), nullable=False)
    user_id = Column(String(64), nullable=False)

    step_id = Column(String(36), nullable=False)
    step_index = Column(Integer, nullable=False)
    step_type = Column(String(16), nullable=False)

    outcome = Column(String(16), nullable=False)
    detail = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index(
            "ix_step_logs_frequency",
            "workflow_id",
            "user_id",
            "step_type",
            "outcome",
            "created_at",
        ),
    )
