from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import relationship
from sqlalchemy.schema import UniqueConstraint

from app.core.clock import utcnow
from app.database import Base, JSONType


class StepType(str, Enum):
    EMAIL = "email"
    DELAY = "delay"
    CONDITION = "condition"
    ACTION = "action"
    SPLIT_TEST = "split_test"
    GOAL = "goal"


class EmailAutomationStep(Base):
    __tablename__ = "email_automation_steps"

    id = Column(String(36), primary_key=True)
    workflow_id = Column(
        String(36),
        ForeignKey("email_automation_workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    step_type = Column(String(16), nullable=False)
    order_index = Column(Integer, nullable=False)

    template_id = Column(String(64), nullable=True)
    config = Column(JSONType, nullable=True)
    execution_conditions = Column(JSONType, nullable=True)

    # Append-only; one increment per step attempt.
    execution_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    conversion_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    workflow = relationship("EmailAutomationWorkflow", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("workflow_id", "order_index", name="uq_email_automation_steps_order"),
    )
