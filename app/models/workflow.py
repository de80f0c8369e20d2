from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text, func
from sqlalchemy.orm import relationship
from sqlalchemy.schema import Index

from app.core.clock import utcnow
from app.database import Base, JSONType


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class TriggerType(str, Enum):
    USER_REGISTRATION = "user_registration"
    COURSE_ENROLLMENT = "course_enrollment"
    COURSE_COMPLETION = "course_completion"
    LESSON_COMPLETION = "lesson_completion"
    ASSESSMENT_SUBMISSION = "assessment_submission"
    INACTIVITY = "inactivity"
    BIRTHDAY = "birthday"
    COURSE_DEADLINE = "course_deadline"
    CUSTOM_EVENT = "custom_event"
    TIME_BASED = "time_based"
    BEHAVIOR_TRIGGER = "behavior_trigger"


class EmailAutomationWorkflow(Base):
    __tablename__ = "email_automation_workflows"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=False, index=True)

    status = Column(String(16), nullable=False, default=WorkflowStatus.DRAFT.value)
    trigger_type = Column(String(32), nullable=False)

    trigger_config = Column(JSONType, nullable=True)
    target_audience = Column(JSONType, nullable=True)
    settings = Column(JSONType, nullable=True)

    active_from = Column(DateTime(timezone=True), nullable=True)
    active_until = Column(DateTime(timezone=True), nullable=True)

    # time_based workflows only; recomputed from the cron expression after each fire.
    next_fire_at = Column(DateTime(timezone=True), nullable=True)

    # step id -> position, resolved at activation.
    step_index_map = Column(JSONType, nullable=True)
    graph_version = Column(Integer, nullable=False, default=1)

    total_executions = Column(Integer, nullable=False, default=0)
    successful_executions = Column(Integer, nullable=False, default=0)
    failed_executions = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    steps = relationship(
        "EmailAutomationStep",
        back_populates="workflow",
        order_by="EmailAutomationStep.order_index",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_email_automation_workflows_status_trigger", "status", "trigger_type"),
        Index("ix_email_automation_workflows_next_fire", "status", "next_fire_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE.value

    @property
    def ordered_steps(self):
        return sorted(self.steps, key=lambda s: s.order_index)
