from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, String, false, func
from sqlalchemy.schema import Index, UniqueConstraint

from app.core.clock import utcnow
from app.database import Base, JSONType

EXECUTION_RESUME = "EXECUTION_RESUME"


class EventOutbox(Base):
    __tablename__ = "event_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)

    event_type = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)

    # execution_id for resumptions and step telemetry; workflow_id otherwise.
    aggregate_id = Column(String(64), nullable=True, index=True)

    payload = Column(JSONType, nullable=False)

    # Row is not handed to a handler before this instant (delays, retry backoff).
    available_at = Column(DateTime(timezone=True), nullable=False)

    processed = Column(Boolean, nullable=False, default=False, server_default=false())
    processed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "event_type",
            "idempotency_key",
            name="uq_event_outbox_idempotency",
        ),
        Index("ix_event_outbox_due", "processed", "available_at"),
    )
