"""
Durable resumption of executions, backed by event_outbox.

Rows are written in the caller's session, so an execution's new state and its
resumption job commit (or roll back) together. The outbox worker hands due
rows to the coordinator at least once.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.errors import SchedulingError
from app.models.event_outbox import EXECUTION_RESUME, EventOutbox

logger = logging.getLogger(__name__)


class SchedulingAdapter(Protocol):
    def schedule_at(self, db: Session, execution_id: str, resume_at: datetime, *, step_index: int) -> None: ...

    def cancel(self, db: Session, execution_id: str, *, now: Optional[datetime] = None) -> int: ...


def enqueue_event(
    db: Session,
    *,
    event_type: str,
    idempotency_key: str,
    payload: Dict[str, Any],
    aggregate_id: Optional[str] = None,
    available_at: Optional[datetime] = None,
) -> EventOutbox:
    now = utcnow()
    row = EventOutbox(
        event_type=event_type,
        idempotency_key=idempotency_key,
        aggregate_id=aggregate_id,
        payload=payload,
        available_at=as_utc(available_at) if available_at is not None else now,
        processed=False,
        retry_count=0,
        created_at=now,
    )
    db.add(row)
    return row


class OutboxScheduler:
    def schedule_at(self, db: Session, execution_id: str, resume_at: datetime, *, step_index: int) -> None:
        resume_at = as_utc(resume_at)
        try:
            with db.begin_nested():
                enqueue_event(
                    db,
                    event_type=EXECUTION_RESUME,
                    idempotency_key=f"{execution_id}:{int(step_index)}:{uuid.uuid4().hex}",
                    aggregate_id=execution_id,
                    payload={"execution_id": execution_id, "step_index": int(step_index)},
                    available_at=resume_at,
                )
        except SQLAlchemyError as exc:
            raise SchedulingError(f"Could not schedule resumption for execution {execution_id}") from exc

        logger.debug(
            "Execution resumption scheduled",
            extra={"execution_id": execution_id, "step_index": int(step_index), "resume_at": resume_at.isoformat()},
        )

    def cancel(self, db: Session, execution_id: str, *, now: Optional[datetime] = None) -> int:
        now = as_utc(now) if now is not None else utcnow()
        cancelled = (
            db.query(EventOutbox)
            .filter(
                EventOutbox.event_type == EXECUTION_RESUME,
                EventOutbox.aggregate_id == execution_id,
                EventOutbox.processed.is_(False),
            )
            .update(
                {
                    EventOutbox.processed: True,
                    EventOutbox.processed_at: now,
                    EventOutbox.cancelled_at: now,
                },
                synchronize_session=False,
            )
        )
        if cancelled:
            logger.info(
                "Execution resumption cancelled",
                extra={"execution_id": execution_id, "cancelled_jobs": int(cancelled)},
            )
        return int(cancelled)
