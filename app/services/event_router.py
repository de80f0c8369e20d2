"""
Routes platform events (enrollments, completions, custom events, ...) to the
active workflows whose trigger they satisfy.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.clock import as_utc, parse_datetime, utcnow
from app.core.errors import UserNotFoundError
from app.database import SessionLocal
from app.models.workflow import EmailAutomationWorkflow, TriggerType, WorkflowStatus
from app.services.condition_evaluator import evaluate_all
from app.services.scheduling_windows import duration_from_config

logger = logging.getLogger(__name__)

_COURSE_SCOPED = {
    TriggerType.COURSE_ENROLLMENT,
    TriggerType.COURSE_COMPLETION,
    TriggerType.LESSON_COMPLETION,
    TriggerType.ASSESSMENT_SUBMISSION,
    TriggerType.COURSE_DEADLINE,
}


@dataclass
class PlatformEvent:
    type: str
    user_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Optional[datetime] = None


def _in_scope(values: Optional[List[Any]], candidate: Any) -> bool:
    if not values:
        return True
    return candidate is not None and str(candidate) in {str(v) for v in values}


def trigger_config_matches(
    workflow: EmailAutomationWorkflow,
    event: PlatformEvent,
    now: datetime,
) -> bool:
    cfg = workflow.trigger_config or {}
    trigger_type = TriggerType(workflow.trigger_type)
    data = event.data or {}

    if trigger_type in _COURSE_SCOPED:
        if not _in_scope(cfg.get("courseIds"), data.get("courseId")):
            return False
        if not _in_scope(cfg.get("categoryIds"), data.get("categoryId")):
            return False

    if trigger_type == TriggerType.CUSTOM_EVENT:
        if data.get("eventName") != cfg.get("customEventName"):
            return False

    if trigger_type == TriggerType.BEHAVIOR_TRIGGER:
        if not evaluate_all(cfg.get("behaviorConditions"), data):
            return False

    if trigger_type == TriggerType.INACTIVITY:
        period = duration_from_config(cfg.get("inactivityPeriod"))
        if period is not None:
            last_activity = parse_datetime(data.get("lastActivityAt"))
            if last_activity is None or now - last_activity < period:
                return False

    return True


def dispatch_event(
    event: PlatformEvent,
    *,
    db: Optional[Session] = None,
    coordinator=None,
    now: Optional[datetime] = None,
) -> List[str]:
    """Triggers every matching active workflow for the event's user; returns created execution ids."""
    try:
        trigger_type = TriggerType(event.type)
    except ValueError:
        logger.info("Ignoring event with unknown type", extra={"event_type": event.type})
        return []

    if trigger_type == TriggerType.TIME_BASED:
        logger.info("time_based workflows are not event-driven; ignoring", extra={"user_id": event.user_id})
        return []

    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    now = as_utc(now) if now is not None else utcnow()

    if coordinator is None:
        from app.services.engine import get_coordinator

        coordinator = get_coordinator()

    try:
        if coordinator.users.get_user(event.user_id) is None:
            raise UserNotFoundError(f"User {event.user_id} not found")

        workflows = (
            db.query(EmailAutomationWorkflow)
            .filter(
                EmailAutomationWorkflow.status == WorkflowStatus.ACTIVE.value,
                EmailAutomationWorkflow.trigger_type == trigger_type.value,
            )
            .order_by(EmailAutomationWorkflow.created_at.asc(), EmailAutomationWorkflow.id.asc())
            .all()
        )

        trigger_data = dict(event.data or {})
        trigger_data["eventType"] = trigger_type.value
        if event.occurred_at is not None:
            trigger_data["occurredAt"] = as_utc(event.occurred_at).isoformat()

        created: List[str] = []
        for workflow in workflows:
            if not trigger_config_matches(workflow, event, now):
                logger.debug(
                    "Event outside workflow trigger scope",
                    extra={"workflow_id": workflow.id, "event_type": event.type},
                )
                continue

            execution_id = coordinator.trigger(workflow.id, event.user_id, trigger_data, db=db, now=now)
            if execution_id:
                created.append(execution_id)

        if owns_db:
            db.commit()

        logger.info(
            "Event dispatched",
            extra={"event_type": event.type, "user_id": event.user_id, "executions": len(created)},
        )
        return created

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
