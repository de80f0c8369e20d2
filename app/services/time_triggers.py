import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from croniter import croniter
from sqlalchemy.orm import Session

from app.core.clock import as_utc, parse_datetime, utcnow
from app.core.errors import UserNotFoundError, WorkflowStateError
from app.database import SessionLocal
from app.models.workflow import EmailAutomationWorkflow, TriggerType, WorkflowStatus
from app.services.scheduling_windows import resolve_timezone

logger = logging.getLogger(__name__)


def _schedule(workflow: EmailAutomationWorkflow) -> Dict[str, Any]:
    return (workflow.trigger_config or {}).get("schedule") or {}


def compute_next_fire(workflow: EmailAutomationWorkflow, after: datetime) -> Optional[datetime]:
    """
    Next instant strictly after `after` at which a time_based workflow fires,
    or None when the schedule is exhausted (endDate passed, once-schedule fired).
    Cron expressions are evaluated in the schedule's timezone.
    """
    schedule = _schedule(workflow)
    after = as_utc(after)
    end = parse_datetime(schedule.get("endDate"))
    start = parse_datetime(schedule.get("startDate"))

    if schedule.get("type", "recurring") == "once":
        if start is None or start <= after:
            return None
        return start

    cron = schedule.get("cron")
    if not cron:
        return None

    base = after
    if start is not None and start > base:
        # croniter yields strictly after its base; step back so startDate itself can match.
        base = start - timedelta(seconds=1)

    tz_name = schedule.get("timezone") or (workflow.settings or {}).get("timezone")
    local_base = base.astimezone(resolve_timezone(tz_name))
    nxt = croniter(str(cron), local_base).get_next(datetime)
    nxt = nxt.astimezone(timezone.utc)

    if end is not None and nxt > end:
        return None
    return nxt


def initial_fire_time(workflow: EmailAutomationWorkflow, now: datetime) -> Optional[datetime]:
    """First fire time on activation. A once-schedule whose startDate has passed fires immediately."""
    schedule = _schedule(workflow)
    if schedule.get("type", "recurring") == "once":
        start = parse_datetime(schedule.get("startDate"))
        end = parse_datetime(schedule.get("endDate"))
        if start is None or (end is not None and start > end):
            return None
        return start
    return compute_next_fire(workflow, now)


def process_time_based_workflows(
    now: Optional[datetime] = None,
    *,
    db: Optional[Session] = None,
    coordinator=None,
) -> List[str]:
    """
    Fires every active time_based workflow whose next_fire_at is due: triggers
    it for each audience member, then moves next_fire_at forward (or clears it).
    Returns the created execution ids.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    now = as_utc(now) if now is not None else utcnow()

    if coordinator is None:
        from app.services.engine import get_coordinator

        coordinator = get_coordinator()

    created: List[str] = []

    try:
        workflows = (
            db.query(EmailAutomationWorkflow)
            .filter(
                EmailAutomationWorkflow.status == WorkflowStatus.ACTIVE.value,
                EmailAutomationWorkflow.trigger_type == TriggerType.TIME_BASED.value,
                EmailAutomationWorkflow.next_fire_at.isnot(None),
                EmailAutomationWorkflow.next_fire_at <= now,
            )
            .order_by(EmailAutomationWorkflow.next_fire_at.asc())
            .with_for_update(skip_locked=True)
            .all()
        )

        for workflow in workflows:
            fired_at = as_utc(workflow.next_fire_at)
            trigger_data = {"triggerType": "scheduled", "scheduledAt": fired_at.isoformat()}

            for user in coordinator.users.iter_audience(workflow.target_audience):
                try:
                    execution_id = coordinator.trigger(workflow.id, user.id, trigger_data, db=db, now=now)
                except (UserNotFoundError, WorkflowStateError):
                    logger.warning(
                        "Scheduled trigger skipped",
                        extra={"workflow_id": workflow.id, "user_id": user.id},
                    )
                    continue
                if execution_id:
                    created.append(execution_id)

            workflow.next_fire_at = compute_next_fire(workflow, max(now, fired_at))
            db.flush()

            logger.info(
                "Time-based workflow fired",
                extra={
                    "workflow_id": workflow.id,
                    "fired_at": fired_at.isoformat(),
                    "next_fire_at": workflow.next_fire_at.isoformat() if workflow.next_fire_at else None,
                },
            )

            if owns_db:
                db.commit()

        return created

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
