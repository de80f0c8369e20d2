import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.database import SessionLocal
from app.models.execution_step_log import ExecutionStepLog, StepLogOutcome
from app.models.workflow_execution import TERMINAL_STATUSES, WorkflowExecution
from app.models.workflow_step import StepType
from app.services.scheduling_windows import calendar_window_starts, duration_from_config

logger = logging.getLogger(__name__)

_FREQUENCY_CAPS = (
    ("maxEmailsPerDay", "day"),
    ("maxEmailsPerWeek", "week"),
    ("maxEmailsPerMonth", "month"),
)


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = LimitDecision(allowed=True)


def _positive_int(settings: Dict[str, Any], key: str) -> Optional[int]:
    raw = settings.get(key)
    if raw is None:
        return None
    try:
        n = int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed limiter setting", extra={"setting": key, "value": raw})
        return None
    return n if n >= 0 else None


def _has_unterminated_execution(db: Session, workflow_id: str, user_id: str) -> bool:
    row = (
        db.query(WorkflowExecution.execution_id)
        .filter(
            WorkflowExecution.workflow_id == workflow_id,
            WorkflowExecution.user_id == user_id,
            WorkflowExecution.status.notin_(TERMINAL_STATUSES),
        )
        .first()
    )
    return row is not None


def _execution_count(db: Session, workflow_id: str, user_id: str) -> int:
    return (
        db.query(func.count(WorkflowExecution.execution_id))
        .filter(
            WorkflowExecution.workflow_id == workflow_id,
            WorkflowExecution.user_id == user_id,
        )
        .scalar()
        or 0
    )


def _last_started_at(db: Session, workflow_id: str, user_id: str) -> Optional[datetime]:
    value = (
        db.query(func.max(WorkflowExecution.started_at))
        .filter(
            WorkflowExecution.workflow_id == workflow_id,
            WorkflowExecution.user_id == user_id,
        )
        .scalar()
    )
    return as_utc(value)


def emails_sent_since(db: Session, workflow_id: str, user_id: str, since: datetime) -> int:
    return (
        db.query(func.count(ExecutionStepLog.id))
        .filter(
            ExecutionStepLog.workflow_id == workflow_id,
            ExecutionStepLog.user_id == user_id,
            ExecutionStepLog.step_type == StepType.EMAIL.value,
            ExecutionStepLog.outcome == StepLogOutcome.SENT.value,
            ExecutionStepLog.created_at >= since,
        )
        .scalar()
        or 0
    )


def check(
    db: Session,
    workflow_id: str,
    user_id: str,
    settings: Optional[Dict[str, Any]],
    *,
    now: Optional[datetime] = None,
) -> LimitDecision:
    """
    Checks run in a fixed order and stop at the first failure:
      1. an unterminated execution for (workflow, user) exists
      2. maxExecutionsPerUser reached
      3. inside cooldownPeriod since the last execution started
      4. frequencyCapping (emails sent this calendar day/week/month)
    """
    settings = settings or {}
    now = as_utc(now) if now is not None else utcnow()

    if _has_unterminated_execution(db, workflow_id, user_id):
        return LimitDecision(False, "active_execution")

    max_executions = _positive_int(settings, "maxExecutionsPerUser")
    if max_executions is not None and _execution_count(db, workflow_id, user_id) >= max_executions:
        return LimitDecision(False, "max_executions_per_user")

    try:
        cooldown = duration_from_config(settings.get("cooldownPeriod"))
    except ValueError:
        logger.warning(
            "Ignoring malformed cooldownPeriod",
            extra={"workflow_id": workflow_id, "cooldown": settings.get("cooldownPeriod")},
        )
        cooldown = None
    if cooldown:
        last_started = _last_started_at(db, workflow_id, user_id)
        if last_started is not None and now - last_started < cooldown:
            return LimitDecision(False, "cooldown")

    caps = settings.get("frequencyCapping") or {}
    if caps:
        windows = calendar_window_starts(now, settings.get("timezone"))
        for key, window in _FREQUENCY_CAPS:
            limit = _positive_int(caps, key)
            if limit is None:
                continue
            if emails_sent_since(db, workflow_id, user_id, windows[window]) >= limit:
                return LimitDecision(False, f"frequency_cap_{window}")

    return ALLOWED


def can_execute(
    workflow_id: str,
    user_id: str,
    settings: Optional[Dict[str, Any]],
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> bool:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        return check(db, workflow_id, user_id, settings, now=now).allowed
    finally:
        if owns_db:
            db.close()
