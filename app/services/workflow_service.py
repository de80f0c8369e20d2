import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from app.core.clock import as_utc, utcnow
from app.core.errors import (
    StepNotFoundError,
    WorkflowNotFoundError,
    WorkflowStateError,
    WorkflowValidationError,
)
from app.database import SessionLocal
from app.models.workflow import EmailAutomationWorkflow, TriggerType, WorkflowStatus
from app.models.workflow_execution import TERMINAL_STATUSES, ExecutionStatus, WorkflowExecution
from app.models.workflow_step import EmailAutomationStep
from app.services.step_validation import build_step_index_map, validate_workflow
from app.services.time_triggers import initial_fire_time

logger = logging.getLogger(__name__)

_WORKFLOW_FIELDS = (
    "name",
    "description",
    "trigger_type",
    "trigger_config",
    "target_audience",
    "settings",
    "active_from",
    "active_until",
)

_STEP_FIELDS = (
    "name",
    "description",
    "step_type",
    "order_index",
    "template_id",
    "config",
    "execution_conditions",
)

# Steps may only change while nothing can be triggered against them.
_EDITABLE_STATUSES = {WorkflowStatus.DRAFT.value, WorkflowStatus.PAUSED.value}


def _enum_value(v: Any) -> Any:
    return getattr(v, "value", v)


def _load(db: Session, workflow_id: str, *, lock: bool = False) -> EmailAutomationWorkflow:
    q = (
        db.query(EmailAutomationWorkflow)
        .options(selectinload(EmailAutomationWorkflow.steps))
        .filter(EmailAutomationWorkflow.id == workflow_id)
    )
    if lock:
        q = q.with_for_update()
    workflow = q.first()
    if workflow is None:
        raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
    return workflow


def _coordinator(coordinator):
    if coordinator is not None:
        return coordinator
    from app.services.engine import get_coordinator

    return get_coordinator()


def _new_step(workflow: EmailAutomationWorkflow, data: Dict[str, Any], default_order: int) -> EmailAutomationStep:
    order_index = data.get("order_index")
    return EmailAutomationStep(
        id=str(uuid.uuid4()),
        workflow_id=workflow.id,
        name=data.get("name") or _enum_value(data.get("step_type")),
        description=data.get("description"),
        step_type=_enum_value(data["step_type"]),
        order_index=int(order_index) if order_index is not None else default_order,
        template_id=data.get("template_id"),
        config=data.get("config") or {},
        execution_conditions=data.get("execution_conditions") or [],
        execution_count=0,
        success_count=0,
        failure_count=0,
        conversion_count=0,
    )


def create_workflow(
    data: Dict[str, Any],
    created_by: str,
    *,
    db: Optional[Session] = None,
) -> EmailAutomationWorkflow:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        TriggerType(_enum_value(data.get("trigger_type")))

        workflow = EmailAutomationWorkflow(
            id=str(uuid.uuid4()),
            name=data["name"],
            description=data.get("description"),
            created_by=str(created_by),
            status=WorkflowStatus.DRAFT.value,
            trigger_type=_enum_value(data["trigger_type"]),
            trigger_config=data.get("trigger_config") or {},
            target_audience=data.get("target_audience") or {},
            settings=data.get("settings") or {},
            active_from=as_utc(data.get("active_from")),
            active_until=as_utc(data.get("active_until")),
            graph_version=1,
            total_executions=0,
            successful_executions=0,
            failed_executions=0,
        )
        workflow.steps = [
            _new_step(workflow, step_data, default_order=i)
            for i, step_data in enumerate(data.get("steps") or [])
        ]
        db.add(workflow)

        db.flush()
        if owns_db:
            db.commit()

        logger.info("Workflow created", extra={"workflow_id": workflow.id, "created_by": workflow.created_by})
        return workflow

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def list_workflows(
    *,
    status: Optional[str] = None,
    trigger_type: Optional[str] = None,
    created_by: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    db: Optional[Session] = None,
) -> Tuple[List[EmailAutomationWorkflow], int]:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        q = db.query(EmailAutomationWorkflow)
        if status:
            q = q.filter(EmailAutomationWorkflow.status == _enum_value(status))
        if trigger_type:
            q = q.filter(EmailAutomationWorkflow.trigger_type == _enum_value(trigger_type))
        if created_by:
            q = q.filter(EmailAutomationWorkflow.created_by == str(created_by))
        if search:
            pattern = f"%{search}%"
            q = q.filter(
                or_(
                    EmailAutomationWorkflow.name.ilike(pattern),
                    EmailAutomationWorkflow.description.ilike(pattern),
                )
            )

        total = q.count()

        page = max(1, int(page))
        limit = max(1, min(int(limit), 100))
        rows = (
            q.options(selectinload(EmailAutomationWorkflow.steps))
            .order_by(EmailAutomationWorkflow.created_at.desc(), EmailAutomationWorkflow.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, int(total)
    finally:
        if owns_db:
            db.close()


def get_workflow(workflow_id: str, *, db: Optional[Session] = None) -> EmailAutomationWorkflow:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        return _load(db, workflow_id)
    finally:
        if owns_db:
            db.close()


def update_workflow(
    workflow_id: str,
    changes: Dict[str, Any],
    *,
    db: Optional[Session] = None,
) -> EmailAutomationWorkflow:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        workflow = _load(db, workflow_id, lock=True)
        if workflow.status not in _EDITABLE_STATUSES:
            raise WorkflowStateError(f"Cannot update a workflow in status {workflow.status}")

        for key in _WORKFLOW_FIELDS:
            if key not in changes:
                continue
            value = _enum_value(changes[key])
            if key == "trigger_type":
                TriggerType(value)
            if key in ("active_from", "active_until"):
                value = as_utc(value)
            setattr(workflow, key, value)

        db.flush()
        if owns_db:
            db.commit()
        return workflow

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def delete_workflow(
    workflow_id: str,
    *,
    db: Optional[Session] = None,
    coordinator=None,
    now: Optional[datetime] = None,
) -> None:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    now = as_utc(now) if now is not None else utcnow()

    try:
        workflow = _load(db, workflow_id, lock=True)
        if workflow.status == WorkflowStatus.ACTIVE.value:
            raise WorkflowStateError("Cannot delete an active workflow")

        _coordinator(coordinator).cancel_in_flight(db, workflow.id, "workflow deleted", now=now)

        db.delete(workflow)
        db.flush()
        if owns_db:
            db.commit()

        logger.info("Workflow deleted", extra={"workflow_id": workflow_id})

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def _require_editable(workflow: EmailAutomationWorkflow) -> None:
    if workflow.status not in _EDITABLE_STATUSES:
        raise WorkflowStateError(f"Steps can only be changed while draft or paused (status={workflow.status})")


def _bump_graph(workflow: EmailAutomationWorkflow) -> None:
    workflow.graph_version = int(workflow.graph_version or 1) + 1
    workflow.step_index_map = None


def add_step(
    workflow_id: str,
    data: Dict[str, Any],
    *,
    db: Optional[Session] = None,
) -> EmailAutomationStep:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        workflow = _load(db, workflow_id, lock=True)
        _require_editable(workflow)

        next_order = max((s.order_index for s in workflow.steps), default=-1) + 1
        step = _new_step(workflow, data, default_order=next_order)
        if any(s.order_index == step.order_index for s in workflow.steps):
            raise WorkflowStateError(f"orderIndex {step.order_index} already used in this workflow")

        workflow.steps.append(step)
        _bump_graph(workflow)

        db.flush()
        if owns_db:
            db.commit()

        logger.info(
            "Step added",
            extra={"workflow_id": workflow_id, "step_id": step.id, "graph_version": workflow.graph_version},
        )
        return step

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def _find_step(workflow: EmailAutomationWorkflow, step_id: str) -> EmailAutomationStep:
    for step in workflow.steps:
        if step.id == step_id:
            return step
    raise StepNotFoundError(f"Step {step_id} not found in workflow {workflow.id}")


def update_step(
    workflow_id: str,
    step_id: str,
    changes: Dict[str, Any],
    *,
    db: Optional[Session] = None,
) -> EmailAutomationStep:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        workflow = _load(db, workflow_id, lock=True)
        _require_editable(workflow)
        step = _find_step(workflow, step_id)

        if changes.get("order_index") is not None:
            new_order = int(changes["order_index"])
            if any(s.order_index == new_order and s.id != step.id for s in workflow.steps):
                raise WorkflowStateError(f"orderIndex {new_order} already used in this workflow")

        for key in _STEP_FIELDS:
            if key in changes and (changes[key] is not None or key in ("description", "template_id")):
                setattr(step, key, _enum_value(changes[key]))

        _bump_graph(workflow)

        db.flush()
        if owns_db:
            db.commit()
        return step

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def delete_step(workflow_id: str, step_id: str, *, db: Optional[Session] = None) -> None:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        workflow = _load(db, workflow_id, lock=True)
        _require_editable(workflow)
        step = _find_step(workflow, step_id)

        workflow.steps.remove(step)
        _bump_graph(workflow)

        db.flush()
        if owns_db:
            db.commit()

        logger.info(
            "Step deleted",
            extra={"workflow_id": workflow_id, "step_id": step_id, "graph_version": workflow.graph_version},
        )

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def activate_workflow(
    workflow_id: str,
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> EmailAutomationWorkflow:
    """
    draft/paused -> active. Every step is validated and branch targets are
    resolved into step_index_map; time_based workflows get their first next_fire_at.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    now = as_utc(now) if now is not None else utcnow()

    try:
        workflow = _load(db, workflow_id, lock=True)
        if workflow.status == WorkflowStatus.ACTIVE.value:
            raise WorkflowStateError("Workflow is already active")
        if workflow.status == WorkflowStatus.ARCHIVED.value:
            raise WorkflowStateError("Archived workflows cannot be activated")

        problems = validate_workflow(workflow)
        if problems:
            raise WorkflowValidationError(f"Workflow {workflow_id} failed validation", problems)

        workflow.step_index_map = build_step_index_map(workflow.steps)
        workflow.status = WorkflowStatus.ACTIVE.value
        if workflow.trigger_type == TriggerType.TIME_BASED.value:
            workflow.next_fire_at = initial_fire_time(workflow, now)
        else:
            workflow.next_fire_at = None

        db.flush()
        if owns_db:
            db.commit()

        logger.info(
            "Workflow activated",
            extra={"workflow_id": workflow_id, "graph_version": workflow.graph_version},
        )
        return workflow

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def pause_workflow(
    workflow_id: str,
    *,
    cancel_in_flight: bool = False,
    db: Optional[Session] = None,
    coordinator=None,
    now: Optional[datetime] = None,
) -> EmailAutomationWorkflow:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    now = as_utc(now) if now is not None else utcnow()

    try:
        workflow = _load(db, workflow_id, lock=True)
        if workflow.status != WorkflowStatus.ACTIVE.value:
            raise WorkflowStateError("Workflow is not active")

        workflow.status = WorkflowStatus.PAUSED.value
        workflow.next_fire_at = None

        cancelled = 0
        if cancel_in_flight:
            cancelled = _coordinator(coordinator).cancel_in_flight(db, workflow.id, "workflow paused", now=now)

        db.flush()
        if owns_db:
            db.commit()

        logger.info("Workflow paused", extra={"workflow_id": workflow_id, "cancelled_executions": cancelled})
        return workflow

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def archive_workflow(
    workflow_id: str,
    *,
    db: Optional[Session] = None,
    coordinator=None,
    now: Optional[datetime] = None,
) -> EmailAutomationWorkflow:
    """Terminal. Every in-flight execution loses its resumption and is failed in the same transaction."""
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    now = as_utc(now) if now is not None else utcnow()

    try:
        workflow = _load(db, workflow_id, lock=True)
        if workflow.status == WorkflowStatus.ARCHIVED.value:
            raise WorkflowStateError("Workflow is already archived")

        workflow.status = WorkflowStatus.ARCHIVED.value
        workflow.next_fire_at = None
        cancelled = _coordinator(coordinator).cancel_in_flight(db, workflow.id, "workflow archived", now=now)

        db.flush()
        if owns_db:
            db.commit()

        logger.info("Workflow archived", extra={"workflow_id": workflow_id, "cancelled_executions": cancelled})
        return workflow

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def _rate(part: int, whole: int) -> Optional[float]:
    if not whole:
        return None
    return round(part / whole, 4)


def get_workflow_statistics(workflow_id: str, *, db: Optional[Session] = None) -> Dict[str, Any]:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        workflow = _load(db, workflow_id)

        in_flight = (
            db.query(func.count(WorkflowExecution.execution_id))
            .filter(
                WorkflowExecution.workflow_id == workflow_id,
                WorkflowExecution.status.notin_(TERMINAL_STATUSES),
            )
            .scalar()
            or 0
        )

        completed = (
            db.query(WorkflowExecution.started_at, WorkflowExecution.completed_at)
            .filter(
                WorkflowExecution.workflow_id == workflow_id,
                WorkflowExecution.status == ExecutionStatus.COMPLETED.value,
                WorkflowExecution.completed_at.isnot(None),
            )
            .all()
        )
        durations = [(as_utc(done) - as_utc(started)).total_seconds() for started, done in completed]
        average = round(sum(durations) / len(durations), 3) if durations else None

        steps = []
        for step in workflow.ordered_steps:
            steps.append(
                {
                    "step_id": step.id,
                    "name": step.name,
                    "step_type": step.step_type,
                    "order_index": step.order_index,
                    "execution_count": step.execution_count,
                    "success_count": step.success_count,
                    "failure_count": step.failure_count,
                    "conversion_count": step.conversion_count,
                    "success_rate": _rate(step.success_count, step.execution_count),
                    "conversion_rate": _rate(step.conversion_count, step.execution_count),
                }
            )

        return {
            "workflow_id": workflow.id,
            "status": workflow.status,
            "total_executions": workflow.total_executions,
            "successful_executions": workflow.successful_executions,
            "failed_executions": workflow.failed_executions,
            "in_flight_executions": int(in_flight),
            "average_completion_seconds": average,
            "steps": steps,
        }
    finally:
        if owns_db:
            db.close()
