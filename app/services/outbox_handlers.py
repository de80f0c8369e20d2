import logging
from datetime import datetime
from functools import partial
from typing import Any, Dict

from sqlalchemy.orm import Session

from app.models.event_outbox import EXECUTION_RESUME, EventOutbox
from app.services.collaborators import AnalyticsSink
from app.services.workflow_coordinator import TELEMETRY_EVENT_TYPES, WorkflowCoordinator

logger = logging.getLogger(__name__)


def handle_execution_resume(
    row: EventOutbox,
    db: Session,
    now: datetime,
    *,
    coordinator: WorkflowCoordinator,
) -> None:
    payload: Any = row.payload or {}

    execution_id = payload.get("execution_id") if isinstance(payload, dict) else None
    step_index = payload.get("step_index") if isinstance(payload, dict) else None

    if not execution_id or step_index is None:
        logger.info(
            "EXECUTION_RESUME missing execution_id/step_index; skipping",
            extra={"event_outbox_id": row.id},
        )
        return

    coordinator.resume(str(execution_id), int(step_index), db=db, now=now)


def handle_telemetry(
    row: EventOutbox,
    db: Session,
    now: datetime,
    *,
    sink: AnalyticsSink,
) -> None:
    _ = (db, now)
    sink.record(row.event_type, dict(row.payload or {}))


def build_handlers(coordinator: WorkflowCoordinator, sink: AnalyticsSink) -> Dict[str, Any]:
    handlers: Dict[str, Any] = {
        EXECUTION_RESUME: partial(handle_execution_resume, coordinator=coordinator),
    }
    for event_type in TELEMETRY_EVENT_TYPES:
        handlers[event_type] = partial(handle_telemetry, sink=sink)
    return handlers
