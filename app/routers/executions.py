from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.authorization import Role, require_role
from app.core.http_errors import to_http_exception
from app.database import SessionLocal
from app.models.execution_step_log import ExecutionStepLog
from app.models.workflow_execution import ExecutionStatus, WorkflowExecution
from app.schemas.execution import CancelRequest, ExecutionResponse, StepLogResponse
from app.services.engine import get_coordinator

router = APIRouter(prefix="/executions", tags=["Executions"])


@router.get("", response_model=List[ExecutionResponse])
def list_executions(
    workflow_id: Optional[str] = None,
    user_id: Optional[str] = None,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
    _role=Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        q = db.query(WorkflowExecution)
        if workflow_id:
            q = q.filter(WorkflowExecution.workflow_id == workflow_id)
        if user_id:
            q = q.filter(WorkflowExecution.user_id == user_id)
        if status is not None:
            q = q.filter(WorkflowExecution.status == status.value)

        rows = (
            q.order_by(WorkflowExecution.started_at.desc(), WorkflowExecution.execution_id.asc())
            .limit(int(limit))
            .offset(int(offset))
            .all()
        )
        return rows
    finally:
        db.close()


@router.get("/{execution_id}", response_model=ExecutionResponse)
def get_execution(execution_id: str, _role=Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        row = db.get(WorkflowExecution, execution_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return row
    finally:
        db.close()


@router.get("/{execution_id}/steps", response_model=List[StepLogResponse])
def list_execution_steps(execution_id: str, _role=Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        if db.get(WorkflowExecution, execution_id) is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return (
            db.query(ExecutionStepLog)
            .filter(ExecutionStepLog.execution_id == execution_id)
            .order_by(ExecutionStepLog.id.asc())
            .all()
        )
    finally:
        db.close()


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
def cancel_execution(
    execution_id: str,
    payload: CancelRequest,
    _role=Depends(require_role(Role.MANAGER)),
):
    try:
        get_coordinator().cancel(execution_id, payload.reason)
    except ValueError as exc:
        raise to_http_exception(exc) from exc

    db = SessionLocal()
    try:
        return db.get(WorkflowExecution, execution_id)
    finally:
        db.close()
