from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from app.core.authorization import Role, require_role
from app.core.http_errors import to_http_exception
from app.database import SessionLocal
from app.models.workflow import TriggerType, WorkflowStatus
from app.schemas.execution import TriggerRequest, TriggerResponse
from app.schemas.workflow import (
    WorkflowCreate,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowStatisticsResponse,
    WorkflowUpdate,
)
from app.services import workflow_service
from app.services.engine import get_coordinator

router = APIRouter(prefix="/workflows", tags=["Workflows"])


@router.post("", response_model=WorkflowResponse, status_code=201)
def create_workflow(
    payload: WorkflowCreate,
    request: Request,
    _role=Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        row = workflow_service.create_workflow(
            payload.model_dump(),
            created_by=request.state.user_id,
            db=db,
        )
        db.commit()
        return WorkflowResponse.model_validate(row)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.get("", response_model=WorkflowListResponse)
def list_workflows(
    status: Optional[WorkflowStatus] = None,
    trigger_type: Optional[TriggerType] = None,
    created_by: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role=Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        rows, total = workflow_service.list_workflows(
            status=status,
            trigger_type=trigger_type,
            created_by=created_by,
            search=search,
            page=page,
            limit=limit,
            db=db,
        )
        return {
            "workflows": [WorkflowResponse.model_validate(r) for r in rows],
            "total": total,
            "page": page,
            "limit": limit,
        }
    finally:
        db.close()


@router.get("/{workflow_id}", response_model=WorkflowResponse)
def get_workflow(workflow_id: str, _role=Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        return WorkflowResponse.model_validate(workflow_service.get_workflow(workflow_id, db=db))
    except ValueError as exc:
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.put("/{workflow_id}", response_model=WorkflowResponse)
def update_workflow(
    workflow_id: str,
    payload: WorkflowUpdate,
    _role=Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        row = workflow_service.update_workflow(workflow_id, payload.model_dump(exclude_unset=True), db=db)
        db.commit()
        return WorkflowResponse.model_validate(row)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.delete("/{workflow_id}", status_code=204)
def delete_workflow(workflow_id: str, _role=Depends(require_role(Role.ADMIN))):
    db = SessionLocal()
    try:
        workflow_service.delete_workflow(workflow_id, db=db, coordinator=get_coordinator())
        db.commit()
        return Response(status_code=204)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.post("/{workflow_id}/activate", response_model=WorkflowResponse)
def activate_workflow(workflow_id: str, _role=Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        row = workflow_service.activate_workflow(workflow_id, db=db)
        db.commit()
        return WorkflowResponse.model_validate(row)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.post("/{workflow_id}/pause", response_model=WorkflowResponse)
def pause_workflow(
    workflow_id: str,
    cancel_in_flight: bool = False,
    _role=Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        row = workflow_service.pause_workflow(
            workflow_id,
            cancel_in_flight=cancel_in_flight,
            db=db,
            coordinator=get_coordinator(),
        )
        db.commit()
        return WorkflowResponse.model_validate(row)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.post("/{workflow_id}/archive", response_model=WorkflowResponse)
def archive_workflow(workflow_id: str, _role=Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        row = workflow_service.archive_workflow(workflow_id, db=db, coordinator=get_coordinator())
        db.commit()
        return WorkflowResponse.model_validate(row)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.get("/{workflow_id}/statistics", response_model=WorkflowStatisticsResponse)
def get_workflow_statistics(workflow_id: str, _role=Depends(require_role(Role.MANAGER))):
    try:
        return workflow_service.get_workflow_statistics(workflow_id)
    except ValueError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{workflow_id}/trigger", response_model=TriggerResponse)
def trigger_workflow(
    workflow_id: str,
    payload: TriggerRequest,
    _role=Depends(require_role(Role.MANAGER)),
):
    try:
        execution_id = get_coordinator().trigger(workflow_id, payload.user_id, payload.trigger_data)
    except ValueError as exc:
        raise to_http_exception(exc) from exc

    if execution_id is None:
        return {"triggered": False, "execution_id": None}
    return {"triggered": True, "execution_id": execution_id}
