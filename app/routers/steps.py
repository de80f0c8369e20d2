from fastapi import APIRouter, Depends, Response

from app.core.authorization import Role, require_role
from app.core.http_errors import to_http_exception
from app.database import SessionLocal
from app.schemas.workflow import StepCreate, StepResponse, StepUpdate
from app.services import workflow_service

router = APIRouter(prefix="/workflows/{workflow_id}/steps", tags=["Workflow steps"])


@router.post("", response_model=StepResponse, status_code=201)
def add_step(
    workflow_id: str,
    payload: StepCreate,
    _role=Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        step = workflow_service.add_step(workflow_id, payload.model_dump(), db=db)
        db.commit()
        return StepResponse.model_validate(step)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.put("/{step_id}", response_model=StepResponse)
def update_step(
    workflow_id: str,
    step_id: str,
    payload: StepUpdate,
    _role=Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        step = workflow_service.update_step(
            workflow_id,
            step_id,
            payload.model_dump(exclude_unset=True),
            db=db,
        )
        db.commit()
        return StepResponse.model_validate(step)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()


@router.delete("/{step_id}", status_code=204)
def delete_step(
    workflow_id: str,
    step_id: str,
    _role=Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        workflow_service.delete_step(workflow_id, step_id, db=db)
        db.commit()
        return Response(status_code=204)
    except ValueError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    finally:
        db.close()
