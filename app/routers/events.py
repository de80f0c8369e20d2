from fastapi import APIRouter, Depends

from app.core.authorization import Role, require_role
from app.core.http_errors import to_http_exception
from app.schemas.execution import DispatchResponse, PlatformEventIn
from app.services.event_router import PlatformEvent, dispatch_event

router = APIRouter(prefix="/events", tags=["Events"])


@router.post("", response_model=DispatchResponse, status_code=202)
def publish_event(
    payload: PlatformEventIn,
    _role=Depends(require_role(Role.MANAGER)),
):
    event = PlatformEvent(
        type=payload.type,
        user_id=payload.user_id,
        data=payload.data,
        occurred_at=payload.occurred_at,
    )
    try:
        execution_ids = dispatch_event(event)
    except ValueError as exc:
        raise to_http_exception(exc) from exc

    return {"execution_ids": execution_ids}
