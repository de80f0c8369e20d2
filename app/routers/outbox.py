from typing import Optional

from pydantic import BaseModel
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.authorization import Role, require_role
from app.database import get_db
from app.models.event_outbox import EventOutbox

router = APIRouter(prefix="/outbox", tags=["Outbox"])


class OutboxRow(BaseModel):
    id: int
    event_type: str
    aggregate_id: Optional[str]
    processed: bool
    retry_count: int
    available_at: str
    created_at: str
    processed_at: Optional[str]
    cancelled_at: Optional[str]


class OutboxListResponse(BaseModel):
    limit: int
    offset: int
    rows: list[OutboxRow]


def _iso(dt) -> Optional[str]:
    return None if dt is None else dt.isoformat()


@router.get("", response_model=OutboxListResponse)
def list_outbox(
    processed: Optional[bool] = None,
    event_type: Optional[str] = None,
    aggregate_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
    db: Session = Depends(get_db),
    _role=Depends(require_role(Role.ADMIN)),
):
    q = db.query(EventOutbox)

    if processed is not None:
        q = q.filter(EventOutbox.processed == bool(processed))
    if event_type:
        q = q.filter(EventOutbox.event_type == event_type)
    if aggregate_id:
        q = q.filter(EventOutbox.aggregate_id == aggregate_id)

    rows = (
        q.order_by(EventOutbox.id.asc())
        .limit(int(limit))
        .offset(int(offset))
        .all()
    )

    return {
        "limit": int(limit),
        "offset": int(offset),
        "rows": [
            {
                "id": r.id,
                "event_type": r.event_type,
                "aggregate_id": r.aggregate_id,
                "processed": r.processed,
                "retry_count": r.retry_count,
                "available_at": _iso(r.available_at),
                "created_at": _iso(r.created_at),
                "processed_at": _iso(r.processed_at),
                "cancelled_at": _iso(r.cancelled_at),
            }
            for r in rows
        ],
    }
