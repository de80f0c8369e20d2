import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.database import SessionLocal
from app.models.event_outbox import EventOutbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxProcessResult:
    processed: int
    failed: int


OutboxHandler = Callable[[EventOutbox, Session, datetime], None]


def _retry_wait(retry_count: int) -> timedelta:
    """Deterministic exponential backoff for outbox retries.

    Contract (tests):
      - retry_count <= 0 => 0s
      - retry_count == 1 => 2s
      - retry_count == 2 => 4s
      - retry_count == 3 => 8s
    Capped at 60s.
    """
    n = int(retry_count) if retry_count is not None else 0
    if n <= 0:
        return timedelta(seconds=0)

    seconds = 2**n
    if seconds > 60:
        seconds = 60
    return timedelta(seconds=seconds)


def _default_handlers() -> Dict[str, OutboxHandler]:
    from app.services.engine import get_analytics_sink, get_coordinator
    from app.services.outbox_handlers import build_handlers

    return build_handlers(get_coordinator(), get_analytics_sink())


def _claim_next(db: Session, now: datetime) -> Optional[EventOutbox]:
    # One row per claim so rows enqueued by a handler (immediate resumptions)
    # are picked up within the same batch.
    return (
        db.query(EventOutbox)
        .filter(EventOutbox.processed.is_(False))
        .filter(EventOutbox.available_at <= now)
        .order_by(EventOutbox.available_at.asc(), EventOutbox.id.asc())
        .with_for_update(skip_locked=True)
        .limit(1)
        .first()
    )


def process_outbox_batch(
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    batch_size: int = 50,
    max_retries: int = 10,
    handlers: Optional[Dict[str, OutboxHandler]] = None,
) -> OutboxProcessResult:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    now = as_utc(now) if now is not None else utcnow()

    if handlers is None:
        handlers = _default_handlers()

    processed = 0
    failed = 0

    try:
        for _ in range(int(batch_size)):
            row = _claim_next(db, now)
            if row is None:
                break

            handler = handlers.get(row.event_type)

            try:
                if handler is None:
                    raise ValueError(f"Unknown event_type: {row.event_type}")

                with db.begin_nested():
                    handler(row, db, now)

                row.processed = True
                row.processed_at = now
                processed += 1

            except Exception:
                row.retry_count = int(row.retry_count or 0) + 1

                if int(row.retry_count) >= int(max_retries):
                    row.processed = True
                    row.processed_at = now
                else:
                    row.available_at = now + _retry_wait(row.retry_count)

                failed += 1
                logger.exception(
                    "Outbox row processing failed",
                    extra={
                        "event_outbox_id": row.id,
                        "event_type": row.event_type,
                        "retry_count": int(row.retry_count),
                        "max_retries": int(max_retries),
                    },
                )

            db.flush()
            if owns_db:
                db.commit()

        return OutboxProcessResult(processed=processed, failed=failed)

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def try_acquire_outbox_lock(db: Session) -> bool:
    res = db.execute(text("select pg_try_advisory_lock(4242, 4243)")).scalar()
    return bool(res)


def release_outbox_lock(db: Session) -> None:
    db.execute(text("select pg_advisory_unlock(4242, 4243)"))
