import asyncio
import logging
import os
from datetime import datetime
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.settings import env_bool, env_float, env_int
from app.database import SessionLocal, is_postgres
from app.services.outbox_processor import (
    OutboxProcessResult,
    process_outbox_batch,
    release_outbox_lock,
    try_acquire_outbox_lock,
)
from app.services.time_triggers import process_time_based_workflows

logger = logging.getLogger(__name__)


def outbox_worker_enabled() -> bool:
    # Disable by default under pytest to keep tests deterministic.
    if os.getenv("PYTEST_CURRENT_TEST"):
        return False
    return env_bool("OUTBOX_WORKER_ENABLED", True)


def run_worker_tick(
    db: Session,
    *,
    now: Optional[datetime] = None,
    batch_size: int = 50,
    max_retries: int = 10,
) -> OutboxProcessResult:
    """One pass: fire due time-based workflows, then deliver due outbox rows."""
    now = now or utcnow()
    process_time_based_workflows(now, db=db)
    db.commit()
    result = process_outbox_batch(db=db, now=now, batch_size=batch_size, max_retries=max_retries)
    db.commit()
    return result


def _dispose_bind(db: Session) -> None:
    try:
        engine = db.get_bind()
        if engine is not None and hasattr(engine, "dispose"):
            engine.dispose()
    except Exception:
        logger.debug("Engine dispose failed", exc_info=True)


async def outbox_worker_loop(
    *,
    poll_seconds: float = 1.0,
    batch_size: int = 50,
    max_retries: int = 10,
) -> None:
    """
    Single-worker loop.

    Goals:
      - Never crash the server on transient DB failures.
      - Safe under uvicorn --reload (two processes) via PG advisory lock.
      - Recover if Postgres restarts / connections are terminated.
    """
    logger.info(
        "Outbox worker started",
        extra={"poll_seconds": float(poll_seconds), "batch_size": int(batch_size)},
    )

    while True:
        lock_db: Session = SessionLocal()
        have_lock = False
        use_lock = is_postgres(lock_db.get_bind())

        try:
            if use_lock:
                lock_db.execute(text("set application_name = 'automation_outbox_worker_lock'"))
                have_lock = try_acquire_outbox_lock(lock_db)
                if not have_lock:
                    lock_db.close()
                    await asyncio.sleep(poll_seconds)
                    continue

            # We hold the advisory lock as long as lock_db connection stays healthy.
            while True:
                work_db: Session = SessionLocal()
                try:
                    run_worker_tick(work_db, batch_size=batch_size, max_retries=max_retries)

                except asyncio.CancelledError:
                    raise

                except (OperationalError, DBAPIError):
                    # Postgres restarted / connection killed.
                    work_db.rollback()
                    _dispose_bind(work_db)
                    logger.exception(
                        "Outbox worker tick failed",
                        extra={"component": "outbox_worker", "reason": "dbapi_error"},
                    )

                except Exception:
                    work_db.rollback()
                    logger.exception(
                        "Outbox worker tick failed",
                        extra={"component": "outbox_worker", "reason": "unexpected"},
                    )

                finally:
                    work_db.close()

                await asyncio.sleep(poll_seconds)

        except asyncio.CancelledError:
            logger.info("Outbox worker cancelled; shutting down")
            raise

        except (OperationalError, DBAPIError):
            # lock connection died; drop pooled conns and restart outer loop.
            logger.exception(
                "Outbox worker lock connection failed",
                extra={"component": "outbox_worker", "reason": "lock_dbapi_error"},
            )
            _dispose_bind(lock_db)
            await asyncio.sleep(poll_seconds)

        except Exception:
            # Do NOT crash the server; log and keep trying.
            logger.exception(
                "Outbox worker crashed",
                extra={"component": "outbox_worker", "reason": "outer_unexpected"},
            )
            await asyncio.sleep(poll_seconds)

        finally:
            if have_lock:
                try:
                    release_outbox_lock(lock_db)
                except (OperationalError, DBAPIError):
                    logger.warning("Could not release outbox advisory lock", exc_info=True)
            lock_db.close()


def start_outbox_worker_task() -> Optional[asyncio.Task]:
    if not outbox_worker_enabled():
        logger.info("Outbox worker disabled")
        return None

    return asyncio.create_task(
        outbox_worker_loop(
            poll_seconds=env_float("OUTBOX_POLL_SECONDS", 1.0),
            batch_size=env_int("OUTBOX_BATCH_SIZE", 50),
            max_retries=env_int("OUTBOX_MAX_RETRIES", 10),
        )
    )
