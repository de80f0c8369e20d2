from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.logging import configure_logging
from app.services.outbox_worker import start_outbox_worker_task
from app import models  # noqa: F401
from app.routers.auth import router as auth_router
from app.routers.events import router as events_router
from app.routers.executions import router as executions_router
from app.routers.outbox import router as outbox_router
from app.routers.steps import router as steps_router
from app.routers.workflows import router as workflows_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    task = start_outbox_worker_task()
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Outbox worker failed during shutdown")


app = FastAPI(
    title="Email Automation Engine",
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(auth_router)
app.include_router(workflows_router)
app.include_router(steps_router)
app.include_router(events_router)
app.include_router(executions_router)
app.include_router(outbox_router)


@app.get("/")
def root():
    return {"status": "Email Automation Engine running"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": "1.0.0",
    }
