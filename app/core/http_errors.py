from fastapi import HTTPException

from app.core.errors import (
    ExecutionNotFoundError,
    StepNotFoundError,
    UserNotFoundError,
    WorkflowNotFoundError,
    WorkflowStateError,
    WorkflowValidationError,
)

_NOT_FOUND = (WorkflowNotFoundError, StepNotFoundError, ExecutionNotFoundError, UserNotFoundError)


def to_http_exception(exc: ValueError) -> HTTPException:
    if isinstance(exc, _NOT_FOUND):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, WorkflowStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, WorkflowValidationError):
        return HTTPException(status_code=422, detail={"message": str(exc), "problems": exc.problems})
    return HTTPException(status_code=400, detail=str(exc))
