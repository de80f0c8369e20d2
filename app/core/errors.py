from typing import List, Optional


class WorkflowNotFoundError(ValueError):
    pass


class StepNotFoundError(ValueError):
    pass


class ExecutionNotFoundError(ValueError):
    pass


class UserNotFoundError(ValueError):
    pass


class WorkflowStateError(ValueError):
    """Operation not allowed in the workflow's current lifecycle state."""


class WorkflowValidationError(ValueError):
    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = list(problems or [])


class BranchResolutionError(ValueError):
    pass


class SchedulingError(RuntimeError):
    pass
