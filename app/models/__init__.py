from app.models.email_suppression import EmailSuppression
from app.models.event_outbox import EventOutbox
from app.models.execution_step_log import ExecutionStepLog
from app.models.workflow import EmailAutomationWorkflow
from app.models.workflow_execution import WorkflowExecution
from app.models.workflow_step import EmailAutomationStep

__all__ = [
    "EmailAutomationStep",
    "EmailAutomationWorkflow",
    "EmailSuppression",
    "EventOutbox",
    "ExecutionStepLog",
    "WorkflowExecution",
]
