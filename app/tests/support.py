"""Shared builders for engine tests: in-memory collaborators wired into a coordinator."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from app.services import workflow_service
from app.services.collaborators import (
    InMemorySuppressionChecker,
    InMemoryTemplateStore,
    InMemoryUserStore,
    JinjaTemplateRenderer,
    LoggingAnalyticsSink,
    LogOnlyDeliveryProvider,
    UserProfile,
)
from app.services.outbox_handlers import build_handlers
from app.services.outbox_processor import process_outbox_batch
from app.services.step_executor import StepExecutor
from app.services.workflow_coordinator import WorkflowCoordinator

# Monday.
NOW = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


class RecordingWebhookClient:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.fail = False

    def post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None:
        if self.fail:
            raise RuntimeError("webhook unreachable")
        self.calls.append((url, payload))


@dataclass
class Harness:
    users: InMemoryUserStore
    templates: InMemoryTemplateStore
    delivery: LogOnlyDeliveryProvider
    suppression: InMemorySuppressionChecker
    webhooks: RecordingWebhookClient
    sink: LoggingAnalyticsSink
    coordinator: WorkflowCoordinator
    handlers: Dict[str, Any] = field(default_factory=dict)

    def drain(self, now: datetime, *, rounds: int = 20) -> int:
        """Delivers every outbox row due at `now`; returns how many were processed."""
        total = 0
        for _ in range(rounds):
            result = process_outbox_batch(now=now, batch_size=100, handlers=self.handlers)
            total += result.processed
            if result.processed == 0 and result.failed == 0:
                break
        return total


def build_harness(*, max_steps_per_run: int = 100) -> Harness:
    users = InMemoryUserStore(
        [
            UserProfile(
                id="learner-1",
                email="ada@example.com",
                first_name="Ada",
                last_name="Lovelace",
                user_type="student",
                timezone="UTC",
                tags=["new"],
                course_ids=["course-1"],
            ),
            UserProfile(
                id="learner-2",
                email="grace@example.com",
                first_name="Grace",
                user_type="instructor",
                tags=["staff"],
            ),
            UserProfile(id="learner-no-email", email=None, first_name="Nobody", user_type="student"),
        ]
    )
    templates = InMemoryTemplateStore()
    delivery = LogOnlyDeliveryProvider()
    suppression = InMemorySuppressionChecker()
    webhooks = RecordingWebhookClient()
    sink = LoggingAnalyticsSink()

    executor = StepExecutor(
        users=users,
        templates=templates,
        renderer=JinjaTemplateRenderer(),
        delivery=delivery,
        suppression=suppression,
        directory=users,
        webhooks=webhooks,
        from_address="academy@example.com",
    )
    coordinator = WorkflowCoordinator(executor=executor, users=users, max_steps_per_run=max_steps_per_run)

    return Harness(
        users=users,
        templates=templates,
        delivery=delivery,
        suppression=suppression,
        webhooks=webhooks,
        sink=sink,
        coordinator=coordinator,
        handlers=build_handlers(coordinator, sink),
    )


def email_step(subject: str, body: str = "Hi {{ user.firstName }}", **extra) -> Dict[str, Any]:
    return {"step_type": "email", "name": subject, "config": {"email": {"subject": subject, "customContent": body}}, **extra}


def delay_step(amount: int, unit: str = "days", **delay_extra) -> Dict[str, Any]:
    return {"step_type": "delay", "config": {"delay": {"amount": amount, "unit": unit, **delay_extra}}}


def create_draft(steps: List[Dict[str, Any]], **workflow_fields) -> Tuple[str, List[str]]:
    """Creates a draft workflow; returns (workflow_id, step ids in order)."""
    data = {
        "name": workflow_fields.pop("name", "Onboarding"),
        "trigger_type": workflow_fields.pop("trigger_type", "user_registration"),
        "steps": steps,
        **workflow_fields,
    }
    workflow = workflow_service.create_workflow(data, created_by="manager-1")
    return workflow.id, [s.id for s in workflow.ordered_steps]


def create_active(steps: List[Dict[str, Any]], **workflow_fields) -> Tuple[str, List[str]]:
    workflow_id, step_ids = create_draft(steps, **workflow_fields)
    workflow_service.activate_workflow(workflow_id, now=NOW)
    return workflow_id, step_ids
