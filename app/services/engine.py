"""
Process-wide wiring of the automation engine from environment variables.
Tests swap the coordinator and analytics sink with set_coordinator()/set_analytics_sink().
"""
import logging
from typing import Optional

from app.core.settings import env_float, env_int, env_str
from app.services.collaborators import (
    AnalyticsSink,
    HttpUserStore,
    HttpWebhookClient,
    InMemoryTemplateStore,
    InMemoryUserStore,
    JinjaTemplateRenderer,
    LoggingAnalyticsSink,
    LogOnlyDeliveryProvider,
    SqlSuppressionChecker,
)
from app.services.step_executor import DEFAULT_SUPPRESSION_SCOPE, StepExecutor
from app.services.workflow_coordinator import DEFAULT_MAX_STEPS_PER_RUN, WorkflowCoordinator

logger = logging.getLogger(__name__)

_coordinator: Optional[WorkflowCoordinator] = None
_analytics_sink: Optional[AnalyticsSink] = None


def build_coordinator() -> WorkflowCoordinator:
    user_service_url = env_str("USER_SERVICE_URL", "")
    if user_service_url:
        users = HttpUserStore(user_service_url)
    else:
        logger.warning("USER_SERVICE_URL not set; using an empty in-memory user store")
        users = InMemoryUserStore()

    executor = StepExecutor(
        users=users,
        templates=InMemoryTemplateStore(),
        renderer=JinjaTemplateRenderer(),
        delivery=LogOnlyDeliveryProvider(),
        suppression=SqlSuppressionChecker(),
        directory=users,
        webhooks=HttpWebhookClient(timeout=env_float("WEBHOOK_TIMEOUT_SECONDS", 10.0)),
        from_address=env_str("EMAIL_FROM_ADDRESS", "no-reply@localhost"),
        suppression_scope=env_str("EMAIL_SUPPRESSION_SCOPE", DEFAULT_SUPPRESSION_SCOPE),
    )
    return WorkflowCoordinator(
        executor=executor,
        users=users,
        max_steps_per_run=env_int("MAX_STEPS_PER_RUN", DEFAULT_MAX_STEPS_PER_RUN),
    )


def get_coordinator() -> WorkflowCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = build_coordinator()
    return _coordinator


def set_coordinator(coordinator: Optional[WorkflowCoordinator]) -> None:
    global _coordinator
    _coordinator = coordinator


def get_analytics_sink() -> AnalyticsSink:
    global _analytics_sink
    if _analytics_sink is None:
        _analytics_sink = LoggingAnalyticsSink()
    return _analytics_sink


def set_analytics_sink(sink: Optional[AnalyticsSink]) -> None:
    global _analytics_sink
    _analytics_sink = sink
