"""
Runs a single step of an execution and reports what should happen next.

The executor never touches execution state or statistics; it returns a
StepResult and the coordinator applies it.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from app.core.clock import as_utc
from app.core.errors import BranchResolutionError
from app.models.execution_step_log import StepLogOutcome
from app.models.workflow import EmailAutomationWorkflow
from app.models.workflow_execution import WorkflowExecution
from app.models.workflow_step import EmailAutomationStep, StepType
from app.services.actions import ActionContext, ActionType, run_action
from app.services.collaborators import (
    DeliveryProvider,
    EmailTemplate,
    LearnerDirectory,
    OutgoingEmail,
    SuppressionChecker,
    TemplateRenderer,
    TemplateStore,
    UserStore,
    WebhookClient,
)
from app.services.condition_evaluator import assign_path, evaluate, evaluate_all
from app.services.scheduling_windows import duration_from_config, next_business_time, to_timedelta

logger = logging.getLogger(__name__)

DEFAULT_SUPPRESSION_SCOPE = "marketing"


@dataclass(frozen=True)
class Advance:
    next_index: int


@dataclass(frozen=True)
class Wait:
    resume_at: datetime
    next_index: int


@dataclass(frozen=True)
class Terminate:
    success: bool
    reason: Optional[str] = None


StepOutcome = Union[Advance, Wait, Terminate]


@dataclass(frozen=True)
class StepAttempt:
    outcome: StepLogOutcome
    detail: Optional[str] = None
    conversion: bool = False

    @property
    def counted(self) -> bool:
        return self.outcome != StepLogOutcome.SKIPPED

    @property
    def success(self) -> bool:
        return self.outcome != StepLogOutcome.FAILED


@dataclass
class StepResult:
    outcome: StepOutcome
    attempt: StepAttempt
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _StepRun:
    execution: WorkflowExecution
    step: EmailAutomationStep
    workflow: EmailAutomationWorkflow
    position: int
    now: datetime
    variables: Dict[str, Any]

    @property
    def config(self) -> Dict[str, Any]:
        return self.step.config or {}

    @property
    def log_extra(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution.execution_id,
            "workflow_id": self.workflow.id,
            "step_id": self.step.id,
            "step_index": self.position,
        }


def split_bucket(execution_id: str, step_id: str) -> float:
    """Stable value in [0, 100) for an (execution, step) pair."""
    digest = hashlib.sha256(f"{execution_id}:{step_id}".encode("utf-8")).hexdigest()
    return (int(digest[:12], 16) % 10000) / 100.0


def resolve_step_position(workflow: EmailAutomationWorkflow, step_id: Any) -> int:
    index_map = workflow.step_index_map or {}
    key = str(step_id)
    if key not in index_map:
        raise BranchResolutionError(f"Step {step_id!r} is not part of workflow {workflow.id}")
    return int(index_map[key])


class StepExecutor:
    def __init__(
        self,
        *,
        users: UserStore,
        templates: TemplateStore,
        renderer: TemplateRenderer,
        delivery: DeliveryProvider,
        suppression: SuppressionChecker,
        directory: LearnerDirectory,
        webhooks: WebhookClient,
        from_address: str,
        suppression_scope: str = DEFAULT_SUPPRESSION_SCOPE,
    ) -> None:
        self.users = users
        self.templates = templates
        self.renderer = renderer
        self.delivery = delivery
        self.suppression = suppression
        self.directory = directory
        self.webhooks = webhooks
        self.from_address = from_address
        self.suppression_scope = suppression_scope

        self._handlers: Dict[StepType, Callable[[_StepRun], StepResult]] = {
            StepType.EMAIL: self._run_email,
            StepType.DELAY: self._run_delay,
            StepType.CONDITION: self._run_condition,
            StepType.ACTION: self._run_action,
            StepType.SPLIT_TEST: self._run_split_test,
            StepType.GOAL: self._run_goal,
        }

    def run(
        self,
        execution: WorkflowExecution,
        step: EmailAutomationStep,
        workflow: EmailAutomationWorkflow,
        *,
        position: int,
        now: datetime,
    ) -> StepResult:
        run = _StepRun(
            execution=execution,
            step=step,
            workflow=workflow,
            position=position,
            now=as_utc(now),
            variables=dict(execution.variables or {}),
        )

        if not evaluate_all(step.execution_conditions, run.variables):
            logger.debug("Step skipped; execution conditions not met", extra=run.log_extra)
            return StepResult(
                Advance(position + 1),
                StepAttempt(StepLogOutcome.SKIPPED, "execution conditions not met"),
                run.variables,
            )

        try:
            handler = self._handlers[StepType(step.step_type)]
        except ValueError:
            return StepResult(
                Terminate(False, f"unknown step type {step.step_type!r}"),
                StepAttempt(StepLogOutcome.FAILED, "unknown step type"),
                run.variables,
            )

        try:
            return handler(run)
        except BranchResolutionError as exc:
            logger.warning("Branch target could not be resolved", extra={**run.log_extra, "error": str(exc)})
            return StepResult(
                Terminate(False, f"branch resolution failed: {exc}"),
                StepAttempt(StepLogOutcome.FAILED, str(exc)),
                run.variables,
            )
        except Exception as exc:
            # Fatal for the execution, never retried.
            logger.exception("Step raised; failing execution", extra=run.log_extra)
            return StepResult(
                Terminate(False, f"step {step.id} raised {type(exc).__name__}: {exc}"),
                StepAttempt(StepLogOutcome.FAILED, str(exc)),
                run.variables,
            )

    # ---- email ----

    def _template_for(self, step: EmailAutomationStep, email_cfg: Dict[str, Any]) -> EmailTemplate:
        if step.template_id:
            template = self.templates.get_template(step.template_id)
            if template is None:
                raise LookupError(f"Template {step.template_id} not found")
            if email_cfg.get("subject"):
                return EmailTemplate(
                    subject=email_cfg["subject"],
                    body=template.body,
                    html_body=template.html_body,
                    template_id=template.template_id,
                )
            return template
        content = email_cfg.get("customContent") or ""
        return EmailTemplate(subject=email_cfg.get("subject") or "", body=content, html_body=content)

    def _run_email(self, run: _StepRun) -> StepResult:
        email_cfg = run.config.get("email") or {}
        next_step = Advance(run.position + 1)

        try:
            user = self.users.get_user(run.execution.user_id)
            if user is None or not user.email:
                logger.warning("Email step has no recipient address", extra=run.log_extra)
                return StepResult(next_step, StepAttempt(StepLogOutcome.FAILED, "no recipient address"), run.variables)

            if self.suppression.is_suppressed(user.email, self.suppression_scope):
                logger.info("Recipient suppressed; email not sent", extra=run.log_extra)
                return StepResult(
                    next_step,
                    StepAttempt(StepLogOutcome.SUPPRESSED, f"suppressed ({self.suppression_scope})"),
                    run.variables,
                )

            rendered = self.renderer.render(self._template_for(run.step, email_cfg), run.variables)
            result = self.delivery.send(
                OutgoingEmail(
                    to=user.email,
                    from_address=email_cfg.get("fromEmail") or self.from_address,
                    from_name=email_cfg.get("fromName"),
                    reply_to=email_cfg.get("replyToEmail"),
                    subject=rendered.subject,
                    text=rendered.body,
                    html=rendered.html_body,
                    headers={
                        "X-Workflow-ID": str(run.workflow.id),
                        "X-Execution-ID": str(run.execution.execution_id),
                        "X-Step-ID": str(run.step.id),
                    },
                )
            )
        except Exception as exc:
            logger.exception("Email step failed", extra=run.log_extra)
            return StepResult(next_step, StepAttempt(StepLogOutcome.FAILED, str(exc)), run.variables)

        if not result.success:
            logger.warning("Email delivery failed", extra={**run.log_extra, "error": result.error})
            return StepResult(next_step, StepAttempt(StepLogOutcome.FAILED, result.error), run.variables)

        return StepResult(next_step, StepAttempt(StepLogOutcome.SENT, result.provider_message_id), run.variables)

    # ---- delay ----

    def _run_delay(self, run: _StepRun) -> StepResult:
        cfg = run.config.get("delay") or {}
        settings = run.workflow.settings or {}

        resume_at = run.now + to_timedelta(cfg.get("amount"), cfg.get("unit"))

        business_only = cfg.get("respectBusinessHours")
        if business_only is None:
            business_only = settings.get("businessHoursOnly", False)

        if business_only:
            tz_name = settings.get("timezone")
            use_user_tz = cfg.get("respectUserTimezone")
            if use_user_tz is None:
                use_user_tz = settings.get("respectUserTimezone", False)
            if use_user_tz:
                tz_name = (run.variables.get("user") or {}).get("timezone") or tz_name
            resume_at = next_business_time(resume_at, settings.get("businessHours"), tz_name)

        return StepResult(
            Wait(resume_at=resume_at, next_index=run.position + 1),
            StepAttempt(StepLogOutcome.SUCCEEDED, f"resume at {resume_at.isoformat()}"),
            run.variables,
        )

    # ---- condition ----

    def _run_condition(self, run: _StepRun) -> StepResult:
        cfg = run.config.get("condition") or {}
        met = evaluate(cfg, run.variables)

        true_target = cfg.get("trueStepId")
        false_target = cfg.get("falseStepId")

        if met:
            next_index = resolve_step_position(run.workflow, true_target) if true_target else run.position + 1
        elif false_target:
            next_index = resolve_step_position(run.workflow, false_target)
        elif true_target:
            next_index = run.position + 1
        else:
            next_index = run.position + 2

        variables = assign_path(run.variables, f"conditions.{run.step.id}", met)
        return StepResult(
            Advance(next_index),
            StepAttempt(StepLogOutcome.SUCCEEDED, "true" if met else "false"),
            variables,
        )

    # ---- action ----

    def _run_action(self, run: _StepRun) -> StepResult:
        cfg = run.config.get("action") or {}
        next_step = Advance(run.position + 1)

        try:
            action_type = ActionType(cfg.get("type"))
            updates = run_action(
                ActionContext(
                    execution_id=run.execution.execution_id,
                    workflow_id=run.workflow.id,
                    user_id=run.execution.user_id,
                    variables=run.variables,
                    directory=self.directory,
                    webhooks=self.webhooks,
                ),
                action_type,
                cfg.get("parameters") or {},
            )
        except Exception as exc:
            logger.exception("Action step failed", extra={**run.log_extra, "action_type": cfg.get("type")})
            return StepResult(next_step, StepAttempt(StepLogOutcome.FAILED, str(exc)), run.variables)

        variables = run.variables
        for path, value in updates.items():
            variables = assign_path(variables, path, value)

        return StepResult(next_step, StepAttempt(StepLogOutcome.SUCCEEDED, action_type.value), variables)

    # ---- split test ----

    def _run_split_test(self, run: _StepRun) -> StepResult:
        variants = (run.config.get("splitTest") or {}).get("variants") or []
        bucket = split_bucket(run.execution.execution_id, str(run.step.id))

        chosen = None
        cumulative = 0.0
        for variant in variants:
            cumulative += float(variant.get("percentage") or 0)
            if bucket < cumulative:
                chosen = variant
                break

        if chosen is None:
            variables = assign_path(run.variables, f"splitTests.{run.step.id}", None)
            return StepResult(Advance(run.position + 1), StepAttempt(StepLogOutcome.SUCCEEDED, "no variant"), variables)

        next_index = resolve_step_position(run.workflow, chosen.get("stepId"))
        variables = assign_path(run.variables, f"splitTests.{run.step.id}", chosen.get("name"))
        return StepResult(
            Advance(next_index),
            StepAttempt(StepLogOutcome.SUCCEEDED, f"variant {chosen.get('name')}"),
            variables,
        )

    # ---- goal ----

    def _run_goal(self, run: _StepRun) -> StepResult:
        goal = run.config.get("goal") or {}
        window = duration_from_config(goal.get("conversionWindow"))

        started_at = as_utc(run.execution.started_at) or run.now
        converted = window is None or run.now - started_at <= window

        variables = assign_path(
            run.variables,
            "goal",
            {"type": goal.get("type"), "stepId": run.step.id, "converted": converted},
        )
        return StepResult(
            Terminate(True, "goal reached"),
            StepAttempt(
                StepLogOutcome.SUCCEEDED,
                "converted" if converted else "outside conversion window",
                conversion=converted,
            ),
            variables,
        )
