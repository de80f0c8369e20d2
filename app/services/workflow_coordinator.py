"""
Owns execution state: creates executions on trigger, runs steps through the
StepExecutor when a resumption job is delivered, and applies step outcomes.

Every public method follows the owns_db convention: pass a Session to run
inside the caller's transaction, or omit it and the method commits its own.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.errors import (
    ExecutionNotFoundError,
    SchedulingError,
    UserNotFoundError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from app.database import SessionLocal
from app.models.execution_step_log import ExecutionStepLog, StepLogOutcome
from app.models.workflow import EmailAutomationWorkflow
from app.models.workflow_execution import (
    TERMINAL_STATUSES,
    ExecutionStatus,
    WorkflowExecution,
    active_key_for,
)
from app.models.workflow_step import EmailAutomationStep
from app.services import execution_limiter
from app.services.audience_matcher import matches
from app.services.collaborators import UserProfile, UserStore
from app.services.condition_evaluator import assign_path, evaluate_any
from app.services.scheduling import OutboxScheduler, SchedulingAdapter, enqueue_event
from app.services.step_executor import (
    Advance,
    StepAttempt,
    StepExecutor,
    StepOutcome,
    Terminate,
    Wait,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS_PER_RUN = 100

EXECUTION_COMPLETED = "EXECUTION_COMPLETED"

STEP_EVENT_TYPES = {
    StepLogOutcome.SENT: "STEP_SENT",
    StepLogOutcome.SUPPRESSED: "STEP_SUPPRESSED",
    StepLogOutcome.SKIPPED: "STEP_SKIPPED",
    StepLogOutcome.FAILED: "STEP_FAILED",
    StepLogOutcome.SUCCEEDED: "STEP_SUCCEEDED",
}

TELEMETRY_EVENT_TYPES = frozenset(STEP_EVENT_TYPES.values()) | {EXECUTION_COMPLETED}


def seed_variables(
    workflow: EmailAutomationWorkflow,
    user: UserProfile,
    trigger_data: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    return {
        **(trigger_data or {}),
        "user": user.as_variables(),
        "workflow": {"id": workflow.id, "name": workflow.name},
    }


def in_activation_window(workflow: EmailAutomationWorkflow, now: datetime) -> bool:
    active_from = as_utc(workflow.active_from)
    active_until = as_utc(workflow.active_until)
    if active_from is not None and now < active_from:
        return False
    if active_until is not None and now >= active_until:
        return False
    return True


class WorkflowCoordinator:
    def __init__(
        self,
        *,
        executor: StepExecutor,
        users: UserStore,
        scheduler: Optional[SchedulingAdapter] = None,
        max_steps_per_run: int = DEFAULT_MAX_STEPS_PER_RUN,
    ) -> None:
        self.executor = executor
        self.users = users
        self.scheduler = scheduler or OutboxScheduler()
        self.max_steps_per_run = max(1, int(max_steps_per_run))

    # ---- trigger ----

    def trigger(
        self,
        workflow_id: str,
        user_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        *,
        db: Optional[Session] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Starts an execution for (workflow, user) and schedules its first step.

        Raises for a missing or non-active workflow and for an unknown user.
        Returns None when the trigger is rejected (activation window, audience,
        execution limits).
        """
        owns_db = db is None
        if owns_db:
            db = SessionLocal()
        now = as_utc(now) if now is not None else utcnow()

        try:
            workflow = db.get(EmailAutomationWorkflow, workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
            if not workflow.is_active:
                raise WorkflowStateError(f"Workflow {workflow_id} is not active (status={workflow.status})")

            user = self.users.get_user(user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")

            log_extra = {"workflow_id": workflow_id, "user_id": user_id}

            if not in_activation_window(workflow, now):
                logger.debug("Trigger rejected: outside activation window", extra=log_extra)
                return None

            if not matches(user, workflow.target_audience):
                logger.debug("Trigger rejected: audience mismatch", extra=log_extra)
                return None

            decision = execution_limiter.check(db, workflow_id, user_id, workflow.settings, now=now)
            if not decision:
                logger.debug("Trigger rejected: execution limits", extra={**log_extra, "reason": decision.reason})
                return None

            execution = WorkflowExecution(
                execution_id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                user_id=user_id,
                trigger_data=dict(trigger_data or {}),
                variables=seed_variables(workflow, user, trigger_data),
                status=ExecutionStatus.PENDING.value,
                current_step_index=0,
                graph_version=workflow.graph_version,
                active_key=active_key_for(workflow_id, user_id),
                started_at=now,
            )
            try:
                with db.begin_nested():
                    db.add(execution)
                    db.flush()
            except IntegrityError:
                logger.debug("Trigger rejected: concurrent execution exists", extra=log_extra)
                return None

            db.query(EmailAutomationWorkflow).filter(EmailAutomationWorkflow.id == workflow_id).update(
                {EmailAutomationWorkflow.total_executions: EmailAutomationWorkflow.total_executions + 1},
                synchronize_session=False,
            )

            try:
                self.scheduler.schedule_at(db, execution.execution_id, now, step_index=0)
            except SchedulingError as exc:
                logger.error(
                    "Could not schedule first step",
                    extra={**log_extra, "execution_id": execution.execution_id},
                )
                self._finish(db, execution, workflow, success=False, reason=str(exc), now=now)

            if owns_db:
                db.commit()

            logger.info(
                "Workflow triggered",
                extra={**log_extra, "execution_id": execution.execution_id},
            )
            return execution.execution_id

        except Exception:
            if owns_db:
                db.rollback()
            raise
        finally:
            if owns_db:
                db.close()

    # ---- resume / advance / cancel ----

    def _lock_execution(self, db: Session, execution_id: str) -> Optional[WorkflowExecution]:
        return (
            db.query(WorkflowExecution)
            .filter(WorkflowExecution.execution_id == execution_id)
            .with_for_update()
            .one_or_none()
        )

    def resume(
        self,
        execution_id: str,
        expected_index: int,
        *,
        db: Optional[Session] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Runs an execution from its current step. Duplicate or stale deliveries
        (terminal execution, index already moved on) are no-ops.
        Returns the execution status afterwards, or None when nothing ran.
        """
        owns_db = db is None
        if owns_db:
            db = SessionLocal()
        now = as_utc(now) if now is not None else utcnow()

        try:
            execution = self._lock_execution(db, execution_id)
            if execution is None:
                logger.warning("Resumption for unknown execution", extra={"execution_id": execution_id})
                return None

            if execution.is_terminal or execution.current_step_index != int(expected_index):
                logger.debug(
                    "Ignoring stale resumption",
                    extra={
                        "execution_id": execution_id,
                        "expected_index": int(expected_index),
                        "current_step_index": execution.current_step_index,
                        "status": execution.status,
                    },
                )
                return None

            workflow = db.get(EmailAutomationWorkflow, execution.workflow_id)
            self._run(db, execution, workflow, now)

            if owns_db:
                db.commit()
            return execution.status

        except Exception:
            if owns_db:
                db.rollback()
            raise
        finally:
            if owns_db:
                db.close()

    def advance(
        self,
        execution_id: str,
        outcome: StepOutcome,
        *,
        db: Optional[Session] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Applies an outcome to a non-terminal execution and keeps running if it says so."""
        owns_db = db is None
        if owns_db:
            db = SessionLocal()
        now = as_utc(now) if now is not None else utcnow()

        try:
            execution = self._lock_execution(db, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            if execution.is_terminal:
                raise WorkflowStateError(f"Execution {execution_id} already {execution.status}")

            workflow = db.get(EmailAutomationWorkflow, execution.workflow_id)
            if workflow is None:
                self._finish(db, execution, None, success=False, reason="workflow no longer exists", now=now)
            elif self._apply(db, execution, workflow, outcome, now):
                self._run(db, execution, workflow, now)

            if owns_db:
                db.commit()
            return execution.status

        except Exception:
            if owns_db:
                db.rollback()
            raise
        finally:
            if owns_db:
                db.close()

    def cancel(
        self,
        execution_id: str,
        reason: str,
        *,
        db: Optional[Session] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Drops pending resumptions and fails the execution. False if it had already ended."""
        owns_db = db is None
        if owns_db:
            db = SessionLocal()
        now = as_utc(now) if now is not None else utcnow()

        try:
            execution = self._lock_execution(db, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")

            cancelled = self._cancel_locked(db, execution, reason, now)

            if owns_db:
                db.commit()
            return cancelled

        except Exception:
            if owns_db:
                db.rollback()
            raise
        finally:
            if owns_db:
                db.close()

    def cancel_in_flight(self, db: Session, workflow_id: str, reason: str, *, now: Optional[datetime] = None) -> int:
        """Cancels every unterminated execution of a workflow inside the caller's transaction."""
        now = as_utc(now) if now is not None else utcnow()
        executions = (
            db.query(WorkflowExecution)
            .filter(
                WorkflowExecution.workflow_id == workflow_id,
                WorkflowExecution.status.notin_(TERMINAL_STATUSES),
            )
            .with_for_update()
            .all()
        )
        cancelled = 0
        for execution in executions:
            if self._cancel_locked(db, execution, reason, now):
                cancelled += 1
        if cancelled:
            logger.info(
                "In-flight executions cancelled",
                extra={"workflow_id": workflow_id, "cancelled": cancelled, "reason": reason},
            )
        return cancelled

    def _cancel_locked(self, db: Session, execution: WorkflowExecution, reason: str, now: datetime) -> bool:
        if execution.is_terminal:
            return False
        self.scheduler.cancel(db, execution.execution_id, now=now)
        workflow = db.get(EmailAutomationWorkflow, execution.workflow_id)
        self._finish(db, execution, workflow, success=False, reason=reason, now=now)
        return True

    # ---- internals ----

    def _run(
        self,
        db: Session,
        execution: WorkflowExecution,
        workflow: Optional[EmailAutomationWorkflow],
        now: datetime,
    ) -> None:
        if workflow is None:
            self._finish(db, execution, None, success=False, reason="workflow no longer exists", now=now)
            return

        steps = workflow.ordered_steps
        if execution.graph_version != workflow.graph_version:
            self._finish(
                db,
                execution,
                workflow,
                success=False,
                reason=f"step graph changed (v{execution.graph_version} -> v{workflow.graph_version})",
                now=now,
            )
            return

        exit_conditions = (workflow.settings or {}).get("exitConditions") or []
        execution.status = ExecutionStatus.RUNNING.value
        execution.waiting_until = None

        for _ in range(self.max_steps_per_run):
            index = execution.current_step_index
            if index == len(steps):
                self._finish(db, execution, workflow, success=True, reason=None, now=now)
                return
            if index < 0 or index > len(steps):
                self._finish(db, execution, workflow, success=False, reason=f"step index {index} out of range", now=now)
                return

            if exit_conditions and evaluate_any(exit_conditions, execution.variables):
                logger.info(
                    "Exit condition met",
                    extra={"execution_id": execution.execution_id, "workflow_id": workflow.id},
                )
                self._finish(db, execution, workflow, success=True, reason="exit condition met", now=now)
                return

            step = steps[index]
            result = self.executor.run(execution, step, workflow, position=index, now=now)
            self._record_attempt(db, execution, step, index, result.attempt, now)
            execution.variables = assign_path(
                result.variables,
                "lastStep",
                {
                    "stepId": step.id,
                    "stepType": step.step_type,
                    "index": index,
                    "outcome": result.attempt.outcome.value,
                    "success": result.attempt.success,
                },
            )

            if not self._apply(db, execution, workflow, result.outcome, now):
                return

        # Bounded run; hand the rest to a fresh invocation.
        try:
            self.scheduler.schedule_at(db, execution.execution_id, now, step_index=execution.current_step_index)
        except SchedulingError as exc:
            self._finish(db, execution, workflow, success=False, reason=str(exc), now=now)

    def _apply(
        self,
        db: Session,
        execution: WorkflowExecution,
        workflow: EmailAutomationWorkflow,
        outcome: StepOutcome,
        now: datetime,
    ) -> bool:
        """Applies a step outcome. True means the caller should run the next step now."""
        if isinstance(outcome, Terminate):
            self._finish(db, execution, workflow, success=outcome.success, reason=outcome.reason, now=now)
            return False

        step_count = len(workflow.steps)

        if isinstance(outcome, Wait):
            next_index = min(int(outcome.next_index), step_count)
            resume_at = as_utc(outcome.resume_at)
            execution.current_step_index = next_index
            execution.status = ExecutionStatus.WAITING.value
            execution.waiting_until = resume_at
            try:
                self.scheduler.schedule_at(db, execution.execution_id, resume_at, step_index=next_index)
            except SchedulingError as exc:
                logger.error("Could not schedule resumption", extra={"execution_id": execution.execution_id})
                self._finish(db, execution, workflow, success=False, reason=str(exc), now=now)
            return False

        if isinstance(outcome, Advance):
            # Running past the last step (including a skip from the second-to-last) completes.
            execution.current_step_index = min(int(outcome.next_index), step_count)
            return True

        raise TypeError(f"Unsupported step outcome: {outcome!r}")

    def _record_attempt(
        self,
        db: Session,
        execution: WorkflowExecution,
        step: EmailAutomationStep,
        index: int,
        attempt: StepAttempt,
        now: datetime,
    ) -> None:
        log = ExecutionStepLog(
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            user_id=execution.user_id,
            step_id=step.id,
            step_index=index,
            step_type=step.step_type,
            outcome=attempt.outcome.value,
            detail=attempt.detail,
            created_at=now,
        )
        db.add(log)

        if attempt.counted:
            values = {EmailAutomationStep.execution_count: EmailAutomationStep.execution_count + 1}
            if attempt.success:
                values[EmailAutomationStep.success_count] = EmailAutomationStep.success_count + 1
            else:
                values[EmailAutomationStep.failure_count] = EmailAutomationStep.failure_count + 1
            if attempt.conversion:
                values[EmailAutomationStep.conversion_count] = EmailAutomationStep.conversion_count + 1
            db.query(EmailAutomationStep).filter(EmailAutomationStep.id == step.id).update(
                values, synchronize_session=False
            )

        db.flush()
        enqueue_event(
            db,
            event_type=STEP_EVENT_TYPES[attempt.outcome],
            available_at=now,
            idempotency_key=f"step-log:{log.id}",
            aggregate_id=execution.execution_id,
            payload={
                "execution_id": execution.execution_id,
                "workflow_id": execution.workflow_id,
                "user_id": execution.user_id,
                "step_id": step.id,
                "step_index": index,
                "step_type": step.step_type,
                "outcome": attempt.outcome.value,
                "detail": attempt.detail,
                "occurred_at": now.isoformat(),
            },
        )

    def _finish(
        self,
        db: Session,
        execution: WorkflowExecution,
        workflow: Optional[EmailAutomationWorkflow],
        *,
        success: bool,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        execution.status = (ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED).value
        execution.completed_at = now
        execution.waiting_until = None
        execution.active_key = None
        execution.failure_reason = None if success else reason

        if workflow is not None:
            counter = (
                EmailAutomationWorkflow.successful_executions
                if success
                else EmailAutomationWorkflow.failed_executions
            )
            db.query(EmailAutomationWorkflow).filter(EmailAutomationWorkflow.id == workflow.id).update(
                {counter: counter + 1}, synchronize_session=False
            )

        enqueue_event(
            db,
            event_type=EXECUTION_COMPLETED,
            available_at=now,
            idempotency_key=execution.execution_id,
            aggregate_id=execution.execution_id,
            payload={
                "execution_id": execution.execution_id,
                "workflow_id": execution.workflow_id,
                "user_id": execution.user_id,
                "success": success,
                "reason": reason,
                "completed_at": now.isoformat(),
            },
        )
        db.flush()

        log = logger.info if success else logger.warning
        log(
            "Execution finished",
            extra={
                "execution_id": execution.execution_id,
                "workflow_id": execution.workflow_id,
                "status": execution.status,
                "reason": reason,
            },
        )
