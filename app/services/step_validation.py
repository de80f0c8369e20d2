"""
Activation-time checks. Everything a step needs at run time is verified here,
so a misconfigured workflow never reaches an execution.
"""
from datetime import datetime, time
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from app.core.clock import as_utc
from app.models.workflow import EmailAutomationWorkflow, TriggerType
from app.models.workflow_step import EmailAutomationStep, StepType
from app.services.actions import REQUIRED_PARAMETERS, ActionType
from app.services.condition_evaluator import OPERATORS
from app.services.scheduling_windows import to_timedelta

GOAL_TYPES = {"course_completion", "lesson_completion", "purchase", "custom_event"}


def build_step_index_map(steps: Sequence[EmailAutomationStep]) -> Dict[str, int]:
    ordered = sorted(steps, key=lambda s: s.order_index)
    return {str(step.id): position for position, step in enumerate(ordered)}


def _check_duration(cfg: Any, label: str, problems: List[str]) -> None:
    if not isinstance(cfg, dict):
        problems.append(f"{label} missing")
        return
    try:
        delta = to_timedelta(cfg.get("amount"), cfg.get("unit"))
    except ValueError as exc:
        problems.append(f"{label}: {exc}")
        return
    if delta.total_seconds() <= 0:
        problems.append(f"{label} must be positive")


def _parse_clock(value: Any) -> Optional[time]:
    try:
        return datetime.strptime(str(value), "%H:%M").time()
    except ValueError:
        return None


def _check_business_hours(hours: Any, problems: List[str]) -> None:
    if not isinstance(hours, dict):
        problems.append("businessHours must be an object")
        return

    bounds = {}
    for key in ("start", "end"):
        if hours.get(key) is None:
            continue
        parsed = _parse_clock(hours[key])
        if parsed is None:
            problems.append(f"businessHours {key} {hours[key]!r} is not HH:MM")
        bounds[key] = parsed
    start = bounds.get("start", time(9, 0))
    end = bounds.get("end", time(17, 0))
    if start is not None and end is not None and end <= start:
        problems.append("businessHours end must be after start")

    days = hours.get("days")
    if days is not None:
        if not isinstance(days, list):
            problems.append("businessHours days must be a list")
        else:
            for day in days:
                if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
                    problems.append(f"businessHours day {day!r} must be an integer 0 (Sunday) to 6")


def _check_timezone(name: Any, label: str, problems: List[str]) -> None:
    try:
        ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError):
        problems.append(f"{label} {name!r} is not a known time zone")


def _check_condition(cfg: Dict[str, Any], label: str, problems: List[str]) -> None:
    if not isinstance(cfg, dict):
        problems.append(f"{label} missing")
        return
    if not cfg.get("field"):
        problems.append(f"{label} missing field")
    if cfg.get("operator") not in OPERATORS:
        problems.append(f"{label} has unsupported operator {cfg.get('operator')!r}")


def _validate_step(step: EmailAutomationStep, step_ids: set, problems: List[str]) -> None:
    config = step.config or {}
    label = f"step {step.id} ({step.step_type})"

    try:
        step_type = StepType(step.step_type)
    except ValueError:
        problems.append(f"{label}: unknown step type")
        return

    for i, condition in enumerate(step.execution_conditions or []):
        _check_condition(condition, f"{label} execution condition {i}", problems)

    if step_type == StepType.EMAIL:
        email = config.get("email") or {}
        if not step.template_id and not email.get("customContent"):
            problems.append(f"{label} missing template or content")
        if not step.template_id and not email.get("subject"):
            problems.append(f"{label} missing subject")

    elif step_type == StepType.DELAY:
        _check_duration(config.get("delay"), f"{label} delay", problems)

    elif step_type == StepType.CONDITION:
        condition = config.get("condition")
        _check_condition(condition, f"{label} condition", problems)
        for key in ("trueStepId", "falseStepId"):
            target = (condition or {}).get(key)
            if target and str(target) not in step_ids:
                problems.append(f"{label} {key} {target!r} is not a step of this workflow")

    elif step_type == StepType.ACTION:
        action = config.get("action") or {}
        try:
            action_type = ActionType(action.get("type"))
        except ValueError:
            problems.append(f"{label} has unsupported action type {action.get('type')!r}")
            return
        params = action.get("parameters") or {}
        for name in REQUIRED_PARAMETERS[action_type]:
            if params.get(name) in (None, ""):
                problems.append(f"{label} action {action_type.value} missing parameter {name!r}")

    elif step_type == StepType.SPLIT_TEST:
        variants = (config.get("splitTest") or {}).get("variants") or []
        if not variants:
            problems.append(f"{label} has no variants")
        total = 0.0
        for variant in variants:
            try:
                pct = float(variant.get("percentage"))
            except (TypeError, ValueError):
                problems.append(f"{label} variant {variant.get('name')!r} has invalid percentage")
                continue
            if pct < 0 or pct > 100:
                problems.append(f"{label} variant {variant.get('name')!r} percentage out of range")
            total += pct
            if str(variant.get("stepId")) not in step_ids:
                problems.append(
                    f"{label} variant {variant.get('name')!r} stepId {variant.get('stepId')!r} is not a step of this workflow"
                )
        if total > 100:
            problems.append(f"{label} variant percentages sum to {total:g} (> 100)")

    elif step_type == StepType.GOAL:
        goal = config.get("goal") or {}
        if goal.get("type") not in GOAL_TYPES:
            problems.append(f"{label} has unsupported goal type {goal.get('type')!r}")
        if goal.get("conversionWindow"):
            _check_duration(goal.get("conversionWindow"), f"{label} conversion window", problems)


def _validate_trigger(workflow: EmailAutomationWorkflow, problems: List[str]) -> None:
    try:
        trigger_type = TriggerType(workflow.trigger_type)
    except ValueError:
        problems.append(f"unknown trigger type {workflow.trigger_type!r}")
        return

    cfg = workflow.trigger_config or {}

    if trigger_type == TriggerType.TIME_BASED:
        schedule = cfg.get("schedule") or {}
        if schedule.get("timezone"):
            _check_timezone(schedule.get("timezone"), "schedule timezone", problems)
        if schedule.get("type", "recurring") == "recurring":
            cron = schedule.get("cron")
            if not cron or not croniter.is_valid(str(cron)):
                problems.append(f"time_based trigger has invalid cron expression {cron!r}")
        elif not schedule.get("startDate"):
            problems.append("time_based 'once' schedule requires startDate")

    if trigger_type == TriggerType.CUSTOM_EVENT and not cfg.get("customEventName"):
        problems.append("custom_event trigger requires customEventName")

    if trigger_type == TriggerType.INACTIVITY and cfg.get("inactivityPeriod"):
        _check_duration(cfg.get("inactivityPeriod"), "inactivityPeriod", problems)


def validate_workflow(workflow: EmailAutomationWorkflow) -> List[str]:
    """Returns the list of problems; empty means the workflow may be activated."""
    problems: List[str] = []
    steps = list(workflow.steps or [])

    if not steps:
        problems.append("workflow must have at least one step")

    order = [s.order_index for s in steps]
    if len(order) != len(set(order)):
        problems.append("step orderIndex values must be unique")

    step_ids = {str(s.id) for s in steps}
    for step in sorted(steps, key=lambda s: s.order_index):
        _validate_step(step, step_ids, problems)

    _validate_trigger(workflow, problems)

    settings = workflow.settings or {}
    if settings.get("cooldownPeriod"):
        _check_duration(settings.get("cooldownPeriod"), "cooldownPeriod", problems)
    if settings.get("businessHours") is not None:
        _check_business_hours(settings.get("businessHours"), problems)
    if settings.get("timezone"):
        _check_timezone(settings.get("timezone"), "settings timezone", problems)

    if workflow.active_from and workflow.active_until and as_utc(workflow.active_until) <= as_utc(workflow.active_from):
        problems.append("activeUntil must be after activeFrom")

    return problems
