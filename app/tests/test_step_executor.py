from datetime import datetime, timedelta, timezone

from app.models.execution_step_log import StepLogOutcome
from app.models.workflow import EmailAutomationWorkflow
from app.models.workflow_execution import WorkflowExecution
from app.models.workflow_step import EmailAutomationStep
from app.services.collaborators import DeliveryResult, EmailTemplate
from app.services.step_executor import Advance, Terminate, Wait, split_bucket

from app.tests.support import NOW, build_harness


def _setup(steps, settings=None, variables=None, user_id="learner-1", started_at=NOW):
    workflow = EmailAutomationWorkflow(
        id="wf-1",
        name="Onboarding",
        created_by="manager-1",
        trigger_type="user_registration",
        settings=settings or {},
        graph_version=1,
    )
    workflow.steps = steps
    workflow.step_index_map = {s.id: i for i, s in enumerate(sorted(steps, key=lambda s: s.order_index))}
    execution = WorkflowExecution(
        execution_id="exec-1",
        workflow_id="wf-1",
        user_id=user_id,
        variables=variables or {"user": {"firstName": "Ada", "timezone": "UTC", "tags": ["new"]}},
        started_at=started_at,
        current_step_index=0,
        graph_version=1,
    )
    return workflow, execution


def _step(step_id, step_type, order_index, config=None, **kwargs):
    return EmailAutomationStep(
        id=step_id,
        workflow_id="wf-1",
        name=step_id,
        step_type=step_type,
        order_index=order_index,
        config=config or {},
        **kwargs,
    )


def _run(harness, workflow, execution, step_id, now=NOW):
    step = next(s for s in workflow.steps if s.id == step_id)
    return harness.coordinator.executor.run(
        execution, step, workflow, position=workflow.step_index_map[step_id], now=now
    )


def test_email_step_renders_and_sends_with_tracking_headers():
    h = build_harness()
    step = _step("s1", "email", 0, {"email": {"subject": "Welcome {{ user.firstName }}", "customContent": "Hi {{ user.firstName }}{{ missing.value }}"}})
    workflow, execution = _setup([step])

    result = _run(h, workflow, execution, "s1")

    assert result.outcome == Advance(1)
    assert result.attempt.outcome == StepLogOutcome.SENT
    sent = h.delivery.sent[0]
    assert sent.to == "ada@example.com"
    assert sent.subject == "Welcome Ada"
    assert sent.text == "Hi Ada"
    assert sent.from_address == "academy@example.com"
    assert sent.headers == {"X-Workflow-ID": "wf-1", "X-Execution-ID": "exec-1", "X-Step-ID": "s1"}


def test_email_step_uses_template_with_subject_override():
    h = build_harness()
    h.templates.put("tpl-1", EmailTemplate(subject="Template subject", body="Body for {{ user.firstName }}"))
    step = _step("s1", "email", 0, {"email": {"subject": "Override"}}, template_id="tpl-1")
    workflow, execution = _setup([step])

    _run(h, workflow, execution, "s1")

    assert h.delivery.sent[0].subject == "Override"
    assert h.delivery.sent[0].text == "Body for Ada"


def test_suppressed_recipient_is_not_sent():
    h = build_harness()
    h.suppression.suppress("ADA@example.com")
    step = _step("s1", "email", 0, {"email": {"subject": "Hi", "customContent": "x"}})
    workflow, execution = _setup([step])

    result = _run(h, workflow, execution, "s1")

    assert result.attempt.outcome == StepLogOutcome.SUPPRESSED
    assert result.attempt.success
    assert result.outcome == Advance(1)
    assert h.delivery.sent == []


def test_missing_template_and_failed_delivery_fail_the_step_but_advance():
    h = build_harness()
    step = _step("s1", "email", 0, {"email": {}}, template_id="tpl-missing")
    workflow, execution = _setup([step])

    result = _run(h, workflow, execution, "s1")
    assert result.attempt.outcome == StepLogOutcome.FAILED
    assert result.outcome == Advance(1)

    class Bouncing:
        def send(self, message):
            return DeliveryResult(success=False, error="mailbox full")

    h.coordinator.executor.delivery = Bouncing()
    step.template_id = None
    step.config = {"email": {"subject": "Hi", "customContent": "x"}}
    result = _run(h, workflow, execution, "s1")
    assert result.attempt.outcome == StepLogOutcome.FAILED
    assert result.attempt.detail == "mailbox full"


def test_email_without_recipient_address_fails():
    h = build_harness()
    step = _step("s1", "email", 0, {"email": {"subject": "Hi", "customContent": "x"}})
    workflow, execution = _setup([step], user_id="learner-no-email")

    result = _run(h, workflow, execution, "s1")

    assert result.attempt.outcome == StepLogOutcome.FAILED
    assert result.attempt.detail == "no recipient address"


def test_unmet_execution_conditions_skip_the_step():
    h = build_harness()
    step = _step(
        "s1",
        "email",
        0,
        {"email": {"subject": "Hi", "customContent": "x"}},
        execution_conditions=[{"field": "user.tags", "operator": "contains", "value": "vip"}],
    )
    workflow, execution = _setup([step])

    result = _run(h, workflow, execution, "s1")

    assert result.outcome == Advance(1)
    assert result.attempt.outcome == StepLogOutcome.SKIPPED
    assert not result.attempt.counted
    assert h.delivery.sent == []


def test_delay_step_waits_for_duration():
    h = build_harness()
    step = _step("s1", "delay", 0, {"delay": {"amount": 2, "unit": "days"}})
    workflow, execution = _setup([step])

    result = _run(h, workflow, execution, "s1")

    assert result.outcome == Wait(resume_at=NOW + timedelta(days=2), next_index=1)


def test_delay_step_respects_business_hours_in_user_timezone():
    h = build_harness()
    step = _step(
        "s1",
        "delay",
        0,
        {"delay": {"amount": 10, "unit": "hours", "respectBusinessHours": True, "respectUserTimezone": True}},
    )
    workflow, execution = _setup(
        [step],
        variables={"user": {"timezone": "America/New_York"}},
    )

    result = _run(h, workflow, execution, "s1")

    # 20:00 UTC Monday is 15:00 in New York, inside the default window.
    assert result.outcome.resume_at == datetime(2026, 1, 5, 20, 0, tzinfo=timezone.utc)

    execution.variables = {"user": {"timezone": "Asia/Tokyo"}}
    result = _run(h, workflow, execution, "s1")
    # 05:00 Tuesday in Tokyo; opens at 09:00 local (00:00 UTC Tuesday).
    assert result.outcome.resume_at == datetime(2026, 1, 6, 0, 0, tzinfo=timezone.utc)


def test_condition_step_branches_on_configured_targets():
    h = build_harness()
    steps = [
        _step(
            "cond",
            "condition",
            0,
            {"condition": {"field": "opened_e1", "operator": "equals", "value": True,
                           "trueStepId": "goal", "falseStepId": "retry"}},
        ),
        _step("retry", "email", 1, {"email": {"subject": "Retry", "customContent": "x"}}),
        _step("goal", "goal", 2, {"goal": {"type": "purchase"}}),
    ]
    workflow, execution = _setup(steps, variables={"opened_e1": True})
    result = _run(h, workflow, execution, "cond")
    assert result.outcome == Advance(2)
    assert result.variables["conditions"]["cond"] is True

    execution.variables = {}
    result = _run(h, workflow, execution, "cond")
    assert result.outcome == Advance(1)
    assert result.variables["conditions"]["cond"] is False


def test_condition_without_targets_skips_one_step_when_false():
    h = build_harness()
    steps = [
        _step("cond", "condition", 0, {"condition": {"field": "opened", "operator": "equals", "value": True}}),
        _step("only-if-true", "email", 1, {"email": {"subject": "x", "customContent": "x"}}),
        _step("after", "goal", 2, {"goal": {"type": "purchase"}}),
    ]
    workflow, execution = _setup(steps, variables={"opened": False})

    assert _run(h, workflow, execution, "cond").outcome == Advance(2)

    execution.variables = {"opened": True}
    assert _run(h, workflow, execution, "cond").outcome == Advance(1)


def test_condition_with_unresolvable_target_terminates():
    h = build_harness()
    step = _step("cond", "condition", 0, {"condition": {"field": "x", "operator": "equals", "value": 1, "trueStepId": "gone"}})
    workflow, execution = _setup([step], variables={"x": 1})

    result = _run(h, workflow, execution, "cond")

    assert isinstance(result.outcome, Terminate)
    assert not result.outcome.success
    assert result.attempt.outcome == StepLogOutcome.FAILED


def test_action_steps_update_directory_and_variables():
    h = build_harness()
    steps = [
        _step("tag", "action", 0, {"action": {"type": "add_tag", "parameters": {"tag": "nudged"}}}),
        _step("score", "action", 1, {"action": {"type": "update_field", "parameters": {"field": "score", "value": 5}}}),
        _step("hook", "action", 2, {"action": {"type": "trigger_webhook", "parameters": {"url": "https://hooks.example.com/x", "payload": {"a": 1}}}}),
        _step("enroll", "action", 3, {"action": {"type": "add_to_course", "parameters": {"courseId": "course-9"}}}),
    ]
    workflow, execution = _setup(steps)

    result = _run(h, workflow, execution, "tag")
    assert "nudged" in h.users.get_user("learner-1").tags
    assert result.variables["user"]["tags"] == ["new", "nudged"]

    result = _run(h, workflow, execution, "score")
    assert result.variables["score"] == 5
    assert h.users.get_user("learner-1").attributes["score"] == 5

    _run(h, workflow, execution, "hook")
    url, payload = h.webhooks.calls[0]
    assert url == "https://hooks.example.com/x"
    assert payload["executionId"] == "exec-1"
    assert payload["data"] == {"a": 1}

    _run(h, workflow, execution, "enroll")
    assert "course-9" in h.users.get_user("learner-1").course_ids


def test_failed_action_is_recorded_and_execution_advances():
    h = build_harness()
    h.webhooks.fail = True
    step = _step("hook", "action", 0, {"action": {"type": "trigger_webhook", "parameters": {"url": "https://x"}}})
    workflow, execution = _setup([step])

    result = _run(h, workflow, execution, "hook")

    assert result.outcome == Advance(1)
    assert result.attempt.outcome == StepLogOutcome.FAILED


def test_split_test_is_deterministic_and_records_variant():
    h = build_harness()
    steps = [
        _step("split", "split_test", 0, {"splitTest": {"variants": [
            {"name": "A", "percentage": 50, "stepId": "a"},
            {"name": "B", "percentage": 50, "stepId": "b"},
        ]}}),
        _step("a", "email", 1, {"email": {"subject": "A", "customContent": "x"}}),
        _step("b", "email", 2, {"email": {"subject": "B", "customContent": "x"}}),
    ]
    workflow, execution = _setup(steps)

    first = _run(h, workflow, execution, "split")
    second = _run(h, workflow, execution, "split")

    expected = ("A", 1) if split_bucket("exec-1", "split") < 50 else ("B", 2)
    assert first.outcome == second.outcome == Advance(expected[1])
    assert first.variables["splitTests"]["split"] == expected[0]


def test_split_bucket_range():
    values = [split_bucket(f"exec-{i}", "step") for i in range(200)]
    assert all(0 <= v < 100 for v in values)
    assert len(set(values)) > 100


def test_goal_terminates_and_counts_conversion_inside_window():
    h = build_harness()
    step = _step("goal", "goal", 0, {"goal": {"type": "purchase", "conversionWindow": {"amount": 1, "unit": "days"}}})
    workflow, execution = _setup([step])

    result = _run(h, workflow, execution, "goal", now=NOW + timedelta(hours=3))
    assert result.outcome == Terminate(True, "goal reached")
    assert result.attempt.conversion
    assert result.variables["goal"]["converted"] is True

    result = _run(h, workflow, execution, "goal", now=NOW + timedelta(days=2))
    assert result.outcome == Terminate(True, "goal reached")
    assert not result.attempt.conversion


def test_unknown_step_type_terminates_with_failure():
    h = build_harness()
    step = _step("odd", "carrier_pigeon", 0)
    workflow, execution = _setup([step])

    result = _run(h, workflow, execution, "odd")

    assert result.outcome.success is False
    assert result.attempt.outcome == StepLogOutcome.FAILED
