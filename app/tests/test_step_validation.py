from app.models.workflow import EmailAutomationWorkflow
from app.models.workflow_step import EmailAutomationStep
from app.services.step_validation import build_step_index_map, validate_workflow


def _step(step_id, step_type, order_index, config=None, template_id=None, execution_conditions=None):
    return EmailAutomationStep(
        id=step_id,
        workflow_id="wf-1",
        name=step_id,
        step_type=step_type,
        order_index=order_index,
        template_id=template_id,
        config=config or {},
        execution_conditions=execution_conditions or [],
    )


def _workflow(steps, trigger_type="user_registration", trigger_config=None, settings=None):
    workflow = EmailAutomationWorkflow(
        id="wf-1",
        name="Onboarding",
        created_by="manager-1",
        trigger_type=trigger_type,
        trigger_config=trigger_config or {},
        settings=settings or {},
    )
    workflow.steps = steps
    return workflow


def test_step_index_map_follows_order_index():
    steps = [_step("c", "goal", 30), _step("a", "email", 10), _step("b", "delay", 20)]
    assert build_step_index_map(steps) == {"a": 0, "b": 1, "c": 2}


def test_valid_workflow_has_no_problems():
    steps = [
        _step("s1", "email", 0, {"email": {"subject": "Welcome", "customContent": "Hi"}}),
        _step("s2", "delay", 1, {"delay": {"amount": 2, "unit": "days"}}),
        _step(
            "s3",
            "condition",
            2,
            {"condition": {"field": "opened", "operator": "equals", "value": True, "trueStepId": "s5"}},
        ),
        _step("s4", "action", 3, {"action": {"type": "add_tag", "parameters": {"tag": "nudged"}}}),
        _step("s5", "goal", 4, {"goal": {"type": "course_completion"}}),
    ]
    assert validate_workflow(_workflow(steps)) == []


def test_empty_workflow_is_rejected():
    assert "workflow must have at least one step" in validate_workflow(_workflow([]))


def test_duplicate_order_index_is_rejected():
    steps = [
        _step("s1", "goal", 0, {"goal": {"type": "purchase"}}),
        _step("s2", "goal", 0, {"goal": {"type": "purchase"}}),
    ]
    assert "step orderIndex values must be unique" in validate_workflow(_workflow(steps))


def test_email_without_content_or_template():
    problems = validate_workflow(_workflow([_step("s1", "email", 0, {"email": {}})]))
    assert any("missing template or content" in p for p in problems)
    assert any("missing subject" in p for p in problems)


def test_email_with_template_needs_no_inline_content():
    assert validate_workflow(_workflow([_step("s1", "email", 0, {}, template_id="tpl-1")])) == []


def test_branch_targets_must_belong_to_workflow():
    steps = [
        _step(
            "s1",
            "condition",
            0,
            {"condition": {"field": "x", "operator": "equals", "value": 1, "falseStepId": "elsewhere"}},
        ),
        _step(
            "s2",
            "split_test",
            1,
            {"splitTest": {"variants": [{"name": "A", "percentage": 60, "stepId": "s1"},
                                        {"name": "B", "percentage": 50, "stepId": "nope"}]}},
        ),
    ]
    problems = validate_workflow(_workflow(steps))
    assert any("falseStepId 'elsewhere'" in p for p in problems)
    assert any("stepId 'nope'" in p for p in problems)
    assert any("sum to 110" in p for p in problems)


def test_bad_operator_delay_action_and_goal():
    steps = [
        _step("s1", "condition", 0, {"condition": {"field": "x", "operator": "like", "value": 1}}),
        _step("s2", "delay", 1, {"delay": {"amount": 0, "unit": "days"}}),
        _step("s3", "action", 2, {"action": {"type": "update_field", "parameters": {}}}),
        _step("s4", "goal", 3, {"goal": {"type": "signup"}}),
        _step("s5", "mystery", 4),
    ]
    problems = validate_workflow(_workflow(steps))
    assert any("unsupported operator 'like'" in p for p in problems)
    assert any("delay must be positive" in p for p in problems)
    assert any("missing parameter 'field'" in p for p in problems)
    assert any("unsupported goal type 'signup'" in p for p in problems)
    assert any("unknown step type" in p for p in problems)


def test_execution_conditions_are_checked():
    steps = [
        _step(
            "s1",
            "goal",
            0,
            {"goal": {"type": "purchase"}},
            execution_conditions=[{"field": "", "operator": "equals", "value": 1}],
        )
    ]
    assert any("execution condition 0 missing field" in p for p in validate_workflow(_workflow(steps)))


def test_trigger_configuration_is_checked():
    goal = [_step("s1", "goal", 0, {"goal": {"type": "purchase"}})]

    problems = validate_workflow(_workflow(goal, "time_based", {"schedule": {"cron": "every day"}}))
    assert any("invalid cron expression" in p for p in problems)

    assert validate_workflow(_workflow(goal, "time_based", {"schedule": {"cron": "0 9 * * 1"}})) == []

    problems = validate_workflow(_workflow(goal, "custom_event", {}))
    assert "custom_event trigger requires customEventName" in problems


def _delay_workflow(settings, trigger_type="user_registration", trigger_config=None):
    steps = [_step("s1", "delay", 0, {"delay": {"amount": 1, "unit": "days", "respectBusinessHours": True}})]
    return _workflow(steps, trigger_type=trigger_type, trigger_config=trigger_config, settings=settings)


def test_valid_business_hours_and_timezone_pass():
    settings = {
        "businessHoursOnly": True,
        "businessHours": {"start": "08:30", "end": "18:00", "days": [1, 2, 3, 4, 5]},
        "timezone": "Europe/Berlin",
    }
    assert validate_workflow(_delay_workflow(settings)) == []


def test_malformed_business_hours_are_rejected_at_activation():
    settings = {"businessHoursOnly": True, "businessHours": {"start": "9am", "end": "17:00", "days": ["mon", 7, True]}}

    problems = validate_workflow(_delay_workflow(settings))

    assert "businessHours start '9am' is not HH:MM" in problems
    assert "businessHours day 'mon' must be an integer 0 (Sunday) to 6" in problems
    assert "businessHours day 7 must be an integer 0 (Sunday) to 6" in problems
    assert "businessHours day True must be an integer 0 (Sunday) to 6" in problems


def test_business_hours_window_must_not_be_empty():
    problems = validate_workflow(_delay_workflow({"businessHours": {"start": "17:00", "end": "09:00"}}))
    assert problems == ["businessHours end must be after start"]


def test_unknown_timezones_are_rejected():
    problems = validate_workflow(
        _delay_workflow(
            {"timezone": "Mars/Olympus_Mons"},
            trigger_type="time_based",
            trigger_config={"schedule": {"cron": "0 9 * * 1", "timezone": "Nowhere/City"}},
        )
    )

    assert "settings timezone 'Mars/Olympus_Mons' is not a known time zone" in problems
    assert "schedule timezone 'Nowhere/City' is not a known time zone" in problems
