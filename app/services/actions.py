from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from app.services.collaborators import LearnerDirectory, WebhookClient


class ActionType(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    TRIGGER_WEBHOOK = "trigger_webhook"
    ADD_TO_COURSE = "add_to_course"
    REMOVE_FROM_COURSE = "remove_from_course"


# Parameters each action needs before a workflow may be activated.
REQUIRED_PARAMETERS: Dict[ActionType, List[str]] = {
    ActionType.ADD_TAG: ["tag"],
    ActionType.REMOVE_TAG: ["tag"],
    ActionType.UPDATE_FIELD: ["field"],
    ActionType.TRIGGER_WEBHOOK: ["url"],
    ActionType.ADD_TO_COURSE: ["courseId"],
    ActionType.REMOVE_FROM_COURSE: ["courseId"],
}


@dataclass
class ActionContext:
    execution_id: str
    workflow_id: str
    user_id: str
    variables: Dict[str, Any]
    directory: LearnerDirectory
    webhooks: WebhookClient


# Handlers return variable updates to merge into the execution's bag.
ActionHandler = Callable[[ActionContext, Dict[str, Any]], Optional[Dict[str, Any]]]


def _add_tag(ctx: ActionContext, params: Dict[str, Any]) -> Dict[str, Any]:
    tag = str(params["tag"])
    ctx.directory.add_tag(ctx.user_id, tag)
    tags = [t for t in (ctx.variables.get("user") or {}).get("tags") or [] if t != tag]
    return {"user.tags": tags + [tag]}


def _remove_tag(ctx: ActionContext, params: Dict[str, Any]) -> Dict[str, Any]:
    tag = str(params["tag"])
    ctx.directory.remove_tag(ctx.user_id, tag)
    tags = [t for t in (ctx.variables.get("user") or {}).get("tags") or [] if t != tag]
    return {"user.tags": tags}


def _update_field(ctx: ActionContext, params: Dict[str, Any]) -> Dict[str, Any]:
    field_name = str(params["field"])
    value = params.get("value")
    ctx.directory.update_field(ctx.user_id, field_name, value)
    return {field_name: value}


def _trigger_webhook(ctx: ActionContext, params: Dict[str, Any]) -> None:
    payload = {
        "executionId": ctx.execution_id,
        "workflowId": ctx.workflow_id,
        "userId": ctx.user_id,
        "data": params.get("payload") or {},
        "variables": ctx.variables if params.get("includeVariables") else None,
    }
    ctx.webhooks.post(str(params["url"]), payload, headers=params.get("headers"))


def _add_to_course(ctx: ActionContext, params: Dict[str, Any]) -> None:
    ctx.directory.enroll(ctx.user_id, str(params["courseId"]))


def _remove_from_course(ctx: ActionContext, params: Dict[str, Any]) -> None:
    ctx.directory.unenroll(ctx.user_id, str(params["courseId"]))


HANDLERS: Dict[ActionType, ActionHandler] = {
    ActionType.ADD_TAG: _add_tag,
    ActionType.REMOVE_TAG: _remove_tag,
    ActionType.UPDATE_FIELD: _update_field,
    ActionType.TRIGGER_WEBHOOK: _trigger_webhook,
    ActionType.ADD_TO_COURSE: _add_to_course,
    ActionType.REMOVE_FROM_COURSE: _remove_from_course,
}

assert set(HANDLERS) == set(ActionType), "every ActionType needs a handler"


def run_action(ctx: ActionContext, action_type: ActionType, parameters: Dict[str, Any]) -> Dict[str, Any]:
    return HANDLERS[action_type](ctx, parameters or {}) or {}
