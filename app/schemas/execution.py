from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TriggerRequest(BaseModel):
    user_id: str = Field(min_length=1)
    trigger_data: Dict[str, Any] = Field(default_factory=dict)


class TriggerResponse(BaseModel):
    triggered: bool
    execution_id: Optional[str] = None


class PlatformEventIn(BaseModel):
    type: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class DispatchResponse(BaseModel):
    execution_ids: List[str]


class CancelRequest(BaseModel):
    reason: str = "cancelled"


class ExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    execution_id: str
    workflow_id: str
    user_id: str
    status: str
    current_step_index: int
    graph_version: int
    trigger_data: Dict[str, Any]
    variables: Dict[str, Any]
    started_at: datetime
    waiting_until: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class StepLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    step_id: str
    step_index: int
    step_type: str
    outcome: str
    detail: Optional[str] = None
    created_at: datetime
