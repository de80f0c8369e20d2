from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.workflow import TriggerType, WorkflowStatus
from app.models.workflow_step import StepType


class StepCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    step_type: StepType
    order_index: Optional[int] = None
    template_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    execution_conditions: List[Dict[str, Any]] = Field(default_factory=list)


class StepUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    step_type: Optional[StepType] = None
    order_index: Optional[int] = None
    template_id: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    execution_conditions: Optional[List[Dict[str, Any]]] = None


class StepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    name: str
    description: Optional[str] = None
    step_type: str
    order_index: int
    template_id: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    execution_conditions: Optional[List[Dict[str, Any]]] = None
    execution_count: int
    success_count: int
    failure_count: int
    conversion_count: int


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    target_audience: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    steps: List[StepCreate] = Field(default_factory=list)


class WorkflowUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, Any]] = None
    target_audience: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None


class WorkflowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    created_by: str
    status: WorkflowStatus
    trigger_type: TriggerType
    trigger_config: Optional[Dict[str, Any]] = None
    target_audience: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    next_fire_at: Optional[datetime] = None
    graph_version: int
    total_executions: int
    successful_executions: int
    failed_executions: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    steps: List[StepResponse] = Field(default_factory=list)


class WorkflowListResponse(BaseModel):
    workflows: List[WorkflowResponse]
    total: int
    page: int
    limit: int


class StepStatistics(BaseModel):
    step_id: str
    name: str
    step_type: str
    order_index: int
    execution_count: int
    success_count: int
    failure_count: int
    conversion_count: int
    success_rate: Optional[float] = None
    conversion_rate: Optional[float] = None


class WorkflowStatisticsResponse(BaseModel):
    workflow_id: str
    status: WorkflowStatus
    total_executions: int
    successful_executions: int
    failed_executions: int
    in_flight_executions: int
    average_completion_seconds: Optional[float] = None
    steps: List[StepStatistics]
