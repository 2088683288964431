from pydantic import BaseModel, Field

from mailflow.core.models import Handle, TriggerType


# --- Request models ---

class StepDefinition(BaseModel):
    id: str
    step_type: str
    config: dict = Field(default_factory=dict)


class EdgeDefinition(BaseModel):
    source_step_id: str
    target_step_id: str
    source_handle: Handle = Handle.DEFAULT


class WorkflowCreate(BaseModel):
    tenant_id: str
    name: str
    description: str | None = None
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: dict = Field(default_factory=dict)
    steps: list[StepDefinition]
    edges: list[EdgeDefinition] = Field(default_factory=list)


class EnrollRequest(BaseModel):
    contact_id: str


class TriggerRequest(BaseModel):
    tenant_id: str
    contact_id: str
    payload: dict = Field(default_factory=dict)


# --- Response models ---

class StepResponse(BaseModel):
    id: str
    key: str | None = None
    step_type: str
    config: dict


class EdgeResponse(BaseModel):
    id: str
    source_step_id: str
    target_step_id: str
    source_handle: str


class WorkflowResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str | None = None
    status: str
    trigger_type: str
    trigger_config: dict
    steps: list[StepResponse] = Field(default_factory=list)
    edges: list[EdgeResponse] = Field(default_factory=list)
    created_at: str
    updated_at: str


class EnrollResponse(BaseModel):
    execution_id: str


class TriggerResponse(BaseModel):
    execution_ids: list[str]


class AdvanceResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int


class ExecutionResponse(BaseModel):
    id: str
    workflow_id: str
    contact_id: str
    status: str
    current_step_id: str | None = None
    started_at: str
    completed_at: str | None = None
    error: str | None = None


class ExecutionStepResponse(BaseModel):
    id: str
    execution_id: str
    step_id: str
    status: str
    scheduled_at: str | None = None
    claimed_at: str | None = None
    executed_at: str | None = None
    result: dict | None = None
    retry_of: str | None = None
    created_at: str
