import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from mailflow.api.auth import verify_api_key
from mailflow.api.schemas import (
    AdvanceResponse,
    EdgeResponse,
    EnrollRequest,
    EnrollResponse,
    ExecutionResponse,
    ExecutionStepResponse,
    StepResponse,
    TriggerRequest,
    TriggerResponse,
    WorkflowCreate,
    WorkflowResponse,
)
from mailflow.core.advancer import Advancer
from mailflow.core.clock import to_iso, utcnow
from mailflow.core.enrollment import enroll, enroll_for_trigger
from mailflow.core.errors import (
    ExecutionNotFound,
    ExecutionNotRunning,
    InvalidTransition,
    InvalidWorkflow,
    NoEntryStep,
    StepNotRetryable,
    WorkflowNotActive,
    WorkflowNotFound,
)
from mailflow.core.graph import validate_workflow
from mailflow.core.lifecycle import cancel_execution, retry_step, set_workflow_status
from mailflow.core.models import TriggerType, WorkflowStatus
from mailflow.db import repository
from mailflow.db.database import get_db

router = APIRouter()


def get_advancer(request: Request) -> Advancer:
    return request.app.state.advancer


def _workflow_response(db: Session, wf) -> WorkflowResponse:
    return WorkflowResponse(
        id=wf.id,
        tenant_id=wf.tenant_id,
        name=wf.name,
        description=wf.description,
        status=wf.status,
        trigger_type=wf.trigger_type,
        trigger_config=json.loads(wf.trigger_config or "{}"),
        steps=[
            StepResponse(
                id=s.id,
                key=s.key,
                step_type=s.step_type,
                config=json.loads(s.config or "{}"),
            )
            for s in repository.get_steps(db, wf.id)
        ],
        edges=[
            EdgeResponse(
                id=e.id,
                source_step_id=e.source_step_id,
                target_step_id=e.target_step_id,
                source_handle=e.source_handle or "default",
            )
            for e in repository.get_edges(db, wf.id)
        ],
        created_at=wf.created_at,
        updated_at=wf.updated_at,
    )


def _execution_response(ex) -> ExecutionResponse:
    return ExecutionResponse(
        id=ex.id,
        workflow_id=ex.workflow_id,
        contact_id=ex.contact_id,
        status=ex.status,
        current_step_id=ex.current_step_id,
        started_at=ex.started_at,
        completed_at=ex.completed_at,
        error=ex.error,
    )


def _execution_step_response(row) -> ExecutionStepResponse:
    return ExecutionStepResponse(
        id=row.id,
        execution_id=row.execution_id,
        step_id=row.step_id,
        status=row.status,
        scheduled_at=row.scheduled_at,
        claimed_at=row.claimed_at,
        executed_at=row.executed_at,
        result=json.loads(row.result) if row.result else None,
        retry_of=row.retry_of,
        created_at=row.created_at,
    )


def _get_workflow_or_404(db: Session, workflow_id: str):
    wf = repository.get_workflow(db, workflow_id)
    if not wf:
        raise HTTPException(
            status_code=404, detail=f"Workflow '{workflow_id}' not found"
        )
    return wf


def _get_execution_or_404(db: Session, execution_id: str):
    ex = repository.get_execution(db, execution_id)
    if not ex:
        raise HTTPException(
            status_code=404, detail=f"Execution '{execution_id}' not found"
        )
    return ex


# ── Workflow definitions ────────────────────────────────────────────────────


@router.post(
    "/workflows",
    response_model=WorkflowResponse,
    dependencies=[Depends(verify_api_key)],
)
def create_workflow(workflow: WorkflowCreate, db: Session = Depends(get_db)):
    definition = workflow.model_dump(mode="json")
    errors = validate_workflow(definition)
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})

    wf = repository.create_workflow(
        db,
        tenant_id=workflow.tenant_id,
        name=workflow.name,
        description=workflow.description,
        trigger_type=workflow.trigger_type.value,
        trigger_config=workflow.trigger_config,
        steps=definition["steps"],
        edges=definition["edges"],
        now=to_iso(utcnow()),
    )
    return _workflow_response(db, wf)


@router.get(
    "/workflows",
    response_model=list[WorkflowResponse],
    dependencies=[Depends(verify_api_key)],
)
def list_workflows(tenant_id: str | None = None, db: Session = Depends(get_db)):
    return [_workflow_response(db, w) for w in repository.list_workflows(db, tenant_id)]


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowResponse,
    dependencies=[Depends(verify_api_key)],
)
def get_workflow(workflow_id: str, db: Session = Depends(get_db)):
    return _workflow_response(db, _get_workflow_or_404(db, workflow_id))


def _change_status(db: Session, workflow_id: str, target: WorkflowStatus):
    try:
        wf = set_workflow_status(db, workflow_id, target)
    except WorkflowNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidWorkflow as e:
        raise HTTPException(status_code=400, detail={"errors": e.errors})
    return _workflow_response(db, wf)


@router.post(
    "/workflows/{workflow_id}/activate",
    response_model=WorkflowResponse,
    dependencies=[Depends(verify_api_key)],
)
def activate_workflow(workflow_id: str, db: Session = Depends(get_db)):
    return _change_status(db, workflow_id, WorkflowStatus.ACTIVE)


@router.post(
    "/workflows/{workflow_id}/pause",
    response_model=WorkflowResponse,
    dependencies=[Depends(verify_api_key)],
)
def pause_workflow(workflow_id: str, db: Session = Depends(get_db)):
    return _change_status(db, workflow_id, WorkflowStatus.PAUSED)


@router.post(
    "/workflows/{workflow_id}/archive",
    response_model=WorkflowResponse,
    dependencies=[Depends(verify_api_key)],
)
def archive_workflow(workflow_id: str, db: Session = Depends(get_db)):
    return _change_status(db, workflow_id, WorkflowStatus.ARCHIVED)


# ── Enrollment ──────────────────────────────────────────────────────────────


@router.post(
    "/workflows/{workflow_id}/enroll",
    response_model=EnrollResponse,
    dependencies=[Depends(verify_api_key)],
)
def enroll_contact(
    workflow_id: str, request: EnrollRequest, db: Session = Depends(get_db)
):
    try:
        execution_id = enroll(db, workflow_id, request.contact_id)
    except WorkflowNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (WorkflowNotActive, NoEntryStep) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return EnrollResponse(execution_id=execution_id)


@router.post(
    "/triggers/{trigger_type}",
    response_model=TriggerResponse,
    dependencies=[Depends(verify_api_key)],
)
def fire_trigger(
    trigger_type: TriggerType, request: TriggerRequest, db: Session = Depends(get_db)
):
    execution_ids = enroll_for_trigger(
        db, request.tenant_id, trigger_type.value, request.contact_id, request.payload
    )
    return TriggerResponse(execution_ids=execution_ids)


# ── Poller ──────────────────────────────────────────────────────────────────


@router.post(
    "/advance",
    response_model=AdvanceResponse,
    dependencies=[Depends(verify_api_key)],
)
def advance(
    limit: int = Query(100, ge=1, le=1000),
    advancer: Advancer = Depends(get_advancer),
):
    return AdvanceResponse(**advancer.advance(limit).as_dict())


# ── Executions ──────────────────────────────────────────────────────────────


@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=list[ExecutionResponse],
    dependencies=[Depends(verify_api_key)],
)
def list_executions(
    workflow_id: str, status: str | None = None, db: Session = Depends(get_db)
):
    _get_workflow_or_404(db, workflow_id)
    return [
        _execution_response(ex)
        for ex in repository.list_executions(db, workflow_id, status)
    ]


@router.get(
    "/executions/stalled",
    response_model=list[ExecutionResponse],
    dependencies=[Depends(verify_api_key)],
)
def list_stalled_executions(
    workflow_id: str | None = None, db: Session = Depends(get_db)
):
    return [
        _execution_response(ex)
        for ex in repository.list_stalled_executions(db, workflow_id)
    ]


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionResponse,
    dependencies=[Depends(verify_api_key)],
)
def get_execution(execution_id: str, db: Session = Depends(get_db)):
    return _execution_response(_get_execution_or_404(db, execution_id))


@router.get(
    "/executions/{execution_id}/steps",
    response_model=list[ExecutionStepResponse],
    dependencies=[Depends(verify_api_key)],
)
def get_execution_steps(execution_id: str, db: Session = Depends(get_db)):
    _get_execution_or_404(db, execution_id)
    return [
        _execution_step_response(row)
        for row in repository.get_execution_steps(db, execution_id)
    ]


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=ExecutionResponse,
    dependencies=[Depends(verify_api_key)],
)
def cancel(execution_id: str, db: Session = Depends(get_db)):
    try:
        ex = cancel_execution(db, execution_id)
    except ExecutionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExecutionNotRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _execution_response(ex)


@router.post(
    "/execution-steps/{execution_step_id}/retry",
    response_model=ExecutionStepResponse,
    dependencies=[Depends(verify_api_key)],
)
def retry(execution_step_id: str, db: Session = Depends(get_db)):
    if not repository.get_execution_step(db, execution_step_id):
        raise HTTPException(
            status_code=404, detail=f"Execution step '{execution_step_id}' not found"
        )
    try:
        row = retry_step(db, execution_step_id)
    except (StepNotRetryable, ExecutionNotRunning) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _execution_step_response(row)


# ── Health (no auth) ────────────────────────────────────────────────────────


@router.get("/health")
def health():
    return {"status": "ok"}
