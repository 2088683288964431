import logging

from sqlalchemy.orm import Session

from mailflow.core.clock import to_iso, utcnow
from mailflow.core.errors import (
    ExecutionNotFound,
    ExecutionNotRunning,
    InvalidTransition,
    InvalidWorkflow,
    StepNotRetryable,
    WorkflowNotFound,
)
from mailflow.core.graph import definition_from_rows, validate_workflow
from mailflow.core.models import ExecutionState, StepState, WorkflowStatus
from mailflow.db import repository

logger = logging.getLogger(__name__)

# target status -> statuses it may be reached from
_WORKFLOW_TRANSITIONS = {
    WorkflowStatus.ACTIVE: (WorkflowStatus.DRAFT, WorkflowStatus.PAUSED),
    WorkflowStatus.PAUSED: (WorkflowStatus.ACTIVE,),
    WorkflowStatus.ARCHIVED: (
        WorkflowStatus.DRAFT,
        WorkflowStatus.ACTIVE,
        WorkflowStatus.PAUSED,
    ),
}


def set_workflow_status(db: Session, workflow_id: str, target: WorkflowStatus, now=None):
    """Move a workflow through draft/active/paused/archived.

    Activation re-validates the stored graph. Pausing only blocks new
    enrollments; executions already running keep advancing.
    """
    workflow = repository.get_workflow(db, workflow_id)
    if not workflow:
        raise WorkflowNotFound(workflow_id)

    if workflow.status not in _WORKFLOW_TRANSITIONS[target]:
        raise InvalidTransition(
            f"Cannot move workflow '{workflow_id}' from {workflow.status} to {target.value}"
        )

    if target == WorkflowStatus.ACTIVE:
        definition = definition_from_rows(
            repository.get_steps(db, workflow_id), repository.get_edges(db, workflow_id)
        )
        errors = validate_workflow(definition)
        if errors:
            raise InvalidWorkflow(errors)

    repository.update_workflow_status(db, workflow, target, to_iso(now or utcnow()))
    logger.info("Workflow %s is now %s", workflow_id, target.value)
    return workflow


def cancel_execution(
    db: Session, execution_id: str, reason: str = "Cancelled manually", now=None
):
    """Stop a running execution; its pending and waiting rows become skipped.

    A row already in progress is left to finish.
    """
    execution = repository.get_execution(db, execution_id)
    if not execution:
        raise ExecutionNotFound(execution_id)

    if execution.status != ExecutionState.RUNNING:
        raise ExecutionNotRunning(execution_id, execution.status)

    repository.update_execution(
        db,
        execution_id,
        status=ExecutionState.FAILED,
        error=reason,
        completed_at=to_iso(now or utcnow()),
    )
    skipped = repository.skip_open_steps(db, execution_id)
    db.commit()
    logger.info("Execution %s cancelled (%d step(s) skipped)", execution_id, skipped)
    return execution


def retry_step(db: Session, execution_step_id: str, now=None):
    """Queue a failed step again by appending a new pending row for it."""
    row = repository.get_execution_step(db, execution_step_id)
    if not row:
        raise StepNotRetryable(f"Execution step '{execution_step_id}' not found")
    if row.status != StepState.FAILED:
        raise StepNotRetryable(
            f"Execution step '{execution_step_id}' is {row.status}, not failed"
        )

    execution = repository.get_execution(db, row.execution_id)
    if execution.status != ExecutionState.RUNNING:
        raise ExecutionNotRunning(execution.id, execution.status)

    if repository.has_retry(db, row.id):
        raise StepNotRetryable(f"Execution step '{execution_step_id}' was already retried")

    stamp = to_iso(now or utcnow())
    retry = repository.add_execution_step(
        db, execution.id, row.step_id, stamp, retry_of=row.id
    )
    repository.update_execution(db, execution.id, current_step_id=row.step_id, error=None)
    db.commit()
    logger.info(
        "Execution %s: retrying step %s as %s", execution.id, row.step_id, retry.id
    )
    return retry
