import logging

from sqlalchemy.orm import Session

from mailflow.core.models import ExecutionState, Handle, StepType
from mailflow.core.steps import LoadedStep
from mailflow.db import repository

logger = logging.getLogger(__name__)


def select_handle(step: LoadedStep, result: dict | None) -> str:
    if step.kind == StepType.CONDITION:
        result = result or {}
        branch = result.get("branch")
        if branch is None:
            branch = Handle.YES if result.get("condition_met") else Handle.NO
        return str(getattr(branch, "value", branch))
    return Handle.DEFAULT.value


def advance_from(
    db: Session,
    execution,
    step: LoadedStep,
    result: dict | None,
    completed_row_id: str,
    now: str,
) -> list:
    """Create the successor rows of a completed step, or finish the execution.

    Does not commit; the caller commits together with the completed row.
    The execution row stays locked until then, so sibling branches finishing
    at the same time run their completion check one after the other.
    """
    execution = repository.lock_execution(db, execution.id)
    if execution.status != ExecutionState.RUNNING:
        logger.info(
            "Execution %s is %s; not advancing past step %s",
            execution.id,
            execution.status,
            step.id,
        )
        return []

    handle = select_handle(step, result)
    edges = [
        e
        for e in repository.get_outgoing_edges(db, execution.workflow_id, step.id)
        if (e.source_handle or Handle.DEFAULT) == handle
    ]

    if not edges:
        # Another branch still running, or a failed branch awaiting an
        # operator, keeps the execution open.
        still_open = repository.count_open_steps(
            db, execution.id, exclude_id=completed_row_id
        )
        if still_open:
            logger.info(
                "Execution %s: branch ended at step %s, %d other row(s) still open",
                execution.id,
                step.id,
                still_open,
            )
            return []
        repository.update_execution(
            db, execution.id, status=ExecutionState.COMPLETED, completed_at=now
        )
        logger.info("Execution %s completed at step %s", execution.id, step.id)
        return []

    created = [
        repository.add_execution_step(db, execution.id, e.target_step_id, now)
        for e in edges
    ]
    repository.update_execution(db, execution.id, current_step_id=edges[0].target_step_id)
    logger.info(
        "Execution %s: step %s (%s) -> %s",
        execution.id,
        step.id,
        handle,
        ", ".join(e.target_step_id for e in edges),
    )
    return created
