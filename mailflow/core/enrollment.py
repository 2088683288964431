import json
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailflow.core.clock import to_iso, utcnow
from mailflow.core.errors import NoEntryStep, WorkflowNotActive, WorkflowNotFound
from mailflow.core.models import WorkflowStatus
from mailflow.db import repository

logger = logging.getLogger(__name__)

# trigger_config keys that must match the trigger payload for a workflow to fire.
TRIGGER_MATCH_KEYS = ("list_id", "tag_id", "campaign_id", "event_type")


def enroll(db: Session, workflow_id: str, contact_id: str, now=None) -> str:
    """Start a workflow for a contact and return the execution id.

    Re-enrolling a contact that already has a running execution of the same
    workflow returns that execution's id.
    """
    workflow = repository.get_workflow(db, workflow_id)
    if not workflow:
        raise WorkflowNotFound(workflow_id)
    if workflow.status != WorkflowStatus.ACTIVE:
        raise WorkflowNotActive(workflow_id, workflow.status)

    existing = repository.get_running_execution(db, workflow_id, contact_id)
    if existing:
        logger.info(
            "Contact %s already in workflow %s (execution %s)",
            contact_id,
            workflow_id,
            existing.id,
        )
        return existing.id

    entry_edges = repository.get_entry_edges(db, workflow_id)
    if not entry_edges:
        raise NoEntryStep(workflow_id)

    stamp = to_iso(now or utcnow())
    try:
        execution = repository.create_execution(
            db, workflow_id, contact_id, entry_edges[0].target_step_id, stamp
        )
        for edge in entry_edges:
            repository.add_execution_step(db, execution.id, edge.target_step_id, stamp)
        db.commit()
    except IntegrityError:
        # Lost a race against a concurrent enrollment of the same contact.
        db.rollback()
        winner = repository.get_running_execution(db, workflow_id, contact_id)
        if winner is None:
            raise
        return winner.id

    logger.info(
        "Workflow %s started for contact %s, execution %s",
        workflow_id,
        contact_id,
        execution.id,
    )
    return execution.id


def trigger_matches(trigger_config: dict, payload: dict) -> bool:
    for key in TRIGGER_MATCH_KEYS:
        expected = trigger_config.get(key)
        if expected and payload.get(key) != expected:
            return False
    return True


def enroll_for_trigger(
    db: Session,
    tenant_id: str,
    trigger_type: str,
    contact_id: str,
    payload: dict | None = None,
    now=None,
) -> list[str]:
    """Enroll a contact into every active workflow listening for this trigger."""
    payload = payload or {}
    execution_ids = []
    for workflow in repository.find_active_workflows(db, tenant_id, trigger_type):
        config = json.loads(workflow.trigger_config or "{}")
        if not trigger_matches(config, payload):
            continue
        try:
            execution_ids.append(enroll(db, workflow.id, contact_id, now=now))
        except NoEntryStep:
            logger.warning(
                "Workflow %s matched trigger %s but has no entry step",
                workflow.id,
                trigger_type,
            )
    return execution_ids
