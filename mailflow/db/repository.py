import json
import uuid

from sqlalchemy import and_, exists, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, aliased

from mailflow.core.models import (
    LIVE_STEP_STATES,
    TRIGGER_SOURCE,
    ExecutionState,
    Handle,
    StepState,
    WorkflowStatus,
)
from mailflow.db.tables import (
    Contact,
    ContactTag,
    Edge,
    EmailTemplate,
    Event,
    Execution,
    ExecutionStep,
    Sender,
    Step,
    Tag,
    Workflow,
)


def _new_id() -> str:
    return str(uuid.uuid4())


# Dialects whose insert supports ON CONFLICT DO NOTHING.
_INSERTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


# ── Workflow definitions ────────────────────────────────────────────────────


def create_workflow(
    db: Session,
    tenant_id: str,
    name: str,
    steps: list[dict],
    edges: list[dict],
    now: str,
    trigger_type: str = "manual",
    trigger_config: dict | None = None,
    description: str | None = None,
) -> Workflow:
    """Store a draft workflow with its steps and edges.

    Step ids in ``steps``/``edges`` are local to the request; they are mapped
    to fresh ids so the same editor ids can be reused across workflows.
    """
    workflow = Workflow(
        id=_new_id(),
        tenant_id=tenant_id,
        name=name,
        description=description,
        status=WorkflowStatus.DRAFT,
        trigger_type=trigger_type,
        trigger_config=json.dumps(trigger_config or {}),
        created_at=now,
        updated_at=now,
    )
    db.add(workflow)

    id_map = {TRIGGER_SOURCE: TRIGGER_SOURCE}
    for step in steps:
        step_id = _new_id()
        id_map[step["id"]] = step_id
        db.add(
            Step(
                id=step_id,
                workflow_id=workflow.id,
                key=step["id"],
                step_type=step["step_type"],
                config=json.dumps(step.get("config") or {}),
                created_at=now,
            )
        )

    for edge in edges:
        db.add(
            Edge(
                id=_new_id(),
                workflow_id=workflow.id,
                source_step_id=id_map.get(edge["source_step_id"], edge["source_step_id"]),
                target_step_id=id_map.get(edge["target_step_id"], edge["target_step_id"]),
                source_handle=edge.get("source_handle") or Handle.DEFAULT,
            )
        )

    db.commit()
    db.refresh(workflow)
    return workflow


def get_workflow(db: Session, workflow_id: str) -> Workflow | None:
    return db.query(Workflow).filter(Workflow.id == workflow_id).first()


def list_workflows(db: Session, tenant_id: str | None = None) -> list[Workflow]:
    query = db.query(Workflow)
    if tenant_id is not None:
        query = query.filter(Workflow.tenant_id == tenant_id)
    return query.order_by(Workflow.created_at).all()


def find_active_workflows(
    db: Session, tenant_id: str, trigger_type: str
) -> list[Workflow]:
    return (
        db.query(Workflow)
        .filter(
            Workflow.tenant_id == tenant_id,
            Workflow.trigger_type == trigger_type,
            Workflow.status == WorkflowStatus.ACTIVE,
        )
        .order_by(Workflow.created_at)
        .all()
    )


def update_workflow_status(db: Session, workflow: Workflow, status: str, now: str):
    workflow.status = status
    workflow.updated_at = now
    db.commit()


def get_steps(db: Session, workflow_id: str) -> list[Step]:
    return (
        db.query(Step)
        .filter(Step.workflow_id == workflow_id)
        .order_by(Step.created_at, Step.id)
        .all()
    )


def get_step(db: Session, step_id: str) -> Step | None:
    return db.query(Step).filter(Step.id == step_id).first()


def get_edges(db: Session, workflow_id: str) -> list[Edge]:
    return db.query(Edge).filter(Edge.workflow_id == workflow_id).all()


def get_outgoing_edges(db: Session, workflow_id: str, source_step_id: str) -> list[Edge]:
    return (
        db.query(Edge)
        .filter(
            Edge.workflow_id == workflow_id,
            Edge.source_step_id == source_step_id,
        )
        .order_by(Edge.id)
        .all()
    )


def get_entry_edges(db: Session, workflow_id: str) -> list[Edge]:
    return get_outgoing_edges(db, workflow_id, TRIGGER_SOURCE)


# ── Execution state ─────────────────────────────────────────────────────────
#
# Apart from claim_step, the helpers below only flush; the caller commits so
# that a status change and the rows it implies land in one transaction.


def get_running_execution(
    db: Session, workflow_id: str, contact_id: str
) -> Execution | None:
    return (
        db.query(Execution)
        .filter(
            Execution.workflow_id == workflow_id,
            Execution.contact_id == contact_id,
            Execution.status == ExecutionState.RUNNING,
        )
        .first()
    )


def create_execution(
    db: Session, workflow_id: str, contact_id: str, first_step_id: str, now: str
) -> Execution:
    execution = Execution(
        id=_new_id(),
        workflow_id=workflow_id,
        contact_id=contact_id,
        status=ExecutionState.RUNNING,
        current_step_id=first_step_id,
        started_at=now,
    )
    db.add(execution)
    db.flush()
    return execution


def get_execution(db: Session, execution_id: str) -> Execution | None:
    return db.query(Execution).filter(Execution.id == execution_id).first()


def lock_execution(db: Session, execution_id: str) -> Execution:
    """Reload an execution with a row lock held until the caller commits.

    SQLite ignores FOR UPDATE; it serializes writers already.
    """
    return (
        db.query(Execution)
        .filter(Execution.id == execution_id)
        .with_for_update()
        .populate_existing()
        .one()
    )


def list_executions(
    db: Session, workflow_id: str, status: str | None = None
) -> list[Execution]:
    query = db.query(Execution).filter(Execution.workflow_id == workflow_id)
    if status is not None:
        query = query.filter(Execution.status == status)
    return query.order_by(Execution.started_at.desc()).all()


def update_execution(db: Session, execution_id: str, **values) -> int:
    count = (
        db.query(Execution)
        .filter(Execution.id == execution_id)
        .update(values, synchronize_session="fetch")
    )
    db.flush()
    return count


def add_execution_step(
    db: Session,
    execution_id: str,
    step_id: str,
    now: str,
    status: str = StepState.PENDING,
    retry_of: str | None = None,
) -> ExecutionStep:
    row = ExecutionStep(
        id=_new_id(),
        execution_id=execution_id,
        step_id=step_id,
        status=status,
        retry_of=retry_of,
        created_at=now,
    )
    db.add(row)
    db.flush()
    return row


def get_execution_step(db: Session, execution_step_id: str) -> ExecutionStep | None:
    return (
        db.query(ExecutionStep).filter(ExecutionStep.id == execution_step_id).first()
    )


def get_execution_steps(db: Session, execution_id: str) -> list[ExecutionStep]:
    return (
        db.query(ExecutionStep)
        .filter(ExecutionStep.execution_id == execution_id)
        .order_by(ExecutionStep.created_at, ExecutionStep.id)
        .all()
    )


def _unretried_failure(step=ExecutionStep):
    retry = aliased(ExecutionStep)
    return and_(
        step.status == StepState.FAILED,
        ~exists().where(retry.retry_of == step.id),
    )


def count_open_steps(db: Session, execution_id: str, exclude_id: str | None = None) -> int:
    """Rows that keep an execution from completing: live ones and failures not yet retried."""
    query = db.query(ExecutionStep).filter(
        ExecutionStep.execution_id == execution_id,
        or_(ExecutionStep.status.in_(LIVE_STEP_STATES), _unretried_failure()),
    )
    if exclude_id is not None:
        query = query.filter(ExecutionStep.id != exclude_id)
    return query.count()


def has_retry(db: Session, execution_step_id: str) -> bool:
    return (
        db.query(ExecutionStep).filter(ExecutionStep.retry_of == execution_step_id).count()
        > 0
    )


def find_due_steps(db: Session, now: str, limit: int) -> list[ExecutionStep]:
    """Pending rows, plus waiting rows whose delay has elapsed, of running executions."""
    return (
        db.query(ExecutionStep)
        .join(Execution, Execution.id == ExecutionStep.execution_id)
        .filter(
            Execution.status == ExecutionState.RUNNING,
            or_(
                ExecutionStep.status == StepState.PENDING,
                and_(
                    ExecutionStep.status == StepState.WAITING,
                    ExecutionStep.scheduled_at.is_not(None),
                    ExecutionStep.scheduled_at <= now,
                ),
            ),
        )
        .order_by(ExecutionStep.created_at, ExecutionStep.id)
        .limit(limit)
        .all()
    )


def transition_step(
    db: Session, execution_step_id: str, from_status: str, **values
) -> bool:
    """Conditionally update a row; False when it is no longer in ``from_status``."""
    count = (
        db.query(ExecutionStep)
        .filter(
            ExecutionStep.id == execution_step_id,
            ExecutionStep.status == from_status,
        )
        .update(values, synchronize_session="fetch")
    )
    db.flush()
    return count == 1


def claim_step(db: Session, execution_step_id: str, from_status: str, now: str) -> bool:
    """Atomically mark a row in progress. Commits so other pollers see the claim."""
    claimed = transition_step(
        db,
        execution_step_id,
        from_status,
        status=StepState.IN_PROGRESS,
        claimed_at=now,
    )
    db.commit()
    return claimed


def find_stale_claims(db: Session, cutoff: str) -> list[ExecutionStep]:
    return (
        db.query(ExecutionStep)
        .filter(
            ExecutionStep.status == StepState.IN_PROGRESS,
            ExecutionStep.claimed_at < cutoff,
        )
        .all()
    )


def skip_open_steps(db: Session, execution_id: str) -> int:
    count = (
        db.query(ExecutionStep)
        .filter(
            ExecutionStep.execution_id == execution_id,
            ExecutionStep.status.in_([StepState.PENDING, StepState.WAITING]),
        )
        .update({"status": StepState.SKIPPED}, synchronize_session="fetch")
    )
    db.flush()
    return count


def list_stalled_executions(db: Session, workflow_id: str | None = None) -> list[Execution]:
    """Running executions with an unretried failed row and nothing left to advance."""
    failed = aliased(ExecutionStep)
    live = aliased(ExecutionStep)
    has_failed = exists().where(failed.execution_id == Execution.id, _unretried_failure(failed))
    has_live = exists().where(
        live.execution_id == Execution.id,
        live.status.in_(LIVE_STEP_STATES),
    )
    query = db.query(Execution).filter(
        Execution.status == ExecutionState.RUNNING, has_failed, ~has_live
    )
    if workflow_id is not None:
        query = query.filter(Execution.workflow_id == workflow_id)
    return query.order_by(Execution.started_at).all()


# ── Collaborator stores ─────────────────────────────────────────────────────


def get_contact(db: Session, tenant_id: str, contact_id: str) -> Contact | None:
    return (
        db.query(Contact)
        .filter(Contact.id == contact_id, Contact.tenant_id == tenant_id)
        .first()
    )


def get_template(db: Session, tenant_id: str, template_id: str) -> EmailTemplate | None:
    return (
        db.query(EmailTemplate)
        .filter(EmailTemplate.id == template_id, EmailTemplate.tenant_id == tenant_id)
        .first()
    )


def get_sender(db: Session, tenant_id: str, sender_id: str) -> Sender | None:
    return (
        db.query(Sender)
        .filter(Sender.id == sender_id, Sender.tenant_id == tenant_id)
        .first()
    )


def get_tag(db: Session, tenant_id: str, tag_id: str) -> Tag | None:
    return db.query(Tag).filter(Tag.id == tag_id, Tag.tenant_id == tenant_id).first()


def contact_has_tag(db: Session, contact_id: str, tag_id: str) -> bool:
    return (
        db.query(ContactTag)
        .filter(ContactTag.contact_id == contact_id, ContactTag.tag_id == tag_id)
        .count()
        > 0
    )


def add_contact_tag(db: Session, contact_id: str, tag_id: str) -> bool:
    """Idempotent; returns True when a new membership was created.

    A concurrent insert of the same pair is absorbed by ON CONFLICT DO NOTHING.
    """
    insert = _INSERTS[db.get_bind().dialect.name]
    stmt = (
        insert(ContactTag)
        .values(id=_new_id(), contact_id=contact_id, tag_id=tag_id)
        .on_conflict_do_nothing(index_elements=["contact_id", "tag_id"])
    )
    return db.execute(stmt).rowcount == 1


def remove_contact_tag(db: Session, contact_id: str, tag_id: str) -> bool:
    count = (
        db.query(ContactTag)
        .filter(ContactTag.contact_id == contact_id, ContactTag.tag_id == tag_id)
        .delete(synchronize_session="fetch")
    )
    db.flush()
    return count > 0


def count_events(db: Session, contact_id: str, event_type: str) -> int:
    return (
        db.query(Event)
        .filter(Event.contact_id == contact_id, Event.event_type == event_type)
        .count()
    )
