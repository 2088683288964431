from sqlalchemy import Column, String, Text, ForeignKey, Index, UniqueConstraint, text
from mailflow.db.database import Base


# ── Workflow definitions ────────────────────────────────────────────────────


class Workflow(Base):
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="draft")
    trigger_type = Column(String, nullable=False, default="manual")
    trigger_config = Column(Text, nullable=False, default="{}")
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Step(Base):
    __tablename__ = "workflow_steps"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    # Node id from the editor payload that defined this step.
    key = Column(String, nullable=True)
    step_type = Column(String, nullable=False)
    config = Column(Text, nullable=False, default="{}")
    created_at = Column(String, nullable=False)


class Edge(Base):
    __tablename__ = "workflow_edges"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    # Either a step id or the "trigger" sentinel, so no foreign key here.
    source_step_id = Column(String, nullable=False)
    target_step_id = Column(String, ForeignKey("workflow_steps.id"), nullable=False)
    source_handle = Column(String, nullable=True, default="default")


# ── Execution state ─────────────────────────────────────────────────────────


class Execution(Base):
    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index(
            "uq_running_execution",
            "workflow_id",
            "contact_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    contact_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="running")
    current_step_id = Column(String, nullable=True)
    started_at = Column(String, nullable=False)
    completed_at = Column(String, nullable=True)
    error = Column(Text, nullable=True)


class ExecutionStep(Base):
    __tablename__ = "workflow_execution_steps"
    __table_args__ = (Index("ix_execution_steps_status", "status", "scheduled_at"),)

    id = Column(String, primary_key=True)
    execution_id = Column(
        String, ForeignKey("workflow_executions.id"), nullable=False, index=True
    )
    step_id = Column(String, ForeignKey("workflow_steps.id"), nullable=False)
    status = Column(String, nullable=False, default="pending")
    scheduled_at = Column(String, nullable=True)
    claimed_at = Column(String, nullable=True)
    executed_at = Column(String, nullable=True)
    result = Column(Text, nullable=True)
    # Set on a row appended by an operator retry of a failed row.
    retry_of = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


# ── Collaborator stores ─────────────────────────────────────────────────────


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=True)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)


class ContactTag(Base):
    __tablename__ = "contact_tags"
    __table_args__ = (UniqueConstraint("contact_id", "tag_id"),)

    id = Column(String, primary_key=True)
    contact_id = Column(String, ForeignKey("contacts.id"), nullable=False)
    tag_id = Column(String, ForeignKey("tags.id"), nullable=False)


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    html_content = Column(Text, nullable=True)


class Sender(Base):
    __tablename__ = "senders"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    from_email = Column(String, nullable=False)
    from_name = Column(String, nullable=False)


class Event(Base):
    __tablename__ = "events"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    contact_id = Column(String, ForeignKey("contacts.id"), nullable=True, index=True)
    event_type = Column(String, nullable=False)
    timestamp = Column(String, nullable=False)
