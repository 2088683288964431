import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

# The app module builds its engine and poller at import time.
os.environ.setdefault("MAILFLOW_POLLER_ENABLED", "false")
os.environ.setdefault(
    "MAILFLOW_DB_PATH", os.path.join(tempfile.gettempdir(), "mailflow-test.db")
)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mailflow.config import Settings
from mailflow.core.advancer import Advancer
from mailflow.core.clock import to_iso
from mailflow.core.errors import DeliveryError
from mailflow.core.lifecycle import set_workflow_status
from mailflow.core.models import WorkflowStatus
from mailflow.db import repository
from mailflow.db.database import get_db, init_db
from mailflow.db.tables import Contact, ContactTag, EmailTemplate, Event, Sender, Tag
from mailflow.delivery.base import EmailDelivery
from mailflow.api.routes import get_advancer
from mailflow.main import app

TENANT = "tenant-1"
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeDelivery(EmailDelivery):
    """Records outgoing mail instead of calling a provider."""

    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, to, from_email, from_name, subject, html, to_name=None, custom_args=None):
        if self.error:
            raise DeliveryError(self.error)
        self.sent.append(
            {
                "to": to,
                "from_email": from_email,
                "from_name": from_name,
                "subject": subject,
                "html": html,
                "custom_args": custom_args,
            }
        )
        return f"msg-{len(self.sent)}"


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture()
def engine(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def delivery():
    return FakeDelivery()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def settings():
    return Settings(claim_timeout=600.0)


@pytest.fixture()
def advancer(session_factory, delivery, settings, clock):
    return Advancer(session_factory, delivery, settings, clock=clock)


@pytest.fixture()
def client(session_factory, advancer):
    """Provide a TestClient bound to the per-test database and advancer."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_advancer] = lambda: advancer
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# --- Seed helpers ---

def _id() -> str:
    return str(uuid.uuid4())


def add_contact(db, email="ana@example.com", name="Ana", tenant_id=TENANT):
    contact = Contact(id=_id(), tenant_id=tenant_id, email=email, name=name)
    db.add(contact)
    db.commit()
    return contact.id


def add_tag(db, name="done", tenant_id=TENANT):
    tag = Tag(id=_id(), tenant_id=tenant_id, name=name)
    db.add(tag)
    db.commit()
    return tag.id


def tag_contact(db, contact_id, tag_id):
    db.add(ContactTag(id=_id(), contact_id=contact_id, tag_id=tag_id))
    db.commit()


def add_template(db, html, tenant_id=TENANT):
    template = EmailTemplate(id=_id(), tenant_id=tenant_id, name="tpl", html_content=html)
    db.add(template)
    db.commit()
    return template.id


def add_sender(db, from_email="news@shop.example", from_name="Shop", tenant_id=TENANT):
    sender = Sender(id=_id(), tenant_id=tenant_id, from_email=from_email, from_name=from_name)
    db.add(sender)
    db.commit()
    return sender.id


def add_event(db, contact_id, event_type, tenant_id=TENANT):
    db.add(
        Event(
            id=_id(),
            tenant_id=tenant_id,
            contact_id=contact_id,
            event_type=event_type,
            timestamp=to_iso(START),
        )
    )
    db.commit()


def make_workflow(
    db,
    steps,
    edges,
    activate=True,
    trigger_type="manual",
    trigger_config=None,
    tenant_id=TENANT,
):
    """Create a workflow; returns (workflow_id, {step key: stored step id})."""
    wf = repository.create_workflow(
        db,
        tenant_id=tenant_id,
        name="Test workflow",
        steps=steps,
        edges=edges,
        now=to_iso(START),
        trigger_type=trigger_type,
        trigger_config=trigger_config,
    )
    if activate:
        set_workflow_status(db, wf.id, WorkflowStatus.ACTIVE, now=START)
    ids = {s.key: s.id for s in repository.get_steps(db, wf.id)}
    return wf.id, ids


def edge(source, target, handle="default"):
    return {"source_step_id": source, "target_step_id": target, "source_handle": handle}
