"""Step executors.

One executor per step kind, all behind ``StepExecutor.execute(context)``.
Executors never touch ExecutionStep status themselves; they return an
outcome and the advancer persists it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from sqlalchemy.orm import Session

from mailflow.config import Settings
from mailflow.core.clock import from_iso
from mailflow.core.errors import (
    ContactNotFound,
    MailflowError,
    SenderNotFound,
    TagNotFound,
    TemplateNotFound,
)
from mailflow.core.models import Handle, StepType
from mailflow.core.steps import LoadedStep
from mailflow.db import repository
from mailflow.delivery.base import EmailDelivery

logger = logging.getLogger(__name__)


# --- Outcomes ---

@dataclass(frozen=True)
class Completed:
    result: dict = field(default_factory=dict)


@dataclass(frozen=True)
class WaitUntil:
    timestamp: datetime


@dataclass(frozen=True)
class Failed:
    reason: str


Outcome = Union[Completed, WaitUntil, Failed]


@dataclass
class StepContext:
    db: Session
    step: LoadedStep
    execution: object
    execution_step: object
    tenant_id: str
    now: datetime


class StepExecutor(ABC):
    kind: StepType

    @abstractmethod
    def execute(self, ctx: StepContext) -> Outcome:
        raise NotImplementedError

    def run(self, ctx: StepContext) -> Outcome:
        """Execute, turning known engine errors into a ``Failed`` outcome."""
        try:
            return self.execute(ctx)
        except MailflowError as e:
            return Failed(str(e))


def personalize(text: str, name: str | None, email: str) -> str:
    return text.replace("{{name}}", name or "").replace("{{email}}", email)


class SendEmailExecutor(StepExecutor):
    kind = StepType.SEND_EMAIL

    def __init__(self, delivery: EmailDelivery, settings: Settings):
        self.delivery = delivery
        self.settings = settings

    def execute(self, ctx: StepContext) -> Outcome:
        config = ctx.step.config
        contact_id = ctx.execution.contact_id

        contact = repository.get_contact(ctx.db, ctx.tenant_id, contact_id)
        if not contact:
            raise ContactNotFound(contact_id)

        html = f"<p>{config.subject}</p>"
        if config.template_id:
            template = repository.get_template(ctx.db, ctx.tenant_id, config.template_id)
            if not template:
                raise TemplateNotFound(config.template_id)
            if template.html_content:
                html = template.html_content

        from_email = self.settings.default_sender_email
        from_name = self.settings.default_sender_name
        if config.sender_id:
            sender = repository.get_sender(ctx.db, ctx.tenant_id, config.sender_id)
            if not sender:
                raise SenderNotFound(config.sender_id)
            from_email, from_name = sender.from_email, sender.from_name

        message_id = self.delivery.send(
            to=contact.email,
            from_email=from_email,
            from_name=from_name,
            subject=personalize(config.subject, contact.name, contact.email),
            html=personalize(html, contact.name, contact.email),
            to_name=contact.name,
            custom_args={"workflow_step_id": ctx.step.id, "contact_id": contact.id},
        )
        return Completed({"sent_to": contact.email, "message_id": message_id})


class DelayExecutor(StepExecutor):
    """Arms once, fires once.

    The first visit computes ``scheduled_at``. Later visits reuse the stored
    value and complete once it has passed; it is never recomputed.
    """

    kind = StepType.DELAY

    def execute(self, ctx: StepContext) -> Outcome:
        armed = ctx.execution_step.scheduled_at
        if armed is None:
            return WaitUntil(ctx.now + ctx.step.config.duration())
        due = from_iso(armed)
        if due <= ctx.now:
            return Completed({})
        return WaitUntil(due)


class ConditionExecutor(StepExecutor):
    kind = StepType.CONDITION

    def execute(self, ctx: StepContext) -> Outcome:
        config = ctx.step.config
        contact_id = ctx.execution.contact_id

        if config.condition == "has_tag":
            met = repository.contact_has_tag(ctx.db, contact_id, config.tag_id)
        elif config.condition == "opened_email":
            met = repository.count_events(ctx.db, contact_id, "open") > 0
        elif config.condition == "not_opened":
            met = repository.count_events(ctx.db, contact_id, "open") == 0
        else:  # clicked_email
            met = repository.count_events(ctx.db, contact_id, "click") > 0

        branch = Handle.YES if met else Handle.NO
        return Completed({"condition_met": met, "branch": branch.value})


class AddTagExecutor(StepExecutor):
    kind = StepType.ADD_TAG

    def execute(self, ctx: StepContext) -> Outcome:
        tag_id = ctx.step.config.tag_id
        if not repository.get_tag(ctx.db, ctx.tenant_id, tag_id):
            raise TagNotFound(tag_id)
        repository.add_contact_tag(ctx.db, ctx.execution.contact_id, tag_id)
        return Completed({"tag_id": tag_id})


class RemoveTagExecutor(StepExecutor):
    kind = StepType.REMOVE_TAG

    def execute(self, ctx: StepContext) -> Outcome:
        tag_id = ctx.step.config.tag_id
        if not repository.get_tag(ctx.db, ctx.tenant_id, tag_id):
            raise TagNotFound(tag_id)
        repository.remove_contact_tag(ctx.db, ctx.execution.contact_id, tag_id)
        return Completed({"tag_id": tag_id})


def build_executors(
    delivery: EmailDelivery, settings: Settings
) -> dict[StepType, StepExecutor]:
    executors = [
        SendEmailExecutor(delivery, settings),
        DelayExecutor(),
        ConditionExecutor(),
        AddTagExecutor(),
        RemoveTagExecutor(),
    ]
    return {e.kind: e for e in executors}
