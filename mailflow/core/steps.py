"""Typed step configurations.

Each step kind carries its own pydantic config model. Raw JSON from the
definition store is parsed into one of these once, so executors never see
untyped dictionaries.
"""

import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from mailflow.core.errors import InvalidStepConfig
from mailflow.core.models import StepType


class SendEmailConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject: str = Field(min_length=1)
    template_id: str | None = None
    sender_id: str | None = None


class DelayConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: int = Field(gt=0)
    unit: Literal["hours", "days"] = "days"

    def duration(self) -> timedelta:
        if self.unit == "hours":
            return timedelta(hours=self.value)
        return timedelta(days=self.value)


class ConditionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    condition: Literal["has_tag", "opened_email", "clicked_email", "not_opened"]
    tag_id: str | None = None

    @model_validator(mode="after")
    def _tag_required_for_has_tag(self):
        if self.condition == "has_tag" and not self.tag_id:
            raise ValueError("'tag_id' is required for the has_tag condition")
        return self


class TagConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tag_id: str = Field(min_length=1)


StepConfig = Union[SendEmailConfig, DelayConfig, ConditionConfig, TagConfig]

CONFIG_TYPES: dict[StepType, type[BaseModel]] = {
    StepType.SEND_EMAIL: SendEmailConfig,
    StepType.DELAY: DelayConfig,
    StepType.CONDITION: ConditionConfig,
    StepType.ADD_TAG: TagConfig,
    StepType.REMOVE_TAG: TagConfig,
}


@dataclass(frozen=True)
class LoadedStep:
    """A workflow step with its kind resolved and its config validated."""

    id: str
    workflow_id: str
    kind: StepType
    config: StepConfig


def parse_step_config(step_type: str, raw: dict | None) -> StepConfig:
    try:
        kind = StepType(step_type)
    except ValueError:
        raise InvalidStepConfig(f"Unknown step type: '{step_type}'") from None

    try:
        return CONFIG_TYPES[kind].model_validate(raw or {})
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidStepConfig(f"Invalid {kind.value} config: {problems}") from e


def load_step(step) -> LoadedStep:
    """Turn a ``Step`` row into a validated ``LoadedStep``."""
    raw = json.loads(step.config) if step.config else {}
    config = parse_step_config(step.step_type, raw)
    return LoadedStep(
        id=step.id,
        workflow_id=step.workflow_id,
        kind=StepType(step.step_type),
        config=config,
    )
