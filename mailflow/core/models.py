from enum import Enum


TRIGGER_SOURCE = "trigger"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class TriggerType(str, Enum):
    CONTACT_ADDED_TO_LIST = "contact_added_to_list"
    TAG_ADDED = "tag_added"
    CAMPAIGN_EVENT = "campaign_event"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class StepType(str, Enum):
    SEND_EMAIL = "send_email"
    DELAY = "delay"
    CONDITION = "condition"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"


class Handle(str, Enum):
    DEFAULT = "default"
    YES = "yes"
    NO = "no"


class ExecutionState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepState(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Rows the advancer may still pick up or is currently working on.
LIVE_STEP_STATES = (StepState.PENDING, StepState.WAITING, StepState.IN_PROGRESS)
