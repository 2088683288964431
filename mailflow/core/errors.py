class MailflowError(Exception):
    """Base class for engine errors."""


# --- Definition errors ---

class WorkflowNotFound(MailflowError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow '{workflow_id}' not found")
        self.workflow_id = workflow_id


class WorkflowNotActive(MailflowError):
    def __init__(self, workflow_id: str, status: str):
        super().__init__(f"Workflow '{workflow_id}' is not active (status: {status})")
        self.workflow_id = workflow_id
        self.status = status


class NoEntryStep(MailflowError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow '{workflow_id}' has no steps connected to trigger")
        self.workflow_id = workflow_id


class InvalidWorkflow(MailflowError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class InvalidStepConfig(MailflowError):
    pass


class InvalidTransition(MailflowError):
    pass


# --- Executor errors ---

class ContactNotFound(MailflowError):
    def __init__(self, contact_id: str):
        super().__init__(f"Contact '{contact_id}' not found")


class TemplateNotFound(MailflowError):
    def __init__(self, template_id: str):
        super().__init__(f"Template '{template_id}' not found")


class SenderNotFound(MailflowError):
    def __init__(self, sender_id: str):
        super().__init__(f"Sender '{sender_id}' not found")


class TagNotFound(MailflowError):
    def __init__(self, tag_id: str):
        super().__init__(f"Tag '{tag_id}' not found")


class DeliveryError(MailflowError):
    pass


# --- Operator errors ---

class ExecutionNotFound(MailflowError):
    def __init__(self, execution_id: str):
        super().__init__(f"Execution '{execution_id}' not found")


class ExecutionNotRunning(MailflowError):
    def __init__(self, execution_id: str, status: str):
        super().__init__(f"Execution '{execution_id}' is not running (status: {status})")


class StepNotRetryable(MailflowError):
    pass
