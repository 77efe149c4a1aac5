class WebhookAutomationError(Exception):
    """Base class for errors raised by the engine."""


class ValidationError(WebhookAutomationError):
    """Input rejected before anything was persisted."""


class NotFoundError(WebhookAutomationError):
    """A referenced queue item, automation, conversation or contact does not exist."""


class InvalidStateError(WebhookAutomationError):
    """The target exists but is not in a state that allows the operation."""


class ExecutionError(WebhookAutomationError):
    """Failure inside an automation's response or action pipeline."""


class TransientIOError(WebhookAutomationError):
    """Storage, network or AI failure that may succeed on a later attempt."""
