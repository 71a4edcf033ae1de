"""
Error Taxonomy
==============
Caller-visible failures of the request automation engine.

Intake-phase errors (identification, validation, duplicate/velocity guards,
integration health, configuration) are raised before any Workflow exists, so
the caller is expected to escalate the raw email. Once a Workflow exists the
engine degrades failures to the `escalated` state instead of raising.
"""


class AutomationError(Exception):
    """Base class for every error the engine raises on purpose."""


class ConfigurationError(AutomationError):
    pass


class OrderNotIdentified(AutomationError):
    def __init__(self, message: str = "Could not identify order from email. Email will be escalated for human review."):
        super().__init__(message)


class OrderValidationError(AutomationError):
    pass


class DuplicateRequest(AutomationError):
    pass


class VelocityLimitExceeded(AutomationError):
    pass


class IntegrationUnavailable(AutomationError):
    pass


class SafetyRejected(AutomationError):
    """Outgoing customer text failed the content-safety check and was not sent."""


class DeliveryFailed(AutomationError):
    """The email transport refused or failed to send a message."""


class WorkflowNotFound(AutomationError):
    pass


class WorkflowTerminal(AutomationError):
    """Attempted to mutate a workflow that already reached a terminal status."""


class ApprovalNotFound(AutomationError):
    pass


class ApprovalStateError(AutomationError):
    """The approval item is not in the state the requested action needs."""
