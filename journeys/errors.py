"""Error taxonomy for the journey engine and its collaborators."""

from __future__ import annotations


class JourneyError(Exception):
    """Base class for journey engine errors."""


class NotFoundError(JourneyError):
    """Raised when a journey or execution does not exist for the tenant."""


class ValidationError(JourneyError):
    """Raised when a journey or step definition is malformed.

    ``violations`` holds every problem found, not only the first one. Each
    entry is a dict with a ``message`` and, where it applies, the offending
    step's ``order_no``.
    """

    def __init__(self, violations: list[dict]):
        self.violations = violations
        summary = "; ".join(v["message"] for v in violations[:3])
        if len(violations) > 3:
            summary += f" (+{len(violations) - 3} more)"
        super().__init__(summary or "Invalid journey definition")


class ConflictError(JourneyError):
    """Raised when a state change is rejected by live executions or journey status."""


class StepFailure(JourneyError):
    """Raised by a step executor when its side effect could not be performed."""

    retryable: bool = False

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class RetryableStepFailure(StepFailure):
    """Transient failure; the step is retried with backoff."""

    retryable = True


class FatalStepFailure(StepFailure):
    """Non-recoverable failure; the execution moves to ``failed``."""


class DispatcherTransientError(JourneyError):
    """Unexpected error while advancing an execution, unrelated to the step itself."""


# ── Collaborator errors ──────────────────────────────────────────────────


class ContactNotFoundError(JourneyError):
    """The contact store has no contact with this id for the tenant."""


class ContactStoreError(JourneyError):
    """The contact store is temporarily unavailable."""


class InvalidRecipientError(JourneyError):
    """The contact has no usable address for the requested channel."""


class MessageDeliveryError(JourneyError):
    """The messaging provider rejected or failed to accept a message."""


class MessagingNotConfigured(JourneyError):
    """Raised when SendGrid/Twilio credentials are missing."""
