"""Journey engine database models."""

from .base import Base
from .journey import Journey, JourneyStep
from .execution import ExecutionStepAttempt, JourneyExecution
from .contact import Contact, ContactTag

__all__ = [
    "Base",
    "Journey",
    "JourneyStep",
    "JourneyExecution",
    "ExecutionStepAttempt",
    "Contact",
    "ContactTag",
]
