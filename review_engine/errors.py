"""
Error taxonomy for the review engine.

Every error a caller can act on derives from ReviewEngineError. Pure policy
code raises plain ValueError for broken preconditions instead; those are
bugs in the caller, not conditions to handle.
"""
from __future__ import annotations


class ReviewEngineError(Exception):
    """Base class for errors surfaced by the engine."""


class ValidationError(ReviewEngineError):
    """Raised when input is malformed. No state has been changed."""


class NotFoundError(ReviewEngineError):
    """Raised when a schedule, record or settings entry does not exist."""


class UnauthorizedError(ReviewEngineError):
    """Raised when a learner touches a schedule owned by someone else."""


class InvalidStateError(ReviewEngineError):
    """Raised when a transition is not legal from the schedule's current state."""


class ConcurrencyError(ReviewEngineError):
    """Raised when a schedule changed between load and save. Callers may retry."""


class DeliveryError(ReviewEngineError):
    """Raised by a notification sender when a message could not be delivered."""
