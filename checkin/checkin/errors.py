"""Error taxonomy for the check-in engine.

Validation errors are caller-fixable and never retried. Not-found errors
name the missing record. Store and clock failures are not wrapped: they
reach the caller unchanged.
"""

from __future__ import annotations


class CheckinError(Exception):
    """Base class for all check-in engine errors."""


# --- Validation errors ---


class ValidationError(CheckinError):
    """The request is invalid for the current state; fix and resubmit."""


class InvalidConfiguration(ValidationError):
    """A schedule setting (time of day, grace period) is malformed."""


class InvalidDateRange(ValidationError):
    """A break's dates are in the past or out of order."""


class OverlappingBreak(ValidationError):
    """The sender already has a scheduled or active break in this range."""


class InvalidTransition(ValidationError):
    """The ping or break is not in a state that allows this change."""


class PingExpired(ValidationError):
    """The ping was already marked missed and can no longer be completed."""


class InsufficientLocationAccuracy(ValidationError):
    """In-person verification was attempted with an imprecise location."""


# --- Not-found errors ---


class NotFoundError(CheckinError):
    """A referenced record does not exist (or belongs to someone else)."""


class PingNotFound(NotFoundError):
    pass


class BreakNotFound(NotFoundError):
    pass


class ConnectionNotFound(NotFoundError):
    pass


# --- Store-level conflicts ---


class DuplicatePing(CheckinError):
    """A ping already exists for this connection and calendar day."""
