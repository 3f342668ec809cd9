"""Engine error taxonomy.

Every engine operation is all-or-nothing: when one of these is raised the
underlying records are unchanged and no points were granted. The message is
meant for direct display.
"""

from __future__ import annotations


class WillpowerError(Exception):
    """Base class for all engine errors."""

    kind = "willpower_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(WillpowerError):
    """Bad input: difficulty or points out of range, bad date, bad duration."""

    kind = "validation_error"


class StateConflictError(WillpowerError):
    """The requested transition is not allowed from the current state."""

    kind = "state_conflict"


class NotFoundError(WillpowerError):
    """Unknown challenge, milestone, habit or buddy challenge."""

    kind = "not_found"


class RateLimitedError(WillpowerError):
    """An external collaborator refused the request for now."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
