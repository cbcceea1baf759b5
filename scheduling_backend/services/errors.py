"""Business errors raised by the scheduling services.

Routes translate these into HTTP responses; infrastructure failures
(``SQLAlchemyError``) are kept separate and never wrapped in one of these.
"""


class SchedulingError(Exception):
    """Base class for the business outcomes a caller must handle."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Malformed input: inverted window, out-of-range day, bad timezone."""


class SlotUnavailable(SchedulingError):
    """The requested interval is taken. Refresh availability and pick another slot."""


class PolicyViolation(SchedulingError):
    """The appointment's status or timing forbids the requested transition."""


class NotFound(SchedulingError):
    """A referenced therapist, window, time-off or appointment does not exist."""


class AccessDenied(SchedulingError):
    """The caller's session does not own the appointment it is trying to change."""
