"""
Error taxonomy.

Expected conditions (bad identifier, denied consent, bot traffic) never surface
as unexpected failures. Only storage faults outside the conversion transaction
propagate to the operator.
"""


class AttributionError(Exception):
    """Base class for all attribution pipeline errors."""


class NotFoundError(AttributionError):
    """Unknown, malformed, inactive or unresolvable tracking link.

    Carries a reason for logs only. Callers must answer with a plain 404 and
    never reveal which check failed.
    """

    def __init__(self, reason: str = "not_found"):
        super().__init__(reason)
        self.reason = reason


class ValidationError(AttributionError):
    """Malformed client token. Treated as empty, never fatal."""


class TransactionError(AttributionError):
    """A conversion write failed and the whole transaction was rolled back."""


class QueueDispatchError(AttributionError):
    """Unknown reporter, reporter returned failure, or reporter raised."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
