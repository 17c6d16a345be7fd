"""Error taxonomy shared by the booking services.

Every error carries a stable ``kind`` and a human-readable ``message``. The
HTTP layer maps them to status codes; nothing else about the failure is
exposed to callers.
"""

from datetime import datetime


class BookingError(Exception):
    kind = 'error'
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


class ValidationError(BookingError):
    """Malformed input, past dates, or a doctor unavailable at the requested time."""
    kind = 'validation_error'
    status_code = 400


class PermissionDeniedError(BookingError):
    """The acting user is not entitled to the target action."""
    kind = 'permission_denied'
    status_code = 403


class NotFoundError(BookingError):
    kind = 'not_found'
    status_code = 404


class ConflictError(BookingError):
    """The requested window overlaps an existing booking."""
    kind = 'conflict'
    status_code = 409


class RateLimitError(BookingError):
    kind = 'rate_limited'
    status_code = 429

    def __init__(self, message: str, reset_at: datetime):
        super().__init__(message)
        self.reset_at = reset_at

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail['resetAt'] = self.reset_at.isoformat()
        return detail


class PersistenceError(BookingError):
    """Transient storage failure or timeout. Only pure reads are retried."""
    kind = 'persistence_error'
    status_code = 503
