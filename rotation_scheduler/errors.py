"""Error kinds raised by the scheduling services."""


class SchedulingError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidTransition(SchedulingError):
    """Fiscal year or trade state machine violation."""
    status_code = 409


class ValidationError(SchedulingError):
    status_code = 400


class NotFoundError(SchedulingError):
    status_code = 404


class ConflictError(SchedulingError):
    """Double-booking, stale concurrent write, or already-resolved trade."""
    status_code = 409


class PermissionDeniedError(SchedulingError):
    status_code = 403


class BlockedError(SchedulingError):
    """Approval gate: preferences incomplete or rotation set misconfigured."""
    status_code = 423
