class SchedulerException(Exception):
    """Base exception for the tutoring scheduler"""
    retryable = False


class ValidationError(SchedulerException):
    """Exception raised for malformed or policy-violating requests"""
    pass


class NotFoundError(SchedulerException):
    """Exception raised when a referenced session does not exist"""
    pass


class ConflictError(SchedulerException):
    """Exception raised when a booking loses the race for its interval.

    Callers must run a fresh search instead of retrying the same booking.
    """

    def __init__(self, message: str, conflicting_ids=None):
        super().__init__(message)
        self.conflicting_ids = list(conflicting_ids or [])


class StoreUnavailable(SchedulerException):
    """Exception raised for transient store failures (timeouts, lost connections)"""
    retryable = True


class StoreRetriesExhausted(SchedulerException):
    """Exception raised once bounded store retries have all failed"""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts
