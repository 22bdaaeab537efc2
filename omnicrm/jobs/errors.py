"""
Job pipeline exceptions.

Validation errors are raised before anything is persisted and are never
retried. Processor failures are retried by the runner unless the exception
is a NonRetryableJobError or carries recoverable=False.
"""


class JobPayloadError(Exception):
    """Base class for payload validation failures (surfaced to the enqueuing caller)."""

    status_code = 400
    code = "INVALID_PAYLOAD"
    recoverable = False

    def __init__(self, message: str, job_kind: str | None = None, user_id: str | None = None):
        super().__init__(message)
        self.job_kind = job_kind
        self.user_id = user_id


class UnknownJobKindError(JobPayloadError):
    """No payload schema is registered for the job kind."""


class PayloadTooLargeError(JobPayloadError):
    def __init__(self, message: str, size: int, limit: int, **kwargs):
        super().__init__(message, **kwargs)
        self.size = size
        self.limit = limit


class PayloadTooDeepError(JobPayloadError):
    def __init__(self, message: str, depth: int, limit: int, **kwargs):
        super().__init__(message, **kwargs)
        self.depth = depth
        self.limit = limit


class InvalidPayloadError(JobPayloadError):
    """Schema validation failed; issues are "<field.path>: <message>" strings."""

    def __init__(self, message: str, issues: list[str], **kwargs):
        super().__init__(message, **kwargs)
        self.issues = issues


class NoHandlerRegisteredError(Exception):
    """The dispatcher has no processor for the job's kind."""

    recoverable = False

    def __init__(self, job_kind: str):
        super().__init__(f"No handler registered for job kind: {job_kind}")
        self.job_kind = job_kind


class JobTimeoutError(Exception):
    """Processor did not finish inside the runner's timeout budget."""

    recoverable = True

    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(f"Job timeout after {timeout_seconds:g}s")
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds


class NonRetryableJobError(Exception):
    """Raised by processors when a retry cannot succeed (e.g. revoked OAuth grant)."""

    recoverable = False

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


def is_retryable(error: BaseException) -> bool:
    """True unless the error explicitly opts out of retries."""
    if isinstance(error, NonRetryableJobError):
        return False
    return getattr(error, "recoverable", True) is not False
