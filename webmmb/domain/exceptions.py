"""Custom exception hierarchy for the WebMMB job service.

Following error taxonomy: retryable, non-retryable, validation, access.
"""


class WebMMBError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(WebMMBError):
    """Errors that clear up on their own (slow or flaky backends)."""

    pass


class NonRetryableError(WebMMBError):
    """Errors that should not be retried (validation, access, missing resources)."""

    pass


class ValidationError(NonRetryableError):
    """Request data validation errors."""

    pass


class DuplicateJobError(ValidationError):
    """A session already owns a job with the requested name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Job with name {name} already exists")


class ResourceError(NonRetryableError):
    """Workspace allocation or cleanup failed."""

    pass


class BackendUnavailableError(NonRetryableError):
    """The executable or the batch queue endpoint cannot be reached."""

    pass


class BackendTimeoutError(RetryableError):
    """A backend call exceeded its time budget."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Backend {operation} did not finish within {timeout_seconds:g}s"
        )


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class NotFoundError(NonRetryableError):
    """Unknown job or session id."""

    pass


class UnauthorizedError(NonRetryableError):
    """The session does not own the referenced job."""

    def __init__(self, session_id: str, job_id: str) -> None:
        self.session_id = session_id
        self.job_id = job_id
        super().__init__(f"Session is not allowed to access job {job_id}")


class JobStateError(NonRetryableError):
    """Operation is not allowed in the job's current status."""

    pass


class InvalidTransitionError(NonRetryableError):
    """A status change outside the lifecycle graph was attempted."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Illegal job transition {from_status} -> {to_status}")


class DatabaseInUseError(NonRetryableError):
    """Another process already owns the job database."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        super().__init__(f"Job database {db_path} is owned by another process")
