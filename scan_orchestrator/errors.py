"""Exception types for the scan orchestrator."""


class ScanOrchestratorError(Exception):
    """Base exception for all scan orchestrator errors."""

    pass


class JobNotFoundError(ScanOrchestratorError):
    """Raised when a job is not found."""

    def __init__(self, job_id: str, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class LeaseConflictError(ScanOrchestratorError):
    """Raised when a worker no longer owns the lease on a job.

    The caller must stop working on the job: another worker or the lease
    housekeeper has taken it over, or it was cancelled.
    """

    def __init__(self, job_id: str, worker_id: str, message: str = None):
        self.job_id = job_id
        self.worker_id = worker_id
        if message is None:
            message = f"Worker {worker_id} does not hold the lease on job {job_id}"
        super().__init__(message)


class RetryableHandlerError(ScanOrchestratorError):
    """Raised by a handler for failures worth retrying with backoff."""

    pass


class FatalHandlerError(ScanOrchestratorError):
    """Raised by a handler for failures that must not be retried."""

    pass


class JobCancelledError(ScanOrchestratorError):
    """Raised inside a handler when its job has been cancelled."""

    def __init__(self, job_id: str, reason: str = None):
        self.job_id = job_id
        self.reason = reason
        message = f"Job {job_id} cancelled"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class StoreUnavailableError(ScanOrchestratorError):
    """Raised when the job store stayed unreachable after internal retries."""

    def __init__(self, operation: str, attempts: int, message: str = None):
        self.operation = operation
        self.attempts = attempts
        if message is None:
            message = f"Job store unavailable for {operation} after {attempts} attempts"
        super().__init__(message)


class JobStoreError(ScanOrchestratorError):
    """Raised when the job store returns an inconsistent result."""

    pass


class HandlerRegistrationError(ScanOrchestratorError):
    """Raised when a handler is registered twice for the same job kind."""

    pass


class UnknownEntityError(ScanOrchestratorError):
    """Raised when a command targets an entity the supervisor does not know."""

    def __init__(self, entity_id: str, message: str = None):
        self.entity_id = entity_id
        if message is None:
            message = f"Entity {entity_id} is not known to the supervisor"
        super().__init__(message)


class EntityNotConfiguredError(ScanOrchestratorError):
    """Raised when a scan is requested for an entity without scan paths."""

    def __init__(self, entity_id: str, message: str = None):
        self.entity_id = entity_id
        if message is None:
            message = f"Entity {entity_id} has no scan paths configured"
        super().__init__(message)
