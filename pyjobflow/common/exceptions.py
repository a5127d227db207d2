# pyjobflow/common/exceptions.py


class PyJobFlowException(Exception):
    """Base exception for the pyjobflow library."""

    pass


class StoreUnavailableError(PyJobFlowException):
    """Raised when the backing key-value store cannot be reached."""

    pass


class QueueUnavailableError(StoreUnavailableError):
    """Raised when a job cannot be enqueued because the store failed."""

    pass


class UnknownLimitTypeError(PyJobFlowException):
    """Raised when a rate limit type has no registered or explicit policy."""

    def __init__(self, limit_type: str):
        self.limit_type = limit_type
        super().__init__(f"Unknown rate limit type: {limit_type}")


class JobValidationError(PyJobFlowException, ValueError):
    """Raised when job options are malformed."""

    pass


class ProcessorNotFoundError(PyJobFlowException):
    """Raised when no handler is registered for a job's queue and type."""

    def __init__(self, queue_name: str, job_type: str):
        self.queue_name = queue_name
        self.job_type = job_type
        super().__init__(f"No processor found for {queue_name}:{job_type}")


class JobTimeoutError(PyJobFlowException):
    """Raised when a handler runs longer than the job timeout."""

    def __init__(self, job_id: str, timeout: float):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Job {job_id} timed out after {timeout} seconds")


class SerializationError(PyJobFlowException):
    """Raised when a job record cannot be encoded or decoded."""

    pass
