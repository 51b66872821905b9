"""Exception types for the durable jobs library."""


class DurableJobsError(Exception):
    """Base exception for all durable jobs errors."""

    pass


class JobValidationError(DurableJobsError, ValueError):
    """Raised when job, queue or schedule parameters are invalid."""

    pass


class JobNotFoundError(DurableJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class QueueNotFoundError(DurableJobsError):
    """Raised when a queue is not found."""

    def __init__(self, queue_name: str, message: str = None):
        self.queue_name = queue_name
        if message is None:
            message = f"Queue {queue_name} not found"
        super().__init__(message)


class ScheduledJobNotFoundError(DurableJobsError):
    """Raised when a recurring job definition is not found."""

    def __init__(self, recurring_job_id, message: str = None):
        self.recurring_job_id = recurring_job_id
        if message is None:
            message = f"Scheduled job {recurring_job_id} not found"
        super().__init__(message)


class InvalidJobStateError(DurableJobsError):
    """Raised when a requested status transition is not allowed."""

    def __init__(self, job_id, current_status, requested_status, message: str = None):
        self.job_id = job_id
        self.current_status = current_status
        self.requested_status = requested_status
        if message is None:
            message = (
                f"Job {job_id} cannot move from {_value(current_status)} "
                f"to {_value(requested_status)}"
            )
        super().__init__(message)


class LeaseLostError(DurableJobsError):
    """Raised when a worker updates a job it no longer holds the lease for."""

    def __init__(self, job_id, worker_id, message: str = None):
        self.job_id = job_id
        self.worker_id = worker_id
        if message is None:
            message = f"Worker {worker_id} does not hold the lease on job {job_id}"
        super().__init__(message)


class NoHandlerRegisteredError(DurableJobsError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


class WorkerAlreadyRunningError(DurableJobsError):
    """Raised when start is called on a worker that is already running."""

    pass


def _value(status):
    return getattr(status, "value", status)
