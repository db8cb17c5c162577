"""BuildGate engine errors."""


class BuildGateError(Exception):
    """Base error for BuildGate operations."""

    def __init__(self, message: str, code: str = "BUILDGATE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class JobNotFound(BuildGateError):
    """Job does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", "JOB_NOT_FOUND")
        self.job_id = job_id


class RequestNotFound(BuildGateError):
    """Request does not exist."""

    def __init__(self, request_id: str):
        super().__init__(f"Request not found: {request_id}", "REQUEST_NOT_FOUND")
        self.request_id = request_id


class InvalidStateTransition(BuildGateError):
    """Invalid job state transition."""

    def __init__(self, current_status: str, requested_status: str):
        super().__init__(
            f"Invalid transition from {current_status} to {requested_status}",
            "INVALID_STATE_TRANSITION",
        )
        self.current_status = current_status
        self.requested_status = requested_status


class LeaseError(BuildGateError):
    """Base error for sandbox lease operations."""


class ProvisionFailed(LeaseError):
    """Sandbox provisioning failed transiently; the orchestrator may retry."""

    retryable = True

    def __init__(self, detail: str = ""):
        super().__init__(f"Sandbox provisioning failed: {detail}", "PROVISION_FAILED")
        self.detail = detail


class QuotaExceededAtProvider(LeaseError):
    """The sandbox provider refused to create more sandboxes."""

    retryable = False

    def __init__(self, detail: str = ""):
        super().__init__(f"Sandbox provider quota exceeded: {detail}", "PROVIDER_QUOTA_EXCEEDED")
        self.detail = detail


class LeaseExpired(LeaseError):
    """Lease is released or its TTL has elapsed."""

    def __init__(self, lease_id: str = "", job_id: str = ""):
        super().__init__(
            f"Lease {lease_id} expired or released for job {job_id}",
            "LEASE_EXPIRED",
        )
        self.lease_id = lease_id
        self.job_id = job_id


class SandboxOperationError(BuildGateError):
    """A sandbox tool operation failed."""

    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation} failed: {detail}", "SANDBOX_OPERATION_FAILED")
        self.operation = operation
        self.detail = detail


class TransientPersistenceError(BuildGateError):
    """A write kept failing; the job stays non-terminal and can be re-triggered."""

    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"{operation} failed after {attempts} attempts",
            "TRANSIENT_PERSISTENCE_ERROR",
        )
        self.operation = operation
        self.attempts = attempts
