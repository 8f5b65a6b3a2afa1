"""
Orchestrator Errors

Exception taxonomy shared by the job queue, host run state machine and
planner. The API layer maps each class to an HTTP status.
"""
from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ValidationError(OrchestratorError):
    """Malformed or missing input. Raised before any state is written."""


class EmptyTargetSetError(ValidationError):
    """A plan was requested for an empty set of hosts."""

    def __init__(self, message: str = "At least one target server is required"):
        super().__init__(message)


class NotFoundError(OrchestratorError):
    """A job, host run, plan or host does not exist."""

    def __init__(self, resource_type: str, identifier: str):
        self.resource_type = resource_type
        self.identifier = identifier
        super().__init__(f"{resource_type} not found: {identifier}")


class InvalidStateError(OrchestratorError):
    """The action is not legal for the resource's current status."""


class RetryExhaustedError(InvalidStateError):
    """A job retry was refused: max_retries reached, or the job is not failed or cancelled."""

    def __init__(self, job_id: str, retry_count: int, max_retries: int, reason: Optional[str] = None):
        self.job_id = job_id
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(
            reason or f"Job {job_id} has exceeded maximum retry attempts ({retry_count}/{max_retries})"
        )


class InvalidTransitionError(OrchestratorError):
    """A host run transition is not an edge of the state graph."""

    def __init__(self, current_state: str, target_state: str, reason: Optional[str] = None):
        self.current_state = current_state
        self.target_state = target_state
        message = f"Invalid transition from {current_state} to {target_state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DuplicateRunError(OrchestratorError):
    """A host already has a running host run."""

    def __init__(self, host_id: str, existing_run_id: str):
        self.host_id = host_id
        self.existing_run_id = existing_run_id
        super().__init__(f"Host {host_id} already has a running host run: {existing_run_id}")


class ExecutionFailure(OrchestratorError):
    """Failure reported by an external execution worker."""

    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(message)
