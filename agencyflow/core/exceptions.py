"""
Custom Exceptions for AgencyFlow

Exception Hierarchy:
- AgencyFlowError (base)
  - WorkflowValidationError (don't retry)
    - CycleError
    - PortIncompatibilityError
  - NodeExecutionError (don't retry at graph level)
  - InsufficientCreditsError (don't retry)
  - RunStateError (don't retry)
  - TriggerConfigError (don't retry)
  - ResourceNotFoundError (don't retry)
  - BackendError (retry inside the outbound call wrapper only)
    - BackendUnavailableError
    - JobTimeoutError
    - JobFailedError
    - RateLimitError
    - UnrecognizedOutputFormatError
"""

from typing import Optional


class AgencyFlowError(Exception):
    """Base exception for all AgencyFlow errors"""

    def __init__(self, message: str, retry_allowed: bool = False):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


# ============================================================================
# GRAPH / WORKFLOW ERRORS
# ============================================================================

class WorkflowValidationError(AgencyFlowError):
    """
    Graph or node configuration is invalid (unknown node kind, bad config,
    dangling edge, limits exceeded). Fix the workflow definition.
    """

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message, retry_allowed=False)
        self.node_id = node_id


class CycleError(WorkflowValidationError):
    """Topological sort could not order every node."""

    def __init__(self, message: str = "Workflow contains a cycle", unordered_nodes=None):
        super().__init__(message)
        self.unordered_nodes = list(unordered_nodes or [])


class PortIncompatibilityError(WorkflowValidationError):
    """An edge connects an output port to an input port of an incompatible type."""

    def __init__(self, message: str, source_type: str = None, target_type: str = None):
        super().__init__(message)
        self.source_type = source_type
        self.target_type = target_type


# ============================================================================
# RUN ERRORS
# ============================================================================

class NodeExecutionError(AgencyFlowError):
    """
    A node executor failed. Recorded on the NodeResult and fails the whole run.
    """

    def __init__(self, message: str, node_id=None):
        super().__init__(message, retry_allowed=False)
        self.node_id = node_id


class InsufficientCreditsError(AgencyFlowError):
    """Atomic credit deduction was refused."""

    def __init__(self, message: str = "Insufficient credits to continue workflow",
                 agency_id: int = None, amount: int = None):
        super().__init__(message, retry_allowed=False)
        self.agency_id = agency_id
        self.amount = amount


class RunStateError(AgencyFlowError):
    """Operation not allowed in the run's current state (approve, cancel, start)."""

    def __init__(self, message: str, run_id: int = None):
        super().__init__(message, retry_allowed=False)
        self.run_id = run_id


class TriggerConfigError(AgencyFlowError):
    """Trigger type or schedule configuration is invalid."""

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=False)


class ResourceNotFoundError(AgencyFlowError):
    """Requested workflow, run, node or trigger does not exist."""

    def __init__(self, message: str, resource: str = None, resource_id=None):
        super().__init__(message, retry_allowed=False)
        self.resource = resource
        self.resource_id = resource_id


# ============================================================================
# BACKEND ERRORS
# ============================================================================

class BackendError(AgencyFlowError):
    """Base class for generation backend errors"""

    def __init__(self, message: str, backend: str = None, retry_allowed: bool = True):
        super().__init__(message, retry_allowed=retry_allowed)
        self.backend = backend


class BackendUnavailableError(BackendError):
    """Both the dedicated and the serverless pool refused the job."""
    pass


class JobTimeoutError(BackendError):
    """Job polling exhausted its attempt budget."""

    def __init__(self, message: str, job_id: str = None, attempts: int = None, backend: str = None):
        super().__init__(message, backend=backend)
        self.job_id = job_id
        self.attempts = attempts


class JobFailedError(BackendError):
    """The backend reported the job as FAILED or CANCELLED."""

    def __init__(self, message: str, job_id: str = None, backend: str = None):
        super().__init__(message, backend=backend, retry_allowed=False)
        self.job_id = job_id


class RateLimitError(BackendError):
    """Retries exhausted while the backend kept answering 429."""

    def __init__(self, message: str, status_code: int = 429, backend: str = None):
        super().__init__(message, backend=backend)
        self.status_code = status_code


class UnrecognizedOutputFormatError(BackendError):
    """Job completed but no known media shape was found in its output."""

    def __init__(self, message: str = "No media in job output", backend: str = None):
        super().__init__(message, backend=backend, retry_allowed=False)
