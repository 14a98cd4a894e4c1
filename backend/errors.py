"""
Error types raised by the orchestrator.

Contract violations (immutable fields, malformed results, backwards phase
transitions) fail a reconcile pass outright. ``ClusterError`` and its
subclasses are retryable and lead to a requeue. ``DrainError`` marks a
replacement as Failed.
"""
from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ImmutableFieldError(OrchestratorError):
    """A write-once status field was set a second time."""


class MalformedResultError(OrchestratorError):
    """A Result carried an error without the matching reason."""


class InvalidPhaseTransitionError(OrchestratorError):
    """A phase change would move a replacement backwards."""


class ClusterError(OrchestratorError):
    """A call against the cluster failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterError):
    """The requested object does not exist."""

    def __init__(self, message: str):
        super().__init__(message, status=404)


class ConflictError(ClusterError):
    """A compare-and-update lost against a concurrent write."""

    def __init__(self, message: str):
        super().__init__(message, status=409)


class NodeLookupError(ClusterError):
    """The target node could not be read for a reason other than absence."""


class EvictionError(ClusterError):
    """Pods could not be removed from a node in time."""


class StatusUpdateError(ClusterError):
    """Writing a status back to the cluster failed."""


class DrainError(OrchestratorError):
    """The node cannot be drained; the replacement is Failed."""


class AdmissionBlocked(OrchestratorError):
    """Carries the reason a replacement was not admitted.

    Never raised by the controllers; it is stored as the message of the
    ``Admitted`` condition.
    """
