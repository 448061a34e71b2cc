"""
Custom exceptions for the Cassandra datacenter operator.

The hierarchy mirrors how the control loop reacts to a failure:

- TransientError: requeue the pass with backoff, progress is untouched
- InvalidDesiredStateError: report in status, wait for the user to change the spec
- UnsafeOperationError: local precondition refused before any external call
- AlreadyRunningError: an idempotent call found the node already in the target state
"""
from typing import Optional, Dict, Any


class OperatorError(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class TransientError(OperatorError):
    """
    Raised for failures that are expected to heal on their own.

    Network timeouts, resource version conflicts, nodes not yet reachable.
    """

    status_code = 503


class ManagementApiUnreachableError(TransientError):
    """Raised when a node's management API cannot be dialed or timed out."""

    def __init__(self, pod_name: str, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Management API on '{pod_name}' unreachable: {reason}",
            details=details or {"pod_name": pod_name, "reason": reason},
        )
        self.pod_name = pod_name


class ResourceConflictError(TransientError):
    """Raised when applying a manifest conflicts with the live object."""

    def __init__(self, kind: str, name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Conflict applying {kind} '{name}'",
            details=details or {"kind": kind, "name": name},
        )


class StatusConflictError(TransientError):
    """Raised when a status write loses an optimistic concurrency race."""

    def __init__(self, datacenter: str, resource_version: Optional[str] = None):
        super().__init__(
            message=f"Status of datacenter '{datacenter}' was modified concurrently",
            details={"datacenter": datacenter, "resource_version": resource_version},
        )


class KubernetesError(TransientError):
    """
    Raised when Kubernetes API operations fail.

    Used for K8s API errors, connection issues, etc.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Kubernetes error: {message}",
            details=details,
        )


class InvalidDesiredStateError(OperatorError):
    """
    Raised when the datacenter spec is logically invalid.

    Unknown server type/version pairs, racks that would orphan storage, etc.
    Never retried until the spec changes.
    """

    status_code = 422


class UnsafeOperationError(OperatorError):
    """
    Raised when an action would break a cluster safety rule.

    Decommissioning the last node, a second concurrent decommission, etc.
    """

    status_code = 409


class AlreadyRunningError(OperatorError):
    """Raised when a node is asked to start but is not start-eligible."""

    def __init__(self, pod_name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Node '{pod_name}' is already running",
            details=details or {"pod_name": pod_name},
        )
        self.pod_name = pod_name


class ManagementApiError(OperatorError):
    """Raised when the management API rejects a call with a non-retryable answer."""

    def __init__(self, pod_name: str, status_code: int, body: str = ""):
        super().__init__(
            message=f"Management API on '{pod_name}' returned {status_code}",
            details={"pod_name": pod_name, "status_code": status_code, "body": body},
        )
        self.remote_status_code = status_code


class InvalidTransitionError(OperatorError):
    """Raised when a node lifecycle transition is not allowed."""


class NotFoundError(OperatorError):
    """
    Raised when a requested resource is not found.
    """

    status_code = 404

    def __init__(self, resource: str, resource_id: str, details: Optional[Dict[str, Any]] = None):
        message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            details=details or {"resource": resource, "resource_id": resource_id},
        )


# Export all exceptions
__all__ = [
    "OperatorError",
    "TransientError",
    "ManagementApiUnreachableError",
    "ResourceConflictError",
    "StatusConflictError",
    "KubernetesError",
    "InvalidDesiredStateError",
    "UnsafeOperationError",
    "AlreadyRunningError",
    "ManagementApiError",
    "InvalidTransitionError",
    "NotFoundError",
]
