"""
Exceptions - engine exception hierarchy

Graph-level errors abort a run and are reported as the run's top-level error.
Node-level errors are absorbed by the executor and recorded on the node.
"""

from typing import Optional, Dict, Any, List


class GraphEngineError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Args:
            message: Human readable message
            code: Stable error code
            details: Extra structured information
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert the error to a dictionary."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class GraphValidationError(GraphEngineError):
    """Raised when a graph is malformed at build time."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(
            message=message,
            code="GRAPH_VALIDATION_ERROR",
            details={"node_id": node_id} if node_id else {}
        )


class UnknownDependencyError(GraphValidationError):
    """A node references a dependency id that is not part of the graph."""

    def __init__(self, node_id: str, dependency_id: str):
        super().__init__(
            message=f"Node '{node_id}' depends on unknown node '{dependency_id}'",
            node_id=node_id
        )
        self.code = "UNKNOWN_DEPENDENCY"
        self.details["dependency_id"] = dependency_id


class UnsatisfiableGraphError(GraphEngineError):
    """No node can make progress but some nodes are not terminal."""

    def __init__(
        self,
        pending: List[str],
        failed_ancestors: Optional[Dict[str, List[str]]] = None
    ):
        failed_ancestors = failed_ancestors or {}
        cyclic = [node_id for node_id in pending if node_id not in failed_ancestors]
        super().__init__(
            message=(
                f"{len(pending)} node(s) can never run: blocked by failed "
                f"dependencies or a dependency cycle"
            ),
            code="UNSATISFIABLE_GRAPH",
            details={
                "pending_nodes": pending,
                "blocked_by_failure": failed_ancestors,
                "unresolvable": cyclic,
            }
        )


class RunTimeoutError(GraphEngineError):
    """The whole run exceeded its wall-clock budget."""

    def __init__(self, timeout_seconds: float, interrupted: List[str]):
        super().__init__(
            message=f"Run timed out after {timeout_seconds}s",
            code="RUN_TIMEOUT",
            details={
                "timeout_seconds": timeout_seconds,
                "interrupted_nodes": interrupted,
            }
        )


class RunCancelledError(GraphEngineError):
    """The caller cancelled the run before every node finished."""

    def __init__(self, reason: str, interrupted: List[str]):
        super().__init__(
            message=reason,
            code="RUN_CANCELLED",
            details={"interrupted_nodes": interrupted}
        )


class TaskExecutionFailure(GraphEngineError):
    """One node's external execution failed or timed out."""

    def __init__(self, node_id: str, reason: str, timed_out: bool = False):
        super().__init__(
            message=reason,
            code="TASK_TIMEOUT" if timed_out else "TASK_EXECUTION_FAILED",
            details={"node_id": node_id}
        )
        self.node_id = node_id
        self.reason = reason
        self.timed_out = timed_out


class PersistenceFailure(GraphEngineError):
    """A state store write failed. Logged, never fatal."""

    def __init__(self, session_id: str, node_id: Optional[str], kind: str, reason: str):
        super().__init__(
            message=f"Failed to persist {kind} record for {session_id}/{node_id or '-'}: {reason}",
            code="PERSISTENCE_FAILURE",
            details={"session_id": session_id, "node_id": node_id, "kind": kind}
        )


class InvalidTransitionError(GraphEngineError):
    """A node status transition was attempted from an invalid prior state."""

    def __init__(self, node_id: str, current: str, target: str, reason: str = ""):
        message = f"Cannot move node '{node_id}' from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            details={"node_id": node_id, "current": current, "target": target}
        )
