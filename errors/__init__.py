"""
Errors - engine error handling

Exception hierarchy and the standard error payload.
"""

from .exceptions import (
    GraphEngineError,
    GraphValidationError,
    UnknownDependencyError,
    UnsatisfiableGraphError,
    RunTimeoutError,
    RunCancelledError,
    TaskExecutionFailure,
    PersistenceFailure,
    InvalidTransitionError,
)

from .error_response import ErrorResponse, ErrorType, ErrorSeverity

__all__ = [
    # Exceptions
    "GraphEngineError",
    "GraphValidationError",
    "UnknownDependencyError",
    "UnsatisfiableGraphError",
    "RunTimeoutError",
    "RunCancelledError",
    "TaskExecutionFailure",
    "PersistenceFailure",
    "InvalidTransitionError",

    # Response
    "ErrorResponse",
    "ErrorType",
    "ErrorSeverity",
]
