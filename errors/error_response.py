"""
ErrorResponse - standard top-level error payload

Used as the `error` field of an ExecutionResult.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any
from uuid import uuid4


class ErrorType(str, Enum):
    """Error category"""
    VALIDATION = "validation"
    GRAPH = "graph"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    """Error severity"""
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_CODE_TYPES = {
    "GRAPH_VALIDATION_ERROR": ErrorType.VALIDATION,
    "UNKNOWN_DEPENDENCY": ErrorType.VALIDATION,
    "UNSATISFIABLE_GRAPH": ErrorType.GRAPH,
    "RUN_TIMEOUT": ErrorType.TIMEOUT,
    "RUN_CANCELLED": ErrorType.CANCELLED,
}


@dataclass
class ErrorResponse:
    """Standard error payload"""
    error_code: str
    message: str
    error_type: ErrorType = ErrorType.SYSTEM
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Optional[Dict[str, Any]] = None
    trace_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """Convert to a dictionary"""
        return {
            "code": self.error_code,
            "type": self.error_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "traceId": self.trace_id,
            "timestamp": self.timestamp.isoformat()
        }

    @classmethod
    def from_exception(cls, exception: Exception, trace_id: Optional[str] = None):
        """Build an ErrorResponse from an exception"""
        from .exceptions import GraphEngineError

        if isinstance(exception, GraphEngineError):
            return cls(
                error_code=exception.code,
                message=exception.message,
                error_type=_CODE_TYPES.get(exception.code, ErrorType.SYSTEM),
                severity=ErrorSeverity.CRITICAL,
                details=exception.details,
                trace_id=trace_id or str(uuid4())
            )

        return cls(
            error_code="INTERNAL_ERROR",
            message=str(exception),
            error_type=ErrorType.SYSTEM,
            severity=ErrorSeverity.ERROR,
            trace_id=trace_id or str(uuid4())
        )
