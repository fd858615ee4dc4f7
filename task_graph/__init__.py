"""
Task Graph system.
Provides dependency-aware execution of agent task graphs.
"""

from .dag import TaskGraph, TaskNode, TaskStatus
from .interpreter import OutputInterpreter, StructuredResult
from .enrichment import ContextEnricher, EnrichedInput
from .events import EventStream, EventType, ProgressEvent
from .progress import ProgressReporter, ProgressSnapshot
from .executor import ExecutionConfig, ExecutionResult, GraphExecutor
from .coordinator import GraphCoordinator

__all__ = [
    # DAG
    "TaskGraph",
    "TaskNode",
    "TaskStatus",
    # Results and context
    "OutputInterpreter",
    "StructuredResult",
    "ContextEnricher",
    "EnrichedInput",
    # Progress
    "EventStream",
    "EventType",
    "ProgressEvent",
    "ProgressReporter",
    "ProgressSnapshot",
    # Executor
    "ExecutionConfig",
    "ExecutionResult",
    "GraphExecutor",
    "GraphCoordinator",
]
