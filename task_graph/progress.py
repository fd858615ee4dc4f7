"""
Progress Reporter.
Read-only metrics derived from live graph state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from .dag import TaskGraph, TaskStatus, utcnow
from .events import EventStream


@dataclass
class ProgressSnapshot:
    """Point-in-time view of a run."""
    session_id: str
    total_nodes: int
    completed_nodes: List[str] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    executing_nodes: List[str] = field(default_factory=list)
    blocked_nodes: List[str] = field(default_factory=list)
    current_node: Optional[str] = None
    progress: float = 0.0
    average_duration_seconds: float = 0.0
    throughput: float = 0.0
    parallelism_width: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "total_nodes": self.total_nodes,
            "completed_nodes": self.completed_nodes,
            "failed_nodes": self.failed_nodes,
            "executing_nodes": self.executing_nodes,
            "blocked_nodes": self.blocked_nodes,
            "current_node": self.current_node,
            "progress": round(self.progress, 4),
            "average_duration_seconds": round(self.average_duration_seconds, 3),
            "throughput": round(self.throughput, 4),
            "parallelism_width": round(self.parallelism_width, 4),
        }


class ProgressReporter:
    """
    Computes progress metrics for a graph.

    Never mutates the graph, so it can be polled at any time.
    """

    def snapshot(self, graph: TaskGraph, now: Optional[datetime] = None) -> ProgressSnapshot:
        """
        Take a snapshot of the graph's progress.

        Args:
            graph: Graph to inspect
            now: Reference time for throughput (defaults to now, or the
                graph's completion time once finished)
        """
        completed = graph.ids_with_status(TaskStatus.COMPLETED)
        failed = graph.ids_with_status(TaskStatus.FAILED)
        executing = graph.ids_with_status(TaskStatus.IN_PROGRESS)
        total = graph.total_nodes

        durations = [
            node.duration_seconds
            for node in graph.get_all_nodes()
            if node.status.is_terminal and node.duration_seconds is not None
        ]

        reference = now or graph.completed_at or utcnow()
        # measured from the start of the run, not graph construction
        elapsed = (reference - (graph.started_at or graph.created_at)).total_seconds()

        levels = graph.execution_levels()
        widest = max((len(level) for level in levels), default=0)

        return ProgressSnapshot(
            session_id=graph.session_id,
            total_nodes=total,
            completed_nodes=completed,
            failed_nodes=failed,
            executing_nodes=executing,
            blocked_nodes=sorted(graph.blocked_by_failure().keys()),
            current_node=executing[0] if len(executing) == 1 else None,
            progress=(len(completed) / total) if total else 0.0,
            average_duration_seconds=(sum(durations) / len(durations)) if durations else 0.0,
            throughput=(len(completed) / elapsed) if elapsed > 0 else 0.0,
            parallelism_width=(widest / total) if total else 0.0,
        )

    async def follow(self, graph: TaskGraph, events: EventStream) -> AsyncIterator[ProgressSnapshot]:
        """Yield a fresh snapshot for every event of this graph's session until the run ends."""
        subscription = events.subscribe()
        try:
            async for event in subscription:
                if event.session_id != graph.session_id:
                    continue
                yield self.snapshot(graph)
                if event.type.ends_run:
                    break
        finally:
            subscription.unsubscribe()
