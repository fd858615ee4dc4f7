"""
Directed graph of agent tasks.
Represents tasks, their dependencies and accumulated results for one session.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from errors import GraphValidationError, InvalidTransitionError, UnknownDependencyError
from models.graph_spec import ExecutionMode, GraphSpec

from .interpreter import StructuredResult

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Status of a task node."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class TaskNode:
    """
    A node in the task graph.

    Represents a single unit of agent work with dependencies and execution state.
    """
    id: str
    instruction: str
    dependencies: List[str] = field(default_factory=list)
    agent: Optional[str] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[StructuredResult] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # de-duplicate while keeping declaration order
        self.dependencies = list(dict.fromkeys(self.dependencies))

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "agent": self.agent,
            "instruction": self.instruction,
            "dependencies": list(self.dependencies),
            "inputs": self.inputs,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "failure_reason": self.failure_reason,
            "metadata": self.metadata,
        }


class TaskGraph:
    """
    Execution graph for one session.

    Dependencies are validated at construction. Cycles are not rejected here;
    the executor reports them as an unsatisfiable graph at run time.

    Example:
        graph = TaskGraph([
            TaskNode(id="schema", instruction="Design the user schema"),
            TaskNode(id="api", instruction="Build the users API", dependencies=["schema"]),
        ])

        executor = GraphExecutor(graph, backend=my_backend)
        result = await executor.execute()
    """

    def __init__(
        self,
        nodes: Iterable[TaskNode],
        session_id: Optional[str] = None,
        mode: ExecutionMode = ExecutionMode.ENRICHMENT_AWARE,
        query: Optional[str] = None,
    ):
        """
        Initialize the task graph.

        Args:
            nodes: Task nodes in insertion order
            session_id: Session identifier (generated if omitted)
            mode: Scheduling mode
            query: The goal this graph was decomposed from

        Raises:
            GraphValidationError: If node ids are not unique
            UnknownDependencyError: If a dependency id is not in the graph
        """
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self.mode = ExecutionMode(mode)
        self.query = query
        self.created_at = utcnow()
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self._nodes: Dict[str, TaskNode] = {}

        for node in nodes:
            if node.id in self._nodes:
                raise GraphValidationError(f"Duplicate node id: {node.id}", node_id=node.id)
            self._nodes[node.id] = node

        for node in self._nodes.values():
            for dep_id in node.dependencies:
                if dep_id not in self._nodes:
                    raise UnknownDependencyError(node.id, dep_id)

        logger.debug(f"Built graph {self.session_id} with {len(self._nodes)} node(s)")

    @classmethod
    def from_spec(cls, spec: GraphSpec) -> "TaskGraph":
        """Build a graph from decomposition output."""
        nodes = [
            TaskNode(
                id=node.id,
                instruction=node.instruction,
                dependencies=list(node.dependencies),
                agent=node.agent,
                inputs=dict(node.inputs),
            )
            for node in spec.nodes
        ]
        return cls(nodes, session_id=spec.session_id, mode=spec.mode, query=spec.query)

    @property
    def total_nodes(self) -> int:
        return len(self._nodes)

    def get_node(self, task_id: str) -> Optional[TaskNode]:
        """Get a task node by ID."""
        return self._nodes.get(task_id)

    def get_all_nodes(self) -> List[TaskNode]:
        """Get all task nodes in insertion order."""
        return list(self._nodes.values())

    def node_ids(self) -> List[str]:
        return list(self._nodes.keys())

    def dependents(self, task_id: str) -> List[str]:
        """Nodes that list task_id as a dependency."""
        return [node.id for node in self._nodes.values() if task_id in node.dependencies]

    def ids_with_status(self, status: TaskStatus) -> List[str]:
        return [node.id for node in self._nodes.values() if node.status == status]

    def completed_ids(self) -> Set[str]:
        return set(self.ids_with_status(TaskStatus.COMPLETED))

    def all_terminal(self) -> bool:
        return all(node.status.is_terminal for node in self._nodes.values())

    def ready_nodes(self, completed: Set[str], executing: Set[str]) -> List[TaskNode]:
        """
        Pending nodes that are not executing and whose dependencies are all completed.

        Args:
            completed: IDs of completed nodes
            executing: IDs of nodes currently in flight

        Returns:
            Ready nodes in insertion order
        """
        return [
            node for node in self._nodes.values()
            if node.status == TaskStatus.PENDING
            and node.id not in executing
            and all(dep_id in completed for dep_id in node.dependencies)
        ]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_in_progress(self, task_id: str, at: Optional[datetime] = None) -> TaskNode:
        node = self._require(task_id)
        if node.status != TaskStatus.PENDING:
            raise InvalidTransitionError(task_id, node.status.value, TaskStatus.IN_PROGRESS.value)

        unfinished = [
            dep_id for dep_id in node.dependencies
            if self._nodes[dep_id].status != TaskStatus.COMPLETED
        ]
        if unfinished:
            raise InvalidTransitionError(
                task_id, node.status.value, TaskStatus.IN_PROGRESS.value,
                reason=f"dependencies not completed: {', '.join(unfinished)}",
            )

        node.status = TaskStatus.IN_PROGRESS
        node.started_at = at or utcnow()
        return node

    def mark_completed(
        self,
        task_id: str,
        result: StructuredResult,
        at: Optional[datetime] = None,
    ) -> TaskNode:
        node = self._require(task_id)
        if node.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(task_id, node.status.value, TaskStatus.COMPLETED.value)
        if node.result is not None:
            raise InvalidTransitionError(
                task_id, node.status.value, TaskStatus.COMPLETED.value,
                reason="result already set",
            )

        node.result = result
        node.status = TaskStatus.COMPLETED
        node.finished_at = self._finish_time(node, at)
        self._check_completion()
        return node

    def mark_failed(self, task_id: str, reason: str, at: Optional[datetime] = None) -> TaskNode:
        node = self._require(task_id)
        if node.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(task_id, node.status.value, TaskStatus.FAILED.value)

        node.status = TaskStatus.FAILED
        node.failure_reason = reason
        node.finished_at = self._finish_time(node, at)
        self._check_completion()
        return node

    # ------------------------------------------------------------------
    # Ordering and diagnostics
    # ------------------------------------------------------------------

    def topological_order(self) -> List[str]:
        """
        Depth-first post-order over dependencies (dependencies first).

        Tolerates cycles: a node already on the path is not revisited, so
        cyclic nodes still appear exactly once.
        """
        visited: Set[str] = set()
        order: List[str] = []

        for root_id in self._nodes:
            if root_id in visited:
                continue
            visited.add(root_id)
            # (node id, index of the next dependency to visit)
            stack = [(root_id, 0)]
            while stack:
                task_id, index = stack[-1]
                dependencies = self._nodes[task_id].dependencies
                if index < len(dependencies):
                    stack[-1] = (task_id, index + 1)
                    dep_id = dependencies[index]
                    if dep_id not in visited:
                        visited.add(dep_id)
                        stack.append((dep_id, 0))
                else:
                    stack.pop()
                    order.append(task_id)

        return order

    def execution_levels(self) -> List[List[str]]:
        """
        Group node ids into levels that could run side by side.

        Nodes caught in a cycle never become ready and are left out.
        """
        levels = []
        remaining = list(self._nodes.keys())
        placed: Set[str] = set()

        while remaining:
            level = [
                task_id for task_id in remaining
                if all(dep_id in placed for dep_id in self._nodes[task_id].dependencies)
            ]
            if not level:
                logger.debug(f"{len(remaining)} node(s) unreachable while leveling (cycle)")
                break
            levels.append(level)
            placed.update(level)
            remaining = [task_id for task_id in remaining if task_id not in placed]

        return levels

    def blocked_by_failure(self) -> Dict[str, List[str]]:
        """Pending nodes mapped to the failed nodes they transitively depend on."""
        blocked: Dict[str, List[str]] = {}

        for node in self._nodes.values():
            if node.status != TaskStatus.PENDING:
                continue
            failed = []
            seen: Set[str] = set()
            stack = list(node.dependencies)
            while stack:
                dep_id = stack.pop()
                if dep_id in seen:
                    continue
                seen.add(dep_id)
                dep = self._nodes[dep_id]
                if dep.status == TaskStatus.FAILED:
                    failed.append(dep_id)
                stack.extend(dep.dependencies)
            if failed:
                blocked[node.id] = sorted(failed)

        return blocked

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the graph."""
        status_counts = {}
        for status in TaskStatus:
            status_counts[status.value] = sum(
                1 for node in self._nodes.values()
                if node.status == status
            )

        return {
            "total_tasks": len(self._nodes),
            "status_counts": status_counts,
            "session_id": self.session_id,
            "mode": self.mode.value,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert graph to dictionary."""
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "query": self.query,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "nodes": {
                task_id: node.to_dict()
                for task_id, node in self._nodes.items()
            },
            "stats": self.get_stats(),
        }

    def visualize_dot(self) -> str:
        """
        Generate DOT format for visualization with Graphviz.

        Returns:
            DOT format string
        """
        lines = ["digraph TaskGraph {"]
        lines.append("  rankdir=TB;")
        lines.append("  node [shape=box];")

        blocked = self.blocked_by_failure()
        for node in self._nodes.values():
            status = TaskStatus.BLOCKED if node.id in blocked else node.status
            color = {
                TaskStatus.PENDING: "lightgray",
                TaskStatus.IN_PROGRESS: "lightblue",
                TaskStatus.COMPLETED: "lightgreen",
                TaskStatus.FAILED: "red",
                TaskStatus.BLOCKED: "orange",
            }.get(status, "white")

            label = f"{node.id}\\n{node.agent or 'unassigned'}\\n({status.value})"
            lines.append(f'  "{node.id}" [label="{label}", fillcolor="{color}", style=filled];')

        for node in self._nodes.values():
            for dep_id in node.dependencies:
                lines.append(f'  "{dep_id}" -> "{node.id}";')

        lines.append("}")
        return "\n".join(lines)

    def _require(self, task_id: str) -> TaskNode:
        node = self._nodes.get(task_id)
        if node is None:
            raise KeyError(f"Task not found: {task_id}")
        return node

    @staticmethod
    def _finish_time(node: TaskNode, at: Optional[datetime]) -> datetime:
        finished = at or utcnow()
        if node.started_at and finished < node.started_at:
            finished = node.started_at
        return finished

    def _check_completion(self) -> None:
        if self.completed_at is None and self.all_terminal():
            self.completed_at = utcnow()
