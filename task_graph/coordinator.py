"""
Graph Coordinator.
Builds a graph from decomposition output and wires the collaborators a run
needs. Each call to run() owns a fresh executor.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from agents.feedback import FeedbackChannel
from agents.router import TaskRouter
from agents.runtime import AgentBackend
from models.graph_spec import GraphSpec, load_graph_spec
from services.state_store import StateStore

from .dag import TaskGraph
from .events import EventStream
from .executor import ExecutionConfig, ExecutionResult, GraphExecutor

logger = logging.getLogger(__name__)


class GraphCoordinator:
    """
    Build, route and execute a task graph.

    Example:
        coordinator = GraphCoordinator(
            backend=SubprocessAgentBackend(),
            router=TaskRouter.from_yaml(),
            state_store=create_state_store("file", ".taskgraph/memory"),
        )
        result = await coordinator.run("graph.yaml")
    """

    def __init__(
        self,
        backend: AgentBackend,
        config: Optional[ExecutionConfig] = None,
        router: Optional[TaskRouter] = None,
        state_store: Optional[StateStore] = None,
        feedback: Optional[FeedbackChannel] = None,
    ):
        self.backend = backend
        self.config = config or ExecutionConfig()
        self.router = router
        self.state_store = state_store
        self.feedback = feedback

    def build_graph(self, spec: Union[GraphSpec, str, Path]) -> TaskGraph:
        """Validate decomposition output into a TaskGraph."""
        if not isinstance(spec, GraphSpec):
            spec = load_graph_spec(spec)
        return TaskGraph.from_spec(spec)

    def create_executor(self, graph: TaskGraph, events: Optional[EventStream] = None) -> GraphExecutor:
        return GraphExecutor(
            graph,
            backend=self.backend,
            config=self.config,
            router=self.router,
            state_store=self.state_store,
            feedback=self.feedback,
            events=events,
        )

    async def run(
        self,
        spec: Union[GraphSpec, TaskGraph, str, Path],
        events: Optional[EventStream] = None,
    ) -> ExecutionResult:
        """
        Execute a graph end to end.

        Args:
            spec: A GraphSpec, a path to a JSON/YAML graph file, or a built TaskGraph
            events: Stream to publish progress on (closed when the run ends)

        Returns:
            ExecutionResult

        Raises:
            GraphValidationError: If the graph is malformed
        """
        graph = spec if isinstance(spec, TaskGraph) else self.build_graph(spec)
        events = events or EventStream()

        executor = self.create_executor(graph, events)
        try:
            return await executor.execute()
        finally:
            events.close()
