"""
Graph Executor for executing task graphs.
Schedules ready nodes under a parallelism bound, enriches them with upstream
results, runs them through an agent backend and records every transition.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from agents.feedback import FeedbackChannel, FeedbackRequest
from agents.router import TaskRouter
from agents.runtime import AgentBackend, AgentRequest, AgentStatus
from errors import (
    ErrorResponse,
    GraphEngineError,
    PersistenceFailure,
    RunCancelledError,
    RunTimeoutError,
    TaskExecutionFailure,
    UnsatisfiableGraphError,
)
from models.graph_spec import ExecutionMode
from services.state_store import StateStore

from .dag import TaskGraph, TaskNode, TaskStatus, utcnow
from .enrichment import ContextEnricher, EnrichedInput
from .events import EventStream, EventType
from .interpreter import OutputInterpreter, StructuredResult

logger = logging.getLogger(__name__)


DEFAULT_TOOL_PERMISSIONS = [
    "Bash", "Read", "Write", "Edit", "MultiEdit", "Glob", "Grep",
    "WebFetch", "WebSearch", "NotebookEdit", "Task",
]

PARALLELISM_LEVELS = {"low": 1, "medium": 2, "high": 4}


@dataclass
class ExecutionConfig:
    """Configuration for graph execution."""
    max_parallel: int = 3
    mode: Optional[ExecutionMode] = None  # None: use the graph's mode
    task_timeout_seconds: Optional[float] = 300
    run_timeout_seconds: Optional[float] = 900
    tool_permissions: List[str] = field(default_factory=lambda: list(DEFAULT_TOOL_PERMISSIONS))
    turn_limit: int = 10
    default_agent: str = "assistant"

    def __post_init__(self):
        if self.max_parallel < 1:
            raise ValueError(f"max_parallel must be at least 1, got {self.max_parallel}")
        if self.mode is not None:
            self.mode = ExecutionMode(self.mode)
        for name in ("task_timeout_seconds", "run_timeout_seconds"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

    @classmethod
    def from_parallelism_level(cls, level: str, **kwargs) -> "ExecutionConfig":
        """Map "low" / "medium" / "high" to a max_parallel of 1 / 2 / 4."""
        try:
            max_parallel = PARALLELISM_LEVELS[level.lower()]
        except KeyError:
            raise ValueError(
                f"Unknown parallelism level '{level}', expected one of {', '.join(PARALLELISM_LEVELS)}"
            ) from None
        return cls(max_parallel=max_parallel, **kwargs)


@dataclass
class ExecutionResult:
    """Aggregate outcome of one run."""
    success: bool
    session_id: str
    results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    node_durations: Dict[str, float] = field(default_factory=dict)
    completed_nodes: List[str] = field(default_factory=list)
    failed_nodes: Dict[str, str] = field(default_factory=dict)
    blocked_nodes: List[str] = field(default_factory=list)
    total_execution_seconds: float = 0.0
    persistence_failures: int = 0
    error: Optional[ErrorResponse] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "results": self.results,
            "node_durations": {k: round(v, 3) for k, v in self.node_durations.items()},
            "completed_nodes": self.completed_nodes,
            "failed_nodes": self.failed_nodes,
            "blocked_nodes": self.blocked_nodes,
            "total_execution_seconds": round(self.total_execution_seconds, 3),
            "persistence_failures": self.persistence_failures,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class NodeOutcome:
    """What a finished task reports back to the control loop."""
    node_id: str
    success: bool
    finished_at: datetime
    result: Optional[StructuredResult] = None
    reason: Optional[str] = None
    timed_out: bool = False


class GraphExecutor:
    """
    Executes a task graph respecting dependencies and parallelism.

    One control loop owns the graph. Each dispatched node runs as an
    asyncio task that talks to the agent backend and the state store, then
    reports a NodeOutcome on the completion queue. The loop applies
    outcomes one at a time in arrival order, so node transitions never race.

    Features:
    - Bounded parallel dispatch of ready nodes
    - Context enrichment from dependency results
    - Per-task and whole-run timeouts
    - Human feedback without blocking sibling tasks
    - Failure containment (siblings keep running)

    Example:
        executor = GraphExecutor(graph, backend=SubprocessAgentBackend())
        result = await executor.execute()
    """

    def __init__(
        self,
        graph: TaskGraph,
        backend: AgentBackend,
        config: Optional[ExecutionConfig] = None,
        router: Optional[TaskRouter] = None,
        state_store: Optional[StateStore] = None,
        feedback: Optional[FeedbackChannel] = None,
        events: Optional[EventStream] = None,
        enricher: Optional[ContextEnricher] = None,
        interpreter: Optional[OutputInterpreter] = None,
    ):
        """
        Initialize the graph executor.

        Args:
            graph: The task graph to execute
            backend: Runs the agent for each node
            config: Execution configuration
            router: Picks an agent for nodes without one
            state_store: Durable record of inputs, outputs and statuses
            feedback: Answers agents that ask for human input
            events: Progress event stream
        """
        self.graph = graph
        self.backend = backend
        self.config = config or ExecutionConfig()
        self.router = router
        self.state_store = state_store
        self.feedback = feedback
        self.events = events or EventStream()
        self.enricher = enricher or ContextEnricher()
        self.interpreter = interpreter or OutputInterpreter()

        self._in_flight: Dict[str, asyncio.Task] = {}
        self._completions: Optional[asyncio.Queue] = None
        self._persistence_failures = 0
        self._started = False
        self._finished = False
        self._cancel_reason: Optional[str] = None
        self._order_position: Optional[Dict[str, int]] = None

    @property
    def mode(self) -> ExecutionMode:
        return self.config.mode or self.graph.mode

    @property
    def max_parallel(self) -> int:
        if self.mode == ExecutionMode.SEQUENTIAL:
            return 1
        return self.config.max_parallel

    @property
    def session_id(self) -> str:
        return self.graph.session_id

    def cancel(self, reason: str = "Cancelled by user") -> bool:
        """
        Stop the run: no further dispatch, in-flight nodes are cancelled and failed.

        Safe to call from any coroutine on the executor's loop, including
        before execute() starts. Returns False if the run already finished.
        """
        if self._finished:
            return False
        if self._cancel_reason is None:
            self._cancel_reason = reason
            logger.info(f"Cancel requested for graph {self.session_id}: {reason}")
            if self._completions is not None:
                # wakes the control loop if it is waiting for a completion
                self._completions.put_nowait(None)
        return True

    async def execute(self) -> ExecutionResult:
        """
        Run the graph until every node is terminal or the run cannot continue.

        Graph-level problems (unsatisfiable graph, run timeout, cancel) are returned
        in ExecutionResult.error. Node failures are recorded per node.

        Returns:
            ExecutionResult
        """
        if self._started:
            raise RuntimeError(f"Graph {self.session_id} was already executed by this executor")
        self._started = True

        self._completions = asyncio.Queue()
        start = time.monotonic()
        self.graph.started_at = utcnow()
        error: Optional[GraphEngineError] = None

        logger.info(
            f"Starting graph {self.session_id}: {self.graph.total_nodes} node(s), "
            f"mode={self.mode.value}, max_parallel={self.max_parallel}"
        )
        self.events.emit(
            EventType.GRAPH_STARTED, self.session_id,
            message=f"Executing {self.graph.total_nodes} node(s)",
            total_nodes=self.graph.total_nodes,
            mode=self.mode.value,
        )
        await self._persist_graph()

        try:
            await self._run_loop(start)
        except RunCancelledError as e:
            logger.warning(f"Graph {self.session_id} cancelled: {e.message}")
            self.events.emit(
                EventType.GRAPH_CANCELLED, self.session_id,
                message=e.message,
                interrupted=e.details["interrupted_nodes"],
            )
            error = e
        except (UnsatisfiableGraphError, RunTimeoutError) as e:
            logger.error(f"Graph {self.session_id} stopped: {e.message}")
            error = e
        finally:
            await self._cancel_in_flight()
            self._finished = True

        result = self._build_result(time.monotonic() - start, error)
        await self._persist_graph()

        if result.success:
            logger.info(
                f"Graph {self.session_id} complete: {len(result.completed_nodes)} node(s) "
                f"in {result.total_execution_seconds:.2f}s"
            )
            self.events.emit(
                EventType.GRAPH_COMPLETED, self.session_id,
                message="All nodes completed",
                completed=len(result.completed_nodes),
            )
        else:
            logger.warning(
                f"Graph {self.session_id} finished with {len(result.failed_nodes)} failed "
                f"and {len(result.blocked_nodes)} blocked node(s)"
            )
            self.events.emit(
                EventType.GRAPH_FAILED, self.session_id,
                message=error.message if error else "One or more nodes failed",
                failed=sorted(result.failed_nodes),
                blocked=result.blocked_nodes,
                error=error.code if error else None,
            )

        return result

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def _run_loop(self, start: float) -> None:
        run_timeout = self.config.run_timeout_seconds
        deadline = start + run_timeout if run_timeout else None

        while not self.graph.all_terminal():
            if self._cancel_reason is not None:
                interrupted = await self._abort_in_flight(self._cancel_reason)
                raise RunCancelledError(self._cancel_reason, interrupted)

            executing = set(self._in_flight)
            ready = self.graph.ready_nodes(self.graph.completed_ids(), executing)

            if not ready and not executing:
                pending = self.graph.ids_with_status(TaskStatus.PENDING)
                raise UnsatisfiableGraphError(pending, self.graph.blocked_by_failure())

            if deadline is not None and time.monotonic() >= deadline:
                interrupted = await self._abort_in_flight(f"Run timed out after {run_timeout}s",
                                                          timed_out=True)
                raise RunTimeoutError(run_timeout, interrupted)

            slots = self.max_parallel - len(executing)
            for node in self._rank(ready)[:max(slots, 0)]:
                self._dispatch(node)

            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            try:
                outcome = await asyncio.wait_for(self._completions.get(), timeout=remaining)
            except asyncio.TimeoutError:
                interrupted = await self._abort_in_flight(f"Run timed out after {run_timeout}s",
                                                          timed_out=True)
                raise RunTimeoutError(run_timeout, interrupted)

            if outcome is not None:
                await self._apply(outcome)

    def _rank(self, ready: List[TaskNode]) -> List[TaskNode]:
        """Order ready nodes for dispatch according to the execution mode."""
        if self.mode == ExecutionMode.SEQUENTIAL:
            if self._order_position is None:
                # the graph's shape is fixed for the run, so the order is computed once
                self._order_position = {
                    task_id: i for i, task_id in enumerate(self.graph.topological_order())
                }
            return sorted(ready, key=lambda node: self._order_position[node.id])

        if self.mode == ExecutionMode.ENRICHMENT_AWARE:
            # nodes with more upstream context first; stable for equal counts
            return sorted(ready, key=lambda node: len(node.dependencies), reverse=True)

        return list(ready)

    def _dispatch(self, node: TaskNode) -> None:
        if node.agent is None:
            self._route(node)

        enriched = self.enricher.enrich(node, self.graph)
        self.graph.mark_in_progress(node.id)

        logger.info(
            f"Dispatching {node.id} to {node.agent}"
            + (f" with context from {', '.join(enriched.predecessor_ids)}" if enriched.enriched else "")
        )
        self.events.emit(
            EventType.NODE_STARTED, self.session_id, node.id,
            message=f"{node.agent} started",
            agent=node.agent,
            enriched=enriched.enriched,
            predecessors=list(enriched.predecessor_ids),
        )

        task = asyncio.create_task(self._run_node(node.id, node.agent, enriched))
        self._in_flight[node.id] = task

    def _route(self, node: TaskNode) -> None:
        if self.router is None:
            node.agent = self.config.default_agent
            return

        decision = self.router.route(node.instruction)
        node.agent = decision.primary
        node.metadata["routing"] = decision.to_dict()
        logger.debug(f"Routed {node.id} to {decision.primary} ({decision.confidence}%)")

    async def _apply(self, outcome: NodeOutcome) -> None:
        self._in_flight.pop(outcome.node_id, None)

        if outcome.success:
            self.graph.mark_completed(outcome.node_id, outcome.result, at=outcome.finished_at)
            logger.info(f"Node {outcome.node_id} completed")
            self.events.emit(
                EventType.NODE_COMPLETED, self.session_id, outcome.node_id,
                message="completed",
                has_structure=outcome.result.has_structure(),
            )
        else:
            self.graph.mark_failed(outcome.node_id, outcome.reason, at=outcome.finished_at)
            logger.warning(f"Node {outcome.node_id} failed: {outcome.reason}")
            self.events.emit(
                EventType.NODE_FAILED, self.session_id, outcome.node_id,
                message=outcome.reason,
                timed_out=outcome.timed_out,
            )

    async def _abort_in_flight(self, reason: str, timed_out: bool = False) -> List[str]:
        """
        Stop every in-flight task for a run timeout or a cancel request.

        Outcomes that already arrived are applied first; whatever is still
        in progress after cancellation is failed. Returns the interrupted ids.
        """
        for outcome in self._drain_completions():
            await self._apply(outcome)

        await self._cancel_in_flight()

        interrupted = sorted(self._in_flight)
        for node_id in interrupted:
            finished_at = utcnow()
            await self._record_failure(node_id, reason, finished_at, timed_out=timed_out)
            await self._apply(NodeOutcome(node_id=node_id, success=False, finished_at=finished_at,
                                          reason=reason, timed_out=timed_out))
        return interrupted

    def _drain_completions(self) -> List[NodeOutcome]:
        outcomes = []
        while self._completions is not None and not self._completions.empty():
            outcome = self._completions.get_nowait()
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def _cancel_in_flight(self) -> None:
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # tasks that finished before the cancel landed still reported
        for outcome in self._drain_completions():
            if outcome.node_id in self._in_flight:
                await self._apply(outcome)

    # ------------------------------------------------------------------
    # Per-node task
    # ------------------------------------------------------------------

    async def _run_node(self, node_id: str, agent: str, enriched: EnrichedInput) -> None:
        try:
            outcome = await self._execute_node(node_id, agent, enriched)
        except Exception as e:
            logger.exception(f"Unexpected error while running {node_id}")
            outcome = NodeOutcome(node_id=node_id, success=False, finished_at=utcnow(),
                                  reason=str(e) or type(e).__name__)
        self._completions.put_nowait(outcome)

    async def _execute_node(self, node_id: str, agent: str, enriched: EnrichedInput) -> NodeOutcome:
        await self._persist(node_id, "input", enriched.to_dict())
        await self._persist(node_id, "status", self._status_record(TaskStatus.IN_PROGRESS, agent))

        request = AgentRequest(
            node_id=node_id,
            session_id=self.session_id,
            agent=agent,
            instruction=enriched.effective_instruction,
            tool_permissions=list(self.config.tool_permissions),
            turn_limit=self.config.turn_limit,
        )

        try:
            raw_output = await asyncio.wait_for(
                self._invoke_agent(request),
                timeout=self.config.task_timeout_seconds,
            )
        except asyncio.TimeoutError:
            failure = TaskExecutionFailure(
                node_id, f"Timed out after {self.config.task_timeout_seconds}s", timed_out=True
            )
        except TaskExecutionFailure as e:
            failure = e
        except Exception as e:
            logger.debug(f"Agent backend raised for {node_id}: {e!r}")
            failure = TaskExecutionFailure(node_id, str(e) or type(e).__name__)
        else:
            result = self.interpreter.interpret(raw_output)
            finished_at = utcnow()
            await self._persist(node_id, "output", result.to_dict())
            await self._persist(node_id, "status", self._status_record(TaskStatus.COMPLETED, agent))
            return NodeOutcome(node_id=node_id, success=True, finished_at=finished_at, result=result)

        finished_at = utcnow()
        await self._record_failure(node_id, failure.reason, finished_at, timed_out=failure.timed_out,
                                   agent=agent)
        return NodeOutcome(node_id=node_id, success=False, finished_at=finished_at,
                           reason=failure.reason, timed_out=failure.timed_out)

    async def _invoke_agent(self, request: AgentRequest) -> str:
        """Consume the backend stream and return the raw output of a successful run."""
        chunks: List[str] = []
        stream = self.backend.execute(request)
        try:
            async for update in stream:
                if update.text_chunk:
                    chunks.append(update.text_chunk)
                    self.events.emit(
                        EventType.NODE_PROGRESS, request.session_id, request.node_id,
                        message=update.text_chunk,
                        progress=update.progress,
                        status=update.status.value,
                    )

                if update.needs_feedback:
                    answer = await self._ask_human(request, update.feedback_prompt or "")
                    await self.backend.provide_feedback(request, answer)
                    continue

                if update.status == AgentStatus.COMPLETED:
                    if update.result_text is not None:
                        return update.result_text
                    return "".join(chunks)

                if update.status == AgentStatus.FAILED:
                    raise TaskExecutionFailure(request.node_id, update.error or "Agent reported failure")
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        raise TaskExecutionFailure(request.node_id, "Agent stream ended without a result")

    async def _ask_human(self, request: AgentRequest, prompt: str) -> str:
        if self.feedback is None:
            raise TaskExecutionFailure(
                request.node_id, f"Agent requested feedback but no feedback channel is configured: {prompt}"
            )

        self.events.emit(
            EventType.FEEDBACK_REQUESTED, request.session_id, request.node_id,
            message=prompt, agent=request.agent,
        )
        answer = await self.feedback.request(FeedbackRequest(
            session_id=request.session_id,
            node_id=request.node_id,
            agent=request.agent,
            prompt=prompt,
        ))
        self.events.emit(
            EventType.FEEDBACK_RECEIVED, request.session_id, request.node_id,
            message=answer,
        )
        return answer

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _status_record(status: TaskStatus, agent: Optional[str], **extra) -> Dict[str, Any]:
        record = {"status": status.value, "agent": agent, "updated_at": utcnow().isoformat()}
        record.update(extra)
        return record

    async def _record_failure(self, node_id: str, reason: str, finished_at: datetime,
                              timed_out: bool = False, agent: Optional[str] = None) -> None:
        if agent is None:
            agent = self.graph.get_node(node_id).agent
        await self._persist(node_id, "error", {
            "reason": reason,
            "timed_out": timed_out,
            "finished_at": finished_at.isoformat(),
        })
        await self._persist(node_id, "status", self._status_record(TaskStatus.FAILED, agent, reason=reason))

    async def _persist(self, node_id: str, kind: str, record: Dict[str, Any]) -> None:
        if self.state_store is None:
            return
        try:
            await self.state_store.put(self.session_id, node_id, kind, record)
        except Exception as e:
            self._persistence_failed(PersistenceFailure(self.session_id, node_id, kind, str(e)))

    async def _persist_graph(self) -> None:
        if self.state_store is None:
            return
        try:
            await self.state_store.write_graph(self.session_id, self.graph.to_dict())
        except Exception as e:
            self._persistence_failed(PersistenceFailure(self.session_id, None, "graph", str(e)))

    def _persistence_failed(self, failure: PersistenceFailure) -> None:
        self._persistence_failures += 1
        logger.warning(failure.message)
        self.events.emit(
            EventType.PERSISTENCE_FAILED, self.session_id, failure.details.get("node_id"),
            message=failure.message,
            kind=failure.details.get("kind"),
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _build_result(self, elapsed: float, error: Optional[GraphEngineError]) -> ExecutionResult:
        results: Dict[str, Dict[str, Any]] = {}
        durations: Dict[str, float] = {}
        completed: List[str] = []
        failed: Dict[str, str] = {}

        for node in self.graph.get_all_nodes():
            if node.duration_seconds is not None:
                durations[node.id] = node.duration_seconds
            if node.status == TaskStatus.COMPLETED:
                completed.append(node.id)
                results[node.id] = node.result.to_dict()
            elif node.status == TaskStatus.FAILED:
                failed[node.id] = node.failure_reason or ""

        blocked = self.graph.ids_with_status(TaskStatus.PENDING)

        return ExecutionResult(
            success=error is None and not failed and not blocked,
            session_id=self.session_id,
            results=results,
            node_durations=durations,
            completed_nodes=completed,
            failed_nodes=failed,
            blocked_nodes=blocked,
            total_execution_seconds=elapsed,
            persistence_failures=self._persistence_failures,
            error=ErrorResponse.from_exception(error) if error else None,
        )

    def get_progress(self) -> Dict[str, Any]:
        """Get current execution progress."""
        stats = self.graph.get_stats()
        return {
            "total": stats["total_tasks"],
            "completed": stats["status_counts"].get("completed", 0),
            "failed": stats["status_counts"].get("failed", 0),
            "active": len(self._in_flight),
        }
