"""
Pytest Configuration and Fixtures

Shared fixtures and a scripted fake agent backend.
"""

import asyncio
from typing import Dict, Iterable, List, Optional

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from agents.runtime import AgentBackend, AgentRequest, completed, executing, failed, needs_feedback
from task_graph.dag import TaskGraph, TaskNode


class ScriptedBackend(AgentBackend):
    """
    Fake agent backend driven by per-node scripts.

    Args:
        outputs: node id -> raw output on success
        delays: node id -> seconds to "work" before finishing
        failures: node id -> error message (node fails)
        hang: node ids that never finish
        questions: node id -> feedback prompt asked before finishing
    """

    def __init__(
        self,
        outputs: Optional[Dict[str, str]] = None,
        delays: Optional[Dict[str, float]] = None,
        failures: Optional[Dict[str, str]] = None,
        hang: Iterable[str] = (),
        questions: Optional[Dict[str, str]] = None,
        default_delay: float = 0.01,
    ):
        self.outputs = outputs or {}
        self.delays = delays or {}
        self.failures = failures or {}
        self.hang = set(hang)
        self.questions = questions or {}
        self.default_delay = default_delay

        self.requests: List[AgentRequest] = []
        self.finished: List[str] = []
        self.answers: Dict[str, str] = {}
        self.active = 0
        self.max_active = 0
        self.overlaps: List[set] = []
        self._running: set = set()

    def request_for(self, node_id: str) -> AgentRequest:
        return next(r for r in self.requests if r.node_id == node_id)

    def started_order(self) -> List[str]:
        return [r.node_id for r in self.requests]

    async def execute(self, request: AgentRequest):
        node_id = request.node_id
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self._running.add(node_id)
        self.overlaps.append(set(self._running))
        try:
            yield executing(text_chunk=f"working on {node_id}\n", progress=0.1)

            if node_id in self.questions:
                yield needs_feedback(self.questions[node_id])

            if node_id in self.hang:
                await asyncio.sleep(3600)

            await asyncio.sleep(self.delays.get(node_id, self.default_delay))

            if node_id in self.failures:
                yield failed(self.failures[node_id])
                return

            output = self.outputs.get(node_id, f"## Decisions\n- {node_id} done\n")
            if node_id in self.answers:
                output += f"\nNote: answer was {self.answers[node_id]}\n"
            yield completed(output)
        finally:
            self.active -= 1
            self._running.discard(node_id)
            self.finished.append(node_id)

    async def provide_feedback(self, request: AgentRequest, answer: str) -> None:
        self.answers[request.node_id] = answer


def make_graph(edges: Dict[str, List[str]], **kwargs) -> TaskGraph:
    """Graph from {node_id: [dependency ids]} with an agent preset on every node."""
    nodes = [
        TaskNode(id=node_id, instruction=f"Do {node_id}", dependencies=list(deps), agent="assistant")
        for node_id, deps in edges.items()
    ]
    return TaskGraph(nodes, **kwargs)


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def diamond_graph() -> TaskGraph:
    """A -> (B, C) -> D"""
    return make_graph({"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]})


@pytest.fixture
def profiles_yaml(tmp_path):
    path = tmp_path / "agents.yaml"
    path.write_text(
        "agents:\n"
        "  - name: assistant\n"
        "    role: Assistant\n"
        "    priority: 1\n"
        "    responsibilities: [Answer general questions]\n"
        "  - name: backend-developer\n"
        "    role: Backend Developer\n"
        "    priority: 3\n"
        "    responsibilities: [Implement server endpoints]\n"
        "  - name: tester\n"
        "    role: Tester\n"
        "    priority: 2\n"
        "    responsibilities: [Write unit tests]\n",
        encoding="utf-8",
    )
    return path
