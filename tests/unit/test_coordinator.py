"""
Graph Coordinator and Graph Spec Loading Unit Tests
"""

import json

import pytest
from pydantic import ValidationError

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import ScriptedBackend

from agents.router import TaskRouter
from errors import UnknownDependencyError
from models.graph_spec import ExecutionMode, GraphSpec, load_graph_spec
from services.state_store import InMemoryStateStore
from task_graph.coordinator import GraphCoordinator
from task_graph.events import EventStream, EventType
from task_graph.executor import ExecutionConfig


GRAPH_YAML = """\
session_id: todo-app
query: Build a todo app
mode: bounded-parallel
nodes:
  - id: schema
    instruction: Design the database schema for todos
  - id: api
    instruction: Implement the backend API
    dependencies: [schema]
  - id: tests
    instruction: Write tests for the API
    dependencies: [api]
    agent: tester
"""


class TestLoadGraphSpec:
    """load_graph_spec"""

    def test_yaml(self, tmp_path):
        path = tmp_path / "graph.yaml"
        path.write_text(GRAPH_YAML, encoding="utf-8")

        spec = load_graph_spec(path)

        assert spec.session_id == "todo-app"
        assert spec.mode == ExecutionMode.BOUNDED_PARALLEL
        assert [n.id for n in spec.nodes] == ["schema", "api", "tests"]
        assert spec.nodes[2].agent == "tester"

    def test_json(self, tmp_path):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps({"nodes": [{"id": "a", "instruction": "Do a"}]}), encoding="utf-8")

        spec = load_graph_spec(str(path))

        assert spec.mode == ExecutionMode.ENRICHMENT_AWARE
        assert spec.nodes[0].dependencies == []

    def test_missing_instruction(self, tmp_path):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps({"nodes": [{"id": "a"}]}), encoding="utf-8")

        with pytest.raises(ValidationError):
            load_graph_spec(path)


class TestGraphCoordinator:
    """GraphCoordinator tests"""

    @pytest.mark.asyncio
    async def test_run_from_file(self, tmp_path):
        path = tmp_path / "graph.yaml"
        path.write_text(GRAPH_YAML, encoding="utf-8")
        backend = ScriptedBackend()
        store = InMemoryStateStore()
        coordinator = GraphCoordinator(
            backend=backend,
            config=ExecutionConfig(task_timeout_seconds=5, run_timeout_seconds=10),
            router=TaskRouter.from_yaml(),
            state_store=store,
        )

        result = await coordinator.run(path)

        assert result.success
        assert result.session_id == "todo-app"
        assert backend.started_order() == ["schema", "api", "tests"]
        assert backend.request_for("api").agent == "backend-developer"
        assert backend.request_for("tests").agent == "tester"
        assert await store.list_nodes("todo-app") == ["api", "schema", "tests"]

    @pytest.mark.asyncio
    async def test_events_closed_after_run(self):
        spec = GraphSpec.model_validate({"nodes": [{"id": "a", "instruction": "Do a"}]})
        events = EventStream()
        subscription = events.subscribe()

        await GraphCoordinator(backend=ScriptedBackend()).run(spec, events=events)

        received = [event async for event in subscription]
        assert received[0].type == EventType.GRAPH_STARTED
        assert received[-1].type == EventType.GRAPH_COMPLETED
        assert events.closed

    @pytest.mark.asyncio
    async def test_invalid_graph_raises_before_execution(self):
        spec = GraphSpec.model_validate({
            "nodes": [{"id": "a", "instruction": "Do a", "dependencies": ["missing"]}],
        })
        backend = ScriptedBackend()

        with pytest.raises(UnknownDependencyError):
            await GraphCoordinator(backend=backend).run(spec)

        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_each_run_is_independent(self):
        coordinator = GraphCoordinator(backend=ScriptedBackend())
        spec = GraphSpec.model_validate({"nodes": [{"id": "a", "instruction": "Do a"}]})

        first = await coordinator.run(spec)
        second = await coordinator.run(spec)

        assert first.success and second.success
        assert first.session_id != second.session_id
