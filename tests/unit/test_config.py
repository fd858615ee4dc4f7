"""
Engine Configuration Unit Tests
"""

import logging

import pytest
from pydantic import ValidationError

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from models.graph_spec import ExecutionMode
from startup.engine_config import EngineConfig, configure_logging


class TestEngineConfig:
    """EngineConfig tests"""

    def test_defaults(self):
        config = EngineConfig.from_env(environ={})

        assert config.max_parallel == 3
        assert config.mode is None
        assert config.state_backend == "file"
        assert config.turn_limit == 10
        assert config.default_agent == "assistant"

    def test_reads_prefixed_variables(self):
        config = EngineConfig.from_env(environ={
            "TASKGRAPH_MAX_PARALLEL": "5",
            "TASKGRAPH_MODE": "sequential",
            "TASKGRAPH_TASK_TIMEOUT_SECONDS": "12.5",
            "TASKGRAPH_STATE_BACKEND": "Redis",
            "TASKGRAPH_TOOL_PERMISSIONS": "Read, Grep,",
            "TASKGRAPH_AGENT_COMMAND": "my-agent --prompt '{instruction}'",
            "TASKGRAPH_LOG_LEVEL": "debug",
            "UNRELATED": "1",
        })

        assert config.max_parallel == 5
        assert config.mode == ExecutionMode.SEQUENTIAL
        assert config.task_timeout_seconds == 12.5
        assert config.state_backend == "redis"
        assert config.tool_permissions == ["Read", "Grep"]
        assert config.agent_command == ["my-agent", "--prompt", "{instruction}"]
        assert config.log_level == "DEBUG"

    def test_overrides_win(self):
        config = EngineConfig.from_env(
            environ={"TASKGRAPH_MAX_PARALLEL": "5"}, max_parallel=2, state_dir=None,
        )
        assert config.max_parallel == 2

    @pytest.mark.parametrize("name,value", [
        ("TASKGRAPH_MAX_PARALLEL", "0"),
        ("TASKGRAPH_STATE_BACKEND", "sqlite"),
        ("TASKGRAPH_PARALLELISM_LEVEL", "extreme"),
        ("TASKGRAPH_LOG_LEVEL", "loud"),
    ])
    def test_invalid_values(self, name, value):
        with pytest.raises(ValidationError):
            EngineConfig.from_env(environ={name: value})

    def test_execution_config(self):
        config = EngineConfig(max_parallel=2, mode="bounded-parallel", turn_limit=4)

        execution = config.execution_config()

        assert execution.max_parallel == 2
        assert execution.mode == ExecutionMode.BOUNDED_PARALLEL
        assert execution.turn_limit == 4

    def test_parallelism_level_wins(self):
        config = EngineConfig(max_parallel=2, parallelism_level="HIGH")
        assert config.execution_config().max_parallel == 4


class TestConfigureLogging:
    """configure_logging tests"""

    def test_installs_single_handler(self):
        root = logging.getLogger()
        before = len(root.handlers)

        configure_logging("debug")
        configure_logging("info")

        assert len(root.handlers) <= before + 1
        assert root.level == logging.INFO
