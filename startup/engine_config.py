"""
EngineConfig - engine settings and logging setup

Settings come from TASKGRAPH_* environment variables (a .env file is loaded
by the entry point) and can be overridden from the command line.
"""

import logging
import os
import shlex
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from models.graph_spec import ExecutionMode
from task_graph.executor import DEFAULT_TOOL_PERMISSIONS, PARALLELISM_LEVELS, ExecutionConfig

ENV_PREFIX = "TASKGRAPH_"


class EngineConfig(BaseModel):
    """Everything needed to assemble a run."""
    max_parallel: int = Field(default=3, ge=1)
    mode: Optional[ExecutionMode] = None  # None: use the graph file's mode
    parallelism_level: Optional[str] = None
    task_timeout_seconds: float = Field(default=300, gt=0)
    run_timeout_seconds: float = Field(default=900, gt=0)
    state_backend: str = "file"
    state_dir: str = os.path.join(".taskgraph", "memory")
    redis_url: str = "redis://localhost:6379/0"
    agent_command: Optional[List[str]] = None
    turn_limit: int = Field(default=10, ge=1)
    tool_permissions: List[str] = Field(default_factory=lambda: list(DEFAULT_TOOL_PERMISSIONS))
    agent_profiles_path: Optional[str] = None
    default_agent: str = "assistant"
    log_level: str = "INFO"

    @field_validator("parallelism_level")
    @classmethod
    def _check_level(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.lower()
        if value not in PARALLELISM_LEVELS:
            raise ValueError(f"must be one of {', '.join(PARALLELISM_LEVELS)}")
        return value

    @field_validator("state_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "file", "redis"):
            raise ValueError("must be one of memory, file, redis")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value}")
        return value

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "EngineConfig":
        """
        Read TASKGRAPH_* variables.

        List values (TOOL_PERMISSIONS) are comma separated, AGENT_COMMAND is
        split like a shell command line. Keyword overrides that are not None
        win over the environment.
        """
        environ = os.environ if environ is None else environ
        values = {}

        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or raw == "":
                continue
            if name == "tool_permissions":
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            elif name == "agent_command":
                values[name] = shlex.split(raw)
            else:
                values[name] = raw

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)

    def execution_config(self) -> ExecutionConfig:
        """ExecutionConfig for the executor; parallelism_level wins over max_parallel."""
        options = dict(
            mode=self.mode,
            task_timeout_seconds=self.task_timeout_seconds,
            run_timeout_seconds=self.run_timeout_seconds,
            tool_permissions=list(self.tool_permissions),
            turn_limit=self.turn_limit,
            default_agent=self.default_agent,
        )
        if self.parallelism_level:
            return ExecutionConfig.from_parallelism_level(self.parallelism_level, **options)
        return ExecutionConfig(max_parallel=self.max_parallel, **options)


def configure_logging(level: str = "INFO") -> None:
    """Install a single '[name] message' console handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    if not any(getattr(handler, "_taskgraph", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(name)s] %(message)s'))
        handler._taskgraph = True
        root.addHandler(handler)
