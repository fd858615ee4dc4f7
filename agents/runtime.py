"""
Agent runtime contract - boundary to the external agent-execution capability

The backend streams AgentUpdates; the executor reacts to what the agent
declares:
- needs_feedback: ask the feedback channel, hand the answer back
- COMPLETED: interpret result_text as the node's output
- FAILED: fail the node with the error text verbatim
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    """Status declared by the agent on each update"""
    ANALYZING = "analyzing"
    EXECUTING = "executing"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.COMPLETED, AgentStatus.FAILED)


@dataclass
class AgentRequest:
    """What one node asks of the agent backend."""
    node_id: str
    session_id: str
    agent: str
    instruction: str
    tool_permissions: List[str] = field(default_factory=list)
    turn_limit: int = 10


@dataclass
class AgentUpdate:
    """
    One streamed update from the agent.

    A terminal update (COMPLETED / FAILED) ends the stream. result_text is
    the raw output on success, error the failure message otherwise.
    """
    status: AgentStatus
    progress: float = 0.0
    text_chunk: Optional[str] = None
    needs_feedback: bool = False
    feedback_prompt: Optional[str] = None
    result_text: Optional[str] = None
    error: Optional[str] = None

    def is_success(self) -> bool:
        return self.status == AgentStatus.COMPLETED

    def is_failure(self) -> bool:
        return self.status == AgentStatus.FAILED


# Helper functions for creating AgentUpdates

def executing(text_chunk: Optional[str] = None, progress: float = 0.0) -> AgentUpdate:
    return AgentUpdate(status=AgentStatus.EXECUTING, progress=progress, text_chunk=text_chunk)


def needs_feedback(prompt: str, progress: float = 0.0) -> AgentUpdate:
    return AgentUpdate(
        status=AgentStatus.WAITING,
        progress=progress,
        needs_feedback=True,
        feedback_prompt=prompt,
    )


def completed(result_text: str) -> AgentUpdate:
    return AgentUpdate(status=AgentStatus.COMPLETED, progress=1.0, result_text=result_text)


def failed(error: str) -> AgentUpdate:
    return AgentUpdate(status=AgentStatus.FAILED, error=error)


READ_CHUNK_SIZE = 65536


async def read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """
    Yield newline-terminated lines from a stream, of any length.

    StreamReader.readline() fails on lines longer than the stream limit,
    so chunks are read and split here. A trailing partial line is yielded
    at EOF without a newline.
    """
    buffer = b""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            yield line + b"\n"
    if buffer:
        yield buffer


class AgentBackend(ABC):
    """Interface to whatever actually runs a coding agent."""

    @abstractmethod
    def execute(self, request: AgentRequest) -> AsyncIterator[AgentUpdate]:
        """Stream updates for one request, ending with a terminal update."""

    async def provide_feedback(self, request: AgentRequest, answer: str) -> None:
        """Deliver a human answer to an agent that asked for feedback."""
        raise NotImplementedError(f"{type(self).__name__} does not accept feedback")


class SubprocessAgentBackend(AgentBackend):
    """
    Runs an agent CLI as a subprocess.

    The command is a list of arguments where "{instruction}", "{turn_limit}"
    and "{tools}" are substituted. Every stdout line becomes a text chunk;
    lines starting with feedback_marker ask for human feedback and the answer
    is written to the process's stdin. Exit code 0 completes the task with
    the collected stdout, anything else fails it with stderr.
    """

    DEFAULT_COMMAND = [
        "claude", "-p", "{instruction}",
        "--max-turns", "{turn_limit}",
        "--allowedTools", "{tools}",
    ]

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        feedback_marker: Optional[str] = None,
    ):
        self._command = list(command or self.DEFAULT_COMMAND)
        self._cwd = cwd
        self._env = env
        self._feedback_marker = feedback_marker
        self._processes: Dict[str, asyncio.subprocess.Process] = {}

    def build_command(self, request: AgentRequest) -> List[str]:
        values = {
            "instruction": request.instruction,
            "turn_limit": str(request.turn_limit),
            "tools": ",".join(request.tool_permissions),
            "agent": request.agent,
        }
        return [arg.format(**values) if "{" in arg else arg for arg in self._command]

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentUpdate]:
        if self._cwd and not os.path.isdir(self._cwd):
            yield failed(f"Working directory not found: {self._cwd}")
            return

        process_env = os.environ.copy()
        if self._env:
            process_env.update(self._env)

        argv = self.build_command(request)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if self._feedback_marker else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=process_env,
            )
        except OSError as e:
            yield failed(f"Failed to start agent command '{argv[0]}': {e}")
            return

        self._processes[request.node_id] = process
        stderr_task = asyncio.create_task(process.stderr.read())
        output: List[str] = []

        try:
            yield AgentUpdate(status=AgentStatus.ANALYZING)
            async for raw in read_lines(process.stdout):
                line = raw.decode("utf-8", errors="replace")
                if self._feedback_marker and line.startswith(self._feedback_marker):
                    yield needs_feedback(line[len(self._feedback_marker):].strip())
                    continue
                output.append(line)
                yield executing(text_chunk=line)

            return_code = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()

            if return_code == 0:
                yield completed("".join(output))
            else:
                yield failed(stderr or f"Agent command exited with code {return_code}")
        finally:
            self._processes.pop(request.node_id, None)
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    async def provide_feedback(self, request: AgentRequest, answer: str) -> None:
        process = self._processes.get(request.node_id)
        if process is None or process.stdin is None:
            raise RuntimeError(f"No running agent process for node {request.node_id}")
        process.stdin.write((answer.rstrip("\n") + "\n").encode("utf-8"))
        await process.stdin.drain()
