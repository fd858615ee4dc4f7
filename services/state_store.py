"""
State Store - durable record of every node's input, output, error and status
Keyed by (session_id, node_id, kind); each write replaces the whole record
"""
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from copy import deepcopy
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

import aiofiles
import aiofiles.os
import redis.asyncio as redis

logger = logging.getLogger(__name__)


RECORD_KINDS = ("input", "output", "error", "status")
GRAPH_RECORD = "graph"


def _check_kind(kind: str) -> None:
    if kind not in RECORD_KINDS:
        raise ValueError(f"Unknown record kind '{kind}', expected one of {', '.join(RECORD_KINDS)}")


class StateStore(ABC):
    """
    Persistence boundary for run state.

    Writers never leave a partially written record visible: a reader sees
    either the previous record or the new one.
    """

    @abstractmethod
    async def put(self, session_id: str, node_id: str, kind: str, record: Dict[str, Any]) -> None:
        """Replace the (session, node, kind) record."""

    @abstractmethod
    async def read_record(self, session_id: str, node_id: str, kind: str) -> Optional[Dict[str, Any]]:
        """Return the record or None if it was never written."""

    @abstractmethod
    async def write_graph(self, session_id: str, graph: Dict[str, Any]) -> None:
        """Replace the session's graph snapshot."""

    @abstractmethod
    async def read_graph(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_nodes(self, session_id: str) -> List[str]:
        """Node ids with at least one record, sorted."""

    @abstractmethod
    async def list_sessions(self) -> List[str]:
        ...

    async def read_node(self, session_id: str, node_id: str) -> Dict[str, Optional[Dict[str, Any]]]:
        """All four records of a node (missing ones are None)."""
        return {
            kind: await self.read_record(session_id, node_id, kind)
            for kind in RECORD_KINDS
        }

    async def close(self) -> None:
        pass


class InMemoryStateStore(StateStore):
    """Dict-backed store. Records are deep-copied in and out."""

    def __init__(self):
        self._records: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._graphs: Dict[str, Dict[str, Any]] = {}

    async def put(self, session_id, node_id, kind, record):
        _check_kind(kind)
        self._records[(session_id, node_id, kind)] = deepcopy(record)

    async def read_record(self, session_id, node_id, kind):
        _check_kind(kind)
        record = self._records.get((session_id, node_id, kind))
        return deepcopy(record) if record is not None else None

    async def write_graph(self, session_id, graph):
        self._graphs[session_id] = deepcopy(graph)

    async def read_graph(self, session_id):
        graph = self._graphs.get(session_id)
        return deepcopy(graph) if graph is not None else None

    async def list_nodes(self, session_id):
        return sorted({node_id for (sid, node_id, _) in self._records if sid == session_id})

    async def list_sessions(self):
        sessions = {sid for (sid, _, _) in self._records} | set(self._graphs)
        return sorted(sessions)


class FileStateStore(StateStore):
    """
    JSON files on disk.

    Layout:
        <root>/<session_id>/graph.json
        <root>/<session_id>/<node_id>/<kind>.json

    Ids are percent-encoded so any id maps to exactly one directory.

    Each record is written to a temporary file in the same directory and
    moved into place with os.replace, which is atomic on POSIX and Windows.
    """

    def __init__(self, root: str):
        self.root = root

    @staticmethod
    def _encode(name: str) -> str:
        """Map an id to a single directory name; reversed by _decode."""
        if not name:
            raise ValueError("Empty path component")
        encoded = quote(name, safe="")
        if encoded in (".", ".."):
            encoded = encoded.replace(".", "%2E")
        return encoded

    @staticmethod
    def _decode(name: str) -> str:
        return unquote(name)

    def _record_path(self, session_id: str, node_id: str, kind: str) -> str:
        return os.path.join(self.root, self._encode(session_id), self._encode(node_id), f"{kind}.json")

    def _graph_path(self, session_id: str) -> str:
        return os.path.join(self.root, self._encode(session_id), f"{GRAPH_RECORD}.json")

    async def _write_json(self, path: str, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(path)
        await aiofiles.os.makedirs(directory, exist_ok=True)

        tmp_path = f"{path}.{uuid.uuid4().hex}.tmp"
        payload = json.dumps(data, ensure_ascii=False, indent=2, default=str)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            await aiofiles.os.replace(tmp_path, path)
        except Exception:
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise

    async def _read_json(self, path: str) -> Optional[Dict[str, Any]]:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return json.loads(await f.read())

    async def put(self, session_id, node_id, kind, record):
        _check_kind(kind)
        await self._write_json(self._record_path(session_id, node_id, kind), record)

    async def read_record(self, session_id, node_id, kind):
        _check_kind(kind)
        return await self._read_json(self._record_path(session_id, node_id, kind))

    async def write_graph(self, session_id, graph):
        await self._write_json(self._graph_path(session_id), graph)

    async def read_graph(self, session_id):
        return await self._read_json(self._graph_path(session_id))

    async def list_nodes(self, session_id):
        session_dir = os.path.join(self.root, self._encode(session_id))
        if not await aiofiles.os.path.isdir(session_dir):
            return []
        names = await aiofiles.os.listdir(session_dir)
        nodes = []
        for name in names:
            if await aiofiles.os.path.isdir(os.path.join(session_dir, name)):
                nodes.append(self._decode(name))
        return sorted(nodes)

    async def list_sessions(self):
        if not await aiofiles.os.path.isdir(self.root):
            return []
        names = await aiofiles.os.listdir(self.root)
        sessions = []
        for name in names:
            if await aiofiles.os.path.isdir(os.path.join(self.root, name)):
                sessions.append(self._decode(name))
        return sorted(sessions)


class RedisStateStore(StateStore):
    """
    Redis-backed store.

    Keys:
        {prefix}:{session_id}:{node_id}:{kind}   JSON string (single SET)
        {prefix}:{session_id}:graph              JSON string
        {prefix}:{session_id}:nodes              set of node ids
        {prefix}:sessions                        set of session ids
    """

    def __init__(
        self,
        url: Optional[str] = None,
        prefix: str = "taskgraph",
        ttl_seconds: Optional[int] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.url = url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self.client: Optional[redis.Redis] = client

    async def connect(self) -> None:
        """Open the connection pool (no-op when a client was injected)."""
        if self.client is not None:
            return
        self.client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        await self.client.ping()
        logger.info(f"Connected to Redis at {self.url}")

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def _client(self) -> redis.Redis:
        if self.client is None:
            await self.connect()
        return self.client

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    async def _set(self, key: str, data: Dict[str, Any]) -> None:
        client = await self._client()
        await client.set(key, json.dumps(data, ensure_ascii=False, default=str), ex=self.ttl_seconds)

    async def _get(self, key: str) -> Optional[Dict[str, Any]]:
        client = await self._client()
        raw = await client.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, session_id, node_id, kind, record):
        _check_kind(kind)
        await self._set(self._key(session_id, node_id, kind), record)
        client = await self._client()
        await client.sadd(self._key(session_id, "nodes"), node_id)
        await client.sadd(self._key("sessions"), session_id)

    async def read_record(self, session_id, node_id, kind):
        _check_kind(kind)
        return await self._get(self._key(session_id, node_id, kind))

    async def write_graph(self, session_id, graph):
        await self._set(self._key(session_id, GRAPH_RECORD), graph)
        client = await self._client()
        await client.sadd(self._key("sessions"), session_id)

    async def read_graph(self, session_id):
        return await self._get(self._key(session_id, GRAPH_RECORD))

    async def list_nodes(self, session_id):
        client = await self._client()
        members = await client.smembers(self._key(session_id, "nodes"))
        return sorted(members)

    async def list_sessions(self):
        client = await self._client()
        return sorted(await client.smembers(self._key("sessions")))


def create_state_store(
    backend: str = "memory",
    state_dir: Optional[str] = None,
    redis_url: Optional[str] = None,
) -> StateStore:
    """
    Build a state store by backend name.

    Args:
        backend: "memory", "file" or "redis"
        state_dir: Root directory for the file backend
        redis_url: Connection URL for the redis backend
    """
    backend = (backend or "memory").lower()

    if backend == "memory":
        return InMemoryStateStore()
    if backend == "file":
        return FileStateStore(state_dir or os.path.join(".taskgraph", "memory"))
    if backend == "redis":
        return RedisStateStore(url=redis_url)

    raise ValueError(f"Unknown state backend: {backend}")
