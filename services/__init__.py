"""
Services - persistence backends for run state
"""

from .state_store import (
    StateStore,
    InMemoryStateStore,
    FileStateStore,
    RedisStateStore,
    RECORD_KINDS,
    create_state_store,
)

__all__ = [
    "StateStore",
    "InMemoryStateStore",
    "FileStateStore",
    "RedisStateStore",
    "RECORD_KINDS",
    "create_state_store",
]
