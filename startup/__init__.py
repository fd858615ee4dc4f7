"""
Startup - engine configuration and logging setup
"""

from .engine_config import ENV_PREFIX, EngineConfig, configure_logging

__all__ = [
    "ENV_PREFIX",
    "EngineConfig",
    "configure_logging",
]
