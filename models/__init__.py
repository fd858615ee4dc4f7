from .graph_spec import (
    ExecutionMode,
    NodeSpec,
    GraphSpec,
    load_graph_spec,
)

__all__ = [
    "ExecutionMode",
    "NodeSpec",
    "GraphSpec",
    "load_graph_spec",
]
