import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    BOUNDED_PARALLEL = "bounded-parallel"
    ENRICHMENT_AWARE = "enrichment-aware"


class NodeSpec(BaseModel):
    id: str
    instruction: str
    dependencies: List[str] = Field(default_factory=list)
    agent: Optional[str] = None  # None until routed
    inputs: Dict[str, Any] = Field(default_factory=dict)


class GraphSpec(BaseModel):
    """Output of the decomposition step, handed to the engine as-is."""
    nodes: List[NodeSpec]
    session_id: Optional[str] = None
    query: Optional[str] = None
    mode: ExecutionMode = ExecutionMode.ENRICHMENT_AWARE


def load_graph_spec(path: Union[str, Path]) -> GraphSpec:
    """Load a GraphSpec from a .json, .yaml or .yml file."""
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    return GraphSpec.model_validate(data)
