"""
Context enrichment.
Builds the effective instruction for a node from its base instruction and the
structured results of its direct dependencies.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from .dag import TaskGraph, TaskNode, utcnow
from .interpreter import StructuredResult


CONTEXT_HEADER = "**Context from Previous Agents:**"
INTEGRATION_HEADER = "**Integration Instructions:**"
INTEGRATION_DIRECTIVE = (
    "Use the above context to inform your implementation. Build upon the "
    "decisions and outputs from previous agents. Stay consistent with their "
    "architectural choices and data structures."
)


@dataclass
class EnrichedInput:
    """What a node is dispatched with. Persisted as the node's input record."""
    node_id: str
    agent: str
    instruction: str
    effective_instruction: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    predecessor_ids: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def enriched(self) -> bool:
        return bool(self.predecessor_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "agent": self.agent,
            "instruction": self.instruction,
            "effective_instruction": self.effective_instruction,
            "inputs": self.inputs,
            "predecessor_ids": list(self.predecessor_ids),
            "timestamp": self.timestamp.isoformat(),
        }


class ContextEnricher:
    """
    Merges dependency results into a node's instruction.

    Only direct dependencies are used; their results already carry whatever
    their own ancestors contributed.
    """

    def enrich(self, node: TaskNode, graph: TaskGraph) -> EnrichedInput:
        """
        Build the enriched input for a node about to dispatch.

        Args:
            node: The node being dispatched (agent must be resolved)
            graph: Graph holding the current results

        Returns:
            EnrichedInput
        """
        predecessors: Dict[str, StructuredResult] = {}
        for dep_id in node.dependencies:
            dep = graph.get_node(dep_id)
            if dep is not None and dep.result is not None:
                predecessors[dep_id] = dep.result

        return EnrichedInput(
            node_id=node.id,
            agent=node.agent or "",
            instruction=node.instruction,
            effective_instruction=self.build_instruction(node.instruction, predecessors),
            inputs=dict(node.inputs),
            predecessor_ids=list(predecessors.keys()),
        )

    def build_instruction(self, base: str, predecessors: Dict[str, StructuredResult]) -> str:
        if not predecessors:
            return base

        parts = [base, "", CONTEXT_HEADER]
        for dep_id, result in predecessors.items():
            parts.append("")
            parts.append(f"**From {dep_id}:**")
            parts.append(self.format_result(result))
        parts.append("")
        parts.append(INTEGRATION_HEADER)
        parts.append(INTEGRATION_DIRECTIVE)
        return "\n".join(parts)

    @staticmethod
    def format_result(result: StructuredResult) -> str:
        """Serialize a result for context. Falls back to raw text when nothing was extracted."""
        payload = result.to_dict(include_raw=not result.has_structure())
        return json.dumps(payload, indent=2, ensure_ascii=False, default=str)
