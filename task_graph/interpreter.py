"""
Output Interpreter.
Turns an agent's free-form text result into a StructuredResult.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


JSON_BLOCK = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
FILE_REFERENCE = re.compile(r"(?:created|modified|updated):\s*([^\n]+)", re.IGNORECASE)
DEPENDENCY_MENTION = re.compile(r"(?:install|dependency|package):\s*([^\n]+)", re.IGNORECASE)
KEY_INSIGHT = re.compile(r"(?:insight|important|key point|note):\s*([^\n]+)", re.IGNORECASE)

MAX_KEY_INSIGHTS = 5

# field name -> section headers that feed it
SECTION_HEADERS = {
    "decisions": ("decisions", "architecture"),
    "implementation": ("implementation", "code"),
    "recommendations": ("recommendations", "suggestions"),
}


@dataclass
class StructuredResult:
    """Structured form of one task's output. raw_output is always kept."""
    raw_output: str
    structured_data: Optional[Dict[str, Any]] = None
    decisions: List[str] = field(default_factory=list)
    implementation: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    key_insights: List[str] = field(default_factory=list)

    def has_structure(self) -> bool:
        """True if anything beyond the raw text was extracted."""
        return bool(
            self.structured_data
            or self.decisions
            or self.implementation
            or self.recommendations
            or self.files
            or self.dependencies
            or self.key_insights
        )

    def to_dict(self, include_raw: bool = True) -> Dict[str, Any]:
        """Convert to dictionary. Key order is fixed."""
        data: Dict[str, Any] = {
            "structured_data": self.structured_data,
            "decisions": list(self.decisions),
            "implementation": list(self.implementation),
            "recommendations": list(self.recommendations),
            "files": list(self.files),
            "dependencies": list(self.dependencies),
            "key_insights": list(self.key_insights),
        }
        if include_raw:
            data["raw_output"] = self.raw_output
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StructuredResult":
        return cls(
            raw_output=data.get("raw_output", ""),
            structured_data=data.get("structured_data"),
            decisions=list(data.get("decisions") or []),
            implementation=list(data.get("implementation") or []),
            recommendations=list(data.get("recommendations") or []),
            files=list(data.get("files") or []),
            dependencies=list(data.get("dependencies") or []),
            key_insights=list(data.get("key_insights") or []),
        )


class OutputInterpreter:
    """
    Extracts decisions, file references, dependency mentions and
    recommendations from raw agent output.

    Every rule is independent and a rule that finds nothing leaves its field
    empty. interpret() never raises.

    Example:
        result = OutputInterpreter().interpret(raw_text)
        result.files  # ["src/api/users.py", ...]
    """

    def interpret(self, raw_output: Optional[str]) -> StructuredResult:
        """
        Interpret raw agent output.

        Args:
            raw_output: Text returned by the agent

        Returns:
            StructuredResult (raw text preserved verbatim)
        """
        text = raw_output if isinstance(raw_output, str) else ("" if raw_output is None else str(raw_output))
        result = StructuredResult(raw_output=text)

        try:
            parsed = self._parse_json_block(text)
            if parsed is not None:
                result.structured_data = parsed
                self._apply_structured_fields(result, parsed)
                if self._has_list_fields(parsed):
                    return result

            result.decisions = self.extract_section(text, *SECTION_HEADERS["decisions"])
            result.implementation = self.extract_section(text, *SECTION_HEADERS["implementation"])
            result.recommendations = self.extract_section(text, *SECTION_HEADERS["recommendations"])
            result.files = self._extract_matches(text, FILE_REFERENCE)
            result.dependencies = self._extract_matches(text, DEPENDENCY_MENTION)
            result.key_insights = self._extract_matches(text, KEY_INSIGHT)[:MAX_KEY_INSIGHTS]
        except Exception as e:
            # Keep whatever was extracted; the raw text is always there.
            logger.warning(f"Output interpretation stopped early: {e}")

        return result

    def extract_section(self, text: str, *section_names: str) -> List[str]:
        """Text following '# name' or '## name' headers, up to the next '##'."""
        blocks = []
        for name in section_names:
            pattern = re.compile(
                rf"#{{1,2}}\s*{re.escape(name)}[:\s]*\n(.*?)(?=\n##|\Z)",
                re.IGNORECASE | re.DOTALL,
            )
            match = pattern.search(text)
            if match:
                block = match.group(1).strip()
                if block:
                    blocks.append(block)
        return blocks

    def _parse_json_block(self, text: str) -> Optional[Dict[str, Any]]:
        match = JSON_BLOCK.search(text)
        if not match:
            return None
        try:
            data = json.loads(match.group(1))
        except (ValueError, RecursionError) as e:
            logger.debug(f"Tagged JSON block failed to parse, using text rules: {type(e).__name__}")
            return None
        if isinstance(data, dict):
            return data
        return {"value": data}

    def _apply_structured_fields(self, result: StructuredResult, data: Dict[str, Any]) -> None:
        for name in ("decisions", "implementation", "recommendations",
                     "files", "dependencies", "key_insights"):
            value = data.get(name)
            if isinstance(value, list):
                setattr(result, name, [self._as_text(item) for item in value])
            elif isinstance(value, str) and value.strip():
                setattr(result, name, [value.strip()])

    @staticmethod
    def _has_list_fields(data: Dict[str, Any]) -> bool:
        return any(
            name in data
            for name in ("decisions", "implementation", "recommendations",
                         "files", "dependencies", "key_insights")
        )

    @staticmethod
    def _as_text(item: Any) -> str:
        if isinstance(item, str):
            return item
        return json.dumps(item, ensure_ascii=False)

    @staticmethod
    def _extract_matches(text: str, pattern: re.Pattern) -> List[str]:
        found = []
        for match in pattern.finditer(text):
            value = match.group(1).strip().strip("`'\"").strip()
            if value:
                found.append(value)
        return found
