"""
Task-to-agent router.

Scores every known agent profile against a task description with a fixed
keyword heuristic and picks the best match. Pure and deterministic.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)


DEFAULT_PROFILES_PATH = Path(__file__).parent / "profiles" / "default_agents.yaml"

# pattern -> agents it points to
PATTERN_TABLE: Dict[str, List[str]] = {
    "understand": ["architect", "assistant"],
    "analyze": ["architect", "assistant"],
    "explain": ["architect", "assistant"],
    "help": ["assistant", "architect"],
    "repository": ["architect", "assistant"],
    "repo": ["architect", "assistant"],
    "backend": ["backend-developer"],
    "frontend": ["frontend-developer"],
    "api": ["backend-developer", "architect"],
    "database": ["backend-developer"],
    "ui": ["frontend-developer"],
    "design": ["frontend-developer"],
    "security": ["security-expert"],
    "auth": ["security-expert", "backend-developer"],
    "test": ["tester"],
    "deploy": ["devops"],
}

# Higher number wins more weight per match
PRIORITY_TABLE: Dict[str, int] = {
    "assistant": 1,
    "architect": 5,
    "security-expert": 4,
    "backend-developer": 3,
    "frontend-developer": 3,
    "data-engineer": 3,
    "devops": 2,
    "tester": 2,
}

STOP_WORDS = {
    "and", "the", "for", "with", "that", "this", "are", "can", "will",
    "have", "has", "been", "from", "they", "them", "their", "into",
    "implementation", "system", "development", "application",
}

PATTERN_WEIGHT = 3
KEYWORD_WEIGHT = 1
ROLE_WEIGHT = 2

MIN_CONFIDENCE = 60
MAX_CONFIDENCE = 95
NO_MATCH_CONFIDENCE = 30
CONFIDENCE_PER_POINT = 8


@dataclass
class AgentProfile:
    """A specialized agent identity the router can assign."""
    name: str
    role: str = ""
    keywords: List[str] = field(default_factory=list)
    priority: int = 1
    responsibilities: List[str] = field(default_factory=list)


@dataclass
class RoutingDecision:
    primary: str
    supporting: List[str]
    confidence: int
    scores: Dict[str, int]
    reasoning: str

    def to_dict(self) -> dict:
        return {
            "primary": self.primary,
            "supporting": list(self.supporting),
            "confidence": self.confidence,
            "scores": dict(self.scores),
            "reasoning": self.reasoning,
        }


def generate_keywords(role: str, responsibilities: Iterable[str]) -> List[str]:
    """Keywords from role words plus 4+ letter words of the responsibilities."""
    keywords: Dict[str, None] = {}
    for word in role.lower().split():
        keywords[word] = None
    for responsibility in responsibilities:
        for word in re.findall(r"\b\w{4,}\b", responsibility.lower()):
            if word not in STOP_WORDS:
                keywords[word] = None
    return list(keywords)


class TaskRouter:
    """
    Routes task descriptions to agent profiles.

    Scoring per profile:
    - +3 x priority for each pattern in the text that points to the profile
    - +1 x priority for each profile keyword contained in the text
    - +2 x priority if the text contains the profile's role verbatim

    Example:
        router = TaskRouter.from_yaml()
        decision = router.route("Build the backend API for user auth")
        decision.primary  # "backend-developer"
    """

    def __init__(
        self,
        profiles: Iterable[AgentProfile],
        patterns: Optional[Dict[str, List[str]]] = None,
        default_agent: str = "assistant",
    ):
        self._profiles: Dict[str, AgentProfile] = {}
        for profile in profiles:
            self._profiles[profile.name] = profile
        self._patterns = dict(PATTERN_TABLE if patterns is None else patterns)
        self._default_agent = default_agent

    @property
    def profiles(self) -> List[AgentProfile]:
        return list(self._profiles.values())

    def get_profile(self, name: str) -> Optional[AgentProfile]:
        return self._profiles.get(name)

    def score(self, text: str) -> Dict[str, int]:
        """Score every profile against the text. Keys follow profile order."""
        text_lower = text.lower()
        scores: Dict[str, int] = {}

        for name, profile in self._profiles.items():
            total = 0

            for pattern, agents in self._patterns.items():
                if pattern in text_lower and name in agents:
                    total += profile.priority * PATTERN_WEIGHT

            for keyword in profile.keywords:
                if keyword and keyword.lower() in text_lower:
                    total += profile.priority * KEYWORD_WEIGHT

            if profile.role and profile.role.lower() in text_lower:
                total += profile.priority * ROLE_WEIGHT

            scores[name] = total

        return scores

    def route(self, text: str) -> RoutingDecision:
        """
        Pick a primary agent and up to two supporting agents.

        Args:
            text: Task instruction

        Returns:
            RoutingDecision
        """
        scores = self.score(text)
        # sorted() is stable: equal scores keep profile order
        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)

        if not ranked:
            return RoutingDecision(
                primary=self._default_agent,
                supporting=[],
                confidence=NO_MATCH_CONFIDENCE,
                scores={},
                reasoning="No agent profiles registered",
            )

        top_name, top_score = ranked[0]
        if top_score == 0 and self._default_agent in scores:
            top_name = self._default_agent

        supporting = [
            name for name, value in ranked
            if name != top_name and value > 0
        ][:2]

        if top_score == 0:
            confidence = NO_MATCH_CONFIDENCE
        else:
            confidence = min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, top_score * CONFIDENCE_PER_POINT))

        return RoutingDecision(
            primary=top_name,
            supporting=supporting,
            confidence=confidence,
            scores=scores,
            reasoning=f"Keyword analysis suggests {top_name} (score: {top_score})",
        )

    # ------------------------------------------------------------------
    # Loading profiles
    # ------------------------------------------------------------------

    @classmethod
    def from_yaml(
        cls,
        path: Union[str, Path, None] = None,
        default_agent: str = "assistant",
    ) -> "TaskRouter":
        """
        Load profiles from a YAML file.

        Expected shape:
            agents:
              - name: backend-developer
                role: Backend Developer
                priority: 3
                responsibilities: [...]
                keywords: [...]        # optional, generated when omitted
        """
        path = Path(path) if path else DEFAULT_PROFILES_PATH
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        profiles = []
        for entry in data.get("agents", []):
            name = entry["name"]
            role = entry.get("role", "")
            responsibilities = list(entry.get("responsibilities") or [])
            keywords = entry.get("keywords")
            profiles.append(AgentProfile(
                name=name,
                role=role,
                responsibilities=responsibilities,
                keywords=list(keywords) if keywords else generate_keywords(role, responsibilities),
                priority=int(entry.get("priority", PRIORITY_TABLE.get(name, 1))),
            ))

        logger.debug(f"Loaded {len(profiles)} agent profile(s) from {path}")
        return cls(profiles, default_agent=default_agent)

    @classmethod
    def from_markdown_dir(
        cls,
        directory: Union[str, Path],
        default_agent: str = "assistant",
    ) -> "TaskRouter":
        """Load one profile per *.md agent definition in a directory."""
        directory = Path(directory)
        profiles = []
        for path in sorted(directory.glob("*.md")):
            with open(path, "r", encoding="utf-8") as f:
                profiles.append(parse_agent_markdown(path.stem, f.read()))

        if not profiles:
            raise ValueError(f"No agent definitions found in {directory}")

        return cls(profiles, default_agent=default_agent)


def parse_agent_markdown(name: str, content: str) -> AgentProfile:
    """
    Parse an agent definition written as markdown.

        ## Role
        **Backend Developer**

        ## Core Responsibilities
        - Design REST endpoints
        ## ...
    """
    role = ""
    role_match = re.search(r"##\s*Role\s*\n\*\*(.*?)\*\*", content)
    if role_match:
        role = role_match.group(1).strip()

    responsibilities: List[str] = []
    section = re.search(r"##\s*Core Responsibilities(.*?)(?=##|\Z)", content, re.DOTALL)
    if section:
        responsibilities = [
            item.strip()
            for item in re.findall(r"^[-*]\s+(.+)$", section.group(1), re.MULTILINE)
        ]

    return AgentProfile(
        name=name,
        role=role,
        responsibilities=responsibilities,
        keywords=generate_keywords(role, responsibilities),
        priority=PRIORITY_TABLE.get(name, 1),
    )
