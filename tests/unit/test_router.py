"""
Task Router Unit Tests
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from agents.router import (
    AgentProfile,
    TaskRouter,
    generate_keywords,
    parse_agent_markdown,
)


def simple_router() -> TaskRouter:
    return TaskRouter([
        AgentProfile(name="assistant", role="Assistant", priority=1),
        AgentProfile(name="architect", role="Architect", priority=5),
        AgentProfile(name="backend-developer", role="Backend Developer", keywords=["endpoint"], priority=3),
        AgentProfile(name="security-expert", role="Security Expert", keywords=["token"], priority=4),
        AgentProfile(name="tester", role="Tester", priority=2),
    ])


class TestScoring:
    """Score computation"""

    def test_pattern_keyword_and_role_weights(self):
        router = simple_router()

        scores = router.score("Backend developer: add an endpoint to the backend")

        # pattern "backend" (+9), keyword "endpoint" (+3), role (+6)
        assert scores["backend-developer"] == 18
        assert scores["assistant"] == 0

    def test_pattern_shared_by_two_agents(self):
        scores = simple_router().score("rotate the auth secret")

        assert scores["security-expert"] == 12
        assert scores["backend-developer"] == 9

    def test_scores_follow_profile_order(self):
        assert list(simple_router().score("x")) == [
            "assistant", "architect", "backend-developer", "security-expert", "tester",
        ]


class TestRouting:
    """route()"""

    def test_primary_and_supporting(self):
        decision = simple_router().route("rotate the auth token")

        assert decision.primary == "security-expert"
        assert decision.supporting == ["backend-developer"]
        assert decision.confidence == 95

    def test_no_match_falls_back_to_default(self):
        decision = simple_router().route("make coffee")

        assert decision.primary == "assistant"
        assert decision.supporting == []
        assert decision.confidence == 30

    def test_confidence_lower_bound(self):
        router = TaskRouter([
            AgentProfile(name="assistant", priority=1),
            AgentProfile(name="tester", keywords=["flaky"], priority=1),
        ])

        decision = router.route("fix the flaky job")

        assert decision.primary == "tester"
        assert decision.confidence == 60

    def test_ties_resolved_by_profile_order(self):
        router = TaskRouter([
            AgentProfile(name="one", keywords=["widget"]),
            AgentProfile(name="two", keywords=["widget"]),
        ])

        decision = router.route("build a widget")

        assert decision.primary == "one"
        assert decision.supporting == ["two"]

    def test_deterministic(self):
        router = simple_router()
        text = "Design the API and write tests"
        assert router.route(text) == router.route(text)

    def test_supporting_capped_at_two(self):
        decision = simple_router().route("backend api auth tests for the repo")
        assert len(decision.supporting) == 2

    def test_no_profiles(self):
        decision = TaskRouter([]).route("anything")
        assert decision.primary == "assistant"
        assert decision.scores == {}


class TestProfileLoading:
    """YAML and markdown profiles"""

    def test_generate_keywords_drops_stop_words(self):
        keywords = generate_keywords("Backend Developer", ["Design the system and their APIs"])

        assert keywords[:2] == ["backend", "developer"]
        assert "design" in keywords
        assert "apis" in keywords
        assert "system" not in keywords
        assert "their" not in keywords
        assert "the" not in keywords

    def test_from_yaml(self, profiles_yaml):
        router = TaskRouter.from_yaml(profiles_yaml)

        assert [p.name for p in router.profiles] == ["assistant", "backend-developer", "tester"]
        backend = router.get_profile("backend-developer")
        assert backend.priority == 3
        assert "server" in backend.keywords
        assert router.route("Implement server endpoints").primary == "backend-developer"

    def test_default_profiles_load(self):
        router = TaskRouter.from_yaml()

        names = [p.name for p in router.profiles]
        assert names[0] == "assistant"
        assert "architect" in names
        assert router.route("Set up the deploy pipeline").primary == "devops"

    def test_parse_agent_markdown(self):
        content = (
            "# Security Expert\n\n"
            "## Role\n"
            "**Security Expert**\n\n"
            "## Core Responsibilities\n"
            "- Review authentication flows\n"
            "* Audit dependencies\n\n"
            "## Tools\n"
            "- Bash\n"
        )

        profile = parse_agent_markdown("security-expert", content)

        assert profile.role == "Security Expert"
        assert profile.responsibilities == ["Review authentication flows", "Audit dependencies"]
        assert profile.priority == 4
        assert "authentication" in profile.keywords
        assert "bash" not in profile.keywords

    def test_from_markdown_dir(self, tmp_path):
        (tmp_path / "tester.md").write_text("## Role\n**Tester**\n\n## Core Responsibilities\n- Write tests\n")
        (tmp_path / "assistant.md").write_text("## Role\n**Assistant**\n")

        router = TaskRouter.from_markdown_dir(tmp_path)

        assert [p.name for p in router.profiles] == ["assistant", "tester"]

    def test_from_empty_markdown_dir(self, tmp_path):
        with pytest.raises(ValueError):
            TaskRouter.from_markdown_dir(tmp_path)
