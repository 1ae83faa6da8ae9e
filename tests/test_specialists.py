import asyncio
import json
from pathlib import Path

import pytest

from feedbackloop.backends import (
    AgentBackend,
    AgentRequest,
    BackendExecutionError,
    BackendRegistry,
    ModelFallbackExhausted,
)
from feedbackloop.config import CommitConfig
from feedbackloop.models import ModelCandidate
from feedbackloop.specialists import (
    AcceptanceCriteriaAgent,
    CoderAgent,
    CommitterAgent,
    ExploreResult,
    ExplorerAgent,
    PlannerAgent,
    ReviewerAgent,
    default_criteria,
    parse_commit_reply,
    parse_criteria_reply,
)

CLAUDE = ModelCandidate(provider="claude", model="claude-sonnet-4-5")


class FakeBackend(AgentBackend):
    def __init__(self, replies: list[str]) -> None:
        self.replies = list(replies)
        self.requests: list[AgentRequest] = []

    async def complete(self, request: AgentRequest) -> str:
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if reply.startswith("!"):
            raise BackendExecutionError(reply[1:], backend="fake")
        return reply


def _registry(backend: AgentBackend) -> BackendRegistry:
    return BackendRegistry({"claude": backend})


def test_specialist_runs_request_through_chain() -> None:
    backend = FakeBackend(["  planned  "])
    planner = PlannerAgent(_registry(backend), [CLAUDE], working_directory=Path("/work"))

    response = asyncio.run(planner.run("Design auth", {"goal": "auth"}))

    assert response.role == "planner"
    assert response.content == "planned"
    assert response.candidate == CLAUDE
    assert response.metadata["used_fallback"] is False
    [request] = backend.requests
    assert request.role == "planner"
    assert request.model == "claude-sonnet-4-5"
    assert request.context == {"goal": "auth"}
    assert request.working_directory == Path("/work")


def test_specialist_raises_when_chain_exhausted() -> None:
    planner = PlannerAgent(_registry(FakeBackend(["!overloaded"])), [CLAUDE])

    with pytest.raises(ModelFallbackExhausted, match="claude/claude-sonnet-4-5: overloaded"):
        asyncio.run(planner.run("Design auth"))


def test_planner_parses_json_plan() -> None:
    reply = json.dumps(
        {
            "summary": "Add JWT middleware",
            "steps": ["Create middleware", "Wire into router"],
            "filesToModify": ["src/app.py"],
            "testStrategy": "pytest for protected routes",
        }
    )
    planner = PlannerAgent(_registry(FakeBackend([reply])), [CLAUDE])

    plan = asyncio.run(planner.plan("Protect the API", ExploreResult(relevant_files=["src/app.py"])))

    assert plan.summary == "Add JWT middleware"
    assert plan.steps == ["Create middleware", "Wire into router"]
    assert plan.files_to_modify == ["src/app.py"]
    rendered = plan.render()
    assert rendered.startswith("Plan: Add JWT middleware")
    assert "2. Wire into router" in rendered
    assert "Testing: pytest for protected routes" in rendered


def test_planner_keeps_raw_text_without_json() -> None:
    planner = PlannerAgent(_registry(FakeBackend(["Just add a decorator."])), [CLAUDE])

    plan = asyncio.run(planner.plan("Protect the API"))

    assert plan.steps == []
    assert plan.render() == "Just add a decorator."


def test_explorer_merges_answers_and_tolerates_failures() -> None:
    class QuestionBackend(AgentBackend):
        async def complete(self, request: AgentRequest) -> str:
            if "most relevant" in request.user_prompt:
                return json.dumps(
                    {"relevantFiles": ["src/a.py", "src/b.py"], "codebaseContext": "Flask app"}
                )
            if "entry points" in request.user_prompt:
                raise BackendExecutionError("connection reset", backend="fake")
            return json.dumps({"relevantFiles": ["src/b.py"], "existingPatterns": ["blueprints"]})

    explorer = ExplorerAgent(_registry(QuestionBackend()), [CLAUDE])

    result = asyncio.run(explorer.explore("Add a health endpoint"))

    assert result.relevant_files == ["src/a.py", "src/b.py"]
    assert result.existing_patterns == ["blueprints"]
    assert result.codebase_context == "Flask app"
    assert "Relevant files:" in result.render()


def test_explorer_raises_when_every_question_fails() -> None:
    explorer = ExplorerAgent(_registry(FakeBackend(["!offline"])), [CLAUDE])

    with pytest.raises(ModelFallbackExhausted):
        asyncio.run(explorer.explore("Add a health endpoint"))


def test_coder_instruction_sections() -> None:
    coder = CoderAgent(BackendRegistry(), [CLAUDE])

    first = coder.build_instruction("Add search", iteration=1)
    later = coder.build_instruction(
        "Add search",
        iteration=2,
        feedback="Debounce the input",
        user_message="use the existing hook",
    )

    assert first == "TASK: Add search\n\nITERATION: 1"
    assert "PREVIOUS REVIEW FEEDBACK (address all of it):\nDebounce the input" in later
    assert later.endswith("USER SAYS: use the existing hook")


def test_coder_instruction_includes_learned_patterns() -> None:
    coder = CoderAgent(BackendRegistry(), [CLAUDE])

    instruction = coder.build_instruction(
        "Add search",
        iteration=1,
        exploration="Relevant files:\n- src/search.ts",
        learned="Testing:\n- Run tests before marking complete",
    )

    learned_at = instruction.index("LEARNED PATTERNS (from past sessions):\nTesting:")
    assert learned_at < instruction.index("CODEBASE NOTES:")


def test_reviewer_instruction_lists_criteria_and_contract() -> None:
    reviewer = ReviewerAgent(BackendRegistry(), [CLAUDE])

    instruction = reviewer.build_instruction(
        "Add search",
        "",
        iteration=1,
        acceptance_criteria=["results update as you type"],
        urls=["http://localhost:3000/search"],
    )

    assert "(no summary provided)" in instruction
    assert "- results update as you type" in instruction
    assert "- http://localhost:3000/search" in instruction
    assert '"approved": true | false' in instruction


def test_parse_commit_reply() -> None:
    info = parse_commit_reply(
        "Committed 9c1e4ab on feat/search.\nPR: https://github.com/acme/web/pull/42"
    )

    assert info.committed is True
    assert info.sha == "9c1e4ab"
    assert info.pr_url == "https://github.com/acme/web/pull/42"
    assert parse_commit_reply("Nothing to commit.").committed is False


def test_committer_instruction_follows_commit_settings() -> None:
    committer = CommitterAgent(BackendRegistry(), [CLAUDE])

    instruction = committer.build_instruction(
        "Add search",
        ["src/search.ts"],
        CommitConfig(enabled=True, message_style="descriptive", auto_push=True, create_pr=True),
    )

    assert "- src/search.ts" in instruction
    assert "descriptive imperative subject" in instruction
    assert "Push the branch" in instruction
    assert "Open a pull request" in instruction


def test_criteria_reply_formats() -> None:
    assert parse_criteria_reply('{"criteria": ["returns 200", 7, "  "]}') == ["returns 200"]
    assert parse_criteria_reply('Here:\n```json\n["empty query shows hint", "debounced"]\n```') == [
        "empty query shows hint",
        "debounced",
    ]
    assert parse_criteria_reply("- loads fast\n2. no console errors\n[ ] works offline\nprose") == [
        "loads fast",
        "no console errors",
        "works offline",
    ]


def test_criteria_agent_falls_back_to_keyword_defaults() -> None:
    backend = FakeBackend(["I could not think of anything."])
    agent = AcceptanceCriteriaAgent(_registry(backend), [CLAUDE])

    criteria = asyncio.run(agent.generate("Add a login endpoint to the API", "/work"))

    assert criteria == default_criteria("Add a login endpoint to the API")
    assert "Authentication flow completes" in criteria
    assert "API returns correct status codes" in criteria
    assert "Spacing is consistent" not in criteria
    [request] = backend.requests
    assert request.role == "criteria"
    assert "Workspace: /work" in request.user_prompt
