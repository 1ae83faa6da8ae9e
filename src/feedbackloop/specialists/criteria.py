from __future__ import annotations

import json
import re

from feedbackloop.review.parser import find_json_object
from feedbackloop.specialists.base import SpecialistAgent

FENCED_ARRAY_PATTERN = re.compile(r"```(?:json)?\s*(\[[\s\S]*?\])\s*```", re.IGNORECASE)
LIST_ITEM_PATTERN = re.compile(r"^(?:[-*]|\d+\.|\[[ x]\])\s*(.+)$", re.IGNORECASE)

BASELINE_CRITERIA = (
    "Feature works end-to-end without errors",
    "No JavaScript console errors",
    "No failed network requests",
    "UI is functional and usable",
)

KEYWORD_CRITERIA: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (
        ("assessment", "quiz", "test"),
        (
            "Questions display correctly",
            "Answers can be submitted",
            "Score is calculated correctly",
        ),
    ),
    (
        ("auth", "login", "user"),
        (
            "Authentication flow completes",
            "Error messages are helpful",
            "Session persists correctly",
        ),
    ),
    (
        ("api", "endpoint"),
        (
            "API returns correct status codes",
            "Response format matches the documented contract",
            "Error handling works",
        ),
    ),
    (
        ("ui", "design", "frontend"),
        (
            "Spacing is consistent",
            "Interactive elements have hover states",
            "Layout works on narrow screens",
        ),
    ),
)


def default_criteria(task: str) -> list[str]:
    """Keyword-derived criteria used when generation yields nothing."""
    words = set(re.findall(r"[a-z]+", task.lower()))
    criteria = list(BASELINE_CRITERIA)
    for keywords, extra in KEYWORD_CRITERIA:
        if words.intersection(keywords):
            criteria.extend(extra)
    return criteria


def _strings(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_criteria_reply(text: str) -> list[str]:
    payload = find_json_object(text)
    if payload is not None:
        criteria = _strings(payload.get("criteria"))
        if criteria:
            return criteria

    fenced = FENCED_ARRAY_PATTERN.search(text)
    if fenced:
        try:
            criteria = _strings(json.loads(fenced.group(1)))
        except ValueError:
            criteria = []
        if criteria:
            return criteria

    criteria = []
    for line in text.splitlines():
        match = LIST_ITEM_PATTERN.match(line.strip())
        if match and match.group(1).strip():
            criteria.append(match.group(1).strip())
    return criteria


class AcceptanceCriteriaAgent(SpecialistAgent):
    role = "criteria"
    system_prompt = """
You are a senior QA engineer defining acceptance criteria before any code is written.
Every criterion must be testable as pass/fail and specific about expected behavior.
Cover edge cases (empty input, wrong data, extreme values) and UI or performance
expectations where they apply.
Reply with JSON: {"criteria": ["...", "..."]}.
""".strip()

    def build_instruction(self, task: str, workspace: str = "") -> str:
        parts = [f"TASK TO ANALYZE:\n{task}"]
        if workspace:
            parts.append(f"Workspace: {workspace}")
        parts.append(
            "List what must work for this task to be done, which edge cases a tester "
            "should try and what could go wrong."
        )
        return "\n\n".join(parts)

    async def generate(self, task: str, workspace: str = "") -> list[str]:
        """Ask for criteria; falls back to keyword defaults when the reply has none."""
        response = await self.run(self.build_instruction(task, workspace))
        return parse_criteria_reply(response.content) or default_criteria(task)
