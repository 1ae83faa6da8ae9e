from __future__ import annotations

from dataclasses import dataclass, field

from feedbackloop.review.parser import find_json_object
from feedbackloop.specialists.base import SpecialistAgent
from feedbackloop.specialists.explorer import ExploreResult


@dataclass(slots=True)
class PlanResult:
    summary: str = ""
    steps: list[str] = field(default_factory=list)
    files_to_create: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    test_strategy: str = ""
    risks: list[str] = field(default_factory=list)
    raw: str = ""

    def render(self) -> str:
        if not (self.summary or self.steps):
            return self.raw
        lines = [f"Plan: {self.summary}"] if self.summary else []
        lines.extend(f"{index}. {step}" for index, step in enumerate(self.steps, start=1))
        if self.files_to_create:
            lines.append(f"Create: {', '.join(self.files_to_create)}")
        if self.files_to_modify:
            lines.append(f"Modify: {', '.join(self.files_to_modify)}")
        if self.test_strategy:
            lines.append(f"Testing: {self.test_strategy}")
        if self.risks:
            lines.append(f"Risks: {'; '.join(self.risks)}")
        return "\n".join(lines)


def _strings(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


class PlannerAgent(SpecialistAgent):
    role = "planner"
    system_prompt = """
You are the Planner/Architect specialist.
Design a concrete implementation plan; do not write code.
Reply with JSON: {"summary", "steps", "filesToCreate", "filesToModify", "testStrategy", "risks"}.
""".strip()

    def build_instruction(self, task: str, explore: ExploreResult | None) -> str:
        parts = [f"Design a technical approach for: {task}"]
        if explore is not None:
            rendered = explore.render()
            if rendered:
                parts.append(f"Codebase exploration:\n{rendered}")
        return "\n\n".join(parts)

    async def plan(self, task: str, explore: ExploreResult | None = None) -> PlanResult:
        response = await self.run(self.build_instruction(task, explore))
        payload = find_json_object(response.content)
        if payload is None:
            return PlanResult(raw=response.content[:4000])
        summary = payload.get("summary")
        strategy = payload.get("testStrategy")
        return PlanResult(
            summary=summary if isinstance(summary, str) else "",
            steps=_strings(payload.get("steps")),
            files_to_create=_strings(payload.get("filesToCreate")),
            files_to_modify=_strings(payload.get("filesToModify")),
            test_strategy=strategy if isinstance(strategy, str) else "",
            risks=_strings(payload.get("risks")),
            raw=response.content[:4000],
        )
