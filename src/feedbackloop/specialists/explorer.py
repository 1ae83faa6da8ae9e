from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from feedbackloop.review.parser import find_json_object
from feedbackloop.specialists.base import SpecialistAgent, SpecialistResponse

LOGGER = logging.getLogger(__name__)

EXPLORE_QUESTIONS = (
    "Which files and directories are most relevant to this task?",
    "Which existing patterns, helpers and conventions should the change follow?",
    "Which entry points, tests and configuration does the change touch?",
)


@dataclass(slots=True)
class ExploreResult:
    relevant_files: list[str] = field(default_factory=list)
    codebase_context: str = ""
    existing_patterns: list[str] = field(default_factory=list)
    raw: list[str] = field(default_factory=list)

    def render(self) -> str:
        lines: list[str] = []
        if self.relevant_files:
            lines.append("Relevant files:")
            lines.extend(f"- {item}" for item in self.relevant_files)
        if self.existing_patterns:
            lines.append("Existing patterns:")
            lines.extend(f"- {item}" for item in self.existing_patterns)
        if self.codebase_context:
            lines.append(f"Context: {self.codebase_context}")
        if not lines:
            lines.extend(self.raw)
        return "\n".join(lines)


def _strings(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


class ExplorerAgent(SpecialistAgent):
    role = "explorer"
    system_prompt = """
You are a read-only codebase explorer. Do not modify files.
Answer the question narrowly and reply with JSON:
{"relevantFiles": [...], "codebaseContext": "...", "existingPatterns": [...]}
""".strip()

    def build_instruction(self, task: str, question: str) -> str:
        return f"Task: {task}\n\nQuestion: {question}"

    async def explore(self, task: str) -> ExploreResult:
        """Ask each narrow question concurrently and join the answers."""
        outcomes = await asyncio.gather(
            *(self.run(self.build_instruction(task, question)) for question in EXPLORE_QUESTIONS),
            return_exceptions=True,
        )
        responses = [item for item in outcomes if isinstance(item, SpecialistResponse)]
        if not responses:
            first = outcomes[0]
            if isinstance(first, BaseException):
                raise first
        for item in outcomes:
            if isinstance(item, BaseException):
                LOGGER.info("Explore question failed: %s", item)

        result = ExploreResult()
        contexts: list[str] = []
        for response in responses:
            payload = find_json_object(response.content)
            if payload is None:
                result.raw.append(response.content[:2000])
                continue
            for path in _strings(payload.get("relevantFiles")):
                if path not in result.relevant_files:
                    result.relevant_files.append(path)
            for pattern in _strings(payload.get("existingPatterns")):
                if pattern not in result.existing_patterns:
                    result.existing_patterns.append(pattern)
            context = payload.get("codebaseContext")
            if isinstance(context, str) and context.strip():
                contexts.append(context.strip())
        result.codebase_context = "\n".join(contexts)
        return result
