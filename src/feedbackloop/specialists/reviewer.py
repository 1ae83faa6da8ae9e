from __future__ import annotations

from collections.abc import Sequence

from feedbackloop.specialists.base import SpecialistAgent

VERDICT_CONTRACT = """
Reply with a single fenced ```json block:
{
  "approved": true | false,
  "checks": [{"name": "...", "passed": true | false, "evidence": "..."}],
  "issues": [{"severity": "...", "category": "...", "file": "...", "line": 0,
              "description": "...", "fix": "..."}],
  "rubric": [{"dimension": "...", "score": 1-5, "evidence": "..."}],
  "artifacts": {"screenshots": [], "urlsTested": [], "commandSummaries": []},
  "summary": "...",
  "feedback": "..."
}
""".strip()


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    system_prompt = f"""
You are the Reviewer specialist. Verify the coder's work independently; never trust its
own claims. Run the checks you need and cite evidence for every verdict.
If a recurring mistake should become a rule, add a line "[LEARN] Category: rule".
{VERDICT_CONTRACT}
""".strip()

    def build_instruction(
        self,
        task: str,
        coder_summary: str,
        *,
        iteration: int,
        acceptance_criteria: Sequence[str] = (),
        urls: Sequence[str] = (),
        plan_context: str = "",
    ) -> str:
        parts = [
            f"TASK: {task}",
            f"ITERATION: {iteration}",
            f"CODER SUMMARY:\n{coder_summary or '(no summary provided)'}",
        ]
        if acceptance_criteria:
            parts.append(
                "ACCEPTANCE CRITERIA:\n" + "\n".join(f"- {item}" for item in acceptance_criteria)
            )
        if urls:
            parts.append("URLS TO VERIFY:\n" + "\n".join(f"- {item}" for item in urls))
        if plan_context:
            parts.append(plan_context)
        parts.append(VERDICT_CONTRACT)
        return "\n\n".join(parts)
