from __future__ import annotations

from feedbackloop.specialists.base import SpecialistAgent


class CoderAgent(SpecialistAgent):
    role = "coder"
    system_prompt = """
You are the Coder/Engineer specialist.
Implement exactly what the task and plan ask for inside the bound repository.
Match repository conventions, run the relevant checks, and finish with a short summary
of what you changed.
""".strip()

    def build_instruction(
        self,
        task: str,
        *,
        iteration: int,
        plan_context: str = "",
        plan: str = "",
        exploration: str = "",
        learned: str = "",
        feedback: str | None = None,
        user_message: str | None = None,
    ) -> str:
        parts = [f"TASK: {task}", f"ITERATION: {iteration}"]
        if plan_context:
            parts.append(plan_context)
        if learned:
            parts.append(f"LEARNED PATTERNS (from past sessions):\n{learned}")
        if exploration:
            parts.append(f"CODEBASE NOTES:\n{exploration}")
        if plan:
            parts.append(f"IMPLEMENTATION PLAN:\n{plan}")
        if feedback:
            parts.append(f"PREVIOUS REVIEW FEEDBACK (address all of it):\n{feedback}")
        if user_message:
            parts.append(f"USER SAYS: {user_message}")
        return "\n\n".join(parts)
