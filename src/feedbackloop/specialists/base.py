from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from feedbackloop.backends.base import AgentRequest, BackendRegistry, run_agent
from feedbackloop.backends.fallback import (
    BackendEventHook,
    FallbackAttempt,
    ModelFallbackRunner,
)
from feedbackloop.models import ModelCandidate


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    candidate: ModelCandidate
    attempts: list[FallbackAttempt] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    system_prompt: str = "You are a software specialist."

    def __init__(
        self,
        registry: BackendRegistry,
        candidates: Sequence[ModelCandidate],
        *,
        spawn_timeout: float = 10.0,
        wait_timeout: float = 180.0,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.registry = registry
        self.candidates = list(candidates)
        self.spawn_timeout = spawn_timeout
        self.wait_timeout = wait_timeout
        self.working_directory = working_directory
        self.event_hook = event_hook

    async def run(
        self,
        instruction: str,
        context: dict[str, Any] | None = None,
    ) -> SpecialistResponse:
        """Run the instruction through the candidate chain; raises ModelFallbackExhausted."""
        runner = ModelFallbackRunner(
            self.candidates,
            call_name=self.role,
            event_hook=self.event_hook,
        )

        async def _attempt(candidate: ModelCandidate) -> str:
            request = AgentRequest(
                role=self.role,
                system_prompt=self.system_prompt,
                user_prompt=instruction,
                model=candidate.model,
                context=dict(context or {}),
                working_directory=self.working_directory,
            )
            return await run_agent(
                self.registry.get(candidate.provider),
                request,
                spawn_timeout=self.spawn_timeout,
                wait_timeout=self.wait_timeout,
            )

        result = await runner.run(_attempt)
        return SpecialistResponse(
            role=self.role,
            content=result.value.strip(),
            candidate=result.candidate,
            attempts=result.attempts,
            metadata={"instruction": instruction[:400], "used_fallback": result.used_fallback},
        )
