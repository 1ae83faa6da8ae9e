from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when an agent backend fails to produce a reply."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a spawn or completion wait exceeds its timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend process cannot be started or supervised."""


@dataclass(slots=True)
class AgentRequest:
    role: str
    system_prompt: str
    user_prompt: str
    model: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    working_directory: Path | None = None

    def render_prompt(self) -> str:
        if not self.context:
            return self.user_prompt
        return (
            f"{self.user_prompt}\n\nContext JSON:\n"
            f"{json.dumps(self.context, ensure_ascii=False, indent=2)}"
        )


class AgentHandle(ABC):
    """A spawned agent run; `wait` resolves to the reply text."""

    @abstractmethod
    async def wait(self) -> str:
        ...

    async def cancel(self) -> None:
        return None


class TaskHandle(AgentHandle):
    def __init__(self, task: asyncio.Task[str]) -> None:
        self.task = task

    async def wait(self) -> str:
        return await self.task

    async def cancel(self) -> None:
        if not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except (asyncio.CancelledError, Exception):
                pass


class AgentBackend(ABC):
    name: str = "agent"

    async def spawn(self, request: AgentRequest) -> AgentHandle:
        """Start a run and return immediately with a handle."""
        return TaskHandle(asyncio.create_task(self.complete(request)))

    @abstractmethod
    async def complete(self, request: AgentRequest) -> str:
        """Run the agent to completion and return its reply text."""


class BackendRegistry:
    """Provider name to backend mapping owned by one runtime."""

    def __init__(self, backends: dict[str, AgentBackend] | None = None) -> None:
        self._backends: dict[str, AgentBackend] = dict(backends or {})

    def register(self, provider: str, backend: AgentBackend) -> None:
        self._backends[provider] = backend

    def get(self, provider: str) -> AgentBackend:
        backend = self._backends.get(provider)
        if backend is None:
            raise BackendExecutionError(
                f"No backend registered for provider '{provider}'",
                backend=provider,
                retriable=False,
            )
        return backend

    def providers(self) -> list[str]:
        return sorted(self._backends)


async def run_agent(
    backend: AgentBackend,
    request: AgentRequest,
    *,
    spawn_timeout: float,
    wait_timeout: float,
) -> str:
    try:
        handle = await asyncio.wait_for(backend.spawn(request), timeout=spawn_timeout)
    except TimeoutError as exc:
        raise BackendTimeoutError(
            f"Agent spawn timed out after {spawn_timeout:.1f}s",
            backend=backend.name,
            retriable=True,
        ) from exc

    try:
        return await asyncio.wait_for(handle.wait(), timeout=wait_timeout)
    except TimeoutError as exc:
        await handle.cancel()
        raise BackendTimeoutError(
            f"Agent run timed out after {wait_timeout:.1f}s",
            backend=backend.name,
            retriable=True,
        ) from exc
