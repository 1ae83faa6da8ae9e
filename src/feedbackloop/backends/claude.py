from __future__ import annotations

from pathlib import Path

from feedbackloop.backends.base import AgentBackend, AgentHandle, AgentRequest
from feedbackloop.backends.stream import spawn_stream_process


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [
            self.binary,
            "-p",
            request.render_prompt(),
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if request.model:
            command.extend(["--model", request.model])
        if request.system_prompt:
            command.extend(["--append-system-prompt", request.system_prompt])
        if request.role == "coder":
            command.extend(["--permission-mode", "acceptEdits"])
        return command

    async def spawn(self, request: AgentRequest) -> AgentHandle:
        if request.working_directory is None:
            request.working_directory = self.working_directory
        return await spawn_stream_process(self.build_command(request), request, backend=self.name)

    async def complete(self, request: AgentRequest) -> str:
        handle = await self.spawn(request)
        return await handle.wait()
