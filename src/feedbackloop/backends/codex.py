from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from feedbackloop.backends.base import AgentBackend, AgentHandle, AgentRequest
from feedbackloop.backends.stream import extract_event_text, spawn_stream_process


def _codex_event_text(event: dict[str, Any]) -> str:
    # `codex exec --json` nests agent output under item.completed events.
    item = event.get("item")
    if isinstance(item, dict) and item.get("type") in {"agent_message", "assistant_message"}:
        text = item.get("text")
        if isinstance(text, str):
            return text
    msg = event.get("msg")
    if isinstance(msg, dict) and msg.get("type") == "agent_message":
        message = msg.get("message")
        if isinstance(message, str):
            return message
    if str(event.get("type", "")).endswith(".delta"):
        return ""
    return extract_event_text(event)


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(request.system_prompt, ensure_ascii=False)}",
        ]
        if request.model:
            command.extend(["-m", request.model])
        if request.role == "coder":
            command.append("--full-auto")
        command.append(request.render_prompt())
        return command

    async def spawn(self, request: AgentRequest) -> AgentHandle:
        if request.working_directory is None:
            request.working_directory = self.working_directory
        return await spawn_stream_process(
            self.build_command(request),
            request,
            backend=self.name,
            extractor=_codex_event_text,
        )

    async def complete(self, request: AgentRequest) -> str:
        handle = await self.spawn(request)
        return await handle.wait()
