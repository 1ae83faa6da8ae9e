from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from typing import Any

from feedbackloop.backends.base import (
    AgentHandle,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
)

LOGGER = logging.getLogger(__name__)

ContentExtractor = Callable[[dict[str, Any]], str]


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def extract_event_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_event_text(message)
    return ""


class StreamJsonProcessHandle(AgentHandle):
    """Reads a JSON-lines agent process until exit and joins its text events."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        backend: str,
        extractor: ContentExtractor = extract_event_text,
    ) -> None:
        self.process = process
        self.backend = backend
        self.extractor = extractor
        self.final_result: str | None = None

    async def wait(self) -> str:
        if self.process.stdout is None:
            raise BackendProcessError(
                f"{self.backend} process did not expose stdout.",
                backend=self.backend,
                retriable=False,
            )

        chunks, stderr_output = await asyncio.gather(
            self._read_stdout(self.process.stdout), self._read_stderr()
        )
        return_code = await self.process.wait()
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.backend} exited with code {return_code}: {stderr_output[:400]}",
                backend=self.backend,
                exit_code=return_code,
                retriable=True,
            )
        if self.final_result is not None:
            return self.final_result.strip()
        return "\n".join(chunks).strip()

    async def _read_stderr(self) -> str:
        if self.process.stderr is None:
            return ""
        return (await self.process.stderr.read()).decode("utf-8", errors="replace").strip()

    async def _read_stdout(self, stdout: asyncio.StreamReader) -> list[str]:
        chunks: list[str] = []
        parse_buffer = ""
        async for raw_line in stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                chunks.append(line)
                continue

            if not isinstance(event, dict):
                continue
            result = event.get("result")
            if event.get("type") == "result" and isinstance(result, str):
                self.final_result = result
                continue
            content = self.extractor(event)
            if content:
                chunks.append(content)

        if parse_buffer:
            chunks.append(parse_buffer)
        return chunks

    async def cancel(self) -> None:
        if self.process.returncode is not None:
            return
        LOGGER.warning("Terminating %s process %s", self.backend, self.process.pid)
        try:
            self.process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self.process.wait(), timeout=5.0)
        except TimeoutError:
            self.process.kill()


async def spawn_stream_process(
    command: list[str],
    request: AgentRequest,
    *,
    backend: str,
    env: dict[str, str] | None = None,
    extractor: ContentExtractor = extract_event_text,
) -> StreamJsonProcessHandle:
    cwd = str(request.working_directory) if request.working_directory else None
    LOGGER.debug("Spawning %s for role %s (model=%s)", backend, request.role, request.model)
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=env if env is not None else os.environ.copy(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise BackendProcessError(
            f"{backend} binary not found: {command[0]}",
            backend=backend,
            retriable=False,
        ) from exc
    return StreamJsonProcessHandle(process, backend=backend, extractor=extractor)
