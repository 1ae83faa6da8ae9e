from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from feedbackloop.backends.base import AgentBackend, AgentRequest, BackendExecutionError
from feedbackloop.backends.codex import CodexBackend

LOGGER = logging.getLogger(__name__)

AUTH_STATUS_CODES = {401, 403}


class OpenAIResponsesBackend(AgentBackend):
    """Responses API backend; runs through the Codex CLI when no client can be built."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.cli_fallback = CodexBackend(working_directory=working_directory)
        self._client: Any | None = None
        try:
            self._client = OpenAI()
        except OpenAIError as exc:
            LOGGER.info("OpenAI client unavailable, using codex CLI: %s", exc)
            self._client = None

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def complete(self, request: AgentRequest) -> str:
        if self._client is None:
            return await self.cli_fallback.complete(request)

        model_name = request.model or self.model
        client = self._client

        def _request() -> Any:
            return client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": request.system_prompt},
                    {"role": "user", "content": request.render_prompt()},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            raise BackendExecutionError(
                f"OpenAI request failed: {exc}",
                backend=self.name,
                exit_code=status_code if isinstance(status_code, int) else None,
                retriable=status_code not in AUTH_STATUS_CODES,
            ) from exc

        return self._extract_text(payload).strip()
