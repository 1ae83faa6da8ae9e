import asyncio
from pathlib import Path
from typing import Any

import pytest

from feedbackloop.backends import (
    AgentBackend,
    AgentRequest,
    BackendExecutionError,
    BackendRegistry,
    BackendTimeoutError,
    ModelFallbackExhausted,
    ModelFallbackRunner,
    classify_failure,
    run_agent,
)
from feedbackloop.backends.claude import ClaudeCodeBackend
from feedbackloop.backends.codex import CodexBackend
from feedbackloop.backends.openai_api import OpenAIResponsesBackend
from feedbackloop.models import ModelCandidate


class FailingBackend(AgentBackend):
    def __init__(self, message: str = "boom", *, retriable: bool = True) -> None:
        self.message = message
        self.retriable = retriable
        self.calls = 0

    async def complete(self, request: AgentRequest) -> str:
        _ = request
        self.calls += 1
        raise BackendExecutionError(self.message, backend="fake", retriable=self.retriable)


class EchoBackend(AgentBackend):
    def __init__(self, reply: str = "ok") -> None:
        self.reply = reply
        self.requests: list[AgentRequest] = []

    async def complete(self, request: AgentRequest) -> str:
        self.requests.append(request)
        return self.reply


class SlowBackend(AgentBackend):
    async def complete(self, request: AgentRequest) -> str:
        _ = request
        await asyncio.sleep(5)
        return "late"


def _request(role: str = "coder", model: str = "") -> AgentRequest:
    return AgentRequest(role=role, system_prompt="system", user_prompt="implement feature", model=model)


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    request = AgentRequest(
        role="coder",
        system_prompt="system",
        user_prompt="implement feature",
        model="gpt-5-codex",
        context={"iteration": 2},
    )
    command = backend.build_command(request)

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--full-auto" in command
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command(_request(role="reviewer", model="claude-sonnet-4-5"))

    assert command[0:2] == ["claude", "-p"]
    assert "stream-json" in command
    assert command[command.index("--model") + 1] == "claude-sonnet-4-5"
    assert "--permission-mode" not in command


def test_registry_rejects_unknown_provider() -> None:
    registry = BackendRegistry({"claude": EchoBackend()})

    with pytest.raises(BackendExecutionError) as excinfo:
        registry.get("gemini")

    assert excinfo.value.retriable is False
    assert registry.providers() == ["claude"]


def test_run_agent_wait_timeout_raises_backend_timeout() -> None:
    with pytest.raises(BackendTimeoutError):
        asyncio.run(run_agent(SlowBackend(), _request(), spawn_timeout=1.0, wait_timeout=0.05))


def test_classify_failure_taxonomy() -> None:
    assert classify_failure(BackendTimeoutError("slow")) == "timeout"
    assert classify_failure(BackendExecutionError("HTTP 401 Unauthorized")) == "auth_quota"
    assert classify_failure(BackendExecutionError("insufficient_quota for org")) == "auth_quota"
    assert classify_failure(BackendExecutionError("missing binary", retriable=False)) == "unavailable"
    assert classify_failure(BackendExecutionError("connection reset")) == "transient"


def _runner_for(backends: dict[str, AgentBackend], events: list[dict[str, Any]]) -> tuple[ModelFallbackRunner, BackendRegistry]:
    registry = BackendRegistry(backends)
    candidates = [ModelCandidate(provider=name, model="m") for name in backends]
    return ModelFallbackRunner(candidates, call_name="coder", event_hook=events.append), registry


def _work(registry: BackendRegistry):
    async def _attempt(candidate: ModelCandidate) -> str:
        return await run_agent(
            registry.get(candidate.provider),
            _request(model=candidate.model),
            spawn_timeout=1.0,
            wait_timeout=1.0,
        )

    return _attempt


def test_fallback_first_candidate_wins_without_attempts() -> None:
    events: list[dict[str, Any]] = []
    second = EchoBackend("from b")
    runner, registry = _runner_for({"a": EchoBackend("from a"), "b": second}, events)

    result = asyncio.run(runner.run(_work(registry)))

    assert result.value == "from a"
    assert result.candidate.provider == "a"
    assert result.attempts == []
    assert result.used_fallback is False
    assert second.requests == []
    assert events == []


def test_fallback_skips_failed_candidate_in_order() -> None:
    events: list[dict[str, Any]] = []
    first = FailingBackend("connection reset")
    runner, registry = _runner_for({"a": first, "b": EchoBackend("from b")}, events)

    result = asyncio.run(runner.run(_work(registry)))

    assert result.value == "from b"
    assert result.candidate.provider == "b"
    assert [item.candidate.provider for item in result.attempts] == ["a"]
    assert result.attempts[0].failure_class == "transient"
    assert first.calls == 1
    assert [event["event"] for event in events] == ["model_attempt_failed", "model_fallback_success"]


def test_fallback_exhaustion_names_every_candidate() -> None:
    events: list[dict[str, Any]] = []
    runner, registry = _runner_for(
        {
            "a": FailingBackend("HTTP 401 Unauthorized"),
            "b": FailingBackend("connection reset"),
            "c": FailingBackend("binary missing", retriable=False),
        },
        events,
    )

    with pytest.raises(ModelFallbackExhausted) as excinfo:
        asyncio.run(runner.run(_work(registry)))

    error = excinfo.value
    assert [item.candidate.provider for item in error.attempts] == ["a", "b", "c"]
    assert [item.failure_class for item in error.attempts] == ["auth_quota", "transient", "unavailable"]
    assert "a/m: HTTP 401 Unauthorized" in str(error)
    assert "c/m: binary missing" in str(error)
    assert error.belongs_to("a") is True
    assert error.belongs_to("b") is False
    assert events[-1]["event"] == "model_chain_exhausted"


def test_fallback_walks_three_candidates_to_the_survivor() -> None:
    events: list[dict[str, Any]] = []
    first = FailingBackend("connection reset")
    second = FailingBackend("HTTP 503 overloaded")
    runner, registry = _runner_for(
        {"a": first, "b": second, "c": EchoBackend("from c")},
        events,
    )

    result = asyncio.run(runner.run(_work(registry)))

    assert result.value == "from c"
    assert result.candidate.provider == "c"
    assert result.used_fallback is True
    assert [item.candidate.provider for item in result.attempts] == ["a", "b"]
    assert (first.calls, second.calls) == (1, 1)
    assert [event["event"] for event in events] == [
        "model_attempt_failed",
        "model_attempt_failed",
        "model_fallback_success",
    ]


def test_fallback_runner_requires_candidates() -> None:
    with pytest.raises(ValueError):
        ModelFallbackRunner([], call_name="reviewer")


def test_codex_backend_reads_agent_messages(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    class FakeStdout:
        def __init__(self, lines: list[bytes]) -> None:
            self._lines = lines
            self._index = 0

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if self._index >= len(self._lines):
                raise StopAsyncIteration
            line = self._lines[self._index]
            self._index += 1
            return line

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        returncode = 0
        pid = 4242

        def __init__(self) -> None:
            self.stdout = FakeStdout(
                [
                    b"{\"type\":\"response.output_text.delta\",\"delta\":\"hel\"}\n",
                    b"{\"type\":\"item.completed\",\"item\":{\"type\":\"agent_message\",\"text\":\"done\"}}\n",
                    b"{\"type\":\"turn.completed\"}\n",
                ]
            )
            self.stderr = FakeStderr()

        async def wait(self) -> int:
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = CodexBackend(working_directory=Path("/tmp/work"))
    output = asyncio.run(backend.complete(_request(model="gpt-5-codex")))

    assert output == "done"
    assert captured["args"][0] == "codex"
    assert captured["cwd"] == "/tmp/work"


def test_claude_stream_prefers_result_event(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeStdout:
        def __init__(self) -> None:
            self._lines = iter(
                [
                    b"{\"type\":\"assistant\",\"message\":{\"content\":[{\"text\":\"thinking\"}]}}\n",
                    b"{\"type\":\"result\",\"result\":\"final answer\"}\n",
                ]
            )

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            try:
                return next(self._lines)
            except StopIteration:
                raise StopAsyncIteration from None

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        returncode = 0
        pid = 1

        def __init__(self) -> None:
            self.stdout = FakeStdout()
            self.stderr = FakeStderr()

        async def wait(self) -> int:
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    output = asyncio.run(ClaudeCodeBackend().complete(_request()))

    assert output == "final answer"


def test_stream_nonzero_exit_is_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    class EmptyStdout:
        def __aiter__(self) -> "EmptyStdout":
            return self

        async def __anext__(self) -> bytes:
            raise StopAsyncIteration

    class FakeStderr:
        async def read(self) -> bytes:
            return b"rate limited"

    class FakeProcess:
        returncode = 2
        pid = 1
        stdout = EmptyStdout()
        stderr = FakeStderr()

        async def wait(self) -> int:
            return 2

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(ClaudeCodeBackend().complete(_request()))

    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable is True
    assert "rate limited" in str(excinfo.value)


def test_missing_binary_is_not_retriable() -> None:
    backend = ClaudeCodeBackend(binary="/nonexistent/claude-binary")

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.complete(_request()))

    assert excinfo.value.retriable is False
    assert classify_failure(excinfo.value) == "unavailable"


def test_openai_backend_uses_request_model(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    class FakeResponses:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {"output_text": " ok "}

    class FakeClient:
        def __init__(self) -> None:
            self.responses = FakeResponses()

    backend = OpenAIResponsesBackend(model="gpt-5-codex")
    monkeypatch.setattr(backend, "_client", FakeClient())

    output = asyncio.run(backend.complete(_request(model="gpt-5.1-codex")))

    assert output == "ok"
    assert captured["model"] == "gpt-5.1-codex"
    assert captured["input"][0] == {"role": "system", "content": "system"}


def test_openai_backend_auth_failure_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    class AuthError(Exception):
        status_code = 401

    class FakeResponses:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            _ = kwargs
            raise AuthError("invalid api key")

    class FakeClient:
        responses = FakeResponses()

    backend = OpenAIResponsesBackend()
    monkeypatch.setattr(backend, "_client", FakeClient())

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.complete(_request()))

    assert excinfo.value.retriable is False
    assert classify_failure(excinfo.value) == "auth_quota"


def test_stream_drains_stderr_while_stdout_is_open(monkeypatch: pytest.MonkeyPatch) -> None:
    class GatedStdout:
        def __init__(self, gate: asyncio.Event) -> None:
            self.gate = gate
            self.sent = False

        def __aiter__(self) -> "GatedStdout":
            return self

        async def __anext__(self) -> bytes:
            # A chatty agent keeps stdout open until its stderr pipe is read.
            await self.gate.wait()
            if self.sent:
                raise StopAsyncIteration
            self.sent = True
            return b"{\"type\":\"result\",\"result\":\"finished\"}\n"

    class NoisyStderr:
        def __init__(self, gate: asyncio.Event) -> None:
            self.gate = gate

        async def read(self) -> bytes:
            self.gate.set()
            return b"warning\n" * 10000

    class FakeProcess:
        returncode = 0
        pid = 7

        def __init__(self) -> None:
            gate = asyncio.Event()
            self.stdout = GatedStdout(gate)
            self.stderr = NoisyStderr(gate)

        async def wait(self) -> int:
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    async def _complete() -> str:
        return await asyncio.wait_for(ClaudeCodeBackend().complete(_request()), timeout=2.0)

    assert asyncio.run(_complete()) == "finished"
