from feedbackloop.backends.base import (
    AgentBackend,
    AgentHandle,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
    BackendRegistry,
    BackendTimeoutError,
    run_agent,
)
from feedbackloop.backends.claude import ClaudeCodeBackend
from feedbackloop.backends.codex import CodexBackend
from feedbackloop.backends.fallback import (
    FallbackAttempt,
    FallbackResult,
    ModelFallbackExhausted,
    ModelFallbackRunner,
    classify_failure,
)
from feedbackloop.backends.openai_api import OpenAIResponsesBackend

__all__ = [
    "AgentBackend",
    "AgentHandle",
    "AgentRequest",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendRegistry",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "FallbackAttempt",
    "FallbackResult",
    "ModelFallbackExhausted",
    "ModelFallbackRunner",
    "OpenAIResponsesBackend",
    "classify_failure",
    "run_agent",
]
