from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from feedbackloop.backends.base import BackendExecutionError, BackendTimeoutError
from feedbackloop.models import ModelCandidate

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

FailureClass = Literal["transient", "timeout", "auth_quota", "unavailable"]
FailureClassifier = Callable[[BaseException], FailureClass]
BackendEventHook = Callable[[dict[str, Any]], None]

AUTH_PATTERN = re.compile(
    r"\b(401|403)\b|unauthori[sz]ed|forbidden|invalid[ _-]?api[ _-]?key|"
    r"authentication|not logged in|login required",
    re.IGNORECASE,
)
QUOTA_PATTERN = re.compile(
    r"insufficient[ _-]?quota|quota (exceeded|exhausted)|billing|out of credits|usage limit",
    re.IGNORECASE,
)


def classify_failure(exc: BaseException) -> FailureClass:
    """Map a failure onto the retry taxonomy.

    `transient` and `timeout` may be retried with another model of the same family;
    `auth_quota` and `unavailable` may not, though callers can still escalate to a
    different system.
    """
    if isinstance(exc, BackendTimeoutError | TimeoutError):
        return "timeout"
    message = str(exc)
    if AUTH_PATTERN.search(message) or QUOTA_PATTERN.search(message):
        return "auth_quota"
    if isinstance(exc, BackendExecutionError) and not exc.retriable:
        return "unavailable"
    return "transient"


def is_retryable(failure_class: FailureClass) -> bool:
    return failure_class in {"transient", "timeout"}


@dataclass(slots=True, frozen=True)
class FallbackAttempt:
    candidate: ModelCandidate
    error: str
    failure_class: FailureClass

    @property
    def retryable(self) -> bool:
        return is_retryable(self.failure_class)


@dataclass(slots=True)
class FallbackResult(Generic[T]):
    value: T
    candidate: ModelCandidate
    attempts: list[FallbackAttempt] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return bool(self.attempts)


class ModelFallbackExhausted(BackendExecutionError):
    """Raised when every candidate in a fallback chain failed."""

    def __init__(self, call_name: str, attempts: list[FallbackAttempt]) -> None:
        summary = "; ".join(f"{item.candidate.label}: {item.error}" for item in attempts)
        super().__init__(
            f"All model candidates failed for {call_name}. {summary}",
            retriable=False,
        )
        self.call_name = call_name
        self.attempts = list(attempts)

    @property
    def retryable(self) -> bool:
        return any(item.retryable for item in self.attempts)

    def belongs_to(self, provider: str) -> bool:
        """True when a non-retryable failure was already raised by `provider`."""
        return any(
            item.candidate.provider == provider and not item.retryable for item in self.attempts
        )


class ModelFallbackRunner:
    """Runs a unit of work against candidates strictly in order until one succeeds."""

    def __init__(
        self,
        candidates: Sequence[ModelCandidate],
        *,
        call_name: str = "agent",
        classifier: FailureClassifier = classify_failure,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if not candidates:
            raise ValueError(f"No model candidates configured for {call_name}")
        self.candidates = list(candidates)
        self.call_name = call_name
        self.classifier = classifier
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(self, work: Callable[[ModelCandidate], Awaitable[T]]) -> FallbackResult[T]:
        attempts: list[FallbackAttempt] = []
        for index, candidate in enumerate(self.candidates):
            try:
                value = await work(candidate)
            except Exception as exc:
                failure_class = self.classifier(exc)
                attempts.append(
                    FallbackAttempt(candidate=candidate, error=str(exc), failure_class=failure_class)
                )
                LOGGER.warning(
                    "%s candidate %s failed (%s): %s",
                    self.call_name,
                    candidate.label,
                    failure_class,
                    exc,
                )
                self._emit(
                    {
                        "event": "model_attempt_failed",
                        "call": self.call_name,
                        "candidate": candidate.label,
                        "attempt": index,
                        "error": str(exc)[:400],
                        "failure_class": failure_class,
                        "retryable": is_retryable(failure_class),
                    }
                )
                continue

            if index > 0:
                self._emit(
                    {
                        "event": "model_fallback_success",
                        "call": self.call_name,
                        "candidate": candidate.label,
                        "attempt": index,
                    }
                )
            return FallbackResult(value=value, candidate=candidate, attempts=attempts)

        self._emit(
            {
                "event": "model_chain_exhausted",
                "call": self.call_name,
                "candidates": [item.candidate.label for item in attempts],
            }
        )
        raise ModelFallbackExhausted(self.call_name, attempts)
