from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from feedbackloop.state.json_store import JsonStateStore, utcnow_iso

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class QueuedMessage:
    text: str
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    attempts: int = 0
    next_attempt_at: float = 0.0
    enqueued_at: str = field(default_factory=utcnow_iso)
    last_error: str | None = None


class InboundQueue:
    """Durable user-message queue with per-attempt backoff.

    Unlike model fallback, delivery failures here are treated as transient: a message is
    retried on the configured schedule and dropped once it reaches `max_attempts`.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        backoff_seconds: Sequence[float] = (5.0, 15.0, 60.0),
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = JsonStateStore(state_dir, {"inbox"})
        self.backoff_seconds = list(backoff_seconds) or [0.0]
        self.max_attempts = max(1, max_attempts)
        self.clock = clock

    def _load(self) -> list[QueuedMessage]:
        payload = self.store.get_json("inbox", default={"messages": []})
        items = payload.get("messages", []) if isinstance(payload, dict) else []
        return [QueuedMessage(**item) for item in items if isinstance(item, dict)]

    def _save(self, messages: list[QueuedMessage]) -> None:
        self.store.set_json("inbox", {"messages": [asdict(item) for item in messages]})

    def backoff_for(self, attempt: int) -> float:
        index = min(max(attempt, 1), len(self.backoff_seconds)) - 1
        return float(self.backoff_seconds[index])

    def enqueue(self, text: str) -> QueuedMessage:
        message = QueuedMessage(text=text)
        messages = self._load()
        messages.append(message)
        self._save(messages)
        return message

    def pending(self) -> list[QueuedMessage]:
        return self._load()

    def drain(self, deliver: Callable[[QueuedMessage], Any]) -> list[QueuedMessage]:
        """Deliver every due message; returns the ones delivered."""
        now = self.clock()
        delivered: list[QueuedMessage] = []
        remaining: list[QueuedMessage] = []
        for message in self._load():
            if message.next_attempt_at > now:
                remaining.append(message)
                continue
            try:
                deliver(message)
            except Exception as exc:
                message.attempts += 1
                message.last_error = str(exc)
                if message.attempts >= self.max_attempts:
                    LOGGER.warning(
                        "Dropping inbound message %s after %d attempts: %s",
                        message.id,
                        message.attempts,
                        exc,
                    )
                    continue
                message.next_attempt_at = now + self.backoff_for(message.attempts)
                remaining.append(message)
                continue
            delivered.append(message)
        self._save(remaining)
        return delivered
