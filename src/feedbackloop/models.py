from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

LoopStatus = Literal["approved", "exhausted", "rejected", "failed"]


@dataclass(slots=True, frozen=True)
class ModelCandidate:
    """One (provider, model) pair in a fallback chain."""

    provider: str
    model: str = ""

    @classmethod
    def parse(cls, value: str) -> ModelCandidate:
        provider, _, model = value.strip().partition("/")
        return cls(provider=provider.strip(), model=model.strip())

    @property
    def label(self) -> str:
        return f"{self.provider}/{self.model}" if self.model else self.provider


@dataclass(slots=True)
class CheckResult:
    name: str
    passed: bool
    command: str | None = None
    evidence: str | None = None
    output: str | None = None
    error: str | None = None
    exit_code: int | None = None


@dataclass(slots=True)
class ReviewIssue:
    severity: str | None = None
    category: str | None = None
    file: str | None = None
    line: int | None = None
    description: str | None = None
    fix: str | None = None


@dataclass(slots=True)
class RubricScore:
    dimension: str | None = None
    score: float | None = None
    evidence: str | None = None


@dataclass(slots=True)
class Artifacts:
    screenshots: list[str] = field(default_factory=list)
    urls_tested: list[str] = field(default_factory=list)
    command_summaries: list[str] = field(default_factory=list)
    runtime_logs: list[str] = field(default_factory=list)

    def has_proof(self) -> bool:
        return bool(self.screenshots or self.command_summaries or self.runtime_logs)


@dataclass(slots=True)
class TargetEvidence:
    repo: str | None = None
    path: str | None = None
    branch: str | None = None
    commit: str | None = None


@dataclass(slots=True)
class RuntimeEvidence:
    websocket: bool | None = None
    session_start: bool | None = None
    session_end: bool | None = None
    ping_pong_ok: bool | None = None
    third_party_connect: bool | None = None
    third_party_close_reason: str | None = None
    console_error_count: int | None = None


@dataclass(slots=True)
class ToolCallEvidence:
    duplicates_detected: bool = False
    samples: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReviewResult:
    approved: bool
    checks: list[CheckResult] = field(default_factory=list)
    feedback: str | None = None
    issues: list[ReviewIssue] = field(default_factory=list)
    artifacts: Artifacts = field(default_factory=Artifacts)
    target: TargetEvidence | None = None
    runtime: RuntimeEvidence | None = None
    tool_calls: ToolCallEvidence | None = None
    browser_errors: list[str] = field(default_factory=list)
    rubric: list[RubricScore] = field(default_factory=list)
    reviewer_json_valid: bool = False
    summary: str | None = None


@dataclass(slots=True, frozen=True)
class IterationResult:
    iteration: int
    coder_summary: str
    review: ReviewResult
    user_message: str | None = None
    coder_candidate: str | None = None


@dataclass(slots=True, frozen=True)
class ResolvedTarget:
    name: str
    path: str
    expected_branch: str | None = None
    branch_pattern: str | None = None
    branch: str | None = None
    commit: str | None = None


@dataclass(slots=True)
class CommitInfo:
    committed: bool
    sha: str | None = None
    pr_url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class LoopResult:
    approved: bool
    iterations: int
    history: list[IterationResult]
    changed_files: list[str]
    final_message: str
    status: LoopStatus
    session_id: str | None = None
    screenshots: list[str] = field(default_factory=list)
    commit: CommitInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "status": self.status,
            "iterations": self.iterations,
            "session_id": self.session_id,
            "changed_files": list(self.changed_files),
            "screenshots": list(self.screenshots),
            "commit": (
                {
                    "committed": self.commit.committed,
                    "sha": self.commit.sha,
                    "pr_url": self.commit.pr_url,
                    "error": self.commit.error,
                }
                if self.commit
                else None
            ),
            "final_message": self.final_message,
            "history": [
                {
                    "iteration": item.iteration,
                    "coder_summary": item.coder_summary,
                    "coder_candidate": item.coder_candidate,
                    "approved": item.review.approved,
                    "feedback": item.review.feedback,
                    "user_message": item.user_message,
                }
                for item in self.history
            ],
        }
