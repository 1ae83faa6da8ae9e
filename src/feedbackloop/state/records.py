from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from feedbackloop.state.json_store import utcnow_iso

PhaseStatus = Literal["pending", "in_progress", "completed", "blocked"]
Verdict = Literal["approved", "rejected"]


@dataclass(slots=True)
class Phase:
    id: int
    name: str
    status: PhaseStatus = "pending"
    steps: list[str] = field(default_factory=list)
    completed_steps: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Decision:
    decision: str
    context: str = ""
    reasoning: str = ""
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class ErrorEntry:
    action: str
    error: str
    attempts: int = 1
    resolution: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)

    @property
    def resolved(self) -> bool:
        return bool(self.resolution)


@dataclass(slots=True)
class TaskPlan:
    task: str = ""
    phases: list[Phase] = field(default_factory=list)
    current_phase: int = 1
    decisions: list[Decision] = field(default_factory=list)
    errors: list[ErrorEntry] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)

    def phase(self, phase_id: int | None = None) -> Phase | None:
        wanted = self.current_phase if phase_id is None else phase_id
        for phase in self.phases:
            if phase.id == wanted:
                return phase
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskPlan:
        return cls(
            task=str(data.get("task", "")),
            phases=[Phase(**item) for item in data.get("phases", [])],
            current_phase=int(data.get("current_phase", 1)),
            decisions=[Decision(**item) for item in data.get("decisions", [])],
            errors=[ErrorEntry(**item) for item in data.get("errors", [])],
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
        )


@dataclass(slots=True)
class ResearchNote:
    content: str
    source: str = ""
    tags: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Findings:
    requirements: list[str] = field(default_factory=list)
    research: list[ResearchNote] = field(default_factory=list)
    discoveries: list[str] = field(default_factory=list)
    last_updated: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Findings:
        return cls(
            requirements=list(data.get("requirements", [])),
            research=[ResearchNote(**item) for item in data.get("research", [])],
            discoveries=list(data.get("discoveries", [])),
            last_updated=str(data.get("last_updated") or utcnow_iso()),
        )


@dataclass(slots=True)
class IterationLog:
    iteration: int
    start_time: str = field(default_factory=utcnow_iso)
    end_time: str | None = None
    coder_summary: str | None = None
    verdict: Verdict | None = None
    feedback: str | None = None
    files_changed: list[str] | None = None


@dataclass(slots=True)
class CheckRunLog:
    command: str
    passed: bool
    output: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Progress:
    session_start: str = field(default_factory=utcnow_iso)
    iterations: list[IterationLog] = field(default_factory=list)
    test_results: list[CheckRunLog] = field(default_factory=list)
    last_action: str = ""
    total_actions: int = 0
    actions_since_save: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Progress:
        return cls(
            session_start=str(data.get("session_start") or utcnow_iso()),
            iterations=[IterationLog(**item) for item in data.get("iterations", [])],
            test_results=[CheckRunLog(**item) for item in data.get("test_results", [])],
            last_action=str(data.get("last_action", "")),
            total_actions=int(data.get("total_actions", 0)),
            actions_since_save=int(data.get("actions_since_save", 0)),
        )


def default_phases() -> list[Phase]:
    return [
        Phase(
            id=1,
            name="Implementation",
            status="in_progress",
            steps=["Analyze requirements", "Write code", "Test locally"],
        ),
        Phase(
            id=2,
            name="Verification",
            steps=["Run tests", "Check browser", "Verify acceptance criteria"],
        ),
        Phase(
            id=3,
            name="Refinement",
            steps=["Address feedback", "Fix issues", "Re-verify"],
        ),
    ]
