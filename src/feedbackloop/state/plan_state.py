from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from feedbackloop.state.json_store import JsonStateStore, PlanStateError, utcnow_iso
from feedbackloop.state.markdown import (
    parse_findings_markdown,
    parse_progress_markdown,
    parse_task_plan_markdown,
    render_findings,
    render_progress,
    render_task_plan,
)
from feedbackloop.state.records import (
    CheckRunLog,
    Decision,
    ErrorEntry,
    Findings,
    IterationLog,
    Progress,
    ResearchNote,
    TaskPlan,
    default_phases,
)

LOGGER = logging.getLogger(__name__)

THREE_STRIKE_LIMIT = 3
TASK_PLAN_FILE = "task_plan.md"
FINDINGS_FILE = "findings.md"
PROGRESS_FILE = "progress.md"
RECORD_NAMESPACES = {"task_plan", "findings", "progress", "metrics", "session"}


def new_session_id() -> str:
    return f"fl-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class PlanStateStore:
    """Durable plan, findings and progress records for one session.

    Structured records live in `<session>/state/*.json`; each write re-renders the
    matching markdown document next to them.
    """

    def __init__(self, root: Path, session_id: str) -> None:
        self.session_id = session_id
        self.session_dir = root / session_id
        self.records = JsonStateStore(self.session_dir / "state", RECORD_NAMESPACES)

    @classmethod
    def open(cls, workspace: Path, session_id: str, state_dir: str = ".feedback-loop") -> PlanStateStore:
        return cls(workspace / state_dir, session_id)

    @property
    def task_plan_path(self) -> Path:
        return self.session_dir / TASK_PLAN_FILE

    @property
    def findings_path(self) -> Path:
        return self.session_dir / FINDINGS_FILE

    @property
    def progress_path(self) -> Path:
        return self.session_dir / PROGRESS_FILE

    def exists(self) -> bool:
        return self.records.has("task_plan") or self.task_plan_path.exists()

    def initialize(self, task: str, acceptance_criteria: list[str] | None = None) -> TaskPlan:
        criteria = list(acceptance_criteria or [])
        plan = TaskPlan(task=task, phases=default_phases(), acceptance_criteria=criteria)
        findings = Findings(requirements=criteria)
        progress = Progress(last_action="Session initialized")
        self._write_plan(plan)
        self._write_findings(findings)
        self._write_progress(progress)
        self.records.set_json(
            "session",
            {"session_id": self.session_id, "task": task, "created_at": utcnow_iso()},
        )
        LOGGER.info("Initialized plan state at %s", self.session_dir)
        return plan

    def _write_plan(self, plan: TaskPlan) -> None:
        self.records.set_json("task_plan", plan.to_dict())
        self.task_plan_path.write_text(render_task_plan(plan), encoding="utf-8")

    def _write_findings(self, findings: Findings) -> None:
        findings.last_updated = utcnow_iso()
        self.records.set_json("findings", findings.to_dict())
        self.findings_path.write_text(render_findings(findings), encoding="utf-8")

    def _write_progress(self, progress: Progress) -> None:
        self.records.set_json("progress", progress.to_dict())
        self.progress_path.write_text(render_progress(progress), encoding="utf-8")

    def read_plan(self) -> TaskPlan:
        data = self.records.get_json("task_plan", default=None)
        if isinstance(data, dict) and data:
            return TaskPlan.from_dict(data)
        if self.task_plan_path.exists():
            return parse_task_plan_markdown(self.task_plan_path.read_text(encoding="utf-8"))
        raise PlanStateError(f"No task plan for session {self.session_id}")

    def read_findings(self) -> Findings:
        data = self.records.get_json("findings", default=None)
        if isinstance(data, dict) and data:
            return Findings.from_dict(data)
        if self.findings_path.exists():
            return parse_findings_markdown(self.findings_path.read_text(encoding="utf-8"))
        return Findings()

    def read_progress(self) -> Progress:
        data = self.records.get_json("progress", default=None)
        if isinstance(data, dict) and data:
            return Progress.from_dict(data)
        if self.progress_path.exists():
            return parse_progress_markdown(self.progress_path.read_text(encoding="utf-8"))
        return Progress()

    @staticmethod
    def _merge(record: Any, changes: dict[str, Any]) -> None:
        known = {item.name for item in fields(record)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise PlanStateError(f"Unknown {type(record).__name__} fields: {', '.join(unknown)}")
        for key, value in changes.items():
            if value is not None:
                setattr(record, key, value)

    def update_plan(self, **changes: Any) -> TaskPlan:
        plan = self.read_plan()
        self._merge(plan, changes)
        self._write_plan(plan)
        return plan

    def update_findings(self, **changes: Any) -> Findings:
        findings = self.read_findings()
        self._merge(findings, changes)
        self._write_findings(findings)
        return findings

    def update_progress(self, *, action: str | None = None, **changes: Any) -> Progress:
        progress = self.read_progress()
        self._merge(progress, changes)
        if action:
            progress.last_action = action
            progress.total_actions += 1
            progress.actions_since_save += 1
        self._write_progress(progress)
        return progress

    def _mutate_plan(self, mutate: Callable[[TaskPlan], None]) -> TaskPlan:
        plan = self.read_plan()
        mutate(plan)
        self._write_plan(plan)
        return plan

    def add_decision(self, decision: str, *, context: str = "", reasoning: str = "") -> TaskPlan:
        entry = Decision(decision=decision, context=context, reasoning=reasoning)
        return self._mutate_plan(lambda plan: plan.decisions.append(entry))

    def add_research(self, content: str, *, source: str = "", tags: list[str] | None = None) -> Findings:
        findings = self.read_findings()
        findings.research.append(ResearchNote(content=content, source=source, tags=list(tags or [])))
        self._write_findings(findings)
        return findings

    def add_discovery(self, discovery: str) -> Findings:
        findings = self.read_findings()
        if discovery not in findings.discoveries:
            findings.discoveries.append(discovery)
        self._write_findings(findings)
        return findings

    def upsert_error(self, action: str, message: str) -> ErrorEntry:
        """Count another failure of `action`, keeping one unresolved entry per key."""
        result: list[ErrorEntry] = []

        def _upsert(plan: TaskPlan) -> None:
            for entry in plan.errors:
                if entry.action == action and not entry.resolved:
                    entry.attempts += 1
                    entry.error = message
                    entry.timestamp = utcnow_iso()
                    result.append(entry)
                    return
            entry = ErrorEntry(action=action, error=message)
            plan.errors.append(entry)
            result.append(entry)

        self._mutate_plan(_upsert)
        return result[0]

    def resolve_error(self, action: str, resolution: str) -> bool:
        resolved: list[bool] = []

        def _resolve(plan: TaskPlan) -> None:
            for entry in plan.errors:
                if entry.action == action and not entry.resolved:
                    entry.resolution = resolution
                    resolved.append(True)

        self._mutate_plan(_resolve)
        return bool(resolved)

    def check_three_strikes(self, action: str) -> bool:
        plan = self.read_plan()
        return any(
            entry.action == action and not entry.resolved and entry.attempts >= THREE_STRIKE_LIMIT
            for entry in plan.errors
        )

    def escalation_needed(self) -> list[ErrorEntry]:
        return [
            entry
            for entry in self.read_plan().errors
            if not entry.resolved and entry.attempts >= THREE_STRIKE_LIMIT
        ]

    def advance_phase(self, phase_id: int, *, completed_step: str | None = None) -> TaskPlan:
        def _advance(plan: TaskPlan) -> None:
            for phase in plan.phases:
                if phase.id < phase_id:
                    phase.status = "completed"
                    phase.completed_steps = list(phase.steps)
                elif phase.id == phase_id:
                    phase.status = "in_progress"
                    if completed_step and completed_step not in phase.completed_steps:
                        phase.completed_steps.append(completed_step)
            plan.current_phase = phase_id

        return self._mutate_plan(_advance)

    def complete_plan(self) -> TaskPlan:
        def _complete(plan: TaskPlan) -> None:
            for phase in plan.phases:
                phase.status = "completed"
                phase.completed_steps = list(phase.steps)
            if plan.phases:
                plan.current_phase = plan.phases[-1].id

        return self._mutate_plan(_complete)

    def start_iteration(self, iteration: int) -> Progress:
        progress = self.read_progress()
        progress.iterations.append(IterationLog(iteration=iteration))
        progress.last_action = f"Iteration {iteration} started"
        progress.total_actions += 1
        progress.actions_since_save += 1
        self._write_progress(progress)
        return progress

    def finish_iteration(
        self,
        iteration: int,
        *,
        approved: bool,
        coder_summary: str,
        feedback: str | None,
        files_changed: list[str] | None = None,
    ) -> Progress:
        progress = self.read_progress()
        log = next((item for item in reversed(progress.iterations) if item.iteration == iteration), None)
        if log is None:
            log = IterationLog(iteration=iteration)
            progress.iterations.append(log)
        log.end_time = utcnow_iso()
        log.coder_summary = coder_summary[:1000]
        log.verdict = "approved" if approved else "rejected"
        log.feedback = feedback
        log.files_changed = files_changed
        progress.last_action = f"Iteration {iteration} {'approved' if approved else 'rejected'}"
        progress.total_actions += 1
        progress.actions_since_save = 0
        self._write_progress(progress)
        return progress

    def record_test_result(self, command: str, passed: bool, output: str | None = None) -> Progress:
        progress = self.read_progress()
        progress.test_results.append(
            CheckRunLog(command=command, passed=passed, output=(output or "")[:500] or None)
        )
        self._write_progress(progress)
        return progress

    def build_prompt_context(self) -> str:
        plan = self.read_plan()
        progress = self.read_progress()
        phase = plan.phase()

        sections = [
            "## PLANNING CONTEXT",
            "",
            f"**Task:** {plan.task}",
            "",
            f"**Current Phase:** {phase.name if phase else 'Unknown'} "
            f"({phase.status if phase else 'pending'})",
            f"**Iterations Completed:** {sum(1 for log in progress.iterations if log.end_time)}",
            f"**Last Action:** {progress.last_action}",
            "",
        ]
        if plan.acceptance_criteria:
            sections.append("**Acceptance Criteria:**")
            sections.extend(f"- [ ] {item}" for item in plan.acceptance_criteria)
            sections.append("")
        if plan.decisions:
            sections.append("**Recent Decisions:**")
            sections.extend(
                f"- {item.decision} ({item.reasoning})" for item in plan.decisions[-3:]
            )
            sections.append("")

        unresolved = [entry for entry in plan.errors if not entry.resolved]
        if unresolved:
            sections.append(f"**Known Issues ({len(unresolved)}):**")
            sections.extend(
                f"- [{entry.attempts} attempts] {entry.action}: {entry.error}" for entry in unresolved
            )
            sections.append("")

        last_feedback = next(
            (log.feedback for log in reversed(progress.iterations) if log.feedback), None
        )
        if last_feedback:
            sections.extend(["**Last Feedback:**", last_feedback, ""])

        escalations = [entry for entry in unresolved if entry.attempts >= THREE_STRIKE_LIMIT]
        if escalations:
            sections.append("**⚠️ 3-STRIKE LIMIT REACHED:**")
            sections.extend(f"- {entry.action}: {entry.error}" for entry in escalations)
            sections.append("These issues need a different approach or user intervention.")
            sections.append("")

        return "\n".join(sections).strip() + "\n"

    def record_event(self, event: dict[str, Any]) -> None:
        def _append(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("events", [])
            if not isinstance(events, list):
                events = []
            events.append({**event, "at": utcnow_iso()})
            metrics["events"] = events[-200:]
            name = str(event.get("event", ""))
            counters = metrics.get("counters", {})
            if not isinstance(counters, dict):
                counters = {}
            counters[name] = int(counters.get(name, 0)) + 1
            metrics["counters"] = counters
            return metrics

        self.records.update_json("metrics", _append, default={})

    def set_session_status(self, status: str, **extra: Any) -> None:
        def _update(payload: Any) -> dict[str, Any]:
            session = payload if isinstance(payload, dict) else {}
            session.update(extra)
            session["status"] = status
            session["updated_at"] = utcnow_iso()
            return session

        self.records.update_json("session", _update, default={})

    def metrics(self) -> dict[str, Any]:
        data = self.records.get_json("metrics", default={})
        return data if isinstance(data, dict) else {}

    def status(self) -> dict[str, Any]:
        plan = self.read_plan()
        progress = self.read_progress()
        session = self.records.get_json("session", default={})
        return {
            "session": session if isinstance(session, dict) else {},
            "task": plan.task,
            "current_phase": plan.current_phase,
            "iterations": [
                {
                    "iteration": log.iteration,
                    "verdict": log.verdict,
                    "ended": log.end_time,
                }
                for log in progress.iterations
            ],
            "unresolved_errors": [
                {"action": entry.action, "attempts": entry.attempts, "error": entry.error}
                for entry in plan.errors
                if not entry.resolved
            ],
            "escalations": [entry.action for entry in self.escalation_needed()],
            "last_action": progress.last_action,
            "total_actions": progress.total_actions,
        }
