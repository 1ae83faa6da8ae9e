"""Human-readable renderings of the session records.

The section headers are a compatibility contract with existing plan directories. The
parsers only recover what a resumed session needs: phases, decisions, errors, research
notes and iteration logs come back empty. The JSON records kept next to these files are
the source of truth.
"""

from __future__ import annotations

import re

from feedbackloop.state.json_store import utcnow_iso
from feedbackloop.state.records import Findings, Progress, TaskPlan

TASK_SECTION = re.compile(r"## Task\s*\n([\s\S]*?)(?=\n## |\Z)")
CURRENT_PHASE_SECTION = re.compile(r"## Current Phase\s*\nPhase (\d+)")
CRITERIA_SECTION = re.compile(r"## Acceptance Criteria\s*\n([\s\S]*?)(?=\n## |\Z)")
REQUIREMENTS_SECTION = re.compile(r"## Requirements\s*\n([\s\S]*?)(?=\n## |\Z)")
DISCOVERIES_SECTION = re.compile(r"## Discoveries\s*\n([\s\S]*?)(?=\n---|\Z)")
CHECKBOX_PREFIX = re.compile(r"^- \[.\] ")


def _bullets(section: str, *, strip_checkbox: bool = False) -> list[str]:
    items: list[str] = []
    for line in section.splitlines():
        if not line.startswith("- "):
            continue
        text = CHECKBOX_PREFIX.sub("", line) if strip_checkbox else line[2:]
        text = text.strip()
        if text:
            items.append(text)
    return items


def render_task_plan(plan: TaskPlan) -> str:
    current = plan.phase()
    lines = [
        "# Task Plan",
        "",
        "## Task",
        plan.task,
        "",
        "## Current Phase",
        f"Phase {plan.current_phase}: {current.name if current else 'Unknown'}",
        "",
        "## Phases",
    ]
    for phase in plan.phases:
        lines.append(f"### Phase {phase.id}: {phase.name}")
        lines.append(f"**Status:** {phase.status}")
        lines.append("**Steps:**")
        for step in phase.steps:
            mark = "[x]" if step in phase.completed_steps else "[ ]"
            lines.append(f"- {mark} {step}")
        lines.append("")

    lines.extend(["", "## Acceptance Criteria"])
    if plan.acceptance_criteria:
        lines.extend(f"- [ ] {item}" for item in plan.acceptance_criteria)
    else:
        lines.append("None specified")

    lines.extend(["", "## Decisions"])
    if plan.decisions:
        for decision in plan.decisions:
            lines.append(f"- **{decision.timestamp}**: {decision.decision}")
            lines.append(f"  - Context: {decision.context}")
            lines.append(f"  - Reasoning: {decision.reasoning}")
    else:
        lines.append("No decisions recorded yet.")

    lines.extend(["", "## Errors"])
    if plan.errors:
        for entry in plan.errors:
            lines.append(f"- **{entry.timestamp}** [{entry.attempts} attempts]: {entry.action}")
            lines.append(f"  - Error: {entry.error}")
            lines.append(f"  - Resolution: {entry.resolution or 'Pending'}")
    else:
        lines.append("No errors recorded.")

    lines.extend(["", "---", f"*Last updated: {utcnow_iso()}*", ""])
    return "\n".join(lines)


def parse_task_plan_markdown(content: str) -> TaskPlan:
    task_match = TASK_SECTION.search(content)
    phase_match = CURRENT_PHASE_SECTION.search(content)
    criteria_match = CRITERIA_SECTION.search(content)
    return TaskPlan(
        task=task_match.group(1).strip() if task_match else "",
        current_phase=int(phase_match.group(1)) if phase_match else 1,
        acceptance_criteria=(
            _bullets(criteria_match.group(1), strip_checkbox=True) if criteria_match else []
        ),
    )


def render_findings(findings: Findings) -> str:
    lines = ["# Findings", "", "## Requirements"]
    lines.extend(f"- {item}" for item in findings.requirements)
    if not findings.requirements:
        lines.append("None specified")

    lines.extend(["", "## Research"])
    if findings.research:
        for note in findings.research:
            lines.append(f"### {note.timestamp}")
            lines.append(f"**Source:** {note.source}")
            lines.append(f"**Tags:** {', '.join(note.tags)}")
            lines.append("")
            lines.append(note.content)
            lines.append("")
    else:
        lines.append("No research recorded yet.")

    lines.extend(["", "## Discoveries"])
    lines.extend(f"- {item}" for item in findings.discoveries)
    if not findings.discoveries:
        lines.append("No discoveries yet.")

    lines.extend(["", "---", f"*Last updated: {findings.last_updated}*", ""])
    return "\n".join(lines)


def parse_findings_markdown(content: str) -> Findings:
    requirements = REQUIREMENTS_SECTION.search(content)
    discoveries = DISCOVERIES_SECTION.search(content)
    return Findings(
        requirements=_bullets(requirements.group(1)) if requirements else [],
        discoveries=_bullets(discoveries.group(1)) if discoveries else [],
    )


def render_progress(progress: Progress) -> str:
    lines = [
        "# Progress Log",
        "",
        f"**Session Started:** {progress.session_start}",
        f"**Total Actions:** {progress.total_actions}",
        f"**Actions Since Last Save:** {progress.actions_since_save}",
        f"**Last Action:** {progress.last_action}",
        "",
        "## Iterations",
    ]
    if progress.iterations:
        for log in progress.iterations:
            files = ", ".join(log.files_changed) if log.files_changed is not None else "Unknown"
            lines.extend(
                [
                    f"### Iteration {log.iteration}",
                    f"**Started:** {log.start_time}",
                    f"**Ended:** {log.end_time or 'In progress'}",
                    f"**Verdict:** {log.verdict or 'Pending'}",
                    "",
                    "**Coder Summary:**",
                    log.coder_summary or "N/A",
                    "",
                    "**Feedback:**",
                    log.feedback or "None",
                    "",
                    f"**Files Changed:** {files}",
                    "",
                ]
            )
    else:
        lines.append("No iterations yet.")

    lines.extend(["", "## Test Results"])
    if progress.test_results:
        for result in progress.test_results:
            status = "✅ PASSED" if result.passed else "❌ FAILED"
            lines.append(f"- **{result.timestamp}** `{result.command}`: {status}")
            if result.output:
                lines.append(f"  Output: {result.output[:200]}")
    else:
        lines.append("No test results yet.")

    lines.extend(["", "---", f"*Last updated: {utcnow_iso()}*", ""])
    return "\n".join(lines)


def parse_progress_markdown(content: str) -> Progress:
    total = re.search(r"\*\*Total Actions:\*\* (\d+)", content)
    since = re.search(r"\*\*Actions Since Last Save:\*\* (\d+)", content)
    last = re.search(r"\*\*Last Action:\*\* (.+)", content)
    started = re.search(r"\*\*Session Started:\*\* (.+)", content)
    progress = Progress(
        last_action=last.group(1).strip() if last else "",
        total_actions=int(total.group(1)) if total else 0,
        actions_since_save=int(since.group(1)) if since else 0,
    )
    if started:
        progress.session_start = started.group(1).strip()
    return progress
