from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import replace

from feedbackloop.config import CommandConfig, GatesConfig
from feedbackloop.models import ReviewResult, RuntimeEvidence

GATE_FEEDBACK_HEADER = "Hard gates blocked approval:"
CLOSE_REASON_FAILURE_PATTERN = re.compile(r"deadline|timeout", re.IGNORECASE)


def _reviewer_json_failure(review: ReviewResult) -> str | None:
    if review.reviewer_json_valid:
        return None
    return "Reviewer JSON payload was invalid or missing."


def _command_failures(review: ReviewResult, commands: Sequence[CommandConfig]) -> str | None:
    required = {item.command for item in commands if item.required}
    if not required:
        return None
    failed = [
        check
        for check in review.checks
        if check.command in required and not check.passed
    ]
    if not failed:
        return None
    lines = [f"- {check.command}: {check.error or 'failed'}" for check in failed]
    return "Required command checks failed:\n" + "\n".join(lines)


def _browser_failure(review: ReviewResult) -> str | None:
    if not review.browser_errors:
        return None
    return "Browser verification reported errors:\n" + "\n".join(
        f"- {error}" for error in review.browser_errors
    )


def _artifact_failures(review: ReviewResult) -> list[str]:
    if not review.approved:
        return []
    failures: list[str] = []
    if not review.artifacts.has_proof():
        failures.append(
            "Approval blocked: no proof artifacts (screenshots or command summaries)."
        )
    if review.target is None:
        failures.append("Approval blocked: target evidence is missing.")
    if review.runtime is None:
        failures.append("Approval blocked: runtime evidence is missing.")
    if review.tool_calls is None:
        failures.append("Approval blocked: tool call evidence is missing.")
    return failures


def _runtime_failure(runtime: RuntimeEvidence | None) -> str | None:
    runtime = runtime or RuntimeEvidence()
    lifecycle_complete = (
        runtime.session_start is True
        and runtime.websocket is True
        and runtime.session_end is True
    )
    if lifecycle_complete and runtime.ping_pong_ok is not False:
        return None
    return "Runtime session health check failed (session/websocket/ping lifecycle incomplete)."


def _third_party_failure(runtime: RuntimeEvidence | None) -> str | None:
    runtime = runtime or RuntimeEvidence()
    if runtime.third_party_connect is not True:
        return "Third-party live connection was not established."
    reason = runtime.third_party_close_reason or ""
    if CLOSE_REASON_FAILURE_PATTERN.search(reason):
        return f"Third-party live session closed unexpectedly: {reason}"
    return None


def _tool_call_failure(review: ReviewResult) -> str | None:
    if review.tool_calls is None or not review.tool_calls.duplicates_detected:
        return None
    samples = review.tool_calls.samples[:5]
    detail = f" Samples: {'; '.join(samples)}" if samples else ""
    return f"Duplicate tool calls detected.{detail}"


def _console_failure(review: ReviewResult) -> str | None:
    failed_console_checks = [
        check
        for check in review.checks
        if not check.passed and "console" in f"{check.name} {check.command or ''}".lower()
    ]
    error_count = review.runtime.console_error_count if review.runtime else None
    if not failed_console_checks and not (error_count and error_count > 0):
        return None
    parts = [f"{check.name}: {check.error or 'failed'}" for check in failed_console_checks]
    if error_count:
        parts.append(f"{error_count} console error(s) recorded")
    return "Console error budget exceeded: " + "; ".join(parts)


def evaluate_gates(
    review: ReviewResult,
    gates: GatesConfig,
    commands: Sequence[CommandConfig] = (),
) -> ReviewResult:
    """Apply every enabled hard gate; returns a copy that can only be demoted."""
    failures: list[str] = []

    def _add(message: str | None) -> None:
        if message:
            failures.append(message)

    if gates.strict_reviewer_json:
        _add(_reviewer_json_failure(review))
    if gates.require_commands_pass:
        _add(_command_failures(review, commands))
    if gates.require_no_browser_errors:
        _add(_browser_failure(review))
    if gates.require_artifact_proof:
        failures.extend(_artifact_failures(review))
    if gates.require_runtime_session_healthy:
        _add(_runtime_failure(review.runtime))
    if gates.require_third_party_live_healthy:
        _add(_third_party_failure(review.runtime))
    if gates.require_no_tool_call_duplication:
        _add(_tool_call_failure(review))
    if gates.require_console_budget:
        _add(_console_failure(review))

    if not failures:
        return replace(review)

    feedback = "\n\n".join(
        part for part in (review.feedback, GATE_FEEDBACK_HEADER, *failures) if part
    )
    return replace(review, approved=False, feedback=feedback)


class ApprovalGateEvaluator:
    """Binds the gate flags and required commands of one resolved config."""

    def __init__(self, gates: GatesConfig, commands: Sequence[CommandConfig] = ()) -> None:
        self.gates = gates
        self.commands = list(commands)

    def evaluate(self, review: ReviewResult) -> ReviewResult:
        return evaluate_gates(review, self.gates, self.commands)
