from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any

from feedbackloop.models import (
    Artifacts,
    CheckResult,
    ReviewIssue,
    ReviewResult,
    RubricScore,
)
from feedbackloop.verification.evidence import (
    runtime_from_dict,
    target_from_dict,
    tool_calls_from_dict,
)

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)
WIDEST_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

NO_RESPONSE_FEEDBACK = "No response from reviewer"
NO_JSON_FEEDBACK = "Reviewer response missing required JSON payload."
MALFORMED_JSON_FEEDBACK = "Reviewer response was not valid JSON."
SCHEMA_MISMATCH_FEEDBACK = "Reviewer response JSON is invalid (missing required fields)."
HEURISTIC_FEEDBACK_LIMIT = 2000
RUBRIC_BLOCKING_SCORE = 2
RUBRIC_MIN_SCORE = 1
RUBRIC_MAX_SCORE = 5


@dataclass(slots=True, frozen=True)
class Parsed:
    value: dict[str, Any]


@dataclass(slots=True, frozen=True)
class NoJsonFound:
    pass


@dataclass(slots=True, frozen=True)
class MalformedJson:
    error: str


@dataclass(slots=True, frozen=True)
class SchemaMismatch:
    reason: str


ExtractionOutcome = Parsed | NoJsonFound | MalformedJson | SchemaMismatch


def _schema_problem(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return "payload is not an object"
    if not isinstance(payload.get("approved"), bool):
        return "'approved' must be a boolean"
    if not isinstance(payload.get("checks"), list):
        return "'checks' must be an array"
    if not isinstance(payload.get("issues"), list):
        return "'issues' must be an array"
    return None


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not allowed")


def loads_strict(raw: str) -> Any:
    """json.loads that rejects NaN and Infinity; raises ValueError."""
    return json.loads(raw, parse_constant=_reject_constant)


def locate_json(text: str) -> str | None:
    """Fenced ```json block first, else the widest {...} substring."""
    fenced = FENCED_JSON_PATTERN.search(text)
    if fenced:
        return fenced.group(1)
    widest = WIDEST_OBJECT_PATTERN.search(text)
    return widest.group(0) if widest else None


def find_json_object(text: str) -> dict[str, Any] | None:
    raw = locate_json(text)
    if raw is None:
        return None
    try:
        payload = loads_strict(raw)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def extract_payload(text: str) -> ExtractionOutcome:
    """Locate and validate the reviewer's JSON verdict."""
    raw = locate_json(text)
    if raw is None:
        return NoJsonFound()

    try:
        payload = loads_strict(raw)
    except ValueError as exc:
        return MalformedJson(error=str(exc))

    problem = _schema_problem(payload)
    if problem:
        return SchemaMismatch(reason=problem)
    return Parsed(value=payload)


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _raw_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    try:
        return float(value)
    except OverflowError:
        return math.inf


def _number(value: Any) -> float | None:
    number = _raw_number(value)
    return number if number is not None and math.isfinite(number) else None


def _score(value: Any) -> float | None:
    number = _number(value)
    if number is None or not RUBRIC_MIN_SCORE <= number <= RUBRIC_MAX_SCORE:
        return None
    return number


def _issue_from_dict(item: dict[str, Any]) -> ReviewIssue:
    line = item.get("line")
    return ReviewIssue(
        severity=_opt_str(item.get("severity")),
        category=_opt_str(item.get("category")),
        file=_opt_str(item.get("file")),
        line=int(line) if _number(line) is not None else None,
        description=_opt_str(item.get("description")),
        fix=_opt_str(item.get("fix")),
    )


def _issue_check(issue: ReviewIssue) -> CheckResult:
    description = issue.description or "issue"
    return CheckResult(
        name=issue.category or "issue",
        command=f"{issue.category}: {description}" if issue.category else "review-issue",
        passed=False,
        evidence=issue.fix,
        output=issue.fix,
        error=f"{issue.file or 'unknown'}:{issue.line if issue.line is not None else '?'} - {description}",
    )


def _artifacts_from_dict(value: Any) -> Artifacts:
    if not isinstance(value, dict):
        return Artifacts()
    return Artifacts(
        screenshots=_string_list(value.get("screenshots")),
        urls_tested=_string_list(value.get("urlsTested")),
        command_summaries=_string_list(value.get("commandSummaries")),
        runtime_logs=_string_list(value.get("runtimeLogs")),
    )


def rubric_verdict(rubric: list[RubricScore], minimum_average: float) -> str | None:
    """Return a blocking explanation when rubric scores deny approval."""
    invalid = [item for item in rubric if item.score is not None and _score(item.score) is None]
    if invalid:
        names = ", ".join(item.dimension or "unnamed" for item in invalid)
        return (
            f"Approval denied by rubric: score(s) outside {RUBRIC_MIN_SCORE}-{RUBRIC_MAX_SCORE} ({names})."
        )
    scores = [item.score for item in rubric if item.score is not None]
    if not scores:
        return None
    low = [
        item
        for item in rubric
        if item.score is not None and item.score <= RUBRIC_BLOCKING_SCORE
    ]
    if low:
        names = ", ".join(item.dimension or "unnamed" for item in low)
        return f"Approval denied by rubric: dimension(s) scored {RUBRIC_BLOCKING_SCORE} or lower ({names})."
    average = sum(scores) / len(scores)
    if average < minimum_average:
        return (
            f"Approval denied by rubric: average below threshold "
            f"({average:.2f} < {minimum_average:.2f})."
        )
    return None


def normalize_payload(payload: dict[str, Any], *, minimum_average: float = 4.0) -> ReviewResult:
    checks = [
        CheckResult(
            name=_opt_str(item.get("name")) or "review-check",
            command=_opt_str(item.get("name")) or "review-check",
            passed=item.get("passed") is True,
            evidence=_opt_str(item.get("evidence")),
            output=_opt_str(item.get("evidence")),
        )
        for item in payload["checks"]
        if isinstance(item, dict)
    ]
    issues = [_issue_from_dict(item) for item in payload["issues"] if isinstance(item, dict)]
    checks.extend(_issue_check(issue) for issue in issues)

    rubric = [
        RubricScore(
            dimension=_opt_str(item.get("dimension")),
            score=_raw_number(item.get("score")),
            evidence=_opt_str(item.get("evidence")),
        )
        for item in payload.get("rubric") or []
        if isinstance(item, dict)
    ]

    summary = _opt_str(payload.get("summary"))
    result = ReviewResult(
        approved=payload["approved"],
        checks=checks,
        feedback=_opt_str(payload.get("feedback")) or summary,
        issues=issues,
        artifacts=_artifacts_from_dict(payload.get("artifacts")),
        target=target_from_dict(payload.get("target")),
        runtime=runtime_from_dict(payload.get("runtime")),
        tool_calls=tool_calls_from_dict(payload.get("toolCalls")),
        rubric=rubric,
        reviewer_json_valid=True,
        summary=summary,
    )

    verdict = rubric_verdict(rubric, minimum_average)
    if verdict:
        result.approved = False
        result.feedback = "\n\n".join(part for part in (result.feedback, verdict) if part)
    return result


def _diagnostic(outcome: ExtractionOutcome) -> str:
    if isinstance(outcome, MalformedJson):
        return MALFORMED_JSON_FEEDBACK
    if isinstance(outcome, SchemaMismatch):
        return SCHEMA_MISMATCH_FEEDBACK
    return NO_JSON_FEEDBACK


def parse_reviewer_response(
    response: str | None,
    *,
    strict: bool = True,
    minimum_average: float = 4.0,
) -> ReviewResult:
    if not response or not response.strip():
        return ReviewResult(approved=False, feedback=NO_RESPONSE_FEEDBACK)

    outcome = extract_payload(response)
    if isinstance(outcome, Parsed):
        return normalize_payload(outcome.value, minimum_average=minimum_average)

    if strict:
        return ReviewResult(approved=False, feedback=_diagnostic(outcome))

    lower = response.lower()
    approved = "approved" in lower and "not approved" not in lower and "issues" not in lower
    return ReviewResult(approved=approved, feedback=response[:HEURISTIC_FEEDBACK_LIMIT])


class ReviewerResponseParser:
    """Config-bound wrapper used by the orchestrator."""

    def __init__(self, *, strict: bool, minimum_average: float = 4.0) -> None:
        self.strict = strict
        self.minimum_average = minimum_average

    def parse(self, response: str | None) -> ReviewResult:
        return parse_reviewer_response(
            response,
            strict=self.strict,
            minimum_average=self.minimum_average,
        )
