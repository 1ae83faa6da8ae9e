from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from typing import Any, TypeVar

from feedbackloop.models import RuntimeEvidence, TargetEvidence, ToolCallEvidence

E = TypeVar("E", TargetEvidence, RuntimeEvidence, ToolCallEvidence)


@dataclass(slots=True)
class StructuredEvidence:
    target: TargetEvidence | None = None
    runtime: RuntimeEvidence | None = None
    tool_calls: ToolCallEvidence | None = None
    runtime_logs: list[str] = field(default_factory=list)


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _opt_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def target_from_dict(data: Any) -> TargetEvidence | None:
    if not isinstance(data, dict):
        return None
    return TargetEvidence(
        repo=_opt_str(data.get("repo")),
        path=_opt_str(data.get("path")),
        branch=_opt_str(data.get("branch")),
        commit=_opt_str(data.get("commit")),
    )


def runtime_from_dict(data: Any) -> RuntimeEvidence | None:
    if not isinstance(data, dict):
        return None
    console_errors = data.get("consoleErrorCount", data.get("consoleErrors"))
    return RuntimeEvidence(
        websocket=_opt_bool(data.get("websocket")),
        session_start=_opt_bool(data.get("sessionStart")),
        session_end=_opt_bool(data.get("sessionEnd")),
        ping_pong_ok=_opt_bool(data.get("pingPongOk")),
        third_party_connect=_opt_bool(data.get("thirdPartyConnect")),
        third_party_close_reason=_opt_str(data.get("thirdPartyCloseReason")),
        console_error_count=(
            int(console_errors)
            if isinstance(console_errors, int | float) and not isinstance(console_errors, bool)
            else None
        ),
    )


def tool_calls_from_dict(data: Any) -> ToolCallEvidence | None:
    if not isinstance(data, dict):
        return None
    return ToolCallEvidence(
        duplicates_detected=data.get("duplicatesDetected") is True,
        samples=_string_list(data.get("samples")),
    )


def parse_structured_evidence(output: str | None) -> StructuredEvidence | None:
    """Pull evidence objects out of a command's JSON output, if it printed any."""
    if not output:
        return None
    start = output.find("{")
    end = output.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        payload = json.loads(output[start : end + 1])
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    artifacts = payload.get("artifacts")
    runtime_logs = _string_list(artifacts.get("runtimeLogs")) if isinstance(artifacts, dict) else []
    evidence = StructuredEvidence(
        target=target_from_dict(payload.get("target")),
        runtime=runtime_from_dict(payload.get("runtime")),
        tool_calls=tool_calls_from_dict(payload.get("toolCalls")),
        runtime_logs=runtime_logs,
    )
    if (
        evidence.target is None
        and evidence.runtime is None
        and evidence.tool_calls is None
        and not evidence.runtime_logs
    ):
        return None
    return evidence


def merge_evidence(base: E | None, update: E | None) -> E | None:
    """Overlay the set fields of `update` onto `base`."""
    if update is None:
        return base
    if base is None:
        return update
    changes = {}
    for item in fields(update):
        value = getattr(update, item.name)
        if value is None:
            continue
        if isinstance(update, ToolCallEvidence) and item.name == "samples" and not value:
            continue
        changes[item.name] = value
    return replace(base, **changes)


def unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))
