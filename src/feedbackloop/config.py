from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from feedbackloop.models import ModelCandidate

AmbiguousTargetPolicy = Literal["fail_closed", "ask", "best_effort"]
CommitMessageStyle = Literal["conventional", "descriptive"]

AMBIGUOUS_TARGET_POLICIES = ("fail_closed", "ask", "best_effort")
DEFAULT_CONFIG_FILE = "feedback-loop.toml"


class ConfigError(ValueError):
    """Raised when a configuration file cannot be resolved into a LoopConfig."""


@dataclass(slots=True)
class ModelsConfig:
    coder: str = "claude/claude-sonnet-4-5"
    coder_fallbacks: list[str] = field(default_factory=list)
    alternate_coder: str = "codex/gpt-5-codex"
    reviewer: str = "claude/claude-sonnet-4-5"
    reviewer_fallbacks: list[str] = field(default_factory=lambda: ["codex/gpt-5-codex"])

    def coder_chain(self) -> list[ModelCandidate]:
        return _chain(self.coder, self.coder_fallbacks)

    def reviewer_chain(self) -> list[ModelCandidate]:
        return _chain(self.reviewer, self.reviewer_fallbacks)

    def alternate_candidate(self) -> ModelCandidate | None:
        if not self.alternate_coder.strip():
            return None
        return ModelCandidate.parse(self.alternate_coder)


@dataclass(slots=True)
class TimeoutsConfig:
    spawn_seconds: float = 10.0
    coder_wait_seconds: float = 600.0
    reviewer_wait_seconds: float = 900.0
    explore_wait_seconds: float = 180.0
    plan_wait_seconds: float = 180.0
    commit_wait_seconds: float = 180.0
    criteria_wait_seconds: float = 120.0


@dataclass(slots=True)
class LoopSettings:
    max_iterations: int = 5
    acceptance_criteria: list[str] = field(default_factory=list)
    generate_acceptance_criteria: bool = True
    pause_after_iterations: int = 0
    pause_on_browser_fail: bool = False
    explore: bool = True
    plan: bool = True
    learn_lessons: bool = True
    state_dir: str = ".feedback-loop"
    lessons_file: str = "memory/LEARNED.md"


@dataclass(slots=True)
class ReviewConfig:
    minimum_average_rubric_score: float = 4.0


@dataclass(slots=True)
class GatesConfig:
    require_reviewer_json: bool = True
    block_approval_on_parse_failure: bool = True
    require_commands_pass: bool = True
    require_no_browser_errors: bool = True
    require_artifact_proof: bool = True
    require_runtime_session_healthy: bool = True
    require_third_party_live_healthy: bool = True
    require_no_tool_call_duplication: bool = True
    require_console_budget: bool = True

    @property
    def strict_reviewer_json(self) -> bool:
        return self.require_reviewer_json or self.block_approval_on_parse_failure


@dataclass(slots=True)
class CommandConfig:
    command: str
    timeout_seconds: float = 120.0
    required: bool = True


@dataclass(slots=True)
class BrowserConfig:
    enabled: bool = False
    urls: list[str] = field(default_factory=list)
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class CommitConfig:
    enabled: bool = False
    message_style: CommitMessageStyle = "conventional"
    auto_push: bool = False
    create_pr: bool = False


@dataclass(slots=True)
class TargetConfig:
    name: str
    path: str
    branch_pattern: str = ""


@dataclass(slots=True)
class RoutingConfig:
    require_repo_binding: bool = False
    require_branch_match: bool = False
    on_ambiguous_target: AmbiguousTargetPolicy = "fail_closed"
    default_target: str = ""
    targets: list[TargetConfig] = field(default_factory=list)


@dataclass(slots=True)
class QueueConfig:
    backoff_seconds: list[float] = field(default_factory=lambda: [5.0, 15.0, 60.0])
    max_attempts: int = 3


@dataclass(slots=True)
class LoopConfig:
    models: ModelsConfig = field(default_factory=ModelsConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    loop: LoopSettings = field(default_factory=LoopSettings)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    commands: list[CommandConfig] = field(default_factory=list)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    commit: CommitConfig = field(default_factory=CommitConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    @classmethod
    def default(cls) -> LoopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> LoopConfig:
        """Build a fully-defaulted config in one pass; raises ConfigError on bad values."""
        try:
            routing_data = dict(data.get("routing", {}))
            targets = [TargetConfig(**item) for item in routing_data.pop("targets", [])]
            config = cls(
                models=ModelsConfig(**data.get("models", {})),
                timeouts=TimeoutsConfig(**data.get("timeouts", {})),
                loop=LoopSettings(**data.get("loop", {})),
                review=ReviewConfig(**data.get("review", {})),
                gates=GatesConfig(**data.get("gates", {})),
                commands=[CommandConfig(**item) for item in data.get("commands", [])],
                browser=BrowserConfig(**data.get("browser", {})),
                commit=CommitConfig(**data.get("commit", {})),
                routing=RoutingConfig(**routing_data, targets=targets),
                queue=QueueConfig(**data.get("queue", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

        if config.routing.on_ambiguous_target not in AMBIGUOUS_TARGET_POLICIES:
            raise ConfigError(
                f"Unsupported on_ambiguous_target policy: {config.routing.on_ambiguous_target}"
            )
        config.loop.max_iterations = max(1, int(config.loop.max_iterations))
        config.loop.pause_after_iterations = max(0, int(config.loop.pause_after_iterations))
        config.queue.max_attempts = max(1, int(config.queue.max_attempts))
        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "models": {
                "coder": self.models.coder,
                "coder_fallbacks": list(self.models.coder_fallbacks),
                "alternate_coder": self.models.alternate_coder,
                "reviewer": self.models.reviewer,
                "reviewer_fallbacks": list(self.models.reviewer_fallbacks),
            },
            "timeouts": {
                "spawn_seconds": self.timeouts.spawn_seconds,
                "coder_wait_seconds": self.timeouts.coder_wait_seconds,
                "reviewer_wait_seconds": self.timeouts.reviewer_wait_seconds,
                "explore_wait_seconds": self.timeouts.explore_wait_seconds,
                "plan_wait_seconds": self.timeouts.plan_wait_seconds,
                "commit_wait_seconds": self.timeouts.commit_wait_seconds,
                "criteria_wait_seconds": self.timeouts.criteria_wait_seconds,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "acceptance_criteria": list(self.loop.acceptance_criteria),
                "generate_acceptance_criteria": self.loop.generate_acceptance_criteria,
                "pause_after_iterations": self.loop.pause_after_iterations,
                "pause_on_browser_fail": self.loop.pause_on_browser_fail,
                "explore": self.loop.explore,
                "plan": self.loop.plan,
                "learn_lessons": self.loop.learn_lessons,
                "state_dir": self.loop.state_dir,
                "lessons_file": self.loop.lessons_file,
            },
            "review": {
                "minimum_average_rubric_score": self.review.minimum_average_rubric_score,
            },
            "gates": {
                "require_reviewer_json": self.gates.require_reviewer_json,
                "block_approval_on_parse_failure": self.gates.block_approval_on_parse_failure,
                "require_commands_pass": self.gates.require_commands_pass,
                "require_no_browser_errors": self.gates.require_no_browser_errors,
                "require_artifact_proof": self.gates.require_artifact_proof,
                "require_runtime_session_healthy": self.gates.require_runtime_session_healthy,
                "require_third_party_live_healthy": self.gates.require_third_party_live_healthy,
                "require_no_tool_call_duplication": self.gates.require_no_tool_call_duplication,
                "require_console_budget": self.gates.require_console_budget,
            },
            "browser": {
                "enabled": self.browser.enabled,
                "urls": list(self.browser.urls),
                "timeout_seconds": self.browser.timeout_seconds,
            },
            "commit": {
                "enabled": self.commit.enabled,
                "message_style": self.commit.message_style,
                "auto_push": self.commit.auto_push,
                "create_pr": self.commit.create_pr,
            },
            "routing": {
                "require_repo_binding": self.routing.require_repo_binding,
                "require_branch_match": self.routing.require_branch_match,
                "on_ambiguous_target": self.routing.on_ambiguous_target,
                "default_target": self.routing.default_target,
            },
            "queue": {
                "backoff_seconds": list(self.queue.backoff_seconds),
                "max_attempts": self.queue.max_attempts,
            },
            "commands": [
                {
                    "command": item.command,
                    "timeout_seconds": item.timeout_seconds,
                    "required": item.required,
                }
                for item in self.commands
            ],
            "routing.targets": [
                {"name": item.name, "path": item.path, "branch_pattern": item.branch_pattern}
                for item in self.routing.targets
            ],
        }


def _chain(primary: str, fallbacks: list[str]) -> list[ModelCandidate]:
    chain: list[ModelCandidate] = []
    for value in [primary, *fallbacks]:
        if not value.strip():
            continue
        candidate = ModelCandidate.parse(value)
        if candidate not in chain:
            chain.append(candidate)
    return chain


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: LoopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "models",
        "timeouts",
        "loop",
        "review",
        "gates",
        "browser",
        "commit",
        "routing",
        "queue",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for table in ("commands", "routing.targets"):
        for item in data[table]:
            lines.append(f"[[{table}]]")
            for key, value in item.items():
                lines.append(f"{key} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> LoopConfig:
    if not path.exists():
        return LoopConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return LoopConfig.from_dict(data)


def save_config(path: Path, config: LoopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
