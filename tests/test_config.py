import tomllib
from pathlib import Path

import pytest

from feedbackloop import __version__
from feedbackloop.config import (
    CommandConfig,
    ConfigError,
    LoopConfig,
    TargetConfig,
    dumps_toml,
    load_config,
    save_config,
)
from feedbackloop.models import ModelCandidate


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "feedback-loop.toml"
    config = LoopConfig.default()
    config.models.coder = "codex/gpt-5-codex"
    config.models.coder_fallbacks = ["openai/gpt-5-codex"]
    config.models.alternate_coder = "claude/claude-sonnet-4-5"
    config.loop.max_iterations = 7
    config.loop.acceptance_criteria = ["login page renders", "tests pass"]
    config.loop.pause_after_iterations = 3
    config.loop.generate_acceptance_criteria = False
    config.timeouts.criteria_wait_seconds = 45.0
    config.review.minimum_average_rubric_score = 3.5
    config.gates.require_third_party_live_healthy = False
    config.browser.enabled = True
    config.browser.urls = ["http://localhost:3000"]
    config.commands = [CommandConfig(command="pytest -q", timeout_seconds=300.0)]
    config.routing.require_repo_binding = True
    config.routing.on_ambiguous_target = "best_effort"
    config.routing.targets = [TargetConfig(name="web", path="apps/web", branch_pattern="^feat/")]
    config.queue.backoff_seconds = [1.0, 2.5]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.models.coder_chain() == [
        ModelCandidate("codex", "gpt-5-codex"),
        ModelCandidate("openai", "gpt-5-codex"),
    ]
    assert loaded.models.alternate_candidate() == ModelCandidate("claude", "claude-sonnet-4-5")
    assert loaded.loop.max_iterations == 7
    assert loaded.loop.acceptance_criteria == ["login page renders", "tests pass"]
    assert loaded.loop.pause_after_iterations == 3
    assert loaded.loop.generate_acceptance_criteria is False
    assert loaded.timeouts.criteria_wait_seconds == 45.0
    assert loaded.review.minimum_average_rubric_score == 3.5
    assert loaded.gates.require_third_party_live_healthy is False
    assert loaded.gates.require_artifact_proof is True
    assert loaded.browser.urls == ["http://localhost:3000"]
    assert loaded.commands == [CommandConfig(command="pytest -q", timeout_seconds=300.0)]
    assert loaded.routing.on_ambiguous_target == "best_effort"
    assert loaded.routing.targets == [
        TargetConfig(name="web", path="apps/web", branch_pattern="^feat/")
    ]
    assert loaded.queue.backoff_seconds == [1.0, 2.5]


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == LoopConfig.default()
    assert loaded.loop.max_iterations == 5
    assert loaded.timeouts.spawn_seconds == 10.0
    assert loaded.models.reviewer_chain()[-1] == ModelCandidate("codex", "gpt-5-codex")


def test_toml_dump_contains_sections() -> None:
    config = LoopConfig.default()
    config.commands = [CommandConfig(command="npm test")]
    rendered = dumps_toml(config)

    for section in ("[models]", "[timeouts]", "[loop]", "[gates]", "[routing]", "[queue]"):
        assert section in rendered
    assert "[[commands]]" in rendered
    assert "spawn_seconds = 10.0" in rendered
    assert 'command = "npm test"' in rendered
    assert tomllib.loads(rendered)["commands"][0]["timeout_seconds"] == 120.0


def test_from_dict_defaults_and_clamps() -> None:
    config = LoopConfig.from_dict(
        {"loop": {"max_iterations": 0, "pause_after_iterations": -2}, "queue": {"max_attempts": 0}}
    )

    assert config.loop.max_iterations == 1
    assert config.loop.pause_after_iterations == 0
    assert config.queue.max_attempts == 1
    assert config.gates.strict_reviewer_json is True


def test_unknown_key_raises_config_error() -> None:
    with pytest.raises(ConfigError):
        LoopConfig.from_dict({"gates": {"require_everything": True}})


def test_unknown_ambiguity_policy_raises_config_error() -> None:
    with pytest.raises(ConfigError):
        LoopConfig.from_dict({"routing": {"on_ambiguous_target": "guess"}})


def test_malformed_toml_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "feedback-loop.toml"
    config_path.write_text("[loop\nmax_iterations = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
