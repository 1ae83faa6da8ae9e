from __future__ import annotations

import re
import subprocess
from collections.abc import Callable
from pathlib import Path

from feedbackloop.config import RoutingConfig, TargetConfig
from feedbackloop.models import ResolvedTarget, TargetEvidence

BRANCH_AT_PATTERN = re.compile(r"@([A-Za-z0-9._/-]+)")
BRANCH_WORD_PATTERN = re.compile(r"\bbranch\s+([A-Za-z0-9._/-]+)", re.IGNORECASE)

GitRefResolver = Callable[[Path, list[str]], str | None]


class TargetBindingError(RuntimeError):
    """Raised when a task cannot be bound to exactly one allowed repository."""


def git_ref(path: Path, args: list[str]) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=path,
            text=True,
            capture_output=True,
        )
    except (FileNotFoundError, NotADirectoryError):
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def extract_branch(task: str) -> str | None:
    match = BRANCH_AT_PATTERN.search(task) or BRANCH_WORD_PATTERN.search(task)
    return match.group(1) if match else None


def _target_path(target: TargetConfig, workspace: Path) -> Path:
    path = Path(target.path).expanduser()
    if not path.is_absolute():
        path = workspace / path
    return path.resolve()


def _mentioned(target: TargetConfig, task_lower: str) -> bool:
    alias = target.name.lower()
    base = Path(target.path).name.lower()
    return bool(alias and alias in task_lower) or bool(base and base in task_lower)


def resolve_bound_target(
    task: str,
    routing: RoutingConfig,
    workspace: Path,
    *,
    resolve_ref: GitRefResolver = git_ref,
) -> ResolvedTarget | None:
    """Bind the task to one allowed repository, failing closed on ambiguity."""
    if not routing.require_repo_binding:
        return None
    if not routing.targets:
        raise TargetBindingError(
            "routing.require_repo_binding is enabled but no [[routing.targets]] are configured."
        )

    task_lower = task.lower()
    matches = [target for target in routing.targets if _mentioned(target, task_lower)]
    if not matches and routing.default_target:
        matches = [target for target in routing.targets if target.name == routing.default_target]

    if not matches:
        names = ", ".join(target.name for target in routing.targets)
        raise TargetBindingError(
            "Repo binding required. Name the target repo and branch in the task "
            f'(for example "in <repo> @<branch>"). Allowed targets: {names}'
        )
    if len(matches) > 1 and routing.on_ambiguous_target != "best_effort":
        raise TargetBindingError(
            "Ambiguous target binding. Matched multiple repos: "
            f"{', '.join(target.name for target in matches)}. Please specify one."
        )

    selected = matches[0]
    target_path = _target_path(selected, workspace)
    branch = resolve_ref(target_path, ["rev-parse", "--abbrev-ref", "HEAD"])
    commit = resolve_ref(target_path, ["rev-parse", "HEAD"])
    requested_branch = extract_branch(task)

    if routing.require_branch_match:
        if not requested_branch:
            raise TargetBindingError(
                f'Branch binding required for {selected.name}. Include "@branch" or '
                '"branch <name>" in the task.'
            )
        if branch and requested_branch != branch:
            raise TargetBindingError(
                f'Branch mismatch for {selected.name}: task requested "{requested_branch}" '
                f'but workspace is on "{branch}".'
            )
        if selected.branch_pattern and not re.search(selected.branch_pattern, requested_branch):
            raise TargetBindingError(
                f'Branch "{requested_branch}" does not satisfy routing pattern '
                f"{selected.branch_pattern} for {selected.name}."
            )

    return ResolvedTarget(
        name=selected.name,
        path=str(target_path),
        expected_branch=requested_branch,
        branch_pattern=selected.branch_pattern or None,
        branch=branch,
        commit=commit,
    )


def target_evidence(
    target: ResolvedTarget | None,
    workspace: Path,
    *,
    resolve_ref: GitRefResolver = git_ref,
) -> TargetEvidence:
    if target is not None:
        return TargetEvidence(
            repo=target.name,
            path=target.path,
            branch=target.branch,
            commit=target.commit,
        )
    return TargetEvidence(
        repo=workspace.name,
        path=str(workspace),
        branch=resolve_ref(workspace, ["rev-parse", "--abbrev-ref", "HEAD"]),
        commit=resolve_ref(workspace, ["rev-parse", "HEAD"]),
    )


def changed_files(workspace: Path) -> list[str]:
    """Paths reported by `git status --porcelain`; empty outside a repository."""
    try:
        proc = subprocess.run(
            ["git", "--no-pager", "status", "--porcelain"],
            cwd=workspace,
            text=True,
            capture_output=True,
        )
    except (FileNotFoundError, NotADirectoryError):
        return []
    if proc.returncode != 0:
        return []
    paths: list[str] = []
    for line in proc.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1].strip()
        if path:
            paths.append(path.strip('"'))
    return paths
