from __future__ import annotations

import re
from collections.abc import Sequence

from feedbackloop.config import CommitConfig
from feedbackloop.models import CommitInfo
from feedbackloop.specialists.base import SpecialistAgent

SHA_PATTERN = re.compile(r"\b([a-f0-9]{7,40})\b")
PR_URL_PATTERN = re.compile(r"https://github\.com/[^\s/]+/[^\s/]+/pull/\d+")


def parse_commit_reply(content: str) -> CommitInfo:
    sha = SHA_PATTERN.search(content)
    pr_url = PR_URL_PATTERN.search(content)
    return CommitInfo(
        committed=sha is not None,
        sha=sha.group(1) if sha else None,
        pr_url=pr_url.group(0) if pr_url else None,
        error=None if sha else "Commit reply did not contain a commit SHA.",
    )


class CommitterAgent(SpecialistAgent):
    role = "committer"
    system_prompt = """
You are the Git specialist. Stage and commit the listed changes as one atomic commit.
Report the resulting commit SHA and, if you opened one, the pull request URL.
""".strip()

    def build_instruction(
        self,
        task: str,
        changed_files: Sequence[str],
        commit: CommitConfig,
    ) -> str:
        style = (
            "Conventional Commits (type(scope): subject)"
            if commit.message_style == "conventional"
            else "a descriptive imperative subject line with a short body"
        )
        parts = [
            f"Commit the work for: {task}",
            "Changed files:\n" + "\n".join(f"- {path}" for path in changed_files),
            f"Message style: {style}.",
        ]
        if commit.auto_push:
            parts.append("Push the branch to its upstream after committing.")
        if commit.create_pr:
            parts.append("Open a pull request for the branch and include its URL.")
        return "\n\n".join(parts)

    async def commit(
        self, task: str, changed_files: Sequence[str], commit: CommitConfig
    ) -> CommitInfo:
        response = await self.run(self.build_instruction(task, changed_files, commit))
        return parse_commit_reply(response.content)
