from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections.abc import Sequence
from pathlib import Path

from feedbackloop.config import CommandConfig
from feedbackloop.models import CheckResult

LOGGER = logging.getLogger(__name__)

ERROR_LINE_PATTERN = re.compile(r"error|fail|exception|not found|cannot|✖|✗", re.IGNORECASE)
OUTPUT_TAIL_CHARS = 500
ERROR_BLOCK_LINES = 20
ERROR_FIELD_CHARS = 200
KILL_GRACE_SECONDS = 5.0


def extract_error_summary(output: str) -> str:
    """Return the block starting at the first error-looking line, else the output tail."""
    lines = output.splitlines()
    for index, line in enumerate(lines):
        if ERROR_LINE_PATTERN.search(line):
            return "\n".join(lines[index : index + ERROR_BLOCK_LINES]).strip()
    return output[-OUTPUT_TAIL_CHARS:].strip()


def _signal_process(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


async def terminate_process(
    process: asyncio.subprocess.Process, grace_seconds: float = KILL_GRACE_SECONDS
) -> None:
    """SIGTERM the process group, then SIGKILL if it outlives the grace period."""
    if process.returncode is not None:
        return
    _signal_process(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        LOGGER.warning("Process %s ignored SIGTERM; sending SIGKILL", process.pid)
        _signal_process(process, signal.SIGKILL)
        await process.wait()


class CommandRunner:
    def __init__(self, *, grace_seconds: float = KILL_GRACE_SECONDS) -> None:
        self.grace_seconds = grace_seconds

    async def run(self, item: CommandConfig, cwd: Path) -> CheckResult:
        LOGGER.info("Running verification command: %s", item.command)
        try:
            process = await asyncio.create_subprocess_shell(
                item.command,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            message = f"Command error: {exc}"
            return CheckResult(
                name=item.command,
                command=item.command,
                passed=False,
                evidence=message,
                error=message,
            )

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=item.timeout_seconds)
        except TimeoutError:
            await terminate_process(process, self.grace_seconds)
            message = f"Command timed out after {item.timeout_seconds:g}s"
            return CheckResult(
                name=item.command,
                command=item.command,
                passed=False,
                evidence=message,
                error=message,
                exit_code=process.returncode,
            )

        text = (stdout or b"").decode("utf-8", errors="replace")
        if process.returncode == 0:
            output = text[-OUTPUT_TAIL_CHARS:].strip()
            return CheckResult(
                name=item.command,
                command=item.command,
                passed=True,
                evidence=output,
                output=output,
                exit_code=0,
            )

        output = extract_error_summary(text)
        error = output[:ERROR_FIELD_CHARS] or f"Exit code {process.returncode}"
        return CheckResult(
            name=item.command,
            command=item.command,
            passed=False,
            evidence=output or error,
            output=output,
            error=error,
            exit_code=process.returncode,
        )

    async def run_all(self, commands: Sequence[CommandConfig], cwd: Path) -> list[CheckResult]:
        results: list[CheckResult] = []
        for item in commands:
            results.append(await self.run(item, cwd))
        return results
