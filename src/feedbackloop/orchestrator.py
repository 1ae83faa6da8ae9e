from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from feedbackloop.backends.base import BackendRegistry
from feedbackloop.backends.fallback import BackendEventHook, ModelFallbackExhausted
from feedbackloop.config import LoopConfig
from feedbackloop.lessons import LearnedRulesStore, render_learned
from feedbackloop.models import (
    Artifacts,
    CheckResult,
    CommitInfo,
    IterationResult,
    LoopResult,
    LoopStatus,
    ModelCandidate,
    ResolvedTarget,
    ReviewResult,
    RuntimeEvidence,
    ToolCallEvidence,
)
from feedbackloop.review.gates import ApprovalGateEvaluator
from feedbackloop.review.parser import ReviewerResponseParser
from feedbackloop.specialists import (
    AcceptanceCriteriaAgent,
    CoderAgent,
    CommitterAgent,
    ExploreResult,
    ExplorerAgent,
    PlannerAgent,
    PlanResult,
    ReviewerAgent,
    SpecialistAgent,
)
from feedbackloop.state.inbox import InboundQueue, QueuedMessage
from feedbackloop.state.plan_state import PlanStateStore, new_session_id
from feedbackloop.targets import changed_files, resolve_bound_target, target_evidence
from feedbackloop.verification.browser import BrowserService, run_browser_checks
from feedbackloop.verification.commands import CommandRunner
from feedbackloop.verification.evidence import merge_evidence, parse_structured_evidence, unique

LOGGER = logging.getLogger(__name__)

RECURRING_ISSUE_PATTERNS = {
    "test-failure": re.compile(r"test.*fail", re.IGNORECASE),
    "type-error": re.compile(r"type.*error", re.IGNORECASE),
    "integration": re.compile(r"not.*integrat", re.IGNORECASE),
}
RUNTIME_COMMAND_PATTERN = re.compile(r"runtime|websocket|tool", re.IGNORECASE)
RUNTIME_LOG_CHARS = 800
ERROR_KEY_CHARS = 100
ERROR_MESSAGE_CHARS = 500

CorrectionType = Literal["clear", "refocus", "escalate"]
DecisionAction = Literal["approve", "reject", "redirect"]


@dataclass(slots=True, frozen=True)
class CourseCorrection:
    type: CorrectionType
    reason: str
    action: str


@dataclass(slots=True, frozen=True)
class PauseRequest:
    reason: str
    iteration: int
    session_id: str
    detail: str = ""


@dataclass(slots=True, frozen=True)
class UserDecision:
    action: DecisionAction
    message: str | None = None


DecisionHandler = Callable[[PauseRequest], Awaitable[UserDecision]]


@dataclass(slots=True)
class LoopState:
    task: str
    session_id: str
    iteration: int = 0
    approved: bool = False
    stopped: LoopStatus | None = None
    stop_reason: str | None = None
    consecutive_errors: int = 0
    last_error_action: str | None = None
    previous_feedback: str | None = None
    user_message: str | None = None
    history: list[IterationResult] = field(default_factory=list)


def recurring_issue_count(feedbacks: Sequence[str]) -> int:
    counts = {
        name: sum(1 for feedback in feedbacks if pattern.search(feedback))
        for name, pattern in RECURRING_ISSUE_PATTERNS.items()
    }
    return max(counts.values(), default=0)


def suggest_course_correction(
    iteration: int,
    consecutive_errors: int,
    same_issue_count: int,
) -> CourseCorrection | None:
    if same_issue_count >= 2:
        return CourseCorrection(
            type="clear",
            reason=f"Same issue occurring {same_issue_count} times",
            action="Restart the coder from a narrower prompt that folds in the lessons learned",
        )
    if consecutive_errors >= 3:
        return CourseCorrection(
            type="escalate",
            reason=f"{consecutive_errors} consecutive failures",
            action="Pause for human intervention",
        )
    if iteration >= 5 and consecutive_errors >= 2:
        return CourseCorrection(
            type="refocus",
            reason="Multiple iterations without approval",
            action="Re-examine the task requirements and verification criteria",
        )
    return None


def session_inbox(store: PlanStateStore, config: LoopConfig) -> InboundQueue:
    return InboundQueue(
        store.session_dir / "state",
        backoff_seconds=config.queue.backoff_seconds,
        max_attempts=config.queue.max_attempts,
    )


def command_summary(check: CheckResult) -> str:
    verdict = "PASS" if check.passed else f"FAIL ({check.error or 'failed'})"
    return f"{check.command}: {verdict}"


class WorkflowOrchestrator:
    """Drives one task through explore, plan, coder/reviewer iterations and commit."""

    def __init__(
        self,
        config: LoopConfig,
        registry: BackendRegistry,
        workspace: Path,
        *,
        browser: BrowserService | None = None,
        decision_handler: DecisionHandler | None = None,
        event_hook: BackendEventHook | None = None,
        command_runner: CommandRunner | None = None,
        list_changes: Callable[[Path], list[str]] = changed_files,
        session_id: str | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.workspace = workspace.resolve()
        self.browser = browser
        self.decision_handler = decision_handler
        self.event_hook = event_hook
        self.command_runner = command_runner or CommandRunner()
        self.list_changes = list_changes
        self.session_id = session_id or new_session_id()
        self.store = PlanStateStore.open(self.workspace, self.session_id, config.loop.state_dir)
        self.inbox = session_inbox(self.store, config)
        self.gates = ApprovalGateEvaluator(config.gates, config.commands)
        self.parser = ReviewerResponseParser(
            strict=config.gates.strict_reviewer_json,
            minimum_average=config.review.minimum_average_rubric_score,
        )
        self.target: ResolvedTarget | None = None
        self.acceptance_criteria: list[str] = list(config.loop.acceptance_criteria)

    def _emit(self, event: dict[str, Any]) -> None:
        payload = {"session_id": self.session_id, **event}
        if self.store.exists():
            self.store.record_event(payload)
        if self.event_hook:
            self.event_hook(payload)

    @property
    def workdir(self) -> Path:
        return Path(self.target.path) if self.target else self.workspace

    def _specialist(
        self,
        cls: type[SpecialistAgent],
        candidates: Sequence[ModelCandidate],
        wait_timeout: float,
    ) -> Any:
        return cls(
            self.registry,
            candidates,
            spawn_timeout=self.config.timeouts.spawn_seconds,
            wait_timeout=wait_timeout,
            working_directory=self.workdir,
            event_hook=self._emit,
        )

    async def run(self, task: str) -> LoopResult:
        self.target = resolve_bound_target(task, self.config.routing, self.workspace)
        if self.target is not None:
            LOGGER.info("Bound task to %s (%s)", self.target.name, self.target.path)

        self.store.initialize(task, self.acceptance_criteria)
        self.store.set_session_status("running", workspace=str(self.workdir))
        self._emit(
            {
                "event": "session_started",
                "task": task,
                "target": self.target.name if self.target else None,
                "max_iterations": self.config.loop.max_iterations,
            }
        )

        if not self.acceptance_criteria and self.config.loop.generate_acceptance_criteria:
            await self._generate_criteria(task)

        state = LoopState(task=task, session_id=self.session_id)
        explore = await self._explore(task) if self.config.loop.explore else None
        plan = await self._plan(task, explore) if self.config.loop.plan else None

        await self._iterate(state, explore, plan)

        changes = self.list_changes(self.workdir)
        commit: CommitInfo | None = None
        if state.approved and self.config.commit.enabled and changes:
            commit = await self._commit(task, changes)

        result = self._finish(state, changes, commit)
        self.store.set_session_status(result.status, final_message=result.final_message)
        self._emit(
            {
                "event": "session_finished",
                "status": result.status,
                "iterations": result.iterations,
                "approved": result.approved,
            }
        )
        return result

    async def _generate_criteria(self, task: str) -> None:
        agent: AcceptanceCriteriaAgent = self._specialist(
            AcceptanceCriteriaAgent,
            self.config.models.reviewer_chain(),
            self.config.timeouts.criteria_wait_seconds,
        )
        try:
            criteria = await agent.generate(task, str(self.workdir))
        except Exception as exc:
            LOGGER.warning("Acceptance criteria generation failed, continuing without it: %s", exc)
            self._emit({"event": "criteria_failed", "error": str(exc)[:400]})
            return
        self.acceptance_criteria = criteria
        self.store.update_plan(acceptance_criteria=criteria)
        self.store.update_findings(requirements=criteria)
        LOGGER.info("Generated %d acceptance criteria", len(criteria))
        self._emit({"event": "criteria_generated", "count": len(criteria)})

    async def _explore(self, task: str) -> ExploreResult | None:
        explorer: ExplorerAgent = self._specialist(
            ExplorerAgent, self.config.models.coder_chain(), self.config.timeouts.explore_wait_seconds
        )
        try:
            result = await explorer.explore(task)
        except Exception as exc:
            LOGGER.warning("Explore phase failed, continuing without it: %s", exc)
            self._emit({"event": "explore_failed", "error": str(exc)[:400]})
            return None
        rendered = result.render()
        if rendered:
            self.store.add_research(rendered, source="explore", tags=["explore"])
        for path in result.relevant_files[:20]:
            self.store.add_discovery(f"Relevant file: {path}")
        self._emit({"event": "explore_completed", "relevant_files": len(result.relevant_files)})
        return result

    async def _plan(self, task: str, explore: ExploreResult | None) -> PlanResult | None:
        planner: PlannerAgent = self._specialist(
            PlannerAgent, self.config.models.coder_chain(), self.config.timeouts.plan_wait_seconds
        )
        try:
            result = await planner.plan(task, explore)
        except Exception as exc:
            LOGGER.warning("Plan phase failed, continuing without it: %s", exc)
            self._emit({"event": "plan_failed", "error": str(exc)[:400]})
            return None
        self.store.add_decision(
            result.summary or "Implementation plan drafted",
            context="plan phase",
            reasoning=result.render()[:1000],
        )
        self._emit({"event": "plan_completed", "steps": len(result.steps)})
        return result

    async def _pause(self, state: LoopState, reason: str, detail: str = "") -> bool:
        """Suspend until a decision arrives; True means the loop must stop."""
        self.store.set_session_status("paused", pause_reason=reason)
        self._emit({"event": "loop_paused", "iteration": state.iteration, "reason": reason})
        if self.decision_handler is None:
            LOGGER.warning(
                "Loop paused (%s) with no decision handler attached; continuing session %s",
                reason,
                self.session_id,
            )
            self._emit({"event": "pause_skipped", "iteration": state.iteration, "reason": reason})
            self.store.set_session_status("running")
            return False
        decision = await self.decision_handler(
            PauseRequest(
                reason=reason,
                iteration=state.iteration,
                session_id=self.session_id,
                detail=detail,
            )
        )
        self._emit(
            {"event": "user_decision", "iteration": state.iteration, "action": decision.action}
        )
        self.store.add_decision(
            f"User chose {decision.action}",
            context=reason,
            reasoning=decision.message or "",
        )
        if decision.action == "approve":
            state.approved = True
            state.stop_reason = f"Approved by user during pause ({reason})"
            return True
        if decision.action == "reject":
            state.stopped = "rejected"
            state.stop_reason = f"Rejected by user during pause ({reason})"
            return True
        state.user_message = decision.message
        self.store.set_session_status("running")
        return False

    def _drain_inbox(self, state: LoopState) -> None:
        received: list[str] = []

        def _deliver(message: QueuedMessage) -> None:
            received.append(message.text)

        self.inbox.drain(_deliver)
        if not received:
            return
        pending = [state.user_message] if state.user_message else []
        state.user_message = "\n\n".join(pending + received)
        self._emit({"event": "user_messages_delivered", "count": len(received)})

    async def _checkpoints(self, state: LoopState) -> bool:
        """Run the pre-coder suspension points; True means the loop must stop."""
        feedbacks = [item.review.feedback for item in state.history if item.review.feedback]
        correction = suggest_course_correction(
            state.iteration,
            state.consecutive_errors,
            recurring_issue_count(feedbacks),
        )
        if correction is not None:
            LOGGER.info("[%s] %s: %s", correction.type.upper(), correction.reason, correction.action)
            self._emit(
                {
                    "event": "course_correction",
                    "iteration": state.iteration,
                    "type": correction.type,
                    "reason": correction.reason,
                }
            )
            if correction.type == "escalate":
                if await self._pause(state, "Escalation required", correction.reason):
                    return True
                state.consecutive_errors = 0

        if state.last_error_action and self.store.check_three_strikes(state.last_error_action):
            LOGGER.warning("3-strike limit reached for: %s", state.last_error_action)
            if await self._pause(
                state,
                "3-strike limit reached - need different approach",
                state.last_error_action,
            ):
                return True
            state.consecutive_errors = 0
            state.last_error_action = None

        every = self.config.loop.pause_after_iterations
        if every > 0 and state.iteration > 1 and state.iteration % every == 0:
            if await self._pause(state, f"Scheduled pause after iteration {state.iteration - 1}"):
                return True
        return False

    async def _run_coder(
        self, state: LoopState, plan_context: str, explore: ExploreResult | None, plan: PlanResult | None
    ) -> tuple[str, str]:
        coder: CoderAgent = self._specialist(
            CoderAgent, self.config.models.coder_chain(), self.config.timeouts.coder_wait_seconds
        )
        instruction = coder.build_instruction(
            state.task,
            iteration=state.iteration,
            plan_context=plan_context,
            plan=plan.render() if plan else "",
            exploration=explore.render() if explore else "",
            learned=self._learned_patterns(),
            feedback=state.previous_feedback,
            user_message=state.user_message,
        )
        try:
            response = await coder.run(instruction)
            return response.content, response.candidate.label
        except ModelFallbackExhausted as exc:
            alternate = self.config.models.alternate_candidate()
            if alternate is None or exc.belongs_to(alternate.provider):
                raise
            LOGGER.warning("Coder chain exhausted; escalating to %s", alternate.label)
            self._emit(
                {
                    "event": "coder_alternate_system",
                    "iteration": state.iteration,
                    "candidate": alternate.label,
                }
            )
            fallback: CoderAgent = self._specialist(
                CoderAgent, [alternate], self.config.timeouts.coder_wait_seconds
            )
            response = await fallback.run(instruction)
            return f"[{alternate.provider}] {response.content}", response.candidate.label

    async def _review(self, state: LoopState, coder_summary: str, plan_context: str) -> ReviewResult:
        reviewer: ReviewerAgent = self._specialist(
            ReviewerAgent, self.config.models.reviewer_chain(), self.config.timeouts.reviewer_wait_seconds
        )
        response = await reviewer.run(
            reviewer.build_instruction(
                state.task,
                coder_summary,
                iteration=state.iteration,
                acceptance_criteria=self.acceptance_criteria,
                urls=self.config.browser.urls if self.config.browser.enabled else (),
                plan_context=plan_context,
            )
        )
        review = self.parser.parse(response.content)
        return await self._merge_checks(review)

    async def _merge_checks(self, review: ReviewResult) -> ReviewResult:
        checks = list(review.checks)
        browser_errors = list(review.browser_errors)
        screenshots: list[str] = []
        urls_tested: list[str] = []
        summaries: list[str] = []
        runtime_logs: list[str] = []
        target = review.target
        runtime = review.runtime
        tool_calls = review.tool_calls

        browser = self.config.browser
        if browser.enabled and browser.urls:
            report = await run_browser_checks(
                browser.urls, service=self.browser, timeout_seconds=browser.timeout_seconds
            )
            urls_tested.extend(report.urls_tested)
            if report.passed:
                screenshots.extend(report.screenshots)
                checks.append(
                    CheckResult(
                        name="browser-check",
                        command="browser-check",
                        passed=True,
                        evidence="Browser verification passed",
                    )
                )
            else:
                joined = "; ".join(report.errors)
                browser_errors.extend(report.errors)
                checks.append(
                    CheckResult(
                        name="browser-check",
                        command="browser-check",
                        passed=False,
                        evidence=joined,
                        error=joined,
                    )
                )
            if report.console_error_count:
                base = runtime or RuntimeEvidence()
                runtime = replace(
                    base,
                    console_error_count=(base.console_error_count or 0) + report.console_error_count,
                )

        command_checks = await self.command_runner.run_all(self.config.commands, self.workdir)
        for check in command_checks:
            checks.append(check)
            self.store.record_test_result(check.command or check.name, check.passed, check.output or check.error)
            evidence = parse_structured_evidence(check.output)
            if evidence is not None:
                target = merge_evidence(target, evidence.target)
                runtime = merge_evidence(runtime, evidence.runtime)
                tool_calls = merge_evidence(tool_calls, evidence.tool_calls)
                runtime_logs.extend(evidence.runtime_logs)
            if check.output and RUNTIME_COMMAND_PATTERN.search(check.command or ""):
                runtime_logs.append(check.output[-RUNTIME_LOG_CHARS:])
            summaries.append(command_summary(check))

        artifacts = Artifacts(
            screenshots=unique(review.artifacts.screenshots + screenshots),
            urls_tested=unique(review.artifacts.urls_tested + urls_tested),
            command_summaries=unique(review.artifacts.command_summaries + summaries),
            runtime_logs=unique(review.artifacts.runtime_logs + runtime_logs),
        )
        return replace(
            review,
            checks=checks,
            browser_errors=browser_errors,
            artifacts=artifacts,
            target=target or target_evidence(self.target, self.workspace),
            runtime=runtime or RuntimeEvidence(),
            tool_calls=tool_calls or ToolCallEvidence(),
        )

    def _lessons_store(self) -> LearnedRulesStore:
        return LearnedRulesStore(self.workdir / self.config.loop.lessons_file)

    def _learned_patterns(self) -> str:
        if not self.config.loop.learn_lessons:
            return ""
        try:
            lessons = self._lessons_store().load()
        except OSError as exc:
            LOGGER.warning("Could not read learned rules: %s", exc)
            return ""
        return render_learned(lessons)

    def _record_iteration(self, state: LoopState, coder_summary: str, review: ReviewResult) -> None:
        self.store.finish_iteration(
            state.iteration,
            approved=review.approved,
            coder_summary=coder_summary,
            feedback=review.feedback,
            files_changed=self.list_changes(self.workdir),
        )
        if review.approved:
            state.consecutive_errors = 0
            if state.last_error_action:
                self.store.resolve_error(
                    state.last_error_action, f"Approved in iteration {state.iteration}"
                )
            state.last_error_action = None
            self.store.complete_plan()
        elif review.feedback:
            state.consecutive_errors += 1
            state.last_error_action = review.feedback[:ERROR_KEY_CHARS]
            entry = self.store.upsert_error(
                state.last_error_action, review.feedback[:ERROR_MESSAGE_CHARS]
            )
            self.store.advance_phase(3, completed_step="Address feedback")
            self._emit(
                {
                    "event": "error_recorded",
                    "iteration": state.iteration,
                    "attempts": entry.attempts,
                }
            )

        if self.config.loop.learn_lessons and review.feedback:
            lessons = self._lessons_store()
            try:
                added = lessons.learn_from_feedback(review.feedback)
            except OSError as exc:
                LOGGER.warning("Could not save learned rules: %s", exc)
            else:
                if added:
                    self._emit({"event": "lessons_recorded", "count": added})

    async def _iterate(
        self, state: LoopState, explore: ExploreResult | None, plan: PlanResult | None
    ) -> None:
        max_iterations = self.config.loop.max_iterations
        while not state.approved and state.iteration < max_iterations:
            state.iteration += 1
            self._emit({"event": "iteration_started", "iteration": state.iteration})

            if await self._checkpoints(state):
                return
            self._drain_inbox(state)

            self.store.start_iteration(state.iteration)
            plan_context = self.store.build_prompt_context()

            try:
                coder_summary, coder_label = await self._run_coder(state, plan_context, explore, plan)
            except ModelFallbackExhausted as exc:
                state.stopped = "failed"
                state.stop_reason = f"Coder failed: {exc}"
                self._emit({"event": "coder_failed", "iteration": state.iteration, "error": str(exc)[:400]})
                return
            user_message = state.user_message
            state.user_message = None
            self._emit(
                {"event": "coder_completed", "iteration": state.iteration, "candidate": coder_label}
            )

            self.store.advance_phase(2, completed_step="Write code")
            try:
                review = await self._review(state, coder_summary, plan_context)
            except ModelFallbackExhausted as exc:
                state.stopped = "failed"
                state.stop_reason = f"Reviewer failed: {exc}"
                self._emit({"event": "reviewer_failed", "iteration": state.iteration, "error": str(exc)[:400]})
                return
            review = self.gates.evaluate(review)
            self._emit(
                {
                    "event": "review_completed",
                    "iteration": state.iteration,
                    "approved": review.approved,
                    "reviewer_json_valid": review.reviewer_json_valid,
                }
            )

            state.history.append(
                IterationResult(
                    iteration=state.iteration,
                    coder_summary=coder_summary,
                    review=review,
                    user_message=user_message,
                    coder_candidate=coder_label,
                )
            )
            self._record_iteration(state, coder_summary, review)

            if review.approved:
                state.approved = True
                break
            state.previous_feedback = review.feedback or "Issues found, needs fixes"

            if self.config.loop.pause_on_browser_fail and review.browser_errors:
                if await self._pause(state, "Browser verification failed", "\n".join(review.browser_errors)):
                    return

    async def _commit(self, task: str, changes: list[str]) -> CommitInfo:
        committer: CommitterAgent = self._specialist(
            CommitterAgent, self.config.models.coder_chain(), self.config.timeouts.commit_wait_seconds
        )
        try:
            info = await committer.commit(task, changes, self.config.commit)
        except ModelFallbackExhausted as exc:
            LOGGER.warning("Commit phase failed: %s", exc)
            info = CommitInfo(committed=False, error=str(exc))
        self._emit(
            {
                "event": "commit_completed" if info.committed else "commit_failed",
                "sha": info.sha,
                "pr_url": info.pr_url,
                "error": info.error,
            }
        )
        return info

    def _finish(self, state: LoopState, changes: list[str], commit: CommitInfo | None) -> LoopResult:
        iterations = len(state.history)
        status: LoopStatus
        if state.approved:
            status = "approved"
            message = state.stop_reason or f"Completed in {iterations} iteration(s), all checks passing"
        elif state.stopped is not None:
            status = state.stopped
            message = state.stop_reason or f"Stopped after {iterations} iteration(s)"
        else:
            status = "exhausted"
            message = f"Stopped after {iterations} iteration(s), manual intervention needed"

        screenshots = unique(
            [path for item in state.history for path in item.review.artifacts.screenshots]
        )
        return LoopResult(
            approved=state.approved,
            iterations=iterations,
            history=list(state.history),
            changed_files=changes,
            final_message=message,
            status=status,
            session_id=self.session_id,
            screenshots=screenshots,
            commit=commit,
        )
