import json
from pathlib import Path

import pytest

from feedbackloop.state import JsonStateStore, PlanStateError, PlanStateStore
from feedbackloop.state.markdown import parse_task_plan_markdown, render_task_plan
from feedbackloop.state.plan_state import new_session_id
from feedbackloop.state.records import Decision, ErrorEntry, TaskPlan, default_phases


def _store(tmp_path: Path) -> PlanStateStore:
    store = PlanStateStore.open(tmp_path, "fl-test-session")
    store.initialize("Add a login page", ["form validates email", "tests pass"])
    return store


def test_initialize_writes_json_records_and_markdown(tmp_path: Path) -> None:
    store = _store(tmp_path)

    envelope = json.loads((store.session_dir / "state" / "task_plan.json").read_text(encoding="utf-8"))
    assert envelope["schema_version"] == 1
    assert envelope["revision"] == 1
    assert envelope["data"]["task"] == "Add a login page"
    assert store.task_plan_path.read_text(encoding="utf-8").startswith("# Task Plan")
    assert store.findings_path.exists()
    assert store.progress_path.exists()

    plan = store.read_plan()
    assert [phase.name for phase in plan.phases] == ["Implementation", "Verification", "Refinement"]
    assert plan.phase().status == "in_progress"


def test_unknown_session_does_not_exist_and_creates_nothing(tmp_path: Path) -> None:
    store = PlanStateStore.open(tmp_path, "fl-missing")

    assert store.exists() is False
    assert not (tmp_path / ".feedback-loop").exists()
    with pytest.raises(PlanStateError):
        store.read_plan()


def test_json_store_revisions_increment(tmp_path: Path) -> None:
    records = JsonStateStore(tmp_path / "state", {"metrics"})

    assert records.set_json("metrics", {"a": 1}) == 1
    assert records.set_json("metrics", {"a": 2}) == 2
    assert records.get_envelope("metrics")["revision"] == 2
    with pytest.raises(PlanStateError):
        records.get_json("unknown")


def test_three_strikes_fire_on_third_failure(tmp_path: Path) -> None:
    store = _store(tmp_path)
    action = "Tests fail: expected 200 got 500"

    store.upsert_error(action, "first")
    store.upsert_error(action, "second")
    assert store.check_three_strikes(action) is False

    entry = store.upsert_error(action, "third")
    assert entry.attempts == 3
    assert store.check_three_strikes(action) is True
    assert [item.action for item in store.escalation_needed()] == [action]
    assert "3-STRIKE LIMIT REACHED" in store.build_prompt_context()


def test_resolved_error_no_longer_counts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    action = "Type error in form handler"
    for message in ("one", "two", "three"):
        store.upsert_error(action, message)

    assert store.resolve_error(action, "Switched to typed schema") is True
    assert store.check_three_strikes(action) is False
    assert store.escalation_needed() == []

    fresh = store.upsert_error(action, "again")
    assert fresh.attempts == 1
    assert len(store.read_plan().errors) == 2


def test_update_plan_merges_only_provided_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.update_plan(current_phase=2)
    plan = store.read_plan()

    assert plan.current_phase == 2
    assert plan.task == "Add a login page"
    assert plan.acceptance_criteria == ["form validates email", "tests pass"]
    with pytest.raises(PlanStateError):
        store.update_plan(owner="someone")


def test_iteration_lifecycle_and_prompt_context(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_decision("Use server-side validation", context="plan", reasoning="simpler")
    store.start_iteration(1)
    store.finish_iteration(
        1,
        approved=False,
        coder_summary="Added form",
        feedback="Email regex rejects plus addresses",
        files_changed=["src/login.tsx"],
    )
    store.record_test_result("npm test", False, "1 failed")

    progress = store.read_progress()
    assert progress.iterations[0].verdict == "rejected"
    assert progress.iterations[0].files_changed == ["src/login.tsx"]
    assert progress.test_results[0].passed is False

    context = store.build_prompt_context()
    assert context.startswith("## PLANNING CONTEXT")
    assert "**Task:** Add a login page" in context
    assert "**Iterations Completed:** 1" in context
    assert "- [ ] form validates email" in context
    assert "Use server-side validation (simpler)" in context
    assert "Email regex rejects plus addresses" in context


def test_advance_and_complete_phases(tmp_path: Path) -> None:
    store = _store(tmp_path)

    plan = store.advance_phase(3, completed_step="Address feedback")
    assert plan.current_phase == 3
    assert [phase.status for phase in plan.phases] == ["completed", "completed", "in_progress"]
    assert plan.phase().completed_steps == ["Address feedback"]

    plan = store.complete_plan()
    assert all(phase.status == "completed" for phase in plan.phases)


def test_markdown_round_trip_keeps_task_phase_and_criteria() -> None:
    plan = TaskPlan(
        task="Ship dark mode",
        phases=default_phases(),
        current_phase=2,
        decisions=[Decision(decision="Use CSS variables")],
        errors=[ErrorEntry(action="contrast check", error="ratio 3.1")],
        acceptance_criteria=["toggle persists", "no contrast failures"],
    )

    parsed = parse_task_plan_markdown(render_task_plan(plan))

    assert parsed.task == "Ship dark mode"
    assert parsed.current_phase == 2
    assert parsed.acceptance_criteria == ["toggle persists", "no contrast failures"]
    assert parsed.phases == []
    assert parsed.decisions == []
    assert parsed.errors == []


def test_markdown_is_used_when_json_records_are_missing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    (store.session_dir / "state" / "task_plan.json").unlink()

    plan = store.read_plan()

    assert plan.task == "Add a login page"
    assert plan.errors == []


def test_events_and_status(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_event({"event": "iteration_started", "iteration": 1})
    store.record_event({"event": "iteration_started", "iteration": 2})
    store.set_session_status("paused", pause_reason="3-strike")

    metrics = store.metrics()
    assert metrics["counters"]["iteration_started"] == 2
    assert len(metrics["events"]) == 2

    status = store.status()
    assert status["session"]["status"] == "paused"
    assert status["task"] == "Add a login page"


def test_session_ids_are_unique() -> None:
    first, second = new_session_id(), new_session_id()

    assert first.startswith("fl-")
    assert first != second
