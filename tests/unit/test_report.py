"""Unit tests for run reports and their persistence."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from github_agent_workflow.tracker.base import ItemRef, Tracker
from github_agent_workflow.tracker.memory import InMemoryTracker
from github_agent_workflow.workflow.context import (
    Artifact,
    RunContext,
    StepResult,
    StepStatus,
    TransitionOutcome,
    TransitionStatus,
)
from github_agent_workflow.workflow.lifecycle import LifecycleState
from github_agent_workflow.workflow.report import ReportStore, RunReport, build_report
from github_agent_workflow.workflow.scheduler import RunStatus
from github_agent_workflow.workflow.state_tracker import StateTracker


def _blocked_run(work_item: ItemRef) -> RunContext:
    child = ItemRef(id="item-9", url="https://example.test/9")
    run = RunContext(workflow_id="triage", work_item=work_item, run_id="run-1")
    run.record(StepResult(step_id="A", status=StepStatus.SUCCEEDED, outputs={"n": 1}))
    run.record(StepResult(step_id="B", status=StepStatus.SUCCEEDED, item=child))
    run.record(
        StepResult(step_id="C", status=StepStatus.BLOCKED, reason="missing | required resource")
    )
    run.record(StepResult(step_id="D", status=StepStatus.SKIPPED, reason="Run blocked"))
    run.add_artifact(Artifact(kind="child_item", ref=child.id, url=child.url, step_id="A"))
    run.transitions.append(
        TransitionOutcome(
            item=work_item.id,
            from_state=LifecycleState.BACKLOG,
            to_state=LifecycleState.READY,
            status=TransitionStatus.FALLBACK,
            annotation="Requires manual move to Ready",
        )
    )
    return run


def test_build_report_captures_outcome(tracker: InMemoryTracker, work_item: ItemRef) -> None:
    run = _blocked_run(work_item)

    report = build_report(
        run,
        status=RunStatus.BLOCKED,
        state_tracker=StateTracker(tracker),
        started_at="2025-01-01T00:00:00+00:00",
        finished_at="2025-01-01T00:01:00+00:00",
    )

    assert report.sequence == [
        ("A", "succeeded"),
        ("B", "succeeded"),
        ("C", "blocked"),
        ("D", "skipped"),
    ]
    assert report.blocking_step == "C"
    assert report.blocking_reason == "missing | required resource"
    assert report.external_state == "backlog"
    assert report.open_blockers == (
        f"{work_item.id}: blocked at C",
        f"{work_item.id}: Requires manual move to Ready",
    )
    assert report.errors == ()


def test_flat_record_has_only_scalars(tracker: InMemoryTracker, work_item: ItemRef) -> None:
    report = build_report(
        _blocked_run(work_item),
        status=RunStatus.BLOCKED,
        state_tracker=StateTracker(tracker),
        started_at="2025-01-01T00:00:00+00:00",
    )

    record = report.to_record()

    assert all(isinstance(v, (str, int, bool)) or v is None for v in record.values())
    assert record["status"] == "blocked"
    assert record["steps"] == "A:succeeded,B[item-9]:succeeded,C:blocked,D:skipped"
    assert record["steps_skipped"] == 1
    assert record["steps_succeeded"] == 2
    assert record["artifact_count"] == 1
    assert record["blocking_reason"] == "missing | required resource"


def test_markdown_summary(tracker: InMemoryTracker, work_item: ItemRef) -> None:
    report = build_report(
        _blocked_run(work_item),
        status=RunStatus.BLOCKED,
        state_tracker=StateTracker(tracker),
        started_at="2025-01-01T00:00:00+00:00",
    )

    text = report.render_markdown()

    assert text.startswith("### Workflow `triage`: blocked")
    assert "| C |  | blocked | missing \\| required resource |" in text
    assert "| B | item-9 | succeeded |  |" in text
    assert "**Blocked at `C`:** missing | required resource" in text
    assert "- child_item [item-9](https://example.test/9)" in text
    assert "**Needs attention:**" in text


def test_report_store_roundtrip(
    tmp_path: Path, tracker: InMemoryTracker, work_item: ItemRef
) -> None:
    store = ReportStore(tmp_path / "agent_state" / "runs.json")
    report = build_report(
        _blocked_run(work_item),
        status=RunStatus.BLOCKED,
        state_tracker=StateTracker(tracker),
        started_at="2025-01-01T00:00:00+00:00",
    )

    store.append(report)
    store.append(report)

    assert store.list() == [report]
    assert store.get("run-1") == report
    assert store.get("missing") is None
    raw = json.loads((tmp_path / "agent_state" / "runs.json").read_text(encoding="utf-8"))
    assert raw[0]["run_id"] == "run-1"
    assert RunReport.model_validate(raw[0]) == report


def test_report_store_tolerates_bad_files(tmp_path: Path) -> None:
    path = tmp_path / "runs.json"
    store = ReportStore(path)
    assert store.list() == []

    path.write_text("{not json", encoding="utf-8")
    assert store.list() == []

    path.write_text('{"run_id": "x"}', encoding="utf-8")
    assert store.list() == []


def test_report_cannot_be_mutated(tracker: InMemoryTracker, work_item: ItemRef) -> None:
    run = _blocked_run(work_item)
    run.inputs["owner"] = "acme"
    report = build_report(
        run,
        status=RunStatus.BLOCKED,
        state_tracker=StateTracker(tracker),
        started_at="2025-01-01T00:00:00+00:00",
    )

    with pytest.raises(AttributeError):
        report.steps.clear()  # type: ignore[attr-defined]
    with pytest.raises(AttributeError):
        report.open_blockers.append("later")  # type: ignore[attr-defined]
    with pytest.raises(TypeError):
        report.inputs["owner"] = "other"  # type: ignore[index]
    with pytest.raises(TypeError):
        report.steps[0].outputs["n"] = 2  # type: ignore[index]
    with pytest.raises(ValidationError):
        report.status = "completed"  # type: ignore[misc]
    assert len(report.steps) == 4
    assert report.inputs == {"owner": "acme"}


def test_report_survives_unreadable_tracker(work_item: ItemRef) -> None:
    tracker = Mock(spec=Tracker)
    tracker.get_lifecycle_state.side_effect = ConnectionError("tracker unreachable")
    run = RunContext(workflow_id="triage", work_item=work_item, run_id="run-2")
    run.add_error("Reading lifecycle state failed")

    report = build_report(
        run,
        status=RunStatus.FAILED,
        state_tracker=StateTracker(tracker),
        started_at="2025-01-01T00:00:00+00:00",
    )

    assert report.external_state == "unknown"
    assert report.errors == ("Reading lifecycle state failed",)
    assert report.to_record()["errors"] == "Reading lifecycle state failed"
    assert "**Errors:**" in report.render_markdown()


def test_report_store_skips_invalid_entries(
    tmp_path: Path, tracker: InMemoryTracker, work_item: ItemRef
) -> None:
    path = tmp_path / "runs.json"
    path.write_text(json.dumps([{"run_id": "x"}]), encoding="utf-8")
    store = ReportStore(path)
    report = build_report(
        _blocked_run(work_item),
        status=RunStatus.BLOCKED,
        state_tracker=StateTracker(tracker),
        started_at="2025-01-01T00:00:00+00:00",
    )

    assert store.list() == []
    store.append(report)

    assert store.list() == [report]
