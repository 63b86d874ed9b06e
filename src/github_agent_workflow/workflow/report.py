"""Run reports and their local persistence.

A report is built once at run end and never changes. It can be flattened into a
single-level record for downstream tools or rendered as markdown for a comment.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
)

from .context import RunContext, StepStatus, TransitionOutcome, TransitionStatus
from .scheduler import RunStatus
from .state_tracker import StateTracker

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


def _jsonable(value: object) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _freeze(value: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value))


def _thaw(value: Mapping[str, Any]) -> dict[str, Any]:
    return dict(value)


# Read-only once validated; dumped back as a plain dict.
FrozenMapping = Annotated[
    Mapping[str, Any],
    AfterValidator(_freeze),
    PlainSerializer(_thaw, return_type=dict[str, Any]),
]


class TransitionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    item: str
    from_state: str | None = None
    to_state: str
    status: str
    annotation: str | None = None
    detail: str = ""

    @classmethod
    def from_outcome(cls, outcome: TransitionOutcome) -> TransitionRecord:
        return cls(
            item=outcome.item,
            from_state=outcome.from_state.value if outcome.from_state is not None else None,
            to_state=outcome.to_state.value,
            status=outcome.status.value,
            annotation=outcome.annotation,
            detail=outcome.detail,
        )


class StepRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    status: str
    item: str | None = None
    outputs: FrozenMapping = Field(default_factory=dict, validate_default=True)
    requested_state: str | None = None
    reason: str = ""
    transition: TransitionRecord | None = None


class ArtifactRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    ref: str
    url: str | None = None
    step_id: str | None = None
    description: str = ""


class RunReport(BaseModel):
    """Final summary of one run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    workflow_id: str
    work_item: str
    status: str
    inputs: FrozenMapping = Field(default_factory=dict, validate_default=True)
    steps: tuple[StepRecord, ...] = ()
    lifecycle_state: str
    external_state: str
    blocked: bool = False
    blocking_step: str | None = None
    blocking_reason: str | None = None
    artifacts: tuple[ArtifactRecord, ...] = ()
    transitions: tuple[TransitionRecord, ...] = ()
    open_blockers: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    started_at: str
    finished_at: str

    @property
    def sequence(self) -> list[tuple[str, str]]:
        return [(s.step_id, s.status) for s in self.steps]

    def statuses(self, step_id: str) -> list[str]:
        return [s.status for s in self.steps if s.step_id == step_id]

    def to_record(self) -> dict[str, str | int | bool | None]:
        """Flatten into a single-level mapping of scalars."""

        counts = {status.value: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status] = counts.get(step.status, 0) + 1
        record: dict[str, str | int | bool | None] = {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "work_item": self.work_item,
            "status": self.status,
            "lifecycle_state": self.lifecycle_state,
            "external_state": self.external_state,
            "blocked": self.blocked,
            "blocking_step": self.blocking_step,
            "blocking_reason": self.blocking_reason,
            "steps": ",".join(
                f"{s.step_id}[{s.item}]:{s.status}" if s.item else f"{s.step_id}:{s.status}"
                for s in self.steps
            ),
            "artifacts": ",".join(a.ref for a in self.artifacts),
            "artifact_count": len(self.artifacts),
            "open_blockers": " | ".join(self.open_blockers),
            "errors": " | ".join(self.errors),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        for status, count in counts.items():
            record[f"steps_{status}"] = count
        return record

    def render_markdown(self) -> str:
        lines = [
            f"### Workflow `{self.workflow_id}`: {self.status}",
            "",
            f"Run `{self.run_id}` on {self.work_item}",
            "",
            "| Step | Item | Status | Notes |",
            "| --- | --- | --- | --- |",
        ]
        for step in self.steps:
            notes = step.reason.replace("|", "\\|").replace("\n", " ")
            if step.transition is not None:
                moved = f"{step.transition.to_state} ({step.transition.status})"
                notes = f"{notes}; {moved}" if notes else moved
            lines.append(f"| {step.step_id} | {step.item or ''} | {step.status} | {notes} |")

        lines.extend(["", f"**Lifecycle state:** {self.lifecycle_state}"])
        if self.external_state != self.lifecycle_state:
            lines[-1] += f" (board shows {self.external_state})"

        if self.blocked:
            lines.extend(["", f"**Blocked at `{self.blocking_step}`:** {self.blocking_reason}"])

        if self.artifacts:
            lines.extend(["", "**Artifacts:**"])
            for artifact in self.artifacts:
                target = f"[{artifact.ref}]({artifact.url})" if artifact.url else artifact.ref
                suffix = f": {artifact.description}" if artifact.description else ""
                lines.append(f"- {artifact.kind} {target}{suffix}")

        if self.open_blockers:
            lines.extend(["", "**Needs attention:**"])
            lines.extend(f"- {blocker}" for blocker in self.open_blockers)

        if self.errors:
            lines.extend(["", "**Errors:**"])
            lines.extend(f"- {error}" for error in self.errors)
        return "\n".join(lines) + "\n"


def build_report(
    run: RunContext,
    *,
    status: RunStatus,
    state_tracker: StateTracker,
    started_at: str,
    finished_at: str | None = None,
) -> RunReport:
    steps = tuple(
        StepRecord(
            step_id=r.step_id,
            status=r.status.value,
            item=r.item.id if r.item is not None else None,
            outputs=_jsonable(r.outputs),
            requested_state=r.requested_state.value if r.requested_state else None,
            reason=r.reason,
            transition=TransitionRecord.from_outcome(r.transition) if r.transition else None,
        )
        for r in run.ordered_results()
    )

    open_blockers: list[str] = []
    if run.blocked:
        open_blockers.append(f"{run.work_item.id}: blocked at {run.blocking_step}")
    for outcome in run.transitions:
        if outcome.status == TransitionStatus.FALLBACK and outcome.annotation:
            entry = f"{outcome.item}: {outcome.annotation}"
            if entry not in open_blockers:
                open_blockers.append(entry)
    for result in run.ordered_results():
        if result.status == StepStatus.BLOCKED and result.item is not None:
            entry = f"{result.item.id}: blocked at {result.step_id}"
            if entry not in open_blockers:
                open_blockers.append(entry)

    try:
        external_state = state_tracker.external_state_of(run.work_item).value
    except Exception:
        logger.exception(
            "Reading lifecycle state for the report failed",
            extra={"run_id": run.run_id, "work_item": run.work_item.id},
        )
        external_state = "unknown"

    return RunReport(
        run_id=run.run_id,
        workflow_id=run.workflow_id,
        work_item=run.work_item.id,
        status=status.value,
        inputs=_jsonable(run.inputs),
        steps=steps,
        lifecycle_state=run.lifecycle_state.value,
        external_state=external_state,
        blocked=run.blocked,
        blocking_step=run.blocking_step,
        blocking_reason=run.blocking_reason,
        artifacts=tuple(
            ArtifactRecord(
                kind=a.kind, ref=a.ref, url=a.url, step_id=a.step_id, description=a.description
            )
            for a in run.artifacts
        ),
        transitions=tuple(TransitionRecord.from_outcome(t) for t in run.transitions),
        open_blockers=tuple(open_blockers),
        errors=tuple(run.errors),
        started_at=started_at,
        finished_at=finished_at or _utc_iso_now(),
    )


@dataclass
class ReportStore:
    """JSON-file backed audit log of run reports."""

    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[RunReport]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Run state file is not valid JSON; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        if not isinstance(raw, list):
            logger.warning(
                "Run state file has unexpected shape; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        reports: list[RunReport] = []
        for index, item in enumerate(raw):
            try:
                reports.append(RunReport.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "Skipping unreadable run report entry",
                    extra={"path": str(self.path), "index": index, "error": str(e)},
                )
        return reports

    def _save_unlocked(self, reports: list[RunReport]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in reports]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def list(self) -> list[RunReport]:
        with self._lock:
            return self._load_unlocked()

    def get(self, run_id: str) -> RunReport | None:
        with self._lock:
            for report in self._load_unlocked():
                if report.run_id == run_id:
                    return report
            return None

    def append(self, report: RunReport) -> None:
        with self._lock:
            reports = [r for r in self._load_unlocked() if r.run_id != report.run_id]
            reports.append(report)
            self._save_unlocked(reports)
