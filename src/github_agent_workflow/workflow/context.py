"""Per-run mutable state.

A :class:`RunContext` is created at run start, owned by a single scheduler and
never shared across runs.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from github_agent_workflow.tracker.base import ItemRef

from .conditions import (
    ChildrenSource,
    CountSource,
    InputRef,
    Reference,
    StepOutputRef,
    StepStatusRef,
)
from .definition import Step
from .lifecycle import LifecycleState


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    FAILED = "failed"


class TransitionStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    FALLBACK = "fallback"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class TransitionOutcome:
    """What the state tracker did with one requested lifecycle transition.

    `from_state` is None when the item's current state could not be read.
    """

    item: str
    from_state: LifecycleState | None
    to_state: LifecycleState
    status: TransitionStatus
    annotation: str | None = None
    detail: str = ""


@dataclass(frozen=True, slots=True)
class StepResult:
    step_id: str
    status: StepStatus
    outputs: dict[str, object] = field(default_factory=dict)
    requested_state: LifecycleState | None = None
    reason: str = ""
    item: ItemRef | None = None
    transition: TransitionOutcome | None = None


@dataclass(frozen=True, slots=True)
class Artifact:
    """Something a run created or left behind for humans (child item, PR, note)."""

    kind: str
    ref: str
    url: str | None = None
    step_id: str | None = None
    description: str = ""


@dataclass
class ExternalWorkItem:
    """Read-only mirror of an item owned by the external tracker."""

    ref: ItemRef
    state: LifecycleState


def _new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RunContext:
    workflow_id: str
    work_item: ItemRef
    inputs: dict[str, object] = field(default_factory=dict)
    lifecycle_state: LifecycleState = LifecycleState.BACKLOG
    run_id: str = field(default_factory=_new_run_id)

    results: dict[str, list[StepResult]] = field(default_factory=dict)
    artifacts: list[Artifact] = field(default_factory=list)
    transitions: list[TransitionOutcome] = field(default_factory=list)
    children: dict[str | None, list[ItemRef]] = field(default_factory=dict)

    blocked: bool = False
    blocking_step: str | None = None
    blocking_reason: str | None = None
    errors: list[str] = field(default_factory=list)

    def record(self, result: StepResult) -> None:
        self.results.setdefault(result.step_id, []).append(result)
        if result.status == StepStatus.BLOCKED and not self.blocked:
            self.blocked = True
            self.blocking_step = result.step_id
            self.blocking_reason = result.reason

    def add_error(self, message: str) -> None:
        """Record a run-level problem that belongs to no single step."""

        if message not in self.errors:
            self.errors.append(message)

    def add_artifact(self, artifact: Artifact) -> None:
        if artifact not in self.artifacts:
            self.artifacts.append(artifact)

    def ordered_results(self) -> list[StepResult]:
        ordered: list[StepResult] = []
        for results in self.results.values():
            ordered.extend(results)
        return ordered

    def step_status(self, step_id: str) -> StepStatus | None:
        results = self.results.get(step_id)
        if not results:
            return None
        statuses = {r.status for r in results}
        for status in (StepStatus.BLOCKED, StepStatus.FAILED, StepStatus.SUCCEEDED):
            if status in statuses:
                return status
        return StepStatus.SKIPPED

    def step_outputs(self, step_id: str) -> dict[str, object]:
        """Outputs of a step; fan-out branches are merged into per-key lists."""

        results = [r for r in self.results.get(step_id, []) if r.status != StepStatus.SKIPPED]
        if len(results) == 1 and results[0].item is None:
            return dict(results[0].outputs)
        merged: dict[str, list[object]] = {}
        for result in results:
            for key, value in result.outputs.items():
                merged.setdefault(key, []).append(value)
        return dict(merged)

    def resolve(self, ref: Reference) -> object:
        if isinstance(ref, InputRef):
            return self.inputs.get(ref.name)
        if isinstance(ref, StepStatusRef):
            status = self.step_status(ref.step_id)
            return status.value if status is not None else None
        if isinstance(ref, StepOutputRef):
            return self.step_outputs(ref.step_id).get(ref.key)
        raise TypeError(f"Unsupported reference: {ref!r}")

    def count(self, source: CountSource) -> int:
        if isinstance(source, ChildrenSource):
            return len(self.children.get(source.category, []))
        value = self.resolve(source)
        if value is None:
            return 0
        if isinstance(value, (list, tuple, set, Mapping)):
            return len(value)
        return 1

    def context_slice(self, step: Step, *, item: ItemRef | None = None) -> dict[str, object]:
        """Values handed to the executor for one invocation of `step`."""

        names = step.requires + step.optional
        values: dict[str, object] = (
            {n: self.inputs[n] for n in names if n in self.inputs}
            if names
            else dict(self.inputs)
        )
        for dest, ref in step.input_map:
            values[dest] = self.resolve(ref)
        values["work_item"] = self.work_item.id
        if item is not None:
            values["item"] = item.id
            if item.url:
                values["item_url"] = item.url
        return values
