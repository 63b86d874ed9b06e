"""Walk a definition's steps in declared order for one run.

Per step: drain as skipped once the run is blocked, otherwise evaluate the
condition, then dispatch once or once per fan-out item. A failed step is
recorded and the run carries on; only a blocked step stops execution.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import Enum

from github_agent_workflow.tracker.base import ItemRef, Tracker

from .conditions import ChildrenSource, CountSource, children_categories, evaluate
from .context import Artifact, RunContext, StepResult, StepStatus
from .definition import Step, WorkflowDefinition
from .dispatcher import AgentDispatcher, Dispatched
from .state_tracker import StateTracker

logger = logging.getLogger(__name__)

OptionalInputResolver = Callable[[str], object | None]


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


def _to_item(value: object) -> ItemRef:
    if isinstance(value, ItemRef):
        return value
    if isinstance(value, Mapping) and "id" in value:
        url = value.get("url")
        return ItemRef(id=str(value["id"]), url=str(url) if url else None)
    return ItemRef(id=str(value))


class StepScheduler:
    """Runs a single :class:`RunContext` to a terminal status. Not reusable."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        *,
        tracker: Tracker,
        state_tracker: StateTracker,
        dispatcher: AgentDispatcher,
        resolve_optional: OptionalInputResolver | None = None,
    ) -> None:
        self._definition = definition
        self._tracker = tracker
        self._state = state_tracker
        self._dispatcher = dispatcher
        self._resolve_optional = resolve_optional
        self.status = RunStatus.NOT_STARTED

    def run(self, run: RunContext) -> RunStatus:
        if self.status != RunStatus.NOT_STARTED:
            raise RuntimeError(f"Scheduler already used (status: {self.status.value})")
        self.status = RunStatus.RUNNING
        self._refresh_lifecycle(run)
        logger.info(
            "Run started",
            extra={
                "workflow_id": run.workflow_id,
                "run_id": run.run_id,
                "work_item": run.work_item.id,
                "lifecycle_state": run.lifecycle_state.value,
            },
        )

        for step in self._definition.steps:
            if run.blocked:
                run.record(
                    StepResult(
                        step_id=step.id,
                        status=StepStatus.SKIPPED,
                        reason=f"Run blocked at step {run.blocking_step!r}",
                    )
                )
                continue
            self._run_step(step, run)
            self._refresh_lifecycle(run)

        if run.blocked:
            self.status = RunStatus.BLOCKED
        elif run.errors or any(r.status == StepStatus.FAILED for r in run.ordered_results()):
            self.status = RunStatus.FAILED
        else:
            self.status = RunStatus.COMPLETED

        logger.info(
            "Run finished",
            extra={
                "workflow_id": run.workflow_id,
                "run_id": run.run_id,
                "status": self.status.value,
                "lifecycle_state": run.lifecycle_state.value,
            },
        )
        return self.status

    def _refresh_lifecycle(self, run: RunContext) -> None:
        try:
            run.lifecycle_state = self._state.state_of(run.work_item)
        except Exception as e:
            logger.exception(
                "Reading lifecycle state failed",
                extra={"run_id": run.run_id, "work_item": run.work_item.id},
            )
            run.add_error(
                f"Reading lifecycle state of {run.work_item.id} failed: {type(e).__name__}: {e}"
            )

    def _run_step(self, step: Step, run: RunContext) -> None:
        extra = {"workflow_id": run.workflow_id, "run_id": run.run_id, "step_id": step.id}
        try:
            self._snapshot_children(step, run)
        except Exception as e:
            logger.exception("Listing child items failed", extra=extra)
            run.record(
                StepResult(
                    step_id=step.id,
                    status=StepStatus.FAILED,
                    reason=f"{type(e).__name__}: {e}",
                )
            )
            return

        if not evaluate(step.condition, run):
            logger.info("Step skipped: condition not met", extra=extra)
            run.record(
                StepResult(
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    reason=f"Condition not met: {step.condition_text}",
                )
            )
            return

        self._bind_lazy_inputs(step, run)

        if step.fan_out is None:
            dispatched = self._dispatcher.dispatch(
                step, run.context_slice(step), work_item=run.work_item
            )
            self._record(dispatched, run)
            return

        items = self._fan_out_items(step.fan_out.source, run)
        if not items:
            logger.info("Step skipped: fan-out source is empty", extra=extra)
            run.record(
                StepResult(
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    reason=f"No items for {step.fan_out.expression}",
                )
            )
            return

        logger.info("Fanning out", extra={**extra, "items": [i.id for i in items]})
        branches = [(item, run.context_slice(step, item=item)) for item in items]
        for dispatched in self._dispatcher.fan_out(step, branches, work_item=run.work_item):
            self._record(dispatched, run)

    def _snapshot_children(self, step: Step, run: RunContext) -> None:
        """Query child items once per category for this step."""

        categories = children_categories(step.condition)
        if step.fan_out is not None and isinstance(step.fan_out.source, ChildrenSource):
            categories.add(step.fan_out.source.category)
        for category in sorted(categories, key=lambda c: c or ""):
            run.children[category] = self._tracker.list_children(run.work_item, category)

    def _fan_out_items(self, source: CountSource, run: RunContext) -> list[ItemRef]:
        if isinstance(source, ChildrenSource):
            return list(run.children.get(source.category, []))
        value = run.resolve(source)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [_to_item(v) for v in value]
        return [_to_item(value)]

    def _bind_lazy_inputs(self, step: Step, run: RunContext) -> None:
        if self._resolve_optional is None:
            return
        for name in step.requires + step.optional:
            if name in run.inputs:
                continue
            value = self._resolve_optional(name)
            if value is not None:
                run.inputs[name] = value

    @staticmethod
    def _record(dispatched: Dispatched, run: RunContext) -> None:
        result = dispatched.result
        run.record(result)
        for artifact in dispatched.artifacts:
            run.add_artifact(artifact)
        outcomes = [result.transition] if result.transition is not None else []
        outcomes.extend(dispatched.transitions)
        for outcome in outcomes:
            run.transitions.append(outcome)
            if outcome.annotation:
                run.add_artifact(
                    Artifact(
                        kind="annotation",
                        ref=outcome.item,
                        step_id=result.step_id,
                        description=outcome.annotation,
                    )
                )
