"""Invoke the executor bound to a step.

The dispatcher forwards the executor's requested lifecycle change to the state
tracker; it never moves items itself. Fan-out branches over distinct items run
concurrently, branches that target the same item run one after another, and one
branch failing never cancels its siblings.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace

from github_agent_workflow.executors.base import AgentResponse, Executor
from github_agent_workflow.tracker.base import ItemRef

from .context import Artifact, StepResult, StepStatus, TransitionOutcome, TransitionStatus
from .definition import Step
from .state_tracker import StateTracker

logger = logging.getLogger(__name__)

_EXECUTOR_STATUSES = {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.BLOCKED}


@dataclass(frozen=True, slots=True)
class Dispatched:
    """One invocation's result plus the artifacts the executor reported.

    `transitions` holds lifecycle outcomes on items other than the one the
    result's own transition is about (a blocked branch also blocks the run's item).
    """

    result: StepResult
    artifacts: tuple[Artifact, ...] = ()
    transitions: tuple[TransitionOutcome, ...] = ()


@dataclass(frozen=True, slots=True)
class _Branch:
    index: int
    item: ItemRef
    context: Mapping[str, object]


class AgentDispatcher:
    def __init__(
        self, *, executor: Executor, state_tracker: StateTracker, max_workers: int = 4
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._executor = executor
        self._state = state_tracker
        self._max_workers = max_workers

    def _call(
        self, step: Step, context: Mapping[str, object], *, item: ItemRef | None
    ) -> Dispatched:
        extra = {"step_id": step.id, "role": step.role, "item": item.id if item else None}
        logger.info("Invoking executor", extra=extra)
        try:
            response = self._executor.invoke(step.role, step.instructions, context)
        except Exception as e:
            logger.exception("Executor raised", extra=extra)
            return Dispatched(
                StepResult(
                    step_id=step.id,
                    status=StepStatus.FAILED,
                    reason=f"{type(e).__name__}: {e}",
                    item=item,
                )
            )

        if not isinstance(response, AgentResponse) or response.status not in _EXECUTOR_STATUSES:
            status = getattr(response, "status", response)
            return Dispatched(
                StepResult(
                    step_id=step.id,
                    status=StepStatus.FAILED,
                    reason=f"Executor returned an invalid status: {status!r}",
                    item=item,
                )
            )

        artifacts = tuple(
            a if a.step_id is not None else replace(a, step_id=step.id)
            for a in response.artifacts
        )
        logger.info("Executor finished", extra={**extra, "status": response.status.value})
        return Dispatched(
            StepResult(
                step_id=step.id,
                status=response.status,
                outputs=dict(response.outputs),
                requested_state=response.requested_state,
                reason=response.reason,
                item=item,
            ),
            artifacts,
        )

    def _forward(
        self, dispatched: Dispatched, *, target: ItemRef, work_item: ItemRef
    ) -> Dispatched:
        result = dispatched.result
        if result.status == StepStatus.BLOCKED:
            outcome = self._state.block(target, result.reason)
            extra: tuple[TransitionOutcome, ...] = ()
            if target.id != work_item.id:
                extra = (self._state.block(work_item, result.reason),)
            return replace(
                dispatched, result=replace(result, transition=outcome), transitions=extra
            )
        if result.status != StepStatus.SUCCEEDED or result.requested_state is None:
            return dispatched

        outcome = self._state.request(target, result.requested_state)
        result = replace(result, transition=outcome)
        if outcome.status == TransitionStatus.ERROR:
            result = replace(
                result,
                status=StepStatus.FAILED,
                reason=f"Lifecycle transition to {outcome.to_state.value} failed: {outcome.detail}",
            )
        return replace(dispatched, result=result)

    def dispatch(
        self, step: Step, context: Mapping[str, object], *, work_item: ItemRef
    ) -> Dispatched:
        """Run a single invocation of `step` against the run's work item."""

        dispatched = self._call(step, context, item=None)
        return self._forward(dispatched, target=work_item, work_item=work_item)

    def fan_out(
        self,
        step: Step,
        branches: Sequence[tuple[ItemRef, Mapping[str, object]]],
        *,
        work_item: ItemRef,
    ) -> list[Dispatched]:
        """Run one invocation per item and return results in item order."""

        groups: dict[str, list[_Branch]] = {}
        for index, (item, context) in enumerate(branches):
            groups.setdefault(item.id, []).append(_Branch(index, item, context))

        duplicates = [key for key, group in groups.items() if len(group) > 1]
        if duplicates:
            logger.warning(
                "Fan-out branches share a target; serializing them",
                extra={"step_id": step.id, "items": duplicates},
            )

        collected: list[tuple[int, Dispatched]] = []
        workers = max(1, min(self._max_workers, len(groups)))
        prefix = f"fanout-{step.id}"
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=prefix) as pool:
            futures = [pool.submit(self._run_group, step, group) for group in groups.values()]
            for future in futures:
                collected.extend(future.result())

        collected.sort(key=lambda pair: pair[0])
        forwarded: list[Dispatched] = []
        for _, dispatched in collected:
            item = dispatched.result.item
            assert item is not None
            forwarded.append(self._forward(dispatched, target=item, work_item=work_item))
        return forwarded

    def _run_group(self, step: Step, group: list[_Branch]) -> list[tuple[int, Dispatched]]:
        return [(b.index, self._call(step, b.context, item=b.item)) for b in group]
