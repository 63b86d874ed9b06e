"""Loader -> gate -> scheduler -> reporter, wired for a single definition."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime

from github_agent_workflow.executors.base import Executor
from github_agent_workflow.tracker.base import ItemRef, Tracker

from .context import RunContext
from .definition import WorkflowDefinition
from .dispatcher import AgentDispatcher
from .gate import InputGate, Plan, Prompt
from .report import ReportStore, RunReport, build_report
from .scheduler import StepScheduler
from .state_tracker import StateTracker

logger = logging.getLogger(__name__)

Confirmation = bool | Callable[[Plan], bool]


class WorkflowEngine:
    """Runs a loaded definition against work items.

    A definition is shared read-only across runs; every run gets its own
    context, state tracker and scheduler.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        *,
        tracker: Tracker,
        executor: Executor,
        fanout_max_workers: int = 4,
        prompt: Prompt | None = None,
        report_store: ReportStore | None = None,
        post_summary: bool = False,
    ) -> None:
        self.definition = definition
        self._tracker = tracker
        self._executor = executor
        self._max_workers = fanout_max_workers
        self._gate = InputGate(definition, prompt=prompt)
        self._report_store = report_store
        self._post_summary = post_summary

    def plan(self, inputs: Mapping[str, object] | None = None) -> Plan:
        return self._gate.present_plan(inputs)

    def run(
        self,
        work_item: ItemRef,
        inputs: Mapping[str, object] | None = None,
        *,
        confirm: Confirmation,
    ) -> RunReport:
        """Present the plan, wait for confirmation, then run every step.

        Raises:
            RunCancelled: confirmation was refused.
            MissingRequiredInputError: a required input is unbound.
        """

        plan = self._gate.present_plan(inputs)
        approved = confirm(plan) if callable(confirm) else bool(confirm)
        bound = self._gate.confirm(plan, approved=approved)

        state_tracker = StateTracker(self._tracker)
        dispatcher = AgentDispatcher(
            executor=self._executor,
            state_tracker=state_tracker,
            max_workers=self._max_workers,
        )
        scheduler = StepScheduler(
            self.definition,
            tracker=self._tracker,
            state_tracker=state_tracker,
            dispatcher=dispatcher,
            resolve_optional=self._gate.resolve_optional,
        )
        run = RunContext(workflow_id=self.definition.id, work_item=work_item, inputs=bound)

        started_at = datetime.now(tz=UTC).isoformat()
        status = scheduler.run(run)
        report = build_report(
            run, status=status, state_tracker=state_tracker, started_at=started_at
        )

        if self._post_summary:
            try:
                state_tracker.annotate(work_item, report.render_markdown())
            except Exception:
                logger.exception(
                    "Failed to post run summary",
                    extra={"run_id": run.run_id, "work_item": work_item.id},
                )

        if self._report_store is not None:
            self._report_store.append(report)
            logger.info(
                "Run report persisted",
                extra={"run_id": run.run_id, "path": str(self._report_store.path)},
            )
        return report
