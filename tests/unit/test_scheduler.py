"""Unit tests for step scheduling: conditions, fan-out and draining."""

from __future__ import annotations

import itertools
from collections.abc import Mapping

import pytest

from github_agent_workflow.executors.base import AgentResponse
from github_agent_workflow.executors.registry import RoleRegistryExecutor
from github_agent_workflow.tracker.base import ItemRef
from github_agent_workflow.tracker.memory import InMemoryTracker
from github_agent_workflow.workflow.context import RunContext, StepStatus
from github_agent_workflow.workflow.definition import Instructions, WorkflowDefinition
from github_agent_workflow.workflow.dispatcher import AgentDispatcher
from github_agent_workflow.workflow.lifecycle import LifecycleState
from github_agent_workflow.workflow.loader import parse_definition
from github_agent_workflow.workflow.scheduler import RunStatus, StepScheduler
from github_agent_workflow.workflow.state_tracker import StateTracker


class CountingTracker(InMemoryTracker):
    def __init__(self) -> None:
        super().__init__()
        self.list_calls: list[str | None] = []

    def list_children(self, parent: ItemRef, category: str | None = None) -> list[ItemRef]:
        self.list_calls.append(category)
        return super().list_children(parent, category)


def _succeed(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
    return AgentResponse.succeeded()


def _scheduler(
    definition: WorkflowDefinition,
    tracker: InMemoryTracker,
    executor: RoleRegistryExecutor,
    **kwargs,
) -> StepScheduler:
    state = StateTracker(tracker)
    dispatcher = AgentDispatcher(executor=executor, state_tracker=state)
    return StepScheduler(
        definition, tracker=tracker, state_tracker=state, dispatcher=dispatcher, **kwargs
    )


BRANCHING = {
    "id": "branching",
    "inputs": [{"name": "x"}, {"name": "y"}],
    "steps": [
        {"id": "A", "role": "r"},
        {"id": "B", "role": "r", "condition": "inputs.x"},
        {"id": "C", "role": "r", "condition": "inputs.y and not inputs.x"},
        {"id": "D", "role": "r", "condition": "B.status == succeeded or C.status == succeeded"},
    ],
}


@pytest.mark.parametrize(("x", "y"), list(itertools.product([True, False], repeat=2)))
def test_executed_steps_follow_the_branch_table(
    x: bool, y: bool, tracker: InMemoryTracker, work_item: ItemRef
) -> None:
    definition = parse_definition(BRANCHING)
    run = RunContext(workflow_id=definition.id, work_item=work_item, inputs={"x": x, "y": y})

    _scheduler(definition, tracker, RoleRegistryExecutor({"r": _succeed})).run(run)

    b = x
    c = y and not x
    expected = {"A": True, "B": b, "C": c, "D": b or c}
    assert [(r.step_id, r.status) for r in run.ordered_results()] == [
        (step, StepStatus.SUCCEEDED if ran else StepStatus.SKIPPED)
        for step, ran in expected.items()
    ]


@pytest.mark.parametrize("n", [0, 1, 3])
def test_fan_out_count_law(n: int, tracker: InMemoryTracker, work_item: ItemRef) -> None:
    for i in range(n):
        tracker.create_child_item(work_item, "ops", f"child {i}")
    tracker.create_child_item(work_item, "dev", "not ops")
    definition = parse_definition(
        {"id": "fan", "steps": [{"id": "B", "role": "ops", "fan_out": 'children(category="ops")'}]}
    )
    run = RunContext(workflow_id="fan", work_item=work_item)

    status = _scheduler(definition, tracker, RoleRegistryExecutor({"ops": _succeed})).run(run)

    results = run.results["B"]
    if n == 0:
        assert [r.status for r in results] == [StepStatus.SKIPPED]
    else:
        assert len(results) == n
        assert all(r.status == StepStatus.SUCCEEDED for r in results)
        assert len({r.item for r in results}) == n
    assert status == RunStatus.COMPLETED


def test_children_are_queried_once_per_category_per_step() -> None:
    tracker = CountingTracker()
    parent = tracker.add_item()
    tracker.create_child_item(parent, "ops", "one")
    definition = parse_definition(
        {
            "id": "snap",
            "steps": [
                {
                    "id": "B",
                    "role": "ops",
                    "condition": 'count(children, category="ops") > 0',
                    "fan_out": 'children(category="ops")',
                },
                {"id": "C", "role": "ops"},
            ],
        }
    )
    run = RunContext(workflow_id="snap", work_item=parent)

    _scheduler(definition, tracker, RoleRegistryExecutor({"ops": _succeed})).run(run)

    assert tracker.list_calls == ["ops"]
    assert [c.id for c in run.children["ops"]] == [c.id for c in tracker.list_children(parent)]


def test_fan_out_over_step_output(tracker: InMemoryTracker, work_item: ItemRef) -> None:
    seen: list[object] = []

    def plan(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        return AgentResponse.succeeded({"tasks": ["t-1", {"id": "t-2", "url": "https://x/2"}]})

    def build(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        seen.append((context["item"], context.get("item_url")))
        return AgentResponse.succeeded()

    definition = parse_definition(
        {
            "id": "tasks",
            "steps": [
                {"id": "plan", "role": "planner"},
                {"id": "build", "role": "builder", "fan_out": "plan.outputs.tasks"},
                {"id": "check", "role": "planner", "condition": "count(plan.outputs.tasks) == 2"},
            ],
        }
    )
    run = RunContext(workflow_id="tasks", work_item=work_item)
    executor = RoleRegistryExecutor({"planner": plan, "builder": build})

    _scheduler(definition, tracker, executor).run(run)

    assert sorted(seen) == [("t-1", None), ("t-2", "https://x/2")]
    assert run.step_status("check") == StepStatus.SUCCEEDED


def test_blocked_fan_out_branch_stops_later_steps(
    tracker: InMemoryTracker, work_item: ItemRef
) -> None:
    first = tracker.create_child_item(work_item, "ops", "0")
    tracker.create_child_item(work_item, "ops", "1")

    def ops(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        if context["item"] == first.id:
            return AgentResponse.blocked("first child is infeasible")
        return AgentResponse.succeeded()

    definition = parse_definition(
        {
            "id": "fan",
            "steps": [
                {"id": "B", "role": "ops", "fan_out": 'children(category="ops")'},
                {"id": "C", "role": "ops"},
            ],
        }
    )
    run = RunContext(workflow_id="fan", work_item=work_item)

    status = _scheduler(definition, tracker, RoleRegistryExecutor({"ops": ops})).run(run)

    assert status == RunStatus.BLOCKED
    assert [r.status for r in run.results["B"]] == [StepStatus.BLOCKED, StepStatus.SUCCEEDED]
    assert [r.status for r in run.results["C"]] == [StepStatus.SKIPPED]
    assert run.blocking_reason == "first child is infeasible"


def test_fan_out_over_unknown_items_fails_each_branch(
    tracker: InMemoryTracker, work_item: ItemRef
) -> None:
    def plan(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        return AgentResponse.succeeded({"prs": ["pr-1", "pr-2"]})

    def review(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        return AgentResponse.succeeded(requested_state=LifecycleState.IN_REVIEW)

    definition = parse_definition(
        {
            "id": "prs",
            "steps": [
                {"id": "A", "role": "planner"},
                {"id": "B", "role": "reviewer", "fan_out": "A.outputs.prs"},
                {"id": "C", "role": "planner"},
            ],
        }
    )
    run = RunContext(workflow_id="prs", work_item=work_item)
    executor = RoleRegistryExecutor({"planner": plan, "reviewer": review})

    status = _scheduler(definition, tracker, executor).run(run)

    branches = run.results["B"]
    assert status == RunStatus.FAILED
    assert [r.status for r in branches] == [StepStatus.FAILED, StepStatus.FAILED]
    assert all(
        r.reason.startswith("Lifecycle transition to in_review failed: KeyError")
        for r in branches
    )
    assert [r.transition.from_state for r in branches if r.transition] == [None, None]
    assert run.step_status("C") == StepStatus.SUCCEEDED


def test_unreadable_work_item_fails_the_run(work_item: ItemRef) -> None:
    class UnreachableTracker(InMemoryTracker):
        def get_lifecycle_state(self, ref: ItemRef) -> LifecycleState:
            raise ConnectionError("tracker unreachable")

    tracker = UnreachableTracker()
    parent = tracker.add_item()
    definition = parse_definition({"id": "one", "steps": [{"id": "A", "role": "r"}]})
    run = RunContext(workflow_id="one", work_item=parent)

    status = _scheduler(definition, tracker, RoleRegistryExecutor({"r": _succeed})).run(run)

    assert status == RunStatus.FAILED
    assert run.step_status("A") == StepStatus.SUCCEEDED
    assert run.errors == [
        f"Reading lifecycle state of {parent.id} failed: ConnectionError: tracker unreachable"
    ]


def test_optional_inputs_are_resolved_lazily(tracker: InMemoryTracker, work_item: ItemRef) -> None:
    asked: list[str] = []
    contexts: list[Mapping[str, object]] = []

    def resolve(name: str) -> object | None:
        asked.append(name)
        return f"value for {name}"

    def record(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        contexts.append(context)
        return AgentResponse.succeeded()

    definition = parse_definition(
        {
            "id": "lazy",
            "inputs": [
                {"name": "skip_me", "required": False},
                {"name": "notes", "required": False},
            ],
            "steps": [
                {"id": "A", "role": "r", "optional": ["skip_me"], "condition": "inputs.skip_me"},
                {"id": "B", "role": "r", "optional": ["notes"]},
                {"id": "C", "role": "r", "optional": ["notes"]},
            ],
        }
    )
    run = RunContext(workflow_id="lazy", work_item=work_item)

    _scheduler(
        definition, tracker, RoleRegistryExecutor({"r": record}), resolve_optional=resolve
    ).run(run)

    assert asked == ["notes"]
    assert [c["notes"] for c in contexts] == ["value for notes", "value for notes"]


def test_scheduler_runs_only_once(tracker: InMemoryTracker, work_item: ItemRef) -> None:
    definition = parse_definition({"id": "one", "steps": [{"id": "A", "role": "r"}]})
    scheduler = _scheduler(definition, tracker, RoleRegistryExecutor({"r": _succeed}))
    scheduler.run(RunContext(workflow_id="one", work_item=work_item))

    with pytest.raises(RuntimeError):
        scheduler.run(RunContext(workflow_id="one", work_item=work_item))


def test_listing_failure_fails_the_step_only(work_item: ItemRef) -> None:
    class BrokenTracker(InMemoryTracker):
        def list_children(self, parent: ItemRef, category: str | None = None) -> list[ItemRef]:
            raise ConnectionError("tracker offline")

    tracker = BrokenTracker()
    parent = tracker.add_item()
    definition = parse_definition(
        {
            "id": "broken",
            "steps": [
                {"id": "B", "role": "r", "fan_out": "children"},
                {"id": "C", "role": "r"},
            ],
        }
    )
    run = RunContext(workflow_id="broken", work_item=parent)

    status = _scheduler(definition, tracker, RoleRegistryExecutor({"r": _succeed})).run(run)

    assert run.step_status("B") == StepStatus.FAILED
    assert run.results["B"][0].reason == "ConnectionError: tracker offline"
    assert run.step_status("C") == StepStatus.SUCCEEDED
    assert status == RunStatus.FAILED
