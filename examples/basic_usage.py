#!/usr/bin/env python3
"""Programmatic workflow run example.

This demonstrates using the engine components directly:

* load settings from `.env`
* load a workflow definition
* run it against an in-memory tracker with Python role handlers
* persist the run report to `agent_state/runs.json`

Inputs are passed as arguments (not read from `.env`).
"""

from __future__ import annotations

import argparse
from collections.abc import Mapping, Sequence
from pathlib import Path

from github_agent_workflow.config import EngineSettings
from github_agent_workflow.executors.base import AgentResponse
from github_agent_workflow.executors.registry import RoleRegistryExecutor
from github_agent_workflow.logging import configure_logging
from github_agent_workflow.tracker.memory import InMemoryTracker
from github_agent_workflow.workflow.definition import Instructions
from github_agent_workflow.workflow.engine import WorkflowEngine
from github_agent_workflow.workflow.lifecycle import LifecycleState
from github_agent_workflow.workflow.loader import load_definition
from github_agent_workflow.workflow.report import ReportStore


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the triage workflow in memory.")
    parser.add_argument("--owner", required=True, help="Repository owner")
    parser.add_argument("--repo", required=True, help="Repository name")
    parser.add_argument("--id", type=int, required=True, help="Issue number")
    parser.add_argument(
        "--ops-tasks", type=int, default=2, help="Number of ops child items the analyst creates"
    )
    parser.add_argument(
        "--definition",
        type=Path,
        default=Path(__file__).with_name("triage.yaml"),
        help="Workflow definition file",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    tracker = InMemoryTracker()
    work_item = tracker.add_item(body=f"# {args.owner}/{args.repo}#{args.id}")

    def analyst(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        for n in range(args.ops_tasks):
            tracker.create_child_item(work_item, "ops", f"# Ops task {n + 1}")
        return AgentResponse.succeeded(
            {"summary": f"{args.ops_tasks} ops task(s) split out"},
            requested_state=LifecycleState.READY,
        )

    def ops(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        return AgentResponse.succeeded(
            {"done": context["item"]}, requested_state=LifecycleState.DONE
        )

    def reviewer(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        return AgentResponse.succeeded({"comment": f"Looks fine: {context.get('summary')}"})

    def developer(instructions: Instructions, context: Mapping[str, object]) -> AgentResponse:
        return AgentResponse.succeeded(requested_state=LifecycleState.IN_PROGRESS)

    executor = RoleRegistryExecutor(
        {"analyst": analyst, "ops": ops, "reviewer": reviewer, "developer": developer}
    )
    engine = WorkflowEngine(
        load_definition(args.definition),
        tracker=tracker,
        executor=executor,
        fanout_max_workers=settings.fanout_max_workers,
        report_store=ReportStore(settings.runs_state_file),
    )

    report = engine.run(
        work_item,
        {"owner": args.owner, "repo": args.repo, "id": args.id},
        confirm=True,
    )

    print(report.render_markdown())
    print(f"Persisted to: {settings.runs_state_file}")
    return 0 if report.status == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
