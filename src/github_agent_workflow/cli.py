"""CLI entrypoint for the workflow engine.

Exit codes are CI-friendly:
0 completed, 1 unexpected error, 2 configuration error, 3 invalid definition,
4 run blocked, 5 run failed, 6 missing required inputs, 7 not confirmed.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from github_agent_workflow import __version__
from github_agent_workflow.config import EngineSettings
from github_agent_workflow.executors.base import AgentResponse, Executor
from github_agent_workflow.executors.copilot import CopilotExecutor
from github_agent_workflow.executors.registry import RoleRegistryExecutor
from github_agent_workflow.github.client import GitHubClient
from github_agent_workflow.logging import configure_logging
from github_agent_workflow.tracker.base import ItemRef, Tracker
from github_agent_workflow.tracker.github import GitHubTracker
from github_agent_workflow.tracker.memory import InMemoryTracker
from github_agent_workflow.workflow.definition import InputSpec, WorkflowDefinition
from github_agent_workflow.workflow.engine import WorkflowEngine
from github_agent_workflow.workflow.gate import MissingRequiredInputError, Plan, RunCancelled
from github_agent_workflow.workflow.loader import DefinitionError, load_definition
from github_agent_workflow.workflow.report import ReportStore
from github_agent_workflow.workflow.scheduler import RunStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_DEFINITION = 3
EXIT_BLOCKED = 4
EXIT_FAILED = 5
EXIT_MISSING_INPUT = 6
EXIT_CANCELLED = 7

_RUN_EXIT_CODES = {
    RunStatus.COMPLETED.value: EXIT_OK,
    RunStatus.BLOCKED.value: EXIT_BLOCKED,
    RunStatus.FAILED.value: EXIT_FAILED,
}


def _parse_input(value: str) -> tuple[str, object]:
    name, sep, raw = value.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"Expected NAME=VALUE, got {value!r}")
    try:
        parsed: object = json.loads(raw)
    except json.JSONDecodeError:
        parsed = raw
    return name.strip(), parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-workflow",
        description="Run declarative agent workflows against GitHub work items",
    )
    parser.add_argument(
        "--version", action="version", version=f"github-agent-workflow {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Load and validate a workflow definition")
    validate.add_argument("definition", type=Path, help="Definition file (.yaml, .json or .md)")

    plan = subparsers.add_parser("plan", help="Show the plan without running anything")
    plan.add_argument("definition", type=Path, help="Definition file (.yaml, .json or .md)")
    plan.add_argument(
        "--input",
        dest="inputs",
        action="append",
        type=_parse_input,
        default=[],
        metavar="NAME=VALUE",
        help="Bind a workflow input (repeatable; JSON values are decoded)",
    )

    run = subparsers.add_parser("run", help="Present the plan, confirm, then run it")
    run.add_argument("definition", type=Path, help="Definition file (.yaml, .json or .md)")
    run.add_argument(
        "--input",
        dest="inputs",
        action="append",
        type=_parse_input,
        default=[],
        metavar="NAME=VALUE",
        help="Bind a workflow input (repeatable; JSON values are decoded)",
    )
    run.add_argument(
        "--yes",
        action="store_true",
        help="Confirm the plan without prompting",
    )
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Use an in-memory tracker and executors that succeed without doing anything",
    )
    run.add_argument(
        "--repo",
        "--repository",
        dest="repository",
        default=None,
        help="Repository holding the work item, in the form 'owner/repo'",
    )
    run.add_argument(
        "--issue-number",
        type=int,
        default=None,
        help="Issue number of the work item the run is about",
    )
    run.add_argument(
        "--base-branch",
        default="",
        help="Base branch for Copilot work (defaults to repository default branch)",
    )
    run.add_argument(
        "--model",
        default="",
        help="Optional model identifier for Copilot coding agent (may be ignored)",
    )
    run.add_argument(
        "--post-summary",
        action="store_true",
        help="Post the run summary as a comment on the work item",
    )

    runs = subparsers.add_parser("runs", help="List persisted run reports")
    runs.add_argument("--run-id", default=None, help="Show one report as markdown")

    return parser


def _interactive() -> bool:
    return sys.stdin.isatty()


def _confirm_interactively(plan: Plan) -> bool:
    if not _interactive():
        return False
    answer = input("Proceed with this plan? [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def _prompt_optional(spec: InputSpec) -> object | None:
    if not _interactive():
        return None
    suffix = f" ({spec.description})" if spec.description else ""
    answer = input(f"Value for optional input {spec.name!r}{suffix} (blank to skip): ")
    return answer.strip() or None


def _dry_run_executor(definition: WorkflowDefinition) -> RoleRegistryExecutor:
    executor = RoleRegistryExecutor()
    for role in sorted({step.role for step in definition.steps}):
        executor.register(role, lambda instructions, context: AgentResponse.succeeded())
    return executor


def _run(args: argparse.Namespace, settings: EngineSettings) -> int:
    definition = load_definition(args.definition)
    inputs = dict(args.inputs)

    github: GitHubClient | None = None
    tracker: Tracker
    executor: Executor
    if args.dry_run:
        memory = InMemoryTracker()
        work_item = memory.add_item(body=f"Dry run of {definition.id}")
        tracker, executor = memory, _dry_run_executor(definition)
    else:
        if not args.repository or args.issue_number is None:
            print("--repo and --issue-number are required unless --dry-run", file=sys.stderr)
            return EXIT_CONFIG
        try:
            token = settings.require_github_token()
        except ValueError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIG
        github = GitHubClient(
            token=token, repository=args.repository, base_url=settings.github_base_url
        )
        github_tracker = GitHubTracker(
            github=github, project_id=settings.project_id, status_field=settings.status_field
        )
        work_item = github_tracker.ref_for(args.issue_number)
        tracker = github_tracker
        executor = CopilotExecutor(
            github=github,
            copilot_assignee=settings.copilot_assignee,
            base_branch=args.base_branch,
            model=args.model,
        )

    try:
        engine = WorkflowEngine(
            definition,
            tracker=tracker,
            executor=executor,
            fanout_max_workers=settings.fanout_max_workers,
            prompt=_prompt_optional,
            report_store=ReportStore(settings.runs_state_file),
            post_summary=args.post_summary,
        )
        print(engine.plan(inputs).render())
        print()

        def confirm(plan: Plan) -> bool:
            return True if args.yes else _confirm_interactively(plan)

        report = engine.run(work_item, inputs, confirm=confirm)
    finally:
        if github is not None:
            github.close()

    print(report.render_markdown())
    return _RUN_EXIT_CODES.get(report.status, EXIT_ERROR)


def _show_runs(args: argparse.Namespace, settings: EngineSettings) -> int:
    store = ReportStore(settings.runs_state_file)
    if args.run_id:
        report = store.get(args.run_id)
        if report is None:
            print(f"No run {args.run_id!r} in {settings.runs_state_file}", file=sys.stderr)
            return EXIT_ERROR
        print(report.render_markdown())
        return EXIT_OK

    reports = store.list()
    if not reports:
        print(f"No runs recorded in {settings.runs_state_file}")
    for report in reports:
        print(f"{report.run_id}  {report.workflow_id}  {report.work_item}  {report.status}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            definition = load_definition(args.definition)
            print(f"OK: {definition.id} ({len(definition.steps)} steps)")
            return EXIT_OK

        if args.command == "plan":
            definition = load_definition(args.definition)
            engine = WorkflowEngine(
                definition, tracker=InMemoryTracker(), executor=RoleRegistryExecutor()
            )
            print(engine.plan(dict(args.inputs)).render())
            return EXIT_OK

        if args.command == "run":
            return _run(args, settings)

        if args.command == "runs":
            return _show_runs(args, settings)

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_CONFIG

    except DefinitionError as e:
        logger.warning(str(e), extra={"step_id": e.step_id, "reference": e.reference})
        print(f"Invalid definition: {e}", file=sys.stderr)
        return EXIT_DEFINITION

    except MissingRequiredInputError as e:
        print(str(e), file=sys.stderr)
        return EXIT_MISSING_INPUT

    except RunCancelled as e:
        print(str(e), file=sys.stderr)
        return EXIT_CANCELLED

    except Exception:
        logger.exception("Command failed")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
