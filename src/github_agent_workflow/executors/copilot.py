"""Executor that hands a step to the Copilot coding agent.

Invoking a role assigns the target issue (the fan-out item, or the run's work
item) to Copilot with the step's instructions attached. The agent then works
asynchronously; this executor only reports whether the hand-off happened.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

import requests

from github_agent_workflow.github.client import GitHubClient
from github_agent_workflow.workflow.context import Artifact
from github_agent_workflow.workflow.definition import Instructions, StepMode
from github_agent_workflow.workflow.lifecycle import LifecycleState

from .base import AgentResponse

logger = logging.getLogger(__name__)


def build_custom_instructions(role_id: str, instructions: Instructions) -> str:
    lines = [f"Role: {role_id}"]
    if instructions.mode == StepMode.COMMENT_ONLY:
        lines.append("Mode: comment only. Do not open a pull request; reply on the issue.")
    if instructions.text.strip():
        lines.extend(["", instructions.text.strip()])
    return "\n".join(lines)


class CopilotExecutor:
    def __init__(
        self,
        *,
        github: GitHubClient,
        copilot_assignee: str,
        base_branch: str = "",
        model: str = "",
        requested_state: LifecycleState | None = LifecycleState.IN_PROGRESS,
    ) -> None:
        self._github = github
        self._copilot_assignee = copilot_assignee
        self._base_branch = base_branch
        self._model = model
        self._requested_state = requested_state

    def _issue_number(self, context: Mapping[str, object]) -> int:
        target = context.get("item") or context.get("work_item")
        if not isinstance(target, str) or "#" not in target:
            raise ValueError(f"No GitHub issue to assign in context (got {target!r})")
        repo, _, number = target.rpartition("#")
        if repo and repo != self._github.repository:
            raise ValueError(f"Issue {target} is not in {self._github.repository}")
        return int(number)

    def invoke(
        self, role_id: str, instructions: Instructions, context: Mapping[str, object]
    ) -> AgentResponse:
        try:
            issue_number = self._issue_number(context)
        except ValueError as e:
            return AgentResponse.failed(str(e))

        try:
            assignees = self._github.assign_issue_with_agent_assignment(
                issue_number=issue_number,
                assignees=[self._copilot_assignee],
                agent_assignment={
                    "target_repo": self._github.repository,
                    "base_branch": self._base_branch,
                    "custom_instructions": build_custom_instructions(role_id, instructions),
                    "custom_agent": role_id,
                    "model": self._model,
                },
            )
        except requests.RequestException as e:
            logger.warning(
                "Copilot assignment failed",
                extra={"role": role_id, "issue_number": issue_number, "error": str(e)},
            )
            return AgentResponse.failed(f"Copilot assignment failed: {e}")

        if not any("copilot" in a.lower() for a in assignees):
            return AgentResponse.failed(
                f"Copilot assignment did not persist on issue #{issue_number} "
                f"(assignees: {assignees})"
            )

        issue_ref = f"{self._github.repository}#{issue_number}"
        requested = self._requested_state if instructions.mode == StepMode.IMPLEMENT else None
        return AgentResponse.succeeded(
            {"issue": issue_ref, "assignees": assignees},
            requested_state=requested,
            artifacts=(
                Artifact(kind="agent_assignment", ref=issue_ref, description=role_id),
            ),
        )
