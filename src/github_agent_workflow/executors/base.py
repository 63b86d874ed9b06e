"""Executor interface: the opaque "agent" a step is bound to."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from github_agent_workflow.workflow.context import Artifact, StepStatus
from github_agent_workflow.workflow.definition import Instructions
from github_agent_workflow.workflow.lifecycle import LifecycleState


@dataclass(frozen=True, slots=True)
class AgentResponse:
    """What an executor reports back for one invocation.

    `requested_state` is only a suggestion; the state tracker decides whether it
    happens.
    """

    status: StepStatus
    outputs: dict[str, object] = field(default_factory=dict)
    requested_state: LifecycleState | None = None
    reason: str = ""
    artifacts: tuple[Artifact, ...] = ()

    @classmethod
    def succeeded(
        cls,
        outputs: dict[str, object] | None = None,
        *,
        requested_state: LifecycleState | None = None,
        artifacts: tuple[Artifact, ...] = (),
    ) -> AgentResponse:
        return cls(
            status=StepStatus.SUCCEEDED,
            outputs=outputs or {},
            requested_state=requested_state,
            artifacts=artifacts,
        )

    @classmethod
    def failed(cls, reason: str) -> AgentResponse:
        return cls(status=StepStatus.FAILED, reason=reason)

    @classmethod
    def blocked(cls, reason: str) -> AgentResponse:
        return cls(status=StepStatus.BLOCKED, reason=reason)


class Executor(Protocol):
    """Performs the work of a role. The engine never looks inside `instructions`."""

    def invoke(
        self, role_id: str, instructions: Instructions, context: Mapping[str, object]
    ) -> AgentResponse: ...
