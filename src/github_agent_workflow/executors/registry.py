"""Executor that maps role ids to plain Python callables."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from github_agent_workflow.workflow.definition import Instructions

from .base import AgentResponse

logger = logging.getLogger(__name__)

RoleHandler = Callable[[Instructions, Mapping[str, object]], AgentResponse]


class RoleRegistryExecutor:
    """Dispatch invocations to handlers registered per role.

    Unknown roles are reported as a failed invocation rather than raised, so a
    typo in one step shows up in the run report next to the other steps.
    """

    def __init__(self, handlers: Mapping[str, RoleHandler] | None = None) -> None:
        self._handlers: dict[str, RoleHandler] = dict(handlers or {})

    def register(self, role_id: str, handler: RoleHandler) -> None:
        if not role_id.strip():
            raise ValueError("role_id is required")
        self._handlers[role_id] = handler

    @property
    def roles(self) -> list[str]:
        return sorted(self._handlers)

    def invoke(
        self, role_id: str, instructions: Instructions, context: Mapping[str, object]
    ) -> AgentResponse:
        handler = self._handlers.get(role_id)
        if handler is None:
            logger.warning("No handler registered for role", extra={"role": role_id})
            return AgentResponse.failed(f"No executor registered for role {role_id!r}")
        return handler(instructions, context)
