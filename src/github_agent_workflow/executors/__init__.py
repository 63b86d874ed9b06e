"""Executors: the opaque units of work a step is bound to."""

from github_agent_workflow.executors.base import AgentResponse, Executor
from github_agent_workflow.executors.registry import RoleRegistryExecutor

__all__ = ["AgentResponse", "Executor", "RoleRegistryExecutor"]
