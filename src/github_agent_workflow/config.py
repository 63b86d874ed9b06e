"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

The GitHub token uses a dedicated variable, `ORCHESTRATOR_GITHUB_TOKEN`, so it
does not collide with other tools reading `GITHUB_TOKEN`. It is only required
when something actually talks to GitHub.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the workflow engine.

    Environment variables:
    - ORCHESTRATOR_GITHUB_TOKEN    (required for GitHub-backed runs)
    - GITHUB_BASE_URL              (optional)
    - LOG_LEVEL                    (optional)
    - AGENT_STATE_PATH             (optional)
    - WORKFLOW_FANOUT_MAX_WORKERS  (optional)
    - WORKFLOW_PROJECT_ID          (optional)
    - WORKFLOW_STATUS_FIELD        (optional)
    - COPILOT_ASSIGNEE             (optional)

    Notes:
        Tests can override the env file via `EngineSettings(_env_file=path)`.
    """

    github_token: str = Field(
        default="",
        validation_alias="ORCHESTRATOR_GITHUB_TOKEN",
        description="GitHub token used for API authentication",
    )
    github_base_url: str = Field(
        default="https://api.github.com",
        validation_alias="GITHUB_BASE_URL",
        description="GitHub API base URL (useful for GitHub Enterprise)",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    agent_state_path: Path = Field(
        default=Path("agent_state"),
        validation_alias="AGENT_STATE_PATH",
        description="Directory where run reports are persisted",
    )

    fanout_max_workers: int = Field(
        default=4,
        ge=1,
        validation_alias="WORKFLOW_FANOUT_MAX_WORKERS",
        description="Maximum number of fan-out branches invoked concurrently",
    )

    project_id: str = Field(
        default="",
        validation_alias="WORKFLOW_PROJECT_ID",
        description=(
            "Node id of the GitHub Projects v2 board holding the lifecycle column. "
            "Without it, column moves fall back to issue comments."
        ),
    )
    status_field: str = Field(
        default="Status",
        validation_alias="WORKFLOW_STATUS_FIELD",
        description="Name of the single-select project field used as the lifecycle column",
    )

    copilot_assignee: str = Field(
        default="copilot-swe-agent[bot]",
        validation_alias="COPILOT_ASSIGNEE",
        description=(
            "GitHub login used for Copilot coding agent issue assignment. "
            "Override via COPILOT_ASSIGNEE if your org uses a different login."
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unsupported LOG_LEVEL: {value!r}")
        return level

    def require_github_token(self) -> str:
        """Return the token, or raise if GitHub access was requested without one."""

        if not self.github_token.strip():
            raise ValueError("ORCHESTRATOR_GITHUB_TOKEN is required")
        return self.github_token

    @property
    def runs_state_file(self) -> Path:
        """Path where run reports are persisted."""

        return self.agent_state_path / "runs.json"
