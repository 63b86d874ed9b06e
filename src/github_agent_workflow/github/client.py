"""GitHub API client wrapper.

This wraps PyGithub and the REST/GraphQL endpoints PyGithub does not cover
(sub-issues, Projects v2 status fields, agent assignment) so tracker and
executor code never build requests themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse, urlunparse

import requests
from github import Auth, Github
from github.Repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IssueDetails:
    """Minimal issue metadata fetched from GitHub."""

    repository: str
    number: int
    id: int
    node_id: str
    title: str
    status: str
    url: str | None
    labels: list[str]
    assignees: list[str]


@dataclass(frozen=True, slots=True)
class ProjectStatusField:
    field_id: str
    options: dict[str, str]


class GitHubClient:
    """Small wrapper around PyGithub plus raw REST/GraphQL calls."""

    def __init__(
        self,
        *,
        token: str,
        repository: str,
        base_url: str = "https://api.github.com",
        repo: Repository | None = None,
        github_api: Github | None = None,
    ) -> None:
        if not token:
            raise ValueError("GitHub token is required")
        if not repository:
            raise ValueError("GitHub repository is required")

        self._repository_name = repository.strip().strip("/")
        self._rest_base_url = base_url.rstrip("/")
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "github-agent-workflow",
            }
        )

        if repo is not None:
            self._repo = repo
            self._github = None
            logger.debug("Using injected Repository instance")
            return

        auth = Auth.Token(token)
        self._github = github_api or Github(auth=auth, base_url=base_url)

        self._repo = self._github.get_repo(self._repository_name)
        logger.info(
            "Authenticated with GitHub and connected to repository",
            extra={"repo": self._repository_name},
        )

    @property
    def repository(self) -> str:
        """Return the configured repository name ("owner/repo")."""

        return self._repository_name

    def _issues_url(self, *, issue_number: int, suffix: str = "") -> str:
        if issue_number <= 0:
            raise ValueError("issue_number must be a positive integer")
        if suffix and not suffix.startswith("/"):
            suffix = "/" + suffix
        return f"{self._rest_base_url}/repos/{self._repository_name}/issues/{issue_number}{suffix}"

    def _search_url(self, *, path: str) -> str:
        return f"{self._rest_base_url}/{path.lstrip('/')}"

    def _graphql_url(self) -> str:
        """Derive the GraphQL endpoint from the configured REST base URL.

        GitHub.com exposes REST at https://api.github.com and GraphQL at
        https://api.github.com/graphql; GitHub Enterprise uses /api/v3 and
        /api/graphql.
        """

        parsed = urlparse(self._rest_base_url)
        path = parsed.path.rstrip("/")

        if path.endswith("/api/v3"):
            path = path[: -len("/api/v3")] + "/api/graphql"
        elif path.endswith("/api"):
            path = path[: -len("/api")] + "/api/graphql"
        elif path == "":
            path = "/graphql"
        else:
            path = path + "/graphql"

        return urlunparse(parsed._replace(path=path))

    def _graphql(self, *, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        url = self._graphql_url()
        resp = self._session.post(url, json={"query": query, "variables": variables}, timeout=30)
        resp.raise_for_status()
        payload: dict[str, Any] = resp.json()
        errors = payload.get("errors")
        if errors:
            messages = []
            if isinstance(errors, list):
                for item in errors:
                    if isinstance(item, dict):
                        msg = item.get("message")
                        if isinstance(msg, str):
                            messages.append(msg)
            message = "; ".join(messages) if messages else "Unknown GraphQL error"
            raise RuntimeError(f"GitHub GraphQL error: {message}")
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def _get_paginated_json_list(self, url: str) -> list[dict[str, Any]] | None:
        """Fetch a REST list endpoint, following basic pagination.

        Returns None when the endpoint does not exist (HTTP 404), which callers
        use to detect unavailable features.
        """

        items: list[dict[str, Any]] = []
        per_page = 100
        for page in range(1, 11):
            resp = self._session.get(
                url,
                params={"per_page": per_page, "page": page},
                timeout=30,
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            payload = resp.json()
            if not isinstance(payload, list):
                break

            items.extend(p for p in payload if isinstance(p, dict))
            if len(payload) < per_page:
                break
        return items

    @staticmethod
    def _parse_logins(raw: object) -> list[str]:
        if not isinstance(raw, list):
            return []
        logins: list[str] = []
        for entry in raw:
            if isinstance(entry, dict):
                login = entry.get("login")
                if isinstance(login, str) and login.strip():
                    logins.append(login)
        return logins

    @staticmethod
    def _parse_label_names(raw: object) -> list[str]:
        if not isinstance(raw, list):
            return []
        names: list[str] = []
        for entry in raw:
            if isinstance(entry, dict):
                name = entry.get("name")
                if isinstance(name, str) and name.strip():
                    names.append(name)
            elif isinstance(entry, str) and entry.strip():
                names.append(entry)
        return names

    def _parse_issue_json(self, data: dict[str, Any]) -> IssueDetails:
        number = data.get("number")
        if not isinstance(number, int) or number <= 0:
            raise ValueError("Invalid issue response: missing number")

        rest_id = data.get("id")
        if not isinstance(rest_id, int):
            raise ValueError("Invalid issue response: missing id")

        node_id = data.get("node_id")
        if not isinstance(node_id, str):
            node_id = ""

        title = data.get("title")
        if not isinstance(title, str):
            title = ""

        state = data.get("state")
        if not isinstance(state, str):
            state = ""

        url = data.get("html_url")
        if not isinstance(url, str) or not url.strip():
            url = None

        return IssueDetails(
            repository=self._repository_name,
            number=number,
            id=rest_id,
            node_id=node_id,
            title=title,
            status=state,
            url=url,
            labels=self._parse_label_names(data.get("labels")),
            assignees=self._parse_logins(data.get("assignees")),
        )

    def create_issue(self, *, title: str, body: str, labels: list[str] | None) -> IssueDetails:
        if not title.strip():
            raise ValueError("Issue title is required")

        issue = self._repo.create_issue(title=title, body=body, labels=labels or [])
        logger.info(
            "Issue created",
            extra={"repo": self._repository_name, "issue_number": issue.number},
        )
        return IssueDetails(
            repository=self._repository_name,
            number=issue.number,
            id=issue.id,
            node_id=getattr(issue, "node_id", "") or "",
            title=issue.title,
            status=getattr(issue, "state", "open"),
            url=getattr(issue, "html_url", None),
            labels=[label.name for label in getattr(issue, "labels", [])],
            assignees=[],
        )

    def get_issue(self, *, issue_number: int) -> IssueDetails:
        """Fetch an issue by number via REST."""

        resp = self._session.get(self._issues_url(issue_number=issue_number), timeout=30)
        resp.raise_for_status()
        return self._parse_issue_json(resp.json())

    def add_sub_issue(self, *, parent_number: int, child_id: int) -> bool:
        """Link an existing issue as a sub-issue of `parent_number`.

        Returns:
            False when the sub-issues API is not available on this deployment.
        """

        url = self._issues_url(issue_number=parent_number, suffix="sub_issues")
        resp = self._session.post(url, json={"sub_issue_id": child_id}, timeout=30)
        if resp.status_code in {404, 410}:
            logger.info(
                "Sub-issues API unavailable",
                extra={"repo": self._repository_name, "issue_number": parent_number},
            )
            return False
        resp.raise_for_status()
        return True

    def list_sub_issues(self, *, parent_number: int) -> list[IssueDetails] | None:
        """Return sub-issues of an issue, or None if the API is unavailable."""

        url = self._issues_url(issue_number=parent_number, suffix="sub_issues")
        items = self._get_paginated_json_list(url)
        if items is None:
            return None
        return [self._parse_issue_json(item) for item in items]

    def find_issue_numbers_by_body_marker(self, *, marker: str) -> list[int]:
        """Search for issues in this repo whose body contains a marker string."""

        if not marker.strip():
            raise ValueError("marker must be non-empty")

        query = f'repo:{self._repository_name} is:issue in:body "{marker}"'
        resp = self._session.get(
            self._search_url(path="search/issues"), params={"q": query}, timeout=30
        )
        resp.raise_for_status()

        payload: dict[str, Any] = resp.json()
        items = payload.get("items")
        if not isinstance(items, list):
            return []

        numbers: list[int] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            num = item.get("number")
            if isinstance(num, int) and num > 0:
                numbers.append(num)
        return sorted(set(numbers))

    def create_issue_comment(self, *, issue_number: int, body: str) -> None:
        if not body.strip():
            raise ValueError("Comment body is required")
        url = self._issues_url(issue_number=issue_number, suffix="comments")
        resp = self._session.post(url, json={"body": body}, timeout=30)
        resp.raise_for_status()
        logger.info(
            "Issue comment created",
            extra={"repo": self._repository_name, "issue_number": issue_number},
        )

    def assign_issue_with_agent_assignment(
        self,
        *,
        issue_number: int,
        assignees: list[str],
        agent_assignment: dict[str, str] | None,
    ) -> list[str]:
        """Assign an issue and attach optional Copilot agent assignment metadata."""

        normalized = [a.strip() for a in assignees if a.strip()]
        if not normalized:
            raise ValueError("At least one assignee is required")

        payload: dict[str, Any] = {"assignees": normalized}
        if agent_assignment:
            payload["agent_assignment"] = {k: v for k, v in agent_assignment.items() if v.strip()}

        url = self._issues_url(issue_number=issue_number, suffix="assignees")
        resp = self._session.post(url, json=payload, timeout=30)
        resp.raise_for_status()

        returned = self._parse_logins(resp.json().get("assignees"))
        logger.info(
            "Issue assigned with agent metadata",
            extra={
                "repo": self._repository_name,
                "issue_number": issue_number,
                "requested_assignees": normalized,
                "returned_assignees": returned,
            },
        )
        return returned

    def get_project_status_field(self, *, project_id: str, field_name: str) -> ProjectStatusField:
        query = """
        query($project: ID!, $field: String!) {
          node(id: $project) {
            ... on ProjectV2 {
              field(name: $field) {
                ... on ProjectV2SingleSelectField { id options { id name } }
              }
            }
          }
        }
        """
        data = self._graphql(query=query, variables={"project": project_id, "field": field_name})
        node = data.get("node")
        field = node.get("field") if isinstance(node, dict) else None
        if not isinstance(field, dict) or not isinstance(field.get("id"), str):
            raise ValueError(f"Project has no single-select field named {field_name!r}")

        options: dict[str, str] = {}
        for option in field.get("options") or []:
            if isinstance(option, dict):
                name, option_id = option.get("name"), option.get("id")
                if isinstance(name, str) and isinstance(option_id, str):
                    options[name] = option_id
        return ProjectStatusField(field_id=field["id"], options=options)

    def get_project_item_status(
        self, *, issue_node_id: str, project_id: str, field_name: str
    ) -> tuple[str | None, str | None]:
        """Return (project item id, status option name) for an issue on a project."""

        query = """
        query($issue: ID!, $field: String!) {
          node(id: $issue) {
            ... on Issue {
              projectItems(first: 50) {
                nodes {
                  id
                  project { id }
                  fieldValueByName(name: $field) {
                    ... on ProjectV2ItemFieldSingleSelectValue { name }
                  }
                }
              }
            }
          }
        }
        """
        data = self._graphql(query=query, variables={"issue": issue_node_id, "field": field_name})
        node = data.get("node")
        items = node.get("projectItems") if isinstance(node, dict) else None
        nodes = items.get("nodes") if isinstance(items, dict) else None
        for item in nodes or []:
            if not isinstance(item, dict):
                continue
            project = item.get("project")
            if not isinstance(project, dict) or project.get("id") != project_id:
                continue
            value = item.get("fieldValueByName")
            name = value.get("name") if isinstance(value, dict) else None
            return item.get("id"), name if isinstance(name, str) else None
        return None, None

    def add_issue_to_project(self, *, project_id: str, issue_node_id: str) -> str:
        query = """
        mutation($project: ID!, $content: ID!) {
          addProjectV2ItemById(input: {projectId: $project, contentId: $content}) {
            item { id }
          }
        }
        """
        data = self._graphql(
            query=query, variables={"project": project_id, "content": issue_node_id}
        )
        result = data.get("addProjectV2ItemById")
        item = result.get("item") if isinstance(result, dict) else None
        item_id = item.get("id") if isinstance(item, dict) else None
        if not isinstance(item_id, str):
            raise ValueError("Unexpected addProjectV2ItemById response: missing item id")
        return item_id

    def set_project_item_status(
        self, *, project_id: str, item_id: str, field_id: str, option_id: str
    ) -> None:
        query = """
        mutation($project: ID!, $item: ID!, $field: ID!, $option: String!) {
          updateProjectV2ItemFieldValue(
            input: {
              projectId: $project
              itemId: $item
              fieldId: $field
              value: {singleSelectOptionId: $option}
            }
          ) { projectV2Item { id } }
        }
        """
        self._graphql(
            query=query,
            variables={
                "project": project_id,
                "item": item_id,
                "field": field_id,
                "option": option_id,
            },
        )
        logger.info(
            "Project item status updated",
            extra={"repo": self._repository_name, "project_item": item_id},
        )

    def close(self) -> None:
        self._session.close()
        if self._github is not None:
            self._github.close()
