"""Tracker backed by GitHub issues.

- child items are issues labelled with their category and linked as sub-issues
  (falling back to a hidden parent marker in the body)
- the lifecycle column is the single-select status field of a Projects v2 board
- annotations are issue comments

Without a configured project the tracker cannot move columns and raises
:class:`UnsupportedOperationError`, which the state tracker turns into a comment.
"""

from __future__ import annotations

import logging

from github_agent_workflow.github.client import GitHubClient, IssueDetails, ProjectStatusField
from github_agent_workflow.labels import category_from_labels, category_label, parent_marker
from github_agent_workflow.tracker.base import ItemRef, UnsupportedOperationError
from github_agent_workflow.workflow.lifecycle import LifecycleState

logger = logging.getLogger(__name__)


def _title_from_body(body: str, *, fallback: str) -> str:
    """Use the first non-empty line of the body as the title (markdown heading allowed)."""

    for line in body.splitlines():
        title = line.strip().lstrip("#").strip()
        if title:
            return title[:200]
    return fallback


class GitHubTracker:
    def __init__(
        self,
        *,
        github: GitHubClient,
        project_id: str | None = None,
        status_field: str = "Status",
    ) -> None:
        self._github = github
        self._project_id = project_id.strip() if project_id and project_id.strip() else None
        self._status_field_name = status_field
        self._status_field: ProjectStatusField | None = None

    def ref_for(self, issue_number: int) -> ItemRef:
        return ItemRef(id=f"{self._github.repository}#{issue_number}")

    def _number(self, ref: ItemRef) -> int:
        repo, _, number = ref.id.rpartition("#")
        if repo and repo != self._github.repository:
            raise ValueError(f"Item {ref.id} does not belong to {self._github.repository}")
        try:
            return int(number)
        except ValueError as e:
            raise ValueError(f"Not a GitHub issue reference: {ref.id!r}") from e

    def _to_ref(self, issue: IssueDetails) -> ItemRef:
        return ItemRef(
            id=f"{issue.repository}#{issue.number}",
            url=issue.url,
            category=category_from_labels(issue.labels),
        )

    def create_child_item(self, parent: ItemRef, category: str, body: str) -> ItemRef:
        parent_number = self._number(parent)
        marker = f"<!-- {parent_marker(parent.id)} -->"
        full_body = body if marker in body else body.rstrip() + "\n\n---\n\n" + marker + "\n"

        issue = self._github.create_issue(
            title=_title_from_body(body, fallback=f"{category} work for {parent.id}"),
            body=full_body,
            labels=[category_label(category)],
        )
        linked = self._github.add_sub_issue(parent_number=parent_number, child_id=issue.id)
        logger.info(
            "Child item created",
            extra={
                "parent": parent.id,
                "issue_number": issue.number,
                "category": category,
                "sub_issue_linked": linked,
            },
        )
        return ItemRef(id=f"{issue.repository}#{issue.number}", url=issue.url, category=category)

    def list_children(self, parent: ItemRef, category: str | None = None) -> list[ItemRef]:
        parent_number = self._number(parent)
        issues = self._github.list_sub_issues(parent_number=parent_number)
        if issues is None:
            numbers = self._github.find_issue_numbers_by_body_marker(
                marker=parent_marker(parent.id)
            )
            issues = [self._github.get_issue(issue_number=n) for n in numbers]

        refs = [self._to_ref(issue) for issue in issues]
        if category is not None:
            refs = [r for r in refs if r.category == category]
        return refs

    def get_lifecycle_state(self, ref: ItemRef) -> LifecycleState:
        issue = self._github.get_issue(issue_number=self._number(ref))
        if self._project_id is not None and issue.node_id:
            _, column = self._github.get_project_item_status(
                issue_node_id=issue.node_id,
                project_id=self._project_id,
                field_name=self._status_field_name,
            )
            if column:
                try:
                    return LifecycleState.parse(column)
                except ValueError:
                    logger.warning(
                        "Unknown project column; ignoring", extra={"item": ref.id, "column": column}
                    )
        if issue.status == "closed":
            return LifecycleState.DONE
        return LifecycleState.BACKLOG

    def _status_options(self) -> ProjectStatusField:
        assert self._project_id is not None
        if self._status_field is None:
            self._status_field = self._github.get_project_status_field(
                project_id=self._project_id, field_name=self._status_field_name
            )
        return self._status_field

    def set_lifecycle_state(self, ref: ItemRef, state: LifecycleState) -> None:
        if self._project_id is None:
            raise UnsupportedOperationError("set_lifecycle_state", "no project board configured")

        field = self._status_options()
        option_id = None
        for name, candidate in field.options.items():
            try:
                if LifecycleState.parse(name) == state:
                    option_id = candidate
                    break
            except ValueError:
                continue
        if option_id is None:
            raise UnsupportedOperationError(
                "set_lifecycle_state", f"project board has no {state.column!r} column"
            )

        issue = self._github.get_issue(issue_number=self._number(ref))
        item_id, _ = self._github.get_project_item_status(
            issue_node_id=issue.node_id,
            project_id=self._project_id,
            field_name=self._status_field_name,
        )
        if item_id is None:
            item_id = self._github.add_issue_to_project(
                project_id=self._project_id, issue_node_id=issue.node_id
            )
        self._github.set_project_item_status(
            project_id=self._project_id,
            item_id=item_id,
            field_id=field.field_id,
            option_id=option_id,
        )

    def append_annotation(self, ref: ItemRef, text: str) -> None:
        self._github.create_issue_comment(issue_number=self._number(ref), body=text)
