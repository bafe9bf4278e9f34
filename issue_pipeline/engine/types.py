"""Type definitions for the persisted task document.

These TypedDicts describe the JSON written to ``{tasks_dir}/{task_id}/state.json``
by the TaskStore. The domain dataclasses in ``issue_pipeline.models.domain``
convert to and from these shapes, which keeps the on-disk schema visible to the
type checker.

Example:
    A task that stopped at an approval gate::

        doc: TaskDocument = {
            "task_id": "ISSUE-42",
            "issue": {"number": 42, "title": "...", "body": "...", "url": "...", "labels": []},
            "branch_name": "fix/issue-42-login-fails-with-sso",
            "pr_number": None,
            "status": "awaiting_approval",
            "current_stage_index": 2,
            "stages": [...],
            ...
        }
"""

from typing import Any, NotRequired, TypedDict


class TodoDocument(TypedDict):
    """One todo item as persisted."""

    id: str
    content: str
    status: str
    priority: str
    created_at: str
    blocked_reason: NotRequired[str | None]
    completed_at: NotRequired[str | None]


class TodoStateDocument(TypedDict):
    todos: list[TodoDocument]


class StageDocument(TypedDict):
    """State for a single stage record.

    ``status`` is one of "pending", "in_progress", "completed" or "failed".
    Stored as a plain string for JSON serialization.
    """

    stage_name: str
    agent_name: str
    requires_approval: bool
    artifact_name: str
    status: str
    output: str
    artifact_path: str | None
    tokens_used: int
    duration_ms: int
    error: str | None
    started_at: NotRequired[str | None]
    completed_at: NotRequired[str | None]
    todo_state: NotRequired[TodoStateDocument | None]


class IssueRefDocument(TypedDict):
    number: int
    title: str
    body: str
    url: str
    labels: list[str]


class OverrideDocument(TypedDict):
    """Audit entry written whenever a human bypasses a halt."""

    actor: str
    reason: str
    from_status: str
    stage_index: int
    timestamp: str


class TaskDocument(TypedDict):
    """The full persisted task entity."""

    task_id: str
    issue: IssueRefDocument
    branch_name: str
    pr_number: int | None
    status: str
    current_stage_index: int
    stages: list[StageDocument]
    todo_state: TodoStateDocument | None
    overrides: list[OverrideDocument]
    recovery_attempts: dict[str, int]
    sub_issues: list[int]
    deployments: dict[str, dict[str, Any]]
    error: str | None
    created_at: str
    updated_at: str
