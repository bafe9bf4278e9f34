"""
Domain models for the issue pipeline.

This module contains the dataclasses and enums for the core entities: the
provider-neutral issue, the persisted Task with its StageRecords, the todo
state carried between stages, and the structured decomposition output.

Tasks and stage records serialize to the TypedDict shapes in
``issue_pipeline.engine.types``. Timestamps are ISO 8601 strings so the
persisted document is plain JSON.

Example:
    Creating a task for an issue::

        task = Task.create(
            IssueRef(number=42, title="Login fails", body="...", url="...", labels=["bug"]),
            stages=[StageRecord.pending("intake", "intake", False, "intake-analysis.md")],
        )
        task.task_id       # "ISSUE-42"
        task.branch_name   # "fix/issue-42-login-fails"
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from issue_pipeline.engine.types import (
    IssueRefDocument,
    OverrideDocument,
    StageDocument,
    TaskDocument,
    TodoDocument,
    TodoStateDocument,
)

BRANCH_SLUG_MAX_LENGTH = 50


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()


def make_task_id(issue_number: int) -> str:
    return f"ISSUE-{issue_number}"


def make_branch_name(issue_number: int, title: str) -> str:
    """Build the working branch name for an issue.

    The slug is the lowercased title with every run of non-alphanumeric
    characters collapsed to a single dash, cut to 50 characters.

    Example:
        >>> make_branch_name(7, "Fix: crash on /login!")
        'fix/issue-7-fix-crash-on-login'
    """
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:BRANCH_SLUG_MAX_LENGTH].rstrip("-")
    return f"fix/issue-{issue_number}-{slug}" if slug else f"fix/issue-{issue_number}"


class IssueState(str, Enum):
    """Normalized issue state across providers."""

    OPEN = "open"
    CLOSED = "closed"


class TaskStatus(str, Enum):
    """Pipeline status of a task.

    State machine::

        pending -> in_progress -> completed | failed | awaiting_approval
                                  | awaiting_closure_approval | decomposed
        awaiting_approval | awaiting_closure_approval -> pending   (approve/override)
        awaiting_closure_approval -> completed                    (approve_closure)
        decomposed -> completed                                   (children done)

    ``failed`` and ``completed`` are terminal unless an operator retries
    explicitly.
    """

    PENDING = "pending"
    """Ready for the next stage to run."""

    IN_PROGRESS = "in_progress"
    """A stage is executing right now."""

    AWAITING_APPROVAL = "awaiting_approval"
    """A stage that requires approval finished; a human must approve."""

    AWAITING_CLOSURE_APPROVAL = "awaiting_closure_approval"
    """An agent recommended halting the pipeline; a human must confirm or override."""

    COMPLETED = "completed"
    """Every stage finished (or closure was approved)."""

    FAILED = "failed"
    """A stage failed and recovery did not fix it."""

    DECOMPOSED = "decomposed"
    """Split into sub-issues; completes once every child is completed."""

    @property
    def is_runnable(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)

    @property
    def is_awaiting_human(self) -> bool:
        return self in (TaskStatus.AWAITING_APPROVAL, TaskStatus.AWAITING_CLOSURE_APPROVAL)


class StageStatus(str, Enum):
    """Execution status of one stage record."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class TodoPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Version-control entities
# =============================================================================


@dataclass
class Issue:
    """Represents an issue from the version-control collaborator.

    This is the normalized representation used internally, converted from the
    provider's own objects.
    """

    id: int
    """Provider database id. Prefer ``number`` for stable references."""

    number: int
    """Human-readable issue number (e.g., #42)."""

    title: str
    body: str
    state: IssueState
    labels: list[str]
    url: str
    author: str = "unknown"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Comment:
    """Represents a comment on an issue."""

    id: int
    body: str
    author: str
    created_at: datetime | None = None


@dataclass
class PullRequest:
    """Represents a pull request opened for a task branch."""

    id: int
    number: int
    title: str
    head: str
    base: str
    url: str
    state: str = "open"


@dataclass
class IssueRef:
    """The issue fields a task carries so stages never re-fetch them."""

    number: int
    title: str
    body: str
    url: str
    labels: list[str] = field(default_factory=list)

    @classmethod
    def from_issue(cls, issue: Issue) -> IssueRef:
        return cls(
            number=issue.number,
            title=issue.title,
            body=issue.body,
            url=issue.url,
            labels=list(issue.labels),
        )

    def to_dict(self) -> IssueRefDocument:
        return {
            "number": self.number,
            "title": self.title,
            "body": self.body,
            "url": self.url,
            "labels": list(self.labels),
        }

    @classmethod
    def from_dict(cls, data: IssueRefDocument) -> IssueRef:
        return cls(
            number=data["number"],
            title=data["title"],
            body=data.get("body", ""),
            url=data.get("url", ""),
            labels=list(data.get("labels", [])),
        )


# =============================================================================
# Todo state
# =============================================================================


@dataclass
class TodoItem:
    """One unit of outstanding sub-work tracked by an agent."""

    id: str
    content: str
    status: TodoStatus = TodoStatus.PENDING
    priority: TodoPriority = TodoPriority.MEDIUM
    created_at: str = field(default_factory=utc_now)
    blocked_reason: str | None = None
    """Why the item cannot proceed. Only set while status is BLOCKED."""

    completed_at: str | None = None

    def to_dict(self) -> TodoDocument:
        return {
            "id": self.id,
            "content": self.content,
            "status": self.status.value,
            "priority": self.priority.value,
            "created_at": self.created_at,
            "blocked_reason": self.blocked_reason,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: TodoDocument) -> TodoItem:
        return cls(
            id=data["id"],
            content=data["content"],
            status=TodoStatus(data.get("status", "pending")),
            priority=TodoPriority(data.get("priority", "medium")),
            created_at=data.get("created_at") or utc_now(),
            blocked_reason=data.get("blocked_reason"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class TodoState:
    """Ordered todo list serialized onto stage records and the task."""

    todos: list[TodoItem] = field(default_factory=list)

    def to_dict(self) -> TodoStateDocument:
        return {"todos": [todo.to_dict() for todo in self.todos]}

    @classmethod
    def from_dict(cls, data: TodoStateDocument | None) -> TodoState | None:
        if data is None:
            return None
        return cls(todos=[TodoItem.from_dict(item) for item in data.get("todos", [])])


# =============================================================================
# Task and stage records
# =============================================================================


@dataclass
class StageRecord:
    """Progress of one catalog stage for one task.

    Created for every catalog entry when the task starts, mutated in place as
    the stage runs, never deleted.
    """

    stage_name: str
    agent_name: str
    requires_approval: bool
    artifact_name: str
    status: StageStatus = StageStatus.PENDING
    output: str = ""
    """Raw agent output. Passed verbatim to the following stage."""

    artifact_path: str | None = None
    tokens_used: int = 0
    duration_ms: int = 0
    error: str | None = None
    """Raw error message retained when the stage failed."""

    started_at: str | None = None
    completed_at: str | None = None
    todo_state: TodoState | None = None

    @classmethod
    def pending(
        cls,
        stage_name: str,
        agent_name: str,
        requires_approval: bool,
        artifact_name: str,
    ) -> StageRecord:
        return cls(
            stage_name=stage_name,
            agent_name=agent_name,
            requires_approval=requires_approval,
            artifact_name=artifact_name,
        )

    def to_dict(self) -> StageDocument:
        return {
            "stage_name": self.stage_name,
            "agent_name": self.agent_name,
            "requires_approval": self.requires_approval,
            "artifact_name": self.artifact_name,
            "status": self.status.value,
            "output": self.output,
            "artifact_path": self.artifact_path,
            "tokens_used": self.tokens_used,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "todo_state": self.todo_state.to_dict() if self.todo_state else None,
        }

    @classmethod
    def from_dict(cls, data: StageDocument) -> StageRecord:
        return cls(
            stage_name=data["stage_name"],
            agent_name=data["agent_name"],
            requires_approval=data.get("requires_approval", False),
            artifact_name=data["artifact_name"],
            status=StageStatus(data.get("status", "pending")),
            output=data.get("output", ""),
            artifact_path=data.get("artifact_path"),
            tokens_used=data.get("tokens_used", 0),
            duration_ms=data.get("duration_ms", 0),
            error=data.get("error"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            todo_state=TodoState.from_dict(data.get("todo_state")),
        )


@dataclass
class OverrideRecord:
    """Audit entry recording that a human bypassed a halt."""

    actor: str
    reason: str
    from_status: str
    stage_index: int
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> OverrideDocument:
        return {
            "actor": self.actor,
            "reason": self.reason,
            "from_status": self.from_status,
            "stage_index": self.stage_index,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: OverrideDocument) -> OverrideRecord:
        return cls(**data)


@dataclass
class Task:
    """One issue moving through the stage pipeline.

    ``current_stage_index`` only increases. It points at the next stage to
    run, so it equals ``len(stages)`` once every stage is done.
    """

    task_id: str
    issue: IssueRef
    branch_name: str
    stages: list[StageRecord]
    status: TaskStatus = TaskStatus.PENDING
    current_stage_index: int = 0
    pr_number: int | None = None
    todo_state: TodoState | None = None
    overrides: list[OverrideRecord] = field(default_factory=list)
    recovery_attempts: dict[str, int] = field(default_factory=dict)
    """Recovery passes spent per stage name."""

    sub_issues: list[int] = field(default_factory=list)
    deployments: dict[str, dict[str, Any]] = field(default_factory=dict)
    """Deployment results keyed by target ("staging", "production")."""

    error: str | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def create(cls, issue: IssueRef, stages: list[StageRecord]) -> Task:
        return cls(
            task_id=make_task_id(issue.number),
            issue=issue,
            branch_name=make_branch_name(issue.number, issue.title),
            stages=stages,
        )

    @property
    def is_finished(self) -> bool:
        """True when every stage has been passed."""
        return self.current_stage_index >= len(self.stages)

    @property
    def current_stage(self) -> StageRecord | None:
        if self.is_finished:
            return None
        return self.stages[self.current_stage_index]

    def to_dict(self) -> TaskDocument:
        return {
            "task_id": self.task_id,
            "issue": self.issue.to_dict(),
            "branch_name": self.branch_name,
            "pr_number": self.pr_number,
            "status": self.status.value,
            "current_stage_index": self.current_stage_index,
            "stages": [stage.to_dict() for stage in self.stages],
            "todo_state": self.todo_state.to_dict() if self.todo_state else None,
            "overrides": [record.to_dict() for record in self.overrides],
            "recovery_attempts": dict(self.recovery_attempts),
            "sub_issues": list(self.sub_issues),
            "deployments": dict(self.deployments),
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: TaskDocument) -> Task:
        return cls(
            task_id=data["task_id"],
            issue=IssueRef.from_dict(data["issue"]),
            branch_name=data["branch_name"],
            stages=[StageRecord.from_dict(stage) for stage in data["stages"]],
            status=TaskStatus(data["status"]),
            current_stage_index=data.get("current_stage_index", 0),
            pr_number=data.get("pr_number"),
            todo_state=TodoState.from_dict(data.get("todo_state")),
            overrides=[OverrideRecord.from_dict(o) for o in data.get("overrides", [])],
            recovery_attempts=dict(data.get("recovery_attempts", {})),
            sub_issues=list(data.get("sub_issues", [])),
            deployments=dict(data.get("deployments", {})),
            error=data.get("error"),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )


# =============================================================================
# Agent execution and decomposition
# =============================================================================


@dataclass
class ToolCall:
    """A tool invocation requested by the reasoning service in one turn.

    Ephemeral: consumed immediately into a tool-result message.
    """

    id: str
    name: str
    arguments: dict[str, Any]
    error: str | None = None
    """Set when the backend could not parse the arguments into an object."""


@dataclass
class AgentRunResult:
    """Outcome of one AgentExecutionEngine run."""

    success: bool
    output: str = ""
    tokens_used: int = 0
    duration_ms: int = 0
    todo_state: TodoState | None = None
    error: str | None = None
    error_type: str | None = None
    """Exception class name when the run failed, e.g. "BudgetExhaustedError"."""

    turns: int = 0


@dataclass(frozen=True)
class SubTaskSpec:
    """A validated, independently processable unit of a decomposed task."""

    title: str
    description: str
    acceptance_criteria: tuple[str, ...]
    estimated_complexity: Complexity = Complexity.MEDIUM


@dataclass
class Decomposition:
    """Parsed decomposition decision. Transient; never persisted."""

    should_decompose: bool
    sub_tasks: list[SubTaskSpec] = field(default_factory=list)
    reasoning: str = ""


# =============================================================================
# Deployment and knowledge collaborators
# =============================================================================


@dataclass
class Deployment:
    """A deployment on the deployment platform."""

    id: str
    url: str
    state: str
    target: str = "staging"

    @property
    def is_ready(self) -> bool:
        return self.state.upper() == "READY"

    @property
    def is_failed(self) -> bool:
        return self.state.upper() in ("ERROR", "CANCELED")


@dataclass
class HealthProbe:
    """Result of probing a deployed endpoint."""

    status_code: int
    latency_ms: int

    @property
    def healthy(self) -> bool:
        return 200 <= self.status_code < 400


@dataclass
class KnowledgeSnippet:
    """One ranked search hit from the knowledge store."""

    page: str
    excerpt: str
    score: float
