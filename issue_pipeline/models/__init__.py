"""Domain models for the issue pipeline."""

from issue_pipeline.models.domain import (
    AgentRunResult,
    Comment,
    Complexity,
    Decomposition,
    Deployment,
    HealthProbe,
    Issue,
    IssueRef,
    IssueState,
    KnowledgeSnippet,
    OverrideRecord,
    PullRequest,
    StageRecord,
    StageStatus,
    SubTaskSpec,
    Task,
    TaskStatus,
    TodoItem,
    TodoPriority,
    TodoState,
    TodoStatus,
    ToolCall,
)

__all__ = [
    "AgentRunResult",
    "Comment",
    "Complexity",
    "Decomposition",
    "Deployment",
    "HealthProbe",
    "Issue",
    "IssueRef",
    "IssueState",
    "KnowledgeSnippet",
    "OverrideRecord",
    "PullRequest",
    "StageRecord",
    "StageStatus",
    "SubTaskSpec",
    "Task",
    "TaskStatus",
    "TodoItem",
    "TodoPriority",
    "TodoState",
    "TodoStatus",
    "ToolCall",
]
