"""Pipeline orchestration engine.

Key Components:
    - PipelineOrchestrator: per-task state machine over the stage catalog
    - TaskStore: atomic persistence of task documents and artifacts
    - ClaimSet: persisted set of claimed issue numbers for the watcher
    - StageHooks: post-stage dispatch table keyed by agent identifier
    - IssueWatcher: claim-then-start polling loop under a bounded pool

Type Definitions:
    - TaskDocument / StageDocument: TypedDicts for the persisted JSON

Example:
    >>> from issue_pipeline.engine.types import TaskDocument
    >>> doc: TaskDocument = await store.load_document("ISSUE-42")
"""

from issue_pipeline.engine.types import (
    OverrideDocument,
    StageDocument,
    TaskDocument,
    TodoStateDocument,
)

__all__ = [
    "OverrideDocument",
    "StageDocument",
    "TaskDocument",
    "TodoStateDocument",
]
