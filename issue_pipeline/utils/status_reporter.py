"""Stage status reporting on the originating issue.

Every method is best-effort: a failed comment or label call is logged as a
warning and never affects the pipeline.
"""

from datetime import UTC, datetime

import structlog

from issue_pipeline.config.settings import LabelsConfig
from issue_pipeline.exceptions import PipelineError
from issue_pipeline.models.domain import StageRecord, Task
from issue_pipeline.providers.base import GitProvider

log = structlog.get_logger(__name__)


class Notifier:
    """Report stage progress back to the issue."""

    def __init__(self, git: GitProvider, labels: LabelsConfig | None = None) -> None:
        """Initialize with git provider.

        Args:
            git: GitProvider instance
            labels: Label names to apply
        """
        self.git = git
        self.labels = labels or LabelsConfig()

    async def _comment(self, task: Task, message: str, event: str) -> None:
        try:
            await self.git.add_comment(task.issue.number, message.strip())
        except PipelineError as e:
            log.warning("notification_failed", task_id=task.task_id, notification=event, error=e.message)

    async def _label(self, task: Task, labels: list[str]) -> None:
        try:
            await self.git.add_labels(task.issue.number, labels)
        except PipelineError as e:
            log.warning("label_update_failed", task_id=task.task_id, labels=labels, error=e.message)

    async def stage_started(self, task: Task, stage: StageRecord) -> None:
        await self._label(task, [self.labels.in_progress, f"stage-{stage.agent_name}"])
        position = task.current_stage_index + 1
        await self._comment(
            task,
            f"""**Pipeline Update**

Stage {position}/{len(task.stages)}: **{stage.stage_name}** ({stage.agent_name})
Status: In Progress
Started: {datetime.now(UTC).isoformat()}
""",
            "stage_started",
        )

    async def stage_completed(self, task: Task, stage: StageRecord, summary: str = "") -> None:
        approval = "\n\nThis stage requires human approval before the pipeline continues." if stage.requires_approval else ""
        await self._comment(
            task,
            f"""**Pipeline Update**

Stage: **{stage.stage_name}** ({stage.agent_name})
Status: Completed in {stage.duration_ms / 1000:.1f}s, {stage.tokens_used} tokens

{summary}{approval}
""",
            "stage_completed",
        )

    async def stage_failed(self, task: Task, stage: StageRecord, error: str) -> None:
        await self._comment(
            task,
            f"""**Pipeline Update**

Stage: **{stage.stage_name}** ({stage.agent_name})
Status: Failed
Failed: {datetime.now(UTC).isoformat()}

**Error:**
```
{error}
```

A team member will need to investigate and resolve this issue.
""",
            "stage_failed",
        )

    async def awaiting_review(self, task: Task, reason: str) -> None:
        await self._label(task, [self.labels.awaiting_review])
        await self._comment(task, f"**Human review required**\n\n{reason}", "awaiting_review")

    async def pipeline_completed(self, task: Task) -> None:
        try:
            await self.git.remove_label(task.issue.number, self.labels.in_progress)
        except PipelineError as e:
            log.warning("label_update_failed", task_id=task.task_id, error=e.message)
        await self._label(task, [self.labels.completed])
        if task.is_finished:
            detail = f"All {len(task.stages)} stages finished for #{task.issue.number}."
        else:
            detail = f"Closed after {task.current_stage_index} of {len(task.stages)} stages."
        await self._comment(task, f"**Pipeline completed**\n\n{detail}", "pipeline_completed")

    async def recovery_attempt(self, task: Task, stage: StageRecord, attempt: int, limit: int, error: str) -> None:
        await self._comment(
            task,
            f"""**Recovery Attempt {attempt}/{limit}**

Stage **{stage.stage_name}** failed with error:
```
{error}
```

Running the debugger agent.
""",
            "recovery_attempt",
        )
