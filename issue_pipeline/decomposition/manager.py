"""Splitting oversized issues into child issues.

The manager runs after intake. It asks the decomposer agent for a breakdown,
validates it, then fans the sub-tasks out as child issues labelled
``parent-{N}`` and records a checklist on the parent. Any doubt about the
proposal means no child issue is created and the parent continues through
the normal pipeline.
"""

import structlog

from issue_pipeline.agents.runner import AgentExecutionEngine, StageContext
from issue_pipeline.config.settings import DecompositionConfig, LabelsConfig
from issue_pipeline.decomposition.parser import analyze_complexity, parse_decomposition, validate_decomposition
from issue_pipeline.exceptions import AgentError, ValidationError
from issue_pipeline.models.domain import Decomposition, Issue, SubTaskSpec, Task
from issue_pipeline.providers.base import GitProvider

log = structlog.get_logger(__name__)


def parent_label(parent_number: int) -> str:
    return f"parent-{parent_number}"


class DecompositionManager:
    """Decide on, create and track issue decompositions."""

    def __init__(
        self,
        git: GitProvider,
        engine: AgentExecutionEngine,
        config: DecompositionConfig | None = None,
        labels: LabelsConfig | None = None,
    ):
        self.git = git
        self.engine = engine
        self.config = config or DecompositionConfig()
        self.labels = labels or LabelsConfig()

    @property
    def _non_inherited_labels(self) -> set[str]:
        return {
            self.labels.in_progress,
            self.labels.completed,
            self.labels.awaiting_review,
            self.labels.decomposed,
        }

    def analyze(self, task: Task, intake_output: str = "") -> bool:
        """Should the decomposer be consulted for this task?

        Sub-issues are never decomposed again.
        """
        if not self.config.enabled:
            return False
        if self.labels.sub_issue in task.issue.labels:
            log.info("decomposition_skipped_sub_issue", task_id=task.task_id)
            return False
        return analyze_complexity(intake_output or task.issue.body)

    async def decompose(self, task: Task) -> Decomposition:
        """Ask the decomposer agent for a breakdown.

        Raises:
            AgentError: If the agent run failed
        """
        context = StageContext(
            issue=task.issue,
            task_id=task.task_id,
            extra={"max_sub_tasks": self.config.max_sub_tasks},
        )
        result = await self.engine.run(self.config.agent, context)
        if not result.success:
            raise AgentError(
                f"Decomposer agent failed: {result.error}",
                agent_name=self.config.agent,
                task_id=task.task_id,
            )
        return parse_decomposition(result.output)

    def validate(self, decomposition: Decomposition) -> None:
        validate_decomposition(
            decomposition,
            max_sub_tasks=self.config.max_sub_tasks,
            min_title_length=self.config.min_title_length,
            min_description_length=self.config.min_description_length,
        )

    async def decompose_issue(self, task: Task) -> list[int]:
        """Decompose, validate and fan out.

        Returns:
            Child issue numbers, or an empty list when the issue should
            proceed unsplit (PROCEED decision, failed agent run or invalid
            proposal).
        """
        try:
            decomposition = await self.decompose(task)
        except AgentError as e:
            log.warning("decomposition_agent_failed", task_id=task.task_id, error=e.message)
            return []

        if not decomposition.should_decompose:
            log.info("decomposition_declined", task_id=task.task_id, reasoning=decomposition.reasoning[:200])
            return []

        try:
            self.validate(decomposition)
        except ValidationError as e:
            log.warning("decomposition_rejected", task_id=task.task_id, errors=e.errors)
            return []

        return await self._fan_out(task, decomposition)

    async def _fan_out(self, task: Task, decomposition: Decomposition) -> list[int]:
        parent_number = task.issue.number
        parent = await self.git.get_issue(parent_number)
        inherited = [label for label in parent.labels if label not in self._non_inherited_labels]
        labels = [self.labels.sub_issue, parent_label(parent_number)]
        labels += [label for label in inherited if label not in labels]

        total = len(decomposition.sub_tasks)
        children: list[int] = []
        for index, sub_task in enumerate(decomposition.sub_tasks, start=1):
            child = await self.git.create_issue(
                title=f"[Parent #{parent_number}] [Sub {index}/{total}] {sub_task.title}",
                body=self.format_child_body(sub_task, parent),
                labels=labels,
            )
            children.append(child.number)
            log.info("sub_issue_created", parent=parent_number, child=child.number, index=index, total=total)

        checklist = "\n".join(
            f"- [ ] #{number} - {sub_task.title}" for number, sub_task in zip(children, decomposition.sub_tasks)
        )
        await self.git.update_issue(
            parent_number,
            body=(
                f"{parent.body.rstrip()}\n\n---\n\n## Decomposition\n\n"
                f"This issue has been broken down into sub-tasks:\n\n{checklist}\n\n"
                "Each sub-issue goes through the pipeline on its own. "
                "This issue closes once every sub-task is completed."
            ),
        )
        await self.git.add_comment(
            parent_number,
            f"**Issue decomposed** into {len(children)} sub-tasks:\n\n{checklist}\n\n"
            f"Reasoning: {decomposition.reasoning or 'n/a'}",
        )
        await self.git.add_labels(parent_number, [self.labels.decomposed])

        log.info("decomposition_complete", parent=parent_number, children=children)
        return children

    def format_child_body(self, sub_task: SubTaskSpec, parent: Issue) -> str:
        criteria = "\n".join(f"- [ ] {criterion}" for criterion in sub_task.acceptance_criteria)
        limit = self.config.parent_excerpt_length
        excerpt = parent.body if len(parent.body) <= limit else parent.body[:limit] + "..."
        return (
            f"**Part of:** #{parent.number}\n\n"
            f"## Task Description\n{sub_task.description}\n\n"
            f"## Acceptance Criteria\n{criteria}\n\n"
            f"**Estimated Complexity:** {sub_task.estimated_complexity.value}\n\n"
            f"## Context from Parent Issue\n**Parent:** {parent.title}\n\n{excerpt}\n"
        )

    async def _children(self, parent_number: int) -> list[Issue]:
        return await self.git.get_issues(labels=[parent_label(parent_number)], state="all")

    async def check_parent_completion(self, parent_number: int) -> bool:
        """True when the parent has children and every one is labelled completed."""
        children = await self._children(parent_number)
        if not children:
            log.warning("no_sub_issues_found", parent=parent_number)
            return False
        done = [child for child in children if self.labels.completed in child.labels]
        log.debug("parent_completion_checked", parent=parent_number, total=len(children), completed=len(done))
        return len(done) == len(children)

    async def close_parent_with_summary(self, parent_number: int) -> None:
        children = await self._children(parent_number)
        lines = "\n".join(f"- #{child.number} - {child.title}" for child in children)
        await self.git.add_comment(
            parent_number,
            f"**All sub-tasks completed**\n\nThis issue was split into {len(children)} sub-tasks:\n\n{lines}\n\n"
            "Closing the parent issue.",
        )
        await self.git.add_labels(parent_number, [self.labels.completed])
        await self.git.close_issue(parent_number)
        log.info("parent_issue_closed", parent=parent_number, children=len(children))
