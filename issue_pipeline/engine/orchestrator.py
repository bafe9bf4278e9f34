"""
Pipeline orchestrator: sequences stages for one task at a time.

The orchestrator owns every mutation of a Task between stage runs. Each call
to ``run_next_stage`` executes exactly one stage (plus any recovery passes)
and persists the task after every transition, so a crash at any point leaves
a document from which the pipeline can resume.

State Machine:
    pending -> in_progress -> pending                     (stage done, more to go)
                           -> awaiting_approval           (stage requires approval)
                           -> awaiting_closure_approval   (intake recommends halting)
                           -> decomposed                  (split into sub-issues)
                           -> completed                   (last stage done)
                           -> failed                      (stage failed, recovery did not help)
    awaiting_approval | awaiting_closure_approval -> pending   (approve / override)
    awaiting_closure_approval -> completed                     (approve_closure)
    decomposed -> completed                                    (every child completed)

Invariants:
    - ``current_stage_index`` never decreases.
    - A stage that already completed is never run again.
    - No stage runs while the task awaits a human decision.

Example:
    >>> orchestrator = PipelineOrchestrator(settings, git, engine, store)
    >>> task = await orchestrator.start_task(42)
    >>> task = await orchestrator.run_pipeline(task.task_id)
"""

import structlog

from issue_pipeline.agents.runner import AgentExecutionEngine, StageContext
from issue_pipeline.config.settings import PipelineSettings
from issue_pipeline.decomposition.manager import DecompositionManager
from issue_pipeline.engine.hooks import StageHooks, extract_summary
from issue_pipeline.engine.task_store import TaskStore
from issue_pipeline.exceptions import PipelineError, WorkflowError
from issue_pipeline.models.domain import (
    IssueRef,
    KnowledgeSnippet,
    OverrideRecord,
    StageRecord,
    StageStatus,
    Task,
    TaskStatus,
    make_task_id,
    utc_now,
)
from issue_pipeline.providers.base import GitProvider, KnowledgeStore
from issue_pipeline.utils.logging_config import bind_task_context, clear_task_context
from issue_pipeline.utils.status_reporter import Notifier

log = structlog.get_logger(__name__)

RECOVERY_MARKERS = ("fixed_automatically", "status:** fixed", "fix applied")


class PipelineOrchestrator:
    """Drive tasks through the stage catalog.

    Attributes:
        settings: Pipeline configuration, including the stage catalog.
        git: Version-control host for issue lookups and closure.
        engine: Agent execution engine used for every stage.
        store: Task persistence.
        hooks: Post-stage side effects keyed by agent identifier.
        notifier: Best-effort progress comments on the issue.
        knowledge: Optional knowledge store queried for stage context.
        decomposition: Optional decomposition manager for parent tracking.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        git: GitProvider,
        engine: AgentExecutionEngine,
        store: TaskStore,
        hooks: StageHooks | None = None,
        notifier: Notifier | None = None,
        knowledge: KnowledgeStore | None = None,
        decomposition: DecompositionManager | None = None,
    ) -> None:
        self.settings = settings
        self.git = git
        self.engine = engine
        self.store = store
        self.hooks = hooks or StageHooks(settings, git, store, decomposition=decomposition, knowledge=knowledge)
        self.notifier = notifier or Notifier(git, settings.labels)
        self.knowledge = knowledge
        self.decomposition = decomposition

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    async def start_task(self, issue_number: int) -> Task:
        """Create and persist a task for an issue.

        Starting an issue whose task exists and is not finished returns the
        stored task unchanged.
        """
        task_id = make_task_id(issue_number)
        if self.store.exists(task_id):
            existing = await self.store.load(task_id)
            if existing.status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                log.info("task_resumed", task_id=task_id, status=existing.status.value)
                return existing
            log.info("task_restarting", task_id=task_id, previous_status=existing.status.value)

        issue = await self.git.get_issue(issue_number)
        stages = [
            StageRecord.pending(
                stage_name=definition.name,
                agent_name=definition.agent,
                requires_approval=definition.requires_approval,
                artifact_name=definition.artifact_name,
            )
            for definition in self.settings.workflow.stages
        ]
        task = Task.create(IssueRef.from_issue(issue), stages)
        await self.store.save(task)
        log.info("task_started", task_id=task.task_id, issue_number=issue_number, stages=len(stages))
        return task

    async def get_task(self, task_id: str) -> Task:
        return await self.store.load(task_id)

    async def run_next_stage(self, task_id: str) -> Task:
        """Run the task's current stage.

        Returns:
            The task after the stage (and any recovery passes) finished. A
            stage failure is reported through ``status == failed``, not raised.
            A completed task is returned unchanged.

        Raises:
            TaskNotFoundError: If the task does not exist
            WorkflowError: If the task is neither runnable nor completed
            ConfigurationError: If reasoning credentials are missing
        """
        task = await self.store.load(task_id)
        if task.status == TaskStatus.COMPLETED:
            log.info("task_already_completed", task_id=task_id)
            return task
        if not task.status.is_runnable:
            raise WorkflowError(f"Task {task_id} is {task.status.value}; it cannot run a stage")

        record = task.current_stage
        if record is None:
            task.status = TaskStatus.COMPLETED
            await self.store.save(task)
            return task
        if record.status == StageStatus.COMPLETED:
            log.info("stage_already_completed", task_id=task_id, stage=record.stage_name)
            return task

        self.settings.require_reasoning_credentials()

        bind_task_context(task.task_id, task.issue.number)
        try:
            return await self._execute_stage(task, record)
        finally:
            clear_task_context()

    async def run_pipeline(self, task_id: str) -> Task:
        """Run stages until the task halts, fails or completes."""
        task = await self.store.load(task_id)
        while task.status.is_runnable:
            before = (task.current_stage_index, task.status)
            task = await self.run_next_stage(task_id)
            if (task.current_stage_index, task.status) == before:
                break
        event = "pipeline_finished" if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED) else "pipeline_paused"
        log.info(event, task_id=task_id, status=task.status.value)
        return task

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _tools_enabled(self, record: StageRecord) -> bool:
        for definition in self.settings.workflow.stages:
            if definition.name == record.stage_name:
                return definition.tools_enabled
        return False

    async def _knowledge_for(self, task: Task) -> list[KnowledgeSnippet]:
        if self.knowledge is None or self.settings.knowledge.max_snippets <= 0:
            return []
        try:
            return await self.knowledge.search(
                f"{task.issue.title} {task.issue.body}", limit=self.settings.knowledge.max_snippets
            )
        except (PipelineError, OSError) as e:
            log.warning("knowledge_search_failed", task_id=task.task_id, error=str(e))
            return []

    async def build_context(self, task: Task) -> StageContext:
        """Context for the current stage: issue, preceding output, knowledge, todos."""
        index = task.current_stage_index
        previous_output = task.stages[index - 1].output if index > 0 else None
        extra: dict[str, object] = {"branch_name": task.branch_name}
        if task.pr_number is not None:
            extra["pr_number"] = task.pr_number
        if task.deployments:
            extra["deployments"] = task.deployments
        return StageContext(
            issue=task.issue,
            task_id=task.task_id,
            previous_output=previous_output,
            knowledge=await self._knowledge_for(task),
            todo_state=task.todo_state,
            extra=extra,
        )

    async def _execute_stage(self, task: Task, record: StageRecord) -> Task:
        record.status = StageStatus.IN_PROGRESS
        record.started_at = utc_now()
        record.error = None
        task.status = TaskStatus.IN_PROGRESS
        await self.store.save(task)

        log.info("stage_started", stage=record.stage_name, agent=record.agent_name)
        await self.notifier.stage_started(task, record)

        context = await self.build_context(task)
        result = await self.engine.run(record.agent_name, context, tools_enabled=self._tools_enabled(record))

        if not result.success:
            return await self._handle_failure(
                task, record, result.error or "Agent run failed", result.error_type or "AgentError"
            )

        record.output = result.output
        record.tokens_used = result.tokens_used
        record.duration_ms = result.duration_ms
        record.todo_state = result.todo_state
        task.todo_state = result.todo_state
        artifact = await self.store.write_artifact(task.task_id, record.artifact_name, result.output)
        record.artifact_path = str(artifact)

        outcome = await self.hooks.run(task, record)
        if outcome is not None and outcome.error:
            return await self._handle_failure(task, record, outcome.error, "StageExecutionError")

        record.status = StageStatus.COMPLETED
        record.completed_at = utc_now()
        task.current_stage_index += 1

        if outcome is not None and outcome.halt_status is not None:
            task.status = outcome.halt_status
            await self.store.save(task)
            log.info("pipeline_halted", stage=record.stage_name, status=task.status.value, reason=outcome.reason)
            if task.status == TaskStatus.AWAITING_CLOSURE_APPROVAL:
                await self.notifier.awaiting_review(task, outcome.reason)
            else:
                await self.notifier.stage_completed(task, record, outcome.reason)
            return task

        if record.requires_approval:
            task.status = TaskStatus.AWAITING_APPROVAL
        elif task.is_finished:
            task.status = TaskStatus.COMPLETED
        else:
            task.status = TaskStatus.PENDING
        await self.store.save(task)

        log.info(
            "stage_completed",
            stage=record.stage_name,
            tokens_used=record.tokens_used,
            duration_ms=record.duration_ms,
            status=task.status.value,
        )
        await self.notifier.stage_completed(task, record, extract_summary(record.output))
        if task.status == TaskStatus.AWAITING_APPROVAL:
            await self.notifier.awaiting_review(task, f"Stage **{record.stage_name}** requires approval.")
        elif task.status == TaskStatus.COMPLETED:
            await self.notifier.pipeline_completed(task)
        return task

    async def _handle_failure(self, task: Task, record: StageRecord, error: str, error_type: str) -> Task:
        """Try recovery passes, then mark the stage and task failed."""
        limit = self.settings.workflow.recovery_attempts
        attempts = task.recovery_attempts.get(record.stage_name, 0)
        log.warning("stage_error", stage=record.stage_name, error=error, error_type=error_type, attempts=attempts)

        # A missing template or credential cannot be fixed by the debugger
        if error_type != "ConfigurationError" and attempts < limit:
            task.recovery_attempts[record.stage_name] = attempts + 1
            await self.store.save(task)
            await self.notifier.recovery_attempt(task, record, attempts + 1, limit, error)
            if await self._attempt_recovery(task, record, error):
                log.info("stage_retrying", stage=record.stage_name, attempt=attempts + 1)
                return await self._execute_stage(task, record)

        record.status = StageStatus.FAILED
        record.error = error
        record.completed_at = utc_now()
        task.status = TaskStatus.FAILED
        task.error = error
        await self.store.save(task)

        log.error("stage_failed", stage=record.stage_name, error=error, error_type=error_type)
        await self.notifier.stage_failed(task, record, error)
        return task

    async def _attempt_recovery(self, task: Task, record: StageRecord, error: str) -> bool:
        index = task.current_stage_index
        context = StageContext(
            issue=task.issue,
            task_id=task.task_id,
            previous_output=task.stages[index - 1].output if index > 0 else None,
            todo_state=task.todo_state,
            extra={
                "failed_stage": record.stage_name,
                "failed_agent": record.agent_name,
                "error_message": error,
                "branch_name": task.branch_name,
            },
        )
        result = await self.engine.run(self.settings.workflow.recovery_agent, context, tools_enabled=True)
        if not result.success:
            log.warning("recovery_agent_failed", stage=record.stage_name, error=result.error)
            return False

        lowered = result.output.lower()
        fixed = any(marker in lowered for marker in RECOVERY_MARKERS)
        log.info("recovery_finished", stage=record.stage_name, fixed=fixed)
        return fixed

    # ------------------------------------------------------------------
    # Human decisions
    # ------------------------------------------------------------------

    async def _remove_label(self, task: Task, label: str) -> None:
        try:
            await self.git.remove_label(task.issue.number, label)
        except PipelineError as e:
            log.warning("label_update_failed", task_id=task.task_id, label=label, error=e.message)

    async def approve(self, task_id: str, actor: str = "unknown") -> Task:
        """Release a task awaiting a human decision.

        Raises:
            WorkflowError: If the task is not awaiting approval
        """
        async with self.store.transaction(task_id) as task:
            if not task.status.is_awaiting_human:
                raise WorkflowError(f"Task {task_id} is {task.status.value}; nothing to approve")
            from_status = task.status
            task.status = TaskStatus.COMPLETED if task.is_finished else TaskStatus.PENDING

        log.info(
            "stage_approved",
            task_id=task_id,
            actor=actor,
            from_status=from_status.value,
            stage_index=task.current_stage_index,
        )
        await self._remove_label(task, self.settings.labels.awaiting_review)
        if task.status == TaskStatus.COMPLETED:
            await self.notifier.pipeline_completed(task)
        return task

    async def override(self, task_id: str, actor: str, reason: str) -> Task:
        """Force a halted task to continue, recording who did it and why.

        Raises:
            WorkflowError: If actor or reason is empty, or the task is not halted
        """
        if not actor or not actor.strip() or not reason or not reason.strip():
            raise WorkflowError("An override requires both an actor and a reason")

        async with self.store.transaction(task_id) as task:
            if not task.status.is_awaiting_human:
                raise WorkflowError(f"Task {task_id} is {task.status.value}; nothing to override")
            record = OverrideRecord(
                actor=actor.strip(),
                reason=reason.strip(),
                from_status=task.status.value,
                stage_index=task.current_stage_index,
            )
            task.overrides.append(record)
            task.status = TaskStatus.COMPLETED if task.is_finished else TaskStatus.PENDING

        log.warning(
            "stage_override",
            task_id=task_id,
            actor=record.actor,
            reason=record.reason,
            from_status=record.from_status,
            stage_index=record.stage_index,
        )

        await self._remove_label(task, self.settings.labels.awaiting_review)
        try:
            await self.git.add_labels(task.issue.number, [self.settings.labels.human_override])
            await self.git.add_comment(
                task.issue.number,
                f"**Human override** by {record.actor}\n\nReason: {record.reason}\n\nThe pipeline will continue.",
            )
        except PipelineError as e:
            log.warning("override_notification_failed", task_id=task_id, error=e.message)
        if task.status == TaskStatus.COMPLETED:
            await self.notifier.pipeline_completed(task)
        return task

    async def approve_closure(self, task_id: str, actor: str = "unknown") -> Task:
        """Accept an early-termination recommendation and close the issue.

        Raises:
            WorkflowError: If the task is not awaiting closure approval
        """
        async with self.store.transaction(task_id) as task:
            if task.status != TaskStatus.AWAITING_CLOSURE_APPROVAL:
                raise WorkflowError(f"Task {task_id} is {task.status.value}; closure was not requested")
            try:
                await self.git.add_comment(
                    task.issue.number, f"**Closure approved** by {actor}. Closing this issue without further stages."
                )
                await self.git.add_labels(task.issue.number, [self.settings.labels.closed_by_approval])
            except PipelineError as e:
                log.warning("closure_notification_failed", task_id=task_id, error=e.message)
            await self.git.close_issue(task.issue.number)
            task.status = TaskStatus.COMPLETED

        log.info("closure_approved", task_id=task_id, actor=actor)
        await self._remove_label(task, self.settings.labels.awaiting_review)
        await self.notifier.pipeline_completed(task)
        return task

    async def check_parent(self, task_id: str) -> Task:
        """Complete a decomposed task once every child issue is completed."""
        task = await self.store.load(task_id)
        if task.status != TaskStatus.DECOMPOSED:
            raise WorkflowError(f"Task {task_id} is {task.status.value}; it was not decomposed")
        if self.decomposition is None:
            raise WorkflowError("Decomposition is not configured")

        if await self.decomposition.check_parent_completion(task.issue.number):
            await self.decomposition.close_parent_with_summary(task.issue.number)
            task.status = TaskStatus.COMPLETED
            await self.store.save(task)
            log.info("parent_completed", task_id=task_id, sub_issues=task.sub_issues)
        return task
