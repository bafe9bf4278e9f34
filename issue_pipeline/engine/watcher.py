"""Polling watcher that admits new issues into the pipeline.

An issue is claimed (and the claim persisted) before its task is started, so
a crash between claiming and starting never leads to a second start of the
same issue after restart. Tasks run concurrently under a bounded pool.
"""

import asyncio

import structlog

from issue_pipeline.engine.orchestrator import PipelineOrchestrator
from issue_pipeline.engine.task_store import ClaimSet
from issue_pipeline.exceptions import PipelineError
from issue_pipeline.models.domain import Issue, TaskStatus

log = structlog.get_logger(__name__)

CLAIM_FILE_NAME = ".watcher-state.json"


class IssueWatcher:
    """Poll open issues and run the pipeline for new ones."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        claims: ClaimSet | None = None,
        max_concurrent_tasks: int | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        settings = orchestrator.settings
        self.claims = claims or ClaimSet(orchestrator.store.tasks_dir / CLAIM_FILE_NAME)
        self.max_concurrent_tasks = max_concurrent_tasks or settings.workflow.max_concurrent_tasks
        labels = settings.labels
        self._skip_labels = {labels.in_progress, labels.completed, labels.decomposed}

    def _is_candidate(self, issue: Issue) -> bool:
        return not self._skip_labels.intersection(issue.labels)

    async def poll_once(self) -> list[str]:
        """Claim and run every new open issue.

        Returns:
            Task ids that were started in this poll.
        """
        issues = await self.orchestrator.git.get_issues(state="open")
        claimed: list[Issue] = []
        for issue in issues:
            if not self._is_candidate(issue):
                continue
            if await self.claims.claim(issue.number):
                claimed.append(issue)

        if not claimed:
            log.debug("watcher_no_new_issues", open_issues=len(issues))
            return []

        log.info("watcher_claimed_issues", issues=[issue.number for issue in claimed])
        semaphore = asyncio.Semaphore(self.max_concurrent_tasks)

        async def process(issue: Issue) -> str | None:
            async with semaphore:
                try:
                    task = await self.orchestrator.start_task(issue.number)
                except PipelineError as e:
                    log.error("watcher_start_failed", issue_number=issue.number, error=e.message)
                    await self.claims.release(issue.number)
                    return None
                await self.orchestrator.run_pipeline(task.task_id)
                return task.task_id

        results = await asyncio.gather(*(process(issue) for issue in claimed), return_exceptions=True)

        started: list[str] = []
        for issue, result in zip(claimed, results):
            if isinstance(result, BaseException):
                log.error("watcher_task_error", issue_number=issue.number, error=str(result))
            elif result is not None:
                started.append(result)
        return started

    async def check_decomposed(self) -> list[str]:
        """Complete decomposed parents whose children are all done."""
        completed: list[str] = []
        for task_id in await self.orchestrator.store.list_task_ids():
            task = await self.orchestrator.store.load(task_id)
            if task.status != TaskStatus.DECOMPOSED or self.orchestrator.decomposition is None:
                continue
            try:
                task = await self.orchestrator.check_parent(task_id)
            except PipelineError as e:
                log.warning("parent_check_failed", task_id=task_id, error=e.message)
                continue
            if task.status == TaskStatus.COMPLETED:
                completed.append(task_id)
        return completed

    async def run(self, interval: int | None = None) -> None:
        """Poll forever, sleeping ``interval`` seconds between polls."""
        interval = interval or self.orchestrator.settings.workflow.poll_interval
        log.info("watcher_started", interval=interval, max_concurrent=self.max_concurrent_tasks)
        while True:
            try:
                await self.poll_once()
                await self.check_decomposed()
            except PipelineError as e:
                log.error("watcher_poll_failed", error=e.message)
            await asyncio.sleep(interval)
