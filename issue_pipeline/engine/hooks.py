"""Post-stage side effects, dispatched by agent identifier.

A hook runs after a stage's agent succeeded and its output was recorded. It
may halt the pipeline (early termination, decomposition) or fail the stage
(production deployment). Hooks are looked up by the stage's ``agent_name``,
never by position in the catalog.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from issue_pipeline.config.settings import PipelineSettings
from issue_pipeline.decomposition.manager import DecompositionManager
from issue_pipeline.engine.task_store import TaskStore
from issue_pipeline.exceptions import PipelineError
from issue_pipeline.models.domain import StageRecord, Task, TaskStatus, utc_now
from issue_pipeline.providers.base import DeploymentProvider, GitProvider, KnowledgeStore

log = structlog.get_logger(__name__)

HALT_DECISIONS = ("REDIRECT", "INVALID")
IMPLEMENTATION_HALT_MARKERS = ("implementation halted", "cannot implement")

_DECISION_PATTERN = re.compile(r"##\s*Decision:\s*(\w+)", re.IGNORECASE)


def extract_decision(output: str) -> str | None:
    """The ``## Decision: X`` marker of an agent output, upper-cased."""
    match = _DECISION_PATTERN.search(output or "")
    return match.group(1).upper() if match else None


@dataclass
class HookOutcome:
    """What a hook asks the orchestrator to do instead of continuing."""

    halt_status: TaskStatus | None = None
    error: str | None = None
    reason: str = ""

    @classmethod
    def halt(cls, status: TaskStatus, reason: str) -> HookOutcome:
        return cls(halt_status=status, reason=reason)

    @classmethod
    def fail(cls, error: str) -> HookOutcome:
        return cls(error=error)


Hook = Callable[[Task, StageRecord, str], Awaitable[HookOutcome | None]]


class StageHooks:
    """Dispatch table of post-stage hooks keyed by agent identifier."""

    def __init__(
        self,
        settings: PipelineSettings,
        git: GitProvider,
        store: TaskStore,
        decomposition: DecompositionManager | None = None,
        deployer: DeploymentProvider | None = None,
        knowledge: KnowledgeStore | None = None,
    ):
        self.settings = settings
        self.git = git
        self.store = store
        self.decomposition = decomposition
        self.deployer = deployer
        self.knowledge = knowledge
        self._hooks: dict[str, Hook] = {
            "intake": self.after_intake,
            "surgeon": self.after_implementation,
            "gatekeeper": self.after_staging,
            "commander": self.after_production,
            "archivist": self.after_archivist,
        }

    def registered(self) -> list[str]:
        return sorted(self._hooks)

    async def run(self, task: Task, record: StageRecord) -> HookOutcome | None:
        hook = self._hooks.get(record.agent_name)
        if hook is None:
            return None
        log.debug("stage_hook_running", task_id=task.task_id, agent=record.agent_name)
        return await hook(task, record, record.output)

    async def after_intake(self, task: Task, record: StageRecord, output: str) -> HookOutcome | None:
        decision = extract_decision(output)
        log.info("intake_decision", task_id=task.task_id, decision=decision)
        if decision in HALT_DECISIONS:
            return HookOutcome.halt(
                TaskStatus.AWAITING_CLOSURE_APPROVAL,
                f"Intake recommends {decision}. Approve closure or override to continue.",
            )

        if self.decomposition is None or not self.decomposition.analyze(task, output):
            return None

        try:
            children = await self.decomposition.decompose_issue(task)
        except PipelineError as e:
            # Children created before the failure stay; there is no rollback
            log.warning("decomposition_failed", task_id=task.task_id, error=e.message)
            return None

        if not children:
            return None
        task.sub_issues = children
        return HookOutcome.halt(
            TaskStatus.DECOMPOSED,
            f"Split into sub-issues {', '.join(f'#{n}' for n in children)}",
        )

    async def after_implementation(self, task: Task, record: StageRecord, output: str) -> HookOutcome | None:
        lowered = output.lower()
        if any(marker in lowered for marker in IMPLEMENTATION_HALT_MARKERS):
            log.info("pull_request_skipped", task_id=task.task_id, reason="implementation_halted")
            return None
        if task.pr_number is not None:
            return None

        body = (
            f"## Summary\n\nThis PR addresses #{task.issue.number}: {task.issue.title}\n\n"
            f"{extract_summary(output)}\n\nCloses #{task.issue.number}"
        )
        try:
            pr = await self.git.create_pull_request(
                title=f"Fix: {task.issue.title}",
                body=body,
                head=task.branch_name,
                base=self.settings.repository.default_branch,
            )
        except PipelineError as e:
            if "already exists" in e.message.lower():
                log.info("pull_request_exists", task_id=task.task_id, branch=task.branch_name)
                return None
            log.error("pull_request_failed", task_id=task.task_id, error=e.message)
            return HookOutcome.fail(f"Failed to create pull request: {e.message}")

        task.pr_number = pr.number
        log.info("pull_request_created", task_id=task.task_id, pr_number=pr.number, url=pr.url)
        return None

    async def _deploy(self, task: Task, record: StageRecord, target: str, ref: str) -> dict[str, Any]:
        """Trigger, wait and probe. Records the result on the task.

        Raises:
            PipelineError: If the deployment could not be completed
        """
        assert self.deployer is not None
        deployment = await self.deployer.trigger_deployment(ref, target)
        entry: dict[str, Any] = {
            "deployment_id": deployment.id,
            "url": deployment.url,
            "state": deployment.state,
            "healthy": False,
            "deployed_at": utc_now(),
        }
        task.deployments[target] = entry

        deployment = await self.deployer.wait_for_ready(deployment.id)
        probe = await self.deployer.probe_endpoint(deployment.url)
        entry.update(
            url=deployment.url,
            state=deployment.state,
            healthy=probe.healthy,
            status_code=probe.status_code,
            latency_ms=probe.latency_ms,
        )

        await self.store.append_artifact(
            task.task_id,
            record.artifact_name,
            f"\n\n## {target.title()} Deployment\n\n"
            f"- Deployment: {deployment.id}\n"
            f"- URL: {deployment.url}\n"
            f"- State: {deployment.state}\n"
            f"- Health: HTTP {probe.status_code} in {probe.latency_ms}ms\n",
        )
        log.info("deployment_recorded", task_id=task.task_id, target=target, healthy=probe.healthy)
        return entry

    async def after_staging(self, task: Task, record: StageRecord, output: str) -> HookOutcome | None:
        if self.deployer is None:
            return None
        try:
            await self._deploy(task, record, "staging", task.branch_name)
        except PipelineError as e:
            log.warning("staging_deployment_failed", task_id=task.task_id, error=e.message)
            task.deployments.setdefault("staging", {}).update(state="FAILED", error=e.message)
        return None

    async def after_production(self, task: Task, record: StageRecord, output: str) -> HookOutcome | None:
        if self.deployer is None:
            return None
        try:
            entry = await self._deploy(task, record, "production", self.settings.repository.default_branch)
        except PipelineError as e:
            log.error("production_deployment_failed", task_id=task.task_id, error=e.message)
            task.deployments.setdefault("production", {}).update(state="FAILED", error=e.message)
            return HookOutcome.fail(f"Production deployment failed: {e.message}")
        if not entry["healthy"]:
            return HookOutcome.fail(f"Production deployment unhealthy: HTTP {entry.get('status_code', 0)}")
        return None

    async def after_archivist(self, task: Task, record: StageRecord, output: str) -> HookOutcome | None:
        if self.knowledge is None:
            return None
        entry = f"## #{task.issue.number}: {task.issue.title}\n\n_{utc_now()}_\n\n{output.strip()}\n"
        try:
            await self.knowledge.append(self.settings.knowledge.history_page, entry)
        except (PipelineError, OSError) as e:
            log.warning("knowledge_update_failed", task_id=task.task_id, error=str(e))
        return None


_SUMMARY_PATTERN = re.compile(
    r"^##\s*(?:Executive\s+)?Summary\s*\n+(.*?)(?=^##|\Z)", re.IGNORECASE | re.DOTALL | re.MULTILINE
)

SUMMARY_LIMIT = 300


def extract_summary(output: str) -> str:
    """A short summary of an agent output for issue comments.

    Uses the ``## Summary`` section when present, otherwise the first
    non-heading lines. Capped at 300 characters.
    """
    match = _SUMMARY_PATTERN.search(output or "")
    if match and match.group(1).strip():
        summary = match.group(1).strip()
    else:
        lines = [line for line in (output or "").splitlines() if line.strip() and not line.lstrip().startswith("#")]
        summary = "\n".join(lines[:5])
    return summary if len(summary) <= SUMMARY_LIMIT else summary[:SUMMARY_LIMIT] + "..."
