"""
Task persistence with atomic document writes.

This module provides the TaskStore, which keeps one JSON document per task,
and the ClaimSet, which records which issues the watcher has already claimed.

Layout::

    {tasks_dir}/
        .watcher-state.json          # ClaimSet
        ISSUE-42/
            state.json               # full Task document
            intake-analysis.md       # stage artifacts
            triage-report.md
            ...

Durability:
    Every write goes to a ``.tmp`` sibling first and is then moved over the
    target with ``Path.replace``. On POSIX the rename is atomic when both files
    live on the same filesystem, so a crash never leaves a half-written
    document behind.

Concurrency Model:
    The store assumes a single orchestrating process. Stage runs for one task
    id are kept apart by admission control (the ClaimSet and the watcher).
    ``transaction()`` holds a per-task ``asyncio.Lock`` for its whole
    load-modify-save, so human decisions on the same task are serialized.
    ``save()`` does not take the lock.

Example:
    >>> store = TaskStore("tasks")
    >>> async with store.transaction("ISSUE-42") as task:
    ...     task.pr_number = 17
"""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, cast

import aiofiles
import structlog

from issue_pipeline.engine.types import TaskDocument
from issue_pipeline.exceptions import TaskNotFoundError, WorkflowError
from issue_pipeline.models.domain import Task, utc_now

log = structlog.get_logger(__name__)

STATE_FILE_NAME = "state.json"


async def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to ``path`` through a temporary file and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")

    async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
        await f.write(json.dumps(payload, indent=2))

    tmp_path.replace(path)


class TaskStore:
    """Persist task documents and stage artifacts.

    Attributes:
        tasks_dir: Root directory holding one sub-directory per task.
    """

    def __init__(self, tasks_dir: str | Path) -> None:
        """Initialize the store, creating the tasks directory if needed.

        Args:
            tasks_dir: Directory for task documents and artifacts.
        """
        self.tasks_dir = Path(tasks_dir)
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, task_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if task_id not in self._locks:
                self._locks[task_id] = asyncio.Lock()
            return self._locks[task_id]

    def task_dir(self, task_id: str) -> Path:
        if not task_id or "/" in task_id or "\\" in task_id or task_id in (".", ".."):
            raise WorkflowError(f"Invalid task id: {task_id!r}")
        return self.tasks_dir / task_id

    def _get_state_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / STATE_FILE_NAME

    def exists(self, task_id: str) -> bool:
        return self._get_state_path(task_id).exists()

    async def load_document(self, task_id: str) -> TaskDocument:
        """Load the raw persisted document for a task.

        Raises:
            TaskNotFoundError: If no document exists for ``task_id``
            WorkflowError: If the document is not valid JSON
        """
        state_path = self._get_state_path(task_id)
        if not state_path.exists():
            raise TaskNotFoundError(task_id)

        async with aiofiles.open(state_path, encoding="utf-8") as f:
            content = await f.read()

        try:
            return cast(TaskDocument, json.loads(content))
        except json.JSONDecodeError as e:
            raise WorkflowError(f"Corrupt task document for {task_id}: {e}") from e

    async def load(self, task_id: str) -> Task:
        """Load a task.

        Raises:
            TaskNotFoundError: If no document exists for ``task_id``
        """
        return Task.from_dict(await self.load_document(task_id))

    async def save(self, task: Task) -> None:
        """Atomically persist the full task, stamping ``updated_at``."""
        task.updated_at = utc_now()
        await write_json_atomic(self._get_state_path(task.task_id), task.to_dict())
        log.debug(
            "task_saved",
            task_id=task.task_id,
            status=task.status.value,
            stage_index=task.current_stage_index,
        )

    @asynccontextmanager
    async def transaction(self, task_id: str) -> AsyncIterator[Task]:
        """Load a task, yield it for modification, then save it.

        If the body raises, nothing is saved and the exception propagates.
        The task's lock is held until the save finishes, so keep the body short.

        Example:
            >>> async with store.transaction("ISSUE-42") as task:
            ...     task.sub_issues.append(57)
        """
        lock = await self._get_lock(task_id)
        async with lock:
            task = await self.load(task_id)
            try:
                yield task
            except Exception:
                log.error("task_transaction_failed", task_id=task_id)
                raise
            await self.save(task)

    async def list_task_ids(self) -> list[str]:
        """All task ids with a persisted document, sorted by name."""
        return sorted(path.parent.name for path in self.tasks_dir.glob(f"*/{STATE_FILE_NAME}"))

    async def write_artifact(self, task_id: str, artifact_name: str, content: str) -> Path:
        """Write a stage artifact next to the task document.

        Returns:
            Path of the written artifact.
        """
        if Path(artifact_name).name != artifact_name:
            raise WorkflowError(f"Artifact name must be a plain file name: {artifact_name!r}")

        path = self.task_dir(task_id) / artifact_name
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(content)
        tmp_path.replace(path)

        log.info("artifact_saved", task_id=task_id, artifact=artifact_name, size=len(content))
        return path

    async def append_artifact(self, task_id: str, artifact_name: str, content: str) -> Path:
        existing = await self.read_artifact(task_id, artifact_name) or ""
        return await self.write_artifact(task_id, artifact_name, existing + content)

    async def read_artifact(self, task_id: str, artifact_name: str) -> str | None:
        path = self.task_dir(task_id) / artifact_name
        if not path.exists():
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            return await f.read()


class ClaimSet:
    """Persisted set of issue numbers claimed for processing.

    ``claim()`` writes the updated set to disk before returning, so a crash
    after claiming but before the task starts can never lead to a second
    start of the same issue on restart.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._claimed: set[int] | None = None
        # Serializes check-and-claim between concurrent coroutines
        self._lock = asyncio.Lock()

    async def _load(self) -> set[int]:
        if self._claimed is not None:
            return self._claimed

        if not self.path.exists():
            self._claimed = set()
            return self._claimed

        async with aiofiles.open(self.path, encoding="utf-8") as f:
            content = await f.read()
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowError(f"Corrupt watcher state file {self.path}: {e}") from e

        self._claimed = {int(n) for n in data.get("processed_issues", [])}
        return self._claimed

    async def _persist(self, claimed: set[int]) -> None:
        await write_json_atomic(
            self.path,
            {"processed_issues": sorted(claimed), "updated_at": utc_now()},
        )

    async def is_claimed(self, issue_number: int) -> bool:
        return issue_number in await self._load()

    async def claim(self, issue_number: int) -> bool:
        """Claim an issue.

        Returns:
            True if this call claimed the issue, False if it was already claimed.
        """
        async with self._lock:
            claimed = await self._load()
            if issue_number in claimed:
                return False
            updated = claimed | {issue_number}
            await self._persist(updated)
            self._claimed = updated
        log.info("issue_claimed", issue_number=issue_number)
        return True

    async def release(self, issue_number: int) -> None:
        async with self._lock:
            claimed = await self._load()
            if issue_number not in claimed:
                return
            updated = claimed - {issue_number}
            await self._persist(updated)
            self._claimed = updated
        log.info("issue_released", issue_number=issue_number)

    async def members(self) -> set[int]:
        return set(await self._load())
