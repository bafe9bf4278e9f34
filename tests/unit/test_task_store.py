"""Unit tests for engine/task_store.py."""

import asyncio
import json
from pathlib import Path

import pytest

from issue_pipeline.engine.task_store import ClaimSet, TaskStore
from issue_pipeline.exceptions import TaskNotFoundError, WorkflowError
from issue_pipeline.models.domain import (
    IssueRef,
    OverrideRecord,
    StageRecord,
    StageStatus,
    Task,
    TaskStatus,
    TodoItem,
    TodoState,
)


@pytest.fixture
def task() -> Task:
    issue = IssueRef(number=7, title="Fix: crash on /login!", body="Stack trace", url="https://x/7", labels=["bug"])
    stages = [
        StageRecord.pending("intake", "intake", False, "intake-analysis.md"),
        StageRecord.pending("implementation", "surgeon", True, "implementation-plan.md"),
    ]
    return Task.create(issue, stages)


class TestTaskStoreInit:
    """Tests for TaskStore initialization."""

    def test_creates_nested_directory(self, tmp_path: Path):
        tasks_dir = tmp_path / "nested" / "tasks"
        store = TaskStore(tasks_dir)

        assert tasks_dir.is_dir()
        assert store.tasks_dir == tasks_dir

    @pytest.mark.parametrize("task_id", ["", ".", "..", "a/b", "a\\b"])
    def test_rejects_unsafe_task_ids(self, task_store: TaskStore, task_id: str):
        with pytest.raises(WorkflowError):
            task_store.task_dir(task_id)


class TestTaskStoreLoadSave:
    """Tests for load and save operations."""

    @pytest.mark.asyncio
    async def test_round_trip_preserves_every_field(self, task_store: TaskStore, task: Task):
        task.status = TaskStatus.AWAITING_APPROVAL
        task.current_stage_index = 1
        task.pr_number = 12
        task.todo_state = TodoState(todos=[TodoItem(id="t1", content="write docs")])
        task.overrides.append(OverrideRecord(actor="alice", reason="valid", from_status="awaiting_approval", stage_index=1))
        task.recovery_attempts["intake"] = 2
        task.sub_issues = [8, 9]
        task.deployments["staging"] = {"deployment_id": "dpl_1", "healthy": True}
        task.stages[0].status = StageStatus.COMPLETED
        task.stages[0].output = "intake output"
        task.stages[0].tokens_used = 321

        await task_store.save(task)
        loaded = await task_store.load(task.task_id)

        assert loaded.to_dict() == task.to_dict()
        assert loaded.branch_name == "fix/issue-7-fix-crash-on-login"

    @pytest.mark.asyncio
    async def test_save_stamps_updated_at(self, task_store: TaskStore, task: Task):
        task.updated_at = "2000-01-01T00:00:00+00:00"
        await task_store.save(task)
        assert task.updated_at != "2000-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_file(self, task_store: TaskStore, task: Task):
        await task_store.save(task)

        files = sorted(p.name for p in task_store.task_dir(task.task_id).iterdir())
        assert files == ["state.json"]

    @pytest.mark.asyncio
    async def test_document_is_plain_json(self, task_store: TaskStore, task: Task):
        await task_store.save(task)

        raw = json.loads((task_store.task_dir(task.task_id) / "state.json").read_text())
        assert raw["task_id"] == "ISSUE-7"
        assert raw["status"] == "pending"
        assert raw["stages"][1]["requires_approval"] is True

    @pytest.mark.asyncio
    async def test_load_missing(self, task_store: TaskStore):
        with pytest.raises(TaskNotFoundError, match="ISSUE-999"):
            await task_store.load("ISSUE-999")

    @pytest.mark.asyncio
    async def test_load_corrupt_document(self, task_store: TaskStore):
        task_dir = task_store.tasks_dir / "ISSUE-1"
        task_dir.mkdir()
        (task_dir / "state.json").write_text("{truncated")

        with pytest.raises(WorkflowError, match="Corrupt task document"):
            await task_store.load("ISSUE-1")

    @pytest.mark.asyncio
    async def test_list_task_ids(self, task_store: TaskStore, task: Task):
        await task_store.save(task)
        other = Task.create(IssueRef(number=3, title="t", body="", url=""), [])
        await task_store.save(other)

        assert await task_store.list_task_ids() == ["ISSUE-3", "ISSUE-7"]


class TestTransaction:
    """Tests for transaction()."""

    @pytest.mark.asyncio
    async def test_saves_on_clean_exit(self, task_store: TaskStore, task: Task):
        await task_store.save(task)

        async with task_store.transaction(task.task_id) as loaded:
            loaded.pr_number = 99

        assert (await task_store.load(task.task_id)).pr_number == 99

    @pytest.mark.asyncio
    async def test_discards_on_error(self, task_store: TaskStore, task: Task):
        await task_store.save(task)

        with pytest.raises(RuntimeError):
            async with task_store.transaction(task.task_id) as loaded:
                loaded.pr_number = 99
                raise RuntimeError("boom")

        assert (await task_store.load(task.task_id)).pr_number is None

    @pytest.mark.asyncio
    async def test_concurrent_transactions_serialized(self, task_store: TaskStore, task: Task):
        await task_store.save(task)

        async def add_sub_issue(number: int) -> None:
            async with task_store.transaction(task.task_id) as loaded:
                await asyncio.sleep(0)
                loaded.sub_issues.append(number)

        await asyncio.gather(*(add_sub_issue(n) for n in range(100, 105)))

        assert sorted((await task_store.load(task.task_id)).sub_issues) == [100, 101, 102, 103, 104]


class TestArtifacts:
    """Tests for stage artifacts."""

    @pytest.mark.asyncio
    async def test_write_read_append(self, task_store: TaskStore):
        path = await task_store.write_artifact("ISSUE-7", "staging-deployment.md", "# Staging\n")
        await task_store.append_artifact("ISSUE-7", "staging-deployment.md", "\n- URL: https://x\n")

        assert path == task_store.tasks_dir / "ISSUE-7" / "staging-deployment.md"
        assert await task_store.read_artifact("ISSUE-7", "staging-deployment.md") == "# Staging\n\n- URL: https://x\n"

    @pytest.mark.asyncio
    async def test_read_missing_artifact(self, task_store: TaskStore):
        assert await task_store.read_artifact("ISSUE-7", "nothing.md") is None

    @pytest.mark.asyncio
    async def test_artifact_name_must_be_plain(self, task_store: TaskStore):
        with pytest.raises(WorkflowError):
            await task_store.write_artifact("ISSUE-7", "../escape.md", "x")


class TestClaimSet:
    """Tests for the persisted watcher claim set."""

    @pytest.mark.asyncio
    async def test_claim_once(self, temp_state_dir: Path):
        claims = ClaimSet(temp_state_dir / ".watcher-state.json")

        assert await claims.claim(5) is True
        assert await claims.claim(5) is False
        assert await claims.is_claimed(5)

    @pytest.mark.asyncio
    async def test_claim_persisted_before_return(self, temp_state_dir: Path):
        """A fresh ClaimSet (a restarted process) sees earlier claims."""
        path = temp_state_dir / ".watcher-state.json"
        await ClaimSet(path).claim(5)

        restarted = ClaimSet(path)

        assert await restarted.claim(5) is False
        assert json.loads(path.read_text())["processed_issues"] == [5]

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, temp_state_dir: Path):
        claims = ClaimSet(temp_state_dir / ".watcher-state.json")

        results = await asyncio.gather(*(claims.claim(11) for _ in range(5)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_release(self, temp_state_dir: Path):
        claims = ClaimSet(temp_state_dir / ".watcher-state.json")
        await claims.claim(5)
        await claims.claim(6)

        await claims.release(5)
        await claims.release(404)

        assert await claims.members() == {6}

    @pytest.mark.asyncio
    async def test_corrupt_state_file(self, temp_state_dir: Path):
        path = temp_state_dir / ".watcher-state.json"
        path.write_text("not json")

        with pytest.raises(WorkflowError):
            await ClaimSet(path).claim(1)
