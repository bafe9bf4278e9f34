"""Tests for issue_pipeline/agents/todos.py."""

import pytest

from issue_pipeline.agents.todos import TodoManager
from issue_pipeline.models.domain import TodoItem, TodoPriority, TodoState, TodoStatus


class TestTodoManager:
    """Tests for direct TodoManager operations."""

    def test_seeded_state_is_copied(self):
        """Mutating the manager never changes the state it was seeded from."""
        state = TodoState(todos=[TodoItem(id="a1", content="Write tests")])
        manager = TodoManager(state)

        manager.update("a1", TodoStatus.COMPLETED)

        assert state.todos[0].status == TodoStatus.PENDING
        assert manager.get_state().todos[0].status == TodoStatus.COMPLETED

    def test_list_orders_by_priority(self):
        manager = TodoManager()
        manager.add("low thing", TodoPriority.LOW)
        manager.add("urgent thing", TodoPriority.HIGH)
        manager.add("normal thing")

        assert [item.content for item in manager.list_items()] == ["urgent thing", "normal thing", "low thing"]

    def test_blocked_requires_reason(self):
        manager = TodoManager()
        item = manager.add("Deploy")

        with pytest.raises(ValueError):
            manager.update(item.id, TodoStatus.BLOCKED)

        manager.update(item.id, TodoStatus.BLOCKED, "waiting on credentials")
        assert manager.todos[0].blocked_reason == "waiting on credentials"

    def test_completing_sets_timestamp_and_unblocking_clears_reason(self):
        manager = TodoManager()
        item = manager.add("Deploy")
        manager.update(item.id, TodoStatus.BLOCKED, "no access")

        manager.update(item.id, TodoStatus.COMPLETED)

        assert item.blocked_reason is None
        assert item.completed_at is not None

    def test_clear_completed(self):
        manager = TodoManager()
        done = manager.add("done")
        manager.add("open")
        manager.update(done.id, TodoStatus.COMPLETED)

        assert manager.clear_completed() == 1
        assert [item.content for item in manager.todos] == ["open"]

    def test_summary_counts(self):
        manager = TodoManager()
        first = manager.add("one")
        manager.add("two")
        manager.update(first.id, TodoStatus.IN_PROGRESS)

        summary = manager.summary()

        assert summary["total"] == 2
        assert summary["in_progress"] == 1
        assert summary["pending"] == 1


class TestTodoTools:
    """Tests for the todo_* tool interface."""

    @pytest.mark.asyncio
    async def test_add_and_list(self):
        manager = TodoManager()

        added = await manager.execute("todo_add", {"content": "Update docs", "priority": "HIGH"})
        listed = await manager.execute("todo_list", {})

        assert added["success"] is True
        assert added["todo"]["priority"] == "high"
        assert listed["todos"][0]["content"] == "Update docs"
        assert listed["summary"]["total"] == 1

    @pytest.mark.asyncio
    async def test_update_unknown_id(self):
        result = await TodoManager().execute("todo_update", {"id": "missing", "status": "completed"})
        assert result == {"success": False, "error": "Todo not found: missing"}

    @pytest.mark.asyncio
    async def test_invalid_status(self):
        manager = TodoManager()
        item = manager.add("x")

        result = await manager.execute("todo_update", {"id": item.id, "status": "exploded"})

        assert result["success"] is False
        assert "Invalid arguments" in result["error"]

    @pytest.mark.asyncio
    async def test_add_requires_content(self):
        result = await TodoManager().execute("todo_add", {"content": "  "})
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_remove(self):
        manager = TodoManager()
        item = manager.add("x")

        assert (await manager.execute("todo_remove", {"id": item.id}))["success"] is True
        assert (await manager.execute("todo_remove", {"id": item.id}))["success"] is False

    def test_handles_only_todo_tools(self):
        assert TodoManager.handles("todo_add")
        assert not TodoManager.handles("read_file")


class TestRendering:
    """Tests for prompt and markdown rendering."""

    def test_empty_prompt(self):
        assert TodoManager().to_prompt() == ""
        assert TodoManager().to_markdown() == "_No todo items._"

    def test_prompt_lists_items_with_markers(self):
        manager = TodoManager()
        item = manager.add("Fix flaky test", TodoPriority.HIGH)
        manager.update(item.id, TodoStatus.BLOCKED, "CI down")

        prompt = manager.to_prompt()

        assert prompt.startswith("CURRENT TODO LIST:")
        assert f"[!] (high) Fix flaky test [id: {item.id}] (blocked: CI down)" in prompt
        assert "Progress: 0/1 completed, 0 in progress, 1 blocked" in prompt

    def test_markdown_escapes_pipes(self):
        manager = TodoManager()
        manager.add("a | b")
        assert "a \\| b" in manager.to_markdown()
