"""Todo list tools that carry outstanding sub-work across stages.

An agent run receives the task's current TodoState, may add or update items
through the ``todo_*`` tools, and hands the resulting state back to the
orchestrator, which stores it on the stage record and passes it to the next
stage.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from issue_pipeline.agents.sandbox import ToolDefinition
from issue_pipeline.models.domain import TodoItem, TodoPriority, TodoState, TodoStatus, utc_now

log = structlog.get_logger(__name__)

_PRIORITY_ORDER = {TodoPriority.HIGH: 0, TodoPriority.MEDIUM: 1, TodoPriority.LOW: 2}

_STATUS_MARKERS = {
    TodoStatus.COMPLETED: "[x]",
    TodoStatus.IN_PROGRESS: "[>]",
    TodoStatus.PENDING: "[ ]",
    TodoStatus.BLOCKED: "[!]",
}

TODO_TOOLS: dict[str, ToolDefinition] = {
    "todo_add": ToolDefinition(
        name="todo_add",
        description="Add an item to the shared todo list. Use it to track work later stages must finish.",
        parameters={
            "content": "What needs to be done",
            "priority": "high, medium or low (default: medium)",
        },
        required=("content",),
    ),
    "todo_update": ToolDefinition(
        name="todo_update",
        description="Change the status of a todo item.",
        parameters={
            "id": "Todo item id",
            "status": "pending, in_progress, completed or blocked",
            "blocked_reason": "Why the item is blocked (required when status is blocked)",
        },
        required=("id", "status"),
    ),
    "todo_list": ToolDefinition(
        name="todo_list",
        description="List todo items, highest priority first.",
        parameters={"status": "Only list items with this status (optional)"},
    ),
    "todo_remove": ToolDefinition(
        name="todo_remove",
        description="Remove a todo item.",
        parameters={"id": "Todo item id"},
        required=("id",),
    ),
    "todo_clear_completed": ToolDefinition(
        name="todo_clear_completed",
        description="Remove every completed todo item.",
        parameters={},
    ),
}


class TodoManager:
    """In-memory todo list for one agent run, seeded from a TodoState."""

    TOOLS = TODO_TOOLS

    def __init__(self, state: TodoState | None = None):
        self._todos: list[TodoItem] = [
            TodoItem.from_dict(item.to_dict()) for item in (state.todos if state else [])
        ]

    @staticmethod
    def handles(tool_name: str) -> bool:
        return tool_name in TODO_TOOLS

    def definitions(self) -> list[ToolDefinition]:
        return list(self.TOOLS.values())

    @property
    def todos(self) -> list[TodoItem]:
        return list(self._todos)

    def get_state(self) -> TodoState:
        return TodoState(todos=[TodoItem.from_dict(item.to_dict()) for item in self._todos])

    def _find(self, todo_id: str) -> TodoItem | None:
        return next((item for item in self._todos if item.id == todo_id), None)

    def add(self, content: str, priority: TodoPriority = TodoPriority.MEDIUM) -> TodoItem:
        item = TodoItem(id=uuid.uuid4().hex[:8], content=content, priority=priority)
        self._todos.append(item)
        log.debug("todo_added", todo_id=item.id, priority=priority.value)
        return item

    def update(self, todo_id: str, status: TodoStatus, blocked_reason: str | None = None) -> TodoItem:
        """Change an item's status.

        Raises:
            KeyError: If no item has ``todo_id``
            ValueError: If status is BLOCKED and no reason was given
        """
        item = self._find(todo_id)
        if item is None:
            raise KeyError(todo_id)
        if status == TodoStatus.BLOCKED and not blocked_reason:
            raise ValueError("blocked_reason is required when status is blocked")

        item.status = status
        item.blocked_reason = blocked_reason if status == TodoStatus.BLOCKED else None
        item.completed_at = utc_now() if status == TodoStatus.COMPLETED else None
        return item

    def list_items(self, status: TodoStatus | None = None) -> list[TodoItem]:
        items = [item for item in self._todos if status is None or item.status == status]
        return sorted(items, key=lambda item: (_PRIORITY_ORDER[item.priority], item.created_at))

    def remove(self, todo_id: str) -> bool:
        item = self._find(todo_id)
        if item is None:
            return False
        self._todos.remove(item)
        return True

    def clear_completed(self) -> int:
        before = len(self._todos)
        self._todos = [item for item in self._todos if item.status != TodoStatus.COMPLETED]
        return before - len(self._todos)

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TodoStatus}
        for item in self._todos:
            counts[item.status.value] += 1
        counts["total"] = len(self._todos)
        return counts

    async def execute(self, tool_name: str, params: dict[str, Any] | None) -> dict[str, Any]:
        """Run a ``todo_*`` tool. Never raises."""
        params = params if isinstance(params, dict) else {}
        try:
            if tool_name == "todo_add":
                content = str(params.get("content") or "").strip()
                if not content:
                    return {"success": False, "error": "'content' parameter is required"}
                priority = TodoPriority(str(params.get("priority") or "medium").lower())
                item = self.add(content, priority)
                return {"success": True, "todo": item.to_dict()}
            elif tool_name == "todo_update":
                status = TodoStatus(str(params.get("status") or "").lower())
                item = self.update(str(params.get("id") or ""), status, params.get("blocked_reason"))
                return {"success": True, "todo": item.to_dict()}
            elif tool_name == "todo_list":
                status_filter = params.get("status")
                items = self.list_items(TodoStatus(str(status_filter).lower()) if status_filter else None)
                return {"success": True, "todos": [item.to_dict() for item in items], "summary": self.summary()}
            elif tool_name == "todo_remove":
                todo_id = str(params.get("id") or "")
                if not self.remove(todo_id):
                    return {"success": False, "error": f"Todo not found: {todo_id}"}
                return {"success": True, "removed": todo_id}
            elif tool_name == "todo_clear_completed":
                return {"success": True, "removed_count": self.clear_completed()}
            else:
                return {"success": False, "error": f"Unknown tool: {tool_name}"}
        except KeyError as e:
            return {"success": False, "error": f"Todo not found: {e.args[0]}"}
        except ValueError as e:
            return {"success": False, "error": f"Invalid arguments: {e}"}

    def to_prompt(self) -> str:
        """Render the list for inclusion in an agent prompt."""
        if not self._todos:
            return ""
        lines = ["CURRENT TODO LIST:"]
        for item in self.list_items():
            line = f"{_STATUS_MARKERS[item.status]} ({item.priority.value}) {item.content} [id: {item.id}]"
            if item.status == TodoStatus.BLOCKED and item.blocked_reason:
                line += f" (blocked: {item.blocked_reason})"
            lines.append(line)
        counts = self.summary()
        lines.append(
            f"Progress: {counts['completed']}/{counts['total']} completed, "
            f"{counts['in_progress']} in progress, {counts['blocked']} blocked"
        )
        return "\n".join(lines)

    def to_markdown(self) -> str:
        """Render the list as a markdown table for issue comments."""
        if not self._todos:
            return "_No todo items._"
        lines = ["| Status | Priority | Item |", "|---|---|---|"]
        for item in self.list_items():
            content = item.content.replace("|", "\\|")
            if item.blocked_reason:
                content += f" (blocked: {item.blocked_reason})"
            lines.append(f"| {_STATUS_MARKERS[item.status]} | {item.priority.value} | {content} |")
        return "\n".join(lines)
