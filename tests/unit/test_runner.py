"""Tests for issue_pipeline/agents/runner.py - the bounded turn loop."""

import json
from pathlib import Path

import pytest

from issue_pipeline.agents.backends import STOP_MAX_TOKENS, STOP_TOOL_USE, ChatResponse
from issue_pipeline.agents.runner import (
    SECTION_RULE,
    TOOLS_DISABLED_ERROR,
    TRUNCATION_NOTICE,
    AgentExecutionEngine,
    StageContext,
)
from issue_pipeline.models.domain import IssueRef, KnowledgeSnippet, TodoItem, TodoState, ToolCall


@pytest.fixture
def issue_ref() -> IssueRef:
    return IssueRef(
        number=42,
        title="Login fails with 500 error",
        body="Password with a quote breaks login.",
        url="https://github.com/test-owner/test-repo/issues/42",
        labels=["bug"],
    )


@pytest.fixture
def context(issue_ref: IssueRef) -> StageContext:
    return StageContext(issue=issue_ref, task_id="ISSUE-42")


def tool_turn(*calls: ToolCall, content: str = "") -> ChatResponse:
    return ChatResponse(content=content, stop_reason=STOP_TOOL_USE, tool_calls=list(calls), input_tokens=10)


class TestBuildPrompt:
    """Tests for prompt assembly."""

    def test_sections_in_order(self, engine: AgentExecutionEngine, issue_ref: IssueRef):
        context = StageContext(
            issue=issue_ref,
            previous_output="Triage says: parser bug",
            knowledge=[KnowledgeSnippet(page="Issue-History", excerpt="Quotes broke search before.", score=1.0)],
            extra={"branch_name": "fix/issue-42-login"},
        )

        prompt = engine.build_prompt("TEMPLATE BODY", context)

        order = [
            "TEMPLATE BODY",
            "CONTEXT FOR THIS TASK",
            "Issue Number: #42",
            "OUTPUT FROM PREVIOUS STAGE",
            "Triage says: parser bug",
            "RELEVANT KNOWLEDGE",
            "From Issue-History:",
            "ADDITIONAL CONTEXT",
            'branch_name: "fix/issue-42-login"',
            "NOW PROCEED WITH YOUR TASK",
        ]
        positions = [prompt.index(marker) for marker in order]
        assert positions == sorted(positions)
        assert SECTION_RULE in prompt

    def test_optional_sections_omitted(self, engine: AgentExecutionEngine, context: StageContext):
        prompt = engine.build_prompt("T", context)

        assert "OUTPUT FROM PREVIOUS STAGE" not in prompt
        assert "RELEVANT KNOWLEDGE" not in prompt
        assert "ADDITIONAL CONTEXT" not in prompt

    def test_empty_body_placeholder(self, engine: AgentExecutionEngine):
        context = StageContext(issue=IssueRef(number=1, title="t", body="", url="u"))
        assert "(no description)" in engine.build_prompt("T", context)


class TestRun:
    """Tests for the turn loop."""

    @pytest.mark.asyncio
    async def test_single_turn(self, engine, scripted_backend, context):
        scripted_backend.script("detective", "## Summary\nFound it.")

        result = await engine.run("detective", context)

        assert result.success is True
        assert result.output == "## Summary\nFound it."
        assert result.turns == 1
        assert result.tokens_used == 15
        assert result.error is None

    @pytest.mark.asyncio
    async def test_template_is_prompt_prefix(self, engine, scripted_backend, context):
        await engine.run("critic", context)

        prompt = scripted_backend.calls[0]["messages"][0]["content"]
        assert prompt.startswith("AGENT: critic")
        assert "Issue Title: Login fails with 500 error" in prompt

    @pytest.mark.asyncio
    async def test_missing_template_is_configuration_error(self, engine, context):
        result = await engine.run("no-such-agent", context)

        assert result.success is False
        assert result.error_type == "ConfigurationError"
        assert "Agent template not found" in result.error

    @pytest.mark.asyncio
    async def test_tools_only_offered_when_enabled(self, engine, scripted_backend, context):
        await engine.run("critic", context)
        await engine.run("surgeon", context, tools_enabled=True)

        assert scripted_backend.calls[0]["tools"] == []
        offered = scripted_backend.calls[1]["tools"]
        assert "read_file" in offered
        assert "todo_add" in offered

    @pytest.mark.asyncio
    async def test_tool_results_fed_back_in_order(self, engine, scripted_backend, context, mock_settings):
        """Every call in a turn gets exactly one result message, in call order."""
        (mock_settings.workspace_dir / "app.py").write_text("bug = True\n")
        scripted_backend.script(
            "surgeon",
            tool_turn(
                ToolCall(id="t1", name="read_file", arguments={"path": "app.py"}),
                ToolCall(id="t2", name="write_file", arguments={"path": "app.py", "content": "bug = False\n"}),
                content="Looking at the file.",
            ),
            "## Summary\nFixed the flag.",
        )

        result = await engine.run("surgeon", context, tools_enabled=True)

        assert result.success is True
        assert result.output == "Looking at the file.\n\n## Summary\nFixed the flag."
        assert (mock_settings.workspace_dir / "app.py").read_text() == "bug = False\n"

        second_turn = scripted_backend.calls[1]["messages"]
        assert second_turn[1]["role"] == "assistant"
        assert [c["id"] for c in second_turn[1]["tool_calls"]] == ["t1", "t2"]
        tool_messages = second_turn[2:]
        assert [m["tool_call_id"] for m in tool_messages] == ["t1", "t2"]
        assert json.loads(tool_messages[0]["content"])["content"] == "bug = True\n"

    @pytest.mark.asyncio
    async def test_tool_calls_rejected_when_disabled(self, engine, scripted_backend, context):
        scripted_backend.script(
            "critic",
            tool_turn(ToolCall(id="t1", name="write_file", arguments={"path": "x", "content": "y"})),
            "done",
        )

        result = await engine.run("critic", context, tools_enabled=False)

        assert result.success is True
        tool_message = scripted_backend.calls[1]["messages"][-1]
        assert json.loads(tool_message["content"]) == {"success": False, "error": TOOLS_DISABLED_ERROR}

    @pytest.mark.asyncio
    async def test_malformed_arguments_reported_to_model(self, engine, scripted_backend, context):
        scripted_backend.script(
            "surgeon",
            tool_turn(ToolCall(id="t1", name="read_file", arguments={}, error="Invalid tool arguments: bad")),
            "ok",
        )

        await engine.run("surgeon", context, tools_enabled=True)

        tool_message = scripted_backend.calls[1]["messages"][-1]
        assert json.loads(tool_message["content"])["error"] == "Invalid tool arguments: bad"

    @pytest.mark.asyncio
    async def test_max_tokens_truncates(self, engine, scripted_backend, context):
        scripted_backend.script("detective", ChatResponse(content="partial analysis", stop_reason=STOP_MAX_TOKENS))

        result = await engine.run("detective", context)

        assert result.success is True
        assert result.output == "partial analysis" + TRUNCATION_NOTICE
        assert result.turns == 1

    @pytest.mark.asyncio
    async def test_budget_exhausted_without_text_fails(self, engine, scripted_backend, context):
        """A model that only ever calls tools fails the run once the bound is hit."""
        turns = [tool_turn(ToolCall(id=f"t{i}", name="todo_list", arguments={})) for i in range(10)]
        scripted_backend.script("surgeon", *turns)

        result = await engine.run("surgeon", context, tools_enabled=True)

        assert result.success is False
        assert result.error_type == "BudgetExhaustedError"
        assert result.turns == engine.max_turns
        assert len(scripted_backend.calls_for("surgeon")) == engine.max_turns

    @pytest.mark.asyncio
    async def test_budget_exhausted_with_text_salvages(self, engine, scripted_backend, context):
        turns = [
            tool_turn(ToolCall(id=f"t{i}", name="todo_list", arguments={}), content=f"step {i}") for i in range(10)
        ]
        scripted_backend.script("surgeon", *turns)

        result = await engine.run("surgeon", context, tools_enabled=True)

        assert result.success is True
        assert result.output.startswith("step 0\n\nstep 1")
        assert result.turns == engine.max_turns

    @pytest.mark.asyncio
    async def test_backend_error_becomes_failed_result(self, engine, scripted_backend, context):
        from issue_pipeline.exceptions import TransientServiceError

        def explode(messages):
            raise TransientServiceError("overloaded", status_code=529, service="scripted")

        scripted_backend.script("detective", explode)

        result = await engine.run("detective", context)

        assert result.success is False
        assert result.error_type == "TransientServiceError"
        assert "overloaded" in result.error

    @pytest.mark.asyncio
    async def test_todo_state_carried_through(self, engine, scripted_backend, issue_ref):
        seeded = TodoState(todos=[TodoItem(id="keep1", content="Update changelog")])
        scripted_backend.script(
            "surgeon",
            tool_turn(ToolCall(id="t1", name="todo_add", arguments={"content": "Add regression test"})),
            "done",
        )

        result = await engine.run("surgeon", StageContext(issue=issue_ref, todo_state=seeded), tools_enabled=True)

        contents = [item.content for item in result.todo_state.todos]
        assert contents == ["Update changelog", "Add regression test"]
        prompt = scripted_backend.calls[0]["messages"][0]["content"]
        assert "CURRENT TODO LIST:" in prompt
        assert "Update changelog" in prompt

    @pytest.mark.asyncio
    async def test_sandbox_absent_reports_unknown_tool(self, scripted_backend, mock_settings, agents_dir, context):
        engine = AgentExecutionEngine(scripted_backend, mock_settings.reasoning, Path(agents_dir))
        scripted_backend.script(
            "surgeon",
            tool_turn(ToolCall(id="t1", name="read_file", arguments={"path": "a"})),
            "done",
        )

        await engine.run("surgeon", context, tools_enabled=True)

        tool_message = scripted_backend.calls[1]["messages"][-1]
        assert json.loads(tool_message["content"]) == {"success": False, "error": "Unknown tool: read_file"}
