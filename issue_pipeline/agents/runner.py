"""Agent execution engine: one bounded conversation per stage.

The engine loads an agent template, assembles the stage prompt, then drives a
turn loop against the reasoning backend. Each turn ends one of three ways:

- ``end_turn``: the text is appended to the output and the loop stops.
- ``tool_use``: every requested call is dispatched in order and one result
  message per call is fed back before the next turn.
- ``max_tokens``: the partial text is kept with a truncation marker and the
  loop stops.

The loop never runs more than ``max_turns`` turns. If the bound is reached
with some text produced, that text is returned. Otherwise the run fails with
BudgetExhaustedError.

``run()`` never raises. Every failure becomes a failed AgentRunResult whose
``error_type`` names the exception class.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from issue_pipeline.agents.backends import STOP_MAX_TOKENS, STOP_TOOL_USE, LLMBackend
from issue_pipeline.agents.sandbox import ToolSandbox
from issue_pipeline.agents.todos import TodoManager
from issue_pipeline.config.settings import ReasoningConfig
from issue_pipeline.exceptions import BudgetExhaustedError, ConfigurationError, PipelineError
from issue_pipeline.models.domain import AgentRunResult, IssueRef, KnowledgeSnippet, TodoState, ToolCall

log = structlog.get_logger(__name__)

SECTION_RULE = "=" * 60
TRUNCATION_NOTICE = "\n\n[Output truncated: response reached the token limit]"
TOOLS_DISABLED_ERROR = "Tools are not enabled for this stage"


@dataclass
class StageContext:
    """Everything an agent sees about the task besides its own template."""

    issue: IssueRef
    task_id: str | None = None
    previous_output: str | None = None
    knowledge: list[KnowledgeSnippet] = field(default_factory=list)
    todo_state: TodoState | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Usage:
    tokens: int = 0
    turns: int = 0


class AgentExecutionEngine:
    """Runs agent templates against a reasoning backend.

    Example:
        engine = AgentExecutionEngine(backend, settings.reasoning, "agents", ToolSandbox("."))
        result = await engine.run("detective", StageContext(issue=ref))
    """

    def __init__(
        self,
        backend: LLMBackend,
        config: ReasoningConfig,
        agents_dir: str | Path,
        sandbox: ToolSandbox | None = None,
    ):
        self.backend = backend
        self.config = config
        self.agents_dir = Path(agents_dir)
        self.sandbox = sandbox

    @property
    def max_turns(self) -> int:
        return self.config.max_turns

    def template_path(self, agent_name: str) -> Path:
        return self.agents_dir / f"{agent_name}.md"

    async def load_template(self, agent_name: str) -> str:
        """Read an agent template.

        Raises:
            ConfigurationError: If the template file does not exist
        """
        path = self.template_path(agent_name)
        if not path.is_file():
            raise ConfigurationError(f"Agent template not found: {path}")
        async with aiofiles.open(path, encoding="utf-8") as f:
            return await f.read()

    def build_prompt(self, template: str, context: StageContext, todos: TodoManager | None = None) -> str:
        """Assemble the full stage prompt from the template and context."""
        issue = context.issue
        parts = [
            template.rstrip(),
            "",
            SECTION_RULE,
            "CONTEXT FOR THIS TASK",
            SECTION_RULE,
            "",
            f"Issue URL: {issue.url}",
            f"Issue Number: #{issue.number}",
            f"Issue Title: {issue.title}",
            "",
            "Issue Description:",
            issue.body or "(no description)",
        ]

        if context.previous_output:
            parts += ["", SECTION_RULE, "OUTPUT FROM PREVIOUS STAGE", SECTION_RULE, "", context.previous_output]

        if context.knowledge:
            parts += ["", SECTION_RULE, "RELEVANT KNOWLEDGE", SECTION_RULE]
            for snippet in context.knowledge:
                parts += ["", f"From {snippet.page}:", snippet.excerpt]

        todo_prompt = todos.to_prompt() if todos else ""
        if todo_prompt:
            parts += ["", SECTION_RULE, todo_prompt]

        if context.extra:
            parts += ["", SECTION_RULE, "ADDITIONAL CONTEXT", SECTION_RULE, ""]
            for key, value in context.extra.items():
                parts.append(f"{key}: {json.dumps(value, indent=2, default=str)}")

        parts += ["", SECTION_RULE, "NOW PROCEED WITH YOUR TASK", SECTION_RULE, ""]
        return "\n".join(parts)

    async def run(
        self,
        agent_name: str,
        context: StageContext,
        tools_enabled: bool = False,
    ) -> AgentRunResult:
        """Execute one agent run.

        Args:
            agent_name: Template name under the agents directory
            context: Issue, previous output, knowledge and todo state
            tools_enabled: Offer the sandbox and todo tools to the model

        Returns:
            AgentRunResult. On failure ``error`` holds the raw message.
        """
        started = time.monotonic()
        todos = TodoManager(context.todo_state)
        usage = _Usage()
        log.info("agent_run_started", agent=agent_name, task_id=context.task_id, tools_enabled=tools_enabled)

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            template = await self.load_template(agent_name)
            prompt = self.build_prompt(template, context, todos)
            output = await self._converse(agent_name, prompt, todos, tools_enabled, usage, context.task_id)
        except PipelineError as e:
            log.error(
                "agent_run_failed",
                agent=agent_name,
                task_id=context.task_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return AgentRunResult(
                success=False,
                tokens_used=usage.tokens,
                duration_ms=elapsed_ms(),
                todo_state=todos.get_state(),
                error=str(e),
                error_type=type(e).__name__,
                turns=usage.turns,
            )
        except Exception as e:
            log.exception("agent_run_unexpected_error", agent=agent_name, task_id=context.task_id)
            return AgentRunResult(
                success=False,
                tokens_used=usage.tokens,
                duration_ms=elapsed_ms(),
                todo_state=todos.get_state(),
                error=str(e),
                error_type=type(e).__name__,
                turns=usage.turns,
            )

        log.info(
            "agent_run_completed",
            agent=agent_name,
            task_id=context.task_id,
            turns=usage.turns,
            tokens_used=usage.tokens,
            output_len=len(output),
        )
        return AgentRunResult(
            success=True,
            output=output,
            tokens_used=usage.tokens,
            duration_ms=elapsed_ms(),
            todo_state=todos.get_state(),
            turns=usage.turns,
        )

    async def _converse(
        self,
        agent_name: str,
        prompt: str,
        todos: TodoManager,
        tools_enabled: bool,
        usage: _Usage,
        task_id: str | None,
    ) -> str:
        """Drive the bounded turn loop and return the accumulated text.

        Raises:
            BudgetExhaustedError: If the bound is reached with no text produced
            TransientServiceError: Propagated from the backend
            ExternalServiceError: Propagated from the backend
        """
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        tools = None
        if tools_enabled:
            tools = todos.definitions() + (self.sandbox.definitions() if self.sandbox else [])

        output_parts: list[str] = []

        for turn in range(1, self.max_turns + 1):
            usage.turns = turn
            response = await self.backend.chat(
                messages=messages,
                model=self.config.model,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                tools=tools,
            )
            usage.tokens += response.total_tokens
            if response.content:
                output_parts.append(response.content)

            log.debug(
                "agent_turn",
                agent=agent_name,
                turn=turn,
                stop_reason=response.stop_reason,
                tool_calls=len(response.tool_calls),
            )

            if response.stop_reason == STOP_MAX_TOKENS:
                log.warning("agent_output_truncated", agent=agent_name, turn=turn)
                return "\n\n".join(output_parts) + TRUNCATION_NOTICE

            if response.stop_reason != STOP_TOOL_USE or not response.has_tool_calls:
                return "\n\n".join(output_parts)

            messages.append(
                {
                    "role": "assistant",
                    "content": response.content,
                    "tool_calls": [
                        {"id": call.id, "name": call.name, "arguments": call.arguments}
                        for call in response.tool_calls
                    ],
                }
            )
            for call in response.tool_calls:
                result = await self._dispatch(call, todos, tools_enabled)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "name": call.name,
                        "content": json.dumps(result, default=str),
                    }
                )

        if output_parts:
            log.warning("agent_turn_budget_reached", agent=agent_name, max_turns=self.max_turns, salvaged=True)
            return "\n\n".join(output_parts)

        raise BudgetExhaustedError(self.max_turns, agent_name=agent_name, task_id=task_id)

    async def _dispatch(self, call: ToolCall, todos: TodoManager, tools_enabled: bool) -> dict[str, Any]:
        if not tools_enabled:
            log.warning("tool_call_rejected", tool=call.name, reason="tools_disabled")
            return {"success": False, "error": TOOLS_DISABLED_ERROR}
        if call.error:
            return {"success": False, "error": call.error}
        if todos.handles(call.name):
            return await todos.execute(call.name, call.arguments)
        if self.sandbox is None:
            return {"success": False, "error": f"Unknown tool: {call.name}"}
        return await self.sandbox.execute(call.name, call.arguments)
