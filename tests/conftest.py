"""Pytest configuration and shared fixtures."""

from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from issue_pipeline.agents.backends import ChatResponse, LLMBackend
from issue_pipeline.agents.runner import AgentExecutionEngine
from issue_pipeline.agents.sandbox import ToolDefinition, ToolSandbox
from issue_pipeline.config.settings import PipelineSettings
from issue_pipeline.engine.task_store import TaskStore
from issue_pipeline.models.domain import Comment, Issue, IssueState, PullRequest

EXTRA_AGENTS = ("debugger", "decomposer")

Reply = str | ChatResponse | Callable[[list[dict[str, Any]]], ChatResponse]


class ScriptedBackend(LLMBackend):
    """Reasoning backend that replays canned turns per agent.

    Agent templates written by the ``agents_dir`` fixture start with
    ``AGENT: <name>``, which is how a conversation is attributed to an agent.
    Agents without a script answer with a short summary and end the turn.
    """

    name = "scripted"

    def __init__(self, replies: dict[str, list[Reply]] | None = None):
        super().__init__("http://scripted.test")
        self.replies: dict[str, list[Reply]] = {agent: list(turns) for agent, turns in (replies or {}).items()}
        self.calls: list[dict[str, Any]] = []

    def script(self, agent: str, *turns: Reply) -> None:
        self.replies.setdefault(agent, []).extend(turns)

    @staticmethod
    def agent_of(messages: list[dict[str, Any]]) -> str:
        first_line = messages[0]["content"].splitlines()[0]
        return first_line.removeprefix("AGENT:").strip()

    def calls_for(self, agent: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["agent"] == agent]

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        tools: list[ToolDefinition] | None = None,
    ) -> ChatResponse:
        agent = self.agent_of(messages)
        self.calls.append(
            {"agent": agent, "messages": [dict(m) for m in messages], "tools": [t.name for t in tools or []]}
        )
        queue = self.replies.get(agent)
        if not queue:
            return ChatResponse(content=f"## Summary\n\n{agent} finished.", input_tokens=10, output_tokens=5)

        reply = queue.pop(0)
        if isinstance(reply, ChatResponse):
            return reply
        if isinstance(reply, str):
            return ChatResponse(content=reply, input_tokens=10, output_tokens=5)
        return reply(messages)


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary tasks directory."""
    state_dir = tmp_path / "tasks"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def task_store(temp_state_dir: Path) -> TaskStore:
    """TaskStore instance with temp directory."""
    return TaskStore(temp_state_dir)


@pytest.fixture
def sample_issue() -> Issue:
    """Sample issue for testing."""
    return Issue(
        id=1001,
        number=42,
        title="Login fails with 500 error",
        body="Submitting the login form returns HTTP 500 when the password contains a quote.",
        state=IssueState.OPEN,
        labels=["bug"],
        url="https://github.com/test-owner/test-repo/issues/42",
        author="reporter",
        created_at=datetime(2026, 1, 5, 12, 0, 0),
        updated_at=datetime(2026, 1, 5, 12, 0, 0),
    )


@pytest.fixture
def mock_settings(tmp_path: Path, temp_state_dir: Path) -> PipelineSettings:
    """Settings rooted in the test's temporary directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return PipelineSettings(
        repository={"owner": "test-owner", "name": "test-repo", "default_branch": "main"},
        git_provider={"api_token": "ghp_test_token"},
        reasoning={"backend": "anthropic", "model": "test-model", "api_key": "test-key", "max_turns": 5},
        workflow={
            "tasks_directory": str(temp_state_dir),
            "agents_directory": str(tmp_path / "agents"),
            "workspace_directory": str(workspace),
            "recovery_attempts": 0,
        },
        knowledge={"directory": str(tmp_path / "knowledge")},
    )


@pytest.fixture
def agents_dir(mock_settings: PipelineSettings) -> Path:
    """One template per catalog agent, plus the recovery and decomposer agents."""
    directory = mock_settings.agents_dir
    directory.mkdir(parents=True, exist_ok=True)
    agents = {stage.agent for stage in mock_settings.workflow.stages} | set(EXTRA_AGENTS)
    for agent in agents:
        (directory / f"{agent}.md").write_text(f"AGENT: {agent}\n\nYou are the {agent} agent.\n")
    return directory


@pytest.fixture
def fake_git(sample_issue: Issue) -> AsyncMock:
    """Git provider mock that knows about ``sample_issue``."""
    git = AsyncMock()
    git.get_issue.return_value = sample_issue
    git.get_issues.return_value = [sample_issue]
    git.add_comment.return_value = Comment(id=1, body="", author="bot")
    git.create_pull_request.return_value = PullRequest(
        id=900,
        number=77,
        title="Fix: Login fails with 500 error",
        head="fix/issue-42-login-fails-with-500-error",
        base="main",
        url="https://github.com/test-owner/test-repo/pull/77",
    )
    git.close_issue.return_value = sample_issue
    return git


@pytest.fixture
def scripted_backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def engine(
    scripted_backend: ScriptedBackend, mock_settings: PipelineSettings, agents_dir: Path
) -> AgentExecutionEngine:
    """Execution engine wired to the scripted backend and a workspace sandbox."""
    return AgentExecutionEngine(
        scripted_backend,
        mock_settings.reasoning,
        agents_dir,
        sandbox=ToolSandbox(mock_settings.workspace_dir),
    )
