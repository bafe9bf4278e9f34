"""Agents subpackage for issue-pipeline.

This package contains the reasoning backends, the sandboxed tools and the
execution engine that runs one agent template per stage.
"""

from issue_pipeline.agents.backends import (
    AnthropicBackend,
    ChatResponse,
    LLMBackend,
    OllamaBackend,
    OpenAIBackend,
    create_backend,
)
from issue_pipeline.agents.runner import AgentExecutionEngine, StageContext
from issue_pipeline.agents.sandbox import ToolDefinition, ToolSandbox
from issue_pipeline.agents.todos import TodoManager

__all__ = [
    # Engine
    "AgentExecutionEngine",
    "StageContext",
    # Tools
    "ToolSandbox",
    "ToolDefinition",
    "TodoManager",
    # Backends
    "LLMBackend",
    "AnthropicBackend",
    "OllamaBackend",
    "OpenAIBackend",
    "ChatResponse",
    "create_backend",
]
