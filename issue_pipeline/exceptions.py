"""Custom exception hierarchy for the issue pipeline.

This module defines a structured exception hierarchy so that callers can tell
fatal setup problems apart from stage failures and from untrusted agent output
that was rejected locally.

Exception Hierarchy:
    PipelineError (base)
    ├── ConfigurationError
    ├── TransientServiceError
    ├── ExternalServiceError
    ├── ValidationError
    ├── SandboxViolation
    ├── WorkflowError
    │   ├── StageExecutionError
    │   └── TaskNotFoundError
    └── AgentError
        └── BudgetExhaustedError

Example Usage:
    >>> from issue_pipeline.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""

from typing import Any


class PipelineError(Exception):
    """Base exception for all issue pipeline errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(PipelineError):
    """Configuration-related errors.

    Fatal: raised before any stage runs when a credential, an agent template
    or a required setting is missing or invalid.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Reasoning backend API key not configured
        - Agent template file missing
    """

    pass


class TransientServiceError(PipelineError):
    """A reasoning-service or REST call failed in a retryable way.

    The execution engine never retries these itself. Whether to retry is
    decided at the orchestration level.

    Attributes:
        status_code: HTTP status code (if applicable)
        service: Name of the service that failed
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        service: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.service = service

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class ExternalServiceError(PipelineError):
    """Non-retryable failure from an external collaborator.

    Examples:
        - API rejected the request (4xx)
        - Deployment finished in an error state
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class ValidationError(PipelineError):
    """Machine-generated structured output failed validation.

    Raised for decomposition output and malformed tool-call arguments. The
    owning component recovers by discarding the untrusted result.

    Attributes:
        errors: Every individual problem found, in discovery order
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = list(errors or [])
        full_message = message
        if self.errors:
            full_message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(full_message)
        self.message = message


class SandboxViolation(PipelineError):
    """A requested tool operation would escape the sandbox root.

    Attributes:
        path: The offending path as supplied by the agent
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class WorkflowError(PipelineError):
    """Workflow execution errors.

    Examples:
        - Approving a task that is not awaiting approval
        - Running a stage on a failed task
        - State persistence failed
    """

    pass


class TaskNotFoundError(WorkflowError):
    """No persisted task document exists for the requested id."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class StageExecutionError(WorkflowError):
    """A pipeline stage failed.

    Attributes:
        task_id: Identifier of the failed task
        stage: Stage name where failure occurred
        recoverable: Whether a recovery pass may be attempted
    """

    def __init__(
        self,
        message: str,
        task_id: str | None = None,
        stage: str | None = None,
        recoverable: bool = True,
    ) -> None:
        self.task_id = task_id
        self.stage = stage
        self.recoverable = recoverable

        parts = [message]
        if task_id:
            parts.append(f"task: {task_id}")
        if stage:
            parts.append(f"stage: {stage}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        # Preserve original message
        self.message = message


# =============================================================================
# Agent Errors
# =============================================================================


class AgentError(PipelineError):
    """Base exception for agent execution errors.

    Attributes:
        message: Human-readable error description
        agent_name: Agent template that was running
        task_id: Optional task ID being executed when error occurred
    """

    def __init__(
        self,
        message: str,
        agent_name: str | None = None,
        task_id: str | None = None,
    ) -> None:
        self.agent_name = agent_name
        self.task_id = task_id

        parts = [message]
        if agent_name:
            parts.append(f"agent: {agent_name}")
        if task_id:
            parts.append(f"task: {task_id}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        self.message = message


class BudgetExhaustedError(AgentError):
    """The turn loop hit its maximum without producing usable text.

    This is a real stage failure and is never converted into an empty
    success.

    Attributes:
        max_turns: The turn budget that was exhausted
    """

    def __init__(
        self,
        max_turns: int,
        agent_name: str | None = None,
        task_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.max_turns = max_turns
        self.details = details or {}
        super().__init__(
            f"Turn budget exhausted after {max_turns} turns without usable output",
            agent_name=agent_name,
            task_id=task_id,
        )
