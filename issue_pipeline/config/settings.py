"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the reasoning backend, the
version-control and deployment collaborators, the stage catalog and the
decomposition subsystem. Settings load from YAML with environment variable
interpolation, and every field can also be overridden through
``PIPELINE_``-prefixed environment variables (nested with ``__``, e.g.
``PIPELINE_DECOMPOSITION__ENABLED=true``).
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from issue_pipeline.config.stages import StageDefinition, default_stages
from issue_pipeline.exceptions import ConfigurationError


class RepositoryConfig(BaseModel):
    """Repository configuration."""

    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    default_branch: str = Field(default="main", description="Base branch for pull requests")


class GitProviderConfig(BaseModel):
    """Version-control host configuration.

    The token may come from the YAML file (``api_token: "${GITHUB_TOKEN}"``) or
    from ``PIPELINE_GIT_PROVIDER__API_TOKEN``.
    """

    provider_type: Literal["github"] = Field(default="github", description="Type of Git provider")
    base_url: str = Field(default="https://api.github.com", description="API base URL (GitHub Enterprise aware)")
    api_token: SecretStr | None = Field(default=None, description="API token for authentication")


class ReasoningConfig(BaseModel):
    """Reasoning-service (LLM backend) configuration."""

    backend: Literal["anthropic", "openai", "ollama"] = Field(default="anthropic", description="Backend type")
    model: str = Field(default="claude-sonnet-4", description="Model identifier")
    base_url: str | None = Field(default=None, description="Override the backend's default API URL")
    api_key: SecretStr | None = Field(default=None, description="API key for hosted backends")
    max_tokens: int = Field(default=8000, ge=1, description="Maximum tokens per response")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="Sampling temperature")
    max_turns: int = Field(default=10, ge=1, le=50, description="Turn budget per agent run")
    timeout: int = Field(default=300, ge=1, description="Request timeout in seconds")

    @property
    def requires_api_key(self) -> bool:
        """Hosted endpoints need a key; local or self-hosted ones may not."""
        if self.backend == "anthropic":
            return True
        if self.backend == "openai":
            return self.base_url is None
        return False


class WorkflowConfig(BaseModel):
    """Pipeline behavior configuration."""

    tasks_directory: str = Field(default="tasks", description="Directory for task documents and artifacts")
    agents_directory: str = Field(default="agents", description="Directory of agent template files")
    workspace_directory: str = Field(default=".", description="Root of the tool sandbox")
    max_concurrent_tasks: int = Field(default=3, ge=1, le=10, description="Maximum tasks run concurrently")
    poll_interval: int = Field(default=30, ge=1, description="Watcher polling interval in seconds")
    recovery_attempts: int = Field(default=3, ge=0, le=10, description="Recovery passes per failed stage")
    recovery_agent: str = Field(default="debugger", description="Agent template used for recovery passes")
    stages: list[StageDefinition] = Field(default_factory=default_stages, description="Ordered stage catalog")

    @model_validator(mode="after")
    def validate_stages(self) -> WorkflowConfig:
        """Stage names must be unique and the catalog non-empty."""
        if not self.stages:
            raise ValueError("workflow.stages must contain at least one stage")
        names = [stage.name for stage in self.stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names in workflow.stages: {', '.join(duplicates)}")
        return self


class DecompositionConfig(BaseModel):
    """Automatic issue decomposition."""

    enabled: bool = Field(default=False, description="Run the decomposition check after intake")
    agent: str = Field(default="decomposer", description="Agent template that proposes sub-tasks")
    max_sub_tasks: int = Field(default=5, ge=1, le=20, description="Upper bound on sub-tasks per issue")
    min_title_length: int = Field(default=3, ge=1)
    min_description_length: int = Field(default=10, ge=1)
    parent_excerpt_length: int = Field(default=500, ge=0, description="Parent body excerpt copied into children")


class DeploymentConfig(BaseModel):
    """Deployment platform (Vercel-style REST API) configuration."""

    enabled: bool = Field(default=False, description="Deploy after the staging and production stages")
    base_url: str = Field(default="https://api.vercel.com")
    token: SecretStr | None = Field(default=None)
    project_id: str | None = Field(default=None)
    team_id: str | None = Field(default=None)
    timeout: int = Field(default=600, ge=1, description="Seconds to wait for a deployment to become ready")
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between status polls")

    @model_validator(mode="after")
    def validate_credentials(self) -> DeploymentConfig:
        if self.enabled and (self.token is None or not self.project_id):
            raise ValueError("deployment.token and deployment.project_id are required when deployment is enabled")
        return self


class KnowledgeConfig(BaseModel):
    """Markdown knowledge store configuration."""

    enabled: bool = Field(default=False)
    directory: str = Field(default="knowledge", description="Directory of markdown pages")
    history_page: str = Field(default="Issue-History", description="Page the archivist stage appends to")
    max_snippets: int = Field(default=3, ge=0, description="Snippets injected into each stage context")


class LabelsConfig(BaseModel):
    """Issue labels the pipeline reads and writes."""

    in_progress: str = Field(default="in-progress")
    completed: str = Field(default="completed")
    awaiting_review: str = Field(default="awaiting-human-review")
    decomposed: str = Field(default="decomposed")
    sub_issue: str = Field(default="sub-issue")
    closed_by_approval: str = Field(default="closed-by-approval")
    human_override: str = Field(default="human-override")


class PipelineSettings(BaseSettings):
    """Main pipeline settings.

    Combines all configuration sections and provides loading from YAML files
    with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    repository: RepositoryConfig
    git_provider: GitProviderConfig = Field(default_factory=GitProviderConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    decomposition: DecompositionConfig = Field(default_factory=DecompositionConfig)
    deployment: DeploymentConfig = Field(default_factory=DeploymentConfig)
    knowledge: KnowledgeConfig = Field(default_factory=KnowledgeConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)

    @property
    def tasks_dir(self) -> Path:
        return Path(self.workflow.tasks_directory)

    @property
    def agents_dir(self) -> Path:
        return Path(self.workflow.agents_directory)

    @property
    def workspace_dir(self) -> Path:
        return Path(self.workflow.workspace_directory)

    def require_reasoning_credentials(self) -> None:
        """Fail fast when the reasoning backend cannot authenticate.

        Raises:
            ConfigurationError: If the backend needs an API key and none is set
        """
        key = self.reasoning.api_key
        if self.reasoning.requires_api_key and (key is None or not key.get_secret_value().strip()):
            raise ConfigurationError(
                f"reasoning.api_key is required for the '{self.reasoning.backend}' backend "
                "(set it in the config file or PIPELINE_REASONING__API_KEY)"
            )

    def require_git_credentials(self) -> None:
        token = self.git_provider.api_token
        if token is None or not token.get_secret_value().strip():
            raise ConfigurationError(
                "git_provider.api_token is required (set it in the config file or PIPELINE_GIT_PROVIDER__API_TOKEN)"
            )

    @classmethod
    def from_yaml(cls, config_path: str) -> PipelineSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left untouched.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
