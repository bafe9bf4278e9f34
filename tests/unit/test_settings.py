"""Tests for issue_pipeline/config/settings.py."""

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from issue_pipeline.config.settings import (
    DeploymentConfig,
    LabelsConfig,
    PipelineSettings,
    ReasoningConfig,
    WorkflowConfig,
)
from issue_pipeline.config.stages import DEFAULT_STAGES, StageDefinition, default_stages
from issue_pipeline.exceptions import ConfigurationError

MINIMAL_YAML = """\
repository:
  owner: acme
  name: webapp
"""


def write_config(tmp_path: Path, content: str) -> str:
    path = tmp_path / "pipeline.yaml"
    path.write_text(content)
    return str(path)


class TestFromYaml:
    """Tests for loading settings from YAML."""

    def test_minimal_config_uses_defaults(self, tmp_path):
        settings = PipelineSettings.from_yaml(write_config(tmp_path, MINIMAL_YAML))

        assert settings.repository.owner == "acme"
        assert settings.repository.default_branch == "main"
        assert settings.reasoning.max_turns == 10
        assert settings.workflow.recovery_attempts == 3
        assert [stage.name for stage in settings.workflow.stages] == [stage.name for stage in DEFAULT_STAGES]
        assert settings.decomposition.enabled is False
        assert settings.labels == LabelsConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Configuration file not found"):
            PipelineSettings.from_yaml(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Invalid YAML syntax"):
            PipelineSettings.from_yaml(write_config(tmp_path, "repository: [unclosed"))

    def test_scalar_document(self, tmp_path):
        with pytest.raises(ConfigurationError, match="must be a YAML object"):
            PipelineSettings.from_yaml(write_config(tmp_path, "just a string"))

    def test_missing_repository(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Failed to validate configuration"):
            PipelineSettings.from_yaml(write_config(tmp_path, "reasoning:\n  model: x\n"))

    def test_custom_stage_catalog(self, tmp_path):
        content = MINIMAL_YAML + (
            "workflow:\n"
            "  stages:\n"
            "    - name: intake\n"
            "      agent: intake\n"
            "      artifact_name: intake.md\n"
            "    - name: fix\n"
            "      agent: surgeon\n"
            "      artifact_name: fix.md\n"
            "      requires_approval: true\n"
            "      tools_enabled: true\n"
        )

        settings = PipelineSettings.from_yaml(write_config(tmp_path, content))

        fix = settings.workflow.stages[1]
        assert fix == StageDefinition(
            name="fix", agent="surgeon", artifact_name="fix.md", requires_approval=True, tools_enabled=True
        )


class TestEnvInterpolation:
    """Tests for ${VAR} substitution."""

    def test_required_variable(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_GH_TOKEN", "ghp_secret")
        content = MINIMAL_YAML + "git_provider:\n  api_token: ${TEST_GH_TOKEN}\n"

        settings = PipelineSettings.from_yaml(write_config(tmp_path, content))

        assert settings.git_provider.api_token.get_secret_value() == "ghp_secret"

    def test_default_value(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_MODEL_NAME", raising=False)
        content = MINIMAL_YAML + "reasoning:\n  model: ${TEST_MODEL_NAME:-local-model}\n"

        settings = PipelineSettings.from_yaml(write_config(tmp_path, content))

        assert settings.reasoning.model == "local-model"

    def test_missing_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_MISSING_VAR", raising=False)
        content = MINIMAL_YAML + "reasoning:\n  model: ${TEST_MISSING_VAR}\n"

        with pytest.raises(ConfigurationError, match="TEST_MISSING_VAR"):
            PipelineSettings.from_yaml(write_config(tmp_path, content))

    def test_comment_lines_untouched(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_MISSING_VAR", raising=False)
        content = MINIMAL_YAML + "# api_token: ${TEST_MISSING_VAR}\n"

        assert PipelineSettings.from_yaml(write_config(tmp_path, content)).repository.name == "webapp"

    def test_prefixed_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PIPELINE_DECOMPOSITION__ENABLED", "true")

        settings = PipelineSettings.from_yaml(write_config(tmp_path, MINIMAL_YAML))

        assert settings.decomposition.enabled is True


class TestWorkflowValidation:
    """Tests for stage catalog validation."""

    def test_empty_catalog_rejected(self):
        with pytest.raises(PydanticValidationError, match="at least one stage"):
            WorkflowConfig(stages=[])

    def test_duplicate_names_rejected(self):
        stage = {"name": "intake", "agent": "intake", "artifact_name": "a.md"}
        with pytest.raises(PydanticValidationError, match="Duplicate stage names"):
            WorkflowConfig(stages=[stage, stage])

    def test_default_stages_are_copies(self):
        stages = default_stages()
        stages[0].requires_approval = True
        assert DEFAULT_STAGES[0].requires_approval is False

    def test_default_catalog_has_one_tool_stage(self):
        assert [stage.agent for stage in DEFAULT_STAGES if stage.tools_enabled] == ["surgeon"]


class TestCredentials:
    """Tests for credential checks."""

    def test_reasoning_key_required_for_anthropic(self):
        settings = PipelineSettings(repository={"owner": "a", "name": "b"})
        with pytest.raises(ConfigurationError, match="reasoning.api_key"):
            settings.require_reasoning_credentials()

    def test_blank_key_rejected(self):
        settings = PipelineSettings(repository={"owner": "a", "name": "b"}, reasoning={"api_key": "   "})
        with pytest.raises(ConfigurationError):
            settings.require_reasoning_credentials()

    @pytest.mark.parametrize(
        "reasoning,required",
        [
            ({"backend": "anthropic"}, True),
            ({"backend": "openai"}, True),
            ({"backend": "openai", "base_url": "http://localhost:8000/v1"}, False),
            ({"backend": "ollama"}, False),
        ],
    )
    def test_requires_api_key(self, reasoning, required):
        assert ReasoningConfig(**reasoning).requires_api_key is required

    def test_ollama_needs_no_key(self):
        settings = PipelineSettings(repository={"owner": "a", "name": "b"}, reasoning={"backend": "ollama"})
        settings.require_reasoning_credentials()

    def test_git_token_required(self):
        settings = PipelineSettings(repository={"owner": "a", "name": "b"})
        with pytest.raises(ConfigurationError, match="git_provider.api_token"):
            settings.require_git_credentials()

    def test_git_token_present(self, mock_settings):
        mock_settings.require_git_credentials()


class TestDeploymentConfig:
    """Tests for the deployment section."""

    def test_disabled_needs_nothing(self):
        assert DeploymentConfig().enabled is False

    def test_enabled_requires_credentials(self):
        with pytest.raises(PydanticValidationError, match="deployment.token"):
            DeploymentConfig(enabled=True, token="t")

    def test_enabled_with_credentials(self):
        config = DeploymentConfig(enabled=True, token="t", project_id="prj_1")
        assert config.token.get_secret_value() == "t"
