"""Configuration management for the issue pipeline."""

from issue_pipeline.config.settings import (
    DecompositionConfig,
    DeploymentConfig,
    GitProviderConfig,
    KnowledgeConfig,
    LabelsConfig,
    PipelineSettings,
    ReasoningConfig,
    RepositoryConfig,
    WorkflowConfig,
)
from issue_pipeline.config.stages import DEFAULT_STAGES, StageDefinition

__all__ = [
    "DEFAULT_STAGES",
    "DecompositionConfig",
    "DeploymentConfig",
    "GitProviderConfig",
    "KnowledgeConfig",
    "LabelsConfig",
    "PipelineSettings",
    "ReasoningConfig",
    "RepositoryConfig",
    "StageDefinition",
    "WorkflowConfig",
]
