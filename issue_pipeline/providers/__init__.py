"""External collaborators: version-control host, deployments and knowledge."""

from issue_pipeline.providers.base import DeploymentProvider, GitProvider, KnowledgeStore
from issue_pipeline.providers.deployment import VercelDeploymentProvider
from issue_pipeline.providers.github_rest import GitHubRestProvider
from issue_pipeline.providers.knowledge import MarkdownKnowledgeStore

__all__ = [
    "GitProvider",
    "DeploymentProvider",
    "KnowledgeStore",
    "GitHubRestProvider",
    "VercelDeploymentProvider",
    "MarkdownKnowledgeStore",
]
