"""
Abstract base classes for the pipeline's external collaborators.

This module defines the interfaces the orchestrator talks to: the
version-control host (issues, labels, comments, pull requests), the deployment
platform and the knowledge store. Implementations normalize provider-specific
APIs into the domain models defined in models.domain.
"""

from abc import ABC, abstractmethod

from issue_pipeline.models.domain import (
    Comment,
    Deployment,
    HealthProbe,
    Issue,
    KnowledgeSnippet,
    PullRequest,
)


class GitProvider(ABC):
    """Abstract base class for version-control host implementations.

    All methods are async to support non-blocking I/O. Failures surface as
    ExternalServiceError (rejected requests) or TransientServiceError (rate
    limits, server errors, network failures).
    """

    async def connect(self) -> None:
        """Open the connection. The default implementation does nothing."""

    async def disconnect(self) -> None:
        """Release the connection. The default implementation does nothing."""

    @abstractmethod
    async def get_issue(self, issue_number: int) -> Issue:
        """Get single issue by number."""

    @abstractmethod
    async def get_issues(
        self,
        labels: list[str] | None = None,
        state: str = "open",
    ) -> list[Issue]:
        """Retrieve issues from the repository.

        Args:
            labels: Filter by labels. Issues must carry ALL of them.
            state: "open", "closed" or "all".
        """

    @abstractmethod
    async def create_issue(
        self,
        title: str,
        body: str,
        labels: list[str] | None = None,
    ) -> Issue:
        """Create a new issue."""

    @abstractmethod
    async def update_issue(
        self,
        issue_number: int,
        title: str | None = None,
        body: str | None = None,
        labels: list[str] | None = None,
        state: str | None = None,
    ) -> Issue:
        """Update issue fields.

        Only provided fields are updated. When ``labels`` is given it replaces
        all existing labels.
        """

    @abstractmethod
    async def add_comment(self, issue_number: int, comment: str) -> Comment:
        """Add comment to issue."""

    @abstractmethod
    async def add_labels(self, issue_number: int, labels: list[str]) -> None:
        """Add labels to an issue, keeping the existing ones."""

    @abstractmethod
    async def remove_label(self, issue_number: int, label: str) -> None:
        """Remove one label. Removing a label the issue lacks is not an error."""

    @abstractmethod
    async def close_issue(self, issue_number: int) -> Issue:
        """Close an issue."""

    @abstractmethod
    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        labels: list[str] | None = None,
    ) -> PullRequest:
        """Create a pull request from ``head`` into ``base``."""


class DeploymentProvider(ABC):
    """Abstract base class for deployment platforms."""

    @abstractmethod
    async def trigger_deployment(self, ref: str, target: str) -> Deployment:
        """Start a deployment of git ``ref`` to ``target`` (staging or production)."""

    @abstractmethod
    async def get_status(self, deployment_id: str) -> Deployment:
        """Fetch the current state of a deployment."""

    @abstractmethod
    async def wait_for_ready(self, deployment_id: str) -> Deployment:
        """Poll until the deployment is ready or has failed.

        Raises:
            ExternalServiceError: If the deployment fails or does not become
                ready in time
        """

    @abstractmethod
    async def fetch_build_logs(self, deployment_id: str) -> str:
        """Return the build log text of a deployment."""

    @abstractmethod
    async def probe_endpoint(self, url: str) -> HealthProbe:
        """Issue one health request. Never raises; failures give status 0."""

    async def close(self) -> None:
        """Release resources. The default implementation does nothing."""


class KnowledgeStore(ABC):
    """Abstract base class for the project knowledge base."""

    @abstractmethod
    async def summarize(self) -> str:
        """Short overview of the available pages."""

    @abstractmethod
    async def search(self, query: str, limit: int = 3) -> list[KnowledgeSnippet]:
        """Return the most relevant snippets for ``query``, best first."""

    @abstractmethod
    async def append(self, page: str, content: str) -> None:
        """Append content to a page, creating it if needed."""

    @abstractmethod
    async def update(self, page: str, content: str) -> None:
        """Replace a page's content."""
