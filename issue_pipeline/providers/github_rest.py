"""GitHub provider implementation using PyGithub and REST API."""

import asyncio
from collections.abc import Callable
from typing import TypeVar

import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.Issue import Issue as GHIssue  # type: ignore[import-not-found]
from github.IssueComment import IssueComment as GHComment  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from issue_pipeline.exceptions import ConfigurationError, ExternalServiceError, TransientServiceError
from issue_pipeline.models.domain import Comment, Issue, IssueState, PullRequest
from issue_pipeline.providers.base import GitProvider
from issue_pipeline.utils.retry import async_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods.
    """
    return await asyncio.to_thread(func)


def _translate(e: GithubException, action: str) -> Exception:
    """Map a PyGithub error onto the pipeline's service errors."""
    status = e.status or None
    message = f"GitHub {action} failed: {e.data.get('message') if isinstance(e.data, dict) else e}"
    if status is None or status == 429 or status >= 500:
        return TransientServiceError(message, status_code=status, service="github")
    return ExternalServiceError(message, status_code=status, response_text=str(e.data))


class GitHubRestProvider(GitProvider):
    """GitHub implementation using PyGithub library."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
    ):
        """Initialize GitHub provider.

        Args:
            token: GitHub personal access token or App token
            owner: Repository owner (user or organization)
            repo: Repository name
            base_url: GitHub API base URL (for GitHub Enterprise)
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        self.base_url = base_url.rstrip("/")
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    @property
    def repository(self) -> GHRepository:
        if self._repo is None:
            raise ConfigurationError("GitHub provider is not connected; call connect() first")
        return self._repo

    async def connect(self) -> None:
        """Initialize GitHub client."""

        def _connect() -> tuple[Github, GHRepository]:
            client = Github(auth=Auth.Token(self.token), base_url=self.base_url)
            repo = client.get_repo(f"{self.owner}/{self.repo}")
            return client, repo

        try:
            self._client, self._repo = await _run_sync(_connect)
        except GithubException as e:
            log.error("github_connect_failed", owner=self.owner, repo=self.repo, error=str(e))
            raise _translate(e, "connect") from e
        log.info(
            "github_connected",
            base_url=self.base_url,
            owner=self.owner,
            repo=self.repo,
        )

    async def disconnect(self) -> None:
        """Close GitHub client."""
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None

    @async_retry(max_attempts=3, backoff_factor=2.0)
    async def get_issues(
        self,
        labels: list[str] | None = None,
        state: str = "open",
    ) -> list[Issue]:
        """Retrieve issues via GitHub API.

        Pull requests come back from the issues endpoint too and are dropped.
        """
        log.info("get_issues", labels=labels, state=state)

        gh_state = state if state in ("open", "closed", "all") else "open"
        repo = self.repository

        try:
            gh_issues = await _run_sync(lambda: list(repo.get_issues(state=gh_state, labels=labels or [])))
        except GithubException as e:
            log.error("github_get_issues_failed", error=str(e))
            raise _translate(e, "get_issues") from e

        return [self._convert_issue(gh_issue) for gh_issue in gh_issues if gh_issue.pull_request is None]

    @async_retry(max_attempts=3, backoff_factor=2.0)
    async def get_issue(self, issue_number: int) -> Issue:
        """Get single issue by number."""
        log.info("get_issue", number=issue_number)
        repo = self.repository

        try:
            gh_issue = await _run_sync(lambda: repo.get_issue(issue_number))
        except GithubException as e:
            log.error("github_get_issue_failed", number=issue_number, error=str(e))
            raise _translate(e, "get_issue") from e
        return self._convert_issue(gh_issue)

    async def create_issue(
        self,
        title: str,
        body: str,
        labels: list[str] | None = None,
    ) -> Issue:
        """Create a new issue."""
        log.info("create_issue", title=title, labels=labels)
        repo = self.repository

        try:
            gh_issue = await _run_sync(lambda: repo.create_issue(title=title, body=body, labels=labels or []))
        except GithubException as e:
            log.error("github_create_issue_failed", error=str(e))
            raise _translate(e, "create_issue") from e
        return self._convert_issue(gh_issue)

    async def update_issue(
        self,
        issue_number: int,
        title: str | None = None,
        body: str | None = None,
        labels: list[str] | None = None,
        state: str | None = None,
    ) -> Issue:
        """Update issue fields."""
        log.info("update_issue", number=issue_number)
        repo = self.repository

        def _update() -> GHIssue:
            gh_issue = repo.get_issue(issue_number)
            changes: dict[str, object] = {}
            if title is not None:
                changes["title"] = title
            if body is not None:
                changes["body"] = body
            if labels is not None:
                changes["labels"] = labels
            if state is not None:
                changes["state"] = state
            if changes:
                gh_issue.edit(**changes)
            return repo.get_issue(issue_number)

        try:
            gh_issue = await _run_sync(_update)
        except GithubException as e:
            log.error("github_update_issue_failed", number=issue_number, error=str(e))
            raise _translate(e, "update_issue") from e
        return self._convert_issue(gh_issue)

    async def add_comment(self, issue_number: int, comment: str) -> Comment:
        """Add comment to issue."""
        log.info("add_comment", number=issue_number)
        repo = self.repository

        def _add_comment() -> GHComment:
            return repo.get_issue(issue_number).create_comment(comment)

        try:
            gh_comment = await _run_sync(_add_comment)
        except GithubException as e:
            log.error("github_add_comment_failed", number=issue_number, error=str(e))
            raise _translate(e, "add_comment") from e
        return self._convert_comment(gh_comment)

    async def add_labels(self, issue_number: int, labels: list[str]) -> None:
        if not labels:
            return
        log.info("add_labels", number=issue_number, labels=labels)
        repo = self.repository

        try:
            await _run_sync(lambda: repo.get_issue(issue_number).add_to_labels(*labels))
        except GithubException as e:
            log.error("github_add_labels_failed", number=issue_number, error=str(e))
            raise _translate(e, "add_labels") from e

    async def remove_label(self, issue_number: int, label: str) -> None:
        log.info("remove_label", number=issue_number, label=label)
        repo = self.repository

        try:
            await _run_sync(lambda: repo.get_issue(issue_number).remove_from_labels(label))
        except GithubException as e:
            if e.status == 404:
                log.debug("github_label_not_present", number=issue_number, label=label)
                return
            log.error("github_remove_label_failed", number=issue_number, error=str(e))
            raise _translate(e, "remove_label") from e

    async def close_issue(self, issue_number: int) -> Issue:
        return await self.update_issue(issue_number, state="closed")

    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        labels: list[str] | None = None,
    ) -> PullRequest:
        """Create a pull request."""
        log.info("create_pull_request", title=title, head=head, base=base)
        repo = self.repository

        def _create_pr() -> GHPullRequest:
            gh_pr = repo.create_pull(title=title, body=body, head=head, base=base)
            if labels:
                gh_pr.add_to_labels(*labels)
            return gh_pr

        try:
            gh_pr = await _run_sync(_create_pr)
        except GithubException as e:
            log.error("github_create_pr_failed", error=str(e))
            raise _translate(e, "create_pull_request") from e
        return self._convert_pull_request(gh_pr)

    def _convert_issue(self, gh_issue: GHIssue) -> Issue:
        """Convert GitHub Issue to our Issue model."""
        state = IssueState.CLOSED if gh_issue.state == "closed" else IssueState.OPEN

        return Issue(
            id=gh_issue.id,
            number=gh_issue.number,
            title=gh_issue.title,
            body=gh_issue.body or "",
            state=state,
            labels=[label.name for label in gh_issue.labels],
            url=gh_issue.html_url,
            author=gh_issue.user.login if gh_issue.user else "unknown",
            created_at=gh_issue.created_at,
            updated_at=gh_issue.updated_at,
        )

    def _convert_comment(self, gh_comment: GHComment) -> Comment:
        """Convert GitHub Comment to our Comment model."""
        return Comment(
            id=gh_comment.id,
            body=gh_comment.body,
            author=gh_comment.user.login if gh_comment.user else "unknown",
            created_at=gh_comment.created_at,
        )

    def _convert_pull_request(self, gh_pr: GHPullRequest) -> PullRequest:
        """Convert GitHub PullRequest to our PullRequest model."""
        return PullRequest(
            id=gh_pr.id,
            number=gh_pr.number,
            title=gh_pr.title,
            head=gh_pr.head.ref,
            base=gh_pr.base.ref,
            url=gh_pr.html_url,
            state=gh_pr.state,
        )
