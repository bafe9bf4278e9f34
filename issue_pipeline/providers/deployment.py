"""Deployment provider for Vercel-style REST APIs."""

import asyncio
import time
from typing import Any

import httpx
import structlog

from issue_pipeline.exceptions import ExternalServiceError, TransientServiceError
from issue_pipeline.models.domain import Deployment, HealthProbe
from issue_pipeline.providers.base import DeploymentProvider
from issue_pipeline.utils.retry import async_retry

log = structlog.get_logger(__name__)


class VercelDeploymentProvider(DeploymentProvider):
    """Deploy git refs through the Vercel deployments API.

    Example:
        provider = VercelDeploymentProvider(token, project_id="web-app")
        deployment = await provider.trigger_deployment("fix/issue-42-crash", "staging")
        deployment = await provider.wait_for_ready(deployment.id)
    """

    def __init__(
        self,
        token: str,
        project_id: str,
        base_url: str = "https://api.vercel.com",
        team_id: str | None = None,
        timeout: int = 600,
        poll_interval: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider.

        Args:
            token: API bearer token
            project_id: Project name or id to deploy
            base_url: API base URL
            team_id: Optional team scope
            timeout: Seconds ``wait_for_ready`` waits before giving up
            poll_interval: Seconds between status polls
            transport: Optional httpx transport (used by tests)
        """
        self.token = token.strip() if token else token
        self.project_id = project_id
        self.base_url = base_url.rstrip("/")
        self.team_id = team_id
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=30,
                transport=self._transport,
            )
        return self._client

    def _params(self) -> dict[str, str]:
        return {"teamId": self.team_id} if self.team_id else {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, path, params=self._params(), **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise TransientServiceError(f"Deployment API request failed: {e}", service="deployment") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientServiceError(
                f"Deployment API unavailable: {response.text[:500]}",
                status_code=response.status_code,
                service="deployment",
            )
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Deployment API error: {response.text[:500]}",
                status_code=response.status_code,
                response_text=response.text,
            )
        return response.json()

    @staticmethod
    def _parse_deployment(data: dict[str, Any], target: str | None = None) -> Deployment:
        url = data.get("url") or ""
        if url and not url.startswith(("http://", "https://")):
            url = f"https://{url}"
        return Deployment(
            id=data["id"],
            url=url,
            state=data.get("readyState") or data.get("state") or "QUEUED",
            target=target or data.get("target") or "staging",
        )

    async def trigger_deployment(self, ref: str, target: str) -> Deployment:
        log.info("deployment_triggering", ref=ref, target=target, project=self.project_id)
        data = await self._request(
            "POST",
            "/v13/deployments",
            json={
                "name": self.project_id,
                "gitSource": {"type": "github", "ref": ref},
                "target": target,
            },
        )
        deployment = self._parse_deployment(data, target)
        log.info("deployment_created", deployment_id=deployment.id, url=deployment.url, target=target)
        return deployment

    @async_retry(max_attempts=3, backoff_factor=2.0)
    async def get_status(self, deployment_id: str) -> Deployment:
        data = await self._request("GET", f"/v13/deployments/{deployment_id}")
        return self._parse_deployment(data)

    async def wait_for_ready(self, deployment_id: str) -> Deployment:
        """Poll the deployment until it is READY.

        Raises:
            ExternalServiceError: On ERROR or CANCELED, or after ``timeout`` seconds
        """
        deadline = time.monotonic() + self.timeout
        while True:
            deployment = await self.get_status(deployment_id)
            if deployment.is_ready:
                log.info("deployment_ready", deployment_id=deployment_id, url=deployment.url)
                return deployment
            if deployment.is_failed:
                log.error("deployment_failed", deployment_id=deployment_id, state=deployment.state)
                raise ExternalServiceError(f"Deployment {deployment_id} failed with state: {deployment.state}")
            if time.monotonic() >= deadline:
                raise ExternalServiceError(f"Deployment {deployment_id} timed out after {self.timeout}s")
            await asyncio.sleep(self.poll_interval)

    async def fetch_build_logs(self, deployment_id: str) -> str:
        log.info("deployment_logs_fetching", deployment_id=deployment_id)
        events = await self._request("GET", f"/v2/deployments/{deployment_id}/events")
        lines = []
        for event in events if isinstance(events, list) else []:
            payload = event.get("payload") or {}
            text = event.get("text") or payload.get("text") or event.get("message") or ""
            if text:
                lines.append(text)
        return "\n".join(lines)

    async def probe_endpoint(self, url: str) -> HealthProbe:
        started = time.monotonic()
        # The API token must never reach the deployed app
        try:
            async with httpx.AsyncClient(timeout=30, transport=self._transport) as probe_client:
                response = await probe_client.get(url, headers={"User-Agent": "issue-pipeline-health-check"})
        except httpx.HTTPError as e:
            log.warning("health_probe_failed", url=url, error=str(e))
            return HealthProbe(status_code=0, latency_ms=0)

        probe = HealthProbe(status_code=response.status_code, latency_ms=int((time.monotonic() - started) * 1000))
        log.info("health_probe", url=url, status=probe.status_code, latency_ms=probe.latency_ms, healthy=probe.healthy)
        return probe

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
