"""
CI Providers
============
Async clients for GitHub Actions and GitLab CI that normalise runs, jobs and
steps into the shared WorkflowRun / WorkflowJob / WorkflowStep shape.

Each provider exposes three calls:
    list_runs(monitor, token)          — 10 most recent runs on the branch
    list_jobs(monitor, run_id, token)  — jobs (with steps) of one run
    fetch_job_log(monitor, job_id, token) — raw log text, untruncated

Error Contract (list_runs):
    401 / 403  → ProviderAuthError       (terminal for the monitor)
    429        → ProviderRateLimitError  (terminal for the monitor)
    404        → []                      (no CI configured, not an error)
    other 4xx/5xx → ProviderError        (transient, retried)
    network failure → httpx.HTTPError    (transient, retried)

list_jobs degrades to [] on any non-2xx: job detail only feeds progress
display and categorisation, a missing page must not fail the poll.

GitLab Mapping:
    GitLab has no step structure inside a job, so each job gets ONE
    synthetic step named after its pipeline stage.
"""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from pipewatch.core import config
from pipewatch.models.pipeline_monitor import PipelineMonitor
from pipewatch.models.workflow_run import WorkflowJob, WorkflowRun, WorkflowStep

logger = logging.getLogger(__name__)

USER_AGENT = "Pipewatch-PipelineMonitor"
RUNS_PER_PAGE = 10
JOBS_PER_PAGE = 100


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class ProviderError(Exception):
    """Non-success response from a CI provider."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """401/403 — the token is missing scopes, expired or revoked."""


class ProviderRateLimitError(ProviderError):
    """429 — the provider asked us to back off."""


class MissingTokenError(ProviderError):
    """No credential could be resolved for the platform."""


# ---------------------------------------------------------------------------
# GitLab status translation
# ---------------------------------------------------------------------------
_GITLAB_STATUS_MAP: Dict[str, str] = {
    "success": "completed",
    "failed": "completed",
    "canceled": "completed",
    "skipped": "completed",
    "running": "in_progress",
    "created": "queued",
    "waiting_for_resource": "queued",
    "preparing": "queued",
    "pending": "queued",
    "manual": "queued",
    "scheduled": "queued",
}

_GITLAB_CONCLUSION_MAP: Dict[str, str] = {
    "success": "success",
    "failed": "failure",
    "canceled": "cancelled",
    "skipped": "skipped",
}


def map_gitlab_status(status: str) -> str:
    """GitLab pipeline/job status → internal status. Unknown values pass through."""
    return _GITLAB_STATUS_MAP.get(status, status)


def map_gitlab_conclusion(status: str) -> Optional[str]:
    """GitLab status → conclusion; None while the item is not finished."""
    return _GITLAB_CONCLUSION_MAP.get(status)


# ---------------------------------------------------------------------------
# Base provider
# ---------------------------------------------------------------------------
class CIProvider:
    """
    Shared HTTP plumbing for CI providers.

    Usage:
        provider = GitHubActionsProvider()
        runs = await provider.list_runs(monitor, token)
        await provider.close()
    """

    label = "CI"

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._http: Optional[httpx.AsyncClient] = None

    async def _get_http(self) -> httpx.AsyncClient:
        """Lazy-initialise the HTTP client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._http

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "User-Agent": USER_AGENT,
        }

    async def _get(self, path: str, token: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        http = await self._get_http()
        return await http.get(f"{self.base_url}{path}", headers=self._headers(token), params=params)

    def _raise_for_list_status(self, response: httpx.Response) -> None:
        """Apply the run-listing error contract. Caller handles 404."""
        code = response.status_code
        if code in (401, 403):
            raise ProviderAuthError(f"{self.label} auth error: {code}", code)
        if code == 429:
            raise ProviderRateLimitError(f"{self.label} rate limit exceeded: {code}", code)
        raise ProviderError(f"{self.label} API error: {code}", code)

    async def list_runs(self, monitor: PipelineMonitor, token: str) -> List[WorkflowRun]:
        raise NotImplementedError

    async def list_jobs(self, monitor: PipelineMonitor, run_id: int, token: str) -> List[WorkflowJob]:
        raise NotImplementedError

    async def fetch_job_log(self, monitor: PipelineMonitor, job_id: int, token: str) -> str:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# GitHub Actions
# ---------------------------------------------------------------------------
class GitHubActionsProvider(CIProvider):
    label = "GitHub"

    def __init__(self, base_url: str = config.GITHUB_API_URL, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    def _headers(self, token: str) -> Dict[str, str]:
        headers = super()._headers(token)
        headers["Accept"] = "application/vnd.github.v3+json"
        return headers

    async def list_runs(self, monitor: PipelineMonitor, token: str) -> List[WorkflowRun]:
        response = await self._get(
            f"/repos/{monitor.owner}/{monitor.repo}/actions/runs",
            token,
            params={"branch": monitor.branch, "per_page": RUNS_PER_PAGE},
        )
        if response.status_code == 404:
            logger.info("No GitHub Actions configured for %s", monitor.project_path)
            return []
        if not response.is_success:
            self._raise_for_list_status(response)

        data = response.json()
        return [
            WorkflowRun(
                id=run["id"],
                name=run.get("name") or "Workflow",
                status=run.get("status") or "queued",
                conclusion=run.get("conclusion"),
                head_branch=run.get("head_branch") or "",
                head_sha=run.get("head_sha") or "",
                html_url=run.get("html_url") or "",
            )
            for run in data.get("workflow_runs", [])
        ]

    async def list_jobs(self, monitor: PipelineMonitor, run_id: int, token: str) -> List[WorkflowJob]:
        response = await self._get(
            f"/repos/{monitor.owner}/{monitor.repo}/actions/runs/{run_id}/jobs", token
        )
        if not response.is_success:
            logger.warning("GitHub jobs request for run %s returned HTTP %d", run_id, response.status_code)
            return []

        data = response.json()
        return [
            WorkflowJob(
                id=job["id"],
                name=job.get("name") or "",
                status=job.get("status") or "queued",
                conclusion=job.get("conclusion"),
                steps=[
                    WorkflowStep(
                        name=step.get("name") or "",
                        status=step.get("status") or "queued",
                        conclusion=step.get("conclusion"),
                        number=step.get("number") or idx,
                    )
                    for idx, step in enumerate(job.get("steps") or [], start=1)
                ],
            )
            for job in data.get("jobs", [])
        ]

    async def fetch_job_log(self, monitor: PipelineMonitor, job_id: int, token: str) -> str:
        # GitHub answers with a 302 to a short-lived blob URL
        response = await self._get(
            f"/repos/{monitor.owner}/{monitor.repo}/actions/jobs/{job_id}/logs", token
        )
        if not response.is_success:
            raise ProviderError(f"Failed to fetch logs: {response.status_code}", response.status_code)
        return response.text


# ---------------------------------------------------------------------------
# GitLab CI
# ---------------------------------------------------------------------------
class GitLabCIProvider(CIProvider):
    label = "GitLab"

    def __init__(self, base_url: str = config.GITLAB_API_URL, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    @staticmethod
    def _project(monitor: PipelineMonitor) -> str:
        # "group/subgroup/repo" must be a single encoded path segment
        return quote(monitor.project_path, safe="")

    async def list_runs(self, monitor: PipelineMonitor, token: str) -> List[WorkflowRun]:
        response = await self._get(
            f"/projects/{self._project(monitor)}/pipelines",
            token,
            params={"ref": monitor.branch, "per_page": RUNS_PER_PAGE},
        )
        if response.status_code == 404:
            logger.info("No GitLab project or CI found for %s", monitor.project_path)
            return []
        if not response.is_success:
            self._raise_for_list_status(response)

        return [
            WorkflowRun(
                id=pipeline["id"],
                name=pipeline.get("source") or "Pipeline",
                status=map_gitlab_status(pipeline.get("status", "")),
                conclusion=map_gitlab_conclusion(pipeline.get("status", "")),
                head_branch=pipeline.get("ref") or "",
                head_sha=pipeline.get("sha") or "",
                html_url=pipeline.get("web_url") or "",
            )
            for pipeline in response.json()
        ]

    async def list_jobs(self, monitor: PipelineMonitor, run_id: int, token: str) -> List[WorkflowJob]:
        response = await self._get(
            f"/projects/{self._project(monitor)}/pipelines/{run_id}/jobs",
            token,
            params={"per_page": JOBS_PER_PAGE},
        )
        if not response.is_success:
            logger.warning("GitLab jobs request for pipeline %s returned HTTP %d", run_id, response.status_code)
            return []

        jobs: List[WorkflowJob] = []
        for job in response.json():
            raw_status = job.get("status", "")
            status = map_gitlab_status(raw_status)
            conclusion = map_gitlab_conclusion(raw_status)
            stage = job.get("stage")
            steps = [WorkflowStep(name=stage, status=status, conclusion=conclusion, number=1)] if stage else []
            jobs.append(WorkflowJob(
                id=job["id"],
                name=job.get("name") or "",
                status=status,
                conclusion=conclusion,
                steps=steps,
            ))
        return jobs

    async def fetch_job_log(self, monitor: PipelineMonitor, job_id: int, token: str) -> str:
        response = await self._get(f"/projects/{self._project(monitor)}/jobs/{job_id}/trace", token)
        if not response.is_success:
            raise ProviderError(
                f"Failed to fetch GitLab job trace: {response.status_code}", response.status_code
            )
        return response.text


def default_providers(transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, CIProvider]:
    """Platform name → provider, as used by PipelineMonitorService."""
    return {
        "github": GitHubActionsProvider(transport=transport),
        "gitlab": GitLabCIProvider(transport=transport),
    }
