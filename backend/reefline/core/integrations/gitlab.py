"""
GitLab Integration
==================

CI and source-control provider backed by the GitLab v4 REST API.

Starting an instance:
1. creates the target branch from the source branch,
2. commits the pipeline file to it (skipping the push pipeline),
3. creates a pipeline on the target branch and returns its id.
"""

from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from reefline.core.config import settings
from reefline.core.pipeline.errors import UpstreamUnavailable

logger = structlog.get_logger()


class GitLabClient:
    """
    Async GitLab client implementing the CIProvider and VCSProvider contracts.

    Transport errors and 5xx answers are retried up to ``max_retries``
    times; anything else that is not a success is reported as
    ``UpstreamUnavailable`` straight away.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        service_token: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        pipeline_file_name: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or settings.GITLAB_API_URL).rstrip("/")
        self.service_token = service_token or settings.GITLAB_SERVICE_TOKEN
        self.max_retries = settings.GITLAB_MAX_RETRIES if max_retries is None else max_retries
        self.pipeline_file_name = pipeline_file_name or settings.PIPELINE_FILE_NAME
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            timeout=timeout or settings.GITLAB_TIMEOUT_SECONDS,
            transport=transport,
        )
        logger.info("gitlab_client_initialized", api_url=self.api_url)

    async def close(self) -> None:
        await self._client.aclose()

    # ==================== CI Provider ====================

    async def trigger(
        self,
        project_handle: int,
        access_token: str,
        document: str,
        *,
        source_branch: str,
        target_branch: str,
    ) -> str:
        """Push the pipeline file to ``target_branch`` and run it."""
        await self._create_branch(project_handle, access_token, source_branch, target_branch)
        await self._commit_pipeline_file(project_handle, access_token, target_branch, document)

        response = await self._request(
            "POST",
            f"/projects/{project_handle}/pipeline",
            access_token,
            params={"ref": target_branch},
        )
        self._raise_for_status(response, "create pipeline", 200, 201)

        pipeline_id = str(response.json()["id"])
        logger.info(
            "gitlab_pipeline_created",
            project=project_handle,
            ref=target_branch,
            pipeline_id=pipeline_id,
        )
        return pipeline_id

    async def cancel(
        self,
        project_handle: int,
        external_run_id: str,
        access_token: Optional[str] = None,
    ) -> None:
        token = access_token or self.service_token
        if not token:
            raise UpstreamUnavailable("No GitLab token available to cancel the pipeline")

        response = await self._request(
            "POST",
            f"/projects/{project_handle}/pipelines/{external_run_id}/cancel",
            token,
        )
        self._raise_for_status(response, "cancel pipeline", 200, 201)
        logger.info("gitlab_pipeline_canceled", project=project_handle, pipeline_id=external_run_id)

    # ==================== VCS Provider ====================

    async def delete_branch(
        self,
        project_handle: int,
        access_token: str,
        branch: str,
    ) -> None:
        response = await self._request(
            "DELETE",
            f"/projects/{project_handle}/repository/branches/{quote(branch, safe='')}",
            access_token,
        )
        if response.status_code == 404:
            logger.info("gitlab_branch_already_gone", project=project_handle, branch=branch)
            return
        self._raise_for_status(response, "delete branch", 200, 202, 204)
        logger.info("gitlab_branch_deleted", project=project_handle, branch=branch)

    # ==================== Internals ====================

    async def _create_branch(
        self,
        project_handle: int,
        access_token: str,
        source_branch: str,
        target_branch: str,
    ) -> None:
        response = await self._request(
            "POST",
            f"/projects/{project_handle}/repository/branches",
            access_token,
            params={"branch": target_branch, "ref": source_branch},
        )
        if response.status_code == 400 and "already exists" in response.text:
            # Left over from an earlier start that failed further down
            logger.info("gitlab_branch_exists", project=project_handle, branch=target_branch)
            return
        self._raise_for_status(response, "create branch", 200, 201)

    async def _commit_pipeline_file(
        self,
        project_handle: int,
        access_token: str,
        branch: str,
        document: str,
    ) -> None:
        path = f"/projects/{project_handle}/repository/commits"
        payload: dict[str, Any] = {
            "branch": branch,
            "commit_message": f"Add {self.pipeline_file_name} [skip ci]",
            "actions": [
                {
                    "action": "create",
                    "file_path": self.pipeline_file_name,
                    "content": document,
                }
            ],
        }
        response = await self._request("POST", path, access_token, json=payload)
        if response.status_code == 400 and "already exists" in response.text:
            payload["actions"][0]["action"] = "update"
            response = await self._request("POST", path, access_token, json=payload)
        self._raise_for_status(response, "commit pipeline file", 200, 201)

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        **kwargs: Any,
    ) -> httpx.Response:
        last_error: Optional[str] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.request(
                    method,
                    path,
                    headers={"PRIVATE-TOKEN": token},
                    **kwargs,
                )
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning("gitlab_transport_error", path=path, attempt=attempt + 1, error=last_error)
                continue

            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "gitlab_server_error",
                    path=path,
                    attempt=attempt + 1,
                    status_code=response.status_code,
                )
                continue

            return response

        logger.error("gitlab_unreachable", path=path, error=last_error)
        raise UpstreamUnavailable(
            f"GitLab did not answer {method} {path}: {last_error}",
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str, *expected: int) -> None:
        if response.status_code in expected:
            return
        logger.warning(
            "gitlab_request_rejected",
            what=what,
            status_code=response.status_code,
        )
        raise UpstreamUnavailable(
            f"GitLab rejected {what} (HTTP {response.status_code})",
            upstream_status=response.status_code,
        )
