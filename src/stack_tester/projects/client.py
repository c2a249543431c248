"""HTTP client for the Projects deployment service."""

from __future__ import annotations

import logging
import os
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import requests

from .models import ProjectConfig, StackConfig, describe_member_job
from .service import CloudInfoService, NotModifiedError, ProjectsAPIError

if TYPE_CHECKING:
    from ..config import ProjectsConfig

logger = logging.getLogger(__name__)

_APIKEY_GRANT = "urn:ibm:params:oauth:grant-type:apikey"
# 提前刷新 token，避免请求途中过期
_TOKEN_REFRESH_MARGIN = 60


class ProjectsClient(CloudInfoService):
    """Projects REST API client built on requests."""

    def __init__(
        self,
        config: "ProjectsConfig",
        session: Optional[requests.Session] = None,
    ) -> None:
        if not config.api_key:
            raise ValueError("An API key is required to talk to the Projects service")

        self.config = config
        self.session = session or requests.Session()

        proxy = config.proxy or os.environ.get("HTTPS_PROXY") or os.environ.get("HTTP_PROXY")
        if proxy:
            self.session.proxies = {"http": proxy, "https": proxy}
            logger.info("Projects client using proxy: %s", proxy)

        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    # ===== 认证 =====

    def _access_token(self) -> str:
        if self._token and time.time() < self._token_expires_at - _TOKEN_REFRESH_MARGIN:
            return self._token

        url = f"{self.config.iam_endpoint.rstrip('/')}/identity/token"
        try:
            response = self.session.post(
                url,
                data={"grant_type": _APIKEY_GRANT, "apikey": self.config.api_key},
                headers={"Accept": "application/json"},
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise ProjectsAPIError(f"IAM token request failed: {exc}") from exc

        if response.status_code != 200:
            raise ProjectsAPIError(
                f"IAM token request failed: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
            self._token = payload["access_token"]
            self._token_expires_at = time.time() + int(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise ProjectsAPIError(f"IAM token response could not be parsed: {exc}") from exc
        logger.debug("Obtained IAM access token")
        return self._token

    # ===== HTTP =====

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self._access_token()}"
        headers.setdefault("Accept", "application/json")

        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                timeout=self.config.request_timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise ProjectsAPIError(f"{method} {url} failed: {exc}") from exc

        if response.status_code == 304:
            raise NotModifiedError()
        if response.status_code >= 400:
            raise ProjectsAPIError(
                f"{method} {url} returned {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProjectsAPIError(
                f"Response from {response.url} is not valid JSON: {exc}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise ProjectsAPIError(
                f"Unexpected response body from {response.url}: {type(payload).__name__}",
                status_code=response.status_code,
            )
        return payload

    def _config_url(self, project_id: str, config_id: str, action: str = "") -> str:
        url = f"{self.config.endpoint.rstrip('/')}/v1/projects/{project_id}/configs/{config_id}"
        if action:
            url = f"{url}/{action}"
        return url

    # ===== CloudInfoService =====

    def get_config(self, details: StackConfig) -> ProjectConfig:
        response = self._request("GET", self._config_url(details.project_id, details.config_id))
        return ProjectConfig.from_dict(self._json(response))

    def get_stack_members(self, stack: StackConfig) -> List[ProjectConfig]:
        stack_details = self.get_config(stack)
        members: List[ProjectConfig] = []
        for member in stack_details.members:
            members.append(
                self.get_config(StackConfig(project_id=stack.project_id, config_id=member.config_id))
            )
        return members

    def validate_project_config(self, stack: StackConfig) -> None:
        self._request("POST", self._config_url(stack.project_id, stack.config_id, "validate"), json={})

    def undeploy_config(self, stack: StackConfig) -> None:
        self._request("POST", self._config_url(stack.project_id, stack.config_id, "undeploy"), json={})

    def sync_config(self, project_id: str, config_id: str) -> None:
        self._request("POST", self._config_url(project_id, config_id, "sync"), json={})

    def get_job_log_text(self, job_id: str, location: str) -> str:
        base = self.config.schematics_endpoint.format(location=location)
        response = self._request(
            "GET",
            f"{base.rstrip('/')}/v2/jobs/{job_id}/logs",
            headers={"Accept": "text/plain"},
        )
        return response.text

    def get_schematics_job_logs_for_member(
        self,
        member: ProjectConfig,
        member_name: str,
        region: str,
    ) -> Tuple[str, str]:
        summary = describe_member_job(member, member_name)

        job = member.last_undeployed or member.last_deployed or member.last_validated
        if job is None or not job.job_id:
            return summary, ""

        # schematics 的地理位置取 region 的前两个字符（us-south -> us）
        location = region[:2]
        try:
            logs = self.get_job_log_text(job.job_id, location)
        except ProjectsAPIError as exc:
            return summary, (
                f"Error getting job logs for Job ID: {job.job_id} member: {member_name}, error: {exc}"
            )
        return summary, f"Job logs for Job ID: {job.job_id} member: {member_name}\n{logs}"

