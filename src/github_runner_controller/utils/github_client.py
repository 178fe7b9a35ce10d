"""
GitHub REST client for runner management.

This module wraps the subset of the GitHub Actions API the controller
needs: runner registrations, registration and removal tokens, runner
binary downloads, labels and repository or organization webhooks.
"""

import hashlib
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from pydantic import BaseModel, Field

from ..models.credential import CredentialScope

API_VERSION = "2022-11-28"
PER_PAGE = 100


class GitHubAPIError(Exception):
    """Raised when a GitHub API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubAuthenticationError(GitHubAPIError):
    """Raised when GitHub rejects the credential."""
    pass


class RemoteRunner(BaseModel):
    """Runner registration as reported by GitHub."""

    id: int
    name: str
    os: Optional[str] = None
    status: str = "offline"
    busy: bool = False
    labels: List[str] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteRunner":
        labels = [label["name"] for label in data.get("labels", []) if "name" in label]
        return cls(
            id=data["id"],
            name=data["name"],
            os=data.get("os"),
            status=data.get("status", "offline"),
            busy=data.get("busy", False),
            labels=labels,
        )


class RunnerDownload(BaseModel):
    """Downloadable runner package for one OS and architecture."""

    os: str
    architecture: str
    download_url: str
    filename: str
    sha256_checksum: Optional[str] = None


class RunnerToken(BaseModel):
    """Registration or removal token."""

    token: str
    expires_at: Optional[datetime] = None


class GitHubClient:
    """
    Async GitHub client scoped to one repository or organization.

    Endpoints are built from the credential scope: repository credentials
    use ``/repos/{owner}/{repo}`` and organization credentials use
    ``/orgs/{org}``.
    """

    def __init__(self,
                 token: str,
                 scope: CredentialScope,
                 target: str,
                 api_url: str = "https://api.github.com",
                 web_url: str = "https://github.com",
                 http: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0,
                 logger: Any = None) -> None:
        """
        Initialize GitHub client.

        Args:
            token: Bearer token (PAT or installation token)
            scope: Repository or organization scope
            target: ``owner/repo`` or organization login
            api_url: REST API base URL
            web_url: Web URL runners register against
            http: Shared HTTP client; one is created and owned if omitted
            timeout: Request timeout in seconds
            logger: Structured logger instance

        Raises:
            ValueError: If the target does not fit the scope
        """
        scope = CredentialScope(scope)
        if scope is CredentialScope.REPO and target.count("/") != 1:
            raise ValueError(f"Invalid repository target: {target}")
        if scope is CredentialScope.ORG and "/" in target:
            raise ValueError(f"Invalid organization target: {target}")

        self.scope = scope
        self.target = target
        self.api_url = api_url.rstrip("/")
        self.web_url = web_url.rstrip("/")
        self._token = token
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

        self.logger = (logger or structlog.get_logger()).bind(
            component="github_client",
            scope=scope.value,
            target=target,
        )

    @property
    def base_path(self) -> str:
        if self.scope is CredentialScope.REPO:
            return f"/repos/{self.target}"
        return f"/orgs/{self.target}"

    @property
    def registration_url(self) -> str:
        """URL passed to the runner's configuration step."""
        return f"{self.web_url}/{self.target}"

    async def validate(self) -> Dict[str, Any]:
        """
        Check the token can access the target.

        Returns:
            Repository or organization metadata

        Raises:
            GitHubAuthenticationError: If the token is rejected
            GitHubAPIError: If the target does not exist
        """
        response = await self._request("GET", self.base_path)
        return response.json()

    async def list_runners(self) -> List[RemoteRunner]:
        """List every runner registered on the target, following pagination."""
        runners: List[RemoteRunner] = []
        page = 1
        while True:
            response = await self._request(
                "GET",
                f"{self.base_path}/actions/runners",
                params={"per_page": PER_PAGE, "page": page},
            )
            data = response.json()
            batch = data.get("runners", [])
            runners.extend(RemoteRunner.from_api(item) for item in batch)
            total = data.get("total_count", len(runners))
            if len(batch) < PER_PAGE or len(runners) >= total:
                break
            page += 1

        self.logger.debug("Listed GitHub runners", count=len(runners))
        return runners

    async def get_runner(self, runner_id: int) -> Optional[RemoteRunner]:
        """Fetch one runner, returning None if GitHub no longer knows it."""
        response = await self._request(
            "GET",
            f"{self.base_path}/actions/runners/{runner_id}",
            expected=(200, 404),
        )
        if response.status_code == 404:
            return None
        return RemoteRunner.from_api(response.json())

    async def find_runner_by_name(self, name: str) -> Optional[RemoteRunner]:
        for runner in await self.list_runners():
            if runner.name == name:
                return runner
        return None

    async def delete_runner(self, runner_id: int) -> bool:
        """
        Remove a runner registration.

        Returns:
            True if the runner is gone, including when it was already absent
        """
        await self._request(
            "DELETE",
            f"{self.base_path}/actions/runners/{runner_id}",
            expected=(204, 404),
        )
        self.logger.info("Deleted GitHub runner", github_runner_id=runner_id)
        return True

    async def create_registration_token(self) -> RunnerToken:
        response = await self._request(
            "POST",
            f"{self.base_path}/actions/runners/registration-token",
            expected=(201,),
        )
        return RunnerToken(**response.json())

    async def create_remove_token(self) -> RunnerToken:
        response = await self._request(
            "POST",
            f"{self.base_path}/actions/runners/remove-token",
            expected=(201,),
        )
        return RunnerToken(**response.json())

    async def list_runner_downloads(self) -> List[RunnerDownload]:
        response = await self._request("GET", f"{self.base_path}/actions/runners/downloads")
        return [RunnerDownload(**item) for item in response.json()]

    async def set_runner_labels(self, runner_id: int, labels: Sequence[str]) -> List[str]:
        """Replace the custom labels of a runner."""
        response = await self._request(
            "PUT",
            f"{self.base_path}/actions/runners/{runner_id}/labels",
            json={"labels": list(labels)},
        )
        return [label["name"] for label in response.json().get("labels", [])]

    async def create_webhook(self,
                             url: str,
                             secret: str,
                             events: Sequence[str] = ("workflow_job",)) -> int:
        """
        Create a repository or organization webhook.

        Returns:
            GitHub hook id
        """
        response = await self._request(
            "POST",
            f"{self.base_path}/hooks",
            json={
                "name": "web",
                "active": True,
                "events": list(events),
                "config": {
                    "url": url,
                    "content_type": "json",
                    "secret": secret,
                    "insecure_ssl": "0",
                },
            },
            expected=(201,),
        )
        hook_id = response.json()["id"]
        self.logger.info("Created GitHub webhook", hook_id=hook_id, events=list(events))
        return hook_id

    async def delete_webhook(self, hook_id: int) -> bool:
        await self._request("DELETE", f"{self.base_path}/hooks/{hook_id}", expected=(204, 404))
        return True

    async def download(self, url: str, destination: Path, sha256: Optional[str] = None) -> Path:
        """
        Stream a runner package to disk.

        Raises:
            GitHubAPIError: If the download fails or the checksum differs
        """
        digest = hashlib.sha256()
        try:
            async with self._http.stream("GET", url, follow_redirects=True) as response:
                if response.status_code != 200:
                    raise GitHubAPIError(
                        f"Download failed with status {response.status_code}",
                        status_code=response.status_code,
                    )
                with open(destination, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        digest.update(chunk)
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise GitHubAPIError(f"Download failed: {e}") from e

        if sha256 and digest.hexdigest().lower() != sha256.lower():
            destination.unlink(missing_ok=True)
            raise GitHubAPIError("Downloaded runner package checksum mismatch")
        return destination

    async def _request(self,
                       method: str,
                       path: str,
                       params: Optional[Dict[str, Any]] = None,
                       json: Optional[Dict[str, Any]] = None,
                       expected: Sequence[int] = (200,)) -> httpx.Response:
        """
        Make an authenticated API request.

        Args:
            method: HTTP method
            path: API path starting with ``/``
            params: Query parameters
            json: JSON request body
            expected: Status codes treated as success

        Returns:
            HTTP response object

        Raises:
            GitHubAuthenticationError: On 401 or 403
            GitHubAPIError: On any other unexpected status or transport error
        """
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        try:
            response = await self._http.request(
                method,
                f"{self.api_url}{path}",
                headers=headers,
                params=params,
                json=json,
            )
        except httpx.TimeoutException as e:
            self.logger.warning("GitHub API request timeout", path=path)
            raise GitHubAPIError(f"Request timeout: {method} {path}") from e
        except httpx.HTTPError as e:
            self.logger.error("GitHub API request failed", path=path, error=str(e))
            raise GitHubAPIError(f"Request failed: {method} {path}: {e}") from e

        self.logger.debug(
            "GitHub API request",
            method=method,
            path=path,
            status_code=response.status_code,
        )

        if response.status_code in expected:
            return response
        message = _error_message(response)
        if response.status_code in (401, 403):
            raise GitHubAuthenticationError(message, status_code=response.status_code)
        raise GitHubAPIError(message, status_code=response.status_code)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
        detail = data.get("message", "") if isinstance(data, dict) else ""
    except ValueError:
        detail = response.text[:200]
    return f"GitHub API error {response.status_code}: {detail}"
