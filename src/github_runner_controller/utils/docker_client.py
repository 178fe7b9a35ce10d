"""
Async wrapper around the Docker SDK.

The SDK is synchronous; every call is pushed to a worker thread so the
event loop never blocks on the daemon. Only the operations the container
provisioner needs are exposed.
"""

import asyncio
from typing import Any, Dict, List, Optional

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from pydantic import BaseModel

MANAGED_LABEL = "runner-controller.runner-id"
NAME_LABEL = "runner-controller.runner-name"


class DockerUnavailableError(Exception):
    """Raised when the Docker daemon cannot be reached."""
    pass


class ContainerState(BaseModel):
    """Subset of ``docker inspect`` state the controller acts on."""

    running: bool
    status: str
    exit_code: Optional[int] = None
    started_at: Optional[str] = None


class DockerEngine:
    """
    Thin async facade over ``docker.DockerClient``.

    The client is created lazily so that the controller can start on
    hosts without Docker; callers check ``ping`` first.
    """

    def __init__(self, base_url: Optional[str] = None, logger: Any = None) -> None:
        self.base_url = base_url
        self._client: Optional[docker.DockerClient] = None
        self.logger = (logger or structlog.get_logger()).bind(component="docker_engine")

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                if self.base_url:
                    self._client = docker.DockerClient(base_url=self.base_url)
                else:
                    self._client = docker.from_env()
            except DockerException as e:
                raise DockerUnavailableError(f"Docker is not available: {e}") from e
        return self._client

    async def _call(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        def invoke() -> Any:
            target: Any = self._get_client()
            for part in func_name.split("."):
                target = getattr(target, part)
            return target(*args, **kwargs)

        return await asyncio.to_thread(invoke)

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping"))
        except (DockerUnavailableError, DockerException) as e:
            self.logger.info("Docker daemon unreachable", error=str(e))
            return False

    async def info(self) -> Optional[Dict[str, Any]]:
        try:
            return await self._call("info")
        except (DockerUnavailableError, DockerException) as e:
            self.logger.warning("Failed to read docker info", error=str(e))
            return None

    async def inspect_image(self, reference: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._call("api.inspect_image", reference)
        except (ImageNotFound, NotFound):
            return None

    async def pull_image(self, repository: str, tag: str, platform: str) -> Dict[str, Any]:
        """
        Pull an image for a specific platform.

        Returns:
            The ``docker inspect`` document of the pulled image
        """
        self.logger.info("Pulling image", repository=repository, tag=tag, platform=platform)
        await self._call("api.pull", repository, tag=tag, platform=platform)
        image = await self.inspect_image(f"{repository}:{tag}")
        if image is None:
            raise DockerException(f"Image {repository}:{tag} missing after pull")
        return image

    async def tag_image(self, source: str, repository: str, tag: str) -> None:
        await self._call("api.tag", source, repository, tag)

    async def create_container(self,
                               image: str,
                               name: str,
                               environment: Dict[str, str],
                               labels: Dict[str, str],
                               **host_config: Any) -> str:
        """
        Create (without starting) a container.

        Args:
            image: Image reference
            name: Container name
            environment: Environment variables
            labels: Container labels
            **host_config: Keyword arguments accepted by ``containers.create``
                (``auto_remove``, ``restart_policy``, ``devices``, ``volumes``,
                ``group_add``, ``privileged``)

        Returns:
            Container id
        """
        container = await self._call(
            "containers.create",
            image,
            name=name,
            environment=environment,
            labels=labels,
            **host_config,
        )
        return container.id

    async def start_container(self, container_id: str) -> None:
        await self._call("api.start", container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> bool:
        """Stop a container; returns False if it no longer exists."""
        try:
            await self._call("api.stop", container_id, timeout=timeout)
            return True
        except NotFound:
            return False

    async def remove_container(self, container_id: str, force: bool = True) -> bool:
        """Remove a container; returns False if it no longer exists."""
        try:
            await self._call("api.remove_container", container_id, force=force)
            return True
        except NotFound:
            return False
        except APIError as e:
            # Auto-remove containers race with explicit removal
            if e.status_code == 409 and "in progress" in str(e).lower():
                return True
            raise

    async def container_state(self, container_id: str) -> Optional[ContainerState]:
        try:
            data = await self._call("api.inspect_container", container_id)
        except NotFound:
            return None
        state = data.get("State", {})
        return ContainerState(
            running=bool(state.get("Running")),
            status=state.get("Status", "unknown"),
            exit_code=state.get("ExitCode"),
            started_at=state.get("StartedAt"),
        )

    async def container_logs(self, container_id: str, tail: int = 100) -> str:
        try:
            raw = await self._call("api.logs", container_id, tail=tail, stdout=True, stderr=True)
        except NotFound:
            return ""
        return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)

    async def list_managed_containers(self) -> List[Dict[str, Any]]:
        """All containers (running or not) created by this controller."""
        return await self._call("api.containers", all=True, filters={"label": MANAGED_LABEL})

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
