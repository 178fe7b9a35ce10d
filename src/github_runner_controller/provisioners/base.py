"""
Provisioner contract shared by the native and container backends.

Provisioning failures never escape ``provision``: they are recorded on
the runner as ``status=error`` with the causing message. Removal and
teardown are best-effort; each step tolerates failure of the previous
one.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

import structlog
from pydantic import BaseModel

from ..metrics import RUNNER_OPERATIONS
from ..models.runner import IsolationType, Pool, Runner, RunnerStatus
from ..storage.base import RunnerStore
from ..utils.credentials import CredentialResolver
from ..utils.github_client import GitHubClient


class ProvisioningError(Exception):
    """Raised when a runner cannot be downloaded, configured or started."""
    pass


class ProvisionOptions(BaseModel):
    """Host access granted to a runner, taken from its pool."""

    enable_kvm: bool = False
    enable_docker_socket: bool = False
    enable_privileged: bool = False

    @classmethod
    def from_pool(cls, pool: Optional[Pool]) -> "ProvisionOptions":
        if pool is None:
            return cls()
        return cls(
            enable_kvm=pool.enable_kvm,
            enable_docker_socket=pool.enable_docker_socket,
            enable_privileged=pool.enable_privileged,
        )


class ProvisionHandle(BaseModel):
    """Backend-specific handle recorded after ``create``."""

    runner_id: str
    runner_dir: Optional[str] = None
    process_id: Optional[int] = None
    container_id: Optional[str] = None
    github_runner_id: Optional[int] = None


class Provisioner(ABC):
    """Lifecycle operations for one isolation backend."""

    isolation_type: IsolationType

    def __init__(self, store: RunnerStore, resolver: CredentialResolver, logger: Any = None) -> None:
        self.store = store
        self.resolver = resolver
        self.logger = (logger or structlog.get_logger()).bind(
            component="provisioner",
            isolation=self.isolation_type.value,
        )

    @abstractmethod
    async def create(self, runner: Runner, options: ProvisionOptions) -> ProvisionHandle:
        """Prepare the runner and register it with GitHub."""
        raise NotImplementedError

    @abstractmethod
    async def start(self, runner: Runner) -> None:
        raise NotImplementedError

    @abstractmethod
    async def stop(self, runner: Runner) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove(self, runner: Runner) -> None:
        """Deregister and destroy the runner. Best-effort; never raises."""
        raise NotImplementedError

    @abstractmethod
    async def teardown(self, runner: Runner) -> None:
        """Destroy local resources only, without contacting GitHub. Never raises."""
        raise NotImplementedError

    @abstractmethod
    async def is_alive(self, runner: Runner) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def sync_status(self, runner: Runner) -> None:
        """Refresh the stored status from the backend and GitHub."""
        raise NotImplementedError

    async def provision(self, runner: Runner, options: Optional[ProvisionOptions] = None) -> bool:
        """
        Create and start a runner, recording any failure on the runner.

        Returns:
            True if the runner was started
        """
        started = time.monotonic()
        try:
            handle = await self.create(runner, options or ProvisionOptions())
            current = await self.store.get_runner(runner.id)
            if current is None:
                self.logger.warning("Runner deleted during provisioning", runner_id=runner.id)
                await self._discard(runner, handle)
                return False
            await self.start(current)
        except Exception as e:
            self.logger.error(
                "Runner provisioning failed",
                runner_id=runner.id,
                runner=runner.name,
                error=str(e),
            )
            await self.store.set_status(runner.id, RunnerStatus.ERROR, error_message=str(e))
            RUNNER_OPERATIONS.labels(
                operation="provision", result="failure", isolation=self.isolation_type.value
            ).inc()
            return False

        RUNNER_OPERATIONS.labels(
            operation="provision", result="success", isolation=self.isolation_type.value
        ).inc()
        self.logger.info(
            "Runner provisioned",
            runner_id=runner.id,
            runner=runner.name,
            duration=round(time.monotonic() - started, 2),
        )
        return True

    async def _discard(self, runner: Runner, handle: ProvisionHandle) -> None:
        """Clean up a runner whose record vanished while it was being created."""
        created = runner.model_copy(update={
            "runner_dir": handle.runner_dir or runner.runner_dir,
            "container_id": handle.container_id or runner.container_id,
            "github_runner_id": handle.github_runner_id or runner.github_runner_id,
        })
        # Already registered with GitHub, so deregister as well
        if created.github_runner_id or created.runner_dir:
            await self.remove(created)
        else:
            await self.teardown(created)

    async def _client(self, runner: Runner) -> GitHubClient:
        return await self.resolver.client_for(runner.credential_id)


def select_provisioner(provisioners: Mapping[IsolationType, Provisioner],
                       isolation_type: IsolationType) -> Provisioner:
    """
    Look up the provisioner for an isolation type.

    Raises:
        ProvisioningError: If no backend handles ``isolation_type``
    """
    isolation_type = IsolationType(isolation_type)
    provisioner = provisioners.get(isolation_type)
    if provisioner is None:
        raise ProvisioningError(f"No provisioner available for isolation type '{isolation_type.value}'")
    return provisioner
