"""Persistent store interface for credentials, pools and runners."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from ..models.credential import Credential, GitHubApp, WebhookConfig
from ..models.runner import Pool, PoolRunnerCounts, Runner, RunnerStatus, utcnow

# Called with the stored runner inside the write; returns extra changes, or None to veto
UpdateGuard = Callable[[Runner], Optional[Dict[str, Any]]]


class RunnerStore(ABC):
    """
    Typed async CRUD over the controller's durable state.

    Every delete is idempotent: deleting a missing row returns False
    instead of raising, because cleanup paths race with each other.
    """

    def __init__(self) -> None:
        self.logger = structlog.get_logger().bind(component="store", backend=type(self).__name__)

    async def initialize(self) -> None:
        """Prepare the backing store (create tables, open connections)."""

    async def close(self) -> None:
        """Release resources held by the store."""

    # Credentials

    @abstractmethod
    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        raise NotImplementedError

    @abstractmethod
    async def get_credential_by_name(self, name: str) -> Optional[Credential]:
        raise NotImplementedError

    @abstractmethod
    async def list_credentials(self) -> List[Credential]:
        raise NotImplementedError

    @abstractmethod
    async def save_credential(self, credential: Credential) -> Credential:
        """Insert or replace a credential."""
        raise NotImplementedError

    @abstractmethod
    async def delete_credential(self, credential_id: str) -> bool:
        raise NotImplementedError

    async def find_credentials_by_targets(self, targets: Iterable[str]) -> List[Credential]:
        """Credentials whose target matches one of ``targets`` (case-insensitive), in target order."""
        wanted = [t.lower() for t in targets]
        credentials = [c for c in await self.list_credentials() if c.target.lower() in wanted]
        return sorted(credentials, key=lambda c: wanted.index(c.target.lower()))

    # GitHub App and webhooks

    @abstractmethod
    async def get_github_app(self) -> Optional[GitHubApp]:
        raise NotImplementedError

    @abstractmethod
    async def save_github_app(self, app: GitHubApp) -> GitHubApp:
        raise NotImplementedError

    @abstractmethod
    async def get_webhook_config(self, credential_id: str) -> Optional[WebhookConfig]:
        raise NotImplementedError

    @abstractmethod
    async def save_webhook_config(self, config: WebhookConfig) -> WebhookConfig:
        raise NotImplementedError

    # Pools

    @abstractmethod
    async def get_pool(self, pool_id: str) -> Optional[Pool]:
        raise NotImplementedError

    @abstractmethod
    async def get_pool_by_name(self, name: str) -> Optional[Pool]:
        raise NotImplementedError

    @abstractmethod
    async def list_pools(self,
                         enabled_only: bool = False,
                         credential_id: Optional[str] = None) -> List[Pool]:
        raise NotImplementedError

    @abstractmethod
    async def save_pool(self, pool: Pool) -> Pool:
        raise NotImplementedError

    @abstractmethod
    async def delete_pool(self, pool_id: str) -> bool:
        raise NotImplementedError

    # Runners

    @abstractmethod
    async def get_runner(self, runner_id: str) -> Optional[Runner]:
        raise NotImplementedError

    @abstractmethod
    async def get_runner_by_github_id(self, github_runner_id: int) -> Optional[Runner]:
        raise NotImplementedError

    @abstractmethod
    async def list_runners(self,
                           pool_id: Optional[str] = None,
                           credential_id: Optional[str] = None,
                           ephemeral: Optional[bool] = None,
                           statuses: Optional[Iterable[RunnerStatus]] = None,
                           exclude_statuses: Optional[Iterable[RunnerStatus]] = None) -> List[Runner]:
        """List runners matching every given filter, oldest first."""
        raise NotImplementedError

    @abstractmethod
    async def insert_runner(self, runner: Runner) -> Runner:
        raise NotImplementedError

    @abstractmethod
    async def update_runner(self,
                            runner_id: str,
                            guard: Optional[UpdateGuard] = None,
                            **changes: Any) -> Optional[Runner]:
        """
        Apply field changes to a runner and bump ``updated_at``.

        Status changes should go through ``set_status`` so the transition
        table is enforced.

        Args:
            runner_id: Runner to update
            guard: Evaluated against the stored runner atomically with the
                write; returning None cancels the update
            **changes: Field values to set

        Returns:
            The updated runner, or None if it no longer exists or the
            guard rejected the update
        """
        raise NotImplementedError

    @abstractmethod
    async def delete_runner(self, runner_id: str) -> bool:
        raise NotImplementedError

    async def set_status(self,
                         runner_id: str,
                         status: RunnerStatus,
                         error_message: Optional[str] = None,
                         **changes: Any) -> bool:
        """
        Move a runner to ``status`` if the transition is allowed.

        Invalid transitions are logged and rejected; a missing runner is
        a no-op.

        Returns:
            True if the runner now has ``status``
        """
        status = RunnerStatus(status)

        def transition(current: Runner) -> Optional[Dict[str, Any]]:
            if not current.status.can_transition_to(status):
                self.logger.warning(
                    "Rejected invalid status transition",
                    runner_id=runner_id,
                    current=current.status.value,
                    requested=status.value,
                )
                return None
            extra = dict(changes)
            if status is RunnerStatus.ERROR or error_message is not None:
                extra["error_message"] = error_message
            elif current.error_message and status is not current.status:
                extra["error_message"] = None
            if status is RunnerStatus.ONLINE and current.status is not RunnerStatus.ONLINE:
                extra["online_since"] = utcnow()
            return extra

        return await self.update_runner(runner_id, guard=transition, status=status) is not None

    async def list_idle_runners(self, pool_id: str) -> List[Runner]:
        """Idle ephemeral runners of a pool, oldest first."""
        return await self.list_runners(
            pool_id=pool_id,
            ephemeral=True,
            statuses=[RunnerStatus.ONLINE],
        )

    async def pool_counts(self, pool_id: str) -> PoolRunnerCounts:
        """Active, idle and busy runner counts for a pool."""
        runners = await self.list_runners(pool_id=pool_id)
        active = RunnerStatus.active()
        return PoolRunnerCounts(
            total=len(runners),
            active=sum(1 for r in runners if r.status in active),
            idle=sum(1 for r in runners if r.status is RunnerStatus.ONLINE and r.ephemeral),
            busy=sum(1 for r in runners if r.status is RunnerStatus.BUSY),
        )
