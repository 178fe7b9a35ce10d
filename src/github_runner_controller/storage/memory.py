"""In-process store used for dry runs and tests."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from ..models.credential import Credential, GitHubApp, WebhookConfig
from ..models.runner import Pool, Runner, RunnerStatus, utcnow
from .base import RunnerStore, UpdateGuard


class MemoryRunnerStore(RunnerStore):
    """Dictionary-backed store. Models are copied in and out so callers never share state."""

    def __init__(self) -> None:
        super().__init__()
        self._credentials: Dict[str, Credential] = {}
        self._pools: Dict[str, Pool] = {}
        self._runners: Dict[str, Runner] = {}
        self._webhooks: Dict[str, WebhookConfig] = {}
        self._app: Optional[GitHubApp] = None

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        credential = self._credentials.get(credential_id)
        return credential.model_copy() if credential else None

    async def get_credential_by_name(self, name: str) -> Optional[Credential]:
        for credential in self._credentials.values():
            if credential.name == name:
                return credential.model_copy()
        return None

    async def list_credentials(self) -> List[Credential]:
        return [c.model_copy() for c in self._credentials.values()]

    async def save_credential(self, credential: Credential) -> Credential:
        self._credentials[credential.id] = credential.model_copy()
        return credential

    async def delete_credential(self, credential_id: str) -> bool:
        return self._credentials.pop(credential_id, None) is not None

    async def get_github_app(self) -> Optional[GitHubApp]:
        return self._app.model_copy() if self._app else None

    async def save_github_app(self, app: GitHubApp) -> GitHubApp:
        self._app = app.model_copy()
        return app

    async def get_webhook_config(self, credential_id: str) -> Optional[WebhookConfig]:
        config = self._webhooks.get(credential_id)
        return config.model_copy() if config else None

    async def save_webhook_config(self, config: WebhookConfig) -> WebhookConfig:
        self._webhooks[config.credential_id] = config.model_copy()
        return config

    async def get_pool(self, pool_id: str) -> Optional[Pool]:
        pool = self._pools.get(pool_id)
        return pool.model_copy() if pool else None

    async def get_pool_by_name(self, name: str) -> Optional[Pool]:
        for pool in self._pools.values():
            if pool.name == name:
                return pool.model_copy()
        return None

    async def list_pools(self,
                         enabled_only: bool = False,
                         credential_id: Optional[str] = None) -> List[Pool]:
        pools = [
            p for p in self._pools.values()
            if (not enabled_only or p.enabled)
            and (credential_id is None or p.credential_id == credential_id)
        ]
        return [p.model_copy() for p in sorted(pools, key=lambda p: p.created_at)]

    async def save_pool(self, pool: Pool) -> Pool:
        self._pools[pool.id] = pool.model_copy()
        return pool

    async def delete_pool(self, pool_id: str) -> bool:
        return self._pools.pop(pool_id, None) is not None

    async def get_runner(self, runner_id: str) -> Optional[Runner]:
        runner = self._runners.get(runner_id)
        return runner.model_copy(deep=True) if runner else None

    async def get_runner_by_github_id(self, github_runner_id: int) -> Optional[Runner]:
        for runner in self._runners.values():
            if runner.github_runner_id == github_runner_id:
                return runner.model_copy(deep=True)
        return None

    async def list_runners(self,
                           pool_id: Optional[str] = None,
                           credential_id: Optional[str] = None,
                           ephemeral: Optional[bool] = None,
                           statuses: Optional[Iterable[RunnerStatus]] = None,
                           exclude_statuses: Optional[Iterable[RunnerStatus]] = None) -> List[Runner]:
        wanted = set(statuses) if statuses is not None else None
        excluded = set(exclude_statuses or ())
        runners = [
            r for r in self._runners.values()
            if (pool_id is None or r.pool_id == pool_id)
            and (credential_id is None or r.credential_id == credential_id)
            and (ephemeral is None or r.ephemeral == ephemeral)
            and (wanted is None or r.status in wanted)
            and r.status not in excluded
        ]
        return [r.model_copy(deep=True) for r in sorted(runners, key=lambda r: r.created_at)]

    async def insert_runner(self, runner: Runner) -> Runner:
        if runner.id in self._runners:
            raise ValueError(f"Runner {runner.id} already exists")
        self._runners[runner.id] = runner.model_copy(deep=True)
        return runner

    async def update_runner(self,
                            runner_id: str,
                            guard: Optional[UpdateGuard] = None,
                            **changes: Any) -> Optional[Runner]:
        runner = self._runners.get(runner_id)
        if runner is None:
            return None
        if guard is not None:
            extra = guard(runner)
            if extra is None:
                return None
            changes = {**extra, **changes}
        changes.setdefault("updated_at", utcnow())
        updated = Runner.model_validate({**runner.model_dump(), **changes})
        self._runners[runner_id] = updated
        return updated.model_copy(deep=True)

    async def delete_runner(self, runner_id: str) -> bool:
        return self._runners.pop(runner_id, None) is not None
