"""
Runner reconciliation loop.

Periodically cross-checks local runner records against GitHub and
against local process/container liveness. It covers missed webhooks,
runners GitHub removed on its own, and processes that died without
going through the normal shutdown path.
"""

import asyncio
import time
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Set

import structlog
from pydantic import BaseModel, Field

from ..metrics import RECONCILE_CORRECTIONS, RECONCILE_DURATION, RECONCILE_RUNS
from ..models.config import ReconcilerConfiguration
from ..models.runner import IsolationType, Runner, RunnerStatus, utcnow
from ..provisioners.base import Provisioner
from ..provisioners.container import ContainerProvisioner
from ..provisioners.native import NativeProvisioner
from ..storage.base import RunnerStore
from ..utils.credentials import CredentialResolver
from .autoscaler import Autoscaler


class ReconcileResult(BaseModel):
    """Outcome of a single reconciliation sweep."""

    skipped: bool = False
    checked: int = 0
    orphans_removed: int = 0
    drift_corrected: int = 0
    stale_removed: int = 0
    heartbeats_refreshed: int = 0
    warm_created: int = 0
    idle_removed: int = 0
    directories_removed: int = 0
    containers_removed: int = 0
    errors: List[str] = Field(default_factory=list)


class Reconciler:
    """
    Single-flight reconciliation of local runner state.

    A sweep requested while another is running returns immediately with
    ``skipped=True``; requests are not queued.
    """

    def __init__(self,
                 store: RunnerStore,
                 resolver: CredentialResolver,
                 autoscaler: Autoscaler,
                 provisioners: Mapping[IsolationType, Provisioner],
                 config: Optional[ReconcilerConfiguration] = None,
                 logger: Any = None) -> None:
        self.store = store
        self.resolver = resolver
        self.autoscaler = autoscaler
        self.provisioners = provisioners
        self.config = config or ReconcilerConfiguration()
        self.logger = (logger or structlog.get_logger()).bind(component="reconciler")

        self._is_reconciling = False
        self._task: Optional["asyncio.Task[None]"] = None
        self._stop_event = asyncio.Event()

    @property
    def is_reconciling(self) -> bool:
        return self._is_reconciling

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic loop. Calling it again while running is a no-op."""
        if self.is_running:
            self.logger.info("Reconciler already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        self.logger.info(
            "Reconciler started",
            interval=self.config.interval,
            initial_delay=self.config.initial_delay,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self.logger.info("Reconciler stopped")

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds``; returns True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _loop(self) -> None:
        if await self._wait(self.config.initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                await self.reconcile()
            except Exception as e:
                self.logger.error("Periodic reconciliation failed", error=str(e))
            if await self._wait(self.config.interval):
                return

    async def reconcile(self) -> ReconcileResult:
        """
        Run one sweep, bounded by ``sweep_timeout``.

        Returns:
            Counts of corrections applied, or ``skipped=True`` if a sweep
            was already in progress
        """
        if self._is_reconciling:
            self.logger.info("Skipping reconciliation, already in progress")
            RECONCILE_RUNS.labels(result="skipped").inc()
            return ReconcileResult(skipped=True)

        self._is_reconciling = True
        result = ReconcileResult()
        started = time.monotonic()
        outcome = "success"
        try:
            await asyncio.wait_for(self._sweep(result), timeout=self.config.sweep_timeout)
        except asyncio.TimeoutError:
            outcome = "timeout"
            result.errors.append(f"Reconciliation timed out after {self.config.sweep_timeout}s")
            self.logger.error("Reconciliation timed out", timeout=self.config.sweep_timeout)
        except Exception as e:
            outcome = "failure"
            result.errors.append(str(e))
            self.logger.error("Reconciliation failed", error=str(e))
        finally:
            self._is_reconciling = False

        RECONCILE_DURATION.observe(time.monotonic() - started)
        RECONCILE_RUNS.labels(result=outcome).inc()
        self.logger.info("Reconciliation complete", **result.model_dump(exclude={"errors"}), errors=len(result.errors))
        return result

    async def _sweep(self, result: ReconcileResult) -> None:
        runners = await self.store.list_runners(
            exclude_statuses=[RunnerStatus.ERROR, RunnerStatus.REMOVING]
        )
        by_credential: Dict[str, List[Runner]] = defaultdict(list)
        for runner in runners:
            by_credential[runner.credential_id].append(runner)

        for credential_id, local_runners in by_credential.items():
            await self._check_credential(credential_id, local_runners, result)

        await self._check_stale_runners(result)

        for pool in await self.store.list_pools(enabled_only=True):
            try:
                result.warm_created += await self.autoscaler.ensure_warm_runners(pool)
                result.idle_removed += await self.autoscaler.scale_down_idle(pool)
            except Exception as e:
                result.errors.append(f"pool {pool.name}: {e}")
                self.logger.error("Failed to maintain pool capacity", pool=pool.name, error=str(e))

        native = self.provisioners.get(IsolationType.NATIVE)
        if isinstance(native, NativeProvisioner):
            removed = await native.cleanup_orphaned_directories(await self.store.list_runners())
            result.directories_removed += removed
            if removed:
                RECONCILE_CORRECTIONS.labels(kind="directory").inc(removed)

        container = self.provisioners.get(IsolationType.DOCKER)
        if isinstance(container, ContainerProvisioner):
            try:
                removed = await container.cleanup_orphaned_containers(await self.store.list_runners())
            except Exception as e:
                result.errors.append(f"containers: {e}")
                self.logger.warning("Orphaned container cleanup failed", error=str(e))
            else:
                result.containers_removed += removed
                if removed:
                    RECONCILE_CORRECTIONS.labels(kind="container").inc(removed)

    async def _check_credential(self,
                                credential_id: str,
                                local_runners: List[Runner],
                                result: ReconcileResult) -> None:
        try:
            client = await self.resolver.client_for(credential_id)
            remote = await asyncio.wait_for(client.list_runners(), timeout=self.config.list_timeout)
        except Exception as e:
            result.errors.append(f"credential {credential_id}: {e}")
            self.logger.error(
                "Failed to list GitHub runners",
                credential_id=credential_id,
                error=str(e),
            )
            return

        remote_ids: Set[int] = {r.id for r in remote}
        remote_names: Set[str] = {r.name for r in remote}
        registration_grace = timedelta(minutes=self.config.stale_heartbeat_minutes)

        for runner in local_runners:
            result.checked += 1
            exists_remotely = (
                (runner.github_runner_id is not None and runner.github_runner_id in remote_ids)
                or runner.name in remote_names
            )

            if not exists_remotely:
                registering = runner.status in (RunnerStatus.PENDING, RunnerStatus.CONFIGURING)
                if registering and utcnow() - runner.created_at < registration_grace:
                    continue
                self.logger.info("Runner not found on GitHub, cleaning up", runner=runner.name)
                if await self.cleanup_orphan(runner.id):
                    result.orphans_removed += 1
                    RECONCILE_CORRECTIONS.labels(kind="orphan").inc()
                continue

            if runner.status is not RunnerStatus.ONLINE:
                continue
            provisioner = self.provisioners.get(runner.isolation_type)
            if provisioner is None:
                continue
            try:
                alive = await provisioner.is_alive(runner)
            except Exception as e:
                self.logger.warning("Liveness check failed", runner=runner.name, error=str(e))
                continue
            if not alive:
                self.logger.info("Runner process or container gone, marking offline", runner=runner.name)
                if await self.store.set_status(runner.id, RunnerStatus.OFFLINE):
                    result.drift_corrected += 1
                    RECONCILE_CORRECTIONS.labels(kind="drift").inc()

    async def _check_stale_runners(self, result: ReconcileResult) -> None:
        """Double-check ephemeral runners that stopped reporting before treating them as orphans."""
        cutoff = utcnow() - timedelta(minutes=self.config.stale_heartbeat_minutes)
        candidates = await self.store.list_runners(
            ephemeral=True,
            statuses=[RunnerStatus.ONLINE, RunnerStatus.BUSY],
        )
        for runner in candidates:
            if runner.last_heartbeat is not None and runner.last_heartbeat >= cutoff:
                continue
            self.logger.info("Runner heartbeat is stale, checking GitHub", runner=runner.name)
            try:
                remote = None
                if runner.github_runner_id is not None:
                    client = await self.resolver.client_for(runner.credential_id)
                    try:
                        remote = await asyncio.wait_for(
                            client.get_runner(runner.github_runner_id),
                            timeout=self.config.get_timeout,
                        )
                    except asyncio.TimeoutError:
                        self.logger.warning("Timed out fetching runner", runner=runner.name)
                        continue

                if remote is None:
                    if await self.cleanup_orphan(runner.id):
                        result.stale_removed += 1
                        RECONCILE_CORRECTIONS.labels(kind="stale").inc()
                else:
                    await self.store.update_runner(runner.id, last_heartbeat=utcnow())
                    result.heartbeats_refreshed += 1
            except Exception as e:
                result.errors.append(f"stale runner {runner.name}: {e}")
                self.logger.error("Failed to check stale runner", runner=runner.name, error=str(e))

    async def cleanup_orphan(self, runner_id: str) -> bool:
        """
        Tear down an orphaned runner and delete its record.

        Safe to call concurrently or repeatedly: a runner that is already
        gone is a no-op. Teardown errors are logged and ignored.

        Returns:
            True if this call deleted the record
        """
        runner = await self.store.get_runner(runner_id)
        if runner is None:
            self.logger.debug("Runner already cleaned up", runner_id=runner_id)
            return False

        provisioner = self.provisioners.get(runner.isolation_type)
        if provisioner is not None:
            try:
                await provisioner.teardown(runner)
            except Exception as e:
                self.logger.warning("Orphan teardown failed", runner=runner.name, error=str(e))

        deleted = await self.store.delete_runner(runner_id)
        if deleted:
            self.logger.info("Cleaned up orphaned runner", runner=runner.name, runner_id=runner_id)
            self.autoscaler.runner_deleted(runner_id)
        return deleted
