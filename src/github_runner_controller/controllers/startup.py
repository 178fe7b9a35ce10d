"""
Controller startup sequence.

Runs once before the controller accepts work. The order matters:
ephemeral leftovers are purged before persistent runners are recovered,
and warm capacity is only filled once recovery has settled the counts.
"""

from typing import Any, Mapping, Optional

import structlog
from pydantic import BaseModel

from ..models.runner import IsolationType, Runner, RunnerStatus
from ..provisioners.base import Provisioner
from ..provisioners.native import NativeProvisioner, is_process_alive
from ..storage.base import RunnerStore
from .autoscaler import Autoscaler
from .reconciler import Reconciler


class StartupReport(BaseModel):
    """Counts from one startup run."""

    docker_available: bool = False
    ephemeral_purged: int = 0
    recovered: int = 0
    reattached: int = 0
    restarted: int = 0
    marked_offline: int = 0
    failed: int = 0
    warm_created: int = 0
    pools_skipped: int = 0


class StartupSequencer:
    """Restore a consistent runner fleet after the controller (re)starts."""

    def __init__(self,
                 store: RunnerStore,
                 autoscaler: Autoscaler,
                 reconciler: Reconciler,
                 provisioners: Mapping[IsolationType, Provisioner],
                 logger: Any = None) -> None:
        self.store = store
        self.autoscaler = autoscaler
        self.reconciler = reconciler
        self.provisioners = provisioners
        self.logger = (logger or structlog.get_logger()).bind(component="startup")

    @property
    def container(self) -> Optional[Provisioner]:
        return self.provisioners.get(IsolationType.DOCKER)

    @property
    def native(self) -> Optional[NativeProvisioner]:
        provisioner = self.provisioners.get(IsolationType.NATIVE)
        return provisioner if isinstance(provisioner, NativeProvisioner) else None

    async def run(self) -> StartupReport:
        report = StartupReport()

        report.docker_available = await self._docker_available()
        if not report.docker_available:
            self.logger.warning("Docker is not available, Docker runners will not be started")

        await self._purge_ephemeral(report)
        await self._recover_persistent(report, report.docker_available)
        await self._fill_warm_pools(report, report.docker_available)

        self.reconciler.start()
        self.logger.info("Startup sequence complete", **report.model_dump())
        return report

    async def _docker_available(self) -> bool:
        container = self.container
        if container is None:
            return False
        try:
            return await container.is_available()
        except Exception as e:
            self.logger.warning("Docker availability check failed", error=str(e))
            return False

    async def _purge_ephemeral(self, report: StartupReport) -> None:
        """Ephemeral runners never survive a restart; tear them down and forget them."""
        runners = [r for r in await self.store.list_runners(ephemeral=True) if r.pool_id]
        if runners:
            self.logger.info("Cleaning up ephemeral runners from previous session", count=len(runners))
        for runner in runners:
            provisioner = self.provisioners.get(runner.isolation_type)
            if provisioner is not None:
                try:
                    await provisioner.teardown(runner)
                except Exception as e:
                    self.logger.warning("Ephemeral runner teardown failed", runner=runner.name, error=str(e))
            await self.store.delete_runner(runner.id)
            report.ephemeral_purged += 1

    async def _recover_persistent(self, report: StartupReport, docker_available: bool) -> None:
        runners = await self.store.list_runners(
            ephemeral=False,
            exclude_statuses=[RunnerStatus.ERROR, RunnerStatus.REMOVING],
        )
        for runner in runners:
            try:
                if runner.isolation_type is IsolationType.DOCKER:
                    await self._recover_container(runner, docker_available, report)
                elif runner.isolation_type is IsolationType.NATIVE:
                    await self._recover_native(runner, report)
                else:
                    self.logger.warning(
                        "No recovery path for isolation type",
                        runner=runner.name,
                        isolation_type=runner.isolation_type.value,
                    )
                    continue
                report.recovered += 1
            except Exception as e:
                report.failed += 1
                self.logger.error("Failed to recover runner", runner=runner.name, error=str(e))
                await self.store.set_status(runner.id, RunnerStatus.ERROR, error_message=str(e))

    async def _recover_container(self, runner: Runner, docker_available: bool, report: StartupReport) -> None:
        container = self.container
        if not docker_available or container is None:
            await self.store.set_status(runner.id, RunnerStatus.OFFLINE)
            report.marked_offline += 1
            return

        await container.sync_status(runner)
        current = await self.store.get_runner(runner.id)
        if current is not None and current.status is RunnerStatus.OFFLINE:
            self.logger.info("Restarting stopped Docker runner", runner=runner.name)
            await container.start(current)
            report.restarted += 1

    async def _recover_native(self, runner: Runner, report: StartupReport) -> None:
        native = self.native
        if native is None:
            await self.store.set_status(runner.id, RunnerStatus.OFFLINE)
            report.marked_offline += 1
            return

        if runner.process_id and is_process_alive(runner.process_id):
            await native.reattach(runner)
            report.reattached += 1
            return

        # Dead process: go through offline, online runners cannot move straight to pending
        await self.store.set_status(runner.id, RunnerStatus.OFFLINE, process_id=None)
        if not runner.runner_dir:
            report.marked_offline += 1
            return

        self.logger.info("Restarting native runner", runner=runner.name, runner_dir=runner.runner_dir)
        await self.store.set_status(runner.id, RunnerStatus.PENDING)
        current = await self.store.get_runner(runner.id)
        if current is not None:
            await native.start(current)
            report.restarted += 1

    async def _fill_warm_pools(self, report: StartupReport, docker_available: bool) -> None:
        for pool in await self.store.list_pools(enabled_only=True):
            if pool.isolation_type is IsolationType.DOCKER and not docker_available:
                self.logger.info("Skipping warm runners for Docker pool", pool=pool.name)
                report.pools_skipped += 1
                continue
            try:
                report.warm_created += await self.autoscaler.ensure_warm_runners(pool)
            except Exception as e:
                self.logger.error("Failed to ensure warm runners", pool=pool.name, error=str(e))
