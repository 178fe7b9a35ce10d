"""
Autoscaling engine for runner pools.

Scale-up reserves capacity by inserting a ``pending`` runner record
before provisioning starts; provisioning then runs as a background task
and the caller gets the new runner id immediately.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

import structlog

from ..metrics import SCALING_DECISIONS
from ..models.runner import IsolationType, Pool, Runner, RunnerStatus, utcnow
from ..provisioners.base import ProvisionOptions, Provisioner, ProvisioningError, select_provisioner
from ..storage.base import RunnerStore

# Labels GitHub adds to every self-hosted runner; jobs may request them
# but pools never need to declare them.
STANDARD_LABELS = frozenset({
    "self-hosted", "linux", "macos", "windows", "x64", "arm64", "arm",
})


def labels_match(pool_labels: Iterable[str], job_labels: Iterable[str]) -> bool:
    """
    Check whether a pool can serve a job.

    Standard labels are ignored on the job side; every remaining job
    label must be present on the pool, compared case-insensitively. A
    pool with extra labels still matches.

    Args:
        pool_labels: Labels of the pool (effective or custom)
        job_labels: ``runs-on`` labels of the job

    Returns:
        True if the pool has every custom label the job requests
    """
    required = {label.lower() for label in job_labels} - STANDARD_LABELS
    if not required:
        return True
    available = {label.lower() for label in pool_labels}
    return required <= available


class Autoscaler:
    """
    Scale pools up and down and keep warm capacity available.

    The autoscaler owns the background provisioning tasks it starts so
    they are not garbage collected mid-flight.
    """

    def __init__(self,
                 store: RunnerStore,
                 provisioners: Mapping[IsolationType, Provisioner],
                 logger: Any = None) -> None:
        self.store = store
        self.provisioners = provisioners
        self.logger = (logger or structlog.get_logger()).bind(component="autoscaler")
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._pool_locks: Dict[str, asyncio.Lock] = {}
        # Called with the runner id after a runner record is deleted
        self.on_runner_deleted: List[Callable[[str], Any]] = []

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def scale_up(self, pool: Pool) -> Optional[str]:
        """
        Add one ephemeral runner to ``pool`` if it is below ``max_runners``.

        The runner record is created before this returns; provisioning is
        not awaited, so the runner may not be usable yet.

        Returns:
            The new runner id, or None if the pool is at capacity
        """
        # Count and insert must not interleave with another scale-up of the same pool
        async with self._pool_locks.setdefault(pool.id, asyncio.Lock()):
            counts = await self.store.pool_counts(pool.id)
            if counts.active >= pool.max_runners:
                self.logger.info(
                    "Pool at max capacity",
                    pool=pool.name,
                    active=counts.active,
                    max_runners=pool.max_runners,
                )
                SCALING_DECISIONS.labels(direction="up", reason="at_capacity", pool=pool.name).inc()
                return None

            runner = Runner(
                name=f"{pool.name}-{uuid.uuid4().hex[:8]}",
                credential_id=pool.credential_id,
                status=RunnerStatus.PENDING,
                platform=pool.platform,
                architecture=pool.architecture,
                isolation_type=pool.isolation_type,
                labels=pool.effective_labels(),
                pool_id=pool.id,
                ephemeral=True,
            )
            await self.store.insert_runner(runner)

        self.logger.info(
            "Scaling up pool",
            pool=pool.name,
            runner=runner.name,
            runner_id=runner.id,
            active=counts.active + 1,
            max_runners=pool.max_runners,
        )
        SCALING_DECISIONS.labels(direction="up", reason="capacity_available", pool=pool.name).inc()

        task = asyncio.create_task(self._provision(runner, pool))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return runner.id

    async def _provision(self, runner: Runner, pool: Pool) -> None:
        try:
            provisioner = select_provisioner(self.provisioners, runner.isolation_type)
        except ProvisioningError as e:
            self.logger.error("Cannot provision runner", runner_id=runner.id, error=str(e))
            await self.store.set_status(runner.id, RunnerStatus.ERROR, error_message=str(e))
            return
        await provisioner.provision(runner, ProvisionOptions.from_pool(pool))

    async def scale_down(self, pool: Pool) -> bool:
        """
        Remove the oldest idle ephemeral runner if idle capacity exceeds ``warm_runners``.

        Returns:
            True if a runner was removed
        """
        counts = await self.store.pool_counts(pool.id)
        if counts.idle <= pool.warm_runners:
            self.logger.debug(
                "Pool at warm capacity",
                pool=pool.name,
                idle=counts.idle,
                warm_runners=pool.warm_runners,
            )
            return False

        idle = await self.store.list_idle_runners(pool.id)
        if not idle:
            return False

        oldest = idle[0]
        self.logger.info(
            "Scaling down pool",
            pool=pool.name,
            runner=oldest.name,
            idle=counts.idle,
            warm_runners=pool.warm_runners,
        )
        SCALING_DECISIONS.labels(direction="down", reason="surplus_idle", pool=pool.name).inc()
        await self.deprovision(oldest)
        return True

    async def scale_down_idle(self, pool: Pool, now: Optional[datetime] = None) -> int:
        """
        Remove surplus idle runners that have been idle past the pool's timeout.

        Idle time counts from when the runner last became online, so
        heartbeats and other writes do not reset it.

        Never drops the pool below ``warm_runners`` idle runners.

        Returns:
            Number of runners removed
        """
        idle = await self.store.list_idle_runners(pool.id)
        surplus = len(idle) - pool.warm_runners
        if surplus <= 0:
            return 0

        cutoff = (now or utcnow()) - timedelta(minutes=pool.idle_timeout_minutes)
        expired = [r for r in idle if (r.online_since or r.updated_at) < cutoff][:surplus]
        for runner in expired:
            self.logger.info("Removing idle runner", pool=pool.name, runner=runner.name)
            SCALING_DECISIONS.labels(direction="down", reason="idle_timeout", pool=pool.name).inc()
            await self.deprovision(runner)
        return len(expired)

    async def ensure_warm_runners(self, pool: Pool) -> int:
        """
        Top the pool up to ``warm_runners`` active runners.

        Returns:
            Number of runner records created
        """
        counts = await self.store.pool_counts(pool.id)
        deficit = pool.warm_runners - counts.active
        if deficit <= 0:
            return 0

        self.logger.info(
            "Replenishing warm runners",
            pool=pool.name,
            active=counts.active,
            warm_runners=pool.warm_runners,
            deficit=deficit,
        )
        created = 0
        for _ in range(deficit):
            if await self.scale_up(pool) is None:
                break
            created += 1
        return created

    async def deprovision(self, runner: Runner) -> None:
        """Remove the runner through its provisioner, then delete the record regardless."""
        try:
            provisioner = select_provisioner(self.provisioners, runner.isolation_type)
            await provisioner.remove(runner)
        except Exception as e:
            self.logger.warning("Runner removal failed", runner_id=runner.id, error=str(e))
        if await self.store.delete_runner(runner.id):
            self.runner_deleted(runner.id)

    def runner_deleted(self, runner_id: str) -> None:
        """Run the ``on_runner_deleted`` callbacks for a deleted runner record."""
        for callback in self.on_runner_deleted:
            callback(runner_id)

    async def find_matching_pools(self, credential_id: str, job_labels: List[str]) -> List[Pool]:
        """Enabled pools of a credential whose effective labels satisfy ``job_labels``."""
        pools = await self.store.list_pools(enabled_only=True, credential_id=credential_id)
        return [p for p in pools if labels_match(p.effective_labels(), job_labels)]

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight provisioning tasks to finish."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
