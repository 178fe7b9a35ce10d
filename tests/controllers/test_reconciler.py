"""
Reconciler tests.

GitHub is faked per credential; the provisioner records teardown calls
so orphan cleanup can be observed.
"""

import asyncio
from datetime import timedelta

import pytest

from github_runner_controller.controllers.autoscaler import Autoscaler
from github_runner_controller.controllers.reconciler import Reconciler
from github_runner_controller.models.config import ReconcilerConfiguration
from github_runner_controller.models.credential import Credential, CredentialScope
from github_runner_controller.models.runner import IsolationType, Pool, Runner, RunnerStatus, utcnow
from github_runner_controller.provisioners.container import ContainerProvisioner
from github_runner_controller.storage.memory import MemoryRunnerStore
from github_runner_controller.utils.docker_client import MANAGED_LABEL

from tests.helpers import FakeEngine, FakeProvisioner, FakeResolver


class TestReconciler:
    """Test orphan, drift and stale runner handling."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = MemoryRunnerStore()
        self.credential = Credential(name="octo", scope=CredentialScope.ORG, target="octo", encrypted_token="e")
        self.resolver = FakeResolver()
        self.github = self.resolver.add(self.credential)
        self.provisioner = FakeProvisioner(self.store)
        self.provisioners = {IsolationType.DOCKER: self.provisioner}
        self.autoscaler = Autoscaler(self.store, self.provisioners)
        self.reconciler = Reconciler(
            self.store,
            self.resolver,
            self.autoscaler,
            self.provisioners,
            config=ReconcilerConfiguration(initial_delay=0, interval=3600),
        )

    async def add_runner(self, name, status=RunnerStatus.ONLINE, github_id=None, ephemeral=False, **fields):
        runner = Runner(
            name=name,
            credential_id=self.credential.id,
            isolation_type=IsolationType.DOCKER,
            status=status,
            github_runner_id=github_id,
            ephemeral=ephemeral,
            **fields,
        )
        await self.store.insert_runner(runner)
        return runner

    @pytest.mark.asyncio
    async def test_orphan_removed_and_torn_down(self):
        """Test that a runner unknown to GitHub by id and name is deleted and torn down."""
        orphan = await self.add_runner("gone", github_id=10)
        kept = await self.add_runner("kept", github_id=11)
        self.provisioner.alive[kept.id] = True
        self.github.add_remote(11, "kept")

        result = await self.reconciler.reconcile()

        assert result.orphans_removed == 1
        assert await self.store.get_runner(orphan.id) is None
        assert orphan.id in self.provisioner.torn_down
        assert await self.store.get_runner(kept.id) is not None

    @pytest.mark.asyncio
    async def test_match_by_name(self):
        """Test that a runner known to GitHub only by name is not an orphan."""
        runner = await self.add_runner("by-name")
        self.provisioner.alive[runner.id] = True
        self.github.add_remote(99, "by-name")

        result = await self.reconciler.reconcile()

        assert result.orphans_removed == 0
        assert await self.store.get_runner(runner.id) is not None

    @pytest.mark.asyncio
    async def test_recent_registration_not_orphaned(self):
        """Test that a freshly created runner still registering is left alone."""
        runner = await self.add_runner("registering", status=RunnerStatus.CONFIGURING)

        result = await self.reconciler.reconcile()

        assert result.orphans_removed == 0
        assert await self.store.get_runner(runner.id) is not None

    @pytest.mark.asyncio
    async def test_stuck_registration_orphaned(self):
        """Test that a runner stuck registering past the grace period is cleaned up."""
        long_ago = utcnow() - timedelta(hours=2)
        runner = await self.add_runner("stuck", status=RunnerStatus.PENDING, created_at=long_ago)

        result = await self.reconciler.reconcile()

        assert result.orphans_removed == 1
        assert await self.store.get_runner(runner.id) is None

    @pytest.mark.asyncio
    async def test_error_and_removing_skipped(self):
        """Test that error and removing runners are not reconciled."""
        failed = await self.add_runner("failed", status=RunnerStatus.ERROR, github_id=1)
        removing = await self.add_runner("removing", status=RunnerStatus.REMOVING, github_id=2)

        result = await self.reconciler.reconcile()

        assert result.checked == 0
        assert await self.store.get_runner(failed.id) is not None
        assert await self.store.get_runner(removing.id) is not None

    @pytest.mark.asyncio
    async def test_drift_marks_offline(self):
        """Test that an online runner whose container is gone becomes offline."""
        runner = await self.add_runner("drifted", github_id=5)
        self.github.add_remote(5, "drifted")

        result = await self.reconciler.reconcile()

        assert result.drift_corrected == 1
        assert (await self.store.get_runner(runner.id)).status is RunnerStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_list_failure_skips_credential(self):
        """Test that a GitHub failure for one credential removes nothing."""
        runner = await self.add_runner("unknown", github_id=5)
        self.github.fail_list = True

        result = await self.reconciler.reconcile()

        assert result.orphans_removed == 0
        assert len(result.errors) == 1
        assert await self.store.get_runner(runner.id) is not None

    @pytest.mark.asyncio
    async def test_stale_runner_gone_remotely(self):
        """Test that a stale ephemeral runner GitHub no longer knows is cleaned up."""
        runner = await self.add_runner(
            "stale",
            status=RunnerStatus.BUSY,
            github_id=7,
            ephemeral=True,
            last_heartbeat=utcnow() - timedelta(hours=1),
        )
        # Present in the list call, gone by the time it is fetched individually
        self.github.add_remote(7, "stale")
        original_get = self.github.get_runner

        async def vanished(runner_id):
            self.github.remote.pop(runner_id, None)
            return await original_get(runner_id)

        self.github.get_runner = vanished

        result = await self.reconciler.reconcile()

        assert result.stale_removed == 1
        assert await self.store.get_runner(runner.id) is None

    @pytest.mark.asyncio
    async def test_stale_runner_still_registered(self):
        """Test that a stale runner GitHub still knows gets a fresh heartbeat."""
        old = utcnow() - timedelta(hours=1)
        runner = await self.add_runner(
            "stale", status=RunnerStatus.BUSY, github_id=7, ephemeral=True, last_heartbeat=old
        )
        self.github.add_remote(7, "stale", busy=True)

        result = await self.reconciler.reconcile()

        assert result.heartbeats_refreshed == 1
        assert (await self.store.get_runner(runner.id)).last_heartbeat > old

    @pytest.mark.asyncio
    async def test_pools_topped_up(self):
        """Test that a sweep restores warm capacity of enabled pools."""
        pool = Pool(name="linux", credential_id=self.credential.id, warm_runners=2)
        await self.store.save_pool(pool)

        result = await self.reconciler.reconcile()
        await self.autoscaler.drain()

        assert result.warm_created == 2
        assert (await self.store.pool_counts(pool.id)).active == 2

    @pytest.mark.asyncio
    async def test_single_flight(self):
        """Test that a sweep requested during another sweep is skipped."""
        release = asyncio.Event()
        original_list = self.github.list_runners

        async def slow_list():
            await release.wait()
            return await original_list()

        self.github.list_runners = slow_list
        await self.add_runner("r", github_id=1)

        first = asyncio.create_task(self.reconciler.reconcile())
        await asyncio.sleep(0)
        assert self.reconciler.is_reconciling

        second = await self.reconciler.reconcile()
        assert second.skipped

        release.set()
        assert not (await first).skipped
        assert not self.reconciler.is_reconciling

    @pytest.mark.asyncio
    async def test_sweep_timeout(self):
        """Test that a hung sweep is abandoned and the flag released."""
        self.reconciler.config = ReconcilerConfiguration(sweep_timeout=0.05)

        async def hang():
            await asyncio.Event().wait()

        self.github.list_runners = hang
        await self.add_runner("r", github_id=1)

        result = await self.reconciler.reconcile()

        assert result.errors
        assert not self.reconciler.is_reconciling

    @pytest.mark.asyncio
    async def test_cleanup_orphan_idempotent(self):
        """Test that cleaning up the same runner twice, even concurrently, is safe."""
        runner = await self.add_runner("orphan")

        results = await asyncio.gather(
            self.reconciler.cleanup_orphan(runner.id),
            self.reconciler.cleanup_orphan(runner.id),
        )
        assert sorted(results) == [False, True]
        assert not await self.reconciler.cleanup_orphan(runner.id)
        assert not await self.reconciler.cleanup_orphan("never-existed")

    @pytest.mark.asyncio
    async def test_cleanup_survives_teardown_failure(self):
        """Test that the record is deleted even when teardown fails."""
        runner = await self.add_runner("orphan")
        self.provisioner.fail_teardown = True

        assert await self.reconciler.cleanup_orphan(runner.id)
        assert await self.store.get_runner(runner.id) is None

    @pytest.mark.asyncio
    async def test_start_and_stop_loop(self):
        """Test that the periodic loop runs a sweep and stops cleanly."""
        runner = await self.add_runner("gone", github_id=3)

        self.reconciler.start()
        self.reconciler.start()
        for _ in range(50):
            if await self.store.get_runner(runner.id) is None:
                break
            await asyncio.sleep(0.01)
        await self.reconciler.stop()

        assert await self.store.get_runner(runner.id) is None
        assert not self.reconciler.is_running


class TestContainerSweep:
    """Test removal of containers left behind by deleted runners."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = MemoryRunnerStore()
        self.resolver = FakeResolver()
        self.engine = FakeEngine()
        self.provisioners = {
            IsolationType.DOCKER: ContainerProvisioner(self.store, self.resolver, self.engine, registration_delay=0),
        }
        self.reconciler = Reconciler(
            self.store,
            self.resolver,
            Autoscaler(self.store, self.provisioners),
            self.provisioners,
            config=ReconcilerConfiguration(initial_delay=0, interval=3600),
        )

    @pytest.mark.asyncio
    async def test_orphaned_container_removed(self):
        """Test that a managed container with no runner record is removed."""
        orphan = await self.engine.create_container("img", "n", {}, {MANAGED_LABEL: "deleted-runner"})

        result = await self.reconciler.reconcile()

        assert result.containers_removed == 1
        assert self.engine.removed == [orphan]
