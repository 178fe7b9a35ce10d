"""
Container provisioner tests against an in-memory Docker engine.
"""

import asyncio

import pytest

from github_runner_controller.models.credential import Credential, CredentialScope
from github_runner_controller.models.runner import Architecture, IsolationType, Runner, RunnerStatus
from github_runner_controller.provisioners.base import ProvisionOptions, ProvisioningError
from github_runner_controller.provisioners.container import (
    ContainerProvisioner,
    build_host_config,
    normalize_image_architecture,
    split_image_reference,
)
from github_runner_controller.storage.memory import MemoryRunnerStore
from github_runner_controller.utils.docker_client import MANAGED_LABEL

from tests.helpers import FakeEngine, FakeResolver


class TestImageHelpers:
    """Test image reference and host configuration helpers."""

    def test_split_image_reference(self):
        """Test splitting repository and tag."""
        assert split_image_reference("myoung34/github-runner") == ("myoung34/github-runner", "latest")
        assert split_image_reference("myoung34/github-runner:2.320") == ("myoung34/github-runner", "2.320")
        assert split_image_reference("registry:5000/runner") == ("registry:5000/runner", "latest")
        assert split_image_reference("registry:5000/runner:v1") == ("registry:5000/runner", "v1")

    def test_normalize_architecture(self):
        """Test that kernel architecture names map to Docker names."""
        assert normalize_image_architecture("aarch64") == "arm64"
        assert normalize_image_architecture("x86_64") == "amd64"
        assert normalize_image_architecture("arm64") == "arm64"
        assert normalize_image_architecture(None) is None

    def test_host_config_defaults(self):
        """Test that ephemeral containers auto-remove and persistent ones restart."""
        ephemeral = build_host_config(True, ProvisionOptions())
        persistent = build_host_config(False, ProvisionOptions())

        assert ephemeral == {"auto_remove": True, "restart_policy": {"Name": "no"}}
        assert persistent["restart_policy"] == {"Name": "unless-stopped"}
        assert not persistent["auto_remove"]

    def test_host_config_features(self):
        """Test that pool feature flags become device, socket and privilege settings."""
        config = build_host_config(
            True,
            ProvisionOptions(enable_kvm=True, enable_docker_socket=True, enable_privileged=True),
        )

        assert config["devices"] == ["/dev/kvm:/dev/kvm:rwm"]
        assert config["volumes"] == ["/var/run/docker.sock:/var/run/docker.sock"]
        assert config["group_add"] == ["docker"]
        assert config["privileged"] is True


class TestContainerProvisioner:
    """Test the container lifecycle."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = MemoryRunnerStore()
        self.engine = FakeEngine()
        self.resolver = FakeResolver()
        self.credential = Credential(name="octo", scope=CredentialScope.ORG, target="octo", encrypted_token="e")
        self.github = self.resolver.add(self.credential)
        self.provisioner = ContainerProvisioner(
            self.store,
            self.resolver,
            self.engine,
            runner_image="myoung34/github-runner:latest",
            registration_delay=0,
        )

    async def add_runner(self, **fields):
        fields.setdefault("ephemeral", True)
        runner = Runner(
            name="linux-abc",
            credential_id=self.credential.id,
            isolation_type=IsolationType.DOCKER,
            labels=["self-hosted", "Linux", "X64", "docker"],
            **fields,
        )
        await self.store.insert_runner(runner)
        return runner

    def test_build_environment_org_scope(self):
        """Test the runner image environment for an organization runner."""
        runner = Runner(
            name="linux-abc",
            credential_id="cred",
            labels=["self-hosted", "x64", "docker"],
            ephemeral=True,
        )

        env = self.provisioner.build_environment(
            runner, "https://github.com/octo", "TOKEN", CredentialScope.ORG, "octo"
        )

        assert env["REPO_URL"] == "https://github.com/octo"
        assert env["RUNNER_NAME"] == "linux-abc"
        assert env["RUNNER_TOKEN"] == "TOKEN"
        assert env["RUNNER_SCOPE"] == "org"
        assert env["ORG_NAME"] == "octo"
        assert env["EPHEMERAL"] == "true"
        assert env["LABELS"] == "X64,self-hosted,docker"

    def test_build_environment_repo_scope(self):
        """Test that repository runners carry no org settings and persistent ones no ephemeral flag."""
        runner = Runner(name="arm-1", credential_id="cred", architecture=Architecture.ARM64)

        env = self.provisioner.build_environment(
            runner, "https://github.com/octo/app", "TOKEN", CredentialScope.REPO, "octo/app"
        )

        assert "RUNNER_SCOPE" not in env
        assert "ORG_NAME" not in env
        assert "EPHEMERAL" not in env
        assert env["LABELS"] == "ARM64"

    @pytest.mark.asyncio
    async def test_resolve_image_pulls_and_tags(self):
        """Test that a missing architecture image is pulled and tagged."""
        reference = await self.provisioner.resolve_image(Architecture.X64)

        assert reference == "myoung34/github-runner:latest-amd64"
        assert self.engine.pulls == [("myoung34/github-runner", "latest", "linux/amd64")]
        assert self.engine.tags == [("myoung34/github-runner:latest", reference)]

    @pytest.mark.asyncio
    async def test_resolve_image_uses_cache(self):
        """Test that a cached image of the right architecture is not pulled again."""
        self.engine.images["myoung34/github-runner:latest-arm64"] = {"Architecture": "aarch64"}

        reference = await self.provisioner.resolve_image(Architecture.ARM64)

        assert reference == "myoung34/github-runner:latest-arm64"
        assert self.engine.pulls == []

    @pytest.mark.asyncio
    async def test_resolve_image_wrong_architecture(self):
        """Test that a registry serving the wrong platform is an error."""
        self.engine.pull_architecture = "arm64"

        with pytest.raises(ProvisioningError):
            await self.provisioner.resolve_image(Architecture.X64)

        assert self.engine.tags == []

    @pytest.mark.asyncio
    async def test_provision_creates_and_starts(self):
        """Test the full create and start path including GitHub id backfill."""
        runner = await self.add_runner()
        self.github.add_remote(321, "linux-abc")

        assert await self.provisioner.provision(runner, ProvisionOptions(enable_kvm=True))
        await asyncio.gather(*self.provisioner._background)

        created = self.engine.created[0]
        assert created["name"] == f"runner-controller-{runner.id}"
        assert created["labels"][MANAGED_LABEL] == runner.id
        assert created["environment"]["RUNNER_TOKEN"] == "REG-TOKEN"
        assert created["host_config"]["devices"] == ["/dev/kvm:/dev/kvm:rwm"]

        stored = await self.store.get_runner(runner.id)
        assert stored.status is RunnerStatus.ONLINE
        assert stored.container_id is not None
        assert stored.github_runner_id == 321
        assert self.engine.containers[stored.container_id].running

    @pytest.mark.asyncio
    async def test_provision_failure_recorded(self):
        """Test that an image failure leaves the runner in error."""
        self.engine.pull_architecture = "arm64"
        runner = await self.add_runner()

        assert not await self.provisioner.provision(runner)

        stored = await self.store.get_runner(runner.id)
        assert stored.status is RunnerStatus.ERROR
        assert "architecture" in stored.error_message
        assert self.engine.created == []

    @pytest.mark.asyncio
    async def test_remove_deregisters_and_destroys(self):
        """Test that removal deletes the GitHub runner and the container."""
        runner = await self.add_runner(github_runner_id=9)
        container_id = await self.engine.create_container("img", "n", {}, {})
        await self.store.update_runner(runner.id, container_id=container_id)
        self.github.add_remote(9, runner.name)

        await self.provisioner.remove(await self.store.get_runner(runner.id))

        stored = await self.store.get_runner(runner.id)
        assert stored.status is RunnerStatus.REMOVING
        assert stored.container_id is None
        assert self.github.deleted == [9]
        assert self.engine.removed == [container_id]

    @pytest.mark.asyncio
    async def test_teardown_skips_github(self):
        """Test that teardown only destroys the container."""
        container_id = await self.engine.create_container("img", "n", {}, {})
        runner = await self.add_runner(github_runner_id=9, container_id=container_id)

        await self.provisioner.teardown(runner)

        assert self.github.deleted == []
        assert self.engine.removed == [container_id]

    @pytest.mark.asyncio
    async def test_sync_status_from_container(self):
        """Test status derived from container state and GitHub busy flag."""
        running_id = await self.engine.create_container("img", "a", {}, {})
        await self.engine.start_container(running_id)
        busy = await self.add_runner(status=RunnerStatus.ONLINE, container_id=running_id, github_runner_id=5)
        self.github.add_remote(5, busy.name, busy=True)

        stopped_id = await self.engine.create_container("img", "b", {}, {})
        stopped = await self.add_runner(status=RunnerStatus.ONLINE, container_id=stopped_id)

        missing = await self.add_runner(status=RunnerStatus.ONLINE, container_id="gone")

        for runner in (busy, stopped, missing):
            await self.provisioner.sync_status(runner)

        assert (await self.store.get_runner(busy.id)).status is RunnerStatus.BUSY
        assert (await self.store.get_runner(stopped.id)).status is RunnerStatus.OFFLINE
        gone = await self.store.get_runner(missing.id)
        assert gone.status is RunnerStatus.ERROR
        assert gone.error_message == "Container no longer exists"

    @pytest.mark.asyncio
    async def test_is_alive(self):
        """Test liveness, treating an inspect failure as still alive."""
        container_id = await self.engine.create_container("img", "a", {}, {})
        await self.engine.start_container(container_id)
        runner = await self.add_runner(container_id=container_id)

        assert await self.provisioner.is_alive(runner)
        assert not await self.provisioner.is_alive(await self.add_runner())

        self.engine.fail_inspect = True
        assert await self.provisioner.is_alive(runner)

    @pytest.mark.asyncio
    async def test_start_without_container(self):
        """Test that starting a runner with no container fails."""
        runner = await self.add_runner()

        with pytest.raises(ProvisioningError):
            await self.provisioner.start(runner)

    @pytest.mark.asyncio
    async def test_container_logs(self):
        """Test log retrieval for runners with and without a container."""
        container_id = await self.engine.create_container("img", "a", {}, {})
        runner = await self.add_runner(container_id=container_id)

        assert "Listening for Jobs" in await self.provisioner.container_logs(runner)
        assert await self.provisioner.container_logs(await self.add_runner()) == ""

    @pytest.mark.asyncio
    async def test_cleanup_orphaned_containers(self):
        """Test that only managed containers without a runner record are removed."""
        runner = await self.add_runner()
        kept = await self.engine.create_container("img", "a", {}, {MANAGED_LABEL: runner.id})
        orphan = await self.engine.create_container("img", "b", {}, {MANAGED_LABEL: "vanished"})
        unlabeled = await self.engine.create_container("img", "c", {}, {})

        removed = await self.provisioner.cleanup_orphaned_containers(await self.store.list_runners())

        assert removed == 1
        assert self.engine.removed == [orphan]
        assert kept in self.engine.containers
        assert unlabeled in self.engine.containers
