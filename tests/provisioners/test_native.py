"""
Native provisioner tests.

The runner package scripts are replaced with small shell scripts in a
temporary directory, so processes are real but short-lived.
"""

import io
import os
import sys
import tarfile

import pytest

from github_runner_controller.models.credential import Credential, CredentialScope
from github_runner_controller.models.runner import Platform, Runner, RunnerStatus
from github_runner_controller.provisioners.base import ProvisioningError
from github_runner_controller.provisioners.native import (
    NativeProvisioner,
    extract_archive,
    is_process_alive,
)
from github_runner_controller.storage.memory import MemoryRunnerStore

from tests.helpers import FakeResolver

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses shell scripts")

CONFIG_SCRIPT = """#!/bin/sh
echo "$@" >> args.txt
exit ${CONFIG_EXIT:-0}
"""

RUN_SCRIPT = """#!/bin/sh
echo "Listening for Jobs"
exec sleep 30
"""


def write_script(directory, name, body):
    path = directory / name
    path.write_text(body)
    path.chmod(0o755)
    return path


class TestProcessHelpers:
    """Test process and archive helpers."""

    def test_is_process_alive(self):
        """Test liveness of our own pid and of missing pids."""
        assert is_process_alive(os.getpid())
        assert not is_process_alive(None)
        assert not is_process_alive(0)
        assert not is_process_alive(-5)

    def test_extract_tar_archive(self, tmp_path):
        """Test extracting a gzipped tarball runner package."""
        archive = tmp_path / "actions-runner-linux-x64.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            data = b"#!/bin/sh\n"
            info = tarfile.TarInfo("run.sh")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

        extract_archive(archive, tmp_path / "out")

        assert (tmp_path / "out" / "run.sh").read_bytes() == b"#!/bin/sh\n"

    def test_extract_unknown_format(self, tmp_path):
        """Test that unknown package formats are rejected."""
        archive = tmp_path / "runner.rar"
        archive.write_bytes(b"")

        with pytest.raises(ProvisioningError):
            extract_archive(archive, tmp_path)


class TestNativeProvisioner:
    """Test native runner configuration, process handling and cleanup."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = MemoryRunnerStore()
        self.resolver = FakeResolver()
        self.credential = Credential(name="octo", scope=CredentialScope.ORG, target="octo", encrypted_token="e")
        self.github = self.resolver.add(self.credential)

    def build(self, tmp_path):
        return NativeProvisioner(
            self.store,
            self.resolver,
            runners_dir=str(tmp_path / "runners"),
            stop_grace_period=2.0,
            start_settle_delay=0.5,
        )

    async def add_runner(self, tmp_path, **fields):
        runner = Runner(name="mac-1", credential_id=self.credential.id, **fields)
        runner_dir = tmp_path / "runners" / runner.id
        runner_dir.mkdir(parents=True)
        runner.runner_dir = str(runner_dir)
        await self.store.insert_runner(runner)
        return runner, runner_dir

    def test_command_per_platform(self, tmp_path):
        """Test that Windows runners use the cmd scripts."""
        provisioner = self.build(tmp_path)

        assert provisioner._command(Runner(name="a", credential_id="c"), "run") == ["./run.sh"]
        windows = Runner(name="w", credential_id="c", platform=Platform.WIN32)
        assert provisioner._command(windows, "config") == ["cmd.exe", "/c", "config.cmd"]

    @posix_only
    @pytest.mark.asyncio
    async def test_configure_registers_runner(self, tmp_path):
        """Test that configure passes the registration arguments and records the GitHub id."""
        provisioner = self.build(tmp_path)
        runner, runner_dir = await self.add_runner(tmp_path, labels=["self-hosted", "macOS"], ephemeral=True)
        write_script(runner_dir, "config.sh", CONFIG_SCRIPT)
        self.github.add_remote(77, "mac-1")

        assert await provisioner.configure(runner, runner_dir) == 77

        args = (runner_dir / "args.txt").read_text().split()
        assert args[:4] == ["--url", "https://github.com/octo", "--token", "REG-TOKEN"]
        assert "--unattended" in args
        assert args[args.index("--labels") + 1] == "self-hosted,macOS"
        assert args[-1] == "--ephemeral"
        stored = await self.store.get_runner(runner.id)
        assert stored.status is RunnerStatus.CONFIGURING
        assert stored.github_runner_id == 77

    @posix_only
    @pytest.mark.asyncio
    async def test_configure_failure(self, tmp_path):
        """Test that a failing config script raises with its exit code."""
        provisioner = self.build(tmp_path)
        runner, runner_dir = await self.add_runner(tmp_path)
        write_script(runner_dir, "config.sh", "#!/bin/sh\necho 'bad token'\nexit 3\n")

        with pytest.raises(ProvisioningError, match="code 3"):
            await provisioner.configure(runner, runner_dir)

    @posix_only
    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path):
        """Test that a started runner is online with a pid and offline once stopped."""
        provisioner = self.build(tmp_path)
        runner, runner_dir = await self.add_runner(tmp_path, status=RunnerStatus.CONFIGURING)
        write_script(runner_dir, "run.sh", RUN_SCRIPT)

        await provisioner.start(runner)

        started = await self.store.get_runner(runner.id)
        assert started.status is RunnerStatus.ONLINE
        assert is_process_alive(started.process_id)
        assert provisioner.is_tracked(runner.id)
        assert await provisioner.is_alive(started)

        await provisioner.stop(started)

        stopped = await self.store.get_runner(runner.id)
        assert stopped.status is RunnerStatus.OFFLINE
        assert stopped.process_id is None
        assert not provisioner.is_tracked(runner.id)

    @posix_only
    @pytest.mark.asyncio
    async def test_start_exits_immediately(self, tmp_path):
        """Test that a runner dying during startup is an error."""
        provisioner = self.build(tmp_path)
        runner, runner_dir = await self.add_runner(tmp_path)
        write_script(runner_dir, "run.sh", "#!/bin/sh\nexit 1\n")

        with pytest.raises(ProvisioningError):
            await provisioner.start(runner)

    @pytest.mark.asyncio
    async def test_start_without_directory(self, tmp_path):
        """Test that starting without a working directory fails."""
        provisioner = self.build(tmp_path)
        runner = Runner(name="mac-1", credential_id=self.credential.id)
        await self.store.insert_runner(runner)

        with pytest.raises(ProvisioningError):
            await provisioner.start(runner)

    @posix_only
    @pytest.mark.asyncio
    async def test_remove_uses_remove_script(self, tmp_path):
        """Test that removal deregisters through the package script and deletes the directory."""
        provisioner = self.build(tmp_path)
        runner, runner_dir = await self.add_runner(tmp_path, github_runner_id=5)
        args_file = tmp_path / "args.txt"
        write_script(
            runner_dir, "config.sh", f'#!/bin/sh\necho "$@" >> {args_file}\n'
        )

        await provisioner.remove(runner)

        assert args_file.read_text().split() == ["remove", "--token", "REMOVE-TOKEN"]
        assert self.github.deleted == []
        assert not runner_dir.exists()
        assert (await self.store.get_runner(runner.id)).status is RunnerStatus.REMOVING

    @pytest.mark.asyncio
    async def test_remove_falls_back_to_api(self, tmp_path):
        """Test that a runner without a package directory is deregistered through the API."""
        provisioner = self.build(tmp_path)
        runner = Runner(name="mac-1", credential_id=self.credential.id, github_runner_id=5)
        await self.store.insert_runner(runner)
        self.github.add_remote(5, "mac-1")

        await provisioner.remove(runner)

        assert self.github.deleted == [5]

    @pytest.mark.asyncio
    async def test_sync_status_from_github(self, tmp_path):
        """Test that GitHub's busy flag and status drive the stored status."""
        provisioner = self.build(tmp_path)
        busy = Runner(name="a", credential_id=self.credential.id, github_runner_id=1, status=RunnerStatus.ONLINE)
        idle = Runner(name="b", credential_id=self.credential.id, github_runner_id=2, status=RunnerStatus.BUSY)
        for runner in (busy, idle):
            await self.store.insert_runner(runner)
        self.github.add_remote(1, "a", busy=True)
        self.github.add_remote(2, "b", status="offline")

        await provisioner.sync_status(busy)
        await provisioner.sync_status(idle)

        assert (await self.store.get_runner(busy.id)).status is RunnerStatus.BUSY
        assert (await self.store.get_runner(idle.id)).status is RunnerStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_cleanup_orphaned_directories(self, tmp_path):
        """Test that only directories without a runner record are deleted."""
        provisioner = self.build(tmp_path)
        runner, runner_dir = await self.add_runner(tmp_path)
        orphan = tmp_path / "runners" / "leftover"
        orphan.mkdir()
        (orphan / "run.sh").write_text("")
        stray_file = tmp_path / "runners" / "notes.txt"
        stray_file.write_text("")

        removed = await provisioner.cleanup_orphaned_directories([runner])

        assert removed == 1
        assert not orphan.exists()
        assert runner_dir.exists()
        assert stray_file.exists()

    @pytest.mark.asyncio
    async def test_cleanup_without_runners_dir(self, tmp_path):
        """Test that a missing runners directory is not an error."""
        provisioner = self.build(tmp_path)

        assert await provisioner.cleanup_orphaned_directories([]) == 0
