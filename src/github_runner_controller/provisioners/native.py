"""
Native process provisioner.

Runners are installed from the official GitHub runner package into
``{runners_dir}/{runner_id}``, registered with ``config.sh`` and launched
with ``run.sh`` as a detached process group. Liveness is tracked by
process id so runners can be re-attached after a controller restart.
"""

import asyncio
import os
import shutil
import signal
import tarfile
import time
import zipfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..models.runner import IsolationType, Platform, Runner, RunnerStatus, utcnow
from ..storage.base import RunnerStore
from ..utils.credentials import CredentialResolver
from ..utils.github_client import GitHubAPIError
from .base import ProvisionHandle, ProvisionOptions, Provisioner, ProvisioningError

DOWNLOAD_OS: Dict[Platform, str] = {
    Platform.DARWIN: "osx",
    Platform.LINUX: "linux",
    Platform.WIN32: "win",
}
LISTENING_MARKER = "Listening for Jobs"
RUNNING_JOB_MARKER = "Running job"
HEARTBEAT_INTERVAL = 10.0
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def is_process_alive(pid: Optional[int]) -> bool:
    """Check whether ``pid`` refers to a running process."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return True


def send_signal(pid: int, sig: int) -> None:
    """Signal the process group led by ``pid``, or the process itself."""
    try:
        if hasattr(os, "killpg"):
            try:
                os.killpg(pid, sig)
                return
            except ProcessLookupError:
                pass
        os.kill(pid, sig)
    except ProcessLookupError:
        pass


def extract_archive(archive: Path, destination: Path) -> None:
    """Extract a ``.tar.gz`` or ``.zip`` runner package."""
    if archive.name.endswith(".tar.gz"):
        with tarfile.open(archive, "r:gz") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(destination, filter="data")
            else:
                tar.extractall(destination)
    elif archive.name.endswith(".zip"):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(destination)
    else:
        raise ProvisioningError(f"Unsupported runner package format: {archive.name}")


class NativeProvisioner(Provisioner):
    """
    Runs GitHub runners as plain OS processes.

    Spawned processes are held in an in-memory registry keyed by runner
    id for the lifetime of the process; runners re-attached after a
    restart are tracked only by their stored process id.
    """

    isolation_type = IsolationType.NATIVE

    def __init__(self,
                 store: RunnerStore,
                 resolver: CredentialResolver,
                 runners_dir: str,
                 stop_grace_period: float = 5.0,
                 start_settle_delay: float = 2.0,
                 logger: Any = None) -> None:
        super().__init__(store, resolver, logger)
        self.runners_dir = Path(runners_dir).expanduser()
        self.stop_grace_period = stop_grace_period
        self.start_settle_delay = start_settle_delay
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._watchers: Dict[str, "asyncio.Task[None]"] = {}
        self._stopping: Set[str] = set()

    def is_tracked(self, runner_id: str) -> bool:
        proc = self._processes.get(runner_id)
        return proc is not None and proc.returncode is None

    def _command(self, runner: Runner, script: str) -> List[str]:
        if runner.platform is Platform.WIN32:
            return ["cmd.exe", "/c", f"{script}.cmd"]
        return [f"./{script}.sh"]

    async def _run_script(self,
                          runner: Runner,
                          runner_dir: Path,
                          script: str,
                          args: Iterable[str]) -> Tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command(runner, script),
                *args,
                cwd=str(runner_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ProvisioningError(f"Failed to run {script} script: {e}") from e
        output, _ = await proc.communicate()
        return proc.returncode or 0, output.decode("utf-8", errors="replace")

    async def download(self, runner: Runner) -> Path:
        """
        Download and extract the runner package matching the runner's platform.

        Returns:
            The runner working directory

        Raises:
            ProvisioningError: If no package matches or the download fails
        """
        client = await self._client(runner)
        os_name = DOWNLOAD_OS[runner.platform]
        arch = runner.architecture.value
        downloads = await client.list_runner_downloads()
        package = next(
            (d for d in downloads if d.os == os_name and d.architecture == arch),
            None,
        )
        if package is None:
            raise ProvisioningError(f"No runner package available for {os_name}/{arch}")

        runner_dir = self.runners_dir / runner.id
        await asyncio.to_thread(runner_dir.mkdir, parents=True, exist_ok=True)
        archive = runner_dir / package.filename

        self.logger.info(
            "Downloading runner package",
            runner_id=runner.id,
            filename=package.filename,
        )
        try:
            await client.download(package.download_url, archive, sha256=package.sha256_checksum)
        except GitHubAPIError as e:
            raise ProvisioningError(str(e)) from e
        await asyncio.to_thread(extract_archive, archive, runner_dir)
        await asyncio.to_thread(archive.unlink, True)

        await self.store.update_runner(runner.id, runner_dir=str(runner_dir))
        return runner_dir

    async def configure(self, runner: Runner, runner_dir: Path) -> Optional[int]:
        """
        Register the runner with GitHub using a one-time registration token.

        Returns:
            The GitHub runner id, if the registration could be looked up

        Raises:
            ProvisioningError: If the configuration script fails
        """
        await self.store.set_status(runner.id, RunnerStatus.CONFIGURING)
        client = await self._client(runner)
        token = await client.create_registration_token()

        args = [
            "--url", client.registration_url,
            "--token", token.token,
            "--name", runner.name,
            "--work", "_work",
            "--unattended",
        ]
        if runner.labels:
            args.extend(["--labels", ",".join(runner.labels)])
        if runner.ephemeral:
            args.append("--ephemeral")

        code, output = await self._run_script(runner, runner_dir, "config", args)
        if code != 0:
            raise ProvisioningError(f"Configuration failed with code {code}: {output.strip()[-500:]}")

        try:
            remote = await client.find_runner_by_name(runner.name)
        except GitHubAPIError as e:
            self.logger.warning("Could not look up registered runner", runner_id=runner.id, error=str(e))
            return None
        if remote is None:
            return None
        await self.store.update_runner(runner.id, github_runner_id=remote.id)
        return remote.id

    async def create(self, runner: Runner, options: ProvisionOptions) -> ProvisionHandle:
        runner_dir = await self.download(runner)
        github_runner_id = await self.configure(runner, runner_dir)
        return ProvisionHandle(
            runner_id=runner.id,
            runner_dir=str(runner_dir),
            github_runner_id=github_runner_id,
        )

    async def start(self, runner: Runner) -> None:
        """
        Launch ``run.sh`` detached and wait briefly for it to settle.

        Raises:
            ProvisioningError: If the runner has no working directory or exits immediately
        """
        if self.is_tracked(runner.id):
            return
        if not runner.runner_dir or not Path(runner.runner_dir).is_dir():
            raise ProvisioningError(f"Runner directory missing for {runner.name}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command(runner, "run"),
                cwd=runner.runner_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise ProvisioningError(f"Failed to start runner: {e}") from e

        self._processes[runner.id] = proc
        await self.store.update_runner(runner.id, process_id=proc.pid, last_heartbeat=utcnow())
        self._watchers[runner.id] = asyncio.create_task(self._watch(runner.id, proc))
        self.logger.info("Runner process started", runner_id=runner.id, pid=proc.pid)

        await asyncio.sleep(self.start_settle_delay)
        if proc.returncode is not None:
            raise ProvisioningError(f"Runner exited during startup with code {proc.returncode}")
        await self.store.set_status(runner.id, RunnerStatus.ONLINE)

    async def _watch(self, runner_id: str, proc: asyncio.subprocess.Process) -> None:
        """Record heartbeats from runner output and the final exit status."""
        last_beat = 0.0
        try:
            if proc.stdout is not None:
                async for raw in proc.stdout:
                    line = raw.decode("utf-8", errors="replace").rstrip()
                    if not line:
                        continue
                    self.logger.debug("Runner output", runner_id=runner_id, line=line)
                    now = time.monotonic()
                    if LISTENING_MARKER in line:
                        await self.store.set_status(runner_id, RunnerStatus.ONLINE, last_heartbeat=utcnow())
                    elif RUNNING_JOB_MARKER in line:
                        await self.store.set_status(runner_id, RunnerStatus.BUSY, last_heartbeat=utcnow())
                    elif now - last_beat >= HEARTBEAT_INTERVAL:
                        await self.store.update_runner(runner_id, last_heartbeat=utcnow())
                    else:
                        continue
                    last_beat = now
            code = await proc.wait()
        except Exception as e:
            self.logger.error("Runner output watcher failed", runner_id=runner_id, error=str(e))
            code = await proc.wait()
        finally:
            if self._processes.get(runner_id) is proc:
                del self._processes[runner_id]
            self._watchers.pop(runner_id, None)

        stopping = runner_id in self._stopping
        self.logger.info("Runner process exited", runner_id=runner_id, code=code, requested=stopping)
        try:
            runner = await self.store.get_runner(runner_id)
            if runner is None or runner.status is RunnerStatus.REMOVING:
                return
            await self.store.update_runner(runner_id, process_id=None)
            if code == 0 or stopping:
                await self.store.set_status(runner_id, RunnerStatus.OFFLINE)
            else:
                await self.store.set_status(
                    runner_id, RunnerStatus.ERROR, error_message=f"Runner exited with code {code}"
                )
        except Exception as e:
            self.logger.error("Failed to record runner exit", runner_id=runner_id, error=str(e))

    async def _terminate_pid(self, pid: int) -> None:
        send_signal(pid, signal.SIGTERM)
        deadline = time.monotonic() + self.stop_grace_period
        while time.monotonic() < deadline:
            if not is_process_alive(pid):
                return
            await asyncio.sleep(0.2)
        self.logger.warning("Runner did not stop gracefully, killing", pid=pid)
        send_signal(pid, _SIGKILL)

    async def stop(self, runner: Runner) -> None:
        """Stop the runner process with SIGTERM, escalating to SIGKILL."""
        proc = self._processes.get(runner.id)
        self._stopping.add(runner.id)
        try:
            if proc is not None and proc.returncode is None:
                send_signal(proc.pid, signal.SIGTERM)
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.stop_grace_period)
                except asyncio.TimeoutError:
                    self.logger.warning("Runner did not stop gracefully, killing", runner_id=runner.id)
                    send_signal(proc.pid, _SIGKILL)
                    await proc.wait()
            elif runner.process_id and is_process_alive(runner.process_id):
                await self._terminate_pid(runner.process_id)

            watcher = self._watchers.get(runner.id)
            if watcher is not None:
                await asyncio.gather(watcher, return_exceptions=True)
        finally:
            self._stopping.discard(runner.id)
            self._processes.pop(runner.id, None)

        current = await self.store.get_runner(runner.id)
        if current is not None and current.status is not RunnerStatus.REMOVING:
            await self.store.update_runner(runner.id, process_id=None)
            await self.store.set_status(runner.id, RunnerStatus.OFFLINE)

    async def _deregister(self, runner: Runner) -> None:
        deregistered = False
        runner_dir = Path(runner.runner_dir) if runner.runner_dir else None
        if runner_dir is not None and runner_dir.is_dir():
            try:
                client = await self._client(runner)
                token = await client.create_remove_token()
                code, output = await self._run_script(
                    runner, runner_dir, "config", ["remove", "--token", token.token]
                )
                deregistered = code == 0
                if not deregistered:
                    self.logger.warning(
                        "Runner remove script failed",
                        runner_id=runner.id,
                        code=code,
                        output=output.strip()[-200:],
                    )
            except Exception as e:
                self.logger.warning("Failed to run remove script", runner_id=runner.id, error=str(e))

        if not deregistered and runner.github_runner_id:
            try:
                client = await self._client(runner)
                await client.delete_runner(runner.github_runner_id)
            except Exception as e:
                self.logger.warning("Failed to deregister runner from GitHub", runner_id=runner.id, error=str(e))

    async def _delete_directory(self, runner: Runner) -> None:
        if not runner.runner_dir:
            return
        try:
            await asyncio.to_thread(shutil.rmtree, runner.runner_dir, True)
        except Exception as e:
            self.logger.warning("Failed to delete runner directory", runner_id=runner.id, error=str(e))

    async def remove(self, runner: Runner) -> None:
        """Deregister, stop and delete the runner, each step best-effort."""
        await self.store.set_status(runner.id, RunnerStatus.REMOVING)
        await self._deregister(runner)
        try:
            await self.stop(runner)
        except Exception as e:
            self.logger.warning("Failed to stop runner process", runner_id=runner.id, error=str(e))
        await self._delete_directory(runner)
        self.logger.info("Native runner removed", runner_id=runner.id, runner=runner.name)

    async def teardown(self, runner: Runner) -> None:
        try:
            await self.stop(runner)
        except Exception as e:
            self.logger.warning("Failed to stop runner process", runner_id=runner.id, error=str(e))
        await self._delete_directory(runner)

    async def is_alive(self, runner: Runner) -> bool:
        if self.is_tracked(runner.id):
            return True
        return is_process_alive(runner.process_id)

    async def reattach(self, runner: Runner) -> None:
        """Adopt a runner process that survived a controller restart."""
        self.logger.info("Re-attached to running runner", runner_id=runner.id, pid=runner.process_id)
        await self.sync_status(runner)

    async def sync_status(self, runner: Runner) -> None:
        """Align the stored status with GitHub's view of the runner."""
        if not runner.github_runner_id:
            if not await self.is_alive(runner):
                await self.store.set_status(runner.id, RunnerStatus.OFFLINE)
            return
        try:
            client = await self._client(runner)
            remote = await client.get_runner(runner.github_runner_id)
        except Exception as e:
            self.logger.warning("Failed to sync runner status", runner_id=runner.id, error=str(e))
            return
        if remote is None:
            return
        if remote.busy:
            status = RunnerStatus.BUSY
        elif remote.status == "online":
            status = RunnerStatus.ONLINE
        else:
            status = RunnerStatus.OFFLINE
        await self.store.set_status(runner.id, status, last_heartbeat=utcnow())

    async def cleanup_orphaned_directories(self, runners: Iterable[Runner]) -> int:
        """
        Delete working directories that no runner record refers to.

        Returns:
            Number of directories removed
        """
        if not self.runners_dir.is_dir():
            return 0
        known = set()
        for runner in runners:
            known.add(runner.id)
            if runner.runner_dir:
                known.add(Path(runner.runner_dir).name)

        removed = 0
        for entry in await asyncio.to_thread(lambda: list(self.runners_dir.iterdir())):
            if not entry.is_dir() or entry.name in known:
                continue
            self.logger.info("Removing orphaned runner directory", directory=entry.name)
            try:
                await asyncio.to_thread(shutil.rmtree, entry)
                removed += 1
            except OSError as e:
                self.logger.warning("Failed to remove orphaned directory", directory=entry.name, error=str(e))
        return removed

    async def shutdown(self) -> None:
        """Stop watching processes; runners themselves keep running."""
        for task in list(self._watchers.values()):
            task.cancel()
        await asyncio.gather(*self._watchers.values(), return_exceptions=True)
        self._watchers.clear()
