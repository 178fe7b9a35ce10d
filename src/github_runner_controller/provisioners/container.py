"""
Docker container provisioner.

Runs each runner in its own container built from a runner image
(``myoung34/github-runner`` by default). Images are pulled per
architecture and tagged ``{tag}-{arch}`` so that a registry silently
serving the wrong platform is detected before a container is created.
"""

import asyncio
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from ..models.config import DEFAULT_RUNNER_IMAGE
from ..models.credential import CredentialScope
from ..models.runner import ARCH_LABELS, Architecture, IsolationType, Runner, RunnerStatus, utcnow
from ..storage.base import RunnerStore
from ..utils.credentials import CredentialResolver
from ..utils.docker_client import MANAGED_LABEL, NAME_LABEL, DockerEngine
from .base import ProvisionHandle, ProvisionOptions, Provisioner, ProvisioningError

DOCKER_ARCH: Dict[Architecture, str] = {
    Architecture.X64: "amd64",
    Architecture.ARM64: "arm64",
}
CONTAINER_PREFIX = "runner-controller-"
RUNNER_WORKDIR = "/tmp/runner/work"
DOCKER_SOCKET = "/var/run/docker.sock"


def split_image_reference(reference: str) -> Tuple[str, str]:
    """Split ``repo[:tag]`` into repository and tag, defaulting to ``latest``."""
    last_colon = reference.rfind(":")
    last_slash = reference.rfind("/")
    if last_colon > last_slash:
        return reference[:last_colon], reference[last_colon + 1:]
    return reference, "latest"


def normalize_image_architecture(arch: Optional[str]) -> Optional[str]:
    if arch == "aarch64":
        return "arm64"
    if arch == "x86_64":
        return "amd64"
    return arch


def build_host_config(ephemeral: bool, options: ProvisionOptions) -> Dict[str, Any]:
    """Translate pool feature flags into ``containers.create`` keyword arguments."""
    host_config: Dict[str, Any] = {
        "auto_remove": ephemeral,
        "restart_policy": {"Name": "no"} if ephemeral else {"Name": "unless-stopped"},
    }
    if options.enable_kvm:
        host_config["devices"] = ["/dev/kvm:/dev/kvm:rwm"]
    if options.enable_docker_socket:
        host_config["volumes"] = [f"{DOCKER_SOCKET}:{DOCKER_SOCKET}"]
        host_config["group_add"] = ["docker"]
    if options.enable_privileged:
        host_config["privileged"] = True
    return host_config


class ContainerProvisioner(Provisioner):
    """Runs GitHub runners as Docker containers."""

    isolation_type = IsolationType.DOCKER

    def __init__(self,
                 store: RunnerStore,
                 resolver: CredentialResolver,
                 engine: DockerEngine,
                 runner_image: str = DEFAULT_RUNNER_IMAGE,
                 registration_delay: float = 10.0,
                 stop_timeout: int = 10,
                 logger: Any = None) -> None:
        super().__init__(store, resolver, logger)
        self.engine = engine
        self.runner_image = runner_image
        self.registration_delay = registration_delay
        self.stop_timeout = stop_timeout
        self._background: Set["asyncio.Task[None]"] = set()

    async def is_available(self) -> bool:
        return await self.engine.ping()

    async def resolve_image(self, architecture: Architecture) -> str:
        """
        Return an image reference verified to match ``architecture``.

        Raises:
            ProvisioningError: If the architecture is unsupported or the
                registry serves a different one
        """
        docker_arch = DOCKER_ARCH.get(Architecture(architecture))
        if docker_arch is None:
            raise ProvisioningError(f"Unsupported Docker architecture: {architecture}")

        repository, tag = split_image_reference(self.runner_image)
        arch_tag = f"{tag}-{docker_arch}"
        arch_reference = f"{repository}:{arch_tag}"

        existing = await self.engine.inspect_image(arch_reference)
        if existing is not None:
            if normalize_image_architecture(existing.get("Architecture")) == docker_arch:
                return arch_reference
            self.logger.warning(
                "Cached image has wrong architecture, re-pulling",
                image=arch_reference,
                architecture=existing.get("Architecture"),
            )

        pulled = await self.engine.pull_image(repository, tag, platform=f"linux/{docker_arch}")
        pulled_arch = normalize_image_architecture(pulled.get("Architecture"))
        if pulled_arch != docker_arch:
            raise ProvisioningError(
                f"Pulled image {self.runner_image} has architecture {pulled_arch}, expected {docker_arch}"
            )
        await self.engine.tag_image(f"{repository}:{tag}", repository, arch_tag)
        self.logger.info("Tagged runner image", image=arch_reference)
        return arch_reference

    def build_environment(self,
                          runner: Runner,
                          registration_url: str,
                          token: str,
                          scope: CredentialScope,
                          target: str) -> Dict[str, str]:
        labels = [ARCH_LABELS[runner.architecture]]
        labels.extend(l for l in runner.labels if l.lower() != labels[0].lower())
        env = {
            "REPO_URL": registration_url,
            "RUNNER_NAME": runner.name,
            "RUNNER_TOKEN": token,
            "RUNNER_WORKDIR": RUNNER_WORKDIR,
            "DISABLE_AUTO_UPDATE": "true",
            "LABELS": ",".join(labels),
        }
        if runner.ephemeral:
            env["EPHEMERAL"] = "true"
        if scope is CredentialScope.ORG:
            env["RUNNER_SCOPE"] = "org"
            env["ORG_NAME"] = target
        return env

    async def create(self, runner: Runner, options: ProvisionOptions) -> ProvisionHandle:
        image = await self.resolve_image(runner.architecture)
        client = await self._client(runner)
        token = await client.create_registration_token()
        environment = self.build_environment(
            runner, client.registration_url, token.token, client.scope, client.target
        )

        await self.store.set_status(runner.id, RunnerStatus.CONFIGURING)
        container_id = await self.engine.create_container(
            image,
            name=f"{CONTAINER_PREFIX}{runner.id}",
            environment=environment,
            labels={MANAGED_LABEL: runner.id, NAME_LABEL: runner.name},
            **build_host_config(runner.ephemeral, options),
        )
        await self.store.update_runner(runner.id, container_id=container_id)
        self.logger.info(
            "Container created",
            runner_id=runner.id,
            container_id=container_id[:12],
            image=image,
            privileged=options.enable_privileged,
        )
        return ProvisionHandle(runner_id=runner.id, container_id=container_id)

    async def start(self, runner: Runner) -> None:
        if not runner.container_id:
            raise ProvisioningError(f"Runner {runner.name} has no container")
        await self.engine.start_container(runner.container_id)
        await self.store.set_status(runner.id, RunnerStatus.ONLINE, last_heartbeat=utcnow())
        if runner.github_runner_id is None:
            self._spawn(self._backfill_github_id(runner))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _backfill_github_id(self, runner: Runner) -> None:
        """Record the GitHub runner id once the container has registered."""
        await asyncio.sleep(self.registration_delay)
        try:
            client = await self._client(runner)
            remote = await client.find_runner_by_name(runner.name)
            if remote is not None:
                await self.store.update_runner(runner.id, github_runner_id=remote.id)
                self.logger.info("Recorded GitHub runner id", runner_id=runner.id, github_runner_id=remote.id)
            else:
                self.logger.warning("Runner not yet registered with GitHub", runner_id=runner.id)
        except Exception as e:
            self.logger.error("Failed to get GitHub runner id", runner_id=runner.id, error=str(e))

    async def stop(self, runner: Runner) -> None:
        if runner.container_id:
            try:
                await self.engine.stop_container(runner.container_id, timeout=self.stop_timeout)
            except Exception as e:
                # Usually already stopped
                self.logger.warning("Failed to stop container", runner_id=runner.id, error=str(e))
        current = await self.store.get_runner(runner.id)
        if current is not None and current.status is not RunnerStatus.REMOVING:
            await self.store.set_status(runner.id, RunnerStatus.OFFLINE)

    async def remove(self, runner: Runner) -> None:
        """Deregister from GitHub, then stop and force-remove the container."""
        await self.store.set_status(runner.id, RunnerStatus.REMOVING)
        if runner.github_runner_id:
            try:
                client = await self._client(runner)
                await client.delete_runner(runner.github_runner_id)
            except Exception as e:
                self.logger.warning("Failed to deregister runner from GitHub", runner_id=runner.id, error=str(e))
        await self._destroy_container(runner)
        self.logger.info("Docker runner removed", runner_id=runner.id, runner=runner.name)

    async def _destroy_container(self, runner: Runner) -> None:
        if not runner.container_id:
            return
        try:
            await self.engine.stop_container(runner.container_id, timeout=5)
        except Exception as e:
            self.logger.debug("Container stop before removal failed", runner_id=runner.id, error=str(e))
        try:
            await self.engine.remove_container(runner.container_id, force=True)
        except Exception as e:
            self.logger.warning("Failed to remove container", runner_id=runner.id, error=str(e))
            return
        await self.store.update_runner(runner.id, container_id=None)

    async def teardown(self, runner: Runner) -> None:
        await self._destroy_container(runner)

    async def is_alive(self, runner: Runner) -> bool:
        if not runner.container_id:
            return False
        try:
            state = await self.engine.container_state(runner.container_id)
        except Exception as e:
            self.logger.warning("Failed to inspect container", runner_id=runner.id, error=str(e))
            # Unknown is not the same as gone
            return True
        return state is not None and state.running

    async def sync_status(self, runner: Runner) -> None:
        """Derive status from the container state and, when running, from GitHub."""
        if not runner.container_id:
            return
        state = await self.engine.container_state(runner.container_id)
        if state is None:
            await self.store.set_status(
                runner.id, RunnerStatus.ERROR, error_message="Container no longer exists"
            )
            return
        if not state.running:
            await self.store.set_status(runner.id, RunnerStatus.OFFLINE)
            return

        status = RunnerStatus.ONLINE
        if runner.github_runner_id:
            try:
                client = await self._client(runner)
                remote = await client.get_runner(runner.github_runner_id)
                if remote is not None and remote.busy:
                    status = RunnerStatus.BUSY
            except Exception as e:
                self.logger.debug("GitHub status unavailable, using container state", runner_id=runner.id, error=str(e))
        await self.store.set_status(runner.id, status, last_heartbeat=utcnow())

    async def container_logs(self, runner: Runner, tail: int = 100) -> str:
        if not runner.container_id:
            return ""
        return await self.engine.container_logs(runner.container_id, tail=tail)

    async def cleanup_orphaned_containers(self, runners: Iterable[Runner]) -> int:
        """
        Force-remove managed containers whose runner record no longer exists.

        Returns:
            Number of containers removed
        """
        known = {runner.id for runner in runners}
        removed = 0
        for container in await self.engine.list_managed_containers():
            runner_id = (container.get("Labels") or {}).get(MANAGED_LABEL)
            if not runner_id or runner_id in known:
                continue
            container_id = container.get("Id", "")
            self.logger.info("Removing orphaned container", container_id=container_id[:12], runner_id=runner_id)
            try:
                if await self.engine.remove_container(container_id, force=True):
                    removed += 1
            except Exception as e:
                self.logger.warning("Failed to remove orphaned container", container_id=container_id[:12], error=str(e))
        return removed

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
