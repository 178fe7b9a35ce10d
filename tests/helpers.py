"""Shared fakes for controller and provisioner tests."""

from typing import Dict, List, Optional

from github_runner_controller.models.credential import Credential, CredentialScope
from github_runner_controller.models.runner import IsolationType, Runner, RunnerStatus, utcnow
from github_runner_controller.provisioners.base import ProvisionHandle, ProvisionOptions, Provisioner
from github_runner_controller.utils.docker_client import ContainerState
from github_runner_controller.utils.github_client import RemoteRunner, RunnerToken


class FakeGitHubClient:
    """Stands in for GitHubClient with an in-memory runner list."""

    def __init__(self, scope: CredentialScope = CredentialScope.ORG, target: str = "octo") -> None:
        self.scope = scope
        self.target = target
        self.registration_url = f"https://github.com/{target}"
        self.remote: Dict[int, RemoteRunner] = {}
        self.deleted: List[int] = []
        self.fail_list = False

    def add_remote(self, runner_id: int, name: str, busy: bool = False, status: str = "online") -> RemoteRunner:
        remote = RemoteRunner(id=runner_id, name=name, busy=busy, status=status)
        self.remote[runner_id] = remote
        return remote

    async def list_runners(self) -> List[RemoteRunner]:
        if self.fail_list:
            raise RuntimeError("GitHub unavailable")
        return list(self.remote.values())

    async def get_runner(self, runner_id: int) -> Optional[RemoteRunner]:
        return self.remote.get(runner_id)

    async def find_runner_by_name(self, name: str) -> Optional[RemoteRunner]:
        return next((r for r in self.remote.values() if r.name == name), None)

    async def delete_runner(self, runner_id: int) -> bool:
        self.deleted.append(runner_id)
        return self.remote.pop(runner_id, None) is not None

    async def create_registration_token(self) -> RunnerToken:
        return RunnerToken(token="REG-TOKEN", expires_at=utcnow())

    async def create_remove_token(self) -> RunnerToken:
        return RunnerToken(token="REMOVE-TOKEN", expires_at=utcnow())


class FakeResolver:
    """Stands in for CredentialResolver; one client and secret per credential id."""

    def __init__(self) -> None:
        self.clients: Dict[str, FakeGitHubClient] = {}
        self.secrets: Dict[str, str] = {}
        self.app_secret: Optional[str] = None

    def add(self, credential: Credential, secret: Optional[str] = None) -> FakeGitHubClient:
        client = FakeGitHubClient(credential.scope, credential.target)
        self.clients[credential.id] = client
        if secret:
            self.secrets[credential.id] = secret
        return client

    async def client_for(self, credential_id: str) -> FakeGitHubClient:
        return self.clients[credential_id]

    async def webhook_secret_for(self, credential: Credential) -> Optional[str]:
        return self.secrets.get(credential.id)

    async def app_webhook_secret(self) -> Optional[str]:
        return self.app_secret


class FakeProvisioner(Provisioner):
    """Provisioner that records lifecycle calls and moves statuses like a real backend."""

    isolation_type = IsolationType.DOCKER

    def __init__(self, store, isolation_type: IsolationType = IsolationType.DOCKER) -> None:
        self.isolation_type = isolation_type
        super().__init__(store, resolver=None)
        self.created: List[str] = []
        self.started: List[str] = []
        self.stopped: List[str] = []
        self.removed: List[str] = []
        self.torn_down: List[str] = []
        self.synced: List[str] = []
        self.alive: Dict[str, bool] = {}
        self.fail_create = False
        self.fail_teardown = False

    async def create(self, runner: Runner, options: ProvisionOptions) -> ProvisionHandle:
        if self.fail_create:
            raise RuntimeError("create failed")
        self.created.append(runner.id)
        await self.store.set_status(runner.id, RunnerStatus.CONFIGURING)
        return ProvisionHandle(runner_id=runner.id)

    async def start(self, runner: Runner) -> None:
        self.started.append(runner.id)
        self.alive[runner.id] = True
        await self.store.set_status(runner.id, RunnerStatus.ONLINE, last_heartbeat=utcnow())

    async def stop(self, runner: Runner) -> None:
        self.stopped.append(runner.id)
        self.alive[runner.id] = False
        await self.store.set_status(runner.id, RunnerStatus.OFFLINE)

    async def remove(self, runner: Runner) -> None:
        self.removed.append(runner.id)
        self.alive[runner.id] = False
        await self.store.set_status(runner.id, RunnerStatus.REMOVING)

    async def teardown(self, runner: Runner) -> None:
        self.torn_down.append(runner.id)
        if self.fail_teardown:
            raise RuntimeError("teardown failed")
        self.alive[runner.id] = False

    async def is_alive(self, runner: Runner) -> bool:
        return self.alive.get(runner.id, False)

    async def sync_status(self, runner: Runner) -> None:
        self.synced.append(runner.id)


class FakeEngine:
    """Records Docker calls; images and containers live in dictionaries."""

    def __init__(self):
        self.images = {}
        self.pull_architecture = "amd64"
        self.pulls = []
        self.tags = []
        self.containers = {}
        self.labels = {}
        self.created = []
        self.removed = []
        self.fail_inspect = False

    async def ping(self):
        return True

    async def inspect_image(self, reference):
        return self.images.get(reference)

    async def pull_image(self, repository, tag, platform):
        self.pulls.append((repository, tag, platform))
        image = {"Architecture": self.pull_architecture}
        self.images[f"{repository}:{tag}"] = image
        return image

    async def tag_image(self, source, repository, tag):
        self.tags.append((source, f"{repository}:{tag}"))
        self.images[f"{repository}:{tag}"] = self.images[source]

    async def create_container(self, image, name, environment, labels, **host_config):
        container_id = f"{len(self.created):064d}"
        self.created.append({
            "image": image,
            "name": name,
            "environment": environment,
            "labels": labels,
            "host_config": host_config,
        })
        self.labels[container_id] = labels
        self.containers[container_id] = ContainerState(running=False, status="created")
        return container_id

    async def start_container(self, container_id):
        self.containers[container_id] = ContainerState(running=True, status="running")

    async def stop_container(self, container_id, timeout=10):
        if container_id not in self.containers:
            return False
        self.containers[container_id] = ContainerState(running=False, status="exited", exit_code=0)
        return True

    async def remove_container(self, container_id, force=True):
        self.removed.append(container_id)
        return self.containers.pop(container_id, None) is not None

    async def container_state(self, container_id):
        if self.fail_inspect:
            raise RuntimeError("daemon hiccup")
        return self.containers.get(container_id)

    async def container_logs(self, container_id, tail=100):
        return "Listening for Jobs\n" if container_id in self.containers else ""

    async def list_managed_containers(self):
        return [
            {"Id": container_id, "Labels": self.labels.get(container_id, {})}
            for container_id in self.containers
        ]
