"""
GitHub Runner Controller.

Wires the store, credential resolver, provisioners, autoscaler,
reconciler and webhook dispatcher together and drives their lifecycle.
"""

import asyncio
from collections import Counter as TallyCounter
from typing import Any, Dict, List, Optional

import httpx
import structlog
from prometheus_client import start_http_server

from ..metrics import RUNNER_COUNT, SECURITY_EVENTS
from ..models.config import ControllerConfiguration
from ..models.credential import Credential, CredentialType, GitHubApp, WebhookConfig
from ..models.runner import IsolationType, Pool, RunnerStatus, utcnow
from ..provisioners.base import Provisioner
from ..provisioners.container import ContainerProvisioner
from ..provisioners.native import NativeProvisioner
from ..storage.base import RunnerStore
from ..storage.sql import SQLRunnerStore
from ..utils.credentials import CredentialResolver
from ..utils.docker_client import DockerEngine
from ..utils.security import CredentialCipher, SecurityValidator
from .autoscaler import Autoscaler
from .reconciler import Reconciler
from .startup import StartupReport, StartupSequencer
from .webhooks import DispatchResult, WebhookDispatcher

METRICS_INTERVAL = 30


class RunnerController:
    """
    Composition root for the runner fleet.

    ``start`` seeds configured credentials and pools, runs the startup
    sequence and then blocks until ``stop`` is called.
    """

    def __init__(self,
                 config: ControllerConfiguration,
                 store: Optional[RunnerStore] = None,
                 docker_engine: Optional[DockerEngine] = None,
                 http: Optional[httpx.AsyncClient] = None) -> None:
        """
        Build the controller components without touching the network.

        Args:
            config: Validated controller configuration
            store: Store override; defaults to ``SQLRunnerStore`` on ``storage.database_url``
            docker_engine: Docker engine override
            http: Shared HTTP client for GitHub calls
        """
        self.config = config
        self.logger = structlog.get_logger().bind(component="runner_controller")

        self.store = store or SQLRunnerStore(config.storage.database_url)
        encryption_key = config.encryption_key.get_secret_value() if config.encryption_key else None
        self.cipher = CredentialCipher(encryption_key)
        self.resolver = CredentialResolver(
            self.store,
            self.cipher,
            api_url=config.github.api_url,
            web_url=config.github.web_url,
            timeout=config.github.timeout,
            http=http,
        )

        self.provisioners: Dict[IsolationType, Provisioner] = {}
        self.native = NativeProvisioner(
            self.store,
            self.resolver,
            runners_dir=config.native.runners_dir,
            stop_grace_period=config.native.stop_grace_period,
            start_settle_delay=config.native.start_settle_delay,
        )
        self.provisioners[IsolationType.NATIVE] = self.native

        self.docker_engine: Optional[DockerEngine] = None
        self.container: Optional[ContainerProvisioner] = None
        if config.docker.enabled:
            self.docker_engine = docker_engine or DockerEngine(config.docker.base_url)
            self.container = ContainerProvisioner(
                self.store,
                self.resolver,
                self.docker_engine,
                runner_image=config.docker.runner_image,
                registration_delay=config.docker.registration_delay,
                stop_timeout=config.docker.stop_timeout,
            )
            self.provisioners[IsolationType.DOCKER] = self.container

        self.autoscaler = Autoscaler(self.store, self.provisioners)
        self.reconciler = Reconciler(
            self.store,
            self.resolver,
            self.autoscaler,
            self.provisioners,
            config=config.reconciler,
        )
        self.dispatcher = WebhookDispatcher(
            self.store,
            self.resolver,
            self.autoscaler,
            cleanup_delay=config.webhook.cleanup_delay,
        )
        self.startup = StartupSequencer(self.store, self.autoscaler, self.reconciler, self.provisioners)
        self.security_validator = SecurityValidator()

        self._running = False
        self._shutdown_event = asyncio.Event()
        self.startup_report: Optional[StartupReport] = None

        self.logger.info(
            "GitHub runner controller initialized",
            credentials=[c.name for c in config.credentials],
            pools=[p.name for p in config.pools],
            docker_enabled=config.docker.enabled,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self) -> None:
        """Open the store and seed it from the configuration file."""
        await self.store.initialize()
        await self._seed_github_app()
        await self._seed_credentials()
        await self._seed_pools()

    async def start(self) -> None:
        """
        Start the controller and block until shutdown.

        Raises:
            RuntimeError: If controller is already running
        """
        if self._running:
            raise RuntimeError("Controller is already running")

        self.logger.info("Starting GitHub runner controller")
        tasks: List["asyncio.Task[None]"] = []
        try:
            await self.initialize()

            if self.config.enable_metrics:
                start_http_server(self.config.monitoring_port)
                self.logger.info("Metrics server started", port=self.config.monitoring_port)

            self._check_pool_security(await self.store.list_pools())
            self.startup_report = await self.startup.run()

            tasks.append(asyncio.create_task(self._update_metrics()))
            self._running = True
            self.logger.info("GitHub runner controller started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            self.logger.error("Failed to start controller", error=str(e))
            SECURITY_EVENTS.labels(event_type="startup_failure", severity="high").inc()
            raise
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._running = False

    async def stop(self) -> None:
        """
        Stop background work and release resources.

        Runner processes and containers are left running; persistent
        runners are re-adopted on the next start.
        """
        self.logger.info("Stopping GitHub runner controller")
        try:
            await self.reconciler.stop()
            await self.dispatcher.shutdown()
            await self.native.shutdown()
            if self.container is not None:
                await self.container.shutdown()
            await self.resolver.close()
            if self.docker_engine is not None:
                await self.docker_engine.close()
            await self.store.close()
            self.logger.info("GitHub runner controller stopped successfully")
        except Exception as e:
            self.logger.error("Error during controller shutdown", error=str(e))
            SECURITY_EVENTS.labels(event_type="shutdown_error", severity="medium").inc()
        finally:
            self._shutdown_event.set()

    async def handle_webhook(self,
                             event: Optional[str],
                             raw_body: bytes,
                             signature_header: Optional[str]) -> DispatchResult:
        return await self.dispatcher.handle(event, raw_body, signature_header)

    async def _seed_github_app(self) -> None:
        definition = self.config.github_app
        if definition is None:
            return
        webhook_secret = definition.resolve_webhook_secret()
        app = GitHubApp(
            app_id=definition.app_id,
            client_id=definition.client_id,
            encrypted_private_key=self.cipher.encrypt(definition.read_private_key()),
            encrypted_webhook_secret=self.cipher.encrypt(webhook_secret) if webhook_secret else None,
        )
        await self.store.save_github_app(app)
        self.logger.info("GitHub App configured", app_id=definition.app_id)

    async def _seed_credentials(self) -> None:
        """Upsert configured credentials by name, keeping ids stable across restarts."""
        for definition in self.config.credentials:
            token = definition.resolve_token()
            if definition.type is CredentialType.PAT and not token:
                self.logger.error("Credential token not available", credential=definition.name)
                continue

            existing = await self.store.get_credential_by_name(definition.name)
            fields: Dict[str, Any] = {
                "name": definition.name,
                "type": definition.type,
                "scope": definition.scope,
                "target": definition.target,
                "encrypted_token": self.cipher.encrypt(token) if token else "",
                "installation_id": definition.installation_id,
                "updated_at": utcnow(),
            }
            if existing is not None:
                fields["id"] = existing.id
                fields["created_at"] = existing.created_at
            credential = await self.store.save_credential(Credential(**fields))

            secret = definition.resolve_webhook_secret()
            if secret:
                current = await self.store.get_webhook_config(credential.id)
                webhook = WebhookConfig(
                    credential_id=credential.id,
                    encrypted_secret=self.cipher.encrypt(secret),
                )
                if current is not None:
                    webhook = current.model_copy(update={"encrypted_secret": webhook.encrypted_secret})
                await self.store.save_webhook_config(webhook)

            self.logger.info(
                "Credential configured",
                credential=credential.name,
                scope=credential.scope.value,
                target=credential.target,
            )

    async def _seed_pools(self) -> None:
        for definition in self.config.pools:
            credential = await self.store.get_credential_by_name(definition.credential)
            if credential is None:
                self.logger.error(
                    "Pool credential unavailable, pool not configured",
                    pool=definition.name,
                    credential=definition.credential,
                )
                continue

            fields = definition.model_dump(exclude={"credential"})
            fields["credential_id"] = credential.id
            fields["updated_at"] = utcnow()
            existing = await self.store.get_pool_by_name(definition.name)
            if existing is not None:
                fields["id"] = existing.id
                fields["created_at"] = existing.created_at
            pool = await self.store.save_pool(Pool(**fields))
            self.logger.info(
                "Pool configured",
                pool=pool.name,
                isolation_type=pool.isolation_type.value,
                labels=pool.effective_labels(),
            )

    def _check_pool_security(self, pools: List[Pool]) -> None:
        for pool in pools:
            for issue in self.security_validator.validate_pool(pool, self.config.docker.runner_image):
                self.logger.warning("Pool security issue", pool=pool.name, issue=issue)
                SECURITY_EVENTS.labels(event_type="pool_configuration", severity="low").inc()

    async def _update_metrics(self) -> None:
        """Publish runner counts per pool and status."""
        while not self._shutdown_event.is_set():
            try:
                pools = {p.id: p.name for p in await self.store.list_pools()}
                tally = TallyCounter(
                    (pools.get(r.pool_id or "", "unpooled"), r.status.value)
                    for r in await self.store.list_runners()
                )
                for pool_name in list(pools.values()) + ["unpooled"]:
                    for status in RunnerStatus:
                        RUNNER_COUNT.labels(status=status.value, pool=pool_name).set(
                            tally.get((pool_name, status.value), 0)
                        )
            except Exception as e:
                self.logger.error("Error updating metrics", error=str(e))
            await asyncio.sleep(METRICS_INTERVAL)
