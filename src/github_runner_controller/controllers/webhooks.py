"""
GitHub webhook dispatcher.

Verifies ``workflow_job`` deliveries and turns them into scaling actions.
HTTP framing is left to the caller: pass the event name header, the
raw request body and the ``X-Hub-Signature-256`` header.
"""

import asyncio
import json
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from ..metrics import SECURITY_EVENTS, WEBHOOK_EVENTS
from ..models.credential import Credential
from ..models.events import WorkflowJobEvent
from ..models.runner import Runner, RunnerStatus
from ..storage.base import RunnerStore
from ..utils.credentials import CredentialResolver
from ..utils.security import SecurityError, SecurityValidator, verify_signature
from .autoscaler import Autoscaler

WORKFLOW_JOB_EVENT = "workflow_job"


class DispatchStatus(str, Enum):
    OK = "ok"
    IGNORED = "ignored"
    UNAUTHORIZED = "unauthorized"
    BAD_REQUEST = "bad_request"


class DispatchResult(BaseModel):
    """What the dispatcher did with one delivery."""

    status: DispatchStatus
    action: Optional[str] = None
    scaled_pools: List[str] = Field(default_factory=list)
    runner_id: Optional[str] = None
    message: Optional[str] = None


class WebhookDispatcher:
    """
    Route verified ``workflow_job`` events to the autoscaler.

    Cleanup of completed ephemeral runners is deferred by
    ``cleanup_delay`` seconds so the runner process can exit on its own;
    the pending cleanups are tracked here and cancelled on shutdown.
    """

    def __init__(self,
                 store: RunnerStore,
                 resolver: CredentialResolver,
                 autoscaler: Autoscaler,
                 cleanup_delay: float = 5.0,
                 logger: Any = None) -> None:
        self.store = store
        self.resolver = resolver
        self.autoscaler = autoscaler
        self.cleanup_delay = cleanup_delay
        self.logger = (logger or structlog.get_logger()).bind(component="webhooks")
        self.validator = SecurityValidator()
        self._cleanups: Dict[str, "asyncio.Task[None]"] = {}
        autoscaler.on_runner_deleted.append(self.cancel_cleanup)

    @property
    def pending_cleanups(self) -> List[str]:
        return [runner_id for runner_id, task in self._cleanups.items() if not task.done()]

    async def handle(self,
                     event: Optional[str],
                     raw_body: bytes,
                     signature_header: Optional[str],
                     payload: Optional[Dict[str, Any]] = None) -> DispatchResult:
        """
        Verify and dispatch one webhook delivery.

        Args:
            event: Value of the ``X-GitHub-Event`` header
            raw_body: Exact request body bytes, used for the signature
            signature_header: Value of ``X-Hub-Signature-256``
            payload: Already-decoded body, if the caller parsed it

        Returns:
            The dispatch outcome; no state is changed unless status is ``ok``
        """
        if event != WORKFLOW_JOB_EVENT:
            self.logger.debug("Ignoring webhook event", event=event)
            WEBHOOK_EVENTS.labels(action=event or "unknown", result="ignored").inc()
            return DispatchResult(status=DispatchStatus.IGNORED, message=f"Event {event} not handled")

        try:
            if payload is None:
                payload = json.loads(raw_body)
            job_event = WorkflowJobEvent.model_validate(payload)
        except (ValueError, ValidationError) as e:
            self.logger.warning("Malformed workflow_job payload", error=str(e))
            WEBHOOK_EVENTS.labels(action="unknown", result="bad_request").inc()
            return DispatchResult(status=DispatchStatus.BAD_REQUEST, message="Invalid payload")

        action = job_event.action
        credential = await self._authenticate(job_event, raw_body, signature_header)
        if credential is None:
            WEBHOOK_EVENTS.labels(action=action, result="unauthorized").inc()
            SECURITY_EVENTS.labels(event_type="webhook_signature_rejected", severity="warning").inc()
            return DispatchResult(
                status=DispatchStatus.UNAUTHORIZED,
                action=action,
                message="Signature verification failed",
            )

        self.logger.info(
            "Workflow job event",
            action=action,
            job_id=job_event.workflow_job.id,
            job=self.validator.sanitize_input(job_event.workflow_job.name or "", max_length=200),
            labels=[self.validator.sanitize_input(label, max_length=100) for label in job_event.workflow_job.labels],
            credential=credential.name,
        )

        if action == "queued":
            result = await self._on_queued(credential, job_event)
        elif action == "in_progress":
            result = await self._on_in_progress(credential, job_event)
        elif action == "completed":
            result = await self._on_completed(credential, job_event)
        else:
            result = DispatchResult(status=DispatchStatus.IGNORED, action=action)

        WEBHOOK_EVENTS.labels(action=action, result=result.status.value).inc()
        return result

    async def _authenticate(self,
                            job_event: WorkflowJobEvent,
                            raw_body: bytes,
                            signature_header: Optional[str]) -> Optional[Credential]:
        """
        Find the credential whose secret signed this delivery.

        Per-credential secrets are tried first; the GitHub App secret is
        used only for credentials matching the delivery's installation.
        """
        if not signature_header:
            self.logger.warning("Webhook delivery without signature")
            return None

        credentials = await self.store.find_credentials_by_targets(job_event.targets())
        if not credentials:
            self.logger.warning("No credential for webhook targets", targets=job_event.targets())
            return None

        for credential in credentials:
            try:
                secret = await self.resolver.webhook_secret_for(credential)
            except SecurityError as e:
                self.logger.error("Failed to decrypt webhook secret", credential=credential.name, error=str(e))
                continue
            if secret and verify_signature(raw_body, signature_header, secret):
                return credential

        if job_event.installation is not None:
            installation_id = job_event.installation.id
            app_credential = next(
                (c for c in credentials if c.installation_id == installation_id),
                None,
            )
            if app_credential is not None:
                try:
                    secret = await self.resolver.app_webhook_secret()
                except SecurityError as e:
                    self.logger.error("Failed to decrypt app webhook secret", error=str(e))
                    secret = None
                if secret and verify_signature(raw_body, signature_header, secret):
                    return app_credential

        self.logger.warning("Webhook signature mismatch", targets=job_event.targets())
        return None

    async def _on_queued(self, credential: Credential, job_event: WorkflowJobEvent) -> DispatchResult:
        labels = job_event.workflow_job.labels
        pools = await self.autoscaler.find_matching_pools(credential.id, labels)
        if not pools:
            self.logger.info("No pool matches job labels", labels=labels, credential=credential.name)
            return DispatchResult(status=DispatchStatus.OK, action="queued")

        scaled: List[str] = []
        for pool in pools:
            try:
                if await self.autoscaler.scale_up(pool) is not None:
                    scaled.append(pool.name)
            except Exception as e:
                self.logger.error("Scale up failed", pool=pool.name, error=str(e))
        return DispatchResult(status=DispatchStatus.OK, action="queued", scaled_pools=scaled)

    async def _find_runner(self, credential: Credential, job_event: WorkflowJobEvent) -> Optional[Runner]:
        job = job_event.workflow_job
        if job.runner_id is not None:
            runner = await self.store.get_runner_by_github_id(job.runner_id)
            if runner is not None:
                return runner
        if job.runner_name:
            for runner in await self.store.list_runners(credential_id=credential.id):
                if runner.name == job.runner_name:
                    return runner
        return None

    async def _on_in_progress(self, credential: Credential, job_event: WorkflowJobEvent) -> DispatchResult:
        runner = await self._find_runner(credential, job_event)
        if runner is None:
            return DispatchResult(status=DispatchStatus.OK, action="in_progress")

        changes = {}
        if runner.github_runner_id is None and job_event.workflow_job.runner_id is not None:
            changes["github_runner_id"] = job_event.workflow_job.runner_id
        await self.store.set_status(runner.id, RunnerStatus.BUSY, **changes)
        return DispatchResult(status=DispatchStatus.OK, action="in_progress", runner_id=runner.id)

    async def _on_completed(self, credential: Credential, job_event: WorkflowJobEvent) -> DispatchResult:
        runner = await self._find_runner(credential, job_event)
        if runner is None:
            return DispatchResult(status=DispatchStatus.OK, action="completed")

        if runner.ephemeral:
            self.schedule_cleanup(runner.id)
        else:
            await self.store.set_status(runner.id, RunnerStatus.ONLINE)
        return DispatchResult(status=DispatchStatus.OK, action="completed", runner_id=runner.id)

    def schedule_cleanup(self, runner_id: str) -> None:
        """Deprovision a finished ephemeral runner after ``cleanup_delay``, replacing any pending cleanup."""
        self.cancel_cleanup(runner_id)
        task = asyncio.create_task(self._deferred_cleanup(runner_id))
        self._cleanups[runner_id] = task
        task.add_done_callback(lambda t, rid=runner_id: self._forget(rid, t))

    def _forget(self, runner_id: str, task: "asyncio.Task[None]") -> None:
        if self._cleanups.get(runner_id) is task:
            del self._cleanups[runner_id]

    def cancel_cleanup(self, runner_id: str) -> bool:
        """Cancel a pending cleanup; a cleanup never cancels itself mid-deprovision."""
        task = self._cleanups.get(runner_id)
        if task is None or task.done() or task is asyncio.current_task():
            return False
        del self._cleanups[runner_id]
        task.cancel()
        return True

    async def _deferred_cleanup(self, runner_id: str) -> None:
        await asyncio.sleep(self.cleanup_delay)
        runner = await self.store.get_runner(runner_id)
        if runner is None:
            return
        self.logger.info("Cleaning up completed ephemeral runner", runner=runner.name)
        try:
            await self.autoscaler.deprovision(runner)
            if runner.pool_id:
                pool = await self.store.get_pool(runner.pool_id)
                if pool is not None and pool.enabled:
                    await self.autoscaler.ensure_warm_runners(pool)
        except Exception as e:
            self.logger.error("Ephemeral runner cleanup failed", runner_id=runner_id, error=str(e))

    async def shutdown(self) -> None:
        tasks = list(self._cleanups.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._cleanups.clear()
