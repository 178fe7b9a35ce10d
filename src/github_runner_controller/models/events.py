"""Inbound GitHub webhook payload models."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Account(_Payload):
    login: str


class Repository(_Payload):
    full_name: str
    owner: Optional[Account] = None


class Installation(_Payload):
    id: int


class WorkflowJob(_Payload):
    id: int
    run_id: Optional[int] = None
    name: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    runner_id: Optional[int] = None
    runner_name: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None


class WorkflowJobEvent(_Payload):
    """
    ``workflow_job`` event payload.

    Only the fields the dispatcher routes on are modelled; everything else
    in the payload is ignored.
    """

    action: str
    workflow_job: WorkflowJob
    repository: Optional[Repository] = None
    organization: Optional[Account] = None
    installation: Optional[Installation] = None

    def targets(self) -> List[str]:
        """Credential targets this event may belong to, most specific first."""
        targets: List[str] = []
        if self.repository is not None:
            targets.append(self.repository.full_name)
        if self.organization is not None:
            targets.append(self.organization.login)
        elif self.repository is not None and self.repository.owner is not None:
            targets.append(self.repository.owner.login)
        return targets
