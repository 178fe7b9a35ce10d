"""
Credential models for GitHub authentication.

Secrets are only ever stored encrypted; decryption happens in the
credential resolver when a token is actually needed.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from .runner import utcnow


class CredentialType(str, Enum):
    """Kind of long-lived GitHub credential."""

    PAT = "pat"                # Personal access token
    GITHUB_APP = "github_app"  # App installation, tokens minted on demand


class CredentialScope(str, Enum):
    """What a credential registers runners against."""

    REPO = "repo"  # Single repository, target is "owner/repo"
    ORG = "org"    # Organization, target is the org login


class Credential(BaseModel):
    """
    Stored GitHub credential.

    For ``pat`` credentials ``encrypted_token`` holds the token; for
    ``github_app`` credentials it may be empty and ``installation_id``
    identifies the installation used to mint short-lived tokens.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1, max_length=100)
    type: CredentialType = Field(default=CredentialType.PAT)
    scope: CredentialScope = Field(...)
    target: str = Field(
        ...,
        min_length=1,
        description="Repository full name or organization login"
    )
    encrypted_token: str = Field(
        default="",
        description="Fernet-encrypted bearer token"
    )
    installation_id: Optional[int] = Field(
        default=None,
        description="GitHub App installation id"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    validated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_target(self) -> "Credential":
        """Check the target shape against the scope."""
        parts = self.target.split("/")
        if self.scope is CredentialScope.REPO:
            if len(parts) != 2 or not all(parts):
                raise ValueError("Repository target must be in the form 'owner/repo'")
        elif len(parts) != 1:
            raise ValueError("Organization target must not contain '/'")
        if self.type is CredentialType.GITHUB_APP and self.installation_id is None:
            raise ValueError("GitHub App credentials require an installation_id")
        if self.type is CredentialType.PAT and not self.encrypted_token:
            raise ValueError("PAT credentials require an encrypted token")
        return self


class WebhookConfig(BaseModel):
    """Webhook registered on GitHub for a single credential."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    credential_id: str
    webhook_id: Optional[int] = Field(
        default=None,
        description="Hook id on GitHub"
    )
    encrypted_secret: str = Field(
        ...,
        description="Fernet-encrypted signing secret"
    )
    events: List[str] = Field(default_factory=lambda: ["workflow_job"])
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class GitHubApp(BaseModel):
    """GitHub App used to mint installation tokens and sign app webhooks."""

    app_id: int
    client_id: Optional[str] = Field(
        default=None,
        description="Preferred JWT issuer when set"
    )
    encrypted_private_key: str
    encrypted_webhook_secret: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def issuer(self) -> str:
        return self.client_id or str(self.app_id)
