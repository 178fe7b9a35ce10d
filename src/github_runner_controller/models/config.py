"""
Controller configuration models.

The configuration file (YAML or JSON) is validated into
``ControllerConfiguration``. Credentials, the GitHub App and pools
declared here are seeded into the store when the controller starts.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic.types import PositiveFloat, PositiveInt

from .credential import CredentialScope, CredentialType
from .runner import Architecture, IsolationType, Platform

DEFAULT_RUNNER_IMAGE = "myoung34/github-runner:latest"


def _default_runners_dir() -> str:
    return os.environ.get(
        "RUNNERS_DIR",
        str(Path.home() / ".github-runner-controller" / "runners"),
    )


def _secret_from_env(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    return os.environ.get(name)


class GitHubConfiguration(BaseModel):
    """GitHub endpoints and client behaviour."""

    api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL"
    )
    web_url: str = Field(
        default="https://github.com",
        description="GitHub web URL used for runner registration"
    )
    timeout: PositiveFloat = Field(
        default=30.0,
        description="HTTP request timeout in seconds"
    )

    @field_validator("api_url", "web_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require HTTPS except for local development endpoints."""
        if not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError("GitHub URL must include protocol (https:// or http://)")
        if v.startswith("http://") and "localhost" not in v and "127.0.0.1" not in v:
            raise ValueError("HTTP connections not allowed for non-localhost GitHub instances")
        return v.rstrip("/")


class StorageConfiguration(BaseModel):
    """Persistent store location."""

    database_url: str = Field(
        default_factory=lambda: os.environ.get(
            "DATABASE_URL", "sqlite+aiosqlite:///data/github-runner-controller.db"
        ),
        description="SQLAlchemy async database URL"
    )


class DockerConfiguration(BaseModel):
    """Container provisioner settings."""

    enabled: bool = Field(default=True, description="Enable docker runners")
    base_url: Optional[str] = Field(
        default=None,
        description="Docker daemon URL, defaults to the environment"
    )
    runner_image: str = Field(
        default_factory=lambda: os.environ.get("RUNNER_IMAGE", DEFAULT_RUNNER_IMAGE),
        description="Runner image to pull for docker runners"
    )
    registration_delay: float = Field(
        default=10.0,
        ge=0,
        description="Seconds to wait before looking up the GitHub runner id"
    )
    stop_timeout: int = Field(
        default=10,
        ge=0,
        description="Graceful stop timeout in seconds"
    )


class NativeConfiguration(BaseModel):
    """Native process provisioner settings."""

    runners_dir: str = Field(
        default_factory=_default_runners_dir,
        description="Directory holding native runner installations"
    )
    stop_grace_period: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between SIGTERM and SIGKILL"
    )
    start_settle_delay: float = Field(
        default=2.0,
        ge=0,
        description="Seconds after spawn before a live runner is marked online"
    )


class ReconcilerConfiguration(BaseModel):
    """Reconciliation loop timing."""

    interval: PositiveFloat = Field(default=300.0, description="Seconds between sweeps")
    initial_delay: float = Field(default=10.0, ge=0, description="Delay before the first sweep")
    sweep_timeout: PositiveFloat = Field(default=120.0, description="Upper bound for one sweep")
    list_timeout: PositiveFloat = Field(default=30.0, description="Timeout for listing remote runners")
    get_timeout: PositiveFloat = Field(default=15.0, description="Timeout for fetching one remote runner")
    stale_heartbeat_minutes: PositiveInt = Field(
        default=30,
        description="Heartbeat age after which ephemeral runners are double-checked"
    )


class WebhookConfiguration(BaseModel):
    """Webhook dispatcher settings."""

    cleanup_delay: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to wait after job completion before removing an ephemeral runner"
    )


class CredentialDefinition(BaseModel):
    """Credential declared in the configuration file."""

    model_config = ConfigDict(extra="forbid")

    name: str
    type: CredentialType = CredentialType.PAT
    scope: CredentialScope
    target: str
    token: Optional[SecretStr] = None
    token_env: Optional[str] = Field(
        default=None,
        description="Environment variable holding the token"
    )
    installation_id: Optional[int] = None
    webhook_secret: Optional[SecretStr] = None
    webhook_secret_env: Optional[str] = None

    def resolve_token(self) -> Optional[str]:
        if self.token is not None:
            return self.token.get_secret_value()
        return _secret_from_env(self.token_env)

    def resolve_webhook_secret(self) -> Optional[str]:
        if self.webhook_secret is not None:
            return self.webhook_secret.get_secret_value()
        return _secret_from_env(self.webhook_secret_env)

    @model_validator(mode="after")
    def validate_material(self) -> "CredentialDefinition":
        if self.type is CredentialType.PAT and self.token is None and not self.token_env:
            raise ValueError(f"Credential '{self.name}' needs token or token_env")
        if self.type is CredentialType.GITHUB_APP and self.installation_id is None:
            raise ValueError(f"Credential '{self.name}' needs installation_id")
        return self


class GitHubAppDefinition(BaseModel):
    """GitHub App declared in the configuration file."""

    model_config = ConfigDict(extra="forbid")

    app_id: PositiveInt
    client_id: Optional[str] = None
    private_key_path: str
    webhook_secret: Optional[SecretStr] = None
    webhook_secret_env: Optional[str] = None

    def read_private_key(self) -> str:
        return Path(self.private_key_path).expanduser().read_text()

    def resolve_webhook_secret(self) -> Optional[str]:
        if self.webhook_secret is not None:
            return self.webhook_secret.get_secret_value()
        return _secret_from_env(self.webhook_secret_env)


class PoolDefinition(BaseModel):
    """Autoscaling pool declared in the configuration file."""

    model_config = ConfigDict(extra="forbid")

    name: str
    credential: str = Field(..., description="Name of a declared credential")
    platform: Platform = Platform.LINUX
    architecture: Architecture = Architecture.X64
    isolation_type: IsolationType = IsolationType.DOCKER
    labels: List[str] = Field(default_factory=list)
    min_runners: int = Field(default=0, ge=0)
    max_runners: int = Field(default=5, ge=1)
    warm_runners: int = Field(default=1, ge=0)
    idle_timeout_minutes: int = Field(default=10, ge=1)
    enable_kvm: bool = False
    enable_docker_socket: bool = False
    enable_privileged: bool = False
    enabled: bool = True


class ControllerConfiguration(BaseModel):
    """
    Main controller configuration.

    Aggregates all configuration components required for
    the runner controller operation.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    github: GitHubConfiguration = Field(
        default_factory=GitHubConfiguration,
        description="GitHub endpoint configuration"
    )
    storage: StorageConfiguration = Field(default_factory=StorageConfiguration)
    docker: DockerConfiguration = Field(default_factory=DockerConfiguration)
    native: NativeConfiguration = Field(default_factory=NativeConfiguration)
    reconciler: ReconcilerConfiguration = Field(default_factory=ReconcilerConfiguration)
    webhook: WebhookConfiguration = Field(default_factory=WebhookConfiguration)
    encryption_key: Optional[SecretStr] = Field(
        default_factory=lambda: SecretStr(os.environ["ENCRYPTION_KEY"]) if os.environ.get("ENCRYPTION_KEY") else None,
        description="Key protecting stored secrets"
    )
    credentials: List[CredentialDefinition] = Field(default_factory=list)
    github_app: Optional[GitHubAppDefinition] = None
    pools: List[PoolDefinition] = Field(default_factory=list)
    monitoring_port: PositiveInt = Field(
        default=8080,
        description="Port for the metrics endpoint"
    )
    log_level: str = Field(
        default="INFO",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    enable_metrics: bool = Field(default=True, description="Enable Prometheus metrics")

    @model_validator(mode="after")
    def validate_references(self) -> "ControllerConfiguration":
        """Pools must reference declared credentials; names must be unique."""
        credential_names = [c.name for c in self.credentials]
        if len(set(credential_names)) != len(credential_names):
            raise ValueError("Credential names must be unique")
        pool_names = [p.name for p in self.pools]
        if len(set(pool_names)) != len(pool_names):
            raise ValueError("Pool names must be unique")
        for pool in self.pools:
            if pool.credential not in credential_names:
                raise ValueError(f"Pool '{pool.name}' references unknown credential '{pool.credential}'")
            if not pool.min_runners <= pool.warm_runners <= pool.max_runners:
                raise ValueError(
                    f"Pool '{pool.name}' bounds must satisfy min_runners <= warm_runners <= max_runners"
                )
        if any(c.type is CredentialType.GITHUB_APP for c in self.credentials) and self.github_app is None:
            raise ValueError("GitHub App credentials require a github_app section")
        return self
