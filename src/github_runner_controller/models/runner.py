"""
Runner and pool models with explicit lifecycle states.

This module defines the core data models for self-hosted GitHub Actions
runners and the autoscaling pools that own them, including the status
transition table every writer must respect.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class RunnerStatus(str, Enum):
    """
    Runner lifecycle status enumeration.

    Statuses move through ``pending -> configuring -> online`` and from
    there to ``busy``, ``offline`` or ``error`` before ending in
    ``removing``, after which the record is deleted.
    """

    PENDING = "pending"          # Record created, provisioning not started
    CONFIGURING = "configuring"  # Registering with GitHub
    ONLINE = "online"            # Idle and listening for jobs
    OFFLINE = "offline"          # Process or container not running
    BUSY = "busy"                # Executing a job
    ERROR = "error"              # Provisioning or runtime failure
    REMOVING = "removing"        # Deprovisioning in progress

    @classmethod
    def active(cls) -> FrozenSet["RunnerStatus"]:
        """Statuses that count against a pool's capacity."""
        return frozenset({cls.PENDING, cls.CONFIGURING, cls.ONLINE, cls.BUSY})

    def can_transition_to(self, target: "RunnerStatus") -> bool:
        """Check whether moving from this status to ``target`` is allowed."""
        if self is target:
            return True
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[RunnerStatus, FrozenSet[RunnerStatus]] = {
    RunnerStatus.PENDING: frozenset({
        RunnerStatus.CONFIGURING, RunnerStatus.ONLINE, RunnerStatus.BUSY,
        RunnerStatus.OFFLINE, RunnerStatus.ERROR, RunnerStatus.REMOVING,
    }),
    RunnerStatus.CONFIGURING: frozenset({
        RunnerStatus.ONLINE, RunnerStatus.BUSY, RunnerStatus.OFFLINE,
        RunnerStatus.ERROR, RunnerStatus.REMOVING,
    }),
    RunnerStatus.ONLINE: frozenset({
        RunnerStatus.BUSY, RunnerStatus.OFFLINE, RunnerStatus.ERROR,
        RunnerStatus.REMOVING,
    }),
    RunnerStatus.BUSY: frozenset({
        RunnerStatus.ONLINE, RunnerStatus.OFFLINE, RunnerStatus.ERROR,
        RunnerStatus.REMOVING,
    }),
    RunnerStatus.OFFLINE: frozenset({
        RunnerStatus.PENDING, RunnerStatus.ONLINE, RunnerStatus.BUSY,
        RunnerStatus.ERROR, RunnerStatus.REMOVING,
    }),
    RunnerStatus.ERROR: frozenset({
        RunnerStatus.PENDING, RunnerStatus.OFFLINE, RunnerStatus.REMOVING,
    }),
    # Terminal: the record is deleted once deprovisioning finishes
    RunnerStatus.REMOVING: frozenset(),
}


class Platform(str, Enum):
    """Host operating system a runner targets."""

    LINUX = "linux"
    DARWIN = "darwin"
    WIN32 = "win32"


class Architecture(str, Enum):
    """CPU architecture a runner targets."""

    X64 = "x64"
    ARM64 = "arm64"


class IsolationType(str, Enum):
    """
    How a runner is isolated from the host.

    Only ``native`` and ``docker`` have provisioners; the others are
    accepted so that stored rows round-trip but fail at provisioning time.
    """

    NATIVE = "native"   # Plain OS process
    DOCKER = "docker"   # Linux container
    TART = "tart"       # macOS virtual machine
    HYPERV = "hyperv"   # Windows virtual machine


OS_LABELS: Dict[Platform, str] = {
    Platform.LINUX: "Linux",
    Platform.DARWIN: "macOS",
    Platform.WIN32: "Windows",
}

ARCH_LABELS: Dict[Architecture, str] = {
    Architecture.X64: "X64",
    Architecture.ARM64: "ARM64",
}


def _clean_labels(labels: List[str]) -> List[str]:
    cleaned: List[str] = []
    for label in labels:
        label = label.strip()
        if label and label.lower() not in {c.lower() for c in cleaned}:
            cleaned.append(label)
    return cleaned


class Runner(BaseModel):
    """
    A single self-hosted runner and its provisioning state.

    Native runners carry ``runner_dir`` and ``process_id``; container runners
    carry ``container_id``. Runners with a ``pool_id`` and ``ephemeral=True``
    are owned by that pool and never survive a control-plane restart.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique runner identifier"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Runner name as registered with GitHub"
    )
    credential_id: str = Field(
        ...,
        description="Credential used to register this runner"
    )
    github_runner_id: Optional[int] = Field(
        default=None,
        description="GitHub runner ID after registration"
    )
    status: RunnerStatus = Field(
        default=RunnerStatus.PENDING,
        description="Current runner status"
    )
    platform: Platform = Field(
        default=Platform.LINUX,
        description="Target operating system"
    )
    architecture: Architecture = Field(
        default=Architecture.X64,
        description="Target CPU architecture"
    )
    isolation_type: IsolationType = Field(
        default=IsolationType.NATIVE,
        description="Provisioning backend"
    )
    labels: List[str] = Field(
        default_factory=list,
        description="Labels advertised to GitHub"
    )
    runner_dir: Optional[str] = Field(
        default=None,
        description="Working directory of a native runner"
    )
    process_id: Optional[int] = Field(
        default=None,
        description="OS process id of a native runner"
    )
    container_id: Optional[str] = Field(
        default=None,
        description="Container id of a docker runner"
    )
    error_message: Optional[str] = Field(
        default=None,
        description="Error message if runner failed"
    )
    pool_id: Optional[str] = Field(
        default=None,
        description="Owning pool, if any"
    )
    ephemeral: bool = Field(
        default=False,
        description="Runner executes a single job and is then removed"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_heartbeat: Optional[datetime] = Field(
        default=None,
        description="Last time the runner showed signs of life"
    )
    online_since: Optional[datetime] = Field(
        default=None,
        description="When the runner last became idle and online"
    )

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: List[str]) -> List[str]:
        """Strip blanks and case-insensitive duplicates."""
        return _clean_labels(v)

    @property
    def is_active(self) -> bool:
        return self.status in RunnerStatus.active()


class Pool(BaseModel):
    """
    Autoscaling pool definition.

    A pool never stores runner state; membership is inferred from
    ``Runner.pool_id``. Bounds must satisfy
    ``min_runners <= warm_runners <= max_runners``.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$",
        description="Pool name, used as runner name prefix"
    )
    credential_id: str = Field(
        ...,
        description="Credential runners of this pool register with"
    )
    platform: Platform = Field(default=Platform.LINUX)
    architecture: Architecture = Field(default=Architecture.X64)
    isolation_type: IsolationType = Field(default=IsolationType.DOCKER)
    labels: List[str] = Field(
        default_factory=list,
        description="Custom labels in addition to the default ones"
    )
    min_runners: int = Field(default=0, ge=0)
    max_runners: int = Field(default=5, ge=1)
    warm_runners: int = Field(default=1, ge=0)
    idle_timeout_minutes: int = Field(
        default=10,
        ge=1,
        description="Idle time after which surplus warm runners are removed"
    )
    enable_kvm: bool = Field(
        default=False,
        description="Pass /dev/kvm through to containers"
    )
    enable_docker_socket: bool = Field(
        default=False,
        description="Mount the host docker socket into containers"
    )
    enable_privileged: bool = Field(
        default=False,
        description="Run containers in privileged mode"
    )
    enabled: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: List[str]) -> List[str]:
        return _clean_labels(v)

    @model_validator(mode="after")
    def validate_bounds(self) -> "Pool":
        """Ensure warm capacity sits between the pool bounds."""
        if not self.min_runners <= self.warm_runners <= self.max_runners:
            raise ValueError(
                "Pool bounds must satisfy min_runners <= warm_runners <= max_runners "
                f"(got {self.min_runners}/{self.warm_runners}/{self.max_runners})"
            )
        return self

    def effective_labels(self) -> List[str]:
        """
        Labels a runner of this pool advertises to GitHub.

        Docker runners always run Linux regardless of the pool platform.
        """
        platform = Platform.LINUX if self.isolation_type is IsolationType.DOCKER else self.platform
        labels = ["self-hosted", OS_LABELS[platform], ARCH_LABELS[self.architecture]]
        for label in self.labels:
            if label.lower() not in {existing.lower() for existing in labels}:
                labels.append(label)
        return labels


class PoolRunnerCounts(BaseModel):
    """Aggregate runner counts for a pool."""

    total: int = 0
    active: int = 0
    idle: int = 0
    busy: int = 0
