"""Data models for runners, pools, credentials and configuration."""

from .credential import Credential, CredentialScope, CredentialType, GitHubApp, WebhookConfig
from .runner import (
    Architecture,
    IsolationType,
    Platform,
    Pool,
    PoolRunnerCounts,
    Runner,
    RunnerStatus,
)

__all__ = [
    "Architecture",
    "Credential",
    "CredentialScope",
    "CredentialType",
    "GitHubApp",
    "IsolationType",
    "Platform",
    "Pool",
    "PoolRunnerCounts",
    "Runner",
    "RunnerStatus",
    "WebhookConfig",
]
