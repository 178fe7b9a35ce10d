"""
Utility modules for the GitHub Runner Controller.

This package contains the GitHub REST and App clients, the Docker
engine wrapper, credential resolution and security helpers.
"""

from .credentials import CredentialError, CredentialNotFoundError, CredentialResolver
from .docker_client import DockerEngine, DockerUnavailableError
from .github_app import GitHubAppAuth, GitHubAppError
from .github_client import GitHubAPIError, GitHubAuthenticationError, GitHubClient
from .security import CredentialCipher, SecurityError, SecurityValidator, verify_signature

__all__ = [
    "CredentialCipher",
    "CredentialError",
    "CredentialNotFoundError",
    "CredentialResolver",
    "DockerEngine",
    "DockerUnavailableError",
    "GitHubAPIError",
    "GitHubAppAuth",
    "GitHubAppError",
    "GitHubAuthenticationError",
    "GitHubClient",
    "SecurityError",
    "SecurityValidator",
    "verify_signature",
]
