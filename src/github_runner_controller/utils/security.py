"""
Security utilities for the GitHub Runner Controller.

This module provides webhook signature verification, encryption of
stored secrets, input sanitization and configuration checks for pools
that grant runners elevated host access.
"""

import base64
import hashlib
import hmac
import re
from typing import List, Optional, Union

import structlog
from cryptography.fernet import Fernet, InvalidToken

from ..models.runner import IsolationType, Pool

SIGNATURE_PREFIX = "sha256="
_DEV_KEY_MATERIAL = b"github-runner-controller-development-key"
_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class SecurityError(Exception):
    """Raised when security validation fails."""
    pass


def compute_signature(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` HMAC signature GitHub sends for ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify a GitHub ``X-Hub-Signature-256`` header.

    The HMAC is computed over the exact raw request bytes; re-serialized
    JSON will not verify.

    Args:
        body: Raw request body
        signature: Header value, ``sha256=<hex>``
        secret: Shared webhook secret

    Returns:
        True if the signature matches
    """
    if not signature or not secret or not signature.startswith(SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(signature, compute_signature(body, secret))


def derive_fernet_key(key_material: Union[str, bytes, None]) -> bytes:
    """
    Derive a Fernet key from operator supplied key material.

    A 64 character hex string is used as raw key bytes, material of at
    least 32 characters is truncated to 32 bytes, anything shorter is
    hashed with SHA-256.
    """
    if key_material is None:
        raw = hashlib.sha256(_DEV_KEY_MATERIAL).digest()
    else:
        text = key_material.decode("utf-8") if isinstance(key_material, bytes) else key_material
        if _HEX_KEY.match(text):
            raw = bytes.fromhex(text)
        elif len(text.encode("utf-8")) >= 32:
            raw = text.encode("utf-8")[:32]
        else:
            raw = hashlib.sha256(text.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(raw)


class CredentialCipher:
    """
    Symmetric encryption for secrets at rest.

    Tokens, private keys and webhook secrets are stored as Fernet tokens.
    """

    def __init__(self, key_material: Union[str, bytes, None] = None) -> None:
        self.logger = structlog.get_logger().bind(component="credential_cipher")
        if key_material is None:
            self.logger.warning(
                "No encryption key configured, using development key",
                hint="set ENCRYPTION_KEY in production"
            )
        self._fernet = Fernet(derive_fernet_key(key_material))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            SecurityError: If the token was not produced with this key
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise SecurityError("Unable to decrypt stored secret") from e


class SecurityValidator:
    """
    Security checks for pool configurations.

    Flags settings that give CI jobs elevated access to the host so that
    operators see them before the controller starts.
    """

    def __init__(self, max_runners_warning: int = 50) -> None:
        """Initialize security validator."""
        self.logger = structlog.get_logger().bind(component="security_validator")
        self.max_runners_warning = max_runners_warning

    def validate_pool(self, pool: Pool, runner_image: Optional[str] = None) -> List[str]:
        """
        Validate pool for security issues.

        Args:
            pool: Pool to validate
            runner_image: Container image docker runners will use

        Returns:
            List of security issues found
        """
        issues = []

        if pool.isolation_type is IsolationType.DOCKER:
            if pool.enable_privileged:
                issues.append("Containers run in privileged mode")
            if pool.enable_docker_socket:
                issues.append("Host docker socket is mounted into containers")
            if pool.enable_kvm:
                issues.append("/dev/kvm is passed through to containers")
            if runner_image:
                issues.extend(self._validate_container_image(runner_image))
        elif pool.enable_privileged or pool.enable_docker_socket or pool.enable_kvm:
            issues.append(
                f"Container options have no effect for {pool.isolation_type.value} runners"
            )

        if pool.isolation_type is IsolationType.NATIVE and pool.max_runners > 1:
            issues.append("Native runners share the host; concurrent jobs are not isolated")

        if pool.max_runners > self.max_runners_warning:
            issues.append(f"High max_runners ({pool.max_runners}) may exhaust host resources")

        return issues

    def _validate_container_image(self, image: str) -> List[str]:
        """Validate container image reference."""
        issues = []
        if image.endswith(":latest") or ":" not in image.rsplit("/", 1)[-1]:
            issues.append("Image uses 'latest' tag or no tag specified")
        if image.startswith("http://"):
            issues.append("Image uses insecure HTTP registry")
        return issues

    def sanitize_input(self, input_str: str, max_length: int = 1000) -> str:
        """Strip control characters and truncate untrusted text before logging."""
        if not isinstance(input_str, str):
            raise SecurityError("Input must be a string")

        if len(input_str) > max_length:
            self.logger.warning(
                "Input truncated due to excessive length",
                original_length=len(input_str),
                max_length=max_length
            )
            input_str = input_str[:max_length]

        input_str = ''.join(char for char in input_str if ord(char) >= 32 or char in '\t\n\r')
        return input_str.strip()
