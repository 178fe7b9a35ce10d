"""
Credential resolution.

Turns a stored credential reference into a bearer token and a scoped
GitHub client, decrypting stored secrets and minting installation
tokens for GitHub App credentials.
"""

from typing import Dict, Optional, Tuple

import httpx
import structlog

from ..models.credential import Credential, CredentialType
from ..storage.base import RunnerStore
from .github_app import GitHubAppAuth, GitHubAppError
from .github_client import GitHubClient
from .security import CredentialCipher, SecurityError


class CredentialError(Exception):
    """Raised when a credential cannot be turned into a token."""
    pass


class CredentialNotFoundError(CredentialError):
    """Raised when a credential id does not exist."""
    pass


class CredentialResolver:
    """
    Resolve credentials to tokens and clients.

    A single HTTP connection pool is shared by every client the resolver
    hands out; call ``close`` on shutdown.
    """

    def __init__(self,
                 store: RunnerStore,
                 cipher: CredentialCipher,
                 api_url: str = "https://api.github.com",
                 web_url: str = "https://github.com",
                 timeout: float = 30.0,
                 http: Optional[httpx.AsyncClient] = None) -> None:
        self.store = store
        self.cipher = cipher
        self.api_url = api_url
        self.web_url = web_url
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._app_auth: Optional[Tuple[str, GitHubAppAuth]] = None
        self._clients: Dict[Tuple[str, str], GitHubClient] = {}
        self.logger = structlog.get_logger().bind(component="credential_resolver")

    async def get(self, credential_id: str) -> Credential:
        credential = await self.store.get_credential(credential_id)
        if credential is None:
            raise CredentialNotFoundError(f"Credential not found: {credential_id}")
        return credential

    async def resolve_token(self, credential: Credential) -> str:
        """
        Return a usable bearer token for ``credential``.

        Raises:
            CredentialError: If the token cannot be decrypted or minted
        """
        try:
            if credential.type is CredentialType.PAT:
                return self.cipher.decrypt(credential.encrypted_token)

            if credential.installation_id is None:
                raise CredentialError(f"Credential {credential.name} has no installation id")
            app_auth = await self._get_app_auth()
            return await app_auth.get_installation_token(credential.installation_id)
        except (SecurityError, GitHubAppError) as e:
            raise CredentialError(f"Credential {credential.name}: {e}") from e

    async def client_for(self, credential_id: str) -> GitHubClient:
        """Build a GitHub client scoped to the credential's target."""
        credential = await self.get(credential_id)
        return await self.client_for_credential(credential)

    async def client_for_credential(self, credential: Credential) -> GitHubClient:
        token = await self.resolve_token(credential)
        key = (credential.id, token)
        client = self._clients.get(key)
        if client is None:
            # Drop clients holding an older token for the same credential
            self._clients = {k: v for k, v in self._clients.items() if k[0] != credential.id}
            client = GitHubClient(
                token=token,
                scope=credential.scope,
                target=credential.target,
                api_url=self.api_url,
                web_url=self.web_url,
                http=self._http,
            )
            self._clients[key] = client
        return client

    async def webhook_secret_for(self, credential: Credential) -> Optional[str]:
        """Per-credential webhook secret, if one is configured and active."""
        config = await self.store.get_webhook_config(credential.id)
        if config is None or not config.active:
            return None
        return self.cipher.decrypt(config.encrypted_secret)

    async def app_webhook_secret(self) -> Optional[str]:
        app = await self.store.get_github_app()
        if app is None or not app.encrypted_webhook_secret:
            return None
        return self.cipher.decrypt(app.encrypted_webhook_secret)

    async def _get_app_auth(self) -> GitHubAppAuth:
        app = await self.store.get_github_app()
        if app is None:
            raise CredentialError("GitHub App is not configured")
        if self._app_auth is None or self._app_auth[0] != app.issuer:
            self._app_auth = (
                app.issuer,
                GitHubAppAuth(
                    issuer=app.issuer,
                    private_key=self.cipher.decrypt(app.encrypted_private_key),
                    api_url=self.api_url,
                    http=self._http,
                ),
            )
        return self._app_auth[1]

    async def close(self) -> None:
        self._clients.clear()
        if self._owns_http:
            await self._http.aclose()
