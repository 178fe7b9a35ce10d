"""
GitHub App authentication.

Apps authenticate with a short-lived RS256 JWT and exchange it for
installation tokens, which are cached until shortly before they expire.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import httpx
import jwt
import structlog

from .github_client import API_VERSION

JWT_BACKDATE_SECONDS = 60
JWT_LIFETIME_SECONDS = 600
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)


class GitHubAppError(Exception):
    """Raised when an installation token cannot be obtained."""
    pass


def generate_app_jwt(private_key: str, issuer: str, now: Optional[datetime] = None) -> str:
    """
    Create the JWT a GitHub App uses to authenticate as itself.

    The issued-at time is backdated to tolerate clock drift.

    Args:
        private_key: PEM encoded RSA private key
        issuer: App client id (or numeric app id)
        now: Override of the current time

    Returns:
        Encoded RS256 JWT
    """
    now = now or datetime.now(timezone.utc)
    issued_at = int(now.timestamp()) - JWT_BACKDATE_SECONDS
    payload = {
        "iat": issued_at,
        "exp": int(now.timestamp()) + JWT_LIFETIME_SECONDS,
        "iss": issuer,
    }
    return jwt.encode(payload, private_key, algorithm="RS256")


class GitHubAppAuth:
    """
    Installation token provider for one GitHub App.

    Tokens are cached per installation and refreshed once they are within
    five minutes of expiry.
    """

    def __init__(self,
                 issuer: str,
                 private_key: str,
                 api_url: str = "https://api.github.com",
                 http: Optional[httpx.AsyncClient] = None) -> None:
        self.issuer = issuer
        self._private_key = private_key
        self.api_url = api_url.rstrip("/")
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._tokens: Dict[int, Tuple[str, datetime]] = {}
        self.logger = structlog.get_logger().bind(component="github_app", issuer=issuer)

    async def get_installation_token(self, installation_id: int) -> str:
        """
        Return a valid installation token, minting one if needed.

        Raises:
            GitHubAppError: If GitHub refuses the exchange
        """
        cached = self._tokens.get(installation_id)
        now = datetime.now(timezone.utc)
        if cached and cached[1] - TOKEN_REFRESH_BUFFER > now:
            return cached[0]

        token, expires_at = await self._create_installation_token(installation_id)
        self._tokens[installation_id] = (token, expires_at)
        self.logger.info(
            "Minted installation token",
            installation_id=installation_id,
            expires_at=expires_at.isoformat(),
        )
        return token

    def invalidate(self, installation_id: Optional[int] = None) -> None:
        if installation_id is None:
            self._tokens.clear()
        else:
            self._tokens.pop(installation_id, None)

    async def _create_installation_token(self, installation_id: int) -> Tuple[str, datetime]:
        headers = {
            "Authorization": f"Bearer {generate_app_jwt(self._private_key, self.issuer)}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        try:
            response = await self._http.post(
                f"{self.api_url}/app/installations/{installation_id}/access_tokens",
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise GitHubAppError(f"Installation token request failed: {e}") from e

        if response.status_code != 201:
            raise GitHubAppError(
                f"Installation token request returned {response.status_code}: {response.text[:200]}"
            )
        data: Dict[str, Any] = response.json()
        expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
        return data["token"], expires_at

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
