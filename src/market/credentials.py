"""Credential provider contract for marketplace access tokens.

Token issuance and refresh live in a separate service; this module only
defines what the search adapter expects from it.
"""

from typing import Optional, Protocol

from src.config import settings
from src.errors import AuthError


class CredentialProvider(Protocol):
    """Supplies bearer tokens for marketplace API calls."""

    async def get_access_token(self, user_id: Optional[str] = None) -> str:
        """Return a valid token or raise AuthError."""
        ...


class StaticCredentialProvider:
    """Serves a single pre-issued application token from settings."""

    def __init__(self, token: Optional[str] = None):
        self.token = token if token is not None else settings.marketplace_access_token

    async def get_access_token(self, user_id: Optional[str] = None) -> str:
        if not self.token:
            raise AuthError("No marketplace access token configured; reconnect the account")
        return self.token
