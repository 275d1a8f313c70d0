"""Credentials for the trust boundary with the external calculator.

Dispatch attaches a token to the outbound payload and ingestion verifies
the token presented on the callback. Both sides go through the small
interfaces below; the default implementation is a single static shared
secret compared by exact match.
"""

from __future__ import annotations

import hmac
from typing import Optional, Protocol

from .config import settings


class CredentialProvider(Protocol):
    def token_for(self, request_id: int) -> str:
        """Return the token to send along with a dispatch for `request_id`."""
        ...


class CredentialVerifier(Protocol):
    def verify(self, token: Optional[str], request_id: int) -> bool:
        """Return True when `token` authorizes a result for `request_id`."""
        ...


class SharedSecretCredentials:
    """One static secret used for both directions.

    `request_id` is ignored; it is part of the interface so a scoped
    token scheme can replace this class without touching callers.
    """
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("shared secret must not be empty")
        self._secret = secret

    def token_for(self, request_id: int) -> str:
        return self._secret

    def verify(self, token: Optional[str], request_id: int) -> bool:
        if not isinstance(token, str):
            return False
        return hmac.compare_digest(token.encode("utf-8"), self._secret.encode("utf-8"))


_credentials: Optional[SharedSecretCredentials] = None


def get_credentials() -> SharedSecretCredentials:
    """Return the process-wide credentials built from settings."""
    global _credentials
    if _credentials is None:
        _credentials = SharedSecretCredentials(settings.CHRONO_AUTH_TOKEN)
    return _credentials
