"""Bearer token acquisition per audience.

The reconciler asks for a token for each audience on every cycle. The
provider keeps the last token per audience and only goes back to Entra ID
when that token is about to expire, so tight reconcile intervals do not
hammer the token endpoint.

A CredentialUnavailableError counts as transient, so a sidecar that starts
before the managed identity endpoint is reachable retries instead of
exiting. Rejected credentials stay permanent.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from azure.core.credentials import AccessToken, TokenCredential
from azure.core.exceptions import AzureError
from azure.identity import CredentialUnavailableError

from .credentials import AZURE_PUBLIC_CLOUD, CloudEnvironment
from .errors import AuthenticationError, is_transient_azure_error

logger = logging.getLogger(__name__)

# Re-acquire tokens this long before they expire
TOKEN_REFRESH_SKEW_SECONDS = 300


class Audience(str, Enum):
    """API surface a token is scoped to."""

    MANAGEMENT = "management"
    DATA = "data"


@dataclass(frozen=True)
class Token:
    """A bearer token for one audience."""

    value: str = field(repr=False)
    audience: Audience
    expires_on: int

    def is_expired(self, skew_seconds: int = 0, now: float | None = None) -> bool:
        """Check whether the token expires within ``skew_seconds``."""
        current = time.time() if now is None else now
        return self.expires_on - skew_seconds <= current


class SingleTokenCredential:
    """TokenCredential that hands out one pre-acquired token.

    Lets the reconciler decide which token an SDK client uses for a single
    call instead of giving the client the underlying credential.
    """

    def __init__(self, token: Token) -> None:
        self._token = token

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        return AccessToken(self._token.value, self._token.expires_on)

    def close(self) -> None:
        pass

    def __enter__(self) -> SingleTokenCredential:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class TokenProvider:
    """Exchanges a credential for audience-scoped bearer tokens."""

    def __init__(
        self,
        credential: TokenCredential,
        cloud: CloudEnvironment = AZURE_PUBLIC_CLOUD,
        refresh_skew_seconds: int = TOKEN_REFRESH_SKEW_SECONDS,
    ) -> None:
        self._credential = credential
        self._cloud = cloud
        self._refresh_skew_seconds = refresh_skew_seconds
        self._cache: dict[Audience, Token] = {}

    @property
    def cloud(self) -> CloudEnvironment:
        return self._cloud

    def scope_for(self, audience: Audience) -> str:
        """Map an audience to the OAuth scope of the configured cloud."""
        match audience:
            case Audience.MANAGEMENT:
                return self._cloud.management_scope
            case Audience.DATA:
                return self._cloud.keyvault_scope
        raise ValueError(f"Unknown audience: {audience}")

    def acquire(self, audience: Audience) -> Token:
        """Return a valid token for ``audience``.

        Raises:
            AuthenticationError: If the credential fails to issue a token.
        """
        cached = self._cache.get(audience)
        if cached is not None and not cached.is_expired(self._refresh_skew_seconds):
            return cached

        scope = self.scope_for(audience)
        try:
            access_token = self._credential.get_token(scope)
        except AzureError as e:
            self._cache.pop(audience, None)
            raise AuthenticationError(
                f"failed to get {audience.value} token: {e}",
                transient=is_transient_azure_error(e)
                or isinstance(e, CredentialUnavailableError),
            ) from e

        token = Token(
            value=access_token.token,
            audience=audience,
            expires_on=access_token.expires_on,
        )
        self._cache[audience] = token
        logger.debug(
            "Acquired token",
            extra={"audience": audience.value, "expires_on": token.expires_on},
        )
        return token

    def invalidate(self, audience: Audience | None = None) -> None:
        """Drop cached tokens so the next acquire goes to Entra ID."""
        if audience is None:
            self._cache.clear()
        else:
            self._cache.pop(audience, None)
