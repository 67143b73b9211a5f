"""Data-plane read of a secret value."""

from __future__ import annotations

import logging

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.keyvault.secrets import SecretClient

from .errors import (
    FetchError,
    SecretAccessDeniedError,
    SecretNotFoundError,
    is_transient_azure_error,
)
from .resolver import VaultEndpoint
from .tokens import SingleTokenCredential, Token

logger = logging.getLogger(__name__)

SECRET_ENCODING = "utf-8"


class SecretReader:
    """Fetches a secret's current value from a vault."""

    def fetch(
        self,
        endpoint: VaultEndpoint,
        secret_name: str,
        token: Token,
        version: str | None = None,
    ) -> bytes:
        """Fetch a secret value as bytes.

        Args:
            endpoint: Resolved vault endpoint.
            secret_name: Name of the secret.
            token: Data-plane bearer token.
            version: Specific version to read, or None for the latest.

        Returns:
            The secret value encoded as UTF-8.

        Raises:
            SecretNotFoundError: If the secret or version does not exist.
            SecretAccessDeniedError: If the identity may not read the secret.
            FetchError: For any other failure, including a secret without a value.
        """
        try:
            with SecretClient(
                vault_url=endpoint.uri,
                credential=SingleTokenCredential(token),
            ) as client:
                secret = client.get_secret(secret_name, version)
        except ResourceNotFoundError as e:
            raise SecretNotFoundError(
                f"secret '{secret_name}' not found in {endpoint.uri}"
            ) from e
        except ClientAuthenticationError as e:
            raise SecretAccessDeniedError(
                f"not authorized to read secret '{secret_name}': {e}"
            ) from e
        except HttpResponseError as e:
            if e.status_code == 403:
                raise SecretAccessDeniedError(
                    f"access to secret '{secret_name}' denied: {e}"
                ) from e
            raise FetchError(
                f"failed to get secret '{secret_name}': {e}",
                transient=is_transient_azure_error(e),
            ) from e
        except AzureError as e:
            raise FetchError(
                f"failed to get secret '{secret_name}': {e}",
                transient=is_transient_azure_error(e),
            ) from e

        if secret.value is None:
            raise FetchError(f"secret '{secret_name}' has no value")

        return secret.value.encode(SECRET_ENCODING)
