"""Management-plane lookup of a Key Vault's data-plane URI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.keyvault import KeyVaultManagementClient

from .credentials import AZURE_PUBLIC_CLOUD, CloudEnvironment
from .errors import ResolutionError, is_transient_azure_error
from .tokens import SingleTokenCredential, Token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VaultEndpoint:
    """Resolved data-plane base URI of a vault."""

    vault_name: str
    uri: str


class VaultResolver:
    """Resolves (subscription, resource group, vault name) to a vault URI.

    Stateless: every call goes to Azure Resource Manager, so a vault that
    is moved or recreated is picked up on the next cycle.
    """

    def __init__(self, cloud: CloudEnvironment = AZURE_PUBLIC_CLOUD) -> None:
        self._cloud = cloud

    def resolve(
        self,
        subscription_id: str,
        resource_group: str,
        vault_name: str,
        token: Token,
    ) -> VaultEndpoint:
        """Look up the vault URI.

        Args:
            subscription_id: Subscription containing the vault.
            resource_group: Resource group containing the vault.
            vault_name: Key Vault name.
            token: Management-plane bearer token.

        Returns:
            The vault endpoint.

        Raises:
            ResolutionError: If the vault cannot be found or ARM fails.
        """
        try:
            with KeyVaultManagementClient(
                credential=SingleTokenCredential(token),
                subscription_id=subscription_id,
                base_url=self._cloud.resource_manager_url,
                credential_scopes=[self._cloud.management_scope],
            ) as client:
                vault = client.vaults.get(resource_group, vault_name)
        except ResourceNotFoundError as e:
            raise ResolutionError(
                f"key vault '{vault_name}' not found in resource group '{resource_group}'"
            ) from e
        except AzureError as e:
            raise ResolutionError(
                f"failed to get key vault '{vault_name}': {e}",
                transient=is_transient_azure_error(e),
            ) from e

        vault_uri = vault.properties.vault_uri if vault.properties else None
        if not vault_uri:
            raise ResolutionError(f"key vault '{vault_name}' has no vault URI")

        logger.debug("Resolved key vault", extra={"vault_name": vault_name, "vault_uri": vault_uri})
        return VaultEndpoint(vault_name=vault_name, uri=vault_uri)
