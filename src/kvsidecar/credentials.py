"""Credential loading for the sidecar.

Two credential sources are supported:
- Managed identity (default): system-assigned, or user-assigned when
  ``userAssignedIdentityID`` is set in the auth config file.
- Service principal: ``aadClientId`` + ``aadClientSecret`` read from the
  Azure cloud provider config file (``azure.json``) mounted into the pod.

SECURITY: the auth config file is read once at startup; its contents are
never logged or written anywhere. File size is capped before reading.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import yaml
from azure.core.credentials import TokenCredential
from azure.identity import AzureAuthorityHosts, ClientSecretCredential, ManagedIdentityCredential
from pydantic import BaseModel, Field, ValidationError

from .config import MAX_AUTH_CONFIG_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)


class AuthConfigError(Exception):
    """Raised when the auth config file cannot be loaded or validated."""

    pass


@dataclass(frozen=True)
class CloudEnvironment:
    """Endpoints and token scopes of one Azure cloud."""

    name: str
    authority_host: str
    resource_manager_url: str
    management_scope: str
    keyvault_scope: str


AZURE_PUBLIC_CLOUD = CloudEnvironment(
    name="AzurePublicCloud",
    authority_host=AzureAuthorityHosts.AZURE_PUBLIC_CLOUD,
    resource_manager_url="https://management.azure.com",
    management_scope="https://management.azure.com/.default",
    keyvault_scope="https://vault.azure.net/.default",
)

AZURE_CHINA_CLOUD = CloudEnvironment(
    name="AzureChinaCloud",
    authority_host=AzureAuthorityHosts.AZURE_CHINA,
    resource_manager_url="https://management.chinacloudapi.cn",
    management_scope="https://management.chinacloudapi.cn/.default",
    keyvault_scope="https://vault.azure.cn/.default",
)

AZURE_US_GOVERNMENT_CLOUD = CloudEnvironment(
    name="AzureUSGovernmentCloud",
    authority_host=AzureAuthorityHosts.AZURE_GOVERNMENT,
    resource_manager_url="https://management.usgovcloudapi.net",
    management_scope="https://management.usgovcloudapi.net/.default",
    keyvault_scope="https://vault.usgovcloudapi.net/.default",
)

CLOUD_ENVIRONMENTS: dict[str, CloudEnvironment] = {
    env.name.lower(): env
    for env in (AZURE_PUBLIC_CLOUD, AZURE_CHINA_CLOUD, AZURE_US_GOVERNMENT_CLOUD)
}


def get_cloud_environment(name: str | None) -> CloudEnvironment:
    """Look up a cloud by its azure.json name (case-insensitive).

    An empty name selects the public cloud.

    Raises:
        AuthConfigError: If the cloud name is not recognized.
    """
    if not name:
        return AZURE_PUBLIC_CLOUD
    env = CLOUD_ENVIRONMENTS.get(name.lower())
    if env is None:
        valid = [e.name for e in CLOUD_ENVIRONMENTS.values()]
        raise AuthConfigError(f"Unknown cloud '{name}'. Valid clouds: {valid}")
    return env


class AzureAuthConfig(BaseModel):
    """Subset of the Azure cloud provider config (azure.json) used here."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    cloud: str | None = None
    tenant_id: str | None = Field(None, alias="tenantId")
    subscription_id: str | None = Field(None, alias="subscriptionId")
    resource_group: str | None = Field(None, alias="resourceGroup")
    aad_client_id: str | None = Field(None, alias="aadClientId")
    aad_client_secret: str | None = Field(None, alias="aadClientSecret", repr=False)
    use_managed_identity_extension: bool = Field(False, alias="useManagedIdentityExtension")
    user_assigned_identity_id: str | None = Field(None, alias="userAssignedIdentityID")

    @property
    def uses_service_principal(self) -> bool:
        """True if a client secret should be used instead of managed identity."""
        if self.use_managed_identity_extension:
            return False
        return bool(self.aad_client_id and self.aad_client_secret)

    @property
    def environment(self) -> CloudEnvironment:
        return get_cloud_environment(self.cloud)


def load_auth_config(path: Path) -> AzureAuthConfig:
    """Load and validate the auth config file.

    ``.yaml``/``.yml`` files are parsed as YAML; anything else as JSON,
    which is what the Azure cloud provider writes.

    Raises:
        AuthConfigError: If the file cannot be read, parsed, or validated.
    """
    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise AuthConfigError(f"Failed to stat auth config {path}: {e}") from e

    if file_size > MAX_AUTH_CONFIG_FILE_SIZE_BYTES:
        raise AuthConfigError(
            f"Auth config exceeds maximum size of {MAX_AUTH_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise AuthConfigError(f"Failed to read auth config {path}: {e}") from e

    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            raw_data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise AuthConfigError(f"Invalid YAML in {path}: {e}") from e
    else:
        try:
            raw_data = json.loads(content)
        except json.JSONDecodeError as e:
            raise AuthConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise AuthConfigError(f"Auth config must contain a mapping: {path}")

    try:
        auth_config = AzureAuthConfig.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise AuthConfigError(f"Validation failed for {path}:\n{error_list}") from e

    # Fail at startup rather than on the first token request
    get_cloud_environment(auth_config.cloud)

    logger.info("Loaded auth config from %s", path)
    return auth_config


def build_credential(auth_config: AzureAuthConfig | None) -> TokenCredential:
    """Create the Azure credential described by the auth config.

    Args:
        auth_config: Parsed auth config, or None to use the
            system-assigned managed identity.

    Returns:
        A TokenCredential for the TokenProvider.

    Raises:
        AuthConfigError: If a service principal is configured without a tenant.
    """
    if auth_config is None:
        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()

    if auth_config.uses_service_principal:
        if not auth_config.tenant_id:
            raise AuthConfigError("tenantId is required when aadClientSecret is set")
        logger.info(
            "Using service principal",
            extra={"client_id": _redact(auth_config.aad_client_id or "")},
        )
        return ClientSecretCredential(
            tenant_id=auth_config.tenant_id,
            client_id=auth_config.aad_client_id,
            client_secret=auth_config.aad_client_secret,
            authority=auth_config.environment.authority_host,
        )

    if auth_config.user_assigned_identity_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": _redact(auth_config.user_assigned_identity_id)},
        )
        return ManagedIdentityCredential(client_id=auth_config.user_assigned_identity_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def _redact(client_id: str) -> str:
    return client_id[:8] + "..." if len(client_id) > 8 else client_id
