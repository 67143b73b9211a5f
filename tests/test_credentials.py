"""Tests for auth config loading and credential selection."""

from __future__ import annotations

import json
from pathlib import Path
from unittest import mock

import pytest

from kvsidecar.config import MAX_AUTH_CONFIG_FILE_SIZE_BYTES
from kvsidecar.credentials import (
    AZURE_CHINA_CLOUD,
    AZURE_PUBLIC_CLOUD,
    AZURE_US_GOVERNMENT_CLOUD,
    AuthConfigError,
    AzureAuthConfig,
    build_credential,
    get_cloud_environment,
    load_auth_config,
)

AZURE_JSON = {
    "cloud": "AzurePublicCloud",
    "tenantId": "tenant-0000",
    "subscriptionId": "00000000-0000-0000-0000-000000000001",
    "resourceGroup": "rg-cluster",
    "aadClientId": "client-00000000",
    "aadClientSecret": "super-secret",
    "location": "westeurope",
    "vnetName": "ignored",
}


class TestLoadAuthConfig:
    """Tests for load_auth_config."""

    def test_load_json(self, tmp_path: Path) -> None:
        """Test that an azure.json file is parsed with camelCase aliases."""
        path = tmp_path / "azure.json"
        path.write_text(json.dumps(AZURE_JSON, indent="\t"))

        auth_config = load_auth_config(path)

        assert auth_config.tenant_id == "tenant-0000"
        assert auth_config.subscription_id == "00000000-0000-0000-0000-000000000001"
        assert auth_config.resource_group == "rg-cluster"
        assert auth_config.aad_client_id == "client-00000000"
        assert auth_config.uses_service_principal is True
        assert auth_config.environment == AZURE_PUBLIC_CLOUD

    def test_load_yaml(self, tmp_path: Path) -> None:
        """Test that YAML auth configs are supported too."""
        path = tmp_path / "azure.yaml"
        path.write_text(
            "cloud: AzureChinaCloud\n"
            "useManagedIdentityExtension: true\n"
            "userAssignedIdentityID: identity-1234\n"
        )

        auth_config = load_auth_config(path)

        assert auth_config.uses_service_principal is False
        assert auth_config.user_assigned_identity_id == "identity-1234"
        assert auth_config.environment == AZURE_CHINA_CLOUD

    def test_secret_not_in_repr(self) -> None:
        """Test that the client secret does not leak through repr()."""
        auth_config = AzureAuthConfig.model_validate(AZURE_JSON)

        assert "super-secret" not in repr(auth_config)

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "azure.json"
        path.write_text("{not json")

        with pytest.raises(AuthConfigError) as exc_info:
            load_auth_config(path)

        assert "Invalid JSON" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "azure.yml"
        path.write_text("cloud: [unclosed\n")

        with pytest.raises(AuthConfigError) as exc_info:
            load_auth_config(path)

        assert "Invalid YAML" in str(exc_info.value)

    def test_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "azure.json"
        path.write_text("[1, 2, 3]")

        with pytest.raises(AuthConfigError) as exc_info:
            load_auth_config(path)

        assert "must contain a mapping" in str(exc_info.value)

    def test_validation_error(self, tmp_path: Path) -> None:
        """Test that wrongly typed fields are reported with their location."""
        path = tmp_path / "azure.json"
        path.write_text(json.dumps({"useManagedIdentityExtension": "maybe"}))

        with pytest.raises(AuthConfigError) as exc_info:
            load_auth_config(path)

        assert "useManagedIdentityExtension" in str(exc_info.value)

    def test_unknown_cloud(self, tmp_path: Path) -> None:
        path = tmp_path / "azure.json"
        path.write_text(json.dumps({"cloud": "AzureMoonCloud"}))

        with pytest.raises(AuthConfigError) as exc_info:
            load_auth_config(path)

        assert "Unknown cloud" in str(exc_info.value)

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that the size cap is enforced before reading."""
        path = tmp_path / "azure.json"
        path.write_text(" " * (MAX_AUTH_CONFIG_FILE_SIZE_BYTES + 1))

        with pytest.raises(AuthConfigError) as exc_info:
            load_auth_config(path)

        assert "exceeds maximum size" in str(exc_info.value)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(AuthConfigError):
            load_auth_config(tmp_path / "missing.json")


class TestCloudEnvironment:
    """Tests for cloud lookup."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            (None, AZURE_PUBLIC_CLOUD),
            ("", AZURE_PUBLIC_CLOUD),
            ("azurepubliccloud", AZURE_PUBLIC_CLOUD),
            ("AzureChinaCloud", AZURE_CHINA_CLOUD),
            ("AzureUSGovernmentCloud", AZURE_US_GOVERNMENT_CLOUD),
        ],
    )
    def test_lookup(self, name: str | None, expected: object) -> None:
        assert get_cloud_environment(name) == expected

    def test_scopes_differ_per_cloud(self) -> None:
        assert AZURE_CHINA_CLOUD.keyvault_scope == "https://vault.azure.cn/.default"
        assert AZURE_US_GOVERNMENT_CLOUD.management_scope.startswith(
            "https://management.usgovcloudapi.net"
        )


class TestBuildCredential:
    """Tests for credential selection."""

    @mock.patch("kvsidecar.credentials.ManagedIdentityCredential")
    def test_system_assigned_by_default(self, mock_credential_class: mock.Mock) -> None:
        """Test that system-assigned MI is used without an auth config."""
        result = build_credential(None)

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential_class.return_value

    @mock.patch("kvsidecar.credentials.ManagedIdentityCredential")
    def test_user_assigned_identity(self, mock_credential_class: mock.Mock) -> None:
        auth_config = AzureAuthConfig.model_validate(
            {"useManagedIdentityExtension": True, "userAssignedIdentityID": "client-1234"}
        )

        build_credential(auth_config)

        mock_credential_class.assert_called_once_with(client_id="client-1234")

    @mock.patch("kvsidecar.credentials.ManagedIdentityCredential")
    @mock.patch("kvsidecar.credentials.ClientSecretCredential")
    def test_managed_identity_flag_wins_over_secret(
        self, mock_secret_class: mock.Mock, mock_mi_class: mock.Mock
    ) -> None:
        """Test that useManagedIdentityExtension ignores a leftover client secret."""
        auth_config = AzureAuthConfig.model_validate(
            {**AZURE_JSON, "useManagedIdentityExtension": True}
        )

        build_credential(auth_config)

        mock_secret_class.assert_not_called()
        mock_mi_class.assert_called_once_with()

    @mock.patch("kvsidecar.credentials.ClientSecretCredential")
    def test_service_principal(self, mock_credential_class: mock.Mock) -> None:
        auth_config = AzureAuthConfig.model_validate({**AZURE_JSON, "cloud": "AzureChinaCloud"})

        build_credential(auth_config)

        mock_credential_class.assert_called_once_with(
            tenant_id="tenant-0000",
            client_id="client-00000000",
            client_secret="super-secret",
            authority=AZURE_CHINA_CLOUD.authority_host,
        )

    def test_service_principal_requires_tenant(self) -> None:
        auth_config = AzureAuthConfig.model_validate({**AZURE_JSON, "tenantId": None})

        with pytest.raises(AuthConfigError) as exc_info:
            build_credential(auth_config)

        assert "tenantId" in str(exc_info.value)
