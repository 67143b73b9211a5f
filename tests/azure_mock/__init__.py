"""Azure API Mock for Integration Testing.

This module provides a mock implementation of the Key Vault management and
data plane APIs that enables integration testing without Azure connectivity.

Key Features:
- In-memory vaults and versioned secrets
- Token recording to verify which token reached which plane
- Error injection for outage, throttling and denial scenarios
- Credential simulation with failure injection

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext(secrets={"db-password": "s3cr3t"}) as ctx:
        reconciler = Reconciler(config, TokenProvider(ctx.credential))
        await reconciler.reconcile_once()

        assert ctx.state.get_secret_calls == 1
"""

from .context import MockAzureContext
from .credential import MockCredential, create_mock_credential
from .vault import (
    MockKeyVaultManagementClient,
    MockSecretClient,
    MockVaultState,
)

__all__ = [
    "MockAzureContext",
    "MockCredential",
    "MockKeyVaultManagementClient",
    "MockSecretClient",
    "MockVaultState",
    "create_mock_credential",
]
