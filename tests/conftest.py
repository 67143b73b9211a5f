"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

import pytest  # noqa: E402

from kvsidecar.config import Config, FailurePolicy  # noqa: E402

TEST_SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"


@pytest.fixture
def secrets_dir(tmp_path: Path) -> Path:
    """Empty directory shared with the (imaginary) primary workload."""
    directory = tmp_path / "secrets"
    directory.mkdir()
    return directory


@pytest.fixture
def config(secrets_dir: Path) -> Config:
    """Valid configuration syncing db-password from kv-test."""
    return Config(
        vault_name="kv-test",
        secret_name="db-password",
        resource_group="rg-test",
        subscription_id=TEST_SUBSCRIPTION_ID,
        directory=secrets_dir,
        reconcile_interval_seconds=60,
        on_error=FailurePolicy.EXIT,
        retry_backoff_base_seconds=0,
    )
