"""Configuration management with validation.

The sync target is validated once at startup, before any remote call is
made. Every problem is collected and reported together so an operator can
fix a broken deployment manifest in one pass.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class FailurePolicy(str, Enum):
    """What the sidecar does when a reconciliation cycle fails."""

    EXIT = "exit"
    CONTINUE = "continue"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 60
MIN_RECONCILE_INTERVAL_SECONDS = 1
MAX_RECONCILE_INTERVAL_SECONDS = 86400

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10
RETRY_BACKOFF_BASE_SECONDS = 2.0

DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 10

# Owner read/write only, applied on create and on overwrite
DEFAULT_FILE_MODE = 0o600

MAX_AUTH_CONFIG_FILE_SIZE_BYTES = 64 * 1024
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# Input validation patterns (Azure naming rules)
VALID_VAULT_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9-]{1,22}[a-zA-Z0-9]$"
VALID_SECRET_NAME_PATTERN = r"^[0-9a-zA-Z-]{1,127}$"
VALID_SECRET_VERSION_PATTERN = r"^[0-9a-fA-F]{32}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]+$"


@dataclass(frozen=True)
class Config:
    """Sidecar configuration: what to sync and how often.

    Built once at startup and passed explicitly into the reconciler.
    All fields are validated at construction time; an invalid configuration
    raises ConfigurationError immediately rather than failing mid-cycle.
    """

    # Sync target
    vault_name: str
    secret_name: str
    resource_group: str
    subscription_id: str
    # None when DIR was not given
    directory: Path | None

    # Pin a specific secret version (default: latest)
    secret_version: str | None = None

    # Credentials source; None selects the managed identity
    auth_config_path: Path | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    shutdown_timeout_seconds: int = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS

    # Failure handling
    on_error: FailurePolicy = FailurePolicy.EXIT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS

    file_mode: int = DEFAULT_FILE_MODE

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.vault_name:
            errors.append("VAULT_NAME is unset")
        elif not re.match(VALID_VAULT_NAME_PATTERN, self.vault_name):
            errors.append(f"VAULT_NAME is not a valid Key Vault name: {self.vault_name}")

        if not self.secret_name:
            errors.append("SECRET_NAME is unset")
        elif not re.match(VALID_SECRET_NAME_PATTERN, self.secret_name):
            # Also keeps the output file inside the target directory
            errors.append(f"SECRET_NAME is not a valid secret name: {self.secret_name}")

        if self.secret_version and not re.match(
            VALID_SECRET_VERSION_PATTERN, self.secret_version
        ):
            errors.append(f"SECRET_VERSION must be a 32 character hex id: {self.secret_version}")

        if not self.resource_group:
            errors.append("RESOURCE_GROUP is unset")
        elif len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group):
            errors.append(f"RESOURCE_GROUP contains invalid characters: {self.resource_group}")

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is unset")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.directory is None:
            errors.append("DIR is unset")
        elif not self.directory.is_dir():
            errors.append(f"DIR does not exist or is not a directory: {self.directory}")

        if self.auth_config_path is not None and not self.auth_config_path.is_file():
            errors.append(f"AZURE_AUTH_CONFIG file does not exist: {self.auth_config_path}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.shutdown_timeout_seconds < 0:
            errors.append("SHUTDOWN_TIMEOUT must not be negative")

        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")

        # SECURITY: never allow group/world access to the secret file
        if self.file_mode & 0o077:
            errors.append(f"file mode {oct(self.file_mode)} grants group or world access")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def target_path(self) -> Path:
        """Path of the local copy of the secret."""
        assert self.directory is not None
        return self.directory / self.secret_name
