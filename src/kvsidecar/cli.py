"""Command line entry point for the Key Vault sidecar (kvsidecar).

Every option falls back to an environment variable so the sidecar can be
configured from a pod spec without a command line.

Usage:
    kvsidecar --vault-name my-vault --secret-name db-password --dir /secrets
    VAULT_NAME=my-vault SECRET_NAME=db-password DIR=/secrets kvsidecar
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click

from .config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RECONCILE_INTERVAL_SECONDS,
    DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    Config,
    ConfigurationError,
    FailurePolicy,
)
from .credentials import AuthConfigError, AzureAuthConfig, load_auth_config
from .main import main, setup_logging

PROGRAM = "kvsidecar"
VERSION = "0.1.0"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def show_usage(ctx: click.Context, message: str) -> NoReturn:
    """Print usage followed by an error and exit 1."""
    click.echo(ctx.get_help())
    click.echo(f"\n[error] {message}")
    ctx.exit(1)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=VERSION, prog_name=PROGRAM)
@click.option(
    "--vault-name", envvar="VAULT_NAME", default="", help="Name of Azure Key Vault instance."
)
@click.option(
    "--secret-name", envvar="SECRET_NAME", default="", help="Name of Azure Key Vault secret."
)
@click.option(
    "--secret-version",
    envvar="SECRET_VERSION",
    default=None,
    help="Version of the secret to sync (default: latest).",
)
@click.option(
    "--resource-group",
    envvar="RESOURCE_GROUP",
    default="",
    help="Resource group of the vault (default: resourceGroup from the auth config).",
)
@click.option(
    "--subscription-id",
    envvar="AZURE_SUBSCRIPTION_ID",
    default="",
    help="Subscription of the vault (default: subscriptionId from the auth config).",
)
@click.option("--dir", "directory", envvar="DIR", default="", help="Directory path to write data.")
@click.option(
    "--auth-config",
    "auth_config_path",
    envvar="AZURE_AUTH_CONFIG",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to azure.json. Without it the managed identity is used.",
)
@click.option(
    "--interval",
    envvar="RECONCILE_INTERVAL",
    type=int,
    default=DEFAULT_RECONCILE_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between reconciliation cycles.",
)
@click.option(
    "--on-error",
    envvar="ON_ERROR",
    type=click.Choice([p.value for p in FailurePolicy]),
    default=FailurePolicy.EXIT.value,
    show_default=True,
    help="Exit the process or continue with the next cycle after a failed cycle.",
)
@click.option(
    "--max-retries",
    envvar="MAX_RETRIES",
    type=int,
    default=DEFAULT_MAX_RETRIES,
    show_default=True,
    help="Retries per remote call for transient failures.",
)
@click.option(
    "--shutdown-timeout",
    envvar="SHUTDOWN_TIMEOUT",
    type=int,
    default=DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    show_default=True,
    help="Seconds to wait for an in-flight cycle after SIGTERM.",
)
@click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.pass_context
def cli(
    ctx: click.Context,
    vault_name: str,
    secret_name: str,
    secret_version: str | None,
    resource_group: str,
    subscription_id: str,
    directory: str,
    auth_config_path: Path | None,
    interval: int,
    on_error: str,
    max_retries: int,
    shutdown_timeout: int,
    log_level: str,
) -> None:
    """Keep a local file in sync with an Azure Key Vault secret."""
    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    auth_config: AzureAuthConfig | None = None
    if auth_config_path is not None and auth_config_path.is_file():
        try:
            auth_config = load_auth_config(auth_config_path)
        except AuthConfigError as e:
            show_usage(ctx, f"invalid config, {e}")

    # Flags win over the auth config file
    if auth_config is not None:
        subscription_id = subscription_id or auth_config.subscription_id or ""
        resource_group = resource_group or auth_config.resource_group or ""

    try:
        config = Config(
            vault_name=vault_name,
            secret_name=secret_name,
            resource_group=resource_group,
            subscription_id=subscription_id,
            directory=Path(directory) if directory else None,
            secret_version=secret_version or None,
            auth_config_path=auth_config_path,
            reconcile_interval_seconds=interval,
            shutdown_timeout_seconds=shutdown_timeout,
            on_error=FailurePolicy(on_error),
            max_retries=max_retries,
        )
    except ConfigurationError as e:
        show_usage(ctx, f"invalid config, {e}")

    logger.info(
        f"Starting the {PROGRAM}, {VERSION}",
        extra={
            "vault_name": config.vault_name,
            "secret_name": config.secret_name,
            "subscription_id": config.subscription_id,
        },
    )
    ctx.exit(asyncio.run(main(config, auth_config)))


def run() -> None:
    """Entry point for the sidecar CLI.

    Parameter errors exit with 1 like every other configuration failure.
    """
    try:
        exit_code = cli.main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        exit_code = 1
    except click.Abort:
        exit_code = 1
    sys.exit(exit_code or 0)


if __name__ == "__main__":
    run()
