"""Core reconciliation loop keeping a local file in sync with a Key Vault secret.

Each cycle:
1. Read the current local copy (if any)
2. Acquire a management-plane token and resolve the vault URI
3. Acquire a data-plane token and fetch the secret value
4. Compare byte-for-byte and write only if the value changed
5. Wait for the next tick (or shutdown)

Remote steps are retried with exponential backoff when the failure is
transient. What happens after a cycle fails is governed by the configured
FailurePolicy: EXIT stops the loop and surfaces the error, CONTINUE logs it
and waits for the next tick behind a circuit breaker.

Blocking SDK and filesystem calls run in the default executor so signal
handlers on the event loop are never starved.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from azure.core.exceptions import ClientAuthenticationError

from .config import Config, FailurePolicy
from .errors import ResolutionError, SecretAccessDeniedError, SyncError
from .reader import SecretReader
from .resolver import VaultResolver
from .state import LocalStateStore
from .tokens import Audience, TokenProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Circuit breaker constants (CONTINUE policy only)
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300


class SyncOutcome(str, Enum):
    """Observable result of one reconciliation cycle."""

    UNCHANGED = "unchanged"
    WRITTEN = "written"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LoopState(str, Enum):
    """Lifecycle of the reconciliation loop."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class _CycleCancelled(Exception):
    """Internal signal that shutdown was requested at a checkpoint."""

    pass


@dataclass
class SyncResult:
    """Result of a single reconciliation cycle."""

    secret_name: str
    outcome: SyncOutcome = SyncOutcome.UNCHANGED
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    created: bool = False
    bytes_written: int = 0
    error: SyncError | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the cycle succeeded."""
        return self.outcome in (SyncOutcome.UNCHANGED, SyncOutcome.WRITTEN)


class Reconciler:
    """Periodically syncs one Key Vault secret to one local file.

    Cycles never overlap: the next wait starts only after the previous
    cycle has completed. ``shutdown()`` may be called at any time; an
    in-flight cycle stops at its next checkpoint, but a write that has
    already started always runs to completion.
    """

    def __init__(
        self,
        config: Config,
        token_provider: TokenProvider,
        resolver: VaultResolver | None = None,
        reader: SecretReader | None = None,
        store: LocalStateStore | None = None,
    ) -> None:
        """Initialize reconciler with configuration and collaborators.

        Args:
            config: Validated sidecar configuration.
            token_provider: Issues management and data plane tokens.
            resolver: Vault URI lookup (default: ARM in the provider's cloud).
            reader: Secret fetcher (default: Key Vault data plane).
            store: Local file store.
        """
        self._config = config
        self._tokens = token_provider
        self._resolver = resolver or VaultResolver(token_provider.cloud)
        self._reader = reader or SecretReader()
        self._store = store or LocalStateStore()

        self._shutdown_event = asyncio.Event()
        self._state = LoopState.IDLE
        self._last_result: SyncResult | None = None

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    async def run(self) -> None:
        """Run the reconciliation loop until shutdown.

        The first cycle runs immediately; later cycles run every
        ``reconcile_interval_seconds`` after the previous one ended.

        Raises:
            SyncError: If a cycle fails under the EXIT failure policy.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "vault_name": self._config.vault_name,
                "secret_name": self._config.secret_name,
                "directory": str(self._config.directory),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "on_error": self._config.on_error.value,
            },
        )

        try:
            while not self._shutdown_event.is_set():
                if self._circuit_open_until is not None:
                    now = datetime.now(UTC)
                    if now < self._circuit_open_until:
                        remaining = (self._circuit_open_until - now).total_seconds()
                        logger.warning(
                            "Circuit breaker open, skipping reconciliation",
                            extra={
                                "remaining_seconds": remaining,
                                "consecutive_failures": self._consecutive_failures,
                            },
                        )
                        await self._wait_for_shutdown(
                            min(remaining, self._config.reconcile_interval_seconds)
                        )
                        continue

                    logger.info("Circuit breaker reset, resuming reconciliation")
                    self._circuit_open_until = None
                    self._consecutive_failures = 0

                result = await self.reconcile_once()
                self._log_result(result)

                if result.outcome is SyncOutcome.FAILED:
                    assert result.error is not None
                    if self._config.on_error is FailurePolicy.EXIT:
                        raise result.error
                    self._record_failure()
                elif result.success:
                    self._consecutive_failures = 0

                await self._wait_for_shutdown(self._config.reconcile_interval_seconds)
        finally:
            self._state = LoopState.TERMINATED
            logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested", extra={"state": self._state.value})
        if self._state is not LoopState.TERMINATED:
            self._state = LoopState.STOPPING
        self._shutdown_event.set()

    async def reconcile_once(self) -> SyncResult:
        """Execute a single reconciliation cycle.

        Returns:
            SyncResult describing whether the file was left alone,
            written, or the cycle failed or was cancelled.
        """
        config = self._config
        result = SyncResult(secret_name=config.secret_name)
        if self._state is LoopState.IDLE:
            self._state = LoopState.RUNNING

        try:
            previous = await self._run_blocking(
                self._store.read, config.directory, config.secret_name
            )

            self._checkpoint()
            management_token = await self._with_retry(
                "acquire management token", self._tokens.acquire, Audience.MANAGEMENT
            )

            self._checkpoint()
            endpoint = await self._with_retry(
                "resolve vault",
                self._resolver.resolve,
                config.subscription_id,
                config.resource_group,
                config.vault_name,
                management_token,
            )

            self._checkpoint()
            data_token = await self._with_retry(
                "acquire data token", self._tokens.acquire, Audience.DATA
            )

            self._checkpoint()
            value = await self._with_retry(
                "fetch secret",
                self._reader.fetch,
                endpoint,
                config.secret_name,
                data_token,
                config.secret_version,
            )

            if value == previous:
                result.outcome = SyncOutcome.UNCHANGED
            else:
                # Last chance to stop; once started, the write always completes
                self._checkpoint()
                await self._run_blocking(
                    self._store.write,
                    config.directory,
                    config.secret_name,
                    value,
                    config.file_mode,
                )
                result.outcome = SyncOutcome.WRITTEN
                result.created = previous is None
                result.bytes_written = len(value)

        except _CycleCancelled:
            result.outcome = SyncOutcome.CANCELLED
        except SyncError as e:
            result.outcome = SyncOutcome.FAILED
            result.error = e
            self._drop_rejected_token(e)
        finally:
            result.end_time = datetime.now(UTC)
            if self._state is LoopState.RUNNING:
                self._state = LoopState.IDLE

        self._last_result = result
        return result

    def _drop_rejected_token(self, error: SyncError) -> None:
        """Forget a cached token the service refused so the next cycle gets a new one."""
        match error:
            case SecretAccessDeniedError():
                audience = Audience.DATA
            case ResolutionError() if isinstance(error.__cause__, ClientAuthenticationError):
                audience = Audience.MANAGEMENT
            case _:
                return

        self._tokens.invalidate(audience)
        logger.info("Dropped rejected token", extra={"audience": audience.value})

    def _checkpoint(self) -> None:
        if self._shutdown_event.is_set():
            raise _CycleCancelled()

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds; return True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            # Normal timeout, continue to next cycle
            pass
        return self._shutdown_event.is_set()

    async def _run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _with_retry(self, operation_name: str, func: Callable[..., T], *args: Any) -> T:
        """Run a remote step, retrying transient failures with exponential backoff.

        Raises:
            SyncError: The last error once retries are exhausted, or
                immediately for non-transient errors.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._run_blocking(func, *args)
            except SyncError as e:
                if not e.transient or attempt > self._config.max_retries:
                    raise

                # Exponential backoff with jitter
                backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    f"{operation_name} failed, retrying",
                    extra={
                        "attempt": attempt,
                        "max_attempts": self._config.max_retries + 1,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )

                if await self._wait_for_shutdown(wait_time):
                    raise _CycleCancelled() from e

    def _record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            self._circuit_open_until = datetime.now(UTC) + timedelta(
                seconds=CIRCUIT_BREAKER_RESET_SECONDS
            )
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "consecutive_failures": self._consecutive_failures,
                    "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )

    def _log_result(self, result: SyncResult) -> None:
        """Log cycle result with structured data.

        Secret values are never logged, only their size.
        """
        extra: dict[str, Any] = {
            "secret_name": result.secret_name,
            "outcome": result.outcome.value,
            "duration_seconds": result.duration_seconds,
        }

        match result.outcome:
            case SyncOutcome.FAILED:
                extra["error"] = str(result.error)
                extra["error_type"] = type(result.error).__name__
                logger.error("Reconciliation failed", extra=extra)
            case SyncOutcome.WRITTEN:
                extra["bytes_written"] = result.bytes_written
                extra["file_created"] = result.created
                logger.info(
                    "Secret written",
                    extra={**extra, "path": str(self._config.target_path)},
                )
            case SyncOutcome.CANCELLED:
                logger.info("Reconciliation cancelled by shutdown", extra=extra)
            case _:
                logger.info("Secret unchanged, skipping write", extra=extra)
