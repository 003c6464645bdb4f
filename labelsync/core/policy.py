"""Shared call policy: bounded transient retry and a single credential refresh."""

import time
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from pydantic import SecretStr
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from labelsync.clients.credentials import CredentialSource
from labelsync.clients.exceptions import (
    AuthenticationError,
    DeadlineExceededError,
    RateLimitError,
    TransientError,
)
from labelsync.core.models import Provider

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AttemptCounter:
    """Counts provider calls made on behalf of one operation."""

    def __init__(self) -> None:
        self.count = 0
        self.refreshed = False
        self.out_of_time = False


class CallPolicy:
    """Runs adapter calls for one tenant/provider under the error policy.

    Transient failures are retried with exponential backoff up to
    ``max_attempts`` calls, and never past the caller's deadline. An
    authentication failure refreshes the credential once and retries; a
    second one propagates to the caller.
    """

    def __init__(
        self,
        credentials: CredentialSource,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
    ) -> None:
        """Initialize call policy.

        Args:
            credentials: Source of per-tenant bearer credentials
            max_attempts: Maximum calls per operation for transient errors
            backoff_seconds: Initial backoff delay
            max_backoff_seconds: Upper bound for any single delay
        """
        self.credentials = credentials
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._exponential = wait_exponential(
            multiplier=backoff_seconds,
            min=backoff_seconds,
            max=max_backoff_seconds,
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        """Backoff delay, honouring a provider Retry-After hint."""
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return float(min(error.retry_after, self.max_backoff_seconds))
        return self._exponential(retry_state)

    def _stop(self, deadline: Optional[float], counter: AttemptCounter):
        """Stop on the attempt ceiling, or when the next wait would pass the deadline."""
        attempts = stop_after_attempt(self.max_attempts)
        if deadline is None:
            return attempts

        def past_deadline(retry_state: RetryCallState) -> bool:
            if time.monotonic() + self._wait(retry_state) < deadline:
                return False
            counter.out_of_time = True
            return True

        return attempts | past_deadline

    async def call(
        self,
        tenant_id: str,
        provider: Provider,
        operation: Callable[[SecretStr], Awaitable[T]],
        operation_name: str = "provider_call",
        counter: Optional[AttemptCounter] = None,
        deadline: Optional[float] = None,
    ) -> T:
        """Execute ``operation(credential)`` under the policy.

        ``deadline`` is a ``time.monotonic()`` instant; no retry starts at or
        after it.

        Raises:
            AuthenticationError: If the call still fails after one refresh
            TransientError: If transient retries are exhausted
            DeadlineExceededError: If retries stopped at the deadline
            FatalError: Immediately, without retry
        """
        counter = counter or AttemptCounter()
        log = logger.bind(tenant_id=tenant_id, provider=Provider(provider).value, operation=operation_name)

        credential = await self.credentials.get_credential(tenant_id, provider)
        try:
            return await self._with_retry(operation, credential, counter, log, operation_name, deadline)
        except AuthenticationError:
            log.warning("Authentication failed, refreshing credential")
            counter.refreshed = True
            credential = await self.credentials.refresh_credential(tenant_id, provider)
            return await self._with_retry(operation, credential, counter, log, operation_name, deadline)

    async def _with_retry(
        self,
        operation: Callable[[SecretStr], Awaitable[T]],
        credential: SecretStr,
        counter: AttemptCounter,
        log: structlog.BoundLogger,
        operation_name: str,
        deadline: Optional[float],
    ) -> T:
        try:
            async for attempt in AsyncRetrying(
                stop=self._stop(deadline, counter),
                wait=self._wait,
                retry=retry_if_exception_type(TransientError),
                reraise=True,
            ):
                with attempt:
                    counter.count += 1
                    if attempt.retry_state.attempt_number > 1:
                        log.info("Retrying provider call", attempt_number=attempt.retry_state.attempt_number)
                    result = await operation(credential)
        except TransientError as e:
            if counter.out_of_time:
                log.warning("Run deadline reached, not retrying", attempts=counter.count, error=str(e))
                raise DeadlineExceededError(operation_name, counter.count) from e
            raise
        return result
