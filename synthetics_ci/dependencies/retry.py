"""Retry policy for dependency uploads."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from synthetics_ci.errors import UploadError

log = logging.getLogger(__name__)

NON_RETRYABLE_STATUSES = frozenset({400, 403, 413})


@dataclass(frozen=True, kw_only=True)
class RetryPolicy:
    """Linear retry policy with a set of statuses that must not be retried."""

    max_attempts: int = 5
    delay: float = 1.0
    non_retryable_statuses: frozenset[int] = field(
        default_factory=lambda: NON_RETRYABLE_STATUSES
    )

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before the attempt following the given one (1-indexed)."""
        return self.delay * attempt

    def is_retryable(self, error: UploadError) -> bool:
        return error.status not in self.non_retryable_statuses


@dataclass(frozen=True, kw_only=True)
class UploadSucceeded:
    """The upload went through."""

    attempts: int


@dataclass(frozen=True, kw_only=True)
class RetryableFailure:
    """Every attempt failed with a retryable error."""

    attempts: int
    error: UploadError


@dataclass(frozen=True, kw_only=True)
class FatalFailure:
    """An attempt failed with an error that must not be retried."""

    attempts: int
    error: UploadError


type UploadOutcome = UploadSucceeded | RetryableFailure | FatalFailure


async def run_with_retry(
    operation: Callable[[], Awaitable[None]],
    policy: RetryPolicy,
    on_retry: Callable[[UploadError, int], None] | None = None,
) -> UploadOutcome:
    """Run an upload until it succeeds, fails fatally or runs out of attempts."""
    attempt = 0
    while True:
        attempt += 1
        try:
            await operation()
        except UploadError as exc:
            if not policy.is_retryable(exc):
                return FatalFailure(attempts=attempt, error=exc)
            if attempt >= policy.max_attempts:
                return RetryableFailure(attempts=attempt, error=exc)
            if on_retry is not None:
                on_retry(exc, attempt)
            log.debug("Upload attempt %d failed: %s", attempt, exc)
            await asyncio.sleep(policy.get_delay(attempt))
        else:
            return UploadSucceeded(attempts=attempt)
