"""Error categories, retry policy and the classification-driven retry executor.

Retry decisions come from the adapter's ``classify_error``; this module only
applies the policy:

- ``RATE_LIMIT``: fail immediately with ``RateLimitError`` carrying the
  suggested delay, so the caller can back off deliberately.
- ``UNRECOVERABLE``: fail immediately with the original error.
- ``RETRYABLE`` / ``UNKNOWN``: bounded exponential backoff, then ``APIError``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import enum
import logging
import random
from typing import TYPE_CHECKING, TypeVar

from castor.errors import APIError, ConfigurationError, RateLimitError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from castor.hooks import HookRunner

T = TypeVar("T")

logger = logging.getLogger(__name__)

RATE_LIMIT_DELAY_MS = 60_000
ABSOLUTE_MAX_RETRIES = 72


class ErrorCategory(str, enum.Enum):
    """How a provider failure should be handled."""

    RATE_LIMIT = "rate_limit"
    RETRYABLE = "retryable"
    UNRECOVERABLE = "unrecoverable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorClassification:
    """Category plus retry recommendation for one error."""

    category: ErrorCategory
    should_retry: bool
    suggested_delay_ms: int | None = None

    @classmethod
    def rate_limit(cls, delay_ms: int = RATE_LIMIT_DELAY_MS) -> ErrorClassification:
        return cls(ErrorCategory.RATE_LIMIT, should_retry=False, suggested_delay_ms=delay_ms)

    @classmethod
    def retryable(cls) -> ErrorClassification:
        return cls(ErrorCategory.RETRYABLE, should_retry=True)

    @classmethod
    def unrecoverable(cls) -> ErrorClassification:
        return cls(ErrorCategory.UNRECOVERABLE, should_retry=False)

    @classmethod
    def unknown(cls) -> ErrorClassification:
        return cls(ErrorCategory.UNKNOWN, should_retry=True)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff."""

    max_retries: int = 6
    initial_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 32.0
    jitter: bool = False  # "full jitter" when enabled
    #: Cap for ``UNKNOWN`` errors; ``None`` uses ``max_retries``.
    max_unknown_retries: int | None = None

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if not 0 <= self.max_retries <= ABSOLUTE_MAX_RETRIES:
            raise ConfigurationError(
                f"RetryPolicy.max_retries must be between 0 and {ABSOLUTE_MAX_RETRIES}",
                hint="Use max_retries=0 to disable retries.",
            )
        if self.max_unknown_retries is not None and not (
            0 <= self.max_unknown_retries <= self.max_retries
        ):
            raise ConfigurationError(
                "RetryPolicy.max_unknown_retries must be between 0 and max_retries",
            )
        if self.initial_delay_s < 0:
            raise ConfigurationError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ConfigurationError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ConfigurationError("RetryPolicy.max_delay_s must be >= 0")

    def delay_for_attempt(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt + 1`` (attempt is 0-based)."""
        base = min(
            self.max_delay_s,
            self.initial_delay_s * (self.backoff_multiplier ** max(0, attempt)),
        )
        if base <= 0:
            return 0.0
        if not self.jitter:
            return base
        return random.random() * base  # noqa: S311

    def retry_limit(self, category: ErrorCategory) -> int:
        if category is ErrorCategory.UNKNOWN and self.max_unknown_retries is not None:
            return self.max_unknown_retries
        return self.max_retries

    def should_retry(self, attempt: int, category: ErrorCategory) -> bool:
        """Whether another retry is allowed after ``attempt`` retries so far."""
        if category in (ErrorCategory.RATE_LIMIT, ErrorCategory.UNRECOVERABLE):
            return False
        return attempt < self.retry_limit(category)


async def call_with_retry(
    factory: Callable[[], Awaitable[T]],
    *,
    classify: Callable[[BaseException], ErrorClassification],
    policy: RetryPolicy,
    hooks: HookRunner,
    provider: str,
) -> T:
    """Run *factory*, retrying per the classification of each failure."""
    attempt = 0
    while True:
        try:
            return await factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            classification = classify(exc)
            category = classification.category

            if category is ErrorCategory.RATE_LIMIT:
                await hooks.run(
                    "on_unrecoverable_model_error",
                    error=exc,
                    classification=classification,
                )
                delay_ms = classification.suggested_delay_ms or RATE_LIMIT_DELAY_MS
                raise RateLimitError(
                    f"{provider} rate limit exceeded: {exc}",
                    hint=f"Back off for about {delay_ms / 1000:g}s before retrying.",
                    retryable=False,
                    status_code=429,
                    retry_after_s=delay_ms / 1000,
                    provider=provider,
                    phase="generate",
                ) from exc

            if category is ErrorCategory.UNRECOVERABLE:
                await hooks.run(
                    "on_unrecoverable_model_error",
                    error=exc,
                    classification=classification,
                )
                raise

            if not policy.should_retry(attempt, category):
                await hooks.run(
                    "on_unrecoverable_model_error",
                    error=exc,
                    classification=classification,
                )
                raise APIError(
                    f"{provider} request failed after {attempt} retries: {exc}",
                    hint="The provider kept failing; try again later.",
                    retryable=True,
                    provider=provider,
                    phase="generate",
                ) from exc

            if classification.suggested_delay_ms is not None:
                delay = classification.suggested_delay_ms / 1000
            else:
                delay = policy.delay_for_attempt(attempt)
            attempt += 1

            if category is ErrorCategory.UNKNOWN:
                logger.warning(
                    "Unclassified %s error, retrying (%d/%d) in %.2fs: %r",
                    provider,
                    attempt,
                    policy.retry_limit(category),
                    delay,
                    exc,
                )
            else:
                logger.info(
                    "Retryable %s error, retrying (%d/%d) in %.2fs: %s",
                    provider,
                    attempt,
                    policy.retry_limit(category),
                    delay,
                    exc,
                )
            await hooks.run(
                "on_retryable_model_error",
                error=exc,
                classification=classification,
                attempt=attempt,
            )
            if delay > 0:
                await asyncio.sleep(delay)
