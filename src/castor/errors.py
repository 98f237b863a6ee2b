"""Exception hierarchy for Castor."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or credential resolution failed.

    Never reaches error classification: these fail fast and are not retried.
    """


class ToolError(CastorError):
    """A tool lookup failed (unknown tool name)."""


class InternalError(CastorError):
    """A Castor internal error (bug) or invariant violation."""


class APIError(CastorError):
    """Model call failed after classification.

    Carries retry metadata so callers can back off deliberately.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(APIError):
    """Provider signaled quota exhaustion (HTTP 429 or equivalent)."""


def exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc*, then each exception it was raised from or during.

    Explicit causes win over implicit context, as in a printed traceback.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__
