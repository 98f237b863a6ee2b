"""Shared helpers for classifying provider SDK exceptions.

Classification never imports vendor SDKs: adapters match on exception class
names, HTTP status codes and transport error shapes found anywhere in the
exception chain.
"""

from __future__ import annotations

import asyncio
import errno
import re
from typing import Any

import httpx

from castor.errors import exception_chain
from castor.retry import RATE_LIMIT_DELAY_MS, ErrorClassification

TRANSIENT_NETWORK_CODES: frozenset[str] = frozenset(
    {
        "ECONNRESET",
        "ETIMEDOUT",
        "ECONNREFUSED",
        "ENOTFOUND",
        "EAI_AGAIN",
        "EPIPE",
        "ENETRESET",
        "ENETUNREACH",
    }
)

_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def exception_names(exc: BaseException) -> set[str]:
    """Class names (including bases) of every exception in the chain."""
    names: set[str] = set()
    for e in exception_chain(exc):
        names.update(cls.__name__ for cls in type(e).__mro__)
    return names


def error_message(exc: BaseException) -> str:
    """Lower-cased concatenation of messages along the exception chain."""
    return " ".join(str(e) for e in exception_chain(exc)).lower()


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in exception_chain(exc):
        for attr in ("status_code", "status", "code"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def _retry_info_seconds(exc: BaseException) -> float | None:
    """Delay from a Google-style ``RetryInfo`` entry in ``exc.details``.

    Gemini errors carry the parsed body, e.g.
    ``{"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}``.
    """
    details = getattr(exc, "details", None)
    error = details.get("error") if isinstance(details, dict) else None
    entries = error.get("details") if isinstance(error, dict) else None
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, dict) or "RetryInfo" not in str(entry.get("@type", "")):
            continue
        match = _PROTO_DURATION_RE.match(str(entry.get("retryDelay", "")))
        if match:
            return float(match.group(1))
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        raw = headers.get("Retry-After") if hasattr(headers, "get") else None
        if isinstance(raw, str) and raw.strip():
            try:
                seconds = float(raw)
            except ValueError:
                seconds = -1.0
            if seconds >= 0:
                return seconds

        retry_info = _retry_info_seconds(e)
        if retry_info is not None:
            return retry_info
    return None


def rate_limit_classification(exc: BaseException) -> ErrorClassification:
    """RATE_LIMIT, preferring the provider's own retry-after hint for the delay."""
    retry_after = extract_retry_after_s(exc)
    if retry_after is None:
        return ErrorClassification.rate_limit(RATE_LIMIT_DELAY_MS)
    return ErrorClassification.rate_limit(int(retry_after * 1000))


def is_transient_network_error(exc: BaseException) -> bool:
    """Whether any exception in the chain is a transport-level failure."""
    for e in exception_chain(exc):
        if isinstance(e, asyncio.CancelledError):
            return False
        if isinstance(e, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            return True
        if isinstance(e, (httpx.TimeoutException, httpx.TransportError)):
            return True
        code = getattr(e, "code", None)
        if isinstance(code, str) and code.upper() in TRANSIENT_NETWORK_CODES:
            return True
        err_no = getattr(e, "errno", None)
        if isinstance(err_no, int) and errno.errorcode.get(err_no) in TRANSIENT_NETWORK_CODES:
            return True
        message = str(e).upper()
        if any(code in message for code in TRANSIENT_NETWORK_CODES):
            return True
    return False
