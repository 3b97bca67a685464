import asyncio
import math
from typing import Mapping, Optional

import aiohttp
from multidict import CIMultiDict
from etching_status_client.models import (
    Classification,
    FailedOutcome,
    FailureClass,
    RetryPolicy,
)

# Failures where no complete response came back
NETWORK_ERRORS = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
)


class RequestFailed(Exception):
    """Raised by the request pipeline once a request can no longer be retried."""

    def __init__(self, outcome: FailedOutcome):
        status = outcome.status_code if outcome.status_code is not None else "-"
        super().__init__(
            f"{outcome.method} {outcome.url} failed ({status}, {outcome.reason}) "
            f"after {outcome.retry_count} retries: {outcome.raw_error}"
        )
        self.outcome = outcome

    @property
    def status_code(self) -> Optional[int]:
        return self.outcome.status_code


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Convert a ``Retry-After`` value in seconds to milliseconds.

    Returns None when the header is absent or not a non-negative number
    (HTTP-date values are not supported).
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return int(seconds * 1000)


def classify_failure(
    status_code: Optional[int],
    headers: Optional[Mapping[str, str]],
    error: Optional[BaseException],
    policy: Optional[RetryPolicy] = None,
) -> Classification:
    """Map a failed HTTP exchange to a retry decision.

    ``status_code`` is None when no response was received. Default delays come
    from ``policy``. Pure: no I/O, no logging.
    """
    policy = policy or RetryPolicy()

    if status_code == 429:
        retry_after_ms = parse_retry_after(CIMultiDict(headers or {}).get("Retry-After"))
        if retry_after_ms is not None:
            return Classification(
                retryable=True,
                failure_class=FailureClass.rate_limited,
                reason="rate limited",
                delay_hint_ms=retry_after_ms,
                server_delay=True,
            )
        return Classification(
            retryable=True,
            failure_class=FailureClass.rate_limited,
            reason="rate limited",
            delay_hint_ms=policy.rate_limit_delay_ms,
        )

    if status_code is not None and 500 <= status_code < 600:
        return Classification(
            retryable=True,
            failure_class=FailureClass.server_error,
            reason="server error",
            delay_hint_ms=policy.server_error_delay_ms,
        )

    if status_code is not None and 400 <= status_code < 500:
        return Classification(
            retryable=False,
            failure_class=FailureClass.client_error,
            reason="client error",
        )

    if status_code is None and isinstance(error, NETWORK_ERRORS):
        return Classification(
            retryable=True,
            failure_class=FailureClass.network,
            reason="network failure",
            delay_hint_ms=policy.network_delay_ms,
        )

    return Classification(
        retryable=False,
        failure_class=FailureClass.other,
        reason="unexpected error",
    )


def api_error_message(error: BaseException) -> str:
    """Best human-readable message for a failed call."""
    if isinstance(error, RequestFailed):
        body = error.outcome.body
        if isinstance(body, dict) and isinstance(body.get("message"), str):
            return body["message"]
        return error.outcome.raw_error
    if str(error):
        return str(error)
    return "An unexpected error occurred"


class InvalidStatusPayload(ValueError):
    """The status endpoint answered with something that is not an etching status."""
