from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Awaitable, Callable

import httpx

if TYPE_CHECKING:
    from inbox_threads.config import Settings

TRANSIENT_HTTP_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass
class RetryableHttpError(Exception):
    status_code: int
    message: str
    retry_after_seconds: float | None = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 8.0

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryPolicy":
        base = max(0.1, float(settings.api_retry_base_delay_seconds))
        return cls(
            max_attempts=max(1, int(settings.api_retry_max_attempts)),
            base_delay_seconds=base,
            max_delay_seconds=max(base, float(settings.api_retry_max_delay_seconds)),
        )

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return retry_after
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))


def parse_retry_after(value: str | None) -> float | None:
    value = (value or "").strip()
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


def retry_decision(exc: Exception) -> tuple[bool, float | None]:
    if isinstance(exc, RetryableHttpError):
        return True, exc.retry_after_seconds
    if isinstance(exc, httpx.TransportError):
        return True, None
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return response.status_code in TRANSIENT_HTTP_STATUS, parse_retry_after(response.headers.get("Retry-After"))
    return False, None


def _check_response(response: httpx.Response) -> httpx.Response:
    if response.status_code in TRANSIENT_HTTP_STATUS:
        raise RetryableHttpError(
            status_code=response.status_code,
            message=f"transient HTTP status {response.status_code}",
            retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
        )
    response.raise_for_status()
    return response


async def with_retry(
    call: Callable[[], Awaitable[httpx.Response]],
    *,
    operation: str,
    policy: RetryPolicy,
    logger: logging.Logger,
) -> httpx.Response:
    """Run ``call`` until it succeeds, fails permanently or runs out of attempts."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return _check_response(await call())
        except Exception as exc:
            retryable, retry_after = retry_decision(exc)
            if not retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt, retry_after)
            logger.warning(
                "Retrying outbound call after transient failure",
                extra={
                    "event": "outbound_retry_scheduled",
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "delay_seconds": delay,
                    "error": repr(exc),
                },
            )
            await asyncio.sleep(delay)
