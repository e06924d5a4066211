"""HTTP helpers with retry/backoff for outbound providers."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

from dojoflow.services.messaging_errors import (
    RETRYABLE_STATUSES,
    RetryableSendError,
    error_for_status,
)

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: bool = True) -> float:
    """Exponential delay for a zero-based attempt, capped, with up to 50% jitter."""
    delay = min(max_delay, base_delay * (2**attempt))
    if delay and jitter:
        delay = min(max_delay, delay + random.uniform(0, delay / 2))
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries."""
    statuses = retry_statuses or RETRYABLE_STATUSES

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= max_attempts - 1:
                raise
            logger.warning("HTTP request failed, retrying", exc_info=exc)
            delay = backoff_delay(attempt, base_delay, max_delay)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            delay = backoff_delay(attempt, base_delay, max_delay)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response


def _error_detail(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or None
    if isinstance(data, dict):
        if isinstance(data.get("errors"), list) and data["errors"]:
            first = data["errors"][0]
            if isinstance(first, dict):
                return first.get("message")
        return data.get("message") or data.get("error")
    return None


async def send_provider_request(
    channel: str,
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
) -> httpx.Response:
    """
    Run a provider call and translate failures into SendError.

    Returns the 2xx response. Network errors and retryable statuses that
    survive the in-request retries become RetryableSendError; other non-2xx
    responses become FatalSendError.
    """
    try:
        response = await request_with_retries(
            request_fn,
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
        )
    except httpx.TimeoutException as exc:
        raise RetryableSendError(f"{channel} provider timeout", channel=channel) from exc
    except httpx.RequestError as exc:
        raise RetryableSendError(
            f"{channel} connection error: {exc.__class__.__name__}", channel=channel
        ) from exc

    if 200 <= response.status_code < 300:
        return response
    raise error_for_status(channel, response.status_code, _error_detail(response))
