"""
Bounded exponential-backoff retry and user-facing error phrasing.

``with_retry`` runs a unit of work up to ``max_retries + 1`` times, sleeping
``base_delay * 2**(attempt - 1)`` seconds between attempts.  The observer
callback is told about each retry before the sleep.  When every attempt
fails the last error is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0


async def with_retry(
    work: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    on_retry: Callable[[int, BaseException], None] | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """
    Execute *work* with retry.

    Parameters
    ----------
    work:
        Zero-argument coroutine function.  Called afresh on every attempt.
    max_retries:
        Number of retries after the first attempt.
    base_delay:
        Delay in seconds before the first retry; doubles each time.
    on_retry:
        ``on_retry(attempt, error)`` with attempt numbers 1, 2, 3 ...
    retry_on:
        Exception types that are retried.  Anything else propagates
        immediately.  ``asyncio.CancelledError`` is never retried.
    sleep:
        Injected for tests.
    """
    attempt = 0
    while True:
        try:
            return await work()
        except asyncio.CancelledError:
            raise
        except retry_on as exc:
            if attempt >= max_retries:
                logger.warning("Giving up after %d attempts: %s", attempt + 1, exc)
                raise
            attempt += 1
            delay = base_delay * (2 ** (attempt - 1))
            if on_retry is not None:
                on_retry(attempt, exc)
            logger.info(
                "Retry %d/%d in %.1fs after: %s", attempt, max_retries, delay, exc
            )
            await sleep(delay)


# ---------------------------------------------------------------------------
# Friendly error messages
# ---------------------------------------------------------------------------

# Checked in order; the first substring found in the error text wins.
ERROR_MESSAGES: tuple[tuple[str, str], ...] = (
    ("SyntaxError", "Could not parse the response data, retrying..."),
    ("JSON", "The response format was unexpected, retrying..."),
    ("StructuredOutputError", "The response format was unexpected, retrying..."),
    ("network", "Network connection failed, check your network settings"),
    ("ConnectError", "Could not reach the server, check your network"),
    ("timeout", "The request timed out, retrying..."),
    ("Timeout", "The request timed out, retrying..."),
    ("abort", "The request was cancelled"),
    ("401", "Authentication failed, check your API key"),
    ("403", "Access denied, check your permissions"),
    ("429", "Too many requests, please try again shortly"),
    ("500", "Internal server error, please try again later"),
    ("502", "Bad gateway, please try again later"),
    ("503", "Service temporarily unavailable, please try again later"),
)

DEFAULT_ERROR_MESSAGE = "The task ran into a problem, retrying..."
RETRY_SUFFIX = ", retrying..."


def friendly_error_message(error: BaseException | str, final: bool = False) -> str:
    """
    Map an error to a short sentence suitable for showing to a user.

    With *final* set (no attempts left) the ", retrying..." tail is dropped.
    """
    if isinstance(error, BaseException):
        text = f"{type(error).__name__}: {error}"
    else:
        text = str(error)
    for needle, message in ERROR_MESSAGES:
        if needle in text:
            break
    else:
        message = DEFAULT_ERROR_MESSAGE
    if final and message.endswith(RETRY_SUFFIX):
        return message[: -len(RETRY_SUFFIX)]
    return message
