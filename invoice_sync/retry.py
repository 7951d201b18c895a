"""Backoff for the two blocking call sites the pipeline retries.

``JsonRpcChainReader._post`` retries node errors: HTTP 429 and 5xx
answers, dropped connections and read timeouts. ``BackfillRunner`` wraps
``EventRouter.route`` so a replayed log survives a store outage or a lost
optimistic-lock race (``TRANSIENT_ERRORS``). ``PartitionedEventQueue``
reuses ``compute_delay`` for its own async retry loop.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

# Rate limiting and node-side failures from the JSON-RPC endpoint
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

_CONNECTION_ERRORS = (httpx.ConnectError, httpx.ReadTimeout, ConnectionError, OSError)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: float = 0.3,
    retry_on: tuple[type[BaseException], ...] = (),
) -> Callable:
    """Re-run the wrapped call up to *max_retries* times on a transient failure.

    A rate-limited or failing RPC node (see ``RETRYABLE_STATUS_CODES``) and a
    broken connection always count as transient; *retry_on* adds the store
    errors for callers that write. Any other error, or the last failure,
    propagates unchanged.

    Args:
        max_retries: Retries after the first call; 0 disables retrying.
        base_delay: Delay before the first retry, doubled per attempt.
        max_delay: Upper bound for any single wait, Retry-After included.
        jitter: Fraction of the delay randomized in both directions.
        retry_on: Extra exception types to retry, e.g. ``TRANSIENT_ERRORS``.
    """

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return fn(*args, **kwargs)
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status not in RETRYABLE_STATUS_CODES or attempt == max_retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter, e.response)
                    logger.warning(
                        "Retry %d/%d for %s (HTTP %d), waiting %.1fs",
                        attempt + 1,
                        max_retries,
                        fn.__name__,
                        status,
                        delay,
                    )
                    time.sleep(delay)
                except (*_CONNECTION_ERRORS, *retry_on) as e:
                    if attempt == max_retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter)
                    logger.warning(
                        "Retry %d/%d for %s (%s), waiting %.1fs",
                        attempt + 1,
                        max_retries,
                        fn.__name__,
                        type(e).__name__,
                        delay,
                    )
                    time.sleep(delay)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Seconds to wait before retry number *attempt* + 1.

    A numeric Retry-After from the node wins (capped at *max_delay*);
    otherwise ``base_delay * 2**attempt`` with jitter, never below 0.1s.
    """
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), max_delay)
            except ValueError:
                pass

    delay = min(base_delay * (2**attempt), max_delay)

    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.1, delay)
