"""Bounded retry with a fixed backoff schedule and jitter.

Used for every remote call (OpenAI, AFAS). Callers decide what is retryable;
``ValueError`` is always terminal and re-raised unchanged, other terminal
failures are wrapped in ``RuntimeError`` chained to the cause.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable

from .logging_setup import get_logger

MAX_ATTEMPTS: int = 3
BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
JITTER_PCT: float = 0.20

_logger = get_logger("afas_finance.retry")


def is_retryable_status(status_code: object) -> bool:
    """Return True only for HTTP 429 and 5xx status codes."""

    return isinstance(status_code, int) and (status_code == 429 or 500 <= status_code < 600)


def sleep_backoff(attempt_no: int) -> None:
    if attempt_no - 1 < len(BACKOFF_SCHEDULE_SEC):
        base = BACKOFF_SCHEDULE_SEC[attempt_no - 1]
    else:
        base = BACKOFF_SCHEDULE_SEC[-1]
    jitter = base * JITTER_PCT
    delay = base + random.uniform(-jitter, jitter)
    time.sleep(max(0.0, delay))


def call_with_retry[T](
    fn: Callable[[], T],
    *,
    area: str,
    label: str,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = MAX_ATTEMPTS,
) -> T:
    attempt = 1
    while True:
        t0 = time.perf_counter()
        try:
            out = fn()
            _logger.debug(
                "%s:call_done %s latency_ms=%.2f attempt=%d",
                area,
                label,
                (time.perf_counter() - t0) * 1000.0,
                attempt,
            )
            return out
        except Exception as e:  # noqa: BLE001
            dt_ms = (time.perf_counter() - t0) * 1000.0
            if attempt >= max_attempts or not is_retryable(e):
                _logger.error(
                    "%s:call_failed_terminal %s latency_ms=%.2f error=%s attempt=%d",
                    area,
                    label,
                    dt_ms,
                    e.__class__.__name__,
                    attempt,
                )
                if isinstance(e, ValueError):
                    # Parsing/validation failures are terminal (no retries)
                    raise e
                raise RuntimeError(f"{area} failed ({label}): {e}") from e
            _logger.warning(
                "%s:call_retry %s latency_ms=%.2f error=%s attempt=%d",
                area,
                label,
                dt_ms,
                e.__class__.__name__,
                attempt,
            )
            sleep_backoff(attempt)
            attempt += 1


__all__ = [
    "BACKOFF_SCHEDULE_SEC",
    "JITTER_PCT",
    "MAX_ATTEMPTS",
    "call_with_retry",
    "is_retryable_status",
    "sleep_backoff",
]
