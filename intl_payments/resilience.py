"""
Timeout and retry wrapper for calls to external services.

Exchange-rate providers, the VAT registry and the payment gateway are all
reached through ``call_external``. Each attempt is bounded by a timeout;
transient failures (timeouts, connection and transport errors,
``TransientError``) are retried with jittered exponential backoff up to the
configured budget. Anything else is a definitive answer and is raised
immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from intl_payments.config import EngineConfig
from intl_payments.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
    TransientError,
)


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "%s failed (attempt %d): %s; retrying",
            operation,
            state.attempt_number,
            exc,
        )

    return _before_sleep


async def call_external(
    operation: str,
    func: Callable[[], Awaitable[T]],
    config: Optional[EngineConfig] = None,
    retryable: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
) -> T:
    """
    Run ``func`` with a per-attempt timeout and a small retry budget.

    The final exception is re-raised unchanged once the budget is spent.
    """
    cfg = config or EngineConfig()
    attempt_timeout = cfg.external_timeout if timeout is None else timeout
    retries = cfg.max_retries if max_retries is None else max_retries

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_random_exponential(
            multiplier=cfg.retry_backoff, max=cfg.retry_backoff_max
        ),
        retry=retry_if_exception_type(retryable),
        before_sleep=_log_retry(operation),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await asyncio.wait_for(func(), timeout=attempt_timeout)
    raise AssertionError("unreachable")  # pragma: no cover
