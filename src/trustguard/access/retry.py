"""Bounded retry and timeout for registry, storage and collaborator calls."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

import structlog

from ..errors import TransientInfraError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def with_retry(fn: Callable[[], T], attempts: int = 3, backoff: float = 0.05, operation: str = "") -> T:
    """Call ``fn``, retrying on TransientInfraError. Other errors propagate at once."""
    attempt = 1
    while True:
        try:
            return fn()
        except TransientInfraError as e:
            if attempt >= attempts:
                logger.error("transient_retries_exhausted", operation=operation, attempts=attempts, error=e.message)
                raise
            logger.warning("transient_retry", operation=operation, attempt=attempt, error=e.message)
            if backoff:
                time.sleep(backoff * attempt)
            attempt += 1


def call_with_timeout(
    fn: Callable[[], T], timeout: float, executor: ThreadPoolExecutor, operation: str = ""
) -> T:
    """
    Run a collaborator call on ``executor``; exceeding ``timeout`` is a transient failure.

    A timed-out call keeps its worker until the collaborator returns, so a
    hung collaborator can occupy at most the workers of the executor it was
    submitted to.
    """
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise TransientInfraError(
            f"{operation or 'collaborator'} timed out after {timeout}s", {"operation": operation}
        ) from None
