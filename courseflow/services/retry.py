"""Retry loop for optimistic-concurrency misses.

Every read-modify-write in the engines is written as a zero-argument
coroutine function that re-reads its document on entry.  When the
repository rejects the save with StaleWriteError, tenacity runs the
whole function again against the fresh copy.  Once attempts run out the
caller gets ConflictingWrite: a lost race is never reported as success.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from courseflow.core.errors import ConflictingWrite, StaleWriteError
from courseflow.core.metrics import STALE_WRITE_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_stale_write(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    document: str,
) -> T:
    def _before_sleep(retry_state: RetryCallState) -> None:
        STALE_WRITE_RETRIES.labels(document=document).inc()
        logger.info(
            "Stale %s write, retrying (attempt %d of %d)",
            document,
            retry_state.attempt_number,
            attempts,
        )

    retrying = AsyncRetrying(
        # Small jitter so two writers racing on one document don't
        # collide again in lockstep.
        wait=wait_random(min=0, max=0.05),
        stop=stop_after_attempt(attempts),
        retry=retry_if_exception_type(StaleWriteError),
        before_sleep=_before_sleep,
        reraise=True,
    )
    try:
        return await retrying(operation)
    except StaleWriteError as exc:
        logger.warning("Giving up on %s write after %d attempts", document, attempts)
        raise ConflictingWrite(
            f"{document} was modified concurrently; gave up after {attempts} attempts"
        ) from exc
