"""Exponential backoff with jitter for startup calls to the Bot API.

Delay for attempt ``n`` is ``min(max_delay, initial_delay * factor ** (n - 1))``
moved by up to ``jitter * delay`` either way, freshly randomized per attempt
so accounts restarting together do not retry in lockstep.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from tgrelay.outbound.rpc import RpcTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Text that marks an HTTP-level failure reported by the RPC transformer.
RPC_FAILURE_MARKER = "RPC HTTP"


class RetryAbortedError(Exception):
    """The abort signal fired while waiting between attempts."""

    pass


class RetryFailedError(Exception):
    """A call failed for good: not recoverable, or out of attempts."""

    def __init__(self, message: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(message)


@dataclass(frozen=True)
class BackoffPolicy:
    initial_delay: float = 2.0
    max_delay: float = 30.0
    factor: float = 1.8
    jitter: float = 0.25
    max_attempts: int = 10


def compute_backoff(
    policy: BackoffPolicy, attempt: int, rng: random.Random | None = None,
) -> float:
    base = min(policy.max_delay, policy.initial_delay * policy.factor ** (attempt - 1))
    spread = base * policy.jitter
    offset = (rng or random).uniform(-spread, spread) if spread else 0.0
    return max(0.0, base + offset)


def is_recoverable_error(exc: BaseException) -> bool:
    """Network failures, timeouts, rate limits, 5xx, and RPC HTTP failures."""
    if isinstance(exc, (httpx.TransportError, TimeoutError, RpcTimeoutError)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status == 429 or status >= 500):
        return True
    return RPC_FAILURE_MARKER in str(exc)


async def sleep_with_abort(delay: float, abort: asyncio.Event | None = None) -> None:
    """Sleep ``delay`` seconds; raise RetryAbortedError if ``abort`` is set first."""
    if abort is None:
        await asyncio.sleep(delay)
        return
    if abort.is_set():
        raise RetryAbortedError("aborted during retry")
    try:
        await asyncio.wait_for(abort.wait(), timeout=delay)
    except TimeoutError:
        return
    raise RetryAbortedError("aborted during retry")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    label: str,
    policy: BackoffPolicy | None = None,
    abort: asyncio.Event | None = None,
    is_recoverable: Callable[[BaseException], bool] = is_recoverable_error,
    rng: random.Random | None = None,
) -> T:
    policy = policy or BackoffPolicy()
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await fn()
        except (RetryAbortedError, asyncio.CancelledError):
            raise
        except Exception as exc:
            if not is_recoverable(exc):
                raise RetryFailedError(f"{label} failed: {exc}", attempt) from exc
            if attempt >= policy.max_attempts:
                raise RetryFailedError(
                    f"{label} failed after {attempt} attempts: {exc}", attempt,
                ) from exc
            delay = compute_backoff(policy, attempt, rng)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label, attempt, policy.max_attempts, exc, delay,
            )
            await sleep_with_abort(delay, abort)
    raise RetryFailedError(f"{label} was never attempted", 0)
