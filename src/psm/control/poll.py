import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from psm.config import PollPolicy
from psm.errors import ReadinessTimeout

T = TypeVar("T")


async def poll_until(
    probe: Callable[[], Awaitable[T | None]], policy: PollPolicy, what: str,
) -> T:
    """Await `probe` every `policy.interval` seconds until it returns a non-None value.

    Raises ReadinessTimeout once `policy.max_attempts` probes came back empty.
    """
    attempt = 0
    while True:
        result = await probe()
        if result is not None:
            return result
        attempt += 1
        if policy.max_attempts is not None and attempt >= policy.max_attempts:
            raise ReadinessTimeout(what, attempt, policy.interval)
        logger.debug(f"Waiting for {what} ({attempt})")
        await asyncio.sleep(policy.interval)


async def retry(
    fn: Callable[[], Awaitable[T]], policy: PollPolicy,
    on: type[Exception] | tuple[type[Exception], ...] = Exception,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Run `fn` up to `policy.max_attempts` times while it raises `on`."""
    max_attempts = policy.max_attempts or 1
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except on as e:
            if attempt >= max_attempts:
                raise
            logger.warning(
                f"Retry {attempt}/{max_attempts} after {type(e).__name__}: {e}. "
                f"Waiting {policy.interval:g}s..."
            )
            if on_retry:
                on_retry(attempt, e)
            await asyncio.sleep(policy.interval)
    raise AssertionError("unreachable")
