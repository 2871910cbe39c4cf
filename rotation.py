# -*- coding: utf-8 -*-
"""
Key rotation for outbound Gemini calls.

execute_with_rotation() runs one logical request against the active keys of
a KeyPoolManager, strictly one key at a time:

- success          -> return the result, no further keys are tried
- auth failure     -> mark the key invalid, try the next key
- retryable failure-> keep the key, try the next key
- anything else    -> re-raise unchanged, no further keys are tried

When every active key has been tried, KeysExhaustedError is raised.

Two helpers sit outside that loop and are applied by callers:
retry_with_backoff() retries the same key before giving up on it, and
MinIntervalGate spaces out independent requests.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

from config import ErrorCode
from error_handler import (
    ErrorHandler,
    FailureKind,
    KeysExhaustedError,
    NoKeysConfiguredError,
    USER_KEYS_EXHAUSTED_MESSAGE,
    SYSTEM_KEYS_EXHAUSTED_MESSAGE,
    error_handler as default_error_handler,
    error_text,
)
from key_pool import KeyPoolManager, KeySource

logger = logging.getLogger(__name__)

T = TypeVar("T")

# operation(client, api_key) -> result
Operation = Callable[[Any, str], Awaitable[T]]


def default_client_factory(api_key: str):
    """Build an authenticated Gemini client for one key"""
    from google import genai
    return genai.Client(api_key=api_key)


async def execute_with_rotation(
    pool: KeyPoolManager,
    operation: Operation,
    client_factory: Optional[Callable[[str], Any]] = None,
    handler: Optional[ErrorHandler] = None,
    label: str = "call",
) -> T:
    """
    Run operation(client, api_key) with each active key in turn.

    The client is built from the key by client_factory (a google-genai
    Client by default). At most one attempt is made per key, so the loop
    always terminates after the active keys are used up.
    """
    if client_factory is None:
        client_factory = default_client_factory
    if handler is None:
        handler = default_error_handler

    if pool.total_count == 0:
        logger.error(f"[KeyRotation] {label}: no API keys configured")
        raise NoKeysConfiguredError()

    tried: Set[str] = set()
    last_error: Optional[BaseException] = None

    while True:
        cred = pool.next_candidate(exclude=tried)
        if cred is None:
            break
        tried.add(cred.key)

        try:
            client = client_factory(cred.key)
            result = await operation(client, cred.key)
        except Exception as e:
            kind = handler.classify_failure(e)

            if kind == FailureKind.AUTH:
                logger.warning(f"[KeyRotation] {label}: key ...{cred.suffix} rejected: {error_text(e)[:200]}")
                pool.mark_invalid(cred.key)
                last_error = e
                continue

            if kind == FailureKind.RETRYABLE:
                logger.warning(f"[KeyRotation] {label}: key ...{cred.suffix} temporarily failed: {error_text(e)[:200]}")
                last_error = e
                continue

            logger.info(f"[KeyRotation] {label}: fatal error with key ...{cred.suffix}, not rotating: {error_text(e)[:200]}")
            raise

        if len(tried) > 1:
            logger.info(f"[KeyRotation] {label}: succeeded with key ...{cred.suffix} after {len(tried)} attempts")
        return result

    raise _exhausted_error(pool, last_error, len(tried), label)


def _exhausted_error(pool: KeyPoolManager, last_error, attempts: int, label: str) -> KeysExhaustedError:
    if pool.source == KeySource.USER:
        code, message = ErrorCode.USER_KEYS_EXHAUSTED, USER_KEYS_EXHAUSTED_MESSAGE
    else:
        code, message = ErrorCode.SYSTEM_KEYS_EXHAUSTED, SYSTEM_KEYS_EXHAUSTED_MESSAGE

    logger.error(
        f"[KeyRotation] {label}: all keys exhausted after {attempts} attempt(s) "
        f"({pool.active_count}/{pool.total_count} {pool.source.value} keys active)"
    )
    return KeysExhaustedError(
        code,
        message,
        source=pool.source.value,
        last_error=last_error,
        attempts=attempts,
    )


def retry_with_backoff(
    operation: Operation,
    max_attempts: int = 5,
    base_delay: float = 4.0,
    rate_limit_delay: float = 60.0,
    rate_limit_step: float = 5.0,
    handler: Optional[ErrorHandler] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Operation:
    """
    Wrap an operation so it retries the same key on retryable failures.

    Delays: rate-limit errors wait rate_limit_delay + attempt * rate_limit_step,
    other retryable errors wait base_delay * 2 ** attempt. Non-retryable
    errors are re-raised at once, and the last error is re-raised after
    max_attempts, so the rotation loop can still classify it.
    """
    if handler is None:
        handler = default_error_handler

    async def wrapped(client, api_key: str):
        attempt = 0
        while True:
            try:
                return await operation(client, api_key)
            except Exception as e:
                attempt += 1
                if attempt >= max_attempts or handler.classify_failure(e) != FailureKind.RETRYABLE:
                    raise

                if handler.is_rate_limit_failure(e):
                    delay = rate_limit_delay + attempt * rate_limit_step
                else:
                    delay = base_delay * (2 ** attempt)

                logger.warning(
                    f"[Backoff] Attempt {attempt}/{max_attempts} failed with key ...{api_key[-6:]}, "
                    f"retrying in {delay:.0f}s: {error_text(e)[:120]}"
                )
                await sleep(delay)

    return wrapped


class MinIntervalGate:
    """
    Enforces a minimum gap between the starts of independent requests.

    Usage:
        gate = MinIntervalGate(30)
        for prompt in prompts:
            await gate.wait()
            await service.generate_image(prompt)
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._last_start: Optional[float] = None
        self._lock: Optional[asyncio.Lock] = None

    async def wait(self):
        # Created lazily so the gate can be built outside a running loop
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            if self._last_start is not None:
                remaining = self.min_interval - (self._clock() - self._last_start)
                if remaining > 0:
                    logger.debug(f"[Throttle] Waiting {remaining:.1f}s before next request")
                    await self._sleep(remaining)
            self._last_start = self._clock()

    async def __aenter__(self):
        await self.wait()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False
