"""
Timeout utilities for outbound network calls and fan-out probes.
"""

import asyncio
import builtins
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from src.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class TimeoutError(Exception):
    """Custom timeout exception with context."""

    def __init__(self, operation: str, timeout: float, details: str = ""):
        self.operation = operation
        self.timeout = timeout
        self.details = details
        super().__init__(
            f"{operation} timed out after {timeout}s{f': {details}' if details else ''}"
        )


async def with_timeout(
    coro_or_func: Callable[..., Awaitable[T]] | Awaitable[T],
    timeout: float,
    operation_name: str,
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Execute an async operation with timeout.

    Args:
        coro_or_func: Coroutine or async function to execute
        timeout: Timeout in seconds
        operation_name: Description of the operation for error messages
        *args, **kwargs: Arguments to pass to the function

    Raises:
        TimeoutError: If operation times out
    """
    coro = coro_or_func(*args, **kwargs) if callable(coro_or_func) else coro_or_func
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except builtins.TimeoutError:
        logger.warning(f"Operation '{operation_name}' timed out after {timeout}s")
        raise TimeoutError(operation_name, timeout)


@dataclass
class ProbeOutcome(Generic[T]):
    """Settled result of one bounded probe: a value, an error, or a timeout."""

    name: str
    elapsed: float
    value: T | None = None
    error: Exception | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out


async def run_bounded_probes(
    probes: Mapping[str, Callable[[], Awaitable[T]]], timeout: float
) -> dict[str, ProbeOutcome[T]]:
    """Run every probe concurrently, each under its own timeout, and wait for all to settle.

    One slow or failing probe never blocks or cancels the others: a probe that exceeds `timeout`
    is cancelled and reported with timed_out=True, and a probe that raises is reported with its
    exception. The call returns once every probe has settled, so its duration is bounded by
    `timeout` plus scheduling overhead. Results are keyed by probe name, in input order.
    """

    async def _settle(name: str, probe: Callable[[], Awaitable[T]]) -> ProbeOutcome[T]:
        started = time.perf_counter()
        try:
            value = await asyncio.wait_for(probe(), timeout=timeout)
        except builtins.TimeoutError:
            elapsed = time.perf_counter() - started
            logger.warning(f"Probe '{name}' timed out after {timeout}s", probe=name)
            return ProbeOutcome(name=name, elapsed=elapsed, timed_out=True)
        except Exception as e:
            elapsed = time.perf_counter() - started
            logger.warning(f"Probe '{name}' failed: {e}", probe=name)
            return ProbeOutcome(name=name, elapsed=elapsed, error=e)
        return ProbeOutcome(name=name, elapsed=time.perf_counter() - started, value=value)

    settled = await asyncio.gather(*(_settle(name, probe) for name, probe in probes.items()))
    return {outcome.name: outcome for outcome in settled}
