"""
Request deadline propagation.

The HTTP middleware stores the inbound request's absolute deadline in a
context variable. Adapters ask for a per-call budget: the smaller of their
own default timeout and whatever is left of the request deadline.
"""

import asyncio
import time
from contextvars import ContextVar
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")

# Absolute deadline on the time.monotonic() clock
request_deadline_var: ContextVar[Optional[float]] = ContextVar('request_deadline', default=None)


class DeadlineExceeded(asyncio.TimeoutError):
    """Raised when the request deadline has already passed."""


def set_request_deadline(timeout_seconds: Optional[float]) -> Optional[float]:
    """Set the deadline for the current request context."""
    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    request_deadline_var.set(deadline)
    return deadline


def clear_request_deadline():
    """Forget the current request deadline."""
    request_deadline_var.set(None)


def remaining_seconds() -> Optional[float]:
    """Seconds left before the request deadline, or None when unbounded."""
    deadline = request_deadline_var.get()
    if deadline is None:
        return None
    return deadline - time.monotonic()


def call_budget(default_timeout: float) -> float:
    """Timeout for one external call: min(default, remaining request time)."""
    remaining = remaining_seconds()
    if remaining is None:
        return default_timeout
    if remaining <= 0:
        raise DeadlineExceeded("request deadline exceeded")
    return min(default_timeout, remaining)


async def with_budget(awaitable: Awaitable[T], default_timeout: float) -> T:
    """Await ``awaitable`` within the call budget."""
    try:
        timeout = call_budget(default_timeout)
    except DeadlineExceeded:
        # Never scheduled; close it so no "never awaited" warning leaks
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        raise
    return await asyncio.wait_for(awaitable, timeout=timeout)
