"""
Bounded polling for state that converges asynchronously across nodes.

`poll` knows nothing about nodes or sessions: callers hand it an observation
callback and it evaluates that callback until it returns true or the deadline
passes. Exceptions raised by the callback propagate unchanged.
"""

from __future__ import annotations

import time
from typing import Callable

from XT_Harness.errors import ConvergenceTimeout


def poll(
    predicate: Callable[[], bool],
    interval: float,
    timeout: float,
    description: str = "",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> float:
    """Evaluate ``predicate`` every ``interval`` seconds until it holds.

    The first evaluation happens immediately. Returns the elapsed time in
    seconds at the moment the predicate held, raises ``ConvergenceTimeout``
    once ``timeout`` seconds have passed without it holding.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")
    if timeout < 0:
        raise ValueError("timeout must be >= 0")

    started = clock()
    while True:
        if predicate():
            return clock() - started
        elapsed = clock() - started
        if elapsed >= timeout:
            raise ConvergenceTimeout(description, elapsed, timeout)
        sleep(interval)
