"""Monotonic nanosecond clock used by every measurement.

perf_counter_ns is the fast path (~50-100ns per call). If the platform does not
report it as monotonic, monotonic_ns is used instead; callers never notice.
"""

import time
from collections.abc import Callable

from loguru import logger

Clock = Callable[[], int]


def select_clock() -> Clock:
    """Return the best available monotonic nanosecond clock."""
    info = time.get_clock_info("perf_counter")
    if info.monotonic:
        logger.debug(f"Clock: perf_counter ({info.implementation}, resolution={info.resolution}s)")
        return time.perf_counter_ns

    logger.debug("Clock: perf_counter is not monotonic, falling back to monotonic_ns")
    return time.monotonic_ns


now: Clock = select_clock()
