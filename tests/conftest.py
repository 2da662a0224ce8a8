"""Shared fixtures: a controllable clock and loguru capture."""

import threading

import pytest
from loguru import logger

from scopeprof import ActiveRecorder, Registry


class FakeClock:
    """Monotonic nanosecond clock that only moves when told to."""

    def __init__(self, start: int = 0) -> None:
        self._now = start
        self._lock = threading.Lock()
        self.reads = 0

    def __call__(self) -> int:
        with self._lock:
            self.reads += 1
            return self._now

    def advance(self, ns: int) -> None:
        with self._lock:
            self._now += ns


MS = 1_000_000


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder(clock: FakeClock) -> ActiveRecorder:
    return ActiveRecorder(registry=Registry(), root_name="root", clock=clock)


@pytest.fixture
def deep_recorder(clock: FakeClock) -> ActiveRecorder:
    return ActiveRecorder(registry=Registry(), deep_hierarchy=True, root_name="root", clock=clock)


@pytest.fixture
def log_messages():
    """Collect loguru messages at WARNING and above."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(str(message)), level="WARNING")
    yield messages
    logger.remove(handler_id)
