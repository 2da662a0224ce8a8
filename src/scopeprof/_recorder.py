"""Scope guards and the two recorder implementations.

ActiveRecorder measures; NoopRecorder has the same surface and does nothing.
The package picks one of them once, at import, so instrumented code never
branches on an "enabled" flag.

Hot path (enter_scope / guard exit):
- touches only the calling thread's ThreadLocalTree (threading.local)
- one clock read on entry, one on exit, no locks
- no beartype checks, no logging (except the misuse branch)

Usage:
    recorder = ActiveRecorder()

    with recorder.begin_application_scope("main"):
        for item in items:
            with recorder.enter_scope("iteration"):
                process(item)
    # report is rendered and written when the application scope exits
"""

import functools
import sys
import threading
import weakref
from collections.abc import Callable
from typing import Any

from beartype import beartype
from loguru import logger

from scopeprof._clock import Clock, now
from scopeprof._config import ProfilerConfig
from scopeprof._merge import merge
from scopeprof._registry import Registry
from scopeprof._report import MergedReport, Sink, build_report, format_duration, render, write_report
from scopeprof._tree import ScopeNode, ThreadLocalTree

ReportCallback = Callable[[str], Any]


class ScopeGuard:
    """One active measurement of a scope.

    Use as a context manager; close() is the explicit equivalent and is
    idempotent, so the measurement is committed exactly once. Guards cannot be
    copied or pickled.
    """

    __slots__ = ("_tree", "_node", "_start", "_closed")

    def __init__(self, tree: ThreadLocalTree, node: ScopeNode, start: int) -> None:
        self._tree = tree
        self._node = node
        self._start = start
        self._closed = False

    def __enter__(self) -> "ScopeGuard":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        tree = self._tree
        end = tree.clock()
        self._closed = True
        tree.pop(self._node, end - self._start, end)

    @property
    def name(self) -> str:
        return self._node.name

    @property
    def closed(self) -> bool:
        return self._closed

    def __copy__(self) -> "ScopeGuard":
        raise TypeError(f"{type(self).__name__} cannot be copied")

    def __deepcopy__(self, memo: dict) -> "ScopeGuard":
        raise TypeError(f"{type(self).__name__} cannot be copied")

    def __reduce_ex__(self, protocol: Any) -> Any:
        raise TypeError(f"{type(self).__name__} cannot be pickled")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<{type(self).__name__} {self._node.name!r} {state}>"


class RootGuard(ScopeGuard):
    """Guard spanning the whole measured run.

    Closing it commits its own measurement first, then renders the report and
    writes it to the sink. Failures while reporting are logged, never raised.
    """

    __slots__ = ("_recorder", "_sink", "_on_report")

    def __init__(
        self,
        tree: ThreadLocalTree,
        node: ScopeNode,
        start: int,
        recorder: "ActiveRecorder",
        sink: Sink | None,
        on_report: ReportCallback | None,
    ) -> None:
        super().__init__(tree, node, start)
        self._recorder = recorder
        self._sink = sink
        self._on_report = on_report

    def close(self) -> None:
        if self._closed:
            return
        super().close()
        self._recorder._finish_application(self._sink, self._on_report)


class _ThreadExit:
    """Stored in thread-local storage; collected when its thread ends."""

    __slots__ = ("__weakref__",)


class ActiveRecorder:
    """Recording implementation backed by per-thread trees and a Registry.

    Args:
        registry: Registry receiving thread snapshots (a fresh one by default)
        deep_hierarchy: Key scopes by call path instead of by name
        root_name: Default application scope name
        sink: Default report destination (see write_report)
        clock: Monotonic nanosecond clock

    Design by Contract:
        - every guard commits exactly once
        - report() drains the registry; a second report only shows what was
          recorded after the first
    """

    @beartype
    def __init__(
        self,
        registry: Registry | None = None,
        deep_hierarchy: bool = False,
        root_name: str = "main",
        sink: Sink = "stdout",
        clock: Clock = now,
    ) -> None:
        assert root_name, "Root scope name must be non-empty"
        self._registry = registry if registry is not None else Registry()
        self._deep_hierarchy = deep_hierarchy
        self._default_root_name = root_name
        self._root_name = root_name
        self._sink = sink
        self._clock = clock
        self._local = threading.local()

    @classmethod
    @beartype
    def from_config(cls, config: ProfilerConfig) -> "ActiveRecorder":
        return cls(
            registry=Registry(lock_timeout=config.lock_timeout),
            deep_hierarchy=config.deep_hierarchy,
            root_name=config.root_name,
            sink=config.sink,
        )

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def deep_hierarchy(self) -> bool:
        return self._deep_hierarchy

    def _current_tree(self) -> ThreadLocalTree:
        try:
            return self._local.tree
        except AttributeError:
            return self._attach()

    def _attach(self) -> ThreadLocalTree:
        thread = threading.current_thread()
        tree = ThreadLocalTree(
            sequence=self._registry.sequence_for(thread),
            thread_name=thread.name,
            deep_hierarchy=self._deep_hierarchy,
            clock=self._clock,
        )
        self._registry.track(tree, thread)

        # Thread-local storage is cleared when the thread ends, which collects
        # the sentinel and deposits the tree's final snapshot.
        sentinel = _ThreadExit()
        finalizer = weakref.finalize(sentinel, self._registry.retire, tree)
        finalizer.atexit = False

        self._local.tree = tree
        self._local.sentinel = sentinel
        logger.debug(f"Recording thread {thread.name!r} (sequence {tree.sequence})")
        return tree

    def enter_scope(self, name: str | None = None) -> ScopeGuard:
        """Start measuring a scope on the calling thread.

        Args:
            name: Scope name; defaults to the calling function's name
        """
        if name is None:
            name = sys._getframe(1).f_code.co_name
        tree = self._current_tree()
        node = tree.push(name)
        return ScopeGuard(tree, node, tree.clock())

    def begin_application_scope(
        self,
        name: str | None = None,
        sink: Sink | None = None,
        on_report: ReportCallback | None = None,
    ) -> RootGuard:
        """Start the scope covering the whole run; closing it prints the report.

        Must be the first scope entered on the entry thread so that it is the
        last one to close.

        Args:
            name: Application scope name (default from configuration)
            sink: Report destination, defaults to the recorder's sink
            on_report: Called with the rendered text after it was written
        """
        name = name or self._default_root_name
        tree = self._current_tree()
        if tree.stack:
            logger.warning(
                f"Application scope {name!r} entered inside {tree.stack[-1].name!r}; "
                f"it should be the first scope on its thread and may under-report"
            )
        self._root_name = name
        node = tree.push(name)
        return RootGuard(tree, node, tree.clock(), self, sink, on_report)

    def flush_current_thread(self) -> None:
        """Deposit the calling thread's measurements without ending the thread.

        For pool workers that outlive the report: the pool collaborator must run
        this on each worker thread before the report is taken. Scopes still open
        on this thread keep recording into a fresh tree.
        """
        tree = getattr(self._local, "tree", None)
        if tree is None or tree.is_empty:
            return
        end = tree.clock()
        self._registry.deposit(tree.snapshot(end))
        tree.reset(end)

    @beartype
    def collect(self) -> MergedReport:
        """Flush this thread, drain the registry and merge everything recorded."""
        self.flush_current_thread()
        snapshots = self._registry.drain_all()
        root = merge(snapshots, self._root_name, self._deep_hierarchy)
        return build_report(root)

    @beartype
    def report(self, title: str = "PROFILING RESULTS") -> str:
        """Render everything recorded so far and reset the registry."""
        started = self._clock()
        text = render(self.collect(), title=title)
        logger.debug(f"Profiling report generated in {format_duration(self._clock() - started)}")
        return text

    @beartype
    def print_timings(self, sink: Sink | None = None) -> str:
        """report() and write it to the sink (recorder default when None)."""
        text = self.report()
        write_report(text, sink if sink is not None else self._sink)
        return text

    def _finish_application(self, sink: Sink | None, on_report: ReportCallback | None) -> None:
        try:
            text = self.print_timings(sink)
            unfinished = self._registry.unflushed_threads()
            if unfinished:
                logger.warning(
                    f"Application scope {self._root_name!r} closed while threads "
                    f"{unfinished} were still recording; their scopes are missing from the report"
                )
            if on_report is not None:
                on_report(text)
        except Exception:
            logger.exception("Failed to produce profiling report")

    def profile(self, target: Callable | str | None = None) -> Callable:
        """Decorator measuring every call of a function.

        Usage:
            @recorder.profile
            def load(): ...

            @recorder.profile("parse rows")
            def parse(): ...
        """

        def decorate(fn: Callable, name: str) -> Callable:
            @functools.wraps(fn)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                with self.enter_scope(name):
                    return fn(*args, **kwargs)

            return wrapper

        if callable(target):
            return decorate(target, target.__qualname__)
        return lambda fn: decorate(fn, target or fn.__qualname__)


class NoopGuard:
    """Inert guard returned by NoopRecorder; a single shared instance."""

    __slots__ = ()

    def __enter__(self) -> "NoopGuard":
        return self

    def __exit__(self, *args: Any) -> None:
        return None

    def close(self) -> None:
        return None


_NOOP_GUARD = NoopGuard()


class NoopRecorder:
    """Disabled implementation: same surface as ActiveRecorder, no clock reads,
    no per-call allocation, no output."""

    def enter_scope(self, name: str | None = None) -> NoopGuard:
        return _NOOP_GUARD

    def begin_application_scope(
        self,
        name: str | None = None,
        sink: Sink | None = None,
        on_report: ReportCallback | None = None,
    ) -> NoopGuard:
        return _NOOP_GUARD

    def flush_current_thread(self) -> None:
        return None

    def report(self, title: str = "PROFILING RESULTS") -> str:
        return ""

    def print_timings(self, sink: Sink | None = None) -> str:
        return ""

    def profile(self, target: Callable | str | None = None) -> Callable:
        if callable(target):
            return target
        return lambda fn: fn
