"""Process-wide collection point for finished or flushed thread trees.

The lock here is the only synchronization in the package. It guards deposit
and drain and is held for a list append or swap, never across a measurement.

Design by Contract:
- A tree is retired (final snapshot deposited) at most once
- drain_all() returns snapshots ordered by (thread sequence, deposit order)
- Lock timeouts degrade the report, they never raise
"""

import itertools
import threading
import weakref
from collections.abc import Generator
from contextlib import contextmanager

from beartype import beartype
from loguru import logger

from scopeprof._tree import ThreadLocalTree, TreeSnapshot


class Registry:
    """Thread-safe store of TreeSnapshot deposits.

    Args:
        lock_timeout: Seconds to wait for the registry lock before giving up

    Example:
        registry = Registry(lock_timeout=1.0)
        registry.deposit(tree.snapshot(clock()))
        snapshots = registry.drain_all()
    """

    @beartype
    def __init__(self, lock_timeout: float = 1.0) -> None:
        assert lock_timeout > 0, f"Lock timeout must be positive: {lock_timeout}"
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._sequences = itertools.count()
        self._deposits = itertools.count()
        self._entries: list[tuple[int, int, TreeSnapshot]] = []
        self._live: dict[int, tuple[ThreadLocalTree, weakref.ref]] = {}
        self._start_order: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    @contextmanager
    def _locked(self, action: str) -> Generator[bool, None, None]:
        acquired = self._lock.acquire(timeout=self._lock_timeout)
        if not acquired:
            logger.warning(
                f"Registry lock not acquired within {self._lock_timeout}s during {action}; "
                f"report will be missing data"
            )
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()

    def next_sequence(self) -> int:
        """Return a fresh sequence number (strictly increasing)."""
        return next(self._sequences)

    @beartype
    def sequence_for(self, thread: threading.Thread) -> int:
        """Start-order number of a thread, whichever thread records first.

        threading.enumerate() lists live threads in the order they were
        started, so every thread not numbered yet is numbered from it in one
        pass. A worker that enters its first scope late still sorts after the
        threads started before it and before the ones started after it.
        """
        with self._locked("sequence") as acquired:
            if not acquired:
                return self.next_sequence()
            order = self._start_order
            if thread not in order:
                for live in threading.enumerate():
                    if live not in order:
                        order[live] = self.next_sequence()
                if thread not in order:
                    order[thread] = self.next_sequence()
            return order[thread]

    @beartype
    def track(self, tree: ThreadLocalTree, thread: threading.Thread) -> None:
        """Remember a live tree so it can be retired once its thread is gone."""
        with self._locked("track") as acquired:
            if acquired:
                self._live[id(tree)] = (tree, weakref.ref(thread))

    @beartype
    def deposit(self, snapshot: TreeSnapshot) -> None:
        """Store an immutable snapshot (thread-safe)."""
        if not snapshot.nodes:
            return

        with self._locked("deposit") as acquired:
            if not acquired:
                return
            self._entries.append((snapshot.sequence, next(self._deposits), snapshot))

        logger.debug(
            f"Deposited {len(snapshot.nodes)} scopes from thread "
            f"{snapshot.thread_name!r} (sequence {snapshot.sequence})"
        )

    @beartype
    def retire(self, tree: ThreadLocalTree) -> None:
        """Deposit the final snapshot of a finished thread's tree, once."""
        with self._locked("retire") as acquired:
            if not acquired or self._live.pop(id(tree), None) is None:
                return

        # Owner thread is gone, nobody else mutates the tree any more.
        self.deposit(tree.snapshot(tree.last_ns))

    def _sweep_finished(self) -> None:
        with self._locked("sweep") as acquired:
            if not acquired:
                return
            finished = []
            for tree, thread_ref in self._live.values():
                thread = thread_ref()
                if thread is None or not thread.is_alive():
                    finished.append(tree)

        for tree in finished:
            self.retire(tree)

    def drain_all(self) -> list[TreeSnapshot]:
        """Take and clear every deposited snapshot, in deterministic order.

        Trees of threads that have already exited are retired first, so a
        report taken right after join() includes them even if their
        thread-local cleanup has not run yet.
        """
        self._sweep_finished()

        with self._locked("drain") as acquired:
            if not acquired:
                return []
            entries, self._entries = self._entries, []

        entries.sort(key=lambda entry: (entry[0], entry[1]))
        logger.debug(f"Drained {len(entries)} snapshots from registry")
        return [snapshot for _, _, snapshot in entries]

    @property
    def live_threads(self) -> int:
        """Number of tracked trees whose thread has not been retired yet."""
        return len(self._live)

    def unflushed_threads(self) -> list[str]:
        """Names of other live threads still holding measurements not deposited."""
        current = threading.current_thread()
        with self._locked("inspect") as acquired:
            if not acquired:
                return []
            return [
                tree.thread_name
                for tree, thread_ref in self._live.values()
                if thread_ref() is not current and not tree.is_empty
            ]
