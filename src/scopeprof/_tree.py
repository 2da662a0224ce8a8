"""Per-thread aggregate tree and its immutable snapshots.

A ThreadLocalTree is owned by exactly one thread. Only that thread pushes and
pops scopes on it, so nothing here takes a lock. Deposits copy the tree into
frozen TreeSnapshot objects which can then be shared freely.

Design by Contract:
- calls and total_ns only grow between resets
- outer_ns <= total_ns for every node
- a node's parent key (if any) was created before the node
"""

from dataclasses import dataclass

from loguru import logger

from scopeprof._clock import Clock

# Flat-merge mode keys scopes by name, deep-hierarchy mode by the path of names.
ScopeKey = str | tuple[str, ...]


class ScopeNode:
    """Aggregate for one ScopeKey within a thread."""

    __slots__ = ("key", "name", "parent", "children", "total_ns", "outer_ns", "calls", "active")

    def __init__(self, key: ScopeKey, name: str, parent: ScopeKey | None) -> None:
        self.key = key
        self.name = name
        self.parent = parent
        # dict used as an insertion-ordered set
        self.children: dict[ScopeKey, None] = {}
        self.total_ns = 0
        self.outer_ns = 0
        self.calls = 0
        self.active = 0

    def __repr__(self) -> str:
        return f"ScopeNode({self.key!r}, calls={self.calls}, total_ns={self.total_ns})"


@dataclass(frozen=True)
class NodeSnapshot:
    key: ScopeKey
    name: str
    parent: ScopeKey | None
    children: tuple[ScopeKey, ...]
    total_ns: int
    outer_ns: int
    calls: int


@dataclass(frozen=True)
class TreeSnapshot:
    """Immutable copy of one thread's tree, as stored in the Registry.

    Attributes:
        sequence: Thread start order; every snapshot of one thread shares it
        thread_name: Name of the recording thread
        thread_time_ns: Time the thread spent recording since start or last flush
        nodes: Node snapshots in the thread's first-seen order
        top_level: Keys entered while no other scope was open on the thread
    """

    sequence: int
    thread_name: str
    thread_time_ns: int
    nodes: tuple[NodeSnapshot, ...]
    top_level: tuple[ScopeKey, ...] = ()

    def __post_init__(self) -> None:
        assert self.thread_time_ns >= 0, (
            f"Thread time cannot be negative: {self.thread_time_ns}ns"
        )


class ThreadLocalTree:
    """Mutable per-thread recording state.

    Holds every ScopeNode seen by the thread in first-seen order, plus the
    LIFO stack of scopes currently open.
    """

    def __init__(
        self,
        sequence: int,
        thread_name: str,
        deep_hierarchy: bool,
        clock: Clock,
    ) -> None:
        self.sequence = sequence
        self.thread_name = thread_name
        self.deep_hierarchy = deep_hierarchy
        self.clock = clock
        self.nodes: dict[ScopeKey, ScopeNode] = {}
        self.top_level: dict[ScopeKey, None] = {}
        self.stack: list[ScopeNode] = []
        self.started_ns: int = clock()
        self.last_ns: int = self.started_ns

    def push(self, name: str) -> ScopeNode:
        stack = self.stack
        parent = stack[-1] if stack else None

        if self.deep_hierarchy:
            key: ScopeKey = parent.key + (name,) if parent is not None else (name,)
        else:
            key = name

        node = self.nodes.get(key)
        if node is None:
            node = ScopeNode(key, name, parent.key if parent is not None else None)
            self.nodes[key] = node
            if parent is not None:
                parent.children[key] = None
        elif parent is not None and parent is not node and key not in parent.children:
            parent.children[key] = None

        if parent is None and key not in self.top_level:
            self.top_level[key] = None

        node.active += 1
        stack.append(node)
        return node

    def pop(self, node: ScopeNode, elapsed_ns: int, end_ns: int) -> None:
        node.total_ns += elapsed_ns
        node.calls += 1
        node.active -= 1
        if node.active == 0:
            node.outer_ns += elapsed_ns
        self.last_ns = end_ns

        stack = self.stack
        if stack and stack[-1] is node:
            stack.pop()
            return

        # Closed out of LIFO order: drop the innermost frame belonging to node.
        logger.warning(
            f"Scope {node.name!r} closed out of order on thread {self.thread_name!r}; "
            f"open scopes: {[n.name for n in stack]}"
        )
        for index in range(len(stack) - 1, -1, -1):
            if stack[index] is node:
                del stack[index]
                break

    def snapshot(self, end_ns: int) -> TreeSnapshot:
        nodes = tuple(
            NodeSnapshot(
                key=node.key,
                name=node.name,
                parent=node.parent,
                children=tuple(node.children),
                total_ns=node.total_ns,
                outer_ns=node.outer_ns,
                calls=node.calls,
            )
            for node in self.nodes.values()
        )
        return TreeSnapshot(
            sequence=self.sequence,
            thread_name=self.thread_name,
            thread_time_ns=max(end_ns - self.started_ns, 0),
            nodes=nodes,
            top_level=tuple(self.top_level),
        )

    def reset(self, now_ns: int) -> None:
        """Forget everything except the scopes still open, zeroing their counters.

        Open guards keep references to their nodes, so those nodes are reused
        in place rather than recreated.
        """
        open_nodes = {node.key: node for node in self.stack}
        for node in open_nodes.values():
            node.total_ns = 0
            node.outer_ns = 0
            node.calls = 0
            node.children = {k: None for k in node.children if k in open_nodes}
        self.nodes = open_nodes
        self.top_level = {self.stack[0].key: None} if self.stack else {}
        self.started_ns = now_ns
        self.last_ns = now_ns

    @property
    def is_empty(self) -> bool:
        return not self.nodes
