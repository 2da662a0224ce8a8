"""Combine per-thread snapshots into one MergedNode tree.

Real time vs CPU time:
- cpu_ns sums every committed duration across all threads (total work)
- real_ns is the largest single-thread outermost total (wall-clock
  contribution assuming the threads overlapped), so recursion and parallel
  threads are never double counted

A thread that flushed several times deposits several snapshots under the same
sequence; they are summed per thread before the max is taken.

Row order is the global first-seen order: snapshots in drain order, and
nodes inside a snapshot in the order the thread first entered them.

Placement: a key goes under the closest scope that was open around every one
of its calls (its immediate dominator in the parent -> child call graph
rooted at the application scope). In deep-hierarchy mode that is always the
path parent. In flat-merge mode a name called from several scopes moves up to
their common enclosing scope, so a row's real time never exceeds its
parent's on the same thread.
"""

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass

from beartype import beartype

from scopeprof._tree import ScopeKey, TreeSnapshot


@dataclass(frozen=True)
class MergedNode:
    """Statistics for one ScopeKey combined across every thread.

    Attributes:
        key: Scope identity (name, or path of names in deep-hierarchy mode)
        name: Display name
        calls: Total committed calls across threads
        cpu_ns: Sum of accumulated durations across threads
        real_ns: Maximum single-thread accumulated duration
        threads: Number of distinct threads that recorded this key
        children: Child nodes in global first-seen order
    """

    key: ScopeKey
    name: str
    calls: int
    cpu_ns: int
    real_ns: int
    threads: int
    children: tuple["MergedNode", ...] = ()

    @property
    def has_cpu_time(self) -> bool:
        """CPU time only carries information when it differs from real time."""
        return self.cpu_ns != self.real_ns


def root_key_for(root_name: str, deep_hierarchy: bool) -> ScopeKey:
    return (root_name,) if deep_hierarchy else root_name


def _intersect(
    a: ScopeKey,
    b: ScopeKey,
    idom: dict[ScopeKey, ScopeKey],
    postorder: dict[ScopeKey, int],
) -> ScopeKey:
    while a != b:
        while postorder[a] < postorder[b]:
            a = idom[a]
        while postorder[b] < postorder[a]:
            b = idom[b]
    return a


def enclosing_scopes(
    start: ScopeKey,
    edges: dict[ScopeKey, dict[ScopeKey, None]],
) -> dict[ScopeKey, ScopeKey]:
    """Immediate dominator of every key reachable from start.

    Iterative dominator computation over reverse postorder (Cooper, Harvey
    and Kennedy). Every call stack is a path from start in the graph, so the
    dominator of a key was open around each of its calls.

    Args:
        start: The application scope key
        edges: parent -> ordered set of children, for every recorded nesting

    Returns:
        Mapping from key to its enclosing scope; start maps to itself
    """
    postorder: dict[ScopeKey, int] = {}
    visited = {start}
    pending = [(start, iter(edges.get(start, ())))]
    while pending:
        key, children = pending[-1]
        for child in children:
            if child not in visited:
                visited.add(child)
                pending.append((child, iter(edges.get(child, ()))))
                break
        else:
            pending.pop()
            postorder[key] = len(postorder)

    predecessors: dict[ScopeKey, list[ScopeKey]] = defaultdict(list)
    for parent, children in edges.items():
        for child in children:
            predecessors[child].append(parent)

    ordered = sorted(postorder, key=postorder.__getitem__, reverse=True)
    idom: dict[ScopeKey, ScopeKey] = {start: start}
    changed = True
    while changed:
        changed = False
        for key in ordered:
            if key == start:
                continue
            processed = [p for p in predecessors[key] if p in idom]
            new_idom = processed[0]
            for parent in processed[1:]:
                new_idom = _intersect(parent, new_idom, idom, postorder)
            if idom.get(key) != new_idom:
                idom[key] = new_idom
                changed = True

    return idom


@beartype
def merge(
    snapshots: Sequence[TreeSnapshot],
    root_name: str,
    deep_hierarchy: bool,
) -> MergedNode:
    """Merge thread snapshots into a tree rooted at the application scope.

    Args:
        snapshots: Snapshots in drain order (as returned by Registry.drain_all)
        root_name: Name of the application (root) scope
        deep_hierarchy: Whether keys are paths instead of names

    Returns:
        The report root. If no snapshot recorded the root scope, a synthetic
        root spanning the recorded thread time is returned instead.
    """
    root_key = root_key_for(root_name, deep_hierarchy)

    order: dict[ScopeKey, int] = {}
    names: dict[ScopeKey, str] = {root_key: root_name}
    edges: dict[ScopeKey, dict[ScopeKey, None]] = defaultdict(dict)
    calls: dict[ScopeKey, int] = defaultdict(int)
    cpu: dict[ScopeKey, int] = defaultdict(int)
    # key -> thread sequence -> outermost time summed over that thread's snapshots
    outer: dict[ScopeKey, dict[int, int]] = defaultdict(lambda: defaultdict(int))

    thread_time: dict[int, int] = defaultdict(int)
    threads_in_root: set[int] = set()
    closed_root: set[int] = set()
    open_root_ns: dict[int, int] = defaultdict(int)

    for snapshot in snapshots:
        sequence = snapshot.sequence
        thread_time[sequence] += snapshot.thread_time_ns

        for key in snapshot.top_level:
            if key != root_key:
                edges[root_key][key] = None

        for node in snapshot.nodes:
            key = node.key
            if key not in order:
                order[key] = len(order)
                names[key] = node.name

            parent = root_key if node.parent is None else node.parent
            if key != root_key and parent != key:
                edges[parent][key] = None
            for child in node.children:
                if child != key and child != root_key:
                    edges[key][child] = None

            if key == root_key:
                threads_in_root.add(sequence)
                if node.calls == 0:
                    # Root still open: the thread has been inside it all along.
                    open_root_ns[sequence] += snapshot.thread_time_ns
                else:
                    closed_root.add(sequence)

            calls[key] += node.calls
            cpu[key] += node.total_ns
            outer[key][sequence] += node.outer_ns

    for sequence, elapsed in open_root_ns.items():
        if sequence not in closed_root:
            cpu[root_key] += elapsed
            outer[root_key][sequence] += elapsed

    # Threads that never entered the root ran alongside it.
    outside = [sequence for sequence in thread_time if sequence not in threads_in_root]
    outside_ns = sum(thread_time[sequence] for sequence in outside)

    real = {key: max(per_thread.values()) for key, per_thread in outer.items()}
    threads = {key: len(per_thread) for key, per_thread in outer.items()}

    if root_key in order:
        cpu[root_key] += outside_ns
        threads[root_key] += len(outside)
    else:
        cpu[root_key] = outside_ns
        real[root_key] = max(thread_time.values(), default=0)
        threads[root_key] = len(outside)

    enclosing = enclosing_scopes(root_key, edges)
    placed: dict[ScopeKey, list[ScopeKey]] = defaultdict(list)
    for key in order:
        if key != root_key:
            placed[enclosing.get(key, root_key)].append(key)

    # Children must be built before their parents; dominator depth order
    # guarantees it, and the root is built last.
    depth: dict[ScopeKey, int] = {root_key: 0}
    for key in order:
        chain = []
        ancestor = key
        while ancestor not in depth:
            chain.append(ancestor)
            ancestor = enclosing.get(ancestor, root_key)
        for step in reversed(chain):
            depth[step] = depth[ancestor] + 1
            ancestor = step

    built: dict[ScopeKey, MergedNode] = {}
    for key in sorted(depth, key=depth.__getitem__, reverse=True):
        built[key] = MergedNode(
            key=key,
            name=names[key],
            calls=calls[key],
            cpu_ns=cpu[key],
            real_ns=real.get(key, 0),
            threads=threads.get(key, 0),
            children=tuple(built[child] for child in placed.get(key, ())),
        )

    return built[root_key]
