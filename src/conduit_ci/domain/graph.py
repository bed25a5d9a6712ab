"""Deterministic adjacency-list stage graph utilities.

Nodes remember the order in which they were declared. Every traversal that has
to break a tie uses that declaration order so the same pipeline file always schedules the same way.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from heapq import heapify, heappop, heappush


class CycleError(ValueError):
    """Raised when a cycle is detected in the stage graph."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "stage graph contains at least one cycle"
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"stage graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class StageGraph:
    """Directed graph of ``dependency -> dependent`` edges in declaration order."""

    __slots__ = ("_order", "_children", "_parents")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self._order: dict[str, int] = {}
        self._children: dict[str, set[str]] = {}
        self._parents: dict[str, set[str]] = {}

        if nodes is not None:
            for node_id in nodes:
                self.add_node(node_id)

        if edges is not None:
            for parent, child in edges:
                self.add_edge(parent, child)

    @property
    def nodes(self) -> tuple[str, ...]:
        """All node IDs in declaration order."""
        return tuple(self._order)

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as ``(parent, child)`` pairs in declaration order."""
        ordered_edges: list[tuple[str, str]] = []
        for parent in self._order:
            for child in self._sorted(self._children[parent]):
                ordered_edges.append((parent, child))
        return tuple(ordered_edges)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._order

    def __len__(self) -> int:
        return len(self._order)

    def add_node(self, node_id: str) -> None:
        """Add a node if it does not already exist."""
        self._validate_node_id(node_id)
        if node_id in self._order:
            return

        self._order[node_id] = len(self._order)
        self._children[node_id] = set()
        self._parents[node_id] = set()

    def add_edge(self, parent: str, child: str) -> None:
        """Add a directed edge ``parent -> child``; ``child`` depends on ``parent``."""
        if parent not in self._order:
            self.add_node(parent)
        if child not in self._order:
            self.add_node(child)

        self._children[parent].add(child)
        self._parents[child].add(parent)

    def topological_sort(self) -> tuple[str, ...]:
        """Return a declaration-ordered topological ordering or raise ``CycleError``."""
        indegree: dict[str, int] = {node: len(self._parents[node]) for node in self._order}
        ready: list[tuple[int, str]] = [
            (self._order[node], node) for node, degree in indegree.items() if degree == 0
        ]
        heapify(ready)

        order: list[str] = []
        while ready:
            _, node = heappop(ready)
            order.append(node)

            for child in self._children[node]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, (self._order[child], child))

        if len(order) != len(self._order):
            raise CycleError(self.detect_cycles())

        return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles.

        Returns cycle paths as closed paths, e.g. ``("a", "b", "c", "a")``.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in self._order:
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = 0
            frames: list[tuple[str, Iterator[str]]] = [
                (start, iter(self._sorted(self._children[start])))
            ]

            while frames:
                node, child_iter = frames[-1]

                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(self._sorted(self._children[child]))))
                    continue

                if child_state == 1:
                    start_index = stack_index[child]
                    cycle = tuple(stack[start_index:] + [child])
                    cycles[self._canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def get_dependencies(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependencies for ``node_id``."""
        self._assert_node_exists(node_id)
        if not transitive:
            return self._sorted(self._parents[node_id])
        return self._transitive_closure(node_id, upstream=True)

    def get_dependents(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependents for ``node_id``."""
        self._assert_node_exists(node_id)
        if not transitive:
            return self._sorted(self._children[node_id])
        return self._transitive_closure(node_id, upstream=False)

    def _transitive_closure(self, node_id: str, *, upstream: bool) -> tuple[str, ...]:
        adjacency = self._parents if upstream else self._children
        visited: set[str] = set()
        pending: list[str] = list(adjacency[node_id])

        while pending:
            node = pending.pop()
            if node in visited:
                continue

            visited.add(node)
            for neighbor in adjacency[node]:
                if neighbor not in visited:
                    pending.append(neighbor)

        return self._sorted(visited)

    def _sorted(self, node_ids: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted(node_ids, key=self._order.__getitem__))

    @staticmethod
    def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
        core = tuple(cycle[:-1])
        if len(core) == 1:
            return (core[0], core[0])

        best = core
        for offset in range(1, len(core)):
            rotated = core[offset:] + core[:offset]
            if rotated < best:
                best = rotated

        return best + (best[0],)

    @staticmethod
    def _validate_node_id(node_id: str) -> None:
        if not isinstance(node_id, str) or not node_id:
            raise ValueError("node ID must be a non-empty string")

    def _assert_node_exists(self, node_id: str) -> None:
        if node_id not in self._order:
            raise KeyError(f"unknown node: {node_id}")


__all__ = ["CycleError", "StageGraph"]
