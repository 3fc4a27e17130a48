from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from formengine.core.errors import CycleError


@dataclass(frozen=True)
class FieldDependency:
    field: str
    depends_on: Tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.field:
            raise ValueError("field is required")
        object.__setattr__(self, "depends_on", tuple(self.depends_on))


class DependencyGraph:
    """
    Field -> fields it reads.

    Nodes live in a flat list (index = node id); edges are index lists:
      - _reads[i]:   nodes that field i depends on
      - _readers[i]: nodes that depend on field i
    Cyclic configurations are rejected at register() time.
    """

    def __init__(self, dependencies: Iterable[FieldDependency] = ()):
        self._names: List[str] = []
        self._index: Dict[str, int] = {}
        self._reads: List[List[int]] = []
        self._readers: List[List[int]] = []
        for dep in dependencies:
            self.register(dep)

    # ----------------------------
    # Nodes / edges
    # ----------------------------
    def _node(self, name: str) -> int:
        idx = self._index.get(name)
        if idx is None:
            idx = len(self._names)
            self._names.append(name)
            self._index[name] = idx
            self._reads.append([])
            self._readers.append([])
        return idx

    def add_field(self, field: str) -> None:
        self._node(field)

    def __contains__(self, field: object) -> bool:
        return field in self._index

    @property
    def fields(self) -> List[str]:
        return list(self._names)

    def register(self, dependency: FieldDependency) -> None:
        """
        Adds dependency edges. If they close a cycle the edges are rolled back
        and CycleError is raised.
        """
        src = self._node(dependency.field)
        added: List[int] = []
        for name in dependency.depends_on:
            if name == dependency.field:
                self._rollback(src, added)
                raise CycleError([name, name])
            dst = self._node(name)
            if dst in self._reads[src]:
                continue
            self._reads[src].append(dst)
            self._readers[dst].append(src)
            added.append(dst)

        cycle = self.find_cycle()
        if cycle is not None:
            self._rollback(src, added)
            raise CycleError(cycle)

    def _rollback(self, src: int, added: List[int]) -> None:
        for dst in added:
            self._reads[src].remove(dst)
            self._readers[dst].remove(src)

    def dependencies_of(self, field: str) -> List[str]:
        idx = self._index.get(field)
        if idx is None:
            return []
        return [self._names[i] for i in self._reads[idx]]

    def dependents_of(self, field: str) -> List[str]:
        idx = self._index.get(field)
        if idx is None:
            return []
        return [self._names[i] for i in self._readers[idx]]

    # ----------------------------
    # Cycle detection
    # ----------------------------
    def find_cycle(self) -> Optional[List[str]]:
        """
        Iterative DFS with an explicit recursion stack.
        Returns the offending path (first node repeated at the end) or None.
        """
        WHITE, GREY, BLACK = 0, 1, 2
        color = [WHITE] * len(self._names)

        for root in range(len(self._names)):
            if color[root] != WHITE:
                continue
            stack: List[Tuple[int, int]] = [(root, 0)]
            path: List[int] = [root]
            color[root] = GREY
            while stack:
                node, edge_pos = stack[-1]
                edges = self._reads[node]
                if edge_pos < len(edges):
                    stack[-1] = (node, edge_pos + 1)
                    nxt = edges[edge_pos]
                    if color[nxt] == GREY:
                        start = path.index(nxt)
                        return [self._names[i] for i in path[start:]] + [self._names[nxt]]
                    if color[nxt] == WHITE:
                        color[nxt] = GREY
                        stack.append((nxt, 0))
                        path.append(nxt)
                else:
                    color[node] = BLACK
                    stack.pop()
                    path.pop()
        return None

    def validate_no_cycles(self) -> None:
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleError(cycle)

    # ----------------------------
    # Ordering
    # ----------------------------
    def _kahn_levels(self) -> List[List[int]]:
        indegree = [len(r) for r in self._reads]
        level = [i for i, d in enumerate(indegree) if d == 0]
        levels: List[List[int]] = []
        seen = 0
        while level:
            levels.append(level)
            seen += len(level)
            nxt: List[int] = []
            for node in level:
                for reader in self._readers[node]:
                    indegree[reader] -= 1
                    if indegree[reader] == 0:
                        nxt.append(reader)
            level = nxt
        if seen != len(self._names):
            self.validate_no_cycles()
        return levels

    def levels(self) -> List[List[str]]:
        """
        Groups of fields with no dependency between them. Every field appears
        after all fields it depends on (in an earlier group).
        """
        return [[self._names[i] for i in lvl] for lvl in self._kahn_levels()]

    def topological_order(self) -> List[str]:
        return [name for lvl in self.levels() for name in lvl]

    def affected(self, changed_field: str) -> List[str]:
        """
        Fields that transitively read `changed_field`, in topological order.
        The changed field itself is not included.
        """
        start = self._index.get(changed_field)
        if start is None:
            return []

        reached = set()
        queue = deque(self._readers[start])
        while queue:
            node = queue.popleft()
            if node in reached or node == start:
                continue
            reached.add(node)
            queue.extend(self._readers[node])

        if not reached:
            return []
        return [self._names[i] for lvl in self._kahn_levels() for i in lvl if i in reached]
