#!/usr/bin/env python3
"""Object dependency graph built from parsed migration statements."""

from __future__ import annotations

import dataclasses
import heapq
from collections import defaultdict
from typing import Callable, Iterable

from sql_statements import EdgeKind, MigrationFile, SourceLocation, SqlStatement, StatementKind, iter_statements


class CycleError(ValueError):
    def __init__(self, members: list[str]):
        self.members = members
        super().__init__("dependency cycle: " + " -> ".join(members))


@dataclasses.dataclass
class DependencyGraph:
    """Adjacency list keyed by object index; an edge ``a -> b`` means a depends on b."""

    names: list[str] = dataclasses.field(default_factory=list)
    index: dict[str, int] = dataclasses.field(default_factory=dict)
    adjacency: list[dict[int, EdgeKind]] = dataclasses.field(default_factory=list)
    kinds: dict[str, StatementKind] = dataclasses.field(default_factory=dict)
    definitions: dict[str, list[SourceLocation]] = dataclasses.field(default_factory=dict)
    external_references: dict[str, set[str]] = dataclasses.field(default_factory=dict)
    file_dependencies: dict[str, set[str]] = dataclasses.field(default_factory=dict)

    def add_node(self, name: str) -> int:
        idx = self.index.get(name)
        if idx is None:
            idx = len(self.names)
            self.names.append(name)
            self.index[name] = idx
            self.adjacency.append({})
        return idx

    def add_edge(self, source: str, target: str, kind: EdgeKind) -> bool:
        if source == target:
            return False
        src, dst = self.index[source], self.index[target]
        if dst in self.adjacency[src]:
            return False
        self.adjacency[src][dst] = kind
        return True

    def __contains__(self, name: object) -> bool:
        return name in self.index

    def __len__(self) -> int:
        return len(self.names)

    def edges(self) -> list[tuple[str, str, EdgeKind]]:
        out = []
        for src, targets in enumerate(self.adjacency):
            for dst, kind in targets.items():
                out.append((self.names[src], self.names[dst], kind))
        return sorted(out, key=lambda e: (e[0], e[1]))

    def dependencies(self, name: str) -> list[str]:
        return sorted(self.names[i] for i in self.adjacency[self.index[name]])

    def dependents(self, name: str) -> list[str]:
        idx = self.index[name]
        return sorted(self.names[src] for src, targets in enumerate(self.adjacency) if idx in targets)

    def first_location(self, name: str) -> SourceLocation | None:
        locations = self.definitions.get(name)
        return locations[0] if locations else None

    def position_key(self, name: str) -> tuple:
        loc = self.first_location(name)
        if loc is None:
            return (float("inf"), "", 0, name)
        return (loc.ordinal, loc.file_name, loc.statement_index, name)

    def strongly_connected_components(self) -> list[list[str]]:
        """Iterative Tarjan SCC. Returns components of two or more objects, sorted."""
        counter = 0
        indices: dict[int, int] = {}
        lowlink: dict[int, int] = {}
        on_stack: set[int] = set()
        stack: list[int] = []
        components: list[list[str]] = []

        for root in range(len(self.names)):
            if root in indices:
                continue
            work: list[tuple[int, Iterable[int]]] = [(root, iter(sorted(self.adjacency[root])))]
            indices[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            while work:
                node, successors = work[-1]
                advanced = False
                for succ in successors:
                    if succ not in indices:
                        indices[succ] = lowlink[succ] = counter
                        counter += 1
                        stack.append(succ)
                        on_stack.add(succ)
                        work.append((succ, iter(sorted(self.adjacency[succ]))))
                        advanced = True
                        break
                    if succ in on_stack:
                        lowlink[node] = min(lowlink[node], indices[succ])
                if advanced:
                    continue
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] == indices[node]:
                    members: list[int] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        members.append(member)
                        if member == node:
                            break
                    if len(members) >= 2:
                        components.append(sorted(self.names[m] for m in members))
        return sorted(components)

    def has_cycle(self) -> bool:
        return bool(self.strongly_connected_components())

    def topological_order(
        self,
        names: Iterable[str] | None = None,
        key: Callable[[str], tuple] | None = None,
    ) -> list[str]:
        """Kahn's algorithm over ``names`` (default: all nodes), dependencies first.

        Edges leaving the selected subset are ignored. Ties go to the smallest ``key``,
        which defaults to the first definition location.
        """
        key = key or self.position_key
        selected = set(self.names if names is None else names)
        pending: dict[str, int] = {}
        dependents: dict[str, list[str]] = defaultdict(list)
        for name in selected:
            deps = [self.names[i] for i in self.adjacency[self.index[name]]] if name in self.index else []
            deps = [d for d in deps if d in selected]
            pending[name] = len(deps)
            for dep in deps:
                dependents[dep].append(name)

        heap = [(key(name), name) for name, count in pending.items() if count == 0]
        heapq.heapify(heap)
        order: list[str] = []
        while heap:
            _, name = heapq.heappop(heap)
            order.append(name)
            for dependent in dependents[name]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    heapq.heappush(heap, (key(dependent), dependent))
        if len(order) != len(selected):
            raise CycleError(sorted(name for name, count in pending.items() if count > 0))
        return order


# Relations are composite types too, so signatures may name them.
TYPE_USAGE_TARGETS = frozenset(
    {
        StatementKind.CREATE_TYPE,
        StatementKind.CREATE_TABLE,
        StatementKind.CREATE_VIEW,
        StatementKind.CREATE_MATERIALIZED_VIEW,
    }
)


def _statement_source(stmt: SqlStatement) -> str | None:
    if stmt.kind is StatementKind.OTHER or stmt.kind.is_drop:
        return None
    return stmt.target_object


def build_statement_graph(statements: Iterable[SqlStatement]) -> DependencyGraph:
    graph = DependencyGraph()
    statements = list(statements)

    for stmt in statements:
        if stmt.kind.is_create and stmt.target_object:
            graph.add_node(stmt.target_object)
            graph.kinds.setdefault(stmt.target_object, stmt.kind)
            graph.definitions.setdefault(stmt.target_object, []).append(stmt.location)

    defining_files = {name: locations[0].file_name for name, locations in graph.definitions.items()}

    for stmt in statements:
        source = _statement_source(stmt)
        if source is None or source not in graph:
            continue
        for ref, kind in stmt.references.items():
            if kind is EdgeKind.TYPE_USAGE and graph.kinds.get(ref) not in TYPE_USAGE_TARGETS:
                continue
            if ref not in graph:
                graph.external_references.setdefault(ref, set()).add(source)
                continue
            graph.add_edge(source, ref, kind)
            ref_file = defining_files[ref]
            if ref_file != stmt.location.file_name:
                graph.file_dependencies.setdefault(stmt.location.file_name, set()).add(ref_file)
    return graph


def build_graph(files: list[MigrationFile]) -> DependencyGraph:
    return build_statement_graph(iter_statements(files))
