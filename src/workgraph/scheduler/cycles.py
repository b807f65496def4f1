"""Dependency cycle detection over ``blocks`` edges."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from workgraph.scheduler.models import BLOCKS_RELATION, DependencyEdge


@dataclass(slots=True)
class CycleReport:
    """Cycle members, one path per strongly connected component, one path per member."""

    members: set[str] = field(default_factory=set)
    cycles: list[list[str]] = field(default_factory=list)
    paths: dict[str, list[str]] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.members)


def detect_cycles(
    task_ids: Iterable[str],
    edges_by_task: Mapping[str, list[DependencyEdge]],
) -> CycleReport:
    """Find every task that lies on a ``blocks`` cycle.

    Edges pointing outside ``task_ids`` are ignored. Traversal is an iterative
    Tarjan DFS so deep chains do not hit the recursion limit. Results are
    deterministic for the same input.
    """

    nodes = sorted(set(task_ids))
    node_set = set(nodes)
    adjacency: dict[str, list[str]] = {}
    for node in nodes:
        adjacency[node] = sorted(
            {
                edge.depends_on_task_id
                for edge in edges_by_task.get(node, [])
                if edge.relation_type == BLOCKS_RELATION and edge.depends_on_task_id in node_set
            },
        )

    report = CycleReport()
    for component in _strongly_connected_components(nodes, adjacency):
        if len(component) == 1:
            only = component[0]
            if only not in adjacency[only]:
                continue
        members = set(component)
        report.members.update(members)
        for member in sorted(members):
            report.paths[member] = _shortest_cycle(member, adjacency, members)
        report.cycles.append(report.paths[min(members)])
    return report


def _strongly_connected_components(
    nodes: list[str],
    adjacency: Mapping[str, list[str]],
) -> list[list[str]]:
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for root in nodes:
        if root in index_of:
            continue
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            node, child_pos = work.pop()
            if child_pos == 0:
                index_of[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            children = adjacency[node]
            descended = False
            while child_pos < len(children):
                child = children[child_pos]
                child_pos += 1
                if child not in index_of:
                    work.append((node, child_pos))
                    work.append((child, 0))
                    descended = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if descended:
                continue
            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
    return components


def _shortest_cycle(start: str, adjacency: Mapping[str, list[str]], members: set[str]) -> list[str]:
    """BFS inside one component for the shortest path ``start -> ... -> start``."""

    parents: dict[str, str] = {}
    queue: deque[str] = deque([start])
    seen = {start}
    while queue:
        node = queue.popleft()
        for child in adjacency[node]:
            if child not in members:
                continue
            if child == start:
                path = [start]
                cursor = node
                while cursor != start:
                    path.append(cursor)
                    cursor = parents[cursor]
                path.append(start)
                return [path[0], *reversed(path[1:-1]), path[-1]]
            if child in seen:
                continue
            seen.add(child)
            parents[child] = node
            queue.append(child)
    return [start, start]
