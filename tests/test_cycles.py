from __future__ import annotations

import allure

from workgraph.scheduler.cycles import detect_cycles
from workgraph.scheduler.models import DependencyEdge


pytestmark = [
    allure.epic("Task Scheduling"),
    allure.feature("Cycle Detection"),
]


def _edges(*pairs: tuple[str, str], relation: str = "blocks") -> dict[str, list[DependencyEdge]]:
    edges: dict[str, list[DependencyEdge]] = {}
    for task_id, depends_on in pairs:
        edges.setdefault(task_id, []).append(
            DependencyEdge(task_id=task_id, depends_on_task_id=depends_on, relation_type=relation),
        )
    return edges


def test_acyclic_graph_reports_nothing() -> None:
    report = detect_cycles(["a", "b", "c"], _edges(("b", "a"), ("c", "b")))

    assert not report
    assert report.members == set()
    assert report.cycles == []


def test_two_node_cycle_reports_closed_path_per_member() -> None:
    report = detect_cycles(["a", "b", "c"], _edges(("a", "b"), ("b", "a"), ("c", "a")))

    assert report.members == {"a", "b"}
    assert report.paths["a"] == ["a", "b", "a"]
    assert report.paths["b"] == ["b", "a", "b"]
    assert report.cycles == [["a", "b", "a"]]


def test_self_loop_is_a_cycle() -> None:
    report = detect_cycles(["a"], _edges(("a", "a")))

    assert report.members == {"a"}
    assert report.paths["a"] == ["a", "a"]


def test_separate_components_each_get_one_cycle() -> None:
    report = detect_cycles(
        ["a", "b", "c", "x", "y"],
        _edges(("a", "b"), ("b", "c"), ("c", "a"), ("x", "y"), ("y", "x")),
    )

    assert report.members == {"a", "b", "c", "x", "y"}
    assert report.cycles == [["a", "b", "c", "a"], ["x", "y", "x"]]


def test_non_blocking_relations_and_outside_edges_are_ignored() -> None:
    related = _edges(("a", "b"), ("b", "a"), relation="relates_to")
    related.setdefault("a", []).append(DependencyEdge(task_id="a", depends_on_task_id="zzz"))

    assert not detect_cycles(["a", "b"], related)


def test_long_chain_does_not_hit_recursion_limit() -> None:
    size = 2_000
    ids = [f"t{index:05d}" for index in range(size)]
    pairs = [(ids[index], ids[index + 1]) for index in range(size - 1)]
    pairs.append((ids[-1], ids[0]))

    report = detect_cycles(ids, _edges(*pairs))

    assert len(report.members) == size
    assert report.paths[ids[0]][0] == report.paths[ids[0]][-1] == ids[0]
    assert len(report.paths[ids[0]]) == size + 1
