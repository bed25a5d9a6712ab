"""Unit tests for the declaration-ordered stage graph and cycle rejection."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conduit_ci.domain.errors import ConfigError
from conduit_ci.domain.graph import CycleError, StageGraph
from conduit_ci.domain.models import PipelineDefinition, StageDefinition


def _stage(stage_id: str, *deps: str) -> StageDefinition:
    return StageDefinition(id=stage_id, command=("true",), depends_on=deps)


def test_topological_sort_breaks_ties_by_declaration_order() -> None:
    graph = StageGraph(
        nodes=("checkout", "lint", "build", "scan", "publish"),
        edges=(
            ("checkout", "build"),
            ("checkout", "lint"),
            ("build", "scan"),
            ("scan", "publish"),
            ("lint", "publish"),
        ),
    )

    assert graph.topological_sort() == ("checkout", "lint", "build", "scan", "publish")


def test_transitive_dependents_and_dependencies() -> None:
    graph = StageGraph(edges=(("a", "b"), ("b", "c"), ("a", "d")))

    assert graph.get_dependents("a") == ("b", "d")
    assert graph.get_dependents("a", transitive=True) == ("b", "c", "d")
    assert graph.get_dependencies("c", transitive=True) == ("a", "b")
    assert graph.get_dependencies("a") == ()


def test_detect_cycles_reports_closed_paths() -> None:
    graph = StageGraph(edges=(("a", "b"), ("b", "c"), ("c", "a"), ("x", "y")))

    with pytest.raises(CycleError) as exc_info:
        graph.topological_sort()

    assert exc_info.value.cycles
    cycle = exc_info.value.cycles[0]
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_self_dependency_is_rejected() -> None:
    with pytest.raises(ConfigError, match="dependency cycle"):
        PipelineDefinition(name="p", stages=(_stage("solo", "solo"),))


@settings(max_examples=40, derandomize=True, deadline=None)
@given(length=st.integers(min_value=2, max_value=12), extra=st.integers(min_value=0, max_value=4))
def test_every_cycle_length_is_rejected_at_definition(length: int, extra: int) -> None:
    ring = [f"s{index}" for index in range(length)]
    stages = [_stage(stage_id, ring[index - 1]) for index, stage_id in enumerate(ring)]
    # Acyclic tails hanging off the ring must not hide the cycle.
    stages.extend(_stage(f"tail{index}", ring[0]) for index in range(extra))

    with pytest.raises(ConfigError) as exc_info:
        PipelineDefinition(name="cyclic", stages=tuple(stages))

    assert exc_info.value.paths == ("stages",) * len(exc_info.value.issues)
    assert "dependency cycle" in str(exc_info.value)


@settings(max_examples=40, derandomize=True, deadline=None)
@given(
    edges=st.lists(
        st.tuples(st.integers(min_value=0, max_value=9), st.integers(min_value=0, max_value=9)),
        max_size=25,
    )
)
def test_forward_only_edges_always_sort(edges: list[tuple[int, int]]) -> None:
    graph = StageGraph(nodes=[f"n{index}" for index in range(10)])
    for left, right in edges:
        if left < right:
            graph.add_edge(f"n{left}", f"n{right}")

    order = graph.topological_sort()
    position = {node: index for index, node in enumerate(order)}
    assert len(order) == 10
    for parent, child in graph.edges:
        assert position[parent] < position[child]
