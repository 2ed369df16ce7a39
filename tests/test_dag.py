from __future__ import annotations

import pytest

from batchci.dag import build_graph
from batchci.errors import ConfigurationError
from batchci.model import Barrier, Stage


def stages(*labels: str) -> list[Stage]:
    return [Stage(label=l, commands=(f"echo {l}",), position=i) for i, l in enumerate(labels)]


def test_single_wait_makes_two_batches() -> None:
    graph = build_graph(stages("container", "test", "clippy", "deny", "docs"), [Barrier(1)])

    assert len(graph) == 2
    assert graph.batches[0].labels == ["container"]
    assert graph.batches[1].labels == ["test", "clippy", "deny", "docs"]
    assert graph.batches[0].barrier is None
    assert graph.batches[1].barrier == Barrier(1)


def test_no_waits_is_one_batch() -> None:
    graph = build_graph(stages("a", "b", "c"))
    assert len(graph) == 1
    assert graph.batches[0].labels == ["a", "b", "c"]


def test_waits_given_as_positions() -> None:
    graph = build_graph(stages("a", "b", "c"), [1, 2])
    assert [b.labels for b in graph] == [["a"], ["b"], ["c"]]
    assert [b.index for b in graph] == [0, 1, 2]


def test_leading_trailing_and_repeated_waits_make_no_empty_batches() -> None:
    graph = build_graph(stages("a", "b"), [Barrier(0), Barrier(1), Barrier(1), Barrier(2)])
    assert [b.labels for b in graph] == [["a"], ["b"]]


def test_continue_on_failure_wins_among_waits_at_one_position() -> None:
    graph = build_graph(stages("a", "b"), [Barrier(1), Barrier(1, continue_on_failure=True), Barrier(1)])
    assert graph.batches[1].barrier == Barrier(1, continue_on_failure=True)


def test_empty_stage_list() -> None:
    with pytest.raises(ConfigurationError, match="no stages"):
        build_graph([])


@pytest.mark.parametrize("position", [-1, 4])
def test_wait_out_of_range(position: int) -> None:
    with pytest.raises(ConfigurationError, match="outside the stage list"):
        build_graph(stages("a", "b", "c"), [Barrier(position)])


def test_predecessors() -> None:
    graph = build_graph(stages("a", "b", "c", "d"), [1, 3])

    assert graph.predecessors("a") == []
    assert graph.predecessors("b") == ["a"]
    assert graph.predecessors("d") == ["a", "b", "c"]
    assert graph.batch_of("c").index == 1

    # siblings never wait on each other
    assert graph.predecessors("c") == ["a"]


def test_batch_of_unknown_label() -> None:
    graph = build_graph(stages("a"))
    with pytest.raises(KeyError):
        graph.batch_of("zzz")


def test_stage_order_is_preserved() -> None:
    graph = build_graph(stages("z", "y", "x"), [2])
    assert [s.label for s in graph.stages] == ["z", "y", "x"]
