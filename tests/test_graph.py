# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for neighbor graphs and random-walk structures."""

import numpy as np
import pytest

from scipy import sparse

from scicar.exceptions import DegenerateGraphError
from scicar.model.components.graph import NeighborGraph


def test_num_adj_weights_one_based(grid_graph):
    graph = NeighborGraph.from_num_adj_weights(
        num=[2, 2, 2, 2], adj=[2, 3, 1, 4, 1, 4, 2, 3]
    )
    np.testing.assert_array_equal(graph.adj, grid_graph.adj)
    np.testing.assert_array_equal(graph.weights, np.ones(8))
    assert graph.n_units == 4
    assert graph.n_edges == 4
    assert graph.n_components == 1
    assert graph.rank_deficiency == 1


def test_export_round_trip():
    num = [1, 3, 1, 1]
    adj = [2, 1, 3, 4, 2, 2]
    weights = [0.5, 0.5, 2.0, 1.5, 2.0, 1.5]
    graph = NeighborGraph.from_num_adj_weights(num, adj, weights)
    out_num, out_adj, out_weights = graph.to_num_adj_weights()
    np.testing.assert_array_equal(out_num, num)
    np.testing.assert_array_equal(out_adj, adj)
    np.testing.assert_allclose(out_weights, weights)

    # Zero-based export
    _, zero_adj, _ = graph.to_num_adj_weights(index_base=0)
    np.testing.assert_array_equal(zero_adj, np.array(adj) - 1)


def test_neighbors_and_weight_sums_are_precomputed():
    graph = NeighborGraph.from_num_adj_weights(
        num=[1, 3, 1, 1], adj=[2, 1, 3, 4, 2, 2], weights=[0.5, 0.5, 2.0, 1.5, 2.0, 1.5]
    )
    ids, weights = graph.neighbors(1)
    np.testing.assert_array_equal(ids, [0, 2, 3])
    np.testing.assert_allclose(weights, [0.5, 2.0, 1.5])
    np.testing.assert_allclose(graph.weight_sums, [0.5, 4.0, 2.0, 1.5])
    assert not graph.weight_sums.flags.writeable


def test_isolated_unit_is_degenerate():
    with pytest.raises(DegenerateGraphError, match="no neighbors"):
        NeighborGraph.from_num_adj_weights(num=[1, 1, 0], adj=[2, 1])


def test_non_positive_weight_sum_is_degenerate():
    with pytest.raises(DegenerateGraphError, match="weight sums"):
        NeighborGraph(num=[1, 1], adj=[1, 0], weights=[-1.0, -1.0])


@pytest.mark.parametrize(
    "num, adj, weights, match",
    [
        ([2, 2], [1], None, "`num` sums to"),
        ([1, 1], [1, 2], None, "outside of"),
        ([2, 1], [0, 1, 0], None, "Self-loops"),
        ([2, 2], [1, 1, 0, 0], None, "more than once"),
        ([1, 1], [1, 0], [1.0, 2.0], "symmetric"),
        ([1, 1], [1, 0], [1.0], "one entry per entry"),
    ],
)
def test_malformed_graphs(num, adj, weights, match):
    with pytest.raises(ValueError, match=match):
        NeighborGraph(num=num, adj=adj, weights=weights)


def test_disconnected_graph_warns():
    with pytest.warns(UserWarning, match="2 connected components"):
        graph = NeighborGraph(num=[1, 1, 1, 1], adj=[1, 0, 3, 2])
    assert graph.n_components == 2
    assert graph.rank_deficiency == 2
    np.testing.assert_array_equal(graph.component_labels, [0, 0, 1, 1])


def test_lattice_contiguity():
    rook = NeighborGraph.lattice(2, 2)
    queen = NeighborGraph.lattice(2, 2, contiguity="queen")
    np.testing.assert_array_equal(rook.num, [2, 2, 2, 2])
    np.testing.assert_array_equal(queen.num, [3, 3, 3, 3])

    # Corner, edge, and center cells of a 3 x 3 grid
    np.testing.assert_array_equal(
        NeighborGraph.lattice(3, 3).num, [2, 3, 2, 3, 4, 3, 2, 3, 2]
    )
    with pytest.raises(ValueError):
        NeighborGraph.lattice(1, 1)


def test_from_neighbor_lists_and_matrix_agree():
    lists = NeighborGraph.from_neighbor_lists([[1, 2], [0], [0]])
    dense = np.array([[0, 1, 1], [1, 0, 0], [1, 0, 0]])
    from_dense = NeighborGraph.from_adjacency_matrix(dense)
    from_sparse = NeighborGraph.from_adjacency_matrix(sparse.csr_matrix(dense))
    for graph in (from_dense, from_sparse):
        np.testing.assert_array_equal(graph.num, lists.num)
        np.testing.assert_array_equal(graph.adj, lists.adj)
        np.testing.assert_array_equal(graph.weights, lists.weights)


def test_precision_structure_and_quadratic_form(rng):
    graph = NeighborGraph.from_num_adj_weights(
        num=[1, 3, 1, 1], adj=[2, 1, 3, 4, 2, 2], weights=[0.5, 0.5, 2.0, 1.5, 2.0, 1.5]
    )
    precision = graph.precision_structure().toarray()
    np.testing.assert_allclose(precision, precision.T)
    np.testing.assert_allclose(precision.sum(axis=1), 0.0, atol=1e-12)

    values = rng.normal(size=4)
    assert graph.quadratic_form(values) == pytest.approx(values @ precision @ values)

    # Constant shifts are in the null space
    assert graph.quadratic_form(np.full(4, 3.0)) == pytest.approx(0.0)


def test_random_walk_order_2_boundary_weights():
    graph = NeighborGraph.random_walk(10, order=2)
    num, adj, weights = graph.to_num_adj_weights(index_base=1)

    # Split the flattened arrays by unit
    offsets = np.concatenate([[0], np.cumsum(num)])
    per_unit = [
        (adj[start:stop].tolist(), weights[start:stop].tolist())
        for start, stop in zip(offsets[:-1], offsets[1:])
    ]

    # First two and last two units use the boundary pattern
    assert per_unit[0] == ([2, 3], [2.0, -1.0])
    assert per_unit[1] == ([1, 3, 4], [2.0, 4.0, -1.0])
    assert per_unit[8] == ([7, 8, 10], [-1.0, 4.0, 2.0])
    assert per_unit[9] == ([8, 9], [-1.0, 2.0])

    # Every interior unit uses the same pattern
    for unit in range(3, 9):
        assert per_unit[unit - 1] == (
            [unit - 2, unit - 1, unit + 1, unit + 2],
            [-1.0, 4.0, 4.0, -1.0],
        )

    np.testing.assert_array_equal(num, [2, 3, 4, 4, 4, 4, 4, 4, 3, 2])
    np.testing.assert_allclose(graph.weight_sums, [1, 5, 6, 6, 6, 6, 6, 6, 5, 1])
    assert graph.rank_deficiency == 2


def test_random_walk_matches_second_difference_penalty(rng):
    graph = NeighborGraph.random_walk(10, order=2)
    values = rng.normal(size=10)
    second_differences = values[:-2] - 2 * values[1:-1] + values[2:]
    assert graph.quadratic_form(values) == pytest.approx(np.sum(second_differences**2))

    # Linear trends are in the null space
    assert graph.quadratic_form(np.arange(10.0)) == pytest.approx(0.0, abs=1e-9)


def test_random_walk_order_1_is_a_path():
    graph = NeighborGraph.random_walk(5, order=1)
    np.testing.assert_array_equal(graph.num, [1, 2, 2, 2, 1])
    np.testing.assert_array_equal(graph.weights, np.ones(8))
    assert graph.rank_deficiency == 1


def test_random_walk_needs_enough_categories():
    with pytest.raises(ValueError):
        NeighborGraph.random_walk(3, order=2)
    with pytest.raises(ValueError):
        NeighborGraph.random_walk(2, order=1)
