# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Neighbor graphs over areal units.

This module provides :py:class:`NeighborGraph`, the undirected, weighted graph
that defines the structure of intrinsic conditional autoregressive (ICAR)
priors. Graphs are stored in the ``num``/``adj``/``weights`` format used by CAR
tooling such as WinBUGS, GeoBUGS, and NIMBLE:

    - ``num[i]`` is the number of neighbors of unit ``i``
    - ``adj`` is the flattened list of neighbor ids, unit by unit
    - ``weights`` holds one weight per entry of ``adj``

Everything the sampler needs per unit (neighbor ids, neighbor weights, and the
weight sum) is precomputed at construction time, as it never changes across
iterations.

The same class also represents random-walk priors over ordered categories. A
random walk of order 2 penalizes second differences,

    .. math::
        b_{j-1} - 2 b_j + b_{j+1} \\sim \\text{Normal}(0, \\tau^{-1}),

which is equivalent to an ICAR prior over a path graph whose weights are the
negated off-diagonal entries of the penalty matrix :math:`Q = D^T D`, where
:math:`D` is the second-difference matrix. The first two and last two
categories receive boundary-adjusted weights; see
:py:meth:`NeighborGraph.random_walk`.
"""

from __future__ import annotations

import warnings

from typing import Literal, Optional, Sequence, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scipy import sparse
from scipy.sparse.csgraph import connected_components

from scicar import utils
from scicar.defaults import DEFAULT_INDEX_BASE
from scicar.exceptions import DegenerateGraphError

if TYPE_CHECKING:
    from scicar import custom_types


class NeighborGraph:
    """Undirected weighted neighbor graph over N areal units.

    :param num: Number of neighbors of each unit
    :type num: custom_types.ArrayLike
    :param adj: Flattened zero-based neighbor ids, grouped by unit in the order
        given by `num`
    :type adj: custom_types.ArrayLike
    :param weights: Weight of each entry in `adj`. Defaults to None, meaning a
        weight of 1 for every edge.
    :type weights: Optional[custom_types.ArrayLike]
    :param rank_deficiency: Dimension of the null space of the graph's precision
        structure. Defaults to None, meaning the number of connected components,
        which is correct for adjacency graphs with positive weights.
    :type rank_deficiency: Optional[custom_types.Integer]

    :raises ValueError: If the arrays are inconsistent, contain out-of-range ids,
        self-loops, or duplicate neighbors, or if the weights are not symmetric
    :raises DegenerateGraphError: If a unit has no neighbors or a non-positive
        weight sum

    Graphs with more than one connected component are accepted, but a
    `UserWarning` is issued: the ICAR prior is then improper on each component
    and a single sum-to-zero constraint does not identify the level of every
    component. Handling this is the caller's responsibility.

    Example:
        >>> # Four units on a cycle: 0-1, 1-3, 3-2, 2-0
        >>> graph = NeighborGraph(
        ...     num=[2, 2, 2, 2], adj=[1, 2, 0, 3, 0, 3, 1, 2]
        ... )
        >>> graph.n_units, graph.n_edges
        (4, 4)
    """

    def __init__(
        self,
        num: "custom_types.ArrayLike",
        adj: "custom_types.ArrayLike",
        weights: Optional["custom_types.ArrayLike"] = None,
        rank_deficiency: Optional["custom_types.Integer"] = None,
    ):
        # Format inputs
        num = np.asarray(num)
        adj = np.asarray(adj)
        if num.ndim != 1 or num.size == 0:
            raise ValueError("`num` must be a non-empty one-dimensional array.")
        if adj.ndim != 1:
            raise ValueError("`adj` must be a one-dimensional array.")
        if np.any(np.rint(num) != num) or np.any(num < 0):
            raise ValueError("`num` must contain non-negative integers.")
        if adj.size > 0 and np.any(np.rint(adj) != adj):
            raise ValueError("`adj` must contain integer ids.")
        num = num.astype(np.int64)
        adj = adj.astype(np.int64)
        weights = np.ones(adj.shape) if weights is None else np.asarray(weights, float)
        n_units = num.size

        # Array lengths must agree
        if num.sum() != adj.size:
            raise ValueError(
                f"`num` sums to {num.sum()} but `adj` has {adj.size} entries."
            )
        if weights.shape != adj.shape:
            raise ValueError("`weights` must have one entry per entry of `adj`.")
        if not np.all(np.isfinite(weights)):
            raise ValueError("`weights` must be finite.")

        # All ids must be in range
        if adj.size > 0 and (adj.min() < 0 or adj.max() >= n_units):
            raise ValueError(f"`adj` contains ids outside of [0, {n_units}).")

        # No unit can be isolated
        if isolated := np.flatnonzero(num == 0).tolist():
            raise DegenerateGraphError(
                f"Units {isolated} have no neighbors. The ICAR conditional "
                "distribution is undefined for isolated units."
            )

        # No self-loops or repeated neighbors
        row_index = np.repeat(np.arange(n_units), num)
        if loops := np.flatnonzero(row_index == adj).tolist():
            raise ValueError(f"Self-loops found for units {row_index[loops].tolist()}.")
        if np.unique(row_index * n_units + adj).size != adj.size:
            raise ValueError("`adj` lists the same neighbor more than once for a unit.")

        # Weights must be symmetric
        weight_matrix = sparse.csr_matrix(
            (weights, (row_index, adj)), shape=(n_units, n_units)
        )
        asymmetry = abs(weight_matrix - weight_matrix.T)
        if asymmetry.nnz > 0 and asymmetry.max() > 1e-12 * max(
            1.0, np.abs(weights).max()
        ):
            raise ValueError("Neighbor weights must be symmetric (w_ij == w_ji).")

        # Every unit needs a strictly positive weight sum for its conditional
        # variance to be defined
        weight_sums = np.bincount(row_index, weights=weights, minlength=n_units)
        if degenerate := np.flatnonzero(weight_sums <= 0).tolist():
            raise DegenerateGraphError(
                f"Units {degenerate} have non-positive weight sums."
            )

        # Count connected components
        n_components, component_labels = connected_components(
            weight_matrix != 0, directed=False
        )
        if n_components > 1:
            warnings.warn(
                f"The neighbor graph has {n_components} connected components. "
                "The ICAR prior is improper on each component.",
                UserWarning,
            )

        # Record
        self._num = utils.readonly_array(num)
        self._adj = utils.readonly_array(adj)
        self._weights = utils.readonly_array(weights)
        self._weight_sums = utils.readonly_array(weight_sums)
        self._weight_matrix = weight_matrix
        self._n_components = int(n_components)
        self._component_labels = utils.readonly_array(component_labels)
        self._rank_deficiency = int(
            n_components if rank_deficiency is None else rank_deficiency
        )
        if not 0 < self._rank_deficiency < n_units:
            raise ValueError(
                f"`rank_deficiency` must be between 1 and {n_units - 1}, got "
                f"{self._rank_deficiency}."
            )

        # Precompute the per-unit neighbor ids and weights
        offsets = np.concatenate([[0], np.cumsum(num)])
        self._neighbors: tuple[tuple[npt.NDArray, npt.NDArray], ...] = tuple(
            (self._adj[start:stop], self._weights[start:stop])
            for start, stop in zip(offsets[:-1], offsets[1:])
        )

    @classmethod
    def from_num_adj_weights(
        cls,
        num: "custom_types.ArrayLike",
        adj: "custom_types.ArrayLike",
        weights: Optional["custom_types.ArrayLike"] = None,
        index_base: "custom_types.IndexBase" = DEFAULT_INDEX_BASE,
    ) -> "NeighborGraph":
        """Build a graph from a `num`/`adj`/`weights` triple.

        :param num: Number of neighbors of each unit
        :type num: custom_types.ArrayLike
        :param adj: Flattened neighbor ids
        :type adj: custom_types.ArrayLike
        :param weights: Edge weights. Defaults to None (all ones).
        :type weights: Optional[custom_types.ArrayLike]
        :param index_base: Index base of `adj`. Defaults to 1, matching the output
            of WinBUGS/GeoBUGS adjacency tools and NIMBLE's `as.carAdjacency`.
        :type index_base: custom_types.IndexBase

        :returns: The neighbor graph
        :rtype: NeighborGraph
        """
        if index_base not in (0, 1):
            raise ValueError("`index_base` must be 0 or 1.")
        return cls(num=num, adj=np.asarray(adj) - index_base, weights=weights)

    @classmethod
    def from_neighbor_lists(
        cls,
        neighbors: Sequence[Sequence["custom_types.Integer"]],
        weights: Optional[Sequence[Sequence["custom_types.Float"]]] = None,
        index_base: "custom_types.IndexBase" = 0,
    ) -> "NeighborGraph":
        """Build a graph from one list of neighbor ids per unit.

        :param neighbors: Neighbor ids of each unit
        :type neighbors: Sequence[Sequence[custom_types.Integer]]
        :param weights: Weights matching `neighbors`. Defaults to None (all ones).
        :type weights: Optional[Sequence[Sequence[custom_types.Float]]]
        :param index_base: Index base of the ids. Defaults to 0.
        :type index_base: custom_types.IndexBase

        :returns: The neighbor graph
        :rtype: NeighborGraph

        Example:
            >>> graph = NeighborGraph.from_neighbor_lists([[1], [0, 2], [1]])
        """
        num = [len(unit_neighbors) for unit_neighbors in neighbors]
        adj = [int(j) for unit_neighbors in neighbors for j in unit_neighbors]
        if weights is not None:
            if [len(unit_weights) for unit_weights in weights] != num:
                raise ValueError("`weights` must match `neighbors` unit by unit.")
            weights = [float(w) for unit_weights in weights for w in unit_weights]
        return cls.from_num_adj_weights(
            num=num, adj=adj, weights=weights, index_base=index_base
        )

    @classmethod
    def from_adjacency_matrix(cls, matrix) -> "NeighborGraph":
        """Build a graph from a dense or sparse (N, N) weight matrix.

        Non-zero off-diagonal entries define edges and their weights.

        :param matrix: Symmetric weight matrix with a zero diagonal
        :type matrix: Union[npt.NDArray, scipy.sparse.spmatrix]

        :returns: The neighbor graph
        :rtype: NeighborGraph
        """
        matrix = sparse.csr_matrix(matrix, dtype=float)
        if matrix.shape[0] != matrix.shape[1]:
            raise ValueError("The adjacency matrix must be square.")
        matrix.eliminate_zeros()
        matrix.sort_indices()
        return cls(num=np.diff(matrix.indptr), adj=matrix.indices, weights=matrix.data)

    @classmethod
    def lattice(
        cls,
        n_rows: "custom_types.Integer",
        n_cols: "custom_types.Integer",
        contiguity: Literal["rook", "queen"] = "rook",
    ) -> "NeighborGraph":
        """Build the neighbor graph of a regular grid of cells.

        Cells are numbered row by row, so the cell in row ``r`` and column ``c``
        is unit ``r * n_cols + c``.

        :param n_rows: Number of rows
        :type n_rows: custom_types.Integer
        :param n_cols: Number of columns
        :type n_cols: custom_types.Integer
        :param contiguity: "rook" (shared edges) or "queen" (shared edges or
            corners). Defaults to "rook".
        :type contiguity: Literal["rook", "queen"]

        :returns: The neighbor graph with unit weights
        :rtype: NeighborGraph

        Example:
            >>> NeighborGraph.lattice(2, 2).num.tolist()
            [2, 2, 2, 2]
            >>> NeighborGraph.lattice(2, 2, contiguity="queen").num.tolist()
            [3, 3, 3, 3]
        """
        if n_rows * n_cols < 2:
            raise ValueError("A lattice needs at least two cells.")
        offsets = [(-1, 0), (0, -1), (0, 1), (1, 0)]
        if contiguity == "queen":
            offsets += [(-1, -1), (-1, 1), (1, -1), (1, 1)]
        elif contiguity != "rook":
            raise ValueError(f"Unknown contiguity: {contiguity}")

        neighbors = []
        for row in range(n_rows):
            for col in range(n_cols):
                neighbors.append(
                    sorted(
                        (row + drow) * n_cols + col + dcol
                        for drow, dcol in offsets
                        if 0 <= row + drow < n_rows and 0 <= col + dcol < n_cols
                    )
                )

        return cls.from_neighbor_lists(neighbors)

    @classmethod
    def random_walk(
        cls, n: "custom_types.Integer", order: Literal[1, 2] = 2
    ) -> "NeighborGraph":
        """Build the structure of a random-walk prior over `n` ordered categories.

        The weights are derived from the difference penalty rather than written
        out by hand: with :math:`D` the order-`order` difference matrix, the
        penalty matrix is :math:`Q = D^T D` and the weights are
        :math:`w_{jk} = -Q_{jk}` for :math:`j \\neq k`. Because the rows of
        :math:`Q` sum to zero, each weight sum equals :math:`Q_{jj}`, and the
        ICAR conditional distribution reproduces the random-walk conditional.

        For ``order=2`` and ``n >= 5`` this gives (one-based, as in CAR tooling):

        .. list-table::

            * - Category
              - Neighbors
              - Weights
            * - 1
              - 2, 3
              - 2, -1
            * - 2
              - 1, 3, 4
              - 2, 4, -1
            * - j (interior)
              - j-2, j-1, j+1, j+2
              - -1, 4, 4, -1
            * - n-1
              - n-3, n-2, n
              - -1, 4, 2
            * - n
              - n-2, n-1
              - -1, 2

        with weight sums 1, 5, 6, ..., 6, 5, 1.

        :param n: Number of ordered categories
        :type n: custom_types.Integer
        :param order: Order of the random walk. Defaults to 2.
        :type order: Literal[1, 2]

        :returns: The neighbor graph, with a rank deficiency equal to `order`
        :rtype: NeighborGraph
        """
        if order not in (1, 2):
            raise ValueError("Only random walks of order 1 and 2 are supported.")
        if n < order + 2:
            raise ValueError(
                f"A random walk of order {order} needs at least {order + 2} categories."
            )

        # Penalty matrix from the difference operator
        difference = np.diff(np.eye(n), n=order, axis=0)
        penalty = difference.T @ difference

        # Weights are the negated off-diagonal entries
        weight_matrix = -penalty
        np.fill_diagonal(weight_matrix, 0.0)
        weight_matrix[np.abs(weight_matrix) < 1e-12] = 0.0
        matrix = sparse.csr_matrix(weight_matrix)
        matrix.sort_indices()

        return cls(
            num=np.diff(matrix.indptr),
            adj=matrix.indices,
            weights=matrix.data,
            rank_deficiency=order,
        )

    def to_num_adj_weights(
        self, index_base: "custom_types.IndexBase" = DEFAULT_INDEX_BASE
    ) -> tuple[npt.NDArray[np.int64], npt.NDArray[np.int64], npt.NDArray]:
        """Export the graph as a `num`/`adj`/`weights` triple.

        :param index_base: Index base of the exported `adj`. Defaults to 1.
        :type index_base: custom_types.IndexBase

        :returns: Tuple of (num, adj, weights) arrays
        :rtype: tuple[npt.NDArray[np.int64], npt.NDArray[np.int64], npt.NDArray]
        """
        if index_base not in (0, 1):
            raise ValueError("`index_base` must be 0 or 1.")
        return self._num.copy(), self._adj + index_base, self._weights.copy()

    def neighbors(
        self, index: "custom_types.Integer"
    ) -> tuple[npt.NDArray[np.int64], npt.NDArray]:
        """Get the neighbor ids and weights of a unit.

        :param index: Zero-based unit index
        :type index: custom_types.Integer

        :returns: Tuple of (neighbor ids, neighbor weights). Both are read-only.
        :rtype: tuple[npt.NDArray[np.int64], npt.NDArray]
        """
        return self._neighbors[index]

    def precision_structure(self) -> sparse.csr_matrix:
        """Get the (unscaled) precision structure :math:`Q = D_w - W`.

        :math:`D_w` is the diagonal matrix of weight sums and :math:`W` the
        weight matrix. The ICAR precision matrix is :math:`\\tau Q`.

        :returns: Sparse N x N matrix
        :rtype: scipy.sparse.csr_matrix
        """
        return sparse.csr_matrix(
            sparse.diags(np.asarray(self._weight_sums)) - self._weight_matrix
        )

    def quadratic_form(self, values: npt.NDArray) -> float:
        """Compute :math:`x^T Q x = \\frac{1}{2} \\sum_i \\sum_{j \\sim i} w_{ij} (x_i - x_j)^2`.

        :param values: Vector with one entry per unit
        :type values: npt.NDArray

        :returns: The quadratic form
        :rtype: float
        """
        row_index = np.repeat(np.arange(self.n_units), self._num)
        return float(
            0.5 * np.sum(self._weights * (values[row_index] - values[self._adj]) ** 2)
        )

    def __len__(self) -> int:
        return self.n_units

    def __repr__(self) -> str:
        return (
            f"NeighborGraph(n_units={self.n_units}, n_edges={self.n_edges}, "
            f"n_components={self.n_components})"
        )

    @property
    def n_units(self) -> int:
        """Number of units N."""
        return int(self._num.size)

    @property
    def n_edges(self) -> int:
        """Number of undirected edges."""
        return int(self._adj.size // 2)

    @property
    def num(self) -> npt.NDArray[np.int64]:
        """Number of neighbors of each unit."""
        return self._num

    @property
    def adj(self) -> npt.NDArray[np.int64]:
        """Flattened zero-based neighbor ids."""
        return self._adj

    @property
    def weights(self) -> npt.NDArray:
        """Flattened edge weights."""
        return self._weights

    @property
    def weight_sums(self) -> npt.NDArray:
        """Sum of edge weights of each unit."""
        return self._weight_sums

    @property
    def n_components(self) -> int:
        """Number of connected components."""
        return self._n_components

    @property
    def component_labels(self) -> npt.NDArray:
        """Connected-component label of each unit."""
        return self._component_labels

    @property
    def rank_deficiency(self) -> int:
        """Dimension of the null space of the precision structure."""
        return self._rank_deficiency
