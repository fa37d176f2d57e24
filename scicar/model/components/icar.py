# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Intrinsic conditional autoregressive (ICAR) priors.

An ICAR prior over a :py:class:`~scicar.model.components.graph.NeighborGraph`
with precision :math:`\\tau` is defined by its local Markov property: for every
unit :math:`i`,

    .. math::
        \\phi_i \\mid \\phi_{-i} \\sim \\text{Normal}\\left(
        \\frac{\\sum_{j \\sim i} w_{ij} \\phi_j}{w_{i+}},
        \\frac{1}{\\tau w_{i+}}\\right),

where :math:`w_{i+} = \\sum_{j \\sim i} w_{ij}`. Jointly, the (improper)
log-density is

    .. math::
        \\log p(\\phi \\mid \\tau) = \\frac{N - r}{2} \\log \\tau
        - \\frac{\\tau}{2} \\phi^T Q \\phi + \\text{const},

with :math:`Q` the precision structure of the graph and :math:`r` its rank
deficiency. Because :math:`Q` is rank deficient, the level of :math:`\\phi` is
not identified; :py:meth:`ICARPrior.recenter` imposes the sum-to-zero constraint
after every sweep of the sampler.

Random-walk priors over ordered categories are ICAR priors over the graphs built
by :py:meth:`~scicar.model.components.graph.NeighborGraph.random_walk`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scicar.exceptions import InvalidParameterError
from scicar.model.components.graph import NeighborGraph
from scicar.model.components.priors import Gamma

if TYPE_CHECKING:
    from scicar import custom_types


def _check_precision(tau) -> None:
    """Raise if a precision is outside of its support."""
    if not (np.isfinite(tau) and tau > 0):
        raise InvalidParameterError(
            f"ICAR precision must be positive and finite, got {tau}."
        )


class ICARPrior:
    """ICAR prior over the units of a neighbor graph.

    :param graph: The neighbor graph. Its per-unit neighbor lists and weight
        sums are computed once, at graph construction.
    :type graph: NeighborGraph

    Example:
        >>> prior = ICARPrior(NeighborGraph.lattice(2, 2))
        >>> prior.conditional(0, np.array([0.0, 1.0, -1.0, 0.5]), tau=2.0)
        (0.0, 0.25)
    """

    def __init__(self, graph: NeighborGraph):
        self.graph = graph

    def conditional(
        self,
        index: "custom_types.Integer",
        values: npt.NDArray,
        tau: "custom_types.Float",
    ) -> tuple[float, float]:
        """Get the conditional mean and variance of one unit given all others.

        This runs in O(degree) time.

        :param index: Zero-based unit index
        :type index: custom_types.Integer
        :param values: Current values of the field
        :type values: npt.NDArray
        :param tau: Precision of the field
        :type tau: custom_types.Float

        :returns: Tuple of (mean, variance)
        :rtype: tuple[float, float]

        :raises InvalidParameterError: If `tau` is not positive and finite
        """
        _check_precision(tau)
        neighbor_ids, neighbor_weights = self.graph.neighbors(index)
        weight_sum = self.graph.weight_sums[index]
        mean = float(np.dot(neighbor_weights, values[neighbor_ids]) / weight_sum)
        return mean, float(1.0 / (tau * weight_sum))

    def conditional_log_density(
        self,
        index: "custom_types.Integer",
        candidate: "custom_types.Float",
        values: npt.NDArray,
        tau: "custom_types.Float",
    ) -> float:
        """Log-density of a candidate value of one unit given all others.

        The normalizing constant, which does not depend on the candidate, is
        dropped.

        :param index: Zero-based unit index
        :type index: custom_types.Integer
        :param candidate: Candidate value for the unit
        :type candidate: custom_types.Float
        :param values: Current values of the field. The entry at `index` is
            ignored.
        :type values: npt.NDArray
        :param tau: Precision of the field
        :type tau: custom_types.Float

        :returns: Conditional log-density up to an additive constant
        :rtype: float
        """
        mean, variance = self.conditional(index, values, tau)
        return float(-0.5 * (candidate - mean) ** 2 / variance)

    def log_density(self, values: npt.NDArray, tau: "custom_types.Float") -> float:
        """Joint log-density of the field up to an additive constant.

        :param values: Values of the field, one per unit
        :type values: npt.NDArray
        :param tau: Precision of the field
        :type tau: custom_types.Float

        :returns: Log-density
        :rtype: float

        :raises InvalidParameterError: If `tau` is not positive and finite
        """
        _check_precision(tau)
        return float(
            0.5 * self.effective_dimension * np.log(tau)
            - 0.5 * tau * self.graph.quadratic_form(values)
        )

    def precision_full_conditional(self, values: npt.NDArray, prior: Gamma) -> Gamma:
        """Get the conjugate Gamma full conditional of the precision.

        :param values: Current values of the field
        :type values: npt.NDArray
        :param prior: Gamma prior on the precision
        :type prior: Gamma

        :returns: Gamma distribution of the precision given the field
        :rtype: Gamma
        """
        return prior.posterior(
            self.effective_dimension, self.graph.quadratic_form(values)
        )

    @staticmethod
    def recenter(values: npt.NDArray) -> float:
        """Impose the sum-to-zero constraint in place.

        :param values: Field values. Modified in place.
        :type values: npt.NDArray

        :returns: The mean that was removed
        :rtype: float
        """
        shift = float(values.mean())
        values -= shift
        return shift

    @property
    def effective_dimension(self) -> int:
        """Rank of the precision structure, N minus the rank deficiency."""
        return self.graph.n_units - self.graph.rank_deficiency

    def __repr__(self) -> str:
        return f"ICARPrior({self.graph!r})"
