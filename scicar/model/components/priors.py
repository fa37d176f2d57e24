# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Prior distributions for the scalar parameters of areal count models.

This module defines the priors that can be placed on the intercept, the
regression coefficients, and the precision parameters of a
:py:class:`~scicar.model.model.PoissonCARModel`. Each prior evaluates its
log-density elementwise and knows its own support, so that values outside the
support give a log-density of negative infinity rather than being clamped.

Available priors:
    - :py:class:`Flat`: Improper uniform prior over the real line
    - :py:class:`Normal`: Normal prior parametrized by mean and standard deviation
    - :py:class:`Gamma`: Gamma prior parametrized by shape and rate, used for
      precisions. Gamma priors also provide the conjugate update of a precision
      given Gaussian residuals.

The priors over random effects (iid Normal, ICAR, and random walk) are not
defined here, as they depend on a precision parameter of the model. See
:py:class:`~scicar.model.components.icar.ICARPrior`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scipy import stats

if TYPE_CHECKING:
    from scicar import custom_types


class Prior(ABC):
    """Abstract base class for priors over real-valued parameters.

    Subclasses must implement :py:meth:`log_density` and
    :py:meth:`in_support`. The log-density is only required up to an additive
    constant for improper priors.
    """

    @abstractmethod
    def log_density(self, value: "custom_types.ArrayLike") -> npt.NDArray:
        """Evaluate the elementwise log-density of the prior.

        :param value: Value(s) at which to evaluate the density
        :type value: custom_types.ArrayLike

        :returns: Log-density of each element. Elements outside the support give
            negative infinity.
        :rtype: npt.NDArray
        """

    @abstractmethod
    def in_support(self, value: "custom_types.ArrayLike") -> npt.NDArray:
        """Check elementwise whether values lie in the support of the prior.

        :param value: Value(s) to check
        :type value: custom_types.ArrayLike

        :returns: Boolean array
        :rtype: npt.NDArray
        """

    def total_log_density(self, value: "custom_types.ArrayLike") -> float:
        """Sum the log-density over all elements of `value`."""
        return float(np.sum(self.log_density(value)))


class Flat(Prior):
    """Improper uniform prior over the real line.

    The log-density is zero everywhere. This is the conventional prior for the
    intercept of a disease-mapping model.
    """

    def log_density(self, value):
        value = np.asarray(value, dtype=float)
        return np.where(np.isfinite(value), 0.0, -np.inf)

    def in_support(self, value):
        return np.isfinite(np.asarray(value, dtype=float))

    def __repr__(self) -> str:
        return "Flat()"


class Normal(Prior):
    """Normal prior with mean `mu` and standard deviation `sigma`.

    :param mu: Mean. Defaults to 0.
    :type mu: custom_types.Float
    :param sigma: Standard deviation. Must be positive. Defaults to 1.
    :type sigma: custom_types.Float

    :raises ValueError: If `sigma` is not positive and finite
    """

    def __init__(self, mu: "custom_types.Float" = 0.0, sigma: "custom_types.Float" = 1.0):
        if not (np.isfinite(sigma) and sigma > 0):
            raise ValueError(f"`sigma` must be positive and finite, got {sigma}.")
        if not np.isfinite(mu):
            raise ValueError(f"`mu` must be finite, got {mu}.")
        self.mu = float(mu)
        self.sigma = float(sigma)

    def log_density(self, value):
        return stats.norm.logpdf(np.asarray(value, dtype=float), self.mu, self.sigma)

    def in_support(self, value):
        return np.isfinite(np.asarray(value, dtype=float))

    def __repr__(self) -> str:
        return f"Normal(mu={self.mu}, sigma={self.sigma})"


class Gamma(Prior):
    """Gamma prior with `shape` and `rate` (inverse scale).

    Gamma priors are placed on precision parameters. The density is

    .. math::
        p(\\tau) = \\frac{b^a}{\\Gamma(a)} \\tau^{a - 1} e^{-b \\tau}, \\quad \\tau > 0

    with shape :math:`a` and rate :math:`b`.

    :param shape: Shape parameter. Must be positive.
    :type shape: custom_types.Float
    :param rate: Rate parameter. Must be positive.
    :type rate: custom_types.Float

    :raises ValueError: If either parameter is not positive and finite

    Example:
        >>> prior = Gamma(shape=1.0, rate=0.01)
        >>> prior.mean
        100.0
    """

    def __init__(self, shape: "custom_types.Float", rate: "custom_types.Float"):
        for name, param in (("shape", shape), ("rate", rate)):
            if not (np.isfinite(param) and param > 0):
                raise ValueError(f"`{name}` must be positive and finite, got {param}.")
        self.shape = float(shape)
        self.rate = float(rate)

    def log_density(self, value):
        value = np.asarray(value, dtype=float)

        # Values outside the support are rejected before evaluation
        out = np.full(value.shape, -np.inf)
        valid = self.in_support(value)
        out[valid] = stats.gamma.logpdf(value[valid], a=self.shape, scale=1 / self.rate)
        return out

    def in_support(self, value):
        value = np.asarray(value, dtype=float)
        return np.isfinite(value) & (value > 0)

    def sample(
        self,
        rng: np.random.Generator,
        size: "custom_types.Integer | tuple | None" = None,
    ):
        """Draw from the distribution.

        :param rng: Random number generator
        :type rng: np.random.Generator
        :param size: Output shape. Defaults to None (a single float).

        :returns: Draw(s) from the Gamma distribution
        """
        return rng.gamma(self.shape, 1 / self.rate, size=size)

    def posterior(
        self, n: "custom_types.Float", sum_of_squares: "custom_types.Float"
    ) -> "Gamma":
        """Get the conjugate posterior of a precision given Gaussian residuals.

        If :math:`x_1, \\ldots, x_n \\sim \\text{Normal}(0, \\tau^{-1})` and
        :math:`\\tau \\sim \\text{Gamma}(a, b)`, then

        .. math::
            \\tau \\mid x \\sim \\text{Gamma}\\left(a + \\frac{n}{2},
            b + \\frac{1}{2} \\sum_i x_i^2\\right).

        For an ICAR field, `n` is the number of units less the rank deficiency of
        the graph and the sum of squares is the quadratic form :math:`x^T Q x`.

        :param n: Effective number of Gaussian residuals
        :type n: custom_types.Float
        :param sum_of_squares: Sum of squared residuals (or quadratic form)
        :type sum_of_squares: custom_types.Float

        :returns: The posterior distribution
        :rtype: Gamma
        """
        return Gamma(
            shape=self.shape + 0.5 * n, rate=self.rate + 0.5 * sum_of_squares
        )

    @property
    def mean(self) -> float:
        """Mean of the distribution, shape / rate."""
        return self.shape / self.rate

    @property
    def variance(self) -> float:
        """Variance of the distribution, shape / rate**2."""
        return self.shape / self.rate**2

    def __repr__(self) -> str:
        return f"Gamma(shape={self.shape}, rate={self.rate})"
