# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Poisson regression models with spatial random effects.

This module defines :py:class:`PoissonCARModel`, the declarative description of a
Bayesian hierarchical model for areal count data:

    .. math::
        O_i \\sim \\text{Poisson}(\\mu_i), \\quad
        \\log \\mu_i = \\log E_i + \\alpha + \\sum_k \\beta_k X_{ik}
        + \\theta_i + \\phi_i + b_{c(i)}

where :math:`\\theta` is an unstructured iid Normal effect with precision
:math:`\\tau_\\theta`, :math:`\\phi` is an ICAR spatial effect with precision
:math:`\\tau_\\phi` (together, the BYM model), and :math:`b` is an optional
random-walk effect over the discretized exposure category :math:`c(i)` with
precision :math:`\\tau_b`. Every random effect can be switched off.

A model holds data and priors only. Its log-likelihood, log-prior, and
log-posterior are pure functions of a
:py:class:`~scicar.model.components.parameter_vector.ParameterVector`, and are
all that :py:mod:`scicar.model.sampler` needs to run.
"""

from __future__ import annotations

from typing import Literal, Mapping, Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from scipy import special

from scicar.defaults import (
    DEFAULT_BETA_PRIOR_SD,
    DEFAULT_PRECISION_PRIOR_RATE,
    DEFAULT_PRECISION_PRIOR_SHAPE,
)
from scicar.exceptions import InvalidParameterError
from scicar.model.components import priors
from scicar.model.components.data import Observations
from scicar.model.components.graph import NeighborGraph
from scicar.model.components.icar import ICARPrior
from scicar.model.components.parameter_vector import ParameterVector

if TYPE_CHECKING:
    from scicar import custom_types
    from scicar.model.results import mcmc as mcmc_results
    from scicar.model.sampler import RunConfig

# Precision parameter governing each random effect
PRECISIONS: dict[str, str] = {"theta": "tau_theta", "phi": "tau_phi", "b": "tau_b"}

# Quantities computed from the parameters that can be retained by the sampler
DERIVED_QUANTITIES: tuple[str, ...] = ("relative_risk",)


def poisson_kernel(
    observed: "custom_types.ArrayLike", eta: "custom_types.ArrayLike"
) -> "custom_types.ArrayLike":
    """Poisson log-probability of counts up to the log-factorial term.

    Overflow of :math:`\\exp(\\eta)` for extreme linear predictors gives
    non-finite values rather than an error.

    :param observed: Observed counts
    :type observed: custom_types.ArrayLike
    :param eta: Log of the Poisson means
    :type eta: custom_types.ArrayLike

    :returns: :math:`O \\eta - \\exp(\\eta)`, elementwise
    :rtype: custom_types.ArrayLike
    """
    with np.errstate(over="ignore", invalid="ignore"):
        return observed * eta - np.exp(eta)


class PoissonCARModel:
    """Poisson regression with unstructured, ICAR, and random-walk random effects.

    :param observations: Data the model is fit to
    :type observations: Observations
    :param graph: Neighbor graph over the units of `observations`. Required when
        `spatial` is True. Defaults to None.
    :type graph: Optional[NeighborGraph]
    :param unstructured: Whether to include the iid effect :math:`\\theta`.
        Defaults to True.
    :type unstructured: bool
    :param spatial: Whether to include the ICAR effect :math:`\\phi`. Defaults
        to True.
    :type spatial: bool
    :param exposure_effect: Random-walk exposure effect to include: None, "rw1",
        or "rw2". Requires `observations.exposure_category`. Defaults to None.
    :type exposure_effect: Optional[Literal["rw1", "rw2"]]
    :param alpha_prior: Prior on the intercept. Must be :py:class:`Flat` when a
        spatial or exposure effect is included. Defaults to :py:class:`Flat`.
    :type alpha_prior: Optional[Union[priors.Flat, priors.Normal]]
    :param beta_prior: Prior on each regression coefficient. Defaults to
        ``Normal(0, DEFAULT_BETA_PRIOR_SD)``.
    :type beta_prior: Optional[priors.Normal]
    :param tau_theta_prior: Gamma prior on :math:`\\tau_\\theta`.
    :type tau_theta_prior: Optional[priors.Gamma]
    :param tau_phi_prior: Gamma prior on :math:`\\tau_\\phi`.
    :type tau_phi_prior: Optional[priors.Gamma]
    :param tau_b_prior: Gamma prior on :math:`\\tau_b`.
    :type tau_b_prior: Optional[priors.Gamma]

    :raises ValueError: If the graph or exposure data needed by the chosen random
        effects are missing or do not match the observations, or if a
        non-flat intercept prior is combined with a spatial or exposure effect

    Precision priors default to ``Gamma(DEFAULT_PRECISION_PRIOR_SHAPE,
    DEFAULT_PRECISION_PRIOR_RATE)``.

    Example:
        >>> obs = Observations(observed=[5, 7, 3, 9], expected=[5.0] * 4)
        >>> model = PoissonCARModel(obs, NeighborGraph.lattice(2, 2))
        >>> model.parameter_names
        ('alpha', 'tau_theta', 'theta', 'tau_phi', 'phi')
    """

    def __init__(
        self,
        observations: Observations,
        graph: Optional[NeighborGraph] = None,
        *,
        unstructured: bool = True,
        spatial: bool = True,
        exposure_effect: Optional[Literal["rw1", "rw2"]] = None,
        alpha_prior: Optional[Union[priors.Flat, priors.Normal]] = None,
        beta_prior: Optional[priors.Normal] = None,
        tau_theta_prior: Optional[priors.Gamma] = None,
        tau_phi_prior: Optional[priors.Gamma] = None,
        tau_b_prior: Optional[priors.Gamma] = None,
    ):
        # Record data and options
        self.observations = observations
        self.unstructured = unstructured
        self.spatial = spatial
        self.exposure_effect = exposure_effect

        # The spatial effect needs a graph over the same units
        self.graph = graph
        self.spatial_prior: Optional[ICARPrior] = None
        if spatial:
            if graph is None:
                raise ValueError("A neighbor graph is required for a spatial effect.")
            if graph.n_units != observations.n_units:
                raise ValueError(
                    f"The graph has {graph.n_units} units but there are "
                    f"{observations.n_units} observations."
                )
            self.spatial_prior = ICARPrior(graph)

        # The exposure effect needs exposure categories
        self.exposure_prior: Optional[ICARPrior] = None
        if exposure_effect is not None:
            if exposure_effect not in ("rw1", "rw2"):
                raise ValueError(
                    f"`exposure_effect` must be None, 'rw1', or 'rw2', got "
                    f"{exposure_effect!r}."
                )
            if observations.exposure_category is None:
                raise ValueError(
                    "An exposure effect requires `exposure_category` in the "
                    "observations."
                )
            self.exposure_prior = ICARPrior(
                NeighborGraph.random_walk(
                    observations.n_exposure_categories,
                    order=1 if exposure_effect == "rw1" else 2,
                )
            )

        # Priors. Recentering the structured effects moves their mean into the
        # intercept, which leaves the posterior unchanged only under a flat prior.
        self.alpha_prior = priors.Flat() if alpha_prior is None else alpha_prior
        if (spatial or exposure_effect is not None) and not isinstance(
            self.alpha_prior, priors.Flat
        ):
            raise ValueError(
                "A spatial or exposure effect requires a Flat prior on `alpha`, got "
                f"{self.alpha_prior!r}."
            )
        self.beta_prior = (
            priors.Normal(0.0, DEFAULT_BETA_PRIOR_SD)
            if beta_prior is None
            else beta_prior
        )
        self.precision_priors: dict[str, priors.Gamma] = {}
        for name, prior in (
            ("tau_theta", tau_theta_prior),
            ("tau_phi", tau_phi_prior),
            ("tau_b", tau_b_prior),
        ):
            self.precision_priors[name] = (
                priors.Gamma(DEFAULT_PRECISION_PRIOR_SHAPE, DEFAULT_PRECISION_PRIOR_RATE)
                if prior is None
                else prior
            )

        # The log-factorial term of the Poisson likelihood never changes
        self._log_factorial = special.gammaln(observations.observed + 1.0)

        # Build the shapes of all parameter blocks
        n_units = observations.n_units
        self._shapes: dict[str, tuple[int, ...]] = {"alpha": ()}
        if observations.n_covariates > 0:
            self._shapes["beta"] = (observations.n_covariates,)
        if unstructured:
            self._shapes["tau_theta"] = ()
            self._shapes["theta"] = (n_units,)
        if spatial:
            self._shapes["tau_phi"] = ()
            self._shapes["phi"] = (n_units,)
        if exposure_effect is not None:
            self._shapes["tau_b"] = ()
            self._shapes["b"] = (observations.n_exposure_categories,)

    def validate(
        self,
        parameters: Union[ParameterVector, Mapping[str, "custom_types.ParameterValue"]],
    ) -> ParameterVector:
        """Check a set of parameter values against the model.

        :param parameters: Values of every parameter block of the model
        :type parameters: Union[ParameterVector, Mapping[str, custom_types.ParameterValue]]

        :returns: A new parameter vector holding copies of the values
        :rtype: ParameterVector

        :raises InvalidParameterError: If blocks are missing or unexpected, have
            the wrong shape, hold non-finite values, or if a precision is not
            strictly positive
        """
        # Convert to a parameter vector
        if isinstance(parameters, ParameterVector):
            parameters = parameters.copy()
        else:
            parameters = ParameterVector(parameters)

        # Block names must match exactly
        if missing := [name for name in self._shapes if name not in parameters]:
            raise InvalidParameterError(f"Missing parameter blocks: {missing}")
        if extra := [name for name in parameters if name not in self._shapes]:
            raise InvalidParameterError(f"Unexpected parameter blocks: {extra}")

        # Check shapes and values
        for name, shape in self._shapes.items():
            if parameters.shape(name) != shape:
                raise InvalidParameterError(
                    f"Parameter '{name}' must have shape {shape}, got "
                    f"{parameters.shape(name)}."
                )
            if not np.all(np.isfinite(parameters[name])):
                raise InvalidParameterError(f"Parameter '{name}' must be finite.")
            if name in self.precision_priors and not parameters[name] > 0:
                raise InvalidParameterError(
                    f"Precision '{name}' must be strictly positive, got "
                    f"{parameters[name]}."
                )

        return parameters

    def linear_predictor(self, parameters: ParameterVector) -> npt.NDArray:
        """Compute :math:`\\eta_i = \\log \\mu_i` for every unit.

        :param parameters: Parameter values
        :type parameters: ParameterVector

        :returns: Linear predictor, one entry per unit
        :rtype: npt.NDArray
        """
        eta = self.observations.log_expected + parameters["alpha"]
        if "beta" in self._shapes:
            eta = eta + self.observations.covariates @ parameters["beta"]
        if self.unstructured:
            eta = eta + parameters["theta"]
        if self.spatial:
            eta = eta + parameters["phi"]
        if self.exposure_effect is not None:
            eta = eta + parameters["b"][self.observations.exposure_category]
        return eta

    def pointwise_log_likelihood(self, parameters: ParameterVector) -> npt.NDArray:
        """Poisson log-probability of each observed count.

        Overflow of :math:`\\exp(\\eta)` for extreme linear predictors gives
        non-finite values rather than an error.

        :param parameters: Parameter values
        :type parameters: ParameterVector

        :returns: Log-likelihood of each unit
        :rtype: npt.NDArray
        """
        eta = self.linear_predictor(parameters)
        return poisson_kernel(self.observations.observed, eta) - self._log_factorial

    def log_likelihood(self, parameters: ParameterVector) -> float:
        """Total Poisson log-likelihood of the observed counts."""
        return float(np.sum(self.pointwise_log_likelihood(parameters)))

    def log_prior(self, parameters: ParameterVector) -> float:
        """Total log-prior density of the parameters.

        Precisions are checked against their support before any density is
        evaluated; a non-positive precision gives negative infinity.

        :param parameters: Parameter values
        :type parameters: ParameterVector

        :returns: Log-prior density, up to an additive constant for the improper
            priors
        :rtype: float
        """
        # Reject values outside of the support before doing anything else
        for name in self.precision_names:
            if not self.precision_priors[name].in_support(parameters[name]):
                return -np.inf

        # Intercept and coefficients
        log_prior = self.alpha_prior.total_log_density(parameters["alpha"])
        if "beta" in self._shapes:
            log_prior += self.beta_prior.total_log_density(parameters["beta"])

        # Precisions
        for name in self.precision_names:
            log_prior += self.precision_priors[name].total_log_density(parameters[name])

        # Random effects
        if self.unstructured:
            tau = parameters["tau_theta"]
            theta = parameters["theta"]
            log_prior += float(
                0.5 * theta.size * np.log(tau / (2 * np.pi))
                - 0.5 * tau * np.dot(theta, theta)
            )
        if self.spatial:
            log_prior += self.spatial_prior.log_density(
                parameters["phi"], parameters["tau_phi"]
            )
        if self.exposure_effect is not None:
            log_prior += self.exposure_prior.log_density(
                parameters["b"], parameters["tau_b"]
            )

        return float(log_prior)

    def log_posterior(self, parameters: ParameterVector) -> float:
        """Unnormalized log-posterior density, the sum of log-likelihood and log-prior.

        Returns negative infinity, without evaluating the likelihood, when the
        prior is zero.
        """
        log_prior = self.log_prior(parameters)
        if not np.isfinite(log_prior):
            return -np.inf
        return self.log_likelihood(parameters) + log_prior

    def derived_quantities(self, parameters: ParameterVector) -> dict[str, npt.NDArray]:
        """Compute quantities derived from the parameters.

        :param parameters: Parameter values
        :type parameters: ParameterVector

        :returns: Dictionary with the relative risk
            :math:`\\mu_i / E_i = \\exp(\\eta_i - \\log E_i)` of every unit
        :rtype: dict[str, npt.NDArray]
        """
        with np.errstate(over="ignore"):
            return {
                "relative_risk": np.exp(
                    self.linear_predictor(parameters) - self.observations.log_expected
                )
            }

    def initial_values(self, rng: np.random.Generator) -> ParameterVector:
        """Draw dispersed starting values for a chain.

        The intercept starts near the log of the overall standardized ratio,
        precisions start between 0.5 and 2, and all other values start near
        zero. Structured effects start centered.

        :param rng: Random number generator of the chain
        :type rng: np.random.Generator

        :returns: Starting values
        :rtype: ParameterVector
        """
        ratio = (self.observations.observed.sum() + 0.5) / self.observations.expected.sum()
        values = {}
        for name, shape in self._shapes.items():
            if name == "alpha":
                values[name] = np.log(ratio) + rng.normal(0.0, 0.5)
            elif name in self.precision_priors:
                values[name] = rng.uniform(0.5, 2.0)
            else:
                values[name] = rng.normal(0.0, 0.1, size=shape)
                if name in ("phi", "b"):
                    values[name] -= values[name].mean()

        return ParameterVector(values)

    def mcmc(
        self,
        config: Optional["RunConfig"] = None,
        initial_values=None,
        cancel_event: Optional["custom_types.CancelSignal"] = None,
        **config_kwargs,
    ) -> "mcmc_results.SampleResults":
        """Sample from the posterior with Metropolis-within-Gibbs MCMC.

        :param config: Run configuration. Defaults to None, in which case one is
            built from `config_kwargs`.
        :type config: Optional[RunConfig]
        :param initial_values: Starting values, either one mapping/parameter
            vector per chain or None to draw them with
            :py:meth:`initial_values`. Defaults to None.
        :param cancel_event: Signal checked once per iteration. When set, the run
            is aborted. Defaults to None.
        :type cancel_event: Optional[custom_types.CancelSignal]
        :param config_kwargs: Keyword arguments for
            :py:class:`~scicar.model.sampler.RunConfig`. Cannot be combined with
            `config`.

        :returns: Sampling results for all chains
        :rtype: mcmc_results.SampleResults

        :raises ValueError: If both `config` and `config_kwargs` are given
        :raises SamplingCancelledError: If the run is cancelled

        Example:
            >>> res = model.mcmc(n_iter=4000, n_burnin=2000, n_chains=4, seed=7)
            >>> res.summarize(var_names=["alpha", "tau_phi"]).table
        """
        # pylint: disable=import-outside-toplevel
        from scicar.model.results.mcmc import SampleResults
        from scicar.model.sampler import RunConfig, run_chains

        # Build the configuration
        if config is None:
            config = RunConfig(**config_kwargs)
        elif config_kwargs:
            raise ValueError("Pass either `config` or keyword arguments, not both.")

        return SampleResults(
            run_chains(
                self, config, initial_values=initial_values, cancel_event=cancel_event
            ),
            model=self,
        )

    def __contains__(self, name: str) -> bool:
        return name in self._shapes

    def __str__(self) -> str:
        terms = ["log(E)", "alpha"]
        if "beta" in self._shapes:
            terms.append("X @ beta")
        if self.unstructured:
            terms.append("theta")
        if self.spatial:
            terms.append("phi")
        if self.exposure_effect is not None:
            terms.append(f"b[category] ({self.exposure_effect})")
        return (
            f"PoissonCARModel: O ~ Poisson(mu), log(mu) = {' + '.join(terms)}; "
            f"N={self.observations.n_units}, K={self.observations.n_covariates}"
        )

    @property
    def parameter_shapes(self) -> dict[str, tuple[int, ...]]:
        """Shape of one value of every parameter block."""
        return dict(self._shapes)

    @property
    def parameter_names(self) -> tuple[str, ...]:
        """Names of all parameter blocks."""
        return tuple(self._shapes)

    @property
    def precision_names(self) -> tuple[str, ...]:
        """Names of the precision parameters in the model."""
        return tuple(name for name in self._shapes if name in self.precision_priors)

    @property
    def random_effect_names(self) -> tuple[str, ...]:
        """Names of the random effects in the model."""
        return tuple(name for name in PRECISIONS if name in self._shapes)
