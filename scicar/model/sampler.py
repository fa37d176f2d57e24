# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Metropolis-within-Gibbs sampling of areal count models.

This module runs Markov chains over the parameters of a
:py:class:`~scicar.model.model.PoissonCARModel`. Each chain is driven by a
:py:class:`ChainSampler`, a small state machine that moves through the states of
:py:class:`SamplerState`:

    ``INITIALIZING -> BURNING_IN -> SAMPLING -> DONE``

with ``CANCELLED`` reachable from any running state when the cancellation signal
of the run is set.

Every iteration sweeps the parameter blocks in a fixed order:

    1. Precisions (:math:`\\tau_\\theta`, :math:`\\tau_\\phi`, :math:`\\tau_b`),
       by conjugate Gibbs draws or random-walk Metropolis
    2. The intercept :math:`\\alpha`, by random-walk Metropolis
    3. Each regression coefficient :math:`\\beta_k`, by random-walk Metropolis
    4. The unstructured effect :math:`\\theta`, by componentwise random-walk
       Metropolis. Components are conditionally independent, so all are updated
       at once.
    5. The spatial effect :math:`\\phi`, one unit at a time, by random-walk
       Metropolis against the ICAR conditional distribution. The Poisson
       likelihood is not conjugate to the ICAR prior, so no direct Gibbs draw is
       possible.
    6. Recentering of :math:`\\phi` to sum to zero
    7. The random-walk effect :math:`b`, one category at a time, then its
       recentering

The means removed by recentering are added to :math:`\\alpha`, which leaves the
linear predictor unchanged.

Proposals whose log-posterior is not finite (for example because
:math:`\\exp(\\eta)` overflowed) are rejected and counted; a single
:py:class:`~scicar.exceptions.NumericInstabilityWarning` per chain reports
them. Random-walk step sizes are adapted during burn-in only.

Chains are independent: each has its own :py:class:`numpy.random.Generator`,
spawned from a :py:class:`numpy.random.SeedSequence`, and the only objects they
share are the immutable model, observations, and graph. :py:func:`run_chains`
runs them one after the other or in a thread pool.
"""

from __future__ import annotations

import warnings

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional, Sequence, TYPE_CHECKING, Union

import numpy as np

from tqdm import tqdm

from scicar.defaults import (
    DEFAULT_ADAPT_INTERVAL,
    DEFAULT_ADAPT_RATE,
    DEFAULT_INITIAL_STEP_SIZE,
    DEFAULT_N_BURNIN,
    DEFAULT_N_CHAINS,
    DEFAULT_N_ITER,
    DEFAULT_STEP_SIZE_BOUNDS,
    DEFAULT_TARGET_ACCEPTANCE,
    DEFAULT_THIN,
)
from scicar.exceptions import (
    InvalidParameterError,
    NumericInstabilityWarning,
    SamplingCancelledError,
)
from scicar.model.components.icar import ICARPrior
from scicar.model.model import (
    DERIVED_QUANTITIES,
    PRECISIONS,
    PoissonCARModel,
    poisson_kernel,
)
from scicar.model.results.chain import Chain

if TYPE_CHECKING:
    from scicar import custom_types


class SamplerState(Enum):
    """States of a :py:class:`ChainSampler`."""

    INITIALIZING = "initializing"
    BURNING_IN = "burning-in"
    SAMPLING = "sampling"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class RunConfig:  # pylint: disable=too-many-instance-attributes
    """Configuration of an MCMC run.

    :param n_iter: Total number of iterations per chain, including burn-in.
    :param n_burnin: Number of initial iterations to discard.
    :param thin: Keep every `thin`-th iteration after burn-in.
    :param n_chains: Number of independent chains.
    :param seed: Either a single seed, from which independent per-chain streams
        are spawned, or a sequence holding one seed per chain. None draws fresh
        entropy from the operating system.
    :param retain: Names of the parameters (and derived quantities, such as
        "relative_risk") to keep in the output. None keeps every parameter.
        The pointwise log-likelihood and log-posterior are always kept.
    :param parallel: Whether to run chains in a thread pool.
    :param n_workers: Number of threads when `parallel` is True. None uses one
        per chain.
    :param progress_bar: Whether to display a tqdm progress bar per chain.
    :param adapt: Whether to adapt random-walk step sizes during burn-in.
    :param adapt_interval: Number of burn-in iterations between adaptations.
    :param target_acceptance: Acceptance rate targeted by adaptation.
    :param initial_step_size: Initial standard deviation of all random-walk
        proposals.
    :param precision_update: Either "gibbs" (conjugate Gamma draws) or
        "metropolis" (random walk on the natural scale, with non-positive
        proposals rejected).

    :raises ValueError: If any setting is invalid

    Iteration ``t`` (zero-based) is retained when ``t >= n_burnin`` and
    ``(t - n_burnin) % thin == 0``.

    Example:
        >>> config = RunConfig(n_iter=3000, n_burnin=1000, thin=2, n_chains=4, seed=1)
        >>> config.n_retained
        1000
    """

    n_iter: int = DEFAULT_N_ITER
    n_burnin: int = DEFAULT_N_BURNIN
    thin: int = DEFAULT_THIN
    n_chains: int = DEFAULT_N_CHAINS
    seed: Union[int, Sequence[int], None] = None
    retain: Optional[Sequence[str]] = None
    parallel: bool = False
    n_workers: Optional[int] = None
    progress_bar: bool = False
    adapt: bool = True
    adapt_interval: int = DEFAULT_ADAPT_INTERVAL
    target_acceptance: float = DEFAULT_TARGET_ACCEPTANCE
    initial_step_size: float = DEFAULT_INITIAL_STEP_SIZE
    precision_update: Literal["gibbs", "metropolis"] = "gibbs"

    def __post_init__(self):
        # Run lengths
        if self.n_iter < 1:
            raise ValueError("`n_iter` must be positive.")
        if not 0 <= self.n_burnin < self.n_iter:
            raise ValueError("`n_burnin` must be in [0, n_iter).")
        if self.thin < 1:
            raise ValueError("`thin` must be positive.")
        if self.n_chains < 1:
            raise ValueError("`n_chains` must be positive.")

        # Seeds
        if isinstance(self.seed, Sequence) and len(self.seed) != self.n_chains:
            raise ValueError(
                f"Got {len(self.seed)} seeds for {self.n_chains} chains. Pass one "
                "seed per chain or a single seed."
            )

        # Proposals
        if self.adapt_interval < 1:
            raise ValueError("`adapt_interval` must be positive.")
        if not 0 < self.target_acceptance < 1:
            raise ValueError("`target_acceptance` must be in (0, 1).")
        if not (np.isfinite(self.initial_step_size) and self.initial_step_size > 0):
            raise ValueError("`initial_step_size` must be positive and finite.")
        if self.precision_update not in ("gibbs", "metropolis"):
            raise ValueError("`precision_update` must be 'gibbs' or 'metropolis'.")
        if self.n_workers is not None and self.n_workers < 1:
            raise ValueError("`n_workers` must be positive.")

        # Store retained names as a tuple
        if self.retain is not None:
            if isinstance(self.retain, str):
                self.retain = (self.retain,)
            self.retain = tuple(self.retain)

    def chain_seeds(self) -> list[np.random.SeedSequence]:
        """Get one independent seed sequence per chain.

        :returns: Seed sequences, in chain order
        :rtype: list[np.random.SeedSequence]
        """
        if isinstance(self.seed, Sequence):
            return [np.random.SeedSequence(seed) for seed in self.seed]
        return np.random.SeedSequence(self.seed).spawn(self.n_chains)

    @property
    def n_retained(self) -> int:
        """Number of draws retained per chain."""
        return -(-(self.n_iter - self.n_burnin) // self.thin)


class _Block:
    """Random-walk proposal scales and acceptance counters for one block."""

    def __init__(self, shape, step_size):
        self.step = np.full(shape, step_size, dtype=float)
        self.window_accepted = np.zeros(shape)
        self.window_proposed = np.zeros(shape)
        self.accepted = np.zeros(shape)
        self.proposed = np.zeros(shape)

    def record(self, accepted, sampling, index=Ellipsis):
        """Count one proposal per element of `index`."""
        self.window_accepted[index] += accepted
        self.window_proposed[index] += 1
        if sampling:
            self.accepted[index] += accepted
            self.proposed[index] += 1

    def adapt(self, target, rate):
        """Scale steps up or down depending on the acceptance since last call."""
        with np.errstate(invalid="ignore", divide="ignore"):
            acceptance = self.window_accepted / self.window_proposed
        scale = np.where(acceptance > target, 1 + rate, 1 - rate)
        scale = np.where(self.window_proposed > 0, scale, 1.0)
        self.step = np.clip(self.step * scale, *DEFAULT_STEP_SIZE_BOUNDS)
        self.window_accepted[...] = 0
        self.window_proposed[...] = 0

    @property
    def acceptance_rate(self) -> float:
        """Mean post-burn-in acceptance rate over all elements."""
        total = self.proposed.sum()
        return float(self.accepted.sum() / total) if total > 0 else float("nan")


class ChainSampler:  # pylint: disable=too-many-instance-attributes
    """Metropolis-within-Gibbs sampler for a single chain.

    :param model: Model to sample from
    :type model: PoissonCARModel
    :param config: Run configuration
    :type config: RunConfig
    :param chain_id: One-based identifier of the chain
    :type chain_id: custom_types.Integer
    :param seed: Seed of the chain's random number generator
    :type seed: custom_types.Seed
    :param initial_values: Starting values. Defaults to None, in which case they
        are drawn with
        :py:meth:`PoissonCARModel.initial_values()
        <scicar.model.model.PoissonCARModel.initial_values>`.
    :param cancel_event: Signal checked once per iteration. Defaults to None.
    :type cancel_event: Optional[custom_types.CancelSignal]

    :raises InvalidParameterError: If the initial values violate the support of
        the model
    :raises ValueError: If `config.retain` names unknown quantities

    The sampler owns its parameter vector and mutates it in place. A sampler can
    only be run once.
    """

    def __init__(
        self,
        model: PoissonCARModel,
        config: RunConfig,
        chain_id: "custom_types.Integer" = 1,
        seed: "custom_types.Seed" = None,
        initial_values=None,
        cancel_event: Optional["custom_types.CancelSignal"] = None,
    ):
        # Record inputs
        self.model = model
        self.config = config
        self.chain_id = int(chain_id)
        self.cancel_event = cancel_event
        self.rng = np.random.default_rng(seed)
        self.state = SamplerState.INITIALIZING
        self.iteration = 0
        self.n_unstable = 0

        # Check what is retained
        known = model.parameter_names + DERIVED_QUANTITIES
        self.retain = model.parameter_names if config.retain is None else config.retain
        if unknown := [name for name in self.retain if name not in known]:
            raise ValueError(
                f"Cannot retain unknown quantities {unknown}. Options are {known}."
            )

        # Get the starting point. Initial values are validated before any sampling.
        if initial_values is None:
            self.parameters = model.initial_values(self.rng)
        else:
            self.parameters = model.validate(initial_values)
        if not np.isfinite(model.log_posterior(self.parameters)):
            raise InvalidParameterError(
                f"The initial values of chain {self.chain_id} have a non-finite "
                "log-posterior."
            )

        # Set up the random-walk blocks
        shapes = model.parameter_shapes
        metropolis = ["alpha", "beta", "theta", "phi", "b"]
        if config.precision_update == "metropolis":
            metropolis += list(model.precision_names)
        self.blocks = {
            name: _Block(shapes[name], config.initial_step_size)
            for name in metropolis
            if name in shapes
        }

        # Static data used in every sweep
        observations = model.observations
        self._observed = observations.observed.astype(float)
        self._covariates = observations.covariates
        self._icar_effects: dict[str, tuple[str, ICARPrior]] = {}
        if model.spatial:
            self._icar_effects["tau_phi"] = ("phi", model.spatial_prior)
        if model.exposure_effect is not None:
            self._icar_effects["tau_b"] = ("b", model.exposure_prior)
            self._b_units = [
                np.flatnonzero(observations.exposure_category == j)
                for j in range(observations.n_exposure_categories)
            ]

    def _metropolis(self, current_lp, candidate_lp):
        """Accept or reject proposals elementwise.

        Non-finite candidates are rejected and counted as unstable.
        """
        current_lp = np.asarray(current_lp, dtype=float)
        candidate_lp = np.asarray(candidate_lp, dtype=float)
        unstable = ~np.isfinite(candidate_lp)
        self.n_unstable += int(unstable.sum())
        log_u = np.log(self.rng.random(candidate_lp.shape))
        with np.errstate(invalid="ignore"):
            accept = ~unstable & (log_u < candidate_lp - current_lp)
        return accept

    def update_precisions(self) -> None:
        """Update every precision parameter given the current random effects."""
        model = self.model
        params = self.parameters
        for name in model.precision_names:
            prior = model.precision_priors[name]

            # Full conditional and log-density of the governed effect
            if name == "tau_theta":
                theta = params["theta"]
                n, sum_of_squares = theta.size, float(np.dot(theta, theta))
                full_conditional = prior.posterior(n, sum_of_squares)

                def effect_log_density(tau, n=n, sum_of_squares=sum_of_squares):
                    return 0.5 * n * np.log(tau) - 0.5 * tau * sum_of_squares

            else:
                effect, icar = self._icar_effects[name]
                full_conditional = icar.precision_full_conditional(
                    params[effect], prior
                )

                def effect_log_density(tau, icar=icar, values=params[effect]):
                    return icar.log_density(values, tau)

            # Conjugate draw
            if self.config.precision_update == "gibbs":
                params[name] = full_conditional.sample(self.rng)
                continue

            # Random-walk Metropolis. Proposals outside the support are rejected
            # before any density is evaluated.
            block = self.blocks[name]
            current = params[name]
            candidate = current + block.step * self.rng.standard_normal()
            if candidate <= 0:
                block.record(False, self.state is SamplerState.SAMPLING)
                continue

            def log_target(tau, prior=prior, effect_log_density=effect_log_density):
                return float(prior.log_density(tau)) + effect_log_density(tau)

            accept = self._metropolis(log_target(current), log_target(candidate))
            block.record(accept, self.state is SamplerState.SAMPLING)
            if accept:
                params[name] = float(candidate)

    def _update_alpha(self, eta):
        block = self.blocks["alpha"]
        current = self.parameters["alpha"]
        delta = float(block.step * self.rng.standard_normal())
        prior = self.model.alpha_prior
        current_lp = poisson_kernel(self._observed, eta).sum() + prior.log_density(
            current
        )
        candidate_lp = poisson_kernel(
            self._observed, eta + delta
        ).sum() + prior.log_density(current + delta)

        accept = self._metropolis(current_lp, candidate_lp)
        block.record(accept, self.state is SamplerState.SAMPLING)
        if accept:
            self.parameters["alpha"] = current + delta
            eta += delta

    def _update_beta(self, eta):
        block = self.blocks["beta"]
        beta = self.parameters["beta"]
        prior = self.model.beta_prior
        sampling = self.state is SamplerState.SAMPLING
        current_kernel = poisson_kernel(self._observed, eta).sum()
        for k in range(beta.size):
            delta = block.step[k] * self.rng.standard_normal()
            candidate_eta = eta + delta * self._covariates[:, k]
            candidate_kernel = poisson_kernel(self._observed, candidate_eta).sum()

            accept = self._metropolis(
                current_kernel + prior.log_density(beta[k]),
                candidate_kernel + prior.log_density(beta[k] + delta),
            )
            block.record(accept, sampling, k)
            if accept:
                beta[k] += delta
                eta[:] = candidate_eta
                current_kernel = candidate_kernel

    def _update_theta(self, eta):
        block = self.blocks["theta"]
        theta = self.parameters["theta"]
        tau = self.parameters["tau_theta"]
        delta = block.step * self.rng.standard_normal(theta.size)
        candidate = theta + delta

        # Full conditionals are independent across units
        current_lp = poisson_kernel(self._observed, eta) - 0.5 * tau * theta**2
        candidate_lp = (
            poisson_kernel(self._observed, eta + delta) - 0.5 * tau * candidate**2
        )
        accept = self._metropolis(current_lp, candidate_lp)
        block.record(accept, self.state is SamplerState.SAMPLING)
        theta[accept] = candidate[accept]
        eta[accept] += delta[accept]

    def _update_icar_sites(self, eta, name, icar, units=None):
        """Single-site random-walk Metropolis against ICAR conditionals.

        `units[j]` lists the observations whose linear predictor contains site
        `j`. None means site `j` is observation `j`.
        """
        block = self.blocks[name]
        values = self.parameters[name]
        tau = self.parameters[PRECISIONS[name]]
        sampling = self.state is SamplerState.SAMPLING
        steps = block.step * self.rng.standard_normal(values.size)
        log_u = np.log(self.rng.random(values.size))
        accepted = np.zeros(values.size, dtype=bool)

        for site in range(values.size):
            current = values[site]
            candidate = current + steps[site]

            # Likelihood contribution of the affected observations
            index = site if units is None else units[site]
            observed = self._observed[index]
            eta_site = eta[index]
            current_lp = np.sum(poisson_kernel(observed, eta_site))
            candidate_lp = np.sum(poisson_kernel(observed, eta_site + steps[site]))

            # ICAR conditional of this site given its neighbors
            current_lp += icar.conditional_log_density(site, current, values, tau)
            candidate_lp += icar.conditional_log_density(site, candidate, values, tau)

            # Accept or reject
            if not np.isfinite(candidate_lp):
                self.n_unstable += 1
                continue
            if log_u[site] < candidate_lp - current_lp:
                values[site] = candidate
                eta[index] += steps[site]
                accepted[site] = True

        block.record(accepted, sampling)

    def _recenter(self, name):
        """Impose the sum-to-zero constraint and move the mean into the intercept."""
        shift = ICARPrior.recenter(self.parameters[name])
        self.parameters["alpha"] = self.parameters["alpha"] + shift

    def sweep(self) -> None:
        """Update every parameter block once, in the fixed sweep order."""
        model = self.model
        self.update_precisions()

        # The linear predictor is kept current as blocks are updated
        eta = model.linear_predictor(self.parameters)
        self._update_alpha(eta)
        if "beta" in self.blocks:
            self._update_beta(eta)
        if model.unstructured:
            self._update_theta(eta)
        if model.spatial:
            self._update_icar_sites(eta, "phi", model.spatial_prior)
            self._recenter("phi")
        if model.exposure_effect is not None:
            self._update_icar_sites(eta, "b", model.exposure_prior, self._b_units)
            self._recenter("b")

    def _adapt(self):
        for block in self.blocks.values():
            block.adapt(self.config.target_acceptance, DEFAULT_ADAPT_RATE)

    def run(self) -> Chain:
        """Run the chain to completion.

        :returns: The retained draws of the chain
        :rtype: Chain

        :raises RuntimeError: If the sampler has already been run
        :raises SamplingCancelledError: If the cancellation signal is set. Partial
            output is discarded.
        """
        if self.state is not SamplerState.INITIALIZING:
            raise RuntimeError(f"Chain {self.chain_id} has already been run.")

        # Allocate the output
        config = self.config
        model = self.model
        n_retained = config.n_retained
        n_units = model.observations.n_units
        shapes = {
            **model.parameter_shapes,
            **{name: (n_units,) for name in DERIVED_QUANTITIES},
        }
        draws = {name: np.empty((n_retained, *shapes[name])) for name in self.retain}
        log_likelihood = np.empty((n_retained, n_units))
        log_posterior = np.empty(n_retained)

        # Run
        retained = 0
        for iteration in tqdm(
            range(config.n_iter),
            desc=f"Chain {self.chain_id}",
            position=self.chain_id - 1,
            disable=not config.progress_bar,
        ):
            # Check for cancellation once per iteration
            if self.cancel_event is not None and self.cancel_event.is_set():
                self.state = SamplerState.CANCELLED
                raise SamplingCancelledError(
                    f"Chain {self.chain_id} was cancelled at iteration {iteration}."
                )

            # Sweep
            self.iteration = iteration
            self.state = (
                SamplerState.BURNING_IN
                if iteration < config.n_burnin
                else SamplerState.SAMPLING
            )
            self.sweep()

            # Adapt during burn-in only
            if (
                config.adapt
                and self.state is SamplerState.BURNING_IN
                and (iteration + 1) % config.adapt_interval == 0
            ):
                self._adapt()

            # Retain
            if (
                self.state is SamplerState.SAMPLING
                and (iteration - config.n_burnin) % config.thin == 0
            ):
                derived = (
                    model.derived_quantities(self.parameters)
                    if "relative_risk" in draws
                    else {}
                )
                for name, out in draws.items():
                    out[retained] = (
                        derived[name] if name in derived else self.parameters[name]
                    )
                log_likelihood[retained] = model.pointwise_log_likelihood(
                    self.parameters
                )
                log_posterior[retained] = model.log_posterior(self.parameters)
                retained += 1

        self.state = SamplerState.DONE

        # Report proposals rejected for numerical reasons
        if self.n_unstable > 0:
            warnings.warn(
                f"Chain {self.chain_id}: {self.n_unstable} proposals gave a non-finite "
                "log-posterior and were rejected.",
                NumericInstabilityWarning,
            )

        return Chain(
            chain_id=self.chain_id,
            draws=draws,
            log_likelihood=log_likelihood,
            log_posterior=log_posterior,
            acceptance_rates={
                name: block.acceptance_rate for name, block in self.blocks.items()
            },
            step_sizes={name: block.step.copy() for name, block in self.blocks.items()},
            n_unstable=self.n_unstable,
        )


def run_chains(
    model: PoissonCARModel,
    config: RunConfig,
    initial_values=None,
    cancel_event: Optional["custom_types.CancelSignal"] = None,
) -> list[Chain]:
    """Run independent chains of the Metropolis-within-Gibbs sampler.

    :param model: Model to sample from
    :type model: PoissonCARModel
    :param config: Run configuration
    :type config: RunConfig
    :param initial_values: Either None, in which case starting values are drawn
        for every chain, or a sequence with one mapping (or
        :py:class:`~scicar.model.components.parameter_vector.ParameterVector`)
        per chain. Defaults to None.
    :param cancel_event: Signal, such as a :py:class:`threading.Event`, checked
        once per iteration by every chain. Defaults to None.
    :type cancel_event: Optional[custom_types.CancelSignal]

    :returns: One chain per requested chain, in chain order
    :rtype: list[Chain]

    :raises InvalidParameterError: If any initial values are invalid. This is
        raised before any chain starts.
    :raises SamplingCancelledError: If the run is cancelled. No chains are
        returned.

    Example:
        >>> config = RunConfig(n_iter=2000, n_burnin=1000, n_chains=2, seed=42)
        >>> chains = run_chains(model, config)
        >>> [chain.n_draws for chain in chains]
        [1000, 1000]
    """
    # One starting point per chain
    if initial_values is None:
        initial_values = [None] * config.n_chains
    elif len(initial_values) != config.n_chains:
        raise ValueError(
            f"Got {len(initial_values)} sets of initial values for "
            f"{config.n_chains} chains."
        )

    # Build every sampler first so that bad initial values fail before sampling
    samplers = [
        ChainSampler(
            model,
            config,
            chain_id=chain_index + 1,
            seed=seed,
            initial_values=chain_inits,
            cancel_event=cancel_event,
        )
        for chain_index, (seed, chain_inits) in enumerate(
            zip(config.chain_seeds(), initial_values)
        )
    ]

    # Run
    if not config.parallel or config.n_chains == 1:
        return [sampler.run() for sampler in samplers]
    with ThreadPoolExecutor(max_workers=config.n_workers or config.n_chains) as pool:
        futures = [pool.submit(sampler.run) for sampler in samplers]
        return [future.result() for future in futures]
