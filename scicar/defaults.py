# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for SciCAR package components.

This module centralizes default values used across the SciCAR package,
including MCMC run settings, proposal tuning, prior hyperparameters, and
diagnostic thresholds.

The module is organized into logical groups covering:
    - MCMC run lengths and chain counts
    - Random-walk Metropolis proposal tuning
    - Prior hyperparameters
    - Diagnostic thresholds for summarizing chains
    - Interoperability conventions for neighbor graphs

Default values cannot be programmatically altered. Per-run settings are passed
explicitly through :py:class:`scicar.model.sampler.RunConfig`.
"""

# MCMC run defaults
DEFAULT_N_ITER: int = 2000
"""Default total number of MCMC iterations per chain, including burn-in.

:type: int
"""

DEFAULT_N_BURNIN: int = 1000
"""Default number of initial iterations discarded as burn-in.

:type: int
"""

DEFAULT_THIN: int = 1
"""Default thinning interval applied to post-burn-in iterations.

:type: int
"""

DEFAULT_N_CHAINS: int = 2
"""Default number of independent chains.

:type: int
"""

# Proposal tuning defaults
DEFAULT_INITIAL_STEP_SIZE: float = 0.1
"""Default initial standard deviation of random-walk Metropolis proposals.

:type: float
"""

DEFAULT_TARGET_ACCEPTANCE: float = 0.44
"""Target acceptance rate for adapting one-dimensional random-walk proposals.

:type: float
"""

DEFAULT_ADAPT_INTERVAL: int = 50
"""Number of burn-in iterations between step-size adjustments.

:type: int
"""

DEFAULT_ADAPT_RATE: float = 0.1
"""Relative change applied to a step size at each adjustment.

:type: float
"""

DEFAULT_STEP_SIZE_BOUNDS: tuple[float, float] = (1e-4, 10.0)
"""Lower and upper bounds on adapted proposal step sizes.

:type: tuple[float, float]
"""

# Prior defaults
DEFAULT_BETA_PRIOR_SD: float = 10.0
"""Default standard deviation of the Normal(0, sd) prior on regression
coefficients.

:type: float
"""

DEFAULT_PRECISION_PRIOR_SHAPE: float = 1.0
"""Default shape of the Gamma(shape, rate) prior on precision parameters.

:type: float
"""

DEFAULT_PRECISION_PRIOR_RATE: float = 0.01
"""Default rate of the Gamma(shape, rate) prior on precision parameters.

:type: float
"""

# Diagnostic defaults
DEFAULT_CI_PROB: float = 0.95
"""Default probability mass of the symmetric credible interval.

:type: float
"""

DEFAULT_RHAT_THRESH: float = 1.1
"""Default threshold above which R-hat flags a parameter as non-converged.

:type: float
"""

DEFAULT_RHAT_METHOD: str = "rank"
"""Default R-hat method passed to :py:func:`arviz.rhat`.

:type: str
"""

DEFAULT_ESS_THRESH: int = 100  # Per chain
"""Default threshold for Effective Sample Size (ESS) per chain.

:type: int
"""

DEFAULT_MIN_DRAWS: int = 4
"""Minimum number of retained draws per chain required for diagnostics.

Rank-normalized R-hat and ESS are undefined for fewer than four draws.

:type: int
"""

# Neighbor graph conventions
DEFAULT_INDEX_BASE: int = 1
"""Default index base of `adj` arrays exchanged with CAR tooling.

WinBUGS, GeoBUGS, and NIMBLE all use one-based unit indices.

:type: int
"""

# Names used when building ArviZ objects
DEFAULT_LOG_LIKELIHOOD_NAME: str = "counts"
"""Name of the observed variable in the ArviZ `log_likelihood` group.

:type: str
"""

DEFAULT_DIM_NAMES: dict[str, str] = {
    "beta": "covariate",
    "theta": "unit",
    "phi": "unit",
    "b": "exposure_category",
    "relative_risk": "unit",
}
"""Names of the dimensions of vector-valued parameters.

:type: dict[str, str]
"""
