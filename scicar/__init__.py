# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
SciCAR: Bayesian hierarchical spatial models for areal count data.

SciCAR is a Python package for fitting Poisson regression models with spatial
conditional autoregressive random effects to areal (small-area) count data, as
is common in environmental health and disease mapping. Models are fit with a
Metropolis-within-Gibbs MCMC sampler written directly against the model's
log-posterior, and the resulting chains are summarized with ArviZ.

Key Features:
    - Intrinsic conditional autoregressive (ICAR) spatial priors over arbitrary
      neighbor graphs, including the `num`/`adj`/`weights` format used by CAR
      tooling
    - Besag-York-Mollie (BYM) models with unstructured and spatial effects
    - Random-walk (order 1 and 2) priors for non-linear exposure effects
    - Independent, reproducible chains that can run in parallel
    - Posterior summaries, R-hat, effective sample size, and WAIC

Example:
    >>> import scicar as scr
    >>> graph = scr.NeighborGraph.lattice(2, 2)
    >>> obs = scr.Observations(observed=[5, 7, 3, 9], expected=[5.0] * 4)
    >>> model = scr.PoissonCARModel(obs, graph)
    >>> results = model.mcmc(n_iter=2000, n_burnin=1000, seed=42)
    >>> summary = results.summarize()
"""

from typeguard import install_import_hook

# Define the version
__version__ = "0.1.0"

# Set up type checking
install_import_hook("scicar")

# Import objects that should be easily accessible from the package level
# pylint: disable=wrong-import-position
from scicar import utils

from scicar.model.components.data import Observations
from scicar.model.components.graph import NeighborGraph
from scicar.model.components.parameter_vector import ParameterVector
from scicar.model.model import PoissonCARModel
from scicar.model.sampler import RunConfig, run_chains

priors = utils.lazy_import("scicar.model.components.priors")
results = utils.lazy_import("scicar.model.results")
