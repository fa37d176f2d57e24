# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""MCMC results analysis for SciCAR.

This submodule holds the output of sampling runs and the tools to analyze it:

   1. :py:class:`scicar.model.results.chain.Chain`, the read-only record of the
      retained draws, pointwise log-likelihood, and acceptance statistics of one
      chain.
   2. :py:class:`scicar.model.results.mcmc.SampleResults`, which gathers chains
      into an ArviZ ``InferenceData`` object and computes posterior summaries,
      convergence diagnostics, and WAIC.

The ``inference_obj`` attribute of :py:class:`SampleResults` allows for further
analysis and plotting with ArviZ.

Users will not typically build result objects directly. They are returned by
:py:meth:`scicar.model.model.PoissonCARModel.mcmc`:

    >>> import scicar as scr
    >>>
    >>> results = model.mcmc(n_iter=4000, n_burnin=2000, n_chains=4, seed=3)
    >>> summary = results.summarize()
    >>> summary.non_converged_parameters
    >>> results.waic()
"""

from scicar.model.results.chain import Chain
from scicar.model.results.mcmc import (
    PosteriorSummary,
    SampleResults,
    WAICResult,
    pointwise_log_likelihood,
    summarize,
    waic,
)
