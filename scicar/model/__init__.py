# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Model construction, sampling, and analysis for SciCAR.

This module provides the inference engine of SciCAR. It is organized into four
composable pieces:

    - **Model specification**: :py:class:`~scicar.model.model.PoissonCARModel`
      connects :py:class:`~scicar.model.components.data.Observations` to a
      linear predictor with optional unstructured, spatial, and random-walk
      exposure effects, and exposes pure log-likelihood and log-prior functions.
    - **Spatial prior evaluation**:
      :py:class:`~scicar.model.components.graph.NeighborGraph` and
      :py:class:`~scicar.model.components.icar.ICARPrior` evaluate the ICAR prior
      and its conditional distributions.
    - **Sampling**: :py:mod:`scicar.model.sampler` runs independent
      Metropolis-within-Gibbs chains.
    - **Diagnostics**: :py:mod:`scicar.model.results` summarizes chains with
      posterior summaries, R-hat, effective sample sizes, and WAIC.

A typical workflow looks like this:

    1. **Data**: Build an :py:class:`~scicar.model.components.data.Observations`
       instance and a :py:class:`~scicar.model.components.graph.NeighborGraph`.
    2. **Model Definition**: Instantiate
       :py:class:`~scicar.model.model.PoissonCARModel`, choosing which random
       effects to include and their priors.
    3. **Sampling**: Call :py:meth:`PoissonCARModel.mcmc()
       <scicar.model.model.PoissonCARModel.mcmc>` or
       :py:func:`~scicar.model.sampler.run_chains` with a
       :py:class:`~scicar.model.sampler.RunConfig`.
    4. **Analysis**: Summarize the returned
       :py:class:`~scicar.model.results.mcmc.SampleResults`.

Example:
    >>> import scicar as scr
    >>> graph = scr.NeighborGraph.lattice(2, 2)
    >>> obs = scr.Observations(observed=[5, 7, 3, 9], expected=[5.0] * 4)
    >>> model = scr.PoissonCARModel(obs, graph)
    >>> res = model.mcmc(n_iter=2000, n_burnin=1000, n_chains=2, seed=1)
    >>> res.summarize().table
    >>> res.waic()
"""
