# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""End-to-end fits of small models with known answers."""

import numpy as np
import pytest

import scicar as scr

from scicar.model.components.data import discretize


def test_two_by_two_grid_recovers_overall_rate():
    graph = scr.NeighborGraph.from_num_adj_weights(
        num=[2, 2, 2, 2], adj=[2, 3, 1, 4, 1, 4, 2, 3]
    )
    obs = scr.Observations(observed=[5, 7, 3, 9], expected=[5.0, 5.0, 5.0, 5.0])
    model = scr.PoissonCARModel(obs, graph, unstructured=False)

    results = model.mcmc(n_iter=2000, n_burnin=1000, n_chains=2, seed=42)
    summary = results.summarize(var_names=["alpha", "phi"])

    assert abs(summary["alpha"]["mean"] - np.log(1.2)) < 0.25
    assert summary["alpha"]["r_hat"] < 1.1
    assert summary["alpha"]["ci_lower"] < np.log(1.2) < summary["alpha"]["ci_upper"]

    # The spatial effect is centered in every retained draw
    phi = results.inference_obj.posterior["phi"].values
    np.testing.assert_allclose(phi.sum(axis=-1), 0.0, atol=1e-9)


@pytest.mark.filterwarnings("ignore::scicar.exceptions.NonConvergenceWarning")
def test_bym_model_runs_in_parallel(bym_model):
    results = bym_model.mcmc(
        n_iter=1000,
        n_burnin=500,
        n_chains=3,
        seed=7,
        parallel=True,
        retain=["alpha", "tau_phi", "phi", "relative_risk"],
    )
    summary = results.summarize()
    assert np.all(np.isfinite(summary.table["mean"]))
    assert "relative_risk[3]" in summary

    # Units with more cases have higher estimated risk
    relative_risk = results.inference_obj.posterior["relative_risk"].mean(("chain", "draw"))
    assert float(relative_risk[3]) > float(relative_risk[2])
    assert all(0 < rate <= 1 for rate in results.chains[0].acceptance_rates.values())


def test_waic_prefers_model_with_true_covariate():
    rng = np.random.default_rng(31)
    n_units = 60
    covariate = rng.normal(size=n_units)
    expected = rng.uniform(5.0, 15.0, size=n_units)
    observed = rng.poisson(expected * np.exp(0.8 * covariate))

    with_covariate = scr.PoissonCARModel(
        scr.Observations(observed, expected, covariates=covariate),
        spatial=False,
        unstructured=False,
    )
    without_covariate = scr.PoissonCARModel(
        scr.Observations(observed, expected), spatial=False, unstructured=False
    )

    config = scr.RunConfig(n_iter=2000, n_burnin=1000, n_chains=2, seed=5)
    full = with_covariate.mcmc(config)
    reduced = without_covariate.mcmc(config)

    assert full.waic().waic < reduced.waic().waic
    assert full.summarize(var_names="beta")["beta[0]"]["mean"] == pytest.approx(
        0.8, abs=0.15
    )


@pytest.mark.parametrize("exposure_effect", ["rw1", "rw2"])
def test_exposure_effect_is_centered(exposure_effect):
    rng = np.random.default_rng(12)
    n_units = 40
    exposure = rng.uniform(0.0, 10.0, size=n_units)
    expected = rng.uniform(3.0, 8.0, size=n_units)
    observed = rng.poisson(expected * np.exp(0.3 * np.sin(exposure)))
    obs = scr.Observations(
        observed,
        expected,
        exposure_category=discretize(exposure, 6),
        n_exposure_categories=6,
    )
    model = scr.PoissonCARModel(
        obs, spatial=False, unstructured=False, exposure_effect=exposure_effect
    )

    results = model.mcmc(n_iter=300, n_burnin=100, n_chains=2, seed=3)
    b = results.inference_obj.posterior["b"].values
    assert b.shape == (2, 200, 6)
    np.testing.assert_allclose(b.sum(axis=-1), 0.0, atol=1e-9)
    assert np.all(results.inference_obj.posterior["tau_b"].values > 0)
