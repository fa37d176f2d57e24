# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for chains, posterior summaries, diagnostics, and WAIC."""

import warnings

import numpy as np
import pytest

from scipy import special, stats

from scicar.exceptions import InsufficientSamplesError, NonConvergenceWarning
from scicar.model.results import (
    Chain,
    SampleResults,
    pointwise_log_likelihood,
    summarize,
    waic,
)


def _iid_chains(rng, n_chains=2, n_draws=1000, offsets=None):
    offsets = [0.0] * n_chains if offsets is None else offsets
    return [
        Chain(
            chain_id=i + 1,
            draws={
                "alpha": rng.normal(offset, 1.0, size=n_draws),
                "phi": rng.normal(0.0, 1.0, size=(n_draws, 3)),
            },
        )
        for i, offset in enumerate(offsets)
    ]


def _chains_with_log_likelihood(rng, n_chains=2, n_draws=500):
    counts = np.array([3, 5, 0, 8, 2])
    chains = []
    for i in range(n_chains):
        mu = np.exp(rng.normal(np.log(counts + 0.5), 0.1, size=(n_draws, 5)))
        chains.append(
            Chain(
                chain_id=i + 1,
                draws={"alpha": rng.normal(size=n_draws)},
                log_likelihood=stats.poisson.logpmf(counts, mu),
                log_posterior=rng.normal(size=n_draws),
            )
        )
    return chains


def test_chain_is_read_only(rng):
    alpha = rng.normal(size=20)
    chain = Chain(1, {"alpha": alpha, "phi": np.zeros((20, 3))})
    alpha[0] = 100.0
    assert chain["alpha"][0] != 100.0
    with pytest.raises(ValueError):
        chain["alpha"][0] = 1.0

    assert len(chain) == 20
    assert chain.parameter_names == ("alpha", "phi")
    assert list(chain.to_dataframe().columns) == ["alpha", "phi[0]", "phi[1]", "phi[2]"]

    first = next(chain.iter_draws())
    assert isinstance(first["alpha"], float)
    assert first["phi"].shape == (3,)


def test_chain_lengths_must_agree():
    with pytest.raises(ValueError, match="disagree"):
        Chain(1, {"alpha": np.zeros(10)}, log_posterior=np.zeros(9))
    with pytest.raises(ValueError):
        Chain(1, {})


def test_rhat_near_one_for_iid_chains(rng):
    chains = _iid_chains(rng)
    with warnings.catch_warnings(record=True) as record:
        warnings.simplefilter("always")
        summary = summarize(chains)
    assert not any(issubclass(w.category, NonConvergenceWarning) for w in record)

    assert len(summary) == 4
    assert summary.converged
    assert summary.non_converged_parameters == []
    assert summary["alpha"]["r_hat"] < 1.05
    assert summary["alpha"]["mean"] == pytest.approx(0.0, abs=0.15)
    assert summary["alpha"]["ci_lower"] == pytest.approx(-1.96, abs=0.25)
    assert summary["alpha"]["ci_upper"] == pytest.approx(1.96, abs=0.25)
    assert summary["phi[2]"]["ess_bulk"] > 1000
    assert list(summary.table.columns) == [
        "mean",
        "sd",
        "median",
        "ci_lower",
        "ci_upper",
        "r_hat",
        "ess_bulk",
        "ess_tail",
        "non_converged",
    ]


def test_separated_chains_are_flagged(rng):
    chains = _iid_chains(rng, offsets=[0.0, 10.0])
    with pytest.warns(NonConvergenceWarning, match="alpha"):
        summary = summarize(chains)
    assert summary["alpha"]["r_hat"] > 1.1
    assert summary["alpha"]["non_converged"]
    assert summary.non_converged_parameters == ["alpha"]
    assert not summary.converged


def test_diagnostics_concatenate_without_future_warnings(rng):
    results = SampleResults(_iid_chains(rng))
    with warnings.catch_warnings(record=True) as record:
        warnings.simplefilter("always")
        stats = results.calculate_diagnostics()
        tests = results.evaluate_variable_diagnostic_stats()
    assert not [
        w
        for w in record
        if issubclass(w.category, FutureWarning) and "data_vars" in str(w.message)
    ]

    # Every variable gains the metric dimension
    assert list(stats["alpha"].coords["metric"].values) == [
        "r_hat",
        "ess_bulk",
        "ess_tail",
    ]
    assert stats["phi"].sizes["metric"] == 3
    assert not bool(tests["alpha"].any())


def test_summary_options(rng):
    results = SampleResults(_iid_chains(rng))
    summary = results.summarize(var_names="alpha", ci_prob=0.5)
    assert list(summary.table.index) == ["alpha"]
    assert summary["alpha"]["ci_lower"] == pytest.approx(-0.674, abs=0.1)
    assert "variable_diagnostic_stats" in results.inference_obj.groups()

    with pytest.raises(ValueError):
        results.summarize(ci_prob=1.5)
    with pytest.raises(KeyError):
        results.summarize(var_names=["beta"])


@pytest.mark.parametrize(
    "n_chains, n_draws",
    [(1, 1000), (2, 3)],
)
def test_insufficient_samples(rng, n_chains, n_draws):
    chains = _iid_chains(rng, n_chains=n_chains, n_draws=n_draws)
    with pytest.raises(InsufficientSamplesError):
        summarize(chains)


def test_unequal_chain_lengths(rng):
    chains = [
        Chain(1, {"alpha": rng.normal(size=10)}),
        Chain(2, {"alpha": rng.normal(size=12)}),
    ]
    with pytest.raises(ValueError, match="same number of draws"):
        summarize(chains)


def test_waic_matches_direct_computation(rng):
    chains = _chains_with_log_likelihood(rng)
    pooled = pointwise_log_likelihood(chains)
    assert pooled.shape == (1000, 5)

    n_samples = pooled.shape[0]
    lppd = np.sum(special.logsumexp(pooled, axis=0) - np.log(n_samples))
    p_waic = np.sum(np.var(pooled, axis=0, ddof=1))

    result = waic(chains)
    assert result.lppd == pytest.approx(lppd, rel=1e-2)
    assert result.p_waic == pytest.approx(p_waic, rel=1e-2)
    assert result.waic == pytest.approx(-2 * (lppd - p_waic), rel=1e-2)
    assert result.waic == pytest.approx(-2 * (result.lppd - result.p_waic))
    assert result.se > 0
    assert (result.n_data_points, result.n_samples) == (5, 1000)


def test_waic_needs_log_likelihood(rng):
    with pytest.raises(ValueError, match="log-likelihood"):
        waic(_iid_chains(rng))


def test_chains_are_not_modified(rng):
    chains = _chains_with_log_likelihood(rng)
    before = [
        (chain["alpha"].copy(), chain.log_likelihood.copy()) for chain in chains
    ]
    summarize(chains)
    waic(chains)
    for chain, (alpha, log_likelihood) in zip(chains, before):
        np.testing.assert_array_equal(chain["alpha"], alpha)
        np.testing.assert_array_equal(chain.log_likelihood, log_likelihood)


def test_identify_failed_diagnostics(rng, capsys):
    results = SampleResults(_iid_chains(rng, offsets=[0.0, 10.0]))
    failures = results.identify_failed_diagnostics()
    assert failures["r_hat"] == ["alpha"]
    assert "failed the r_hat test" in capsys.readouterr().out

    results.identify_failed_diagnostics(silent=True)
    assert capsys.readouterr().out == ""


def test_netcdf_round_trip(bym_model, tmp_path):
    results = bym_model.mcmc(n_iter=60, n_burnin=20, n_chains=2, seed=1)
    assert results.n_chains == 2
    assert results.n_draws == 40

    # Dimensions are labeled with the model's units
    posterior = results.inference_obj.posterior
    assert posterior["phi"].dims == ("chain", "draw", "unit")
    np.testing.assert_array_equal(
        results.inference_obj.observed_data["counts"].values, [5, 7, 3, 9]
    )

    filename = str(tmp_path / "results.nc")
    results.save_netcdf(filename)
    loaded = SampleResults.from_netcdf(filename)
    assert loaded.chains is None
    np.testing.assert_array_equal(
        loaded.inference_obj.posterior["alpha"].values, posterior["alpha"].values
    )
    assert loaded.waic().waic == pytest.approx(results.waic().waic)


def test_results_need_input():
    with pytest.raises(ValueError):
        SampleResults()
