# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for the Poisson regression model and its parameter vectors."""

import numpy as np
import pytest

from scipy import special, stats

from scicar.exceptions import InvalidParameterError
from scicar.model.components.data import Observations
from scicar.model.components.parameter_vector import ParameterKind, ParameterVector
from scicar.model.components.priors import Flat, Gamma, Normal
from scicar.model.model import PoissonCARModel, poisson_kernel


@pytest.fixture
def bym_parameters():
    return {
        "alpha": 0.2,
        "tau_theta": 2.0,
        "theta": np.array([0.1, -0.2, 0.05, 0.0]),
        "tau_phi": 0.5,
        "phi": np.array([0.3, -0.1, -0.4, 0.2]),
    }


@pytest.fixture
def exposure_observations():
    return Observations(
        observed=[2, 4, 1, 6, 3, 8],
        expected=[2.0, 3.0, 1.5, 4.0, 2.5, 5.0],
        covariates=[[0.1], [0.3], [-0.2], [0.5], [0.0], [0.9]],
        exposure_category=[0, 1, 2, 3, 1, 2],
    )


def test_parameter_vector_blocks():
    params = ParameterVector({"alpha": np.float64(0.5), "phi": [1.0, 2.0, 3.0]})
    assert params.kind("alpha") is ParameterKind.SCALAR
    assert params.kind("phi") is ParameterKind.VECTOR
    assert params.shapes() == {"alpha": (), "phi": (3,)}
    assert isinstance(params["alpha"], float)

    # Snapshots are independent of the original
    snapshot = params.copy()
    params["phi"][0] = 10.0
    params["alpha"] = 1.5
    assert snapshot["phi"][0] == 1.0
    assert snapshot["alpha"] == 0.5

    with pytest.raises(InvalidParameterError):
        params["phi"] = np.zeros(2)
    with pytest.raises(InvalidParameterError):
        params["alpha"] = np.zeros(2)
    with pytest.raises(KeyError):
        params["beta"] = 1.0
    with pytest.raises(InvalidParameterError):
        ParameterVector({"phi": np.zeros((2, 2))})


def test_parameter_names(grid_observations, grid_graph, exposure_observations):
    assert PoissonCARModel(grid_observations, grid_graph).parameter_names == (
        "alpha",
        "tau_theta",
        "theta",
        "tau_phi",
        "phi",
    )
    assert PoissonCARModel(grid_observations, spatial=False).parameter_names == (
        "alpha",
        "tau_theta",
        "theta",
    )

    model = PoissonCARModel(
        exposure_observations, spatial=False, unstructured=False, exposure_effect="rw1"
    )
    assert model.parameter_names == ("alpha", "beta", "tau_b", "b")
    assert model.parameter_shapes["b"] == (4,)
    assert model.precision_names == ("tau_b",)
    assert model.random_effect_names == ("b",)
    assert "b" in model and "phi" not in model


def test_model_needs_graph_and_exposure(grid_observations, grid_graph):
    with pytest.raises(ValueError, match="graph is required"):
        PoissonCARModel(grid_observations)
    with pytest.raises(ValueError, match="units"):
        PoissonCARModel(
            Observations([1, 2, 3], [1.0, 1.0, 1.0]), grid_graph, unstructured=False
        )
    with pytest.raises(ValueError, match="exposure_category"):
        PoissonCARModel(grid_observations, grid_graph, exposure_effect="rw2")


@pytest.mark.parametrize(
    "spatial, exposure_effect",
    [(True, None), (False, "rw1"), (True, "rw2")],
)
def test_structured_effects_need_flat_intercept_prior(
    grid_graph, spatial, exposure_effect
):
    observations = Observations(
        observed=[5, 7, 3, 9], expected=[5.0] * 4, exposure_category=[0, 1, 2, 3]
    )
    with pytest.raises(ValueError, match="Flat prior"):
        PoissonCARModel(
            observations,
            grid_graph,
            spatial=spatial,
            exposure_effect=exposure_effect,
            alpha_prior=Normal(0.0, 0.1),
        )

    # A proper intercept prior is fine with the unstructured effect alone
    model = PoissonCARModel(observations, spatial=False, alpha_prior=Normal(0.0, 0.1))
    assert isinstance(model.alpha_prior, Normal)
    assert isinstance(PoissonCARModel(observations, grid_graph).alpha_prior, Flat)


@pytest.mark.parametrize(
    "update, match",
    [
        ({"tau_phi": 0.0}, "strictly positive"),
        ({"tau_theta": -1.0}, "strictly positive"),
        ({"phi": np.array([0.0, np.nan, 0.0, 0.0])}, "finite"),
        ({"theta": np.zeros(3)}, "shape"),
        ({"beta": np.zeros(1)}, "Unexpected"),
    ],
)
def test_validate_rejects_bad_values(bym_model, bym_parameters, update, match):
    with pytest.raises(InvalidParameterError, match=match):
        bym_model.validate({**bym_parameters, **update})


def test_validate_rejects_missing_blocks(bym_model, bym_parameters):
    del bym_parameters["tau_phi"]
    with pytest.raises(InvalidParameterError, match="Missing"):
        bym_model.validate(bym_parameters)


def test_validate_copies(bym_model, bym_parameters):
    params = bym_model.validate(bym_parameters)
    params["phi"][0] = 5.0
    assert bym_parameters["phi"][0] == 0.3


def test_log_likelihood_matches_scipy(bym_model, bym_parameters):
    params = bym_model.validate(bym_parameters)
    eta = (
        np.log(5.0) + bym_parameters["alpha"] + bym_parameters["theta"]
        + bym_parameters["phi"]
    )
    np.testing.assert_allclose(bym_model.linear_predictor(params), eta)

    expected = stats.poisson.logpmf([5, 7, 3, 9], np.exp(eta))
    np.testing.assert_allclose(bym_model.pointwise_log_likelihood(params), expected)
    assert bym_model.log_likelihood(params) == pytest.approx(expected.sum())


def test_poisson_kernel():
    observed = np.array([0.0, 3.0, 10.0])
    eta = np.array([-1.0, 0.5, 2.0])
    np.testing.assert_allclose(
        poisson_kernel(observed, eta),
        stats.poisson.logpmf(observed, np.exp(eta)) + special.gammaln(observed + 1),
    )

    # Overflow gives a non-finite value rather than an error
    assert not np.isfinite(poisson_kernel(np.array([1.0]), np.array([1000.0]))[0])


def test_log_prior(bym_model, bym_parameters, grid_graph):
    params = bym_model.validate(bym_parameters)
    theta, phi = bym_parameters["theta"], bym_parameters["phi"]
    prior = Gamma(1.0, 0.01)
    expected = (
        prior.total_log_density(2.0)
        + prior.total_log_density(0.5)
        + stats.norm.logpdf(theta, 0.0, 1 / np.sqrt(2.0)).sum()
        + 0.5 * 3 * np.log(0.5)
        - 0.5 * 0.5 * grid_graph.quadratic_form(phi)
    )
    assert bym_model.log_prior(params) == pytest.approx(expected)
    assert bym_model.log_posterior(params) == pytest.approx(
        expected + bym_model.log_likelihood(params)
    )


def test_non_positive_precision_has_zero_prior(bym_model, bym_parameters):
    params = ParameterVector({**bym_parameters, "tau_phi": -1.0})
    assert bym_model.log_prior(params) == -np.inf
    assert bym_model.log_posterior(params) == -np.inf


def test_custom_priors(exposure_observations):
    model = PoissonCARModel(
        exposure_observations,
        spatial=False,
        unstructured=False,
        alpha_prior=Normal(0.0, 5.0),
        beta_prior=Normal(0.0, 1.0),
    )
    params = model.validate({"alpha": 0.5, "beta": [2.0]})
    assert model.log_prior(params) == pytest.approx(
        stats.norm.logpdf(0.5, 0.0, 5.0) + stats.norm.logpdf(2.0, 0.0, 1.0)
    )


def test_exposure_effect_enters_by_category(exposure_observations):
    model = PoissonCARModel(
        exposure_observations, spatial=False, unstructured=False, exposure_effect="rw2"
    )
    params = model.validate(
        {"alpha": 0.0, "beta": [0.0], "tau_b": 1.0, "b": [0.3, -0.1, 0.2, -0.4]}
    )
    np.testing.assert_allclose(
        model.linear_predictor(params) - exposure_observations.log_expected,
        [0.3, -0.1, 0.2, -0.4, -0.1, 0.2],
    )


def test_relative_risk(bym_model, bym_parameters):
    params = bym_model.validate(bym_parameters)
    relative_risk = bym_model.derived_quantities(params)["relative_risk"]
    np.testing.assert_allclose(
        relative_risk,
        np.exp(
            bym_parameters["alpha"] + bym_parameters["theta"] + bym_parameters["phi"]
        ),
    )


def test_initial_values_are_valid(bym_model, rng):
    for _ in range(10):
        params = bym_model.initial_values(rng)
        bym_model.validate(params)
        assert np.isfinite(bym_model.log_posterior(params))
        assert abs(params["phi"].sum()) < 1e-12
