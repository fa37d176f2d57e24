# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for observation containers."""

import numpy as np
import pandas as pd
import pytest

from scicar.model.components.data import Observations, discretize


def test_observations_store_read_only_copies():
    observed = np.array([5, 7, 3, 9])
    obs = Observations(observed=observed, expected=[5.0, 5.0, 5.0, 5.0])
    observed[0] = 100

    assert obs.observed.tolist() == [5, 7, 3, 9]
    assert obs.n_units == 4
    assert obs.n_covariates == 0
    assert obs.covariates.shape == (4, 0)
    assert obs.unit_ids == (0, 1, 2, 3)
    np.testing.assert_allclose(obs.log_expected, np.log(5.0))
    for array in (obs.observed, obs.expected, obs.covariates):
        assert not array.flags.writeable


def test_covariate_vector_becomes_a_column():
    obs = Observations([1, 2, 3], [1.0, 1.0, 1.0], covariates=[0.1, 0.2, 0.3])
    assert obs.covariates.shape == (3, 1)
    assert obs.covariate_names == ("x0",)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"observed": [1, -2], "expected": [1.0, 1.0]},
        {"observed": [1, 2.5], "expected": [1.0, 1.0]},
        {"observed": [1, 2], "expected": [1.0, 0.0]},
        {"observed": [1, 2], "expected": [1.0, np.inf]},
        {"observed": [1, 2], "expected": [1.0]},
        {"observed": [1, 2], "expected": [1.0, 1.0], "covariates": [[0.0], [np.nan]]},
        {"observed": [1, 2], "expected": [1.0, 1.0], "unit_ids": ["a", "a"]},
        {"observed": [1, 2], "expected": [1.0, 1.0], "exposure_category": [0, -1]},
        {
            "observed": [1, 2],
            "expected": [1.0, 1.0],
            "exposure_category": [0, 3],
            "n_exposure_categories": 3,
        },
        {"observed": [1, 2], "expected": [1.0, 1.0], "n_exposure_categories": 3},
    ],
)
def test_invalid_observations(kwargs):
    with pytest.raises(ValueError):
        Observations(**kwargs)


def test_from_rows():
    obs = Observations.from_rows(
        [("a", 5, 5.0, [0.1, 1.0]), ("b", 7, 4.0, [0.4, 0.0]), ("c", 3, 2.0, [0.2, 1.0])],
        covariate_names=["smoking", "urban"],
    )
    assert obs.unit_ids == ("a", "b", "c")
    assert obs.covariate_names == ("smoking", "urban")
    np.testing.assert_allclose(obs.covariates[:, 1], [1.0, 0.0, 1.0])
    np.testing.assert_allclose(obs.expected, [5.0, 4.0, 2.0])

    # Covariates are optional
    assert Observations.from_rows([("a", 1, 1.0), ("b", 2, 1.0)]).n_covariates == 0

    with pytest.raises(ValueError):
        Observations.from_rows([("a", 1)])


def test_dataframe_round_trip():
    df = pd.DataFrame(
        {
            "region": ["north", "south", "east"],
            "cases": [4, 0, 11],
            "expected_cases": [3.5, 1.2, 8.0],
            "pm25": [12.0, 8.5, 15.1],
            "category": [1, 0, 2],
        }
    )
    obs = Observations.from_dataframe(
        df,
        observed="cases",
        expected="expected_cases",
        covariates=["pm25"],
        unit_id="region",
        exposure_category="category",
    )
    assert obs.unit_ids == ("north", "south", "east")
    assert obs.n_exposure_categories == 3
    np.testing.assert_array_equal(obs.exposure_category, [1, 0, 2])

    out = obs.to_dataframe()
    assert out.index.tolist() == ["north", "south", "east"]
    assert out["observed"].tolist() == [4, 0, 11]
    np.testing.assert_allclose(out["pm25"], df["pm25"])

    with pytest.raises(KeyError):
        Observations.from_dataframe(df, observed="deaths", expected="expected_cases")


def test_discretize():
    values = np.arange(12.0)
    quantile = discretize(values, 4)
    assert quantile.tolist() == [0, 0, 0, 1, 1, 1, 2, 2, 2, 3, 3, 3]

    equal = discretize([0.0, 1.0, 2.0, 10.0], 2, method="equal")
    assert equal.tolist() == [0, 0, 0, 1]

    with pytest.raises(ValueError):
        discretize(values, 1)
    with pytest.raises(ValueError):
        discretize([0.0, np.nan], 2)
