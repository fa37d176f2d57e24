# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Observed data for areal count models.

This module defines :py:class:`Observations`, the immutable container for the
per-unit data that a :py:class:`~scicar.model.model.PoissonCARModel` is fit
to: observed counts, expected counts (the offset), a covariate matrix, and an
optional discretized exposure used by random-walk exposure effects.

Data are accepted in already-loaded form--NumPy arrays, sequences of rows, or a
pandas DataFrame. Reading files is the responsibility of the caller.
"""

from __future__ import annotations

from typing import Iterable, Literal, Optional, Sequence, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import pandas as pd

from scicar import utils

if TYPE_CHECKING:
    from scicar import custom_types


def discretize(
    values: "custom_types.ArrayLike",
    n_categories: "custom_types.Integer",
    method: Literal["quantile", "equal"] = "quantile",
) -> npt.NDArray[np.int64]:
    """Discretize a continuous exposure into integer categories.

    Random-walk exposure effects are indexed by category rather than by the raw
    exposure value. This function assigns each value to one of `n_categories`
    ordered bins.

    :param values: Continuous exposure values, one per unit
    :type values: custom_types.ArrayLike
    :param n_categories: Number of bins
    :type n_categories: custom_types.Integer
    :param method: Either "quantile" (bins hold roughly equal numbers of units)
        or "equal" (bins have equal width). Defaults to "quantile".
    :type method: Literal["quantile", "equal"]

    :returns: Category index in ``0..n_categories - 1`` for each value
    :rtype: npt.NDArray[np.int64]

    :raises ValueError: If fewer than two categories are requested or if values
        are not finite

    Example:
        >>> discretize([0.1, 0.5, 0.9, 1.3], 2)
        array([0, 0, 1, 1])
    """
    values = np.asarray(values, dtype=float)
    if n_categories < 2:
        raise ValueError("At least two exposure categories are required.")
    if not np.all(np.isfinite(values)):
        raise ValueError("Exposure values must be finite.")

    # Get the interior bin edges
    if method == "quantile":
        edges = np.quantile(values, np.linspace(0, 1, n_categories + 1)[1:-1])
    elif method == "equal":
        edges = np.linspace(values.min(), values.max(), n_categories + 1)[1:-1]
    else:
        raise ValueError(f"Unknown discretization method: {method}")

    return np.searchsorted(edges, values, side="right").astype(np.int64)


class Observations:
    """Immutable per-unit data for an areal count model.

    :param observed: Observed counts, one per unit. Must be non-negative integers.
    :type observed: custom_types.ArrayLike
    :param expected: Expected counts, one per unit. Must be positive and finite.
    :type expected: custom_types.ArrayLike
    :param covariates: Covariate matrix of shape (N, K) or vector of shape (N,).
        Defaults to None, meaning no covariates.
    :type covariates: Optional[custom_types.ArrayLike]
    :param unit_ids: Identifiers of the areal units. Defaults to ``0..N-1``.
    :type unit_ids: Optional[Sequence]
    :param covariate_names: Names of the covariates. Defaults to
        ``x0..x{K-1}``.
    :type covariate_names: Optional[Sequence[str]]
    :param exposure_category: Discretized exposure category of each unit, with
        values in ``0..J-1``. Required only for models with a random-walk exposure
        effect. Defaults to None.
    :type exposure_category: Optional[custom_types.ArrayLike]
    :param n_exposure_categories: Number of exposure categories J. Defaults to
        None, meaning one more than the largest category present.
    :type n_exposure_categories: Optional[custom_types.Integer]

    :raises ValueError: If any of the inputs are malformed

    All arrays are copied and stored read-only, so an `Observations` instance
    can safely be shared between chains running in parallel.

    Example:
        >>> obs = Observations(
        ...     observed=[5, 7, 3, 9],
        ...     expected=[5.0, 5.0, 5.0, 5.0],
        ...     covariates=[[0.1], [0.4], [-0.2], [0.8]],
        ... )
        >>> obs.n_units, obs.n_covariates
        (4, 1)
    """

    def __init__(
        self,
        observed: "custom_types.ArrayLike",
        expected: "custom_types.ArrayLike",
        covariates: Optional["custom_types.ArrayLike"] = None,
        unit_ids: Optional[Sequence] = None,
        covariate_names: Optional[Sequence[str]] = None,
        exposure_category: Optional["custom_types.ArrayLike"] = None,
        n_exposure_categories: Optional["custom_types.Integer"] = None,
    ):
        # Observed counts must be non-negative integers
        observed = np.asarray(observed)
        if observed.ndim != 1 or observed.size == 0:
            raise ValueError("`observed` must be a non-empty one-dimensional array.")
        if not np.all(np.isfinite(observed)) or np.any(observed < 0):
            raise ValueError("`observed` must contain non-negative finite counts.")
        if np.any(np.rint(observed) != observed):
            raise ValueError("`observed` must contain integer counts.")
        n_units = observed.shape[0]

        # Expected counts must be positive
        expected = np.asarray(expected, dtype=float)
        if expected.shape != (n_units,):
            raise ValueError(
                f"`expected` must have shape ({n_units},), got {expected.shape}."
            )
        if not np.all(np.isfinite(expected)) or np.any(expected <= 0):
            raise ValueError("`expected` must contain positive finite values.")

        # Covariates are always stored as a 2D array
        if covariates is None:
            covariates = np.zeros((n_units, 0))
        covariates = np.asarray(covariates, dtype=float)
        if covariates.ndim == 1:
            covariates = covariates[:, None]
        if covariates.ndim != 2 or covariates.shape[0] != n_units:
            raise ValueError(
                f"`covariates` must have shape ({n_units}, K), got {covariates.shape}."
            )
        if not np.all(np.isfinite(covariates)):
            raise ValueError("`covariates` must be finite.")

        # Names and identifiers
        if unit_ids is None:
            unit_ids = list(range(n_units))
        if len(unit_ids) != n_units:
            raise ValueError("`unit_ids` must have one entry per unit.")
        if len(set(unit_ids)) != n_units:
            raise ValueError("`unit_ids` must be unique.")
        if covariate_names is None:
            covariate_names = [f"x{k}" for k in range(covariates.shape[1])]
        if len(covariate_names) != covariates.shape[1]:
            raise ValueError("`covariate_names` must have one entry per covariate.")

        # Exposure categories are optional
        if exposure_category is not None:
            exposure_category = np.asarray(exposure_category)
            if exposure_category.shape != (n_units,):
                raise ValueError("`exposure_category` must have one entry per unit.")
            if np.any(np.rint(exposure_category) != exposure_category) or np.any(
                exposure_category < 0
            ):
                raise ValueError(
                    "`exposure_category` must contain non-negative integers."
                )
            exposure_category = exposure_category.astype(np.int64)
            if n_exposure_categories is None:
                n_exposure_categories = int(exposure_category.max()) + 1
            if exposure_category.max() >= n_exposure_categories:
                raise ValueError(
                    "`exposure_category` contains values >= `n_exposure_categories`."
                )
        elif n_exposure_categories is not None:
            raise ValueError(
                "`n_exposure_categories` given without `exposure_category`."
            )

        # Record
        self._observed = utils.readonly_array(observed, dtype=np.int64)
        self._expected = utils.readonly_array(expected)
        self._log_expected = utils.readonly_array(np.log(expected))
        self._covariates = utils.readonly_array(covariates)
        self._unit_ids = tuple(unit_ids)
        self._covariate_names = tuple(covariate_names)
        self._exposure_category = (
            None
            if exposure_category is None
            else utils.readonly_array(exposure_category, dtype=np.int64)
        )
        self._n_exposure_categories = (
            None if n_exposure_categories is None else int(n_exposure_categories)
        )

    @classmethod
    def from_rows(
        cls,
        rows: Iterable[Sequence],
        covariate_names: Optional[Sequence[str]] = None,
    ) -> "Observations":
        """Build observations from rows of (unit id, observed, expected, covariates).

        This mirrors the tabular layout of an observation table, one row per
        areal unit.

        :param rows: Iterable of rows. The fourth element of each row is the
            covariate vector and may be omitted when there are no covariates.
        :type rows: Iterable[Sequence]
        :param covariate_names: Names of the covariates. Defaults to None.
        :type covariate_names: Optional[Sequence[str]]

        :returns: The observations
        :rtype: Observations

        Example:
            >>> obs = Observations.from_rows([("a", 5, 5.0, [0.1]), ("b", 7, 5.0, [0.4])])
        """
        unit_ids, observed, expected, covariates = [], [], [], []
        for row in rows:
            if len(row) not in (3, 4):
                raise ValueError(
                    "Rows must be (unit_id, observed, expected[, covariates])."
                )
            unit_ids.append(row[0])
            observed.append(row[1])
            expected.append(row[2])
            covariates.append(list(row[3]) if len(row) == 4 else [])

        return cls(
            observed=observed,
            expected=expected,
            covariates=np.array(covariates, dtype=float).reshape(len(observed), -1),
            unit_ids=unit_ids,
            covariate_names=covariate_names,
        )

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        observed: str,
        expected: str,
        covariates: Sequence[str] = (),
        unit_id: Optional[str] = None,
        exposure_category: Optional[str] = None,
        n_exposure_categories: Optional["custom_types.Integer"] = None,
    ) -> "Observations":
        """Build observations from the columns of a pandas DataFrame.

        :param df: Table with one row per areal unit
        :type df: pd.DataFrame
        :param observed: Name of the observed-count column
        :type observed: str
        :param expected: Name of the expected-count column
        :type expected: str
        :param covariates: Names of covariate columns. Defaults to ().
        :type covariates: Sequence[str]
        :param unit_id: Name of the unit identifier column. Defaults to None, in
            which case the DataFrame index is used.
        :type unit_id: Optional[str]
        :param exposure_category: Name of the exposure category column. Defaults
            to None.
        :type exposure_category: Optional[str]
        :param n_exposure_categories: Number of exposure categories. Defaults to
            None.
        :type n_exposure_categories: Optional[custom_types.Integer]

        :returns: The observations
        :rtype: Observations

        :raises KeyError: If a named column is missing
        """
        # All columns must be present
        required = [observed, expected, *covariates]
        required += [col for col in (unit_id, exposure_category) if col is not None]
        if missing := [col for col in required if col not in df.columns]:
            raise KeyError(f"Columns missing from DataFrame: {missing}")

        return cls(
            observed=df[observed].to_numpy(),
            expected=df[expected].to_numpy(dtype=float),
            covariates=df[list(covariates)].to_numpy(dtype=float),
            unit_ids=(df.index if unit_id is None else df[unit_id]).tolist(),
            covariate_names=list(covariates),
            exposure_category=(
                None
                if exposure_category is None
                else df[exposure_category].to_numpy()
            ),
            n_exposure_categories=n_exposure_categories,
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Return the observations as a pandas DataFrame indexed by unit id.

        :returns: DataFrame with columns ``observed``, ``expected``, one column
            per covariate, and ``exposure_category`` when present
        :rtype: pd.DataFrame
        """
        df = pd.DataFrame(
            {"observed": self.observed, "expected": self.expected},
            index=pd.Index(self.unit_ids, name="unit"),
        )
        for name, column in zip(self.covariate_names, self.covariates.T):
            df[name] = column
        if self.exposure_category is not None:
            df["exposure_category"] = self.exposure_category
        return df

    def __len__(self) -> int:
        return self.n_units

    @property
    def observed(self) -> npt.NDArray[np.int64]:
        """Observed counts."""
        return self._observed

    @property
    def expected(self) -> npt.NDArray[np.floating]:
        """Expected counts."""
        return self._expected

    @property
    def log_expected(self) -> npt.NDArray[np.floating]:
        """Log of the expected counts, the offset of the linear predictor."""
        return self._log_expected

    @property
    def covariates(self) -> npt.NDArray[np.floating]:
        """Covariate matrix of shape (N, K)."""
        return self._covariates

    @property
    def unit_ids(self) -> tuple:
        """Identifiers of the areal units."""
        return self._unit_ids

    @property
    def covariate_names(self) -> tuple[str, ...]:
        """Names of the covariates."""
        return self._covariate_names

    @property
    def exposure_category(self) -> Optional[npt.NDArray[np.int64]]:
        """Exposure category of each unit, or None."""
        return self._exposure_category

    @property
    def n_exposure_categories(self) -> Optional[int]:
        """Number of exposure categories, or None."""
        return self._n_exposure_categories

    @property
    def n_units(self) -> int:
        """Number of areal units N."""
        return self._observed.shape[0]

    @property
    def n_covariates(self) -> int:
        """Number of covariates K."""
        return self._covariates.shape[1]
