# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Retained draws of a single Markov chain."""

from __future__ import annotations

from typing import Iterator, Mapping, Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import pandas as pd

from scicar import utils

if TYPE_CHECKING:
    from scicar import custom_types


class Chain:
    """Read-only record of one completed chain.

    :param chain_id: One-based identifier of the chain
    :type chain_id: custom_types.Integer
    :param draws: Retained draws of each parameter, with shape
        ``(n_draws, *parameter_shape)``
    :type draws: Mapping[str, custom_types.ArrayLike]
    :param log_likelihood: Pointwise log-likelihood of each retained draw, with
        shape ``(n_draws, n_units)``. Defaults to None.
    :type log_likelihood: Optional[custom_types.ArrayLike]
    :param log_posterior: Log-posterior of each retained draw. Defaults to None.
    :type log_posterior: Optional[custom_types.ArrayLike]
    :param acceptance_rates: Post-burn-in acceptance rate of each Metropolis
        block. Defaults to None.
    :type acceptance_rates: Optional[Mapping[str, float]]
    :param step_sizes: Final random-walk step sizes of each Metropolis block.
        Defaults to None.
    :type step_sizes: Optional[Mapping[str, custom_types.ArrayLike]]
    :param n_unstable: Number of proposals rejected because their log-posterior
        was not finite. Defaults to 0.
    :type n_unstable: custom_types.Integer

    :raises ValueError: If the arrays disagree on the number of draws

    All arrays are copied and made read-only, so downstream diagnostics cannot
    modify a chain.

    Example:
        >>> chain = Chain(1, {"alpha": np.random.normal(size=500)})
        >>> chain.n_draws
        500
    """

    def __init__(
        self,
        chain_id: "custom_types.Integer",
        draws: Mapping[str, "custom_types.ArrayLike"],
        log_likelihood: Optional["custom_types.ArrayLike"] = None,
        log_posterior: Optional["custom_types.ArrayLike"] = None,
        acceptance_rates: Optional[Mapping[str, float]] = None,
        step_sizes: Optional[Mapping[str, "custom_types.ArrayLike"]] = None,
        n_unstable: "custom_types.Integer" = 0,
    ):
        if not draws:
            raise ValueError("A chain needs draws of at least one parameter.")

        # Copy all arrays
        self.chain_id = int(chain_id)
        self._draws = {
            name: utils.readonly_array(values, dtype=float)
            for name, values in draws.items()
        }
        self._log_likelihood = (
            None
            if log_likelihood is None
            else utils.readonly_array(log_likelihood, dtype=float)
        )
        self._log_posterior = (
            None
            if log_posterior is None
            else utils.readonly_array(log_posterior, dtype=float)
        )
        self.acceptance_rates = dict(acceptance_rates or {})
        self.step_sizes = {
            name: utils.readonly_array(values, dtype=float)
            for name, values in (step_sizes or {}).items()
        }
        self.n_unstable = int(n_unstable)

        # Every array must have the same number of draws
        lengths = {name: values.shape[0] for name, values in self._draws.items()}
        if self._log_likelihood is not None:
            if self._log_likelihood.ndim != 2:
                raise ValueError("`log_likelihood` must have shape (n_draws, n_units).")
            lengths["log_likelihood"] = self._log_likelihood.shape[0]
        if self._log_posterior is not None:
            lengths["log_posterior"] = self._log_posterior.shape[0]
        if len(set(lengths.values())) != 1:
            raise ValueError(f"Arrays disagree on the number of draws: {lengths}")

    def iter_draws(self) -> Iterator[dict[str, "custom_types.ParameterValue"]]:
        """Iterate over retained draws in order.

        :yields: One dictionary per draw, mapping parameter names to values.
            Scalars are floats; vectors are read-only arrays.
        """
        for draw_index in range(self.n_draws):
            yield {
                name: (float(values[draw_index]) if values.ndim == 1 else values[draw_index])
                for name, values in self._draws.items()
            }

    def to_dataframe(self) -> pd.DataFrame:
        """Get the draws as a DataFrame with one column per scalar element.

        Vector parameters are flattened to columns such as ``phi[0]``.

        :returns: DataFrame indexed by draw
        :rtype: pd.DataFrame
        """
        columns = {}
        for name, values in self._draws.items():
            for label, index in utils.flat_labels(name, values.shape[1:]):
                columns[label] = values[(slice(None), *index)]
        return pd.DataFrame(columns, index=pd.RangeIndex(self.n_draws, name="draw"))

    def __getitem__(self, name: str) -> npt.NDArray:
        return self._draws[name]

    def __contains__(self, name: str) -> bool:
        return name in self._draws

    def __len__(self) -> int:
        return self.n_draws

    def __repr__(self) -> str:
        return (
            f"Chain(chain_id={self.chain_id}, n_draws={self.n_draws}, "
            f"parameters={list(self._draws)})"
        )

    @property
    def draws(self) -> dict[str, npt.NDArray]:
        """Retained draws of each parameter."""
        return dict(self._draws)

    @property
    def parameter_names(self) -> tuple[str, ...]:
        """Names of the retained parameters."""
        return tuple(self._draws)

    @property
    def n_draws(self) -> int:
        """Number of retained draws."""
        return int(next(iter(self._draws.values())).shape[0])

    @property
    def log_likelihood(self) -> Optional[npt.NDArray]:
        """Pointwise log-likelihood of each draw, or None."""
        return self._log_likelihood

    @property
    def log_posterior(self) -> Optional[npt.NDArray]:
        """Log-posterior of each draw, or None."""
        return self._log_posterior
