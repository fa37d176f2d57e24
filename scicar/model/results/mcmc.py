# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Markov chain Monte Carlo (MCMC) results analysis and diagnostics.

This module turns the chains produced by :py:mod:`scicar.model.sampler` into
posterior summaries, convergence diagnostics, and a model-comparison score.

The module centers around the :py:class:`SampleResults` class, which gathers any
number of :py:class:`~scicar.model.results.chain.Chain` instances into an ArviZ
``InferenceData`` object and provides:

    - Posterior summaries (mean, standard deviation, median, and symmetric
      credible interval) for every scalar element of every parameter
    - Rank-normalized R-hat and bulk/tail effective sample sizes, computed by
      ArviZ
    - Flagging of non-converged parameters, reported with
      :py:class:`~scicar.exceptions.NonConvergenceWarning` rather than raised
    - The widely applicable information criterion (WAIC) on the deviance scale,
      with its two additive components
    - NetCDF storage of results

Summaries need at least two chains of equal length, each holding at least
:py:data:`~scicar.defaults.DEFAULT_MIN_DRAWS` draws; otherwise
:py:class:`~scicar.exceptions.InsufficientSamplesError` is raised. Input chains
are never modified.
"""

from __future__ import annotations

import warnings

from dataclasses import dataclass
from typing import Optional, Sequence, TYPE_CHECKING, Union

import arviz as az
import numpy as np
import numpy.typing as npt
import pandas as pd
import xarray as xr

from scicar import utils
from scicar.defaults import (
    DEFAULT_CI_PROB,
    DEFAULT_DIM_NAMES,
    DEFAULT_ESS_THRESH,
    DEFAULT_LOG_LIKELIHOOD_NAME,
    DEFAULT_MIN_DRAWS,
    DEFAULT_RHAT_METHOD,
    DEFAULT_RHAT_THRESH,
)
from scicar.exceptions import InsufficientSamplesError, NonConvergenceWarning
from scicar.model.results.chain import Chain

if TYPE_CHECKING:
    from scicar import custom_types
    from scicar.model.model import PoissonCARModel

# Columns of a posterior summary table
SUMMARY_COLUMNS: tuple[str, ...] = (
    "mean",
    "sd",
    "median",
    "ci_lower",
    "ci_upper",
    "r_hat",
    "ess_bulk",
    "ess_tail",
    "non_converged",
)


def _check_sizes(n_chains: int, n_draws: int) -> None:
    """Raise if there are too few chains or draws for variance estimation."""
    if n_chains < 2:
        raise InsufficientSamplesError(
            f"At least 2 chains are needed to compute diagnostics, got {n_chains}."
        )
    if n_draws < DEFAULT_MIN_DRAWS:
        raise InsufficientSamplesError(
            f"Every chain needs at least {DEFAULT_MIN_DRAWS} retained draws, got "
            f"{n_draws}."
        )


def check_chains(chains: Sequence[Chain]) -> None:
    """Check that chains can be summarized together.

    :param chains: Chains to check
    :type chains: Sequence[Chain]

    :raises InsufficientSamplesError: If there are fewer than two chains or any
        chain has fewer than `DEFAULT_MIN_DRAWS` draws
    :raises ValueError: If chains differ in length or retained parameters
    """
    _check_sizes(len(chains), min((chain.n_draws for chain in chains), default=0))
    if len({chain.n_draws for chain in chains}) != 1:
        raise ValueError(
            "All chains must have the same number of draws, got "
            f"{[chain.n_draws for chain in chains]}."
        )
    if len({chain.parameter_names for chain in chains}) != 1:
        raise ValueError("All chains must retain the same parameters.")
    if len({chain.log_likelihood is None for chain in chains}) != 1:
        raise ValueError("Either all or none of the chains must hold log-likelihoods.")


def chains_to_inference_data(
    chains: Sequence[Chain], model: Optional["PoissonCARModel"] = None
) -> az.InferenceData:
    """Gather chains into an ArviZ InferenceData object.

    :param chains: Chains of equal length
    :type chains: Sequence[Chain]
    :param model: Model the chains were drawn from. When given, dimensions are
        named and labeled, and the observed data are included. Defaults to None.
    :type model: Optional[PoissonCARModel]

    :returns: InferenceData with `posterior` and `sample_stats` groups, plus
        `log_likelihood` when the chains hold pointwise log-likelihoods and
        `observed_data` and `constant_data` when a model is given
    :rtype: az.InferenceData
    """
    # Stack draws along a leading chain dimension
    posterior = {
        name: np.stack([chain[name] for chain in chains])
        for name in chains[0].parameter_names
    }
    groups = {"posterior": posterior}
    if chains[0].log_posterior is not None:
        groups["sample_stats"] = {
            "lp": np.stack([chain.log_posterior for chain in chains])
        }
    if chains[0].log_likelihood is not None:
        groups["log_likelihood"] = {
            DEFAULT_LOG_LIKELIHOOD_NAME: np.stack(
                [chain.log_likelihood for chain in chains]
            )
        }

    # Name dimensions and add the data when we know the model
    coords, dims = None, None
    if model is not None:
        observations = model.observations
        unit_ids = np.asarray(observations.unit_ids)
        if unit_ids.dtype == object:
            unit_ids = unit_ids.astype(str)
        coords = {
            "unit": unit_ids,
            "covariate": list(observations.covariate_names),
        }
        if observations.n_exposure_categories is not None:
            coords["exposure_category"] = np.arange(observations.n_exposure_categories)
        dims = {
            name: [DEFAULT_DIM_NAMES[name]]
            for name in posterior
            if name in DEFAULT_DIM_NAMES
        }
        dims[DEFAULT_LOG_LIKELIHOOD_NAME] = ["unit"]
        dims["expected"] = ["unit"]
        groups["observed_data"] = {DEFAULT_LOG_LIKELIHOOD_NAME: observations.observed}
        groups["constant_data"] = {"expected": observations.expected}

    return az.from_dict(**groups, coords=coords, dims=dims)


class PosteriorSummary:
    """Posterior summary table keyed by parameter name.

    :param table: One row per scalar element of every summarized parameter,
        indexed by labels such as ``alpha`` or ``phi[3]``, with the columns of
        `SUMMARY_COLUMNS`
    :type table: pd.DataFrame
    :param r_hat_thresh: Threshold used to flag non-convergence
    :type r_hat_thresh: custom_types.Float
    :param ci_prob: Probability mass of the credible interval
    :type ci_prob: custom_types.Float

    Example:
        >>> summary = results.summarize()
        >>> summary["alpha"]["mean"]
        >>> summary.converged
        True
    """

    def __init__(
        self,
        table: pd.DataFrame,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ci_prob: "custom_types.Float" = DEFAULT_CI_PROB,
    ):
        self._table = table
        self.r_hat_thresh = r_hat_thresh
        self.ci_prob = ci_prob

    def to_dataframe(self) -> pd.DataFrame:
        """Get a copy of the summary table."""
        return self._table.copy()

    def __getitem__(self, label: str) -> pd.Series:
        return self._table.loc[label]

    def __contains__(self, label: str) -> bool:
        return label in self._table.index

    def __len__(self) -> int:
        return len(self._table)

    def __repr__(self) -> str:
        return repr(self._table)

    @property
    def table(self) -> pd.DataFrame:
        """The summary table."""
        return self._table

    @property
    def non_converged_parameters(self) -> list[str]:
        """Labels of the elements flagged as non-converged."""
        return self._table.index[self._table["non_converged"]].tolist()

    @property
    def converged(self) -> bool:
        """Whether no element was flagged as non-converged."""
        return not bool(self._table["non_converged"].any())


@dataclass(frozen=True)
class WAICResult:
    """Widely applicable information criterion on the deviance scale.

    ``waic == -2 * (lppd - p_waic)``, so lower values indicate better expected
    predictive accuracy.

    :ivar waic: The criterion
    :ivar lppd: Log pointwise predictive density, summed over observations
    :ivar p_waic: Effective number of parameters, the sum over observations of
        the posterior variance of the pointwise log-likelihood
    :ivar se: Standard error of `waic`
    :ivar n_data_points: Number of observations
    :ivar n_samples: Number of pooled posterior draws
    """

    waic: float
    lppd: float
    p_waic: float
    se: float
    n_data_points: int
    n_samples: int


class SampleResults:
    """Analysis interface for the chains of an MCMC run.

    :param chains: Completed chains. Defaults to None, in which case
        `inference_obj` must be given.
    :type chains: Optional[Sequence[Chain]]
    :param model: Model the chains were drawn from. Defaults to None.
    :type model: Optional[PoissonCARModel]
    :param inference_obj: Pre-existing InferenceData or path to a NetCDF file
        written by :py:meth:`save_netcdf`. Defaults to None.
    :type inference_obj: Optional[Union[az.InferenceData, str]]

    :ivar inference_obj: ArviZ InferenceData holding the posterior draws,
        pointwise log-likelihood, log-posterior, and (when the model is known)
        the observed data

    :raises InsufficientSamplesError: If there are too few chains or draws
    :raises ValueError: If neither chains nor an inference object are given, or
        the chains cannot be combined

    Example:
        >>> results = SampleResults(chains, model=model)
        >>> summary = results.summarize(var_names=["alpha", "tau_phi"])
        >>> results.waic().waic
    """

    def __init__(
        self,
        chains: Optional[Sequence[Chain]] = None,
        model: Optional["PoissonCARModel"] = None,
        inference_obj: Optional[Union[az.InferenceData, str]] = None,
    ):
        self.model = model
        self._chains = None if chains is None else tuple(chains)

        # Build the inference object from the chains
        if inference_obj is None:
            if self._chains is None:
                raise ValueError("Either `chains` or `inference_obj` must be given.")
            check_chains(self._chains)
            inference_obj = chains_to_inference_data(self._chains, model=model)

        # Or load it from disk
        elif isinstance(inference_obj, str):
            inference_obj = az.from_netcdf(filename=inference_obj, engine="h5netcdf")

        self.inference_obj = inference_obj
        _check_sizes(
            self.inference_obj.posterior.sizes["chain"],
            self.inference_obj.posterior.sizes["draw"],
        )

    @classmethod
    def from_netcdf(
        cls, filename: str, model: Optional["PoissonCARModel"] = None
    ) -> "SampleResults":
        """Load results saved with :py:meth:`save_netcdf`.

        :param filename: Path to the NetCDF file
        :type filename: str
        :param model: Model the results were drawn from. Defaults to None.
        :type model: Optional[PoissonCARModel]

        :returns: The results. Individual chains are not available.
        :rtype: SampleResults
        """
        return cls(model=model, inference_obj=filename)

    def save_netcdf(self, filename: str) -> None:
        """Save the inference object to a NetCDF file.

        :param filename: Path of the file to write
        :type filename: str
        """
        self.inference_obj.to_netcdf(filename, engine="h5netcdf")

    def _update_group(self, attrname: str, new_group: xr.Dataset) -> None:
        """Replace or add a group of the ArviZ InferenceData object."""
        if hasattr(self.inference_obj, attrname):
            delattr(self.inference_obj, attrname)
        self.inference_obj.add_groups({attrname: new_group})

    def _get_var_names(self, var_names: Optional[Sequence[str]]) -> list[str]:
        """Resolve and check requested posterior variables."""
        # pylint: disable=no-member
        available = list(self.inference_obj.posterior.data_vars)
        if var_names is None:
            return available
        if isinstance(var_names, str):
            var_names = [var_names]
        if missing := [name for name in var_names if name not in available]:
            raise KeyError(f"Variables not in the posterior: {missing}")
        return list(var_names)

    def calculate_diagnostics(
        self,
        var_names: Optional[Sequence[str]] = None,
        rhat_method: str = DEFAULT_RHAT_METHOD,
    ) -> xr.Dataset:
        """Compute R-hat and bulk and tail effective sample sizes with ArviZ.

        The result is stored in the `variable_diagnostic_stats` group of
        `inference_obj`.

        :param var_names: Variables to diagnose. Defaults to None (all).
        :type var_names: Optional[Sequence[str]]
        :param rhat_method: R-hat method passed to :py:func:`arviz.rhat`.
            Defaults to "rank".
        :type rhat_method: str

        :returns: Dataset with a `metric` dimension holding "r_hat",
            "ess_bulk", and "ess_tail"
        :rtype: xr.Dataset
        """
        # pylint: disable=no-member
        posterior = self.inference_obj.posterior[self._get_var_names(var_names)]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            diagnostics = xr.concat(
                [
                    az.rhat(posterior, method=rhat_method).assign_coords(
                        metric=["r_hat"]
                    ),
                    az.ess(posterior, method="bulk").assign_coords(metric=["ess_bulk"]),
                    az.ess(posterior, method="tail").assign_coords(metric=["ess_tail"]),
                ],
                dim="metric",
                data_vars="all",
            )

        self._update_group("variable_diagnostic_stats", diagnostics)
        return diagnostics

    def summarize(
        self,
        var_names: Optional[Sequence[str]] = None,
        ci_prob: "custom_types.Float" = DEFAULT_CI_PROB,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        rhat_method: str = DEFAULT_RHAT_METHOD,
    ) -> PosteriorSummary:
        """Summarize the posterior of every scalar element of the parameters.

        :param var_names: Parameters to summarize. Defaults to None (all
            retained parameters).
        :type var_names: Optional[Sequence[str]]
        :param ci_prob: Probability mass of the symmetric credible interval.
            Defaults to 0.95, giving the 2.5% and 97.5% quantiles.
        :type ci_prob: custom_types.Float
        :param r_hat_thresh: Elements with an R-hat above this value (or an
            undefined R-hat) are flagged as non-converged. Defaults to 1.1.
        :type r_hat_thresh: custom_types.Float
        :param rhat_method: R-hat method passed to :py:func:`arviz.rhat`.
            Defaults to "rank".
        :type rhat_method: str

        :returns: The summary
        :rtype: PosteriorSummary

        Non-convergence is reported with a
        :py:class:`~scicar.exceptions.NonConvergenceWarning` and never raised,
        so that non-converged runs can still be inspected.
        """
        if not 0 < ci_prob < 1:
            raise ValueError("`ci_prob` must be in (0, 1).")

        # Compute diagnostics
        var_names = self._get_var_names(var_names)
        diagnostics = self.calculate_diagnostics(
            var_names=var_names, rhat_method=rhat_method
        )

        # Build one row per scalar element
        lower_q, upper_q = (1 - ci_prob) / 2, 1 - (1 - ci_prob) / 2
        rows, labels = [], []
        for name in var_names:
            # pylint: disable=no-member
            draws = self.inference_obj.posterior[name].values
            pooled = draws.reshape(-1, *draws.shape[2:])
            metrics = {
                metric: diagnostics[name].sel(metric=metric).values
                for metric in ("r_hat", "ess_bulk", "ess_tail")
            }
            for label, index in utils.flat_labels(name, draws.shape[2:]):
                samples = pooled[(slice(None), *index)]
                r_hat = float(metrics["r_hat"][index])
                labels.append(label)
                rows.append(
                    {
                        "mean": float(np.mean(samples)),
                        "sd": float(np.std(samples, ddof=1)),
                        "median": float(np.median(samples)),
                        "ci_lower": float(np.quantile(samples, lower_q)),
                        "ci_upper": float(np.quantile(samples, upper_q)),
                        "r_hat": r_hat,
                        "ess_bulk": float(metrics["ess_bulk"][index]),
                        "ess_tail": float(metrics["ess_tail"][index]),
                        "non_converged": bool(
                            not np.isfinite(r_hat) or r_hat > r_hat_thresh
                        ),
                    }
                )
        table = pd.DataFrame(rows, index=pd.Index(labels, name="parameter"))
        table = table.reindex(columns=list(SUMMARY_COLUMNS))

        # Report convergence problems
        summary = PosteriorSummary(table, r_hat_thresh=r_hat_thresh, ci_prob=ci_prob)
        if failed := summary.non_converged_parameters:
            warnings.warn(
                f"R-hat exceeds {r_hat_thresh} (or is undefined) for {len(failed)} "
                f"of {len(table)} parameters: {failed[:10]}"
                f"{' ...' if len(failed) > 10 else ''}",
                NonConvergenceWarning,
            )

        return summary

    def waic(self) -> WAICResult:
        """Compute the widely applicable information criterion with ArviZ.

        Draws from all chains are pooled. On the deviance scale,

        .. math::
            \\text{WAIC} = -2 \\left(\\text{lppd} - p_\\text{WAIC}\\right)

        :returns: WAIC and its components
        :rtype: WAICResult

        :raises ValueError: If the results hold no pointwise log-likelihood
        """
        if not hasattr(self.inference_obj, "log_likelihood"):
            raise ValueError("WAIC needs the pointwise log-likelihood of each draw.")

        elpd = az.waic(self.inference_obj, scale="log")
        elpd_waic = float(elpd["elpd_waic"])
        p_waic = float(elpd["p_waic"])
        return WAICResult(
            waic=-2 * elpd_waic,
            lppd=elpd_waic + p_waic,
            p_waic=p_waic,
            se=2 * float(elpd["se"]),
            n_data_points=int(elpd["n_data_points"]),
            n_samples=int(elpd["n_samples"]),
        )

    def evaluate_variable_diagnostic_stats(
        self,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ess_thresh: "custom_types.Float" = DEFAULT_ESS_THRESH,
    ) -> xr.Dataset:
        """Flag parameters that fail variable-level diagnostic tests.

        Failure conditions:

        - **R-hat**: R-hat > `r_hat_thresh`, or undefined
        - **ESS Bulk**: bulk ESS / n_chains < `ess_thresh`
        - **ESS Tail**: tail ESS / n_chains < `ess_thresh`

        :param r_hat_thresh: R-hat threshold. Defaults to 1.1.
        :type r_hat_thresh: custom_types.Float
        :param ess_thresh: ESS threshold per chain. Defaults to 100.
        :type ess_thresh: custom_types.Float

        :returns: Boolean dataset with a `metric` dimension. Also stored in the
            `variable_diagnostic_tests` group of `inference_obj`.
        :rtype: xr.Dataset
        """
        if not hasattr(self.inference_obj, "variable_diagnostic_stats"):
            self.calculate_diagnostics()

        # Update the ess threshold based on the number of chains
        # pylint: disable=no-member
        ess_thresh = ess_thresh * self.inference_obj.posterior.sizes["chain"]
        stats = self.inference_obj.variable_diagnostic_stats
        r_hat = stats.sel(metric="r_hat")
        variable_tests = xr.concat(
            [
                (r_hat > r_hat_thresh) | r_hat.isnull(),
                stats.sel(metric="ess_bulk") < ess_thresh,
                stats.sel(metric="ess_tail") < ess_thresh,
            ],
            dim="metric",
            data_vars="all",
        )

        self._update_group("variable_diagnostic_tests", variable_tests)
        return variable_tests

    def identify_failed_diagnostics(
        self,
        silent: bool = False,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ess_thresh: "custom_types.Float" = DEFAULT_ESS_THRESH,
    ) -> dict[str, list[str]]:
        """Identify and report the parameters failing each diagnostic test.

        :param silent: Whether to suppress printed output. Defaults to False.
        :type silent: bool
        :param r_hat_thresh: R-hat threshold. Defaults to 1.1.
        :type r_hat_thresh: custom_types.Float
        :param ess_thresh: ESS threshold per chain. Defaults to 100.
        :type ess_thresh: custom_types.Float

        :returns: Mapping from metric ("r_hat", "ess_bulk", "ess_tail") to the
            labels of the failing elements
        :rtype: dict[str, list[str]]

        Example:
            >>> failures = results.identify_failed_diagnostics()
            >>> poor_rhat = failures["r_hat"]
        """
        variable_tests = self.evaluate_variable_diagnostic_stats(
            r_hat_thresh=r_hat_thresh, ess_thresh=ess_thresh
        )

        # Collect the labels of failing elements for each metric
        failures: dict[str, list[str]] = {}
        for metric in variable_tests.metric.values.tolist():
            failures[metric] = []
            n_tests = 0
            for name, tests in variable_tests.sel(metric=metric).items():
                tests = np.asarray(tests.values)
                n_tests += tests.size
                for label, index in utils.flat_labels(name, tests.shape):
                    if tests[index]:
                        failures[metric].append(label)

        # Report
        if not silent:
            header = "Variable diagnostic tests results' summaries:"
            print(header)
            print("-" * len(header))
            for metric, failed in failures.items():
                print(
                    f"{len(failed)} of {n_tests} ({len(failed) / max(n_tests, 1):.2%}) "
                    f"parameters failed the {metric} test."
                )

        return failures

    @property
    def chains(self) -> Optional[tuple[Chain, ...]]:
        """The chains the results were built from, or None if loaded from disk."""
        return self._chains

    @property
    def n_chains(self) -> int:
        """Number of chains."""
        # pylint: disable=no-member
        return int(self.inference_obj.posterior.sizes["chain"])

    @property
    def n_draws(self) -> int:
        """Number of retained draws per chain."""
        # pylint: disable=no-member
        return int(self.inference_obj.posterior.sizes["draw"])


def summarize(
    chains: Sequence[Chain],
    var_names: Optional[Sequence[str]] = None,
    ci_prob: "custom_types.Float" = DEFAULT_CI_PROB,
    r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
    rhat_method: str = DEFAULT_RHAT_METHOD,
) -> PosteriorSummary:
    """Summarize chains. See :py:meth:`SampleResults.summarize`."""
    return SampleResults(chains).summarize(
        var_names=var_names,
        ci_prob=ci_prob,
        r_hat_thresh=r_hat_thresh,
        rhat_method=rhat_method,
    )


def waic(chains: Sequence[Chain]) -> WAICResult:
    """Compute WAIC from chains. See :py:meth:`SampleResults.waic`."""
    return SampleResults(chains).waic()


def pointwise_log_likelihood(chains: Sequence[Chain]) -> npt.NDArray:
    """Pool the pointwise log-likelihood of chains into shape (n_samples, n_units)."""
    check_chains(chains)
    if chains[0].log_likelihood is None:
        raise ValueError("The chains hold no pointwise log-likelihood.")
    return np.concatenate([chain.log_likelihood for chain in chains])
