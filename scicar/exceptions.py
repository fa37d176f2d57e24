# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Custom exception and warning classes for the SciCAR package.

This module defines the errors raised and the warnings issued throughout
SciCAR. All exceptions inherit from :py:class:`SciCARError` and all warnings
from :py:class:`SciCARWarning`, allowing unified handling when needed.

Errors are split by when they occur:

    - Construction-time errors (:py:class:`DegenerateGraphError`,
      :py:class:`InvalidParameterError`) are raised before any sampling begins.
    - :py:class:`SamplingCancelledError` is raised when a run is aborted through
      its cancellation signal.
    - :py:class:`InsufficientSamplesError` fails only the summarization call
      that triggered it.

Numerical problems within a single Metropolis proposal and convergence problems
after a run are not errors. They are reported with
:py:class:`NumericInstabilityWarning` and :py:class:`NonConvergenceWarning`,
respectively, and never abort a run.
"""


class SciCARError(Exception):
    """Base class for all exceptions in the SciCAR package.

    Example:
        >>> try:
        ...     # SciCAR operations
        ...     pass
        ... except SciCARError as e:
        ...     print(f"SciCAR error occurred: {e}")
    """


class DegenerateGraphError(SciCARError):
    """Raised when a neighbor graph cannot support an ICAR prior.

    This happens when a unit has no neighbors (an isolated unit) or when the
    weights of a unit's edges do not sum to a strictly positive value. In both
    cases the conditional distribution of that unit's spatial effect is
    undefined.
    """


class InvalidParameterError(SciCARError, ValueError):
    """Raised when a parameter value violates its support.

    Examples include a non-positive precision, a non-finite value, or a block
    with the wrong shape in a set of user-supplied initial values.
    """


class InsufficientSamplesError(SciCARError):
    """Raised when there are too few chains or draws to compute diagnostics."""


class SamplingCancelledError(SciCARError):
    """Raised when a sampling run is aborted by its cancellation signal.

    Any partially completed chain is discarded when this is raised.
    """


class SciCARWarning(UserWarning):
    """Base class for all warnings issued by the SciCAR package."""


class NumericInstabilityWarning(SciCARWarning, RuntimeWarning):
    """Issued when Metropolis proposals produced a non-finite log-posterior.

    Such proposals are rejected automatically. The warning is issued once per
    chain and reports how many proposals were affected.
    """


class NonConvergenceWarning(SciCARWarning):
    """Issued when R-hat exceeds its threshold for one or more parameters."""
