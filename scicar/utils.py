# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Utility functions for the SciCAR package.

This module provides various utility functions that support the core
functionality of SciCAR, including:

    - Lazy importing mechanisms for performance optimization
    - Helpers for building read-only arrays
    - Naming helpers for flattening vector-valued parameters

Users will not typically need to interact with this module directly--it is designed
to be used internally by SciCAR.
"""

from __future__ import annotations

import importlib.util
import sys

from typing import Iterator, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from scicar import custom_types


def lazy_import(name: str):
    """Import a module only when it is first needed.

    This function implements lazy module importing to improve package import
    performance by deferring module loading until actual use.

    :param name: The fully qualified module name to import
    :type name: str

    :returns: The imported module
    :rtype: module

    :raises ImportError: If the specified module cannot be found

    .. note::
        If the module is already imported, returns the cached version
        from sys.modules for efficiency.
    """
    # Check if the module is already imported
    if name in sys.modules:
        return sys.modules[name]

    # If not, import it lazily (modified from here:
    # https://docs.python.org/3/library/importlib.html#implementing-lazy-imports)
    spec = importlib.util.find_spec(name)
    if spec is None:
        raise ImportError(f"Module '{name}' not found.")

    # Create the module with a lazy loader
    spec.loader = importlib.util.LazyLoader(spec.loader)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


def readonly_array(values, dtype=None) -> npt.NDArray:
    """Copy values into a new NumPy array that cannot be modified in place.

    :param values: Values to copy
    :param dtype: Optional dtype of the new array. Defaults to None (inferred).

    :returns: A C-contiguous, non-writeable copy of `values`
    :rtype: npt.NDArray
    """
    array = np.array(values, dtype=dtype, copy=True, order="C")
    array.flags.writeable = False
    return array


def flat_labels(name: str, shape: tuple["custom_types.Integer", ...]) -> Iterator[
    tuple[str, tuple["custom_types.Integer", ...]]
]:
    """Yield flattened labels and indices for every element of a parameter.

    Scalar parameters yield their own name; vector parameters yield ArviZ-style
    labels with zero-based indices (e.g. ``phi[0]``, ``phi[1]``).

    :param name: Name of the parameter
    :type name: str
    :param shape: Shape of one draw of the parameter
    :type shape: tuple[custom_types.Integer, ...]

    :yields: Tuples of (label, index into one draw)

    Example:
        >>> list(flat_labels("beta", (2,)))
        [('beta[0]', (0,)), ('beta[1]', (1,))]
    """
    if len(shape) == 0:
        yield name, ()
        return

    for index in np.ndindex(*shape):
        yield f"{name}[{', '.join(str(i) for i in index)}]", index
