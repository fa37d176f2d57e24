# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""The state of a Markov chain over the parameters of an areal count model.

A :py:class:`ParameterVector` holds one value per named parameter block. Each
block is tagged with a :py:class:`ParameterKind`:

    - ``SCALAR`` blocks hold a single float (the intercept and the precisions)
    - ``VECTOR`` blocks hold a one-dimensional array (the regression
      coefficients and the per-unit or per-category random effects)

The sampler mutates a single parameter vector in place, one block at a time, and
retains snapshots of it via :py:meth:`ParameterVector.copy`.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterator, Mapping, TYPE_CHECKING

import numpy as np

from scicar.exceptions import InvalidParameterError

if TYPE_CHECKING:
    from scicar import custom_types


class ParameterKind(Enum):
    """Tag identifying the shape of a parameter block."""

    SCALAR = "scalar"
    VECTOR = "vector"


class ParameterVector:
    """Mutable, tagged collection of parameter blocks.

    :param values: Mapping from block name to value. Scalars (Python or NumPy
        numbers, or 0-d arrays) become ``SCALAR`` blocks; one-dimensional arrays
        become ``VECTOR`` blocks.
    :type values: Mapping[str, custom_types.ParameterValue]

    :raises InvalidParameterError: If a value is neither a scalar nor a
        one-dimensional array

    Vector blocks are stored as float64 arrays owned by the parameter vector;
    the input arrays are copied. The set of blocks and their shapes are fixed
    at construction.

    Example:
        >>> params = ParameterVector({"alpha": 0.0, "phi": np.zeros(4)})
        >>> params.kind("phi")
        <ParameterKind.VECTOR: 'vector'>
        >>> params["alpha"] = 0.5
    """

    def __init__(self, values: Mapping[str, "custom_types.ParameterValue"]):
        self._values: dict[str, float | np.ndarray] = {}
        self._kinds: dict[str, ParameterKind] = {}
        for name, value in values.items():
            array = np.array(value, dtype=float)
            if array.ndim == 0:
                self._kinds[name] = ParameterKind.SCALAR
                self._values[name] = float(array)
            elif array.ndim == 1:
                self._kinds[name] = ParameterKind.VECTOR
                self._values[name] = array
            else:
                raise InvalidParameterError(
                    f"Parameter '{name}' must be a scalar or a one-dimensional "
                    f"array, got an array with shape {array.shape}."
                )

    def copy(self) -> "ParameterVector":
        """Get an independent snapshot of the current state."""
        return ParameterVector(self._values)

    def kind(self, name: str) -> ParameterKind:
        """Get the kind of a block."""
        return self._kinds[name]

    def shape(self, name: str) -> tuple[int, ...]:
        """Get the shape of one value of a block (``()`` for scalars)."""
        if self._kinds[name] is ParameterKind.SCALAR:
            return ()
        return self._values[name].shape

    def shapes(self) -> dict[str, tuple[int, ...]]:
        """Get the shape of every block."""
        return {name: self.shape(name) for name in self._values}

    def to_dict(self) -> dict[str, float | np.ndarray]:
        """Get a dictionary of copies of all blocks."""
        return {
            name: value.copy() if isinstance(value, np.ndarray) else value
            for name, value in self._values.items()
        }

    def __getitem__(self, name: str):
        return self._values[name]

    def __setitem__(self, name: str, value: "custom_types.ParameterValue") -> None:
        """Replace the value of an existing block, keeping its kind and shape."""
        if name not in self._kinds:
            raise KeyError(f"Unknown parameter block: '{name}'")
        if self._kinds[name] is ParameterKind.SCALAR:
            array = np.asarray(value, dtype=float)
            if array.ndim != 0:
                raise InvalidParameterError(f"Parameter '{name}' is a scalar.")
            self._values[name] = float(array)
        else:
            array = np.array(value, dtype=float)
            if array.shape != self._values[name].shape:
                raise InvalidParameterError(
                    f"Parameter '{name}' must have shape {self._values[name].shape}, "
                    f"got {array.shape}."
                )
            self._values[name] = array

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def items(self):
        """Iterate over (name, value) pairs."""
        return self._values.items()

    def __repr__(self) -> str:
        blocks = ", ".join(
            f"{name}: {self._kinds[name].value}{list(self.shape(name)) or ''}"
            for name in self._values
        )
        return f"ParameterVector({blocks})"
