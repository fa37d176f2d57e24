# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for SciCAR.

This module provides type aliases and unions for various components used
throughout the SciCAR package, for type checking and documentation purposes.
"""

from typing import Literal, Protocol, TYPE_CHECKING, Union

# Everything in this file is only imported if TYPE_CHECKING is True.
if TYPE_CHECKING:

    import numpy as np
    import numpy.typing as npt

# Scalar types
Integer = Union[int, "np.integer"]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

Float = Union[float, "np.floating"]
"""Type alias for floating-point values.

Accepts both Python's built-in float and NumPy floating-point types.

:type: Union[float, np.floating]
"""

ArrayLike = Union["npt.ArrayLike"]
"""Type alias for anything NumPy can convert to an array.

:type: npt.ArrayLike
"""

ParameterValue = Union[int, float, "np.number", "npt.NDArray"]
"""Type alias for the value of a single parameter block.

Scalar blocks accept Python or NumPy numbers; vector blocks accept arrays.

:type: Union[int, float, np.number, npt.NDArray]
"""

Seed = Union[int, "np.integer", "np.random.SeedSequence", None]
"""Type alias for anything accepted as the seed of a single chain.

:type: Union[int, np.integer, np.random.SeedSequence, None]
"""

IndexBase = Literal[0, 1]
"""Index base of neighbor ids in `adj` arrays.

:type: Literal[0, 1]
"""


class CancelSignal(Protocol):  # pylint: disable=too-few-public-methods
    """Protocol for cancellation signals, satisfied by :py:class:`threading.Event`."""

    def is_set(self) -> bool:
        """Return whether cancellation has been requested."""
