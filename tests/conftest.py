# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Shared fixtures for the SciCAR test suite."""

import numpy as np
import pytest

from scicar.model.components.data import Observations
from scicar.model.components.graph import NeighborGraph
from scicar.model.model import PoissonCARModel


@pytest.fixture
def grid_graph():
    """2 x 2 grid where every cell borders two others."""
    return NeighborGraph.lattice(2, 2)


@pytest.fixture
def grid_observations():
    """Counts on the 2 x 2 grid with equal expected counts."""
    return Observations(observed=[5, 7, 3, 9], expected=[5.0, 5.0, 5.0, 5.0])


@pytest.fixture
def bym_model(grid_observations, grid_graph):
    """BYM model with unstructured and spatial effects on the 2 x 2 grid."""
    return PoissonCARModel(grid_observations, grid_graph)


@pytest.fixture
def rng():
    return np.random.default_rng(20240601)
