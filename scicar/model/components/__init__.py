# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Core model components for SciCAR.

This submodule contains the building blocks of areal count models: observed
data, neighbor graphs, priors (including the ICAR prior), and the tagged
parameter vector that holds the state of a Markov chain.
"""
