"""Pytest configuration and fixtures for the nonlinear multigrid tests."""

import sys
from pathlib import Path

import numpy as np
import pytest
from scipy import sparse

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from nlmg.operators import MatrixTransfer, MixedGraphOperator  # noqa: E402


def chain_rhs(operator, source=1.0):
    """Right-hand side [g = 0 | f = -h * source] on a uniform chain."""
    n_flux, n_total = operator.offsets[1], operator.offsets[2]
    h = 1.0 / (n_total - n_flux)
    rhs = np.zeros(n_total)
    rhs[n_flux:] = -h * source
    return rhs


def chain_interpolation(num_coarse: int) -> sparse.csr_matrix:
    """Block interpolation from a chain of num_coarse vertices to 2 * num_coarse.

    Potential: piecewise constant. Flux: coarse edge j -> fine edge 2j, fine
    edges inside an aggregate get the mean of the neighbouring coarse edges.
    """
    m = num_coarse
    n = 2 * m
    rows, cols, vals = [], [], []
    for j in range(m + 1):
        rows.append(2 * j)
        cols.append(j)
        vals.append(1.0)
    for j in range(m):
        rows += [2 * j + 1, 2 * j + 1]
        cols += [j, j + 1]
        vals += [0.5, 0.5]
    for i in range(n):
        rows.append((n + 1) + i)
        cols.append((m + 1) + i // 2)
        vals.append(1.0)
    return sparse.csr_matrix((vals, (rows, cols)), shape=(2 * n + 1, 2 * m + 1))


def chain_projection(num_coarse: int) -> sparse.csr_matrix:
    """Left inverse of ``chain_interpolation``: flux injection, potential mean."""
    m = num_coarse
    n = 2 * m
    rows, cols, vals = [], [], []
    for j in range(m + 1):
        rows.append(j)
        cols.append(2 * j)
        vals.append(1.0)
    for c in range(m):
        rows += [(m + 1) + c, (m + 1) + c]
        cols += [(n + 1) + 2 * c, (n + 1) + 2 * c + 1]
        vals += [0.5, 0.5]
    return sparse.csr_matrix((vals, (rows, cols)), shape=(2 * m + 1, 2 * n + 1))


@pytest.fixture
def chain():
    """Factory for uniform chain operators."""

    def _make(num_vertices=8, **kwargs):
        return MixedGraphOperator.chain(num_vertices, **kwargs)

    return _make


@pytest.fixture
def source_rhs():
    """Factory for chain right-hand sides (see ``chain_rhs``)."""
    return chain_rhs


@pytest.fixture
def chain_hierarchy():
    """Factory for a chain hierarchy (finest first) with its matrix transfer."""

    def _make(num_fine=16, num_levels=3):
        sizes = [num_fine // 2**level for level in range(num_levels)]
        operators = [MixedGraphOperator.chain(n) for n in sizes]
        transfer = MatrixTransfer(
            [chain_interpolation(n) for n in sizes[1:]],
            [chain_projection(n) for n in sizes[1:]],
        )
        return operators, transfer

    return _make
