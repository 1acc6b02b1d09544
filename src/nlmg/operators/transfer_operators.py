"""Concrete level transfers.

Two transfers are provided:
- IdentityTransfer: every level has the same dofs (used to test the cycle)
- MatrixTransfer: user-supplied sparse interpolation matrices per level pair
"""

import logging
from typing import Optional, Sequence

import numpy as np
from scipy import sparse

from .base import LevelTransfer

log = logging.getLogger(__name__)


class IdentityTransfer(LevelTransfer):
    """Transfer between levels that share the same dofs."""

    def __init__(self, num_levels: int):
        if num_levels < 1:
            raise ValueError(f"num_levels must be >= 1, got {num_levels}")
        self._num_levels = num_levels

    @property
    def num_levels(self) -> int:
        return self._num_levels

    def restrict(self, level: int, fine: np.ndarray) -> np.ndarray:
        self._check_level(level)
        return fine.copy()

    def interpolate(self, level: int, coarse: np.ndarray) -> np.ndarray:
        self._check_level(level)
        return coarse.copy()

    def project(self, level: int, fine: np.ndarray) -> np.ndarray:
        self._check_level(level)
        return fine.copy()


class MatrixTransfer(LevelTransfer):
    """Transfer defined by interpolation matrices P_l (level l+1 -> level l).

    Restriction is ``P_l^T``. Projection defaults to ``D^-1 P_l^T`` with
    ``D = diag(P_l^T P_l)``, which is a left inverse of ``P_l`` whenever its
    columns have disjoint supports (aggregation-based hierarchies).

    Parameters
    ----------
    interpolation : sequence of sparse matrices
        ``interpolation[l]`` has shape (n_l, n_{l+1})
    projection : sequence of sparse matrices, optional
        ``projection[l]`` has shape (n_{l+1}, n_l)
    """

    def __init__(
        self,
        interpolation: Sequence[sparse.spmatrix],
        projection: Optional[Sequence[sparse.spmatrix]] = None,
    ):
        self._interp = [sparse.csr_matrix(P) for P in interpolation]
        self._restrict = [P.T.tocsr() for P in self._interp]

        if projection is None:
            projection = []
            for P in self._interp:
                diag = np.asarray(P.multiply(P).sum(axis=0)).ravel()
                diag[diag == 0.0] = 1.0
                projection.append(sparse.diags(1.0 / diag) @ P.T)
        elif len(projection) != len(self._interp):
            raise ValueError("projection and interpolation lengths differ")
        self._project = [sparse.csr_matrix(Pi) for Pi in projection]

        for level, (P, Pi) in enumerate(zip(self._interp, self._project)):
            if Pi.shape != (P.shape[1], P.shape[0]):
                raise ValueError(
                    f"Level {level}: projection shape {Pi.shape} does not match "
                    f"interpolation shape {P.shape}"
                )
        log.debug(
            f"MatrixTransfer: sizes {[P.shape[0] for P in self._interp]} "
            f"-> {self._interp[-1].shape[1] if self._interp else None}"
        )

    @property
    def num_levels(self) -> int:
        return len(self._interp) + 1

    def restrict(self, level: int, fine: np.ndarray) -> np.ndarray:
        self._check_level(level)
        return self._restrict[level] @ fine

    def interpolate(self, level: int, coarse: np.ndarray) -> np.ndarray:
        self._check_level(level)
        return self._interp[level] @ coarse

    def project(self, level: int, fine: np.ndarray) -> np.ndarray:
        self._check_level(level)
        return self._project[level] @ fine
