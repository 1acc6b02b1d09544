"""Global reductions used for residual norms and change monitoring.

Norms are always taken of true (independent) vectors. The serial reduction is
the default; the MPI reduction sums local contributions over a communicator.
"""

from abc import ABC, abstractmethod

import numpy as np


class Reduction(ABC):
    """Abstract global reduction (synchronous, blocking)."""

    @abstractmethod
    def sum(self, value: float) -> float:
        """Global sum of a local scalar."""
        pass

    @abstractmethod
    def max(self, value: float) -> float:
        """Global maximum of a local scalar."""
        pass

    def norm(self, vec: np.ndarray) -> float:
        """Global l2 norm of a true vector."""
        local = float(np.dot(vec, vec))
        return float(np.sqrt(self.sum(local)))

    def abs_max(self, vec: np.ndarray) -> float:
        """Global max-abs entry of a true vector (0 for empty vectors)."""
        local = float(np.max(np.abs(vec))) if vec.size else 0.0
        return self.max(local)


class SerialReduction(Reduction):
    """Single-process reduction (identity on local values)."""

    def sum(self, value: float) -> float:
        return float(value)

    def max(self, value: float) -> float:
        return float(value)


class MPIReduction(Reduction):
    """Reduction over an mpi4py communicator.

    Parameters
    ----------
    comm : mpi4py.MPI.Comm, optional
        Communicator (default: COMM_WORLD)
    """

    def __init__(self, comm=None):
        from mpi4py import MPI

        self._mpi = MPI
        self.comm = comm if comm is not None else MPI.COMM_WORLD

    @property
    def rank(self) -> int:
        return self.comm.Get_rank()

    def sum(self, value: float) -> float:
        return float(self.comm.allreduce(float(value), op=self._mpi.SUM))

    def max(self, value: float) -> float:
        return float(self.comm.allreduce(float(value), op=self._mpi.MAX))
