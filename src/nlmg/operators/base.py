"""Abstract interfaces consumed by the nonlinear solvers.

The solvers never assemble or factor anything themselves: every linear-algebra
operation on a level goes through a ``LinearLevelOperator``, and every move
between levels goes through a ``LevelTransfer``.

Vectors are 1-D arrays laid out as block vectors ``[flux | potential]``, with
block boundaries given by ``LinearLevelOperator.offsets``.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import numpy as np
from scipy import sparse


# =============================================================================
# Per-level linear operator
# =============================================================================


class LinearLevelOperator(ABC):
    """Linearized mixed operator of one level.

    ``apply`` and ``solve`` act on the same block system: ``apply(coeff, x)``
    evaluates the operator with element coefficient ``coeff``; ``solve`` uses
    the system prepared by the last ``rescale_coefficient`` (Picard) or
    ``update_jacobian`` (Newton) call.
    """

    # -- layout ---------------------------------------------------------------

    @property
    @abstractmethod
    def offsets(self) -> np.ndarray:
        """Block offsets ``[0, n_flux, n_flux + n_potential]``."""
        pass

    @property
    def size(self) -> int:
        return int(self.offsets[-1])

    @property
    @abstractmethod
    def num_elements(self) -> int:
        pass

    # -- operator application and solves -------------------------------------

    @abstractmethod
    def apply(self, coeff: np.ndarray, x: np.ndarray) -> np.ndarray:
        """Apply the operator with element coefficient ``coeff`` to ``x``.

        Parameters
        ----------
        coeff : np.ndarray
            Coefficient per element (the flux mass matrix scales with 1/coeff)
        x : np.ndarray
            Block vector

        Returns
        -------
        np.ndarray
            A(coeff) x
        """
        pass

    @abstractmethod
    def solve(self, rhs: np.ndarray, x: Optional[np.ndarray] = None) -> np.ndarray:
        """Solve the currently prepared system; ``x`` is the initial guess."""
        pass

    def solve_into(self, rhs: np.ndarray, x: np.ndarray) -> np.ndarray:
        """Solve with ``x`` as initial guess and overwrite it with the result."""
        x[:] = self.solve(rhs, x)
        return x

    @abstractmethod
    def rescale_coefficient(
        self,
        coeff: Optional[np.ndarray] = None,
        potential: Optional[np.ndarray] = None,
        fn: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    ) -> None:
        """Prepare the Picard system.

        Either ``coeff`` is given per element, or the coefficient is evaluated
        as ``fn(pw_const_project(potential))`` (exact evaluation).
        """
        pass

    @abstractmethod
    def update_jacobian(self, coeff: np.ndarray, blocks: List[np.ndarray]) -> None:
        """Prepare the Newton system from the coefficient and element blocks."""
        pass

    @abstractmethod
    def set_linear_tol(self, rtol: float) -> None:
        pass

    # -- discretization data ---------------------------------------------------

    @abstractmethod
    def pw_const_matrix(self) -> sparse.csr_matrix:
        """Piecewise-constant projection, shape (num_elements, n_potential)."""
        pass

    def pw_const_project(self, potential: np.ndarray) -> np.ndarray:
        """Project a potential block onto one value per element."""
        return self.pw_const_matrix() @ potential

    @abstractmethod
    def essential_dofs(self) -> np.ndarray:
        """Boolean mask over the full block vector marking fixed-value dofs."""
        pass

    def assemble_true_vector(self, vec: np.ndarray) -> np.ndarray:
        """Reduce ``vec`` to its independent entries (identity when serial)."""
        return vec

    @abstractmethod
    def element_mass_matrices(self) -> List[np.ndarray]:
        """Dense unit-coefficient flux mass matrix of every element."""
        pass

    @abstractmethod
    def element_flux_dofs(self) -> List[np.ndarray]:
        """Flux-block dof indices of every element."""
        pass

    @abstractmethod
    def element_potential_dofs(self) -> List[np.ndarray]:
        """Potential-block dof indices of every element."""
        pass


# =============================================================================
# Inter-level transfers
# =============================================================================


class LevelTransfer(ABC):
    """Moves vectors between adjacent levels ``level`` and ``level + 1``."""

    @property
    @abstractmethod
    def num_levels(self) -> int:
        pass

    def _check_level(self, level: int):
        if not 0 <= level < self.num_levels - 1:
            raise ValueError(
                f"Transfer level {level} out of range [0, {self.num_levels - 1})"
            )

    @abstractmethod
    def restrict(self, level: int, fine: np.ndarray) -> np.ndarray:
        """Restrict a residual from ``level`` to ``level + 1``.

        Parameters
        ----------
        level : int
            Fine level index, 0 <= level < num_levels - 1
        fine : np.ndarray
            Vector on ``level``

        Returns
        -------
        np.ndarray
            Vector on ``level + 1``
        """
        pass

    @abstractmethod
    def interpolate(self, level: int, coarse: np.ndarray) -> np.ndarray:
        """Interpolate a correction from ``level + 1`` to ``level``."""
        pass

    @abstractmethod
    def project(self, level: int, fine: np.ndarray) -> np.ndarray:
        """Project a solution from ``level`` to ``level + 1``."""
        pass
