"""Nonlinear solver for the mixed nonlinear-diffusion problem on one level.

Solves

    [ M(1/k(p))  B^T ] [sigma]   [g]
    [ B          0   ] [  p  ] = [f]

with either Picard iteration (coefficient frozen at the current iterate) or
Newton iteration (Jacobian including d(M(1/k(p)) sigma)/dp). Every step is
followed by backtracking: an optional clamp on the potential change followed
by step halving.
"""

import dataclasses
import logging
from typing import Callable, Dict, List, Optional

import numpy as np

from ..base_solver import NonlinearSolver
from ..config import coerce_enum
from ..datastructures import (
    CoefficientState,
    LinearTolCriterion,
    Linearization,
    NLSolverParameters,
    StepKind,
)
from ..operators.base import LinearLevelOperator
from ..reduction import Reduction
from .coefficients import CoefficientModel, clamp_coefficient

log = logging.getLogger(__name__)

# A halving must reduce the residual below this fraction to be kept
BACKTRACK_STALL_RATIO = 0.9

_STEP_OF = {
    Linearization.PICARD: StepKind.PICARD,
    Linearization.NEWTON: StepKind.NEWTON,
}


class LevelSolver(NonlinearSolver):
    """Picard / Newton solver on a single level.

    Parameters
    ----------
    operator : LinearLevelOperator
        Linear operator of this level
    level : int
        Level index (0 = finest)
    coefficient : CoefficientModel
        Nonlinear coefficient k(p)
    params : NLSolverParameters, optional
        Solver parameters
    reduction : Reduction, optional
        Global reduction (serial by default)
    exact : bool
        Evaluate the coefficient exactly inside the operator (Picard-type
        steps with ``operator.rescale_coefficient(potential=..., fn=...)``)
    """

    supported_steps = frozenset({StepKind.PICARD, StepKind.NEWTON, StepKind.EXACT})

    def __init__(
        self,
        operator: LinearLevelOperator,
        level: int,
        coefficient: CoefficientModel,
        params: Optional[NLSolverParameters] = None,
        reduction: Optional[Reduction] = None,
        exact: bool = False,
    ):
        params = params if params is not None else NLSolverParameters()
        params = dataclasses.replace(
            params,
            linearization=coerce_enum(Linearization, params.linearization, "linearization"),
        )
        step_kind = StepKind.EXACT if exact else _STEP_OF[params.linearization]
        super().__init__(
            params,
            reduction,
            step_kind,
            tag=f"Level {level} {step_kind.value.capitalize()}",
        )

        self.operator = operator
        self.level = level
        self.coefficient = coefficient
        self.offsets = operator.offsets
        self.coef = CoefficientState.allocate(operator.num_elements)
        self.num_backtracks = 0
        self.backtrack_resid_norm = float("inf")

        # Static element data for the Newton blocks
        self._elem_mass = operator.element_mass_matrices()
        self._elem_flux = operator.element_flux_dofs()
        self._elem_pot = operator.element_potential_dofs()
        pwc = operator.pw_const_matrix().tocsr()
        self._elem_proj = [
            pwc[i, vdofs].toarray().ravel() for i, vdofs in enumerate(self._elem_pot)
        ]

        log.info(
            f"Level {level} solver: {step_kind.value}, "
            f"potential change tol = {params.diff_tol}, "
            f"max backtracking = {params.max_num_backtrack}"
        )

    # =========================================================================
    # Block access
    # =========================================================================

    def flux(self, x: np.ndarray) -> np.ndarray:
        return x[self.offsets[0] : self.offsets[1]]

    def potential(self, x: np.ndarray) -> np.ndarray:
        return x[self.offsets[1] : self.offsets[2]]

    def essential_dofs(self) -> np.ndarray:
        return self.operator.essential_dofs()

    def assemble_true_vector(self, vec: np.ndarray) -> np.ndarray:
        return self.operator.assemble_true_vector(vec)

    # =========================================================================
    # Coefficient evaluation
    # =========================================================================

    def _clamped_coefficient(self, p: np.ndarray) -> np.ndarray:
        kp = np.array(self.coefficient(p), dtype=float)
        return clamp_coefficient(kp, self.params.coef_floor, self.tag)

    def eval_coef(self, x: np.ndarray) -> np.ndarray:
        """Evaluate k(p) on the piecewise-constant potential of ``x``."""
        self.coef.p = self.operator.pw_const_project(self.potential(x))
        self.coef.kp = self._clamped_coefficient(self.coef.p)
        return self.coef.kp

    def eval_coef_derivative(self) -> np.ndarray:
        """Evaluate d(1/k)/dp at the potential of the last ``eval_coef``."""
        self.coef.dkinv_dp = np.asarray(self.coefficient.dkinv_dp(self.coef.p))
        return self.coef.dkinv_dp

    def build_dmdp(self, x: np.ndarray) -> List[np.ndarray]:
        """Element blocks of d(M(1/k(p)) sigma)/dp.

        Block i is ``outer(M_i sigma_i, dkinv_dp_i * P_i)``, with ``M_i`` the
        unit-coefficient element mass matrix and ``P_i`` the element's row of
        the piecewise-constant projection restricted to its potential dofs.
        """
        dkinv_dp = self.eval_coef_derivative()
        sigma = self.flux(x)
        self.coef.dMdp = [
            np.outer(M_i @ sigma[edofs], dkinv_dp[i] * proj)
            for i, (M_i, edofs, proj) in enumerate(
                zip(self._elem_mass, self._elem_flux, self._elem_proj)
            )
        ]
        return self.coef.dMdp

    # =========================================================================
    # NonlinearSolver interface
    # =========================================================================

    def mult(self, x: np.ndarray) -> np.ndarray:
        if self.step_kind is StepKind.EXACT:
            self.operator.rescale_coefficient(
                potential=self.potential(x), fn=self._clamped_coefficient
            )
            self.coef.kp = np.ones(self.operator.num_elements)
        else:
            self.eval_coef(x)
        return self.operator.apply(self.coef.kp, x)

    def _step_table(self) -> Dict[StepKind, Callable[[np.ndarray, np.ndarray], None]]:
        return {
            StepKind.PICARD: self.picard_step,
            StepKind.EXACT: self.picard_step,
            StepKind.NEWTON: self.newton_step,
        }

    def iteration_step(self, rhs: np.ndarray, sol: np.ndarray) -> None:
        if self.params.max_num_iter > 1:
            self.operator.set_linear_tol(self.state.linear_tol)
        super().iteration_step(rhs, sol)

    # =========================================================================
    # Steps
    # =========================================================================

    def picard_step(self, rhs: np.ndarray, x: np.ndarray) -> None:
        """Solve the linear problem with the coefficient frozen at ``x``."""
        x_old = x.copy()
        prev_resid_norm = self.residual_norm(x, rhs)

        if self.step_kind is StepKind.EXACT:
            self.operator.rescale_coefficient(
                potential=self.potential(x), fn=self._clamped_coefficient
            )
        else:
            self.operator.rescale_coefficient(self.coef.kp)
        kp_old = self.coef.kp.copy()

        self.operator.solve_into(rhs, x)
        dx = x_old - x
        self.backtrack(rhs, prev_resid_norm, x, dx)

        if self.params.linear_tol_criterion is LinearTolCriterion.TAYLOR:
            self.state.linear_resid_norm = self.linear_residual_norm(x, rhs, kp_old)

    def newton_step(self, rhs: np.ndarray, x: np.ndarray) -> None:
        """Solve J(x) dx = A(x) - rhs and update x -= dx."""
        residual = self.residual(x, rhs)
        residual[self.essential_dofs()] = 0.0

        blocks = self.build_dmdp(x)
        kp = self.coef.kp.copy()
        self.operator.update_jacobian(kp, blocks)

        dx = self.operator.solve(residual, np.zeros_like(x))
        prev_resid_norm = self.true_norm(residual)

        x -= dx
        self.backtrack(rhs, prev_resid_norm, x, dx)

        if self.params.linear_tol_criterion is LinearTolCriterion.TAYLOR:
            self.state.linear_resid_norm = self.linear_residual_norm(
                dx, residual, kp, blocks
            )

    def linear_residual_norm(
        self,
        x: np.ndarray,
        y: np.ndarray,
        kp: np.ndarray,
        blocks: Optional[List[np.ndarray]] = None,
    ) -> float:
        """|| A(kp) x + dMdp x_p - y || (the Jacobian term only when ``blocks``)."""
        resid = self.operator.apply(kp, x)
        if blocks is not None:
            resid_flux = self.flux(resid)
            x_p = self.potential(x)
            for block, edofs, vdofs in zip(blocks, self._elem_flux, self._elem_pot):
                resid_flux[edofs] += block @ x_p[vdofs]
        resid -= y
        return self.true_norm(resid)

    # =========================================================================
    # Backtracking
    # =========================================================================

    def backtrack(
        self,
        rhs: np.ndarray,
        prev_resid_norm: float,
        x: np.ndarray,
        dx: np.ndarray,
        interpolated: bool = False,
    ) -> int:
        """Safeguard the step x = x_old - dx (both updated in place).

        Parameters
        ----------
        rhs : np.ndarray
            Right-hand side of this level
        prev_resid_norm : float
            Residual norm before the step
        x : np.ndarray
            Iterate after the full step
        dx : np.ndarray
            Step that was subtracted
        interpolated : bool
            Step is an interpolated coarse correction; the potential change
            clamp is skipped

        Returns
        -------
        int
            Number of halvings kept
        """
        if not interpolated:
            threshold = self.coefficient.max_potential_change(self.params.diff_tol)
            if threshold is not None:
                delta_p = self.operator.pw_const_project(self.potential(dx))
                ratio = self.reduction.abs_max(delta_p) / threshold
                if ratio > 1.0:
                    dx /= ratio
                    x += (ratio - 1.0) * dx
                    log.debug(f"{self.tag}: potential change clamped by {ratio:.3e}")

        num_backtracks = 0
        if self.params.max_num_backtrack > 0:
            resid_norm = self.residual_norm(x, rhs)
            while (
                num_backtracks < self.params.max_num_backtrack
                and resid_norm > prev_resid_norm
            ):
                before = resid_norm
                dx *= 0.5
                x += dx
                resid_norm = self.residual_norm(x, rhs)

                if resid_norm > BACKTRACK_STALL_RATIO * before:
                    x -= dx
                    resid_norm = before
                    break
                num_backtracks += 1

            self.backtrack_resid_norm = resid_norm
            if num_backtracks > 0:
                self._log(
                    f"{self.tag}: {num_backtracks} backtracking steps, "
                    f"resid {prev_resid_norm:.6e} -> {resid_norm:.6e}"
                )

        self.num_backtracks = num_backtracks
        return num_backtracks
