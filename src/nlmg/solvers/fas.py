"""FAS (Full Approximation Scheme) nonlinear multigrid solver.

Each cycle on level l:
- Pre-smoothing: one relaxation (V-cycle only, skipped by FMG)
- Defect d_l = A_l(u_l) - f_l
- Coarse problem A_{l+1}(u_{l+1}) = A_{l+1}(Pi u_l) - R d_l, u_{l+1} = Pi u_l
- Recurse (coarsest level: relaxation only)
- Correction u_l -= P (Pi u_l - u_{l+1}), optionally backtracked
- Post-smoothing: one relaxation

Relaxation is a short ``LevelSolver.solve`` with ``max_num_iter`` set to the
level's relaxation count.

Usage:
    solver = FASSolver(operators, transfer, ExponentialCoefficient(1.0), params)
    solver.solve(rhs, sol)
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from ..base_solver import NonlinearSolver
from ..config import coerce_enum, validate_parameters
from ..datastructures import (
    Cycle,
    FASParameters,
    LinearTolCriterion,
    StepKind,
)
from ..exceptions import ConfigurationError
from ..operators.base import LevelTransfer, LinearLevelOperator
from ..reduction import Reduction
from .coefficients import CoefficientModel
from .level_solver import LevelSolver

log = logging.getLogger(__name__)

# Relaxation linear tolerance factors below the finest level
NEWTON_COARSE_TOL_FACTOR = 1e-6
PICARD_COARSE_TOL_FACTOR = 1e-2


# =============================================================================
# FASLevel: per-level buffers
# =============================================================================


@dataclass
class FASLevel:
    """Solver and work vectors of one FAS level.

    Attributes
    ----------
    level : int
        Level index (0 = finest)
    solver : LevelSolver
        Relaxation on this level
    rhs, sol : np.ndarray
        Right-hand side and iterate of this level's problem
    help : np.ndarray
        Defect before the coarse solve, interpolated correction after it
    snapshot : np.ndarray
        Initial coarse iterate, used to form the coarse correction
    num_relax : int
        Relaxation iterations per smoothing call
    """

    level: int
    solver: LevelSolver
    rhs: np.ndarray
    sol: np.ndarray
    help: np.ndarray
    snapshot: np.ndarray
    num_relax: int


def build_fas_levels(
    operators: Sequence[LinearLevelOperator],
    coefficients: Sequence[CoefficientModel],
    params: FASParameters,
    reduction: Optional[Reduction] = None,
) -> List[FASLevel]:
    """Create one ``FASLevel`` per operator, finest first."""
    cycle = coerce_enum(Cycle, params.cycle, "cycle")
    print_level = -1 if cycle is Cycle.V_CYCLE else 0

    levels = []
    for level, (op, coefficient) in enumerate(zip(operators, coefficients)):
        num_relax = params.num_relax(level)
        level_params = dataclasses.replace(
            params.level_parameters(level),
            max_num_iter=num_relax,
            print_level=print_level,
        )
        solver = LevelSolver(op, level, coefficient, level_params, reduction)
        levels.append(
            FASLevel(
                level=level,
                solver=solver,
                rhs=np.zeros(op.size),
                sol=np.zeros(op.size),
                help=np.zeros(op.size),
                snapshot=np.zeros(op.size),
                num_relax=num_relax,
            )
        )

    log.info(
        f"FAS hierarchy: {len(levels)} levels, sizes = {[op.size for op in operators]}, "
        f"relaxation = {[lvl.num_relax for lvl in levels]}"
    )
    return levels


# =============================================================================
# FASSolver
# =============================================================================


class FASSolver(NonlinearSolver):
    """Nonlinear multigrid solver (FAS V-cycle or FMG-style cycle).

    Parameters
    ----------
    operators : sequence of LinearLevelOperator
        Level operators, finest first
    transfer : LevelTransfer
        Restriction / interpolation / projection between adjacent levels
    coefficient : CoefficientModel or sequence of CoefficientModel
        Coefficient shared by all levels, or one model per level
    params : FASParameters, optional
        Solver parameters; ``params.nl_solve`` drives the outer iteration
    reduction : Reduction, optional
        Global reduction shared by all levels
    """

    supported_steps = frozenset({StepKind.FAS_CYCLE})

    def __init__(
        self,
        operators: Sequence[LinearLevelOperator],
        transfer: LevelTransfer,
        coefficient: Union[CoefficientModel, Sequence[CoefficientModel]],
        params: Optional[FASParameters] = None,
        reduction: Optional[Reduction] = None,
    ):
        if params is None:
            params = FASParameters(num_levels=len(operators))
        num_levels = len(operators)
        if num_levels < 1:
            raise ConfigurationError("FASSolver needs at least one level operator")
        validate_parameters(params)
        self.cycle = coerce_enum(Cycle, params.cycle, "cycle")
        params = dataclasses.replace(params, cycle=self.cycle)
        if params.num_levels != num_levels:
            raise ConfigurationError(
                f"num_levels = {params.num_levels} but {num_levels} operators given"
            )
        if transfer.num_levels != num_levels:
            raise ConfigurationError(
                f"Transfer has {transfer.num_levels} levels, expected {num_levels}"
            )

        if isinstance(coefficient, CoefficientModel):
            coefficients = [coefficient] * num_levels
        else:
            coefficients = list(coefficient)
            if len(coefficients) != num_levels:
                raise ConfigurationError(
                    f"{len(coefficients)} coefficient models for {num_levels} levels"
                )

        super().__init__(params.nl_solve, reduction, StepKind.FAS_CYCLE, tag="Nonlinear MG")

        self.fas_params = params
        self.transfer = transfer
        self.num_levels = num_levels
        self.levels = build_fas_levels(operators, coefficients, params, self.reduction)

        log.info(
            f"FASSolver initialized: {num_levels} levels, cycle = {self.cycle.value}, "
            f"coarse correction tol = {params.coarse_correct_tol}"
        )

    def level_solver(self, level: int) -> LevelSolver:
        return self.levels[level].solver

    # =========================================================================
    # NonlinearSolver interface (finest level)
    # =========================================================================

    def mult(self, x: np.ndarray) -> np.ndarray:
        return self.levels[0].solver.mult(x)

    def essential_dofs(self) -> np.ndarray:
        return self.levels[0].solver.essential_dofs()

    def assemble_true_vector(self, vec: np.ndarray) -> np.ndarray:
        return self.levels[0].solver.assemble_true_vector(vec)

    def _step_table(self) -> Dict[StepKind, Callable[[np.ndarray, np.ndarray], None]]:
        return {StepKind.FAS_CYCLE: self.fas_step}

    def fas_step(self, rhs: np.ndarray, sol: np.ndarray) -> None:
        """One cycle starting at the finest level."""
        finest = self.levels[0]
        finest.rhs[:] = rhs
        finest.sol[:] = sol
        self.fas_cycle(0)
        sol[:] = finest.sol

    # =========================================================================
    # Cycle
    # =========================================================================

    def smoothing(self, level: int) -> None:
        """Relax ``level`` with its level solver."""
        lvl = self.levels[level]
        solver = lvl.solver

        if level == 0:
            factor = 1.0
        elif solver.step_kind is StepKind.NEWTON:
            factor = NEWTON_COARSE_TOL_FACTOR
        else:
            factor = PICARD_COARSE_TOL_FACTOR
        solver.operator.set_linear_tol(
            max(factor * self.state.linear_tol, self.params.min_linear_tol)
        )

        solver.solve(lvl.rhs, lvl.sol)

        if level == 0 and self.params.linear_tol_criterion is LinearTolCriterion.TAYLOR:
            self.state.linear_resid_norm = solver.state.linear_resid_norm

    def fas_cycle(self, level: int) -> None:
        """Recursive FAS cycle on ``level`` (buffers of ``self.levels``)."""
        lvl = self.levels[level]

        if level == self.num_levels - 1:
            self.smoothing(level)
            return

        if self.cycle is Cycle.V_CYCLE:
            self.smoothing(level)

        coarse = self.levels[level + 1]
        solver = lvl.solver

        # Defect on this level
        lvl.help[:] = solver.residual(lvl.sol, lvl.rhs)
        defect_norm = solver.true_norm(lvl.help)

        tol = self.fas_params.coarse_correct_tol
        if tol > 0.0:
            rhs_norm = solver.true_norm(lvl.rhs)
            if defect_norm < tol * (rhs_norm if rhs_norm > 0.0 else 1.0):
                log.debug(f"Level {level}: defect {defect_norm:.3e} small, no coarse correction")
                self.smoothing(level)
                return

        # Coarse problem
        coarse.help[:] = self.transfer.restrict(level, lvl.help)
        coarse.sol[:] = self.transfer.project(level, lvl.sol)
        coarse.rhs[:] = coarse.solver.mult(coarse.sol)
        coarse.rhs -= coarse.help
        coarse.snapshot[:] = coarse.sol

        self.fas_cycle(level + 1)

        # Coarse correction
        coarse.snapshot -= coarse.sol
        lvl.help[:] = self.transfer.interpolate(level, coarse.snapshot)
        lvl.sol -= lvl.help

        if self.fas_params.backtrack_coarse_correction:
            solver.backtrack(lvl.rhs, defect_norm, lvl.sol, lvl.help, interpolated=True)

        self.smoothing(level)
