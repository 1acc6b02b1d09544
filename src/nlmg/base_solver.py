"""Abstract inexact-Newton solver for nonlinear problems A(x) = b."""

from abc import ABC, abstractmethod
import dataclasses
import logging
import time
from typing import Callable, ClassVar, Dict, FrozenSet, Optional

import mlflow
import numpy as np

from .config import coerce_enum, validate_solver_parameters
from .datastructures import (
    LinearTolCriterion,
    Metrics,
    NLSolverParameters,
    NonlinearSolverState,
    StepKind,
    TimeSeries,
)
from .exceptions import ConfigurationError
from .reduction import Reduction, SerialReduction

log = logging.getLogger(__name__)

# Eisenstat & Walker, SISC 1996
EW_GAMMA = 0.9
EW_ALPHA = 2.0
EW_SAFEGUARD = 0.1
MAX_LINEAR_TOL = 0.9
GOLDEN_RATIO = (1.0 + np.sqrt(5.0)) / 2.0


class NonlinearSolver(ABC):
    """Abstract iterative solver for nonlinear problems.

    Handles:
    - Outer iteration loop with residual-based convergence test
    - Adaptive linear tolerance (Eisenstat-Walker forcing terms)
    - Result bookkeeping (state, metrics, time series)
    - Live MLflow logging when a run is active

    Subclasses must:
    - Set ``supported_steps`` to the step variants they implement
    - Implement ``mult(x)`` returning A(x)
    - Implement ``_step_table()`` mapping each supported StepKind to a step
    """

    supported_steps: ClassVar[FrozenSet[StepKind]] = frozenset()

    def __init__(
        self,
        params: Optional[NLSolverParameters] = None,
        reduction: Optional[Reduction] = None,
        step_kind: StepKind = StepKind.NEWTON,
        tag: str = "Nonlinear solver",
    ):
        params = params if params is not None else NLSolverParameters()
        validate_solver_parameters(params, name=tag)
        self.params = dataclasses.replace(
            params,
            linear_tol_criterion=coerce_enum(
                LinearTolCriterion, params.linear_tol_criterion, "linear_tol_criterion"
            ),
        )
        if step_kind not in self.supported_steps:
            raise ConfigurationError(
                f"{type(self).__name__} does not support step '{step_kind.value}'"
            )
        self.step_kind = step_kind
        self.reduction = reduction if reduction is not None else SerialReduction()
        self.tag = tag
        self.state = NonlinearSolverState(linear_tol=self.params.init_linear_tol)

    # =========================================================================
    # Hooks
    # =========================================================================

    @abstractmethod
    def mult(self, x: np.ndarray) -> np.ndarray:
        """Evaluate the nonlinear operator A(x)."""
        pass

    @abstractmethod
    def _step_table(self) -> Dict[StepKind, Callable[[np.ndarray, np.ndarray], None]]:
        """Map each supported step variant to its implementation."""
        pass

    def assemble_true_vector(self, vec: np.ndarray) -> np.ndarray:
        return vec

    def essential_dofs(self) -> Optional[np.ndarray]:
        """Boolean mask of fixed-value dofs excluded from residual norms."""
        return None

    def iteration_step(self, rhs: np.ndarray, sol: np.ndarray) -> None:
        """Advance ``sol`` in place by one step of the configured variant."""
        self._step_table()[self.step_kind](rhs, sol)

    # =========================================================================
    # Residuals
    # =========================================================================

    def residual(self, sol: np.ndarray, rhs: np.ndarray) -> np.ndarray:
        """Return A(sol) - rhs."""
        resid = self.mult(sol)
        resid -= rhs
        return resid

    def true_norm(self, vec: np.ndarray) -> float:
        """Global norm of ``vec`` with essential dofs removed."""
        ess = self.essential_dofs()
        if ess is not None and np.any(ess):
            vec = np.where(ess, 0.0, vec)
        return self.reduction.norm(self.assemble_true_vector(vec))

    def residual_norm(self, sol: np.ndarray, rhs: np.ndarray) -> float:
        """Return || A(sol) - rhs ||."""
        return self.true_norm(self.residual(sol, rhs))

    # =========================================================================
    # Linear tolerance
    # =========================================================================

    def update_linear_tol(self) -> float:
        """Update the linear tolerance (Eisenstat & Walker, SISC 1996).

        CLASSIC is choice 2 (ratio of consecutive residual norms), TAYLOR is
        choice 1 (mismatch between nonlinear and linearized residual).
        """
        state = self.state
        params = self.params
        prev = state.prev_resid_norm

        if state.iteration == 0 or not np.isfinite(prev) or prev <= 0.0:
            tol = params.init_linear_tol
        elif params.linear_tol_criterion is LinearTolCriterion.TAYLOR:
            tol = abs(state.resid_norm - state.linear_resid_norm) / prev
            safeguard = state.linear_tol**GOLDEN_RATIO
            if safeguard > EW_SAFEGUARD:
                tol = max(tol, safeguard)
        else:
            tol = EW_GAMMA * (state.resid_norm / prev) ** EW_ALPHA
            safeguard = EW_GAMMA * state.linear_tol**EW_ALPHA
            if safeguard > EW_SAFEGUARD:
                tol = max(tol, safeguard)

        state.linear_tol = min(max(tol, params.min_linear_tol), MAX_LINEAR_TOL)
        return state.linear_tol

    # =========================================================================
    # Solve
    # =========================================================================

    def _is_converged(self, resid: float, norm0: float) -> bool:
        return resid < self.params.atol or resid / norm0 < self.params.rtol

    def solve(self, rhs: np.ndarray, sol: np.ndarray) -> NonlinearSolverState:
        """Solve A(sol) = rhs, updating ``sol`` in place.

        Non-convergence is not an error: the returned state carries the
        converged flag and the final residual norm.

        Parameters
        ----------
        rhs : np.ndarray
            Right-hand side
        sol : np.ndarray
            Initial guess, overwritten with the final iterate

        Returns
        -------
        NonlinearSolverState
            ``self.state`` after the solve
        """
        params = self.params
        state = self.state
        state.reset(params.init_linear_tol)

        time_start = time.time()
        tracking_time = 0.0

        state.norm0 = self.residual_norm(np.zeros_like(sol), rhs)
        norm0 = state.norm0 if state.norm0 > 0.0 else 1.0

        for it in range(params.max_num_iter):
            state.iteration = it
            resid = self.residual_norm(sol, rhs)
            state.prev_resid_norm, state.resid_norm = state.resid_norm, resid
            state.history.append(resid)

            tracking_time += self._report(it, resid, norm0)

            if params.check_converge and self._is_converged(resid, norm0):
                state.converged = True
                break

            self.update_linear_tol()
            self.iteration_step(rhs, sol)
        else:
            state.iteration = params.max_num_iter
            resid = self.residual_norm(sol, rhs)
            state.prev_resid_norm, state.resid_norm = state.resid_norm, resid
            state.history.append(resid)
            state.converged = params.check_converge and self._is_converged(resid, norm0)

        state.timing = time.time() - time_start - tracking_time

        if state.converged:
            self._log(
                f"{self.tag} converged in {state.iteration} iterations, "
                f"rel resid = {resid / norm0:.6e}"
            )
        elif params.check_converge:
            message = (
                f"{self.tag} reached maximum number of iterations "
                f"({params.max_num_iter}), rel resid = {resid / norm0:.6e}"
            )
            if params.print_level >= 0:
                log.warning(message)
            else:
                log.debug(message)

        return state

    def _log(self, message: str) -> None:
        if self.params.print_level > 0:
            log.info(message)
        else:
            log.debug(message)

    def _report(self, it: int, resid: float, norm0: float) -> float:
        """Log one outer iteration; returns the time spent on MLflow logging."""
        self._log(
            f"{self.tag} iter {it}: rel resid = {resid / norm0:.6e}, "
            f"abs resid = {resid:.6e}"
        )
        if self.params.print_level <= 0 or not mlflow.active_run():
            return 0.0

        t_log_start = time.time()
        prefix = self.tag.lower().replace(" ", "_")
        mlflow.log_metrics(
            {
                f"{prefix}.resid_norm": resid,
                f"{prefix}.rel_resid_norm": resid / norm0,
                f"{prefix}.linear_tol": self.state.linear_tol,
            },
            step=it,
        )
        return time.time() - t_log_start

    # =========================================================================
    # Results
    # =========================================================================

    def metrics(self) -> Metrics:
        state = self.state
        return Metrics(
            iterations=state.iteration,
            converged=state.converged,
            final_residual=state.resid_norm,
            relative_residual=state.rel_resid_norm,
            wall_time_seconds=state.timing,
            linear_tol=state.linear_tol,
            method=self.tag,
        )

    def time_series(self) -> TimeSeries:
        norm0 = self.state.norm0 if self.state.norm0 > 0.0 else 1.0
        history = list(self.state.history)
        return TimeSeries(
            resid_norm=history,
            rel_resid_norm=[r / norm0 for r in history],
            level=getattr(self, "level", None),
        )
