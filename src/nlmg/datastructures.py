"""Data structures for solver configuration, state and results.

This module defines the configuration and result data structures shared by
the nonlinear solvers (level solvers and the FAS driver).

Structure:
- Enums: Linearization, Cycle, LinearTolCriterion, StepKind
- NLSolverParameters / FASParameters: input configuration
- NonlinearSolverState: mutable per-solve state
- Metrics: output summary (one row)
- TimeSeries: convergence history (one row per iteration)
"""

from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import List, Optional

import numpy as np
import pandas as pd


# ========================================================
# Enums (closed choice sets)
# ========================================================


class Linearization(Enum):
    """Linearization of the nonlinear coefficient."""

    NEWTON = "newton"
    PICARD = "picard"


class Cycle(Enum):
    """Multigrid cycle shape."""

    V_CYCLE = "v_cycle"
    FMG = "fmg"


class LinearTolCriterion(Enum):
    """Eisenstat-Walker forcing term choice."""

    CLASSIC = "classic"  # choice 2: ratio of consecutive residual norms
    TAYLOR = "taylor"  # choice 1: mismatch of the linearized model


class StepKind(Enum):
    """Iteration-step variants. The set is fixed; solvers accept a subset."""

    PICARD = "picard"
    NEWTON = "newton"
    FAS_CYCLE = "fas_cycle"
    EXACT = "exact"


# ========================================================
# Parameters (Input Configuration)
# ========================================================


@dataclass
class NLSolverParameters:
    """Parameters of a single nonlinear solver (level solver or FAS itself)."""

    print_level: int = 0
    max_num_iter: int = 50
    rtol: float = 1e-8
    atol: float = 1e-10
    check_converge: bool = True
    linearization: Linearization = Linearization.NEWTON
    max_num_backtrack: int = 0
    diff_tol: float = -1.0  # percentage-change clamp, <= 1 disables
    init_linear_tol: float = 1e-8
    min_linear_tol: float = 1e-8
    linear_tol_criterion: LinearTolCriterion = LinearTolCriterion.CLASSIC
    coef_floor: float = 1e-12

    def to_dataframe(self):
        return pd.DataFrame([_flatten(asdict(self))])


@dataclass
class FASParameters:
    """FAS driver parameters.

    ``nl_solve`` configures the outer FAS iteration; ``fine``, ``mid`` and
    ``coarse`` configure the level solvers used for relaxation. The relaxation
    counts override ``max_num_iter`` of the respective level parameters.
    """

    num_levels: int = 2
    cycle: Cycle = Cycle.V_CYCLE
    coarse_correct_tol: float = 0.0  # skip coarse correction if rel defect < tol
    backtrack_coarse_correction: bool = True
    num_relax_fine: int = 1
    num_relax_mid: int = 1
    num_relax_coarse: int = 20
    nl_solve: NLSolverParameters = field(default_factory=NLSolverParameters)
    fine: NLSolverParameters = field(default_factory=NLSolverParameters)
    mid: NLSolverParameters = field(default_factory=NLSolverParameters)
    coarse: NLSolverParameters = field(default_factory=NLSolverParameters)

    def level_parameters(self, level: int) -> NLSolverParameters:
        """Parameter group used by the level solver at ``level``."""
        if level == 0:
            return self.fine
        if level < self.num_levels - 1:
            return self.mid
        return self.coarse

    def num_relax(self, level: int) -> int:
        """Relaxation count at ``level``."""
        if level == 0:
            return self.num_relax_fine
        if level < self.num_levels - 1:
            return self.num_relax_mid
        return self.num_relax_coarse

    def to_dataframe(self):
        return pd.DataFrame([_flatten(asdict(self))])


def _flatten(d: dict, prefix: str = "") -> dict:
    """Flatten nested parameter dicts, rendering enums by value."""
    out = {}
    for key, value in d.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            out.update(_flatten(value, prefix=f"{name}."))
        elif isinstance(value, Enum):
            out[name] = value.value
        else:
            out[name] = value
    return out


# ========================================================
# Solver State (mutated during solve)
# ========================================================


@dataclass
class NonlinearSolverState:
    """Per-instance state of a nonlinear solve, reset by every ``solve``."""

    iteration: int = 0
    norm0: float = 0.0
    resid_norm: float = float("inf")
    prev_resid_norm: float = float("inf")
    linear_tol: float = 1e-8
    linear_resid_norm: float = 0.0
    converged: bool = False
    timing: float = 0.0
    history: List[float] = field(default_factory=list)

    def reset(self, linear_tol: float):
        self.iteration = 0
        self.norm0 = 0.0
        self.resid_norm = float("inf")
        self.prev_resid_norm = float("inf")
        self.linear_tol = linear_tol
        self.linear_resid_norm = 0.0
        self.converged = False
        self.timing = 0.0
        self.history = []

    @property
    def rel_resid_norm(self) -> float:
        return self.resid_norm / self.norm0 if self.norm0 > 0 else self.resid_norm


# ========================================================
# Per-level coefficient cache
# ========================================================


@dataclass
class CoefficientState:
    """Cached nonlinear coefficient data of one level solver.

    Attributes
    ----------
    p : np.ndarray
        Piecewise-constant potential (one value per element)
    kp : np.ndarray
        Coefficient k(p)
    dkinv_dp : np.ndarray
        Derivative of 1 / k(p) with respect to p
    dMdp : list of np.ndarray
        Newton element blocks, rebuilt every Newton step
    """

    p: np.ndarray
    kp: np.ndarray
    dkinv_dp: np.ndarray
    dMdp: List[np.ndarray] = field(default_factory=list)

    @classmethod
    def allocate(cls, num_elements: int):
        return cls(
            p=np.zeros(num_elements),
            kp=np.ones(num_elements),
            dkinv_dp=np.zeros(num_elements),
        )


# ========================================================
# Metrics (Output Results)
# ========================================================


@dataclass
class Metrics:
    """Solver metrics - output results computed after solving."""

    iterations: int = 0
    converged: bool = False
    final_residual: float = float("inf")
    relative_residual: float = float("inf")
    wall_time_seconds: float = 0.0
    linear_tol: float = 0.0
    method: str = ""

    def to_dataframe(self):
        return pd.DataFrame([asdict(self)])


# ========================================================
# Time Series (Convergence History)
# ========================================================


@dataclass
class TimeSeries:
    """Convergence history (one value per residual evaluation)."""

    resid_norm: List[float]
    rel_resid_norm: List[float]
    level: Optional[int] = None

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to DataFrame with one row per iteration."""
        df = pd.DataFrame(
            {"resid_norm": self.resid_norm, "rel_resid_norm": self.rel_resid_norm}
        )
        df.index.name = "iteration"
        if self.level is not None:
            df["level"] = self.level
        return df
