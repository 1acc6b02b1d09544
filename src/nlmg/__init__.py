"""Nonlinear multilevel solver framework.

Solves nonlinear diffusion problems -div(k0 k(p) grad p) = f in mixed form
with inexact Newton / Picard iteration and FAS nonlinear multigrid.

Solver Hierarchy:
-----------------
NonlinearSolver (abstract base - outer loop, linear tolerance, results)
├── LevelSolver (Picard / Newton / exact evaluation on one level)
└── FASSolver (FAS V-cycle / FMG over a hierarchy of LevelSolvers)
"""

from .base_solver import NonlinearSolver
from .config import load_parameters, load_solver_parameters
from .datastructures import (
    # Configuration
    NLSolverParameters,
    FASParameters,
    Linearization,
    Cycle,
    LinearTolCriterion,
    StepKind,
    # State and results
    NonlinearSolverState,
    CoefficientState,
    Metrics,
    TimeSeries,
)
from .exceptions import NLMGError, ConfigurationError
from .reduction import Reduction, SerialReduction, MPIReduction
from .solvers import (
    LevelSolver,
    FASSolver,
    FASLevel,
    CoefficientModel,
    ConstantCoefficient,
    ExponentialCoefficient,
    RichardsCoefficient,
)

__all__ = [
    # Solvers
    "NonlinearSolver",
    "LevelSolver",
    "FASSolver",
    "FASLevel",
    # Configuration
    "NLSolverParameters",
    "FASParameters",
    "Linearization",
    "Cycle",
    "LinearTolCriterion",
    "StepKind",
    "load_parameters",
    "load_solver_parameters",
    # State and results
    "NonlinearSolverState",
    "CoefficientState",
    "Metrics",
    "TimeSeries",
    # Coefficients
    "CoefficientModel",
    "ConstantCoefficient",
    "ExponentialCoefficient",
    "RichardsCoefficient",
    # Reductions
    "Reduction",
    "SerialReduction",
    "MPIReduction",
    # Errors
    "NLMGError",
    "ConfigurationError",
]
