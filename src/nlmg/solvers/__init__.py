"""Level solver, FAS driver and coefficient models."""

from .coefficients import (
    CoefficientModel,
    ConstantCoefficient,
    ExponentialCoefficient,
    RichardsCoefficient,
    clamp_coefficient,
    richards_hierarchy,
)
from .level_solver import LevelSolver
from .fas import FASSolver, FASLevel, build_fas_levels

__all__ = [
    "CoefficientModel",
    "ConstantCoefficient",
    "ExponentialCoefficient",
    "RichardsCoefficient",
    "clamp_coefficient",
    "richards_hierarchy",
    "LevelSolver",
    "FASSolver",
    "FASLevel",
    "build_fas_levels",
]
