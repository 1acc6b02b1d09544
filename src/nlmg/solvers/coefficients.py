"""Nonlinear coefficient models k(p) and their inverse derivatives.

All models act element-wise on piecewise-constant potential values. Besides
k(p) a model provides d(1/k)/dp (Newton linearization) and the largest
potential change per step allowed by a percentage-change tolerance
(backtracking clamp).
"""

from abc import ABC, abstractmethod
import logging
from typing import List, Optional, Sequence

import numpy as np

from ..operators.base import LevelTransfer, LinearLevelOperator

log = logging.getLogger(__name__)


class CoefficientModel(ABC):
    """Element-wise nonlinear coefficient k(p)."""

    def __call__(self, p: np.ndarray) -> np.ndarray:
        return self.evaluate(p)

    @abstractmethod
    def evaluate(self, p: np.ndarray) -> np.ndarray:
        """Coefficient k(p)."""
        pass

    @abstractmethod
    def dkinv_dp(self, p: np.ndarray) -> np.ndarray:
        """Derivative of 1 / k(p) with respect to p."""
        pass

    def max_potential_change(self, diff_tol: float) -> Optional[float]:
        """Largest |dp| per step, or None when the clamp is disabled."""
        return None


class ConstantCoefficient(CoefficientModel):
    """k(p) = value (linear problem)."""

    def __init__(self, value: float = 1.0):
        self.value = value

    def evaluate(self, p):
        return np.full_like(p, self.value, dtype=float)

    def dkinv_dp(self, p):
        return np.zeros_like(p, dtype=float)


class ExponentialCoefficient(CoefficientModel):
    """k(p) = exp(alpha p)."""

    def __init__(self, alpha: float = 1.0):
        self.alpha = alpha

    def evaluate(self, p):
        return np.exp(self.alpha * p)

    def dkinv_dp(self, p):
        return -self.alpha * np.exp(-self.alpha * p)

    def max_potential_change(self, diff_tol):
        return _log_change_threshold(diff_tol, self.alpha)


class RichardsCoefficient(CoefficientModel):
    """Gardner-type relative permeability for Richards' equation.

    k(p) = K_s alpha / (alpha + |p - Z|^beta), with Z the element elevation.
    Defaults are the loam parameters.

    Parameters
    ----------
    elevation : np.ndarray
        Elevation Z per element
    alpha, beta, k_s : float
        Soil parameters
    """

    def __init__(
        self,
        elevation: np.ndarray,
        alpha: float = 124.6,
        beta: float = 1.77,
        k_s: float = 1.067,
    ):
        self.elevation = np.asarray(elevation, dtype=float)
        self.alpha = alpha
        self.beta = beta
        self.k_s = k_s

    def evaluate(self, p):
        head = np.abs(p - self.elevation)
        return self.k_s * self.alpha / (self.alpha + head**self.beta)

    def dkinv_dp(self, p):
        diff = p - self.elevation
        return (
            np.sign(diff)
            * self.beta
            / (self.k_s * self.alpha)
            * np.abs(diff) ** (self.beta - 1.0)
        )

    def max_potential_change(self, diff_tol):
        return _log_change_threshold(diff_tol, self.alpha)


def _log_change_threshold(diff_tol: float, alpha: float) -> Optional[float]:
    # k changes by roughly a factor diff_tol when |dp| <= log(diff_tol) / |alpha|
    if diff_tol <= 1.0 or alpha == 0.0:
        return None
    return float(np.log(diff_tol) / abs(alpha))


def richards_hierarchy(
    elevation: np.ndarray,
    operators: Sequence[LinearLevelOperator],
    transfer: LevelTransfer,
    **kwargs,
) -> List[RichardsCoefficient]:
    """One Richards model per level with the elevation carried down the hierarchy.

    Parameters
    ----------
    elevation : np.ndarray
        Elevation on the finest level's potential dofs
    operators : sequence of LinearLevelOperator
        Level operators (finest first)
    transfer : LevelTransfer
        Projects the elevation between levels
    **kwargs
        Forwarded to ``RichardsCoefficient``
    """
    models = []
    potential = np.asarray(elevation, dtype=float)
    for level, op in enumerate(operators):
        if level > 0:
            prev = operators[level - 1]
            full = np.zeros(prev.size)
            full[prev.offsets[1] : prev.offsets[2]] = potential
            potential = transfer.project(level - 1, full)[op.offsets[1] : op.offsets[2]]
        models.append(RichardsCoefficient(op.pw_const_project(potential), **kwargs))
    return models


def clamp_coefficient(kp: np.ndarray, floor: float, tag: str = "") -> np.ndarray:
    """Replace NaN or values below ``floor`` by ``floor`` (in place)."""
    bad = np.isnan(kp) | (kp < floor)
    if np.any(bad):
        log.warning(
            f"{tag}: {int(bad.sum())} coefficient values non-finite or below "
            f"{floor:.1e}, clamped"
        )
        kp[bad] = floor
    return kp
