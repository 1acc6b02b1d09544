"""Level operators and inter-level transfers."""

from .base import LinearLevelOperator, LevelTransfer
from .mixed_graph import MixedGraphOperator
from .transfer_operators import IdentityTransfer, MatrixTransfer

__all__ = [
    "LinearLevelOperator",
    "LevelTransfer",
    "MixedGraphOperator",
    "IdentityTransfer",
    "MatrixTransfer",
]
