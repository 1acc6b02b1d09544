"""Build solver parameters from dictionaries or OmegaConf configs.

The dataclasses in ``datastructures`` are the schema. User configs are merged
onto ``OmegaConf.structured`` copies of them so that unknown keys and values of
the wrong type are rejected before any solver is constructed.
"""

import logging
from enum import Enum
from typing import Any, Mapping, Optional, Type, TypeVar

from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException

from .datastructures import (
    Cycle,
    FASParameters,
    LinearTolCriterion,
    Linearization,
    NLSolverParameters,
)
from .exceptions import ConfigurationError

log = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

_ENUM_KEYS = {
    "linearization": Linearization,
    "cycle": Cycle,
    "linear_tol_criterion": LinearTolCriterion,
}


def coerce_enum(enum_cls: Type[E], value: Any, name: str) -> E:
    """Convert ``value`` (member, value or name, case-insensitive) to ``enum_cls``."""
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip()
    for member in enum_cls:
        if text.lower() == member.value or text.upper() == member.name:
            return member
    choices = ", ".join(m.value for m in enum_cls)
    raise ConfigurationError(f"Unknown {name} '{value}' (expected one of: {choices})")


def _normalize_enums(cfg: Any) -> Any:
    """Rewrite enum-valued keys to member names, which OmegaConf validates."""
    if not isinstance(cfg, Mapping):
        return cfg
    out = {}
    for key, value in cfg.items():
        if isinstance(value, Mapping):
            out[key] = _normalize_enums(value)
        elif key in _ENUM_KEYS and value is not None:
            out[key] = coerce_enum(_ENUM_KEYS[key], value, key).name
        else:
            out[key] = value
    return out


def _to_dict(cfg) -> dict:
    if cfg is None:
        return {}
    if isinstance(cfg, DictConfig):
        return OmegaConf.to_container(cfg, resolve=True)
    return dict(cfg)


def _merge(schema_cls, cfg, overrides):
    schema = OmegaConf.structured(schema_cls)
    try:
        merged = OmegaConf.merge(
            schema, _normalize_enums(_to_dict(cfg)), _normalize_enums(overrides)
        )
        return OmegaConf.to_object(merged)
    except OmegaConfBaseException as exc:
        raise ConfigurationError(f"Invalid {schema_cls.__name__}: {exc}") from exc


def validate_solver_parameters(params: NLSolverParameters, name: str = "nl_solve"):
    """Range checks that the structured schema cannot express."""
    if params.max_num_iter < 0:
        raise ConfigurationError(f"{name}.max_num_iter must be >= 0")
    if params.max_num_backtrack < 0:
        raise ConfigurationError(f"{name}.max_num_backtrack must be >= 0")
    if params.rtol < 0 or params.atol < 0:
        raise ConfigurationError(f"{name}: tolerances must be non-negative")
    if params.min_linear_tol <= 0 or params.init_linear_tol <= 0:
        raise ConfigurationError(f"{name}: linear tolerances must be positive")
    if params.coef_floor <= 0:
        raise ConfigurationError(f"{name}.coef_floor must be positive")


def validate_parameters(params: FASParameters):
    if params.num_levels < 1:
        raise ConfigurationError(f"num_levels must be >= 1, got {params.num_levels}")
    for key in ("num_relax_fine", "num_relax_mid", "num_relax_coarse"):
        if getattr(params, key) < 0:
            raise ConfigurationError(f"{key} must be >= 0")
    if params.coarse_correct_tol < 0:
        raise ConfigurationError("coarse_correct_tol must be >= 0")
    for key in ("nl_solve", "fine", "mid", "coarse"):
        validate_solver_parameters(getattr(params, key), name=key)


def load_solver_parameters(
    cfg: Optional[Mapping] = None, **overrides
) -> NLSolverParameters:
    """Build validated ``NLSolverParameters`` from a dict or DictConfig."""
    params = _merge(NLSolverParameters, cfg, overrides)
    validate_solver_parameters(params)
    return params


def load_parameters(cfg: Optional[Mapping] = None, **overrides) -> FASParameters:
    """Build validated ``FASParameters`` from a dict or DictConfig.

    Parameters
    ----------
    cfg : dict or DictConfig, optional
        Nested configuration, e.g. ``{"cycle": "fmg", "fine": {"max_num_backtrack": 4}}``
    **overrides
        Top-level keys applied after ``cfg``

    Returns
    -------
    FASParameters

    Raises
    ------
    ConfigurationError
        Unknown keys, wrong types, unknown enum values or out-of-range values
    """
    params = _merge(FASParameters, cfg, overrides)
    validate_parameters(params)
    log.debug(f"Loaded FAS parameters: {params}")
    return params
