"""Exceptions raised by the nonlinear multigrid framework."""


class NLMGError(Exception):
    """Base class for all framework errors."""


class ConfigurationError(NLMGError, ValueError):
    """Invalid solver configuration, detected at construction time."""
