import warnings

from pandera.errors import SchemaError


class LifeHistoryError(Exception):
    """Base class for errors raised by the life-history models."""


class SpecificationError(LifeHistoryError):
    """A model, prior set or prediction request is inconsistent."""


class UnsupportedPredictionError(SpecificationError):
    """Fixed-effect-only prediction requested on a model without species effects."""


class ConvergenceWarning(UserWarning):
    """Sampler diagnostics suggest the chains may not have converged."""


def warn_convergence(message: str):
    warnings.warn(message, ConvergenceWarning, stacklevel=3)


__all__ = [
    "SchemaError",
    "LifeHistoryError",
    "SpecificationError",
    "UnsupportedPredictionError",
    "ConvergenceWarning",
    "warn_convergence",
]
