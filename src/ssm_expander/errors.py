"""
errors.py
=========
Exceptions raised while expanding a model.

Every error in this package is a configuration error in the user-authored
model: the expansion is a one-shot transform, so nothing is retried and no
partial result is returned.  Messages always name the offending
identifier(s).
"""


class ModelSpecificationError(ValueError):
    """Base class for invalid user-authored model descriptions."""


class NamingError(ModelSpecificationError):
    """An identifier or population label clashes with the reserved markers."""


class ExpressionError(ModelSpecificationError):
    """A rate / mean / sd / transformation expression cannot be parsed."""


class ErlangError(ModelSpecificationError):
    """Invalid Erlang shapes or prior modes."""


class StratificationError(ModelSpecificationError):
    """Inputs, rates or values that cannot be resolved per population."""


class ReactionError(ModelSpecificationError):
    """A reaction that cannot be normalised (bad targets, weights, rates)."""


class PipelineError(RuntimeError):
    """A pipeline stage was invoked out of order."""
