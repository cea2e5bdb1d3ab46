"""
model.py
========
Immutable value records describing a user-authored compartmental model.

A model is three lists — :class:`Input`, :class:`Reaction` and
:class:`Observation` — plus an optional :class:`ErlangSpec`.  Records are
frozen dataclasses: every pipeline stage builds new records with
``dataclasses.replace`` and never mutates one it was handed.

Fields that may differ between populations (``Input.value``,
``Input.prior`` and ``Reaction.rate``) hold a tagged variant, either
:class:`Scalar` (one value for every population) or :class:`PerPopulation`
(one value per population label).  Bare values and dicts passed to the
constructors are coerced automatically, so both of these work::

    Input(name='R', value=0)
    Input(name='R', value={'city1': 0, 'city2': 10})
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from ssm_expander.errors import ModelSpecificationError, StratificationError


UNIVERSE = "U"
"""Pseudo-compartment for mass entering or leaving the system."""

INPUT_TAGS = ("pop_size", "remainder")
REACTION_KEYWORDS = ("linear", "while_from_is_positive")
SDE_TRANSFORMATIONS = ("none", "log")


# ======================================================================
# Scalar | PerPopulation
# ======================================================================

@dataclass(frozen=True)
class Scalar:
    """A value shared by every population."""

    value: Any

    def resolve(self, population=None, owner=None):
        return self.value

    def map(self, func):
        return Scalar(func(self.value))


@dataclass(frozen=True)
class PerPopulation:
    """One value per population label."""

    values: dict

    def resolve(self, population, owner=None):
        """Return the entry for ``population``.

        Raises
        ------
        StratificationError
            If there is no entry for ``population``.
        """
        if population not in self.values:
            raise StratificationError(
                f"No entry for population {population!r} in {owner or 'keyed value'} "
                f"(available: {sorted(self.values)})"
            )
        return self.values[population]

    def map(self, func):
        return PerPopulation({pop: func(v) for pop, v in self.values.items()})


def as_keyed(value, convert=None):
    """Coerce ``value`` into a :class:`Scalar` or :class:`PerPopulation`.

    ``None`` stays ``None``; dicts become :class:`PerPopulation`.  The
    optional ``convert`` callable is applied to every leaf value.
    """
    if value is None or isinstance(value, (Scalar, PerPopulation)):
        return value
    if convert is None:
        convert = _identity
    if isinstance(value, dict):
        return PerPopulation({pop: convert(v) for pop, v in value.items()})
    return Scalar(convert(value))


def _identity(x):
    return x


def _as_tuple(value):
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


# ======================================================================
# Priors and stochastic annexes
# ======================================================================

@dataclass(frozen=True)
class Prior:
    """A prior distribution: a name plus its parameters."""

    dist: str
    params: dict = field(default_factory=dict)

    @property
    def is_dirac(self):
        return self.dist == "dirac"


def unif(min, max):
    return Prior("unif", {"min": min, "max": max})


def normal(mean, sd):
    return Prior("normal", {"mean": mean, "sd": sd})


def truncnorm(mean, sd, a=None, b=None):
    """Normal distribution truncated to ``[a, b]`` (open ends when None)."""
    params = {"mean": mean, "sd": sd}
    if a is not None:
        params["a"] = a
    if b is not None:
        params["b"] = b
    return Prior("truncnorm", params)


def dirac(value):
    """A fixed value: written to the prior store, never estimated."""
    return Prior("dirac", {"value": value})


@dataclass(frozen=True)
class Diffusion:
    """Environmental stochasticity on an input (random walk on its value)."""

    volatility: str
    transformation: str = "none"

    def __post_init__(self):
        if self.transformation not in SDE_TRANSFORMATIONS:
            raise ModelSpecificationError(
                f"Unknown sde transformation {self.transformation!r}, "
                f"expected one of {SDE_TRANSFORMATIONS}"
            )


def diffusion(volatility, transformation="none"):
    return Diffusion(str(volatility), transformation)


@dataclass(frozen=True)
class WhiteNoise:
    """Multiplicative white noise on a reaction rate."""

    name: str
    sd: str


# ======================================================================
# Model elements
# ======================================================================

@dataclass(frozen=True)
class Input:
    """A named quantity: parameter, initial condition or population size.

    Parameters
    ----------
    name : str
    description : str
    value : scalar, dict or Scalar/PerPopulation, optional
        Known value.  A list/tuple is only valid with exactly one element.
    prior : Prior, dict of Prior or Scalar/PerPopulation, optional
    transformation : str, optional
        Expression over other input names defining this input.
    tag : {'pop_size', 'remainder'}, optional
    sde : Diffusion, optional
    forced_input : any, optional
        Opaque external time series, handed through untouched.
    """

    name: str
    description: str = ""
    value: Any = None
    prior: Any = None
    transformation: Optional[str] = None
    tag: Optional[str] = None
    sde: Optional[Diffusion] = None
    forced_input: Any = None

    def __post_init__(self):
        object.__setattr__(self, "value", as_keyed(self.value))
        object.__setattr__(self, "prior", as_keyed(self.prior))
        if self.transformation is not None:
            object.__setattr__(self, "transformation", str(self.transformation))
        if self.tag is not None and self.tag not in INPUT_TAGS:
            raise ModelSpecificationError(
                f"Unknown tag {self.tag!r} on input {self.name!r}, expected one of {INPUT_TAGS}"
            )
        for prior in _leaves(self.prior):
            if not isinstance(prior, Prior):
                raise ModelSpecificationError(
                    f"Prior of input {self.name!r} must be a Prior, got {prior!r}"
                )

    @property
    def scalar_value(self):
        """The resolved value (None if undeclared)."""
        return _unwrap(self.value, self.name, "value")

    @property
    def scalar_prior(self):
        """The resolved :class:`Prior` (None if undeclared)."""
        return _unwrap(self.prior, self.name, "prior")


@dataclass(frozen=True)
class Reaction:
    """A transition from one compartment to one or several others.

    Parameters
    ----------
    from_ : str
        Source compartment (``'U'`` for births / immigration).
    to : str or dict
        Target compartment, or a mapping target → branch-weight expression
        for a reaction splitting its flow.
    rate : str, number, dict or Scalar/PerPopulation
        Per-capita rate expression.
    accumulators : str or sequence of str
        Names accumulating the flow (e.g. cumulative incidence).
    white_noise : WhiteNoise, optional
    keywords : str or sequence of str
        ``'linear'`` and/or ``'while_from_is_positive'``.
    split, split_group : str, optional
        Set by reaction splitting: the branch weight still to be applied and
        an identifier shared by all branches of one original reaction.
    """

    from_: str
    to: Any
    rate: Any
    description: str = ""
    accumulators: tuple = ()
    white_noise: Optional[WhiteNoise] = None
    keywords: tuple = ()
    split: Optional[str] = None
    split_group: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "rate", as_keyed(self.rate, str))
        object.__setattr__(self, "accumulators", _as_tuple(self.accumulators))
        object.__setattr__(self, "keywords", _as_tuple(self.keywords))
        if isinstance(self.to, dict):
            object.__setattr__(self, "to", {str(k): str(v) for k, v in self.to.items()})
        elif not isinstance(self.to, str):
            raise ModelSpecificationError(
                f"Reaction from {self.from_!r}: 'to' must be a name or a "
                f"mapping target -> weight, got {self.to!r}"
            )
        unknown = set(self.keywords) - set(REACTION_KEYWORDS)
        if unknown:
            raise ModelSpecificationError(
                f"Unknown keyword(s) {sorted(unknown)} on reaction from {self.from_!r}"
            )

    @property
    def targets(self):
        if isinstance(self.to, dict):
            return list(self.to)
        return [self.to]

    def has_keyword(self, keyword):
        return keyword in self.keywords

    @property
    def scalar_rate(self):
        return _unwrap(self.rate, f"{self.from_} -> {self.to}", "rate")


@dataclass(frozen=True)
class Observation:
    """An observation process linking a model quantity to a data series."""

    name: str
    mean: str
    sd: Optional[str] = None
    distribution: str = "discretized_normal"
    start: Optional[str] = None


def discretized_normal_obs(name, mean, sd):
    return Observation(name=name, mean=str(mean), sd=str(sd))


def poisson_obs(state, reporting, name=None):
    """Poisson-like reporting of ``state`` at rate ``reporting``."""
    mean = f"{reporting}*{state}"
    return Observation(name=name or state, mean=mean, sd=f"sqrt({mean})")


def overdispersed_poisson_obs(state, reporting, overdispersion, name=None):
    """Reporting with extra-Poisson variance ``(reporting*overdispersion*state)**2``."""
    mean = f"{reporting}*{state}"
    sd = f"sqrt({mean} + ({reporting}*{overdispersion}*{state})**2)"
    return Observation(name=name or state, mean=mean, sd=sd)


@dataclass(frozen=True)
class ErlangSpec:
    """Erlang sojourn times.

    ``shapes`` maps state → shape, or population → {state → shape} when the
    shapes differ between populations.  ``priors`` maps state → ``'sum'`` or
    ``'each'`` (default ``'sum'``), with the same optional population keys.
    """

    shapes: Any = field(default_factory=dict)
    priors: Any = field(default_factory=dict)


def _unwrap(keyed, name, what):
    if keyed is None:
        return None
    if isinstance(keyed, PerPopulation):
        raise StratificationError(
            f"The {what} of {name!r} is still keyed by population {sorted(keyed.values)}"
        )
    return keyed.value


def _leaves(keyed):
    if keyed is None:
        return []
    if isinstance(keyed, Scalar):
        return [keyed.value]
    return list(keyed.values.values())
