"""
erlang.py
=========
Erlang expansion of compartments with non-exponential sojourn times.

A compartment ``C`` with shape ``k`` is replaced by the chain
``C__erlang_1 → … → C__erlang_k``.  Every stage is left at ``k`` times the
original exit rate, so the mean sojourn time through the chain is unchanged
while its distribution becomes Erlang(k) instead of exponential.

Expansion touches three things:

1. **Inputs** (:func:`make_erlang_inputs`) — initial conditions and priors
   are redistributed over the stages according to the prior mode
   (``'sum'`` or ``'each'``).
2. **Reactions** (:func:`make_erlang_reactions`) — reactions into ``C``
   enter stage 1, reactions out of ``C`` leave stage ``k``, ``k - 1``
   pass-through reactions are inserted, and every other reference to ``C``
   in a rate becomes the sum of the stages.
3. **Observations** (:func:`redirect_observations`) — means and sds
   referencing ``C`` now reference the sum of the stages.

Reactions must already be split (one target each) when
:func:`make_erlang_reactions` runs, so that each branch of a split reaction
is expanded independently.
"""

import dataclasses

import sympy as sp

from ssm_expander.errors import ErlangError
from ssm_expander.expressions import (
    divide,
    multiply,
    parse_expression,
    substitute_identifier,
    substitute_identifiers,
    to_string,
    total,
)
from ssm_expander.model import Input, Reaction
from ssm_expander.naming import qualify_for_erlang_stage


ERLANG_PRIOR_MODES = ("sum", "each")


def _noop(message, depth=0):
    pass


def erlang_stage_names(name, shape):
    """Return the ``shape`` stage names of compartment ``name``."""
    return [qualify_for_erlang_stage(name, i) for i in range(1, shape + 1)]


def check_erlang(shapes, priors, state_variables):
    """Validate and normalise flat Erlang shape / prior-mode maps.

    Parameters
    ----------
    shapes : dict
        State variable → integer shape.  Shapes of 1 are dropped.
    priors : dict
        State variable → ``'sum'`` or ``'each'``.  Entries for states that
        are not expanded are ignored; missing entries default to ``'sum'``.
    state_variables : list of str
        State variables derived from the reactions.

    Returns
    -------
    (dict, dict)
        The shapes (all ≥ 2) and the prior mode of each expanded state.

    Raises
    ------
    ErlangError
        For non-integer or non-positive shapes, names that are not state
        variables, or unknown prior modes.
    """
    checked = {}
    for name, shape in (shapes or {}).items():
        if isinstance(shape, bool) or not isinstance(shape, int) or shape < 1:
            raise ErlangError(f"Erlang shape of {name!r} must be an integer >= 1, got {shape!r}")
        if shape > 1:
            checked[name] = shape

    if not checked:
        return {}, {}

    unknown = [name for name in checked if name not in state_variables]
    if unknown:
        raise ErlangError(
            f"The following elements of erlang shapes are not state variables: {unknown}"
        )

    priors = {name: mode for name, mode in (priors or {}).items() if name in checked}
    unknown = [name for name in priors if name not in state_variables]
    if unknown:
        raise ErlangError(
            f"The following elements of erlang priors are not state variables: {unknown}"
        )
    bad = {name: mode for name, mode in priors.items() if mode not in ERLANG_PRIOR_MODES}
    if bad:
        raise ErlangError(
            f"Unknown erlang prior mode(s) {bad}, expected one of {ERLANG_PRIOR_MODES}"
        )

    modes = {name: priors.get(name, "sum") for name in checked}
    return checked, modes


# ======================================================================
# Inputs
# ======================================================================

def make_erlang_inputs(inputs, shapes, priors, log=_noop):
    """Split the inputs of Erlang compartments into one input per stage.

    - ``'sum'`` — the original input is kept and still carries the prior /
      value of the *total* occupancy; each stage gets the transformation
      ``C/k`` so the total is split equally.
    - ``'each'`` — the original input is replaced by ``k`` stage inputs,
      each with an identical copy of its prior, value and transformation.
      Transformations of other inputs that referenced it now reference the
      sum of the stages.

    Raises
    ------
    ErlangError
        If an expanded compartment has no input or is the remainder.
    """
    names = {inp.name for inp in inputs}
    missing = [name for name in shapes if name not in names]
    if missing:
        raise ErlangError(f"Erlang compartment(s) {missing} have no corresponding input")

    expanded = []
    for inp in inputs:
        shape = shapes.get(inp.name)
        if shape is None:
            expanded.append(inp)
            continue
        if inp.tag == "remainder":
            raise ErlangError(f"The remainder compartment {inp.name!r} cannot be Erlang-expanded")

        mode = priors.get(inp.name, "sum")
        stages = erlang_stage_names(inp.name, shape)
        log(f"Erlang input '{inp.name}' → {shape} stages (prior mode '{mode}')", 1)

        if mode == "sum":
            expanded.append(inp)
            for i, stage in enumerate(stages, start=1):
                expanded.append(Input(
                    name=stage,
                    description=_stage_description(inp.description, i, shape),
                    transformation=divide(inp.name, shape),
                ))
        else:
            for i, stage in enumerate(stages, start=1):
                expanded.append(dataclasses.replace(
                    inp,
                    name=stage,
                    description=_stage_description(inp.description, i, shape),
                ))

    # 'each' removes the compartment input; other inputs see the stage sum
    removed = {
        name: total(erlang_stage_names(name, shape))
        for name, shape in shapes.items()
        if priors.get(name, "sum") == "each"
    }
    if removed:
        expanded = [
            dataclasses.replace(
                inp, transformation=substitute_identifiers(inp.transformation, removed),
            )
            for inp in expanded
        ]
    return expanded


def _stage_description(description, stage, shape):
    suffix = f"erlang stage {stage}/{shape}"
    return f"{description} ({suffix})" if description else suffix


# ======================================================================
# Reactions
# ======================================================================

def exit_rate(outgoing):
    """Total per-capita rate at which mass leaves a compartment.

    Branches of one split reaction share a base rate and count once; rates
    of ``linear`` reactions are fluxes and are divided by the source first.
    """
    seen = set()
    rate = sp.Integer(0)
    for reaction in outgoing:
        if reaction.split_group is not None:
            if reaction.split_group in seen:
                continue
            seen.add(reaction.split_group)
        term = reaction.scalar_rate
        if reaction.has_keyword("linear"):
            term = divide(term, reaction.from_)
        rate = rate + parse_expression(term)
    return to_string(rate)


def make_erlang_reactions(reactions, shapes, log=_noop):
    """Rewire reactions around Erlang-expanded compartments.

    For each compartment ``C`` with shape ``k``:

    - reactions entering ``C`` now enter ``C__erlang_1``;
    - reactions leaving ``C`` now leave ``C__erlang_k`` at ``k`` times their
      rate;
    - ``k - 1`` pass-through reactions ``C__erlang_i → C__erlang_{i+1}``
      with rate ``k * exit_rate(C)`` are inserted before the first reaction
      leaving ``C``;
    - every reference to ``C`` inside a rate or a white-noise sd becomes
      ``C__erlang_1 + … + C__erlang_k``.

    Parameters
    ----------
    reactions : list of Reaction
        Single-target reactions with resolved rates.
    shapes : dict
        Compartment → shape (≥ 2).

    Returns
    -------
    list of Reaction

    Raises
    ------
    ErlangError
        If an expanded compartment has no outgoing reaction.
    """
    for name, shape in shapes.items():
        stages = erlang_stage_names(name, shape)
        outgoing = [r for r in reactions if r.from_ == name]
        if not outgoing:
            raise ErlangError(
                f"Erlang compartment {name!r} has no outgoing reaction to scale"
            )

        through_rate = multiply(shape, exit_rate(outgoing))
        log(f"Erlang chain '{name}': {shape} stages, pass-through rate {through_rate}", 1)
        pass_through = [
            Reaction(
                from_=stages[i],
                to=stages[i + 1],
                rate=through_rate,
                description=f"erlang {name} {i + 1} -> {i + 2}",
            )
            for i in range(shape - 1)
        ]

        rewired = []
        for reaction in reactions:
            if reaction is outgoing[0]:
                rewired.extend(pass_through)
            changes = {}
            if reaction.from_ == name:
                changes["from_"] = stages[-1]
                rate = multiply(shape, reaction.scalar_rate)
                if reaction.has_keyword("linear"):
                    # a flux out of the chain is carried by the last stage only
                    rate = substitute_identifier(rate, name, stages[-1])
                changes["rate"] = rate
            if reaction.to == name:
                changes["to"] = stages[0]
            rewired.append(dataclasses.replace(reaction, **changes) if changes else reaction)

        reactions = [_redirect_reaction(r, {name: total(stages)}) for r in rewired]
    return reactions


def _redirect_reaction(reaction, mapping):
    changes = {"rate": substitute_identifiers(reaction.scalar_rate, mapping)}
    if reaction.white_noise is not None:
        changes["white_noise"] = dataclasses.replace(
            reaction.white_noise,
            sd=substitute_identifiers(reaction.white_noise.sd, mapping),
        )
    return dataclasses.replace(reaction, **changes)


# ======================================================================
# Observations
# ======================================================================

def redirect_observations(observations, shapes):
    """Make observations of an Erlang compartment observe the sum of its stages."""
    mapping = {name: total(erlang_stage_names(name, shape)) for name, shape in shapes.items()}
    if not mapping:
        return list(observations)
    return [
        dataclasses.replace(
            obs,
            mean=substitute_identifiers(obs.mean, mapping),
            sd=substitute_identifiers(obs.sd, mapping),
        )
        for obs in observations
    ]
