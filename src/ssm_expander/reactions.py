"""
reactions.py
============
Normalisation of reactions into the single-target form SSM expects.

Stages, in pipeline order:

1. :func:`split_reactions`          — one reaction per target of a
   branching reaction; the branch weight is kept aside in ``split``.
2. :func:`apply_split_rates`        — after Erlang expansion, each branch
   rate becomes ``weight * rate``.
3. :func:`apply_linear_correction`  — ``linear`` rates are fluxes; SSM
   multiplies every rate by its source, so they are divided by it.
4. :func:`apply_positivity_guard`   — ``while_from_is_positive`` rates are
   multiplied by ``heaviside(from - 1)``.
5. :func:`simplify_rates`           — batch symbolic simplification.
6. :func:`substitute_remainder`     — references to the remainder
   compartment become ``pop_size - (sum of the other compartments)``.

The module also derives the state variables and the SSM population blocks
used by step 6.
"""

import dataclasses

import sympy as sp

from ssm_expander.errors import ModelSpecificationError, ReactionError
from ssm_expander.expressions import (
    divide,
    multiply,
    simplify,
    substitute_identifiers,
    to_string,
)
from ssm_expander.model import UNIVERSE, PerPopulation
from ssm_expander.naming import population_of


def _noop(message, depth=0):
    pass


# ======================================================================
# Splitting
# ======================================================================

def split_reaction(reaction, group):
    """Split a branching reaction into one reaction per target.

    Each branch inherits ``from_``, ``rate``, ``description``,
    ``accumulators``, ``white_noise`` and ``keywords``; its weight is stored
    in ``split`` and all branches share ``split_group``.  The weight is
    applied later by :func:`apply_split_rates`.

    Reactions with a single (unweighted) target are returned unchanged.
    """
    if not isinstance(reaction.to, dict):
        return [reaction]
    if not reaction.to:
        raise ReactionError(f"Reaction from {reaction.from_!r} has no target")
    return [
        dataclasses.replace(reaction, to=target, split=weight, split_group=str(group))
        for target, weight in reaction.to.items()
    ]


def split_reactions(reactions, log=_noop):
    split = []
    for i, reaction in enumerate(reactions):
        branches = split_reaction(reaction, i)
        if len(branches) > 1:
            log(f"Split reaction {reaction.from_} -> {list(reaction.to)}", 1)
        split.extend(branches)
    return split


def apply_split_rates(reactions):
    """Multiply each branch rate by its weight and drop the split markers."""
    applied = []
    for reaction in reactions:
        if reaction.split is None:
            applied.append(reaction)
            continue
        applied.append(dataclasses.replace(
            reaction,
            rate=multiply(reaction.scalar_rate, reaction.split),
            split=None,
            split_group=None,
        ))
    return applied


# ======================================================================
# Rate corrections
# ======================================================================

def apply_linear_correction(reactions):
    """Divide the rate of ``linear`` reactions by their source compartment."""
    return [
        dataclasses.replace(reaction, rate=divide(reaction.scalar_rate, reaction.from_))
        if reaction.has_keyword("linear") else reaction
        for reaction in reactions
    ]


def apply_positivity_guard(reactions):
    """Guard ``while_from_is_positive`` reactions with ``heaviside(from - 1)``.

    Returns
    -------
    (list of Reaction, bool)
        The reactions and whether any guard was injected.  A guard puts a
        state variable inside a special function, which the downstream
        compiler has to special-case.
    """
    guarded = []
    for reaction in reactions:
        if reaction.has_keyword("while_from_is_positive"):
            reaction = dataclasses.replace(
                reaction,
                rate=multiply(reaction.scalar_rate, f"heaviside({reaction.from_} - 1)"),
            )
        guarded.append(reaction)
    flag = any(r.has_keyword("while_from_is_positive") for r in reactions)
    return guarded, flag


def simplify_rates(reactions, known_identifiers, log=_noop):
    rates = simplify(
        [r.scalar_rate for r in reactions], known_identifiers,
        log=lambda message: log(message, 2),
    )
    return [dataclasses.replace(r, rate=rate) for r, rate in zip(reactions, rates)]


def check_single_target(reactions):
    """Raise unless every reaction has exactly one target and a resolved rate."""
    for reaction in reactions:
        if (not isinstance(reaction.to, str) or reaction.split is not None
                or isinstance(reaction.rate, PerPopulation)):
            raise ReactionError(
                f"Reaction {reaction.from_} -> {reaction.to} is not normalised"
            )


# ======================================================================
# State variables and populations
# ======================================================================

def get_state_variables(reactions):
    """Compartments appearing as source or target, in order of appearance.

    The universe pseudo-compartment ``'U'`` is excluded.
    """
    states = []
    for reaction in reactions:
        for name in [reaction.from_] + reaction.targets:
            if name != UNIVERSE and name not in states:
                states.append(name)
    return states


def make_populations(state_variables, inputs, populations=None, shared_label="all"):
    """Build the SSM population blocks.

    Parameters
    ----------
    state_variables : list of str
    inputs : list of Input
        Used to find the ``remainder`` and ``pop_size`` tagged inputs.
    populations : list of str, optional
        Population labels of a stratified model.  Unstratified models have a
        single block named ``shared_label``.
    shared_label : str
        Name of the block holding the states of an unstratified model, or
        the unqualified states of a stratified one.

    Returns
    -------
    list of dict
        ``{'name', 'composition'}`` plus ``'remainder': {'name',
        'pop_size'}`` when the population has a remainder compartment.

    Raises
    ------
    ModelSpecificationError
        If a population has several remainders, or a remainder without a
        ``pop_size`` input.
    """
    def owner(name):
        return population_of(name) if populations else None

    remainders = [inp.name for inp in inputs if inp.tag == "remainder"]
    pop_sizes = [inp.name for inp in inputs if inp.tag == "pop_size"]

    labels = list(populations or [])
    if not populations or any(owner(s) is None for s in state_variables):
        labels.append(shared_label)

    blocks = []
    for label in labels:
        key = None if label == shared_label else label
        composition = [s for s in state_variables if owner(s) == key]
        if not composition:
            continue
        block = {'name': label, 'composition': composition}

        remainder = [r for r in remainders if r in composition]
        if len(remainder) > 1:
            raise ModelSpecificationError(
                f"Population {label!r} has several remainder compartments: {remainder}"
            )
        if remainder:
            size = [p for p in pop_sizes if owner(p) == key] or \
                [p for p in pop_sizes if owner(p) is None]
            if len(size) != 1:
                raise ModelSpecificationError(
                    f"Remainder {remainder[0]!r} needs exactly one 'pop_size' input "
                    f"for population {label!r}, found {size}"
                )
            block['remainder'] = {'name': remainder[0], 'pop_size': size[0]}
        blocks.append(block)
    return blocks


def remainder_expression(block):
    """Return ``pop_size - (sum of the other compartments)`` for a block."""
    remainder = block['remainder']
    others = [s for s in block['composition'] if s != remainder['name']]
    expr = sp.Symbol(remainder['pop_size']) - sp.Add(*[sp.Symbol(s) for s in others])
    return to_string(expr)


def substitute_remainder(reactions, population_blocks, log=_noop):
    """Replace remainder compartments in rates by their algebraic complement."""
    mapping = {
        block['remainder']['name']: remainder_expression(block)
        for block in population_blocks
        if 'remainder' in block
    }
    for name, expr in mapping.items():
        log(f"Remainder '{name}' → {expr}", 1)
    if not mapping:
        return list(reactions)
    return [
        dataclasses.replace(r, rate=substitute_identifiers(r.scalar_rate, mapping))
        for r in reactions
    ]
