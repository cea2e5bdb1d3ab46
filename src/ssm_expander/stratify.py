"""
stratify.py
===========
Population stratification: one copy of the model per population.

Every input, reaction and observation is replicated once per population
label.  In each copy, every *population-specific* identifier is rewritten to
its qualified form (``I`` → ``I__pop_city1``) while *shared* identifiers are
left untouched, so all copies still reference one common parameter.

The set of population-specific names (``names_var_pop``) starts as the
non-shared input names and grows as the model is traversed:

1. inputs                 — non-shared input names;
2. reactions              — plus the accumulator names;
3. observations           — plus the observation names.

Population-keyed values, priors and rates are resolved to the entry of the
current population.  Copies that come out identical for every population
(purely shared elements) collapse to a single entry.
"""

import dataclasses

from ssm_expander.errors import ErlangError, StratificationError
from ssm_expander.expressions import rename, substitute_identifiers
from ssm_expander.model import Scalar
from ssm_expander.naming import check_population_label, qualify_for_population


def _noop(message, depth=0):
    pass


def check_populations(populations):
    """Validate an ordered, non-empty list of distinct population labels."""
    populations = list(populations or ())
    if not populations:
        raise StratificationError("At least one population label is required")
    for label in populations:
        check_population_label(label)
    duplicated = sorted({p for p in populations if populations.count(p) > 1})
    if duplicated:
        raise StratificationError(f"Duplicated population label(s): {duplicated}")
    return populations


def population_mapping(names_var_pop, population):
    """Return ``{name: qualified_name}`` for one population."""
    return {name: qualify_for_population(name, population) for name in names_var_pop}


# ======================================================================
# Per-population resolution
# ======================================================================

def resolve_value(inp, population):
    """Resolve the value of ``inp`` for ``population`` to one scalar.

    Raises
    ------
    StratificationError
        If the value is keyed but has no entry for ``population``, or if it
        resolves to more than one scalar.
    """
    if inp.value is None:
        return None
    value = inp.value.resolve(population, owner=f"value of {inp.name!r}")
    if isinstance(value, (list, tuple)):
        if len(value) != 1:
            raise StratificationError(f"Too many input values for {inp.name!r}: {value!r}")
        value = value[0]
    return value


def resolve_input(inp, population):
    """Return ``inp`` with its value and prior resolved for ``population``."""
    value = resolve_value(inp, population)
    prior = None
    if inp.prior is not None:
        prior = inp.prior.resolve(population, owner=f"prior of {inp.name!r}")
    return dataclasses.replace(
        inp,
        value=None if value is None else Scalar(value),
        prior=None if prior is None else Scalar(prior),
    )


def resolve_rate(reaction, population):
    """Return ``reaction`` with its rate resolved for ``population``.

    Raises
    ------
    StratificationError
        If a keyed rate lacks the entry of ``population``.
    """
    rate = reaction.rate.resolve(
        population, owner=f"rate of reaction {reaction.from_} -> {reaction.to}",
    )
    if isinstance(rate, (list, tuple)):
        raise StratificationError(f"Wrong specification of reaction rate: {rate!r}")
    return dataclasses.replace(reaction, rate=Scalar(str(rate)))


# ======================================================================
# Qualification of single elements
# ======================================================================

def add_pop_to_input(inp, population, mapping):
    inp = resolve_input(inp, population)
    changes = {
        "name": rename(inp.name, mapping),
        "transformation": substitute_identifiers(inp.transformation, mapping),
    }
    if inp.sde is not None:
        changes["sde"] = dataclasses.replace(
            inp.sde, volatility=substitute_identifiers(inp.sde.volatility, mapping),
        )
    return dataclasses.replace(inp, **changes)


def add_pop_to_reaction(reaction, population, mapping):
    reaction = resolve_rate(reaction, population)
    if isinstance(reaction.to, dict):
        to = {
            rename(target, mapping): substitute_identifiers(weight, mapping)
            for target, weight in reaction.to.items()
        }
    else:
        to = rename(reaction.to, mapping)

    changes = {
        "from_": substitute_identifiers(reaction.from_, mapping),
        "to": to,
        "rate": substitute_identifiers(reaction.scalar_rate, mapping),
        "accumulators": tuple(rename(a, mapping) for a in reaction.accumulators),
    }
    if reaction.white_noise is not None:
        changes["white_noise"] = dataclasses.replace(
            reaction.white_noise,
            name=rename(reaction.white_noise.name, mapping),
            sd=substitute_identifiers(reaction.white_noise.sd, mapping),
        )
    return dataclasses.replace(reaction, **changes)


def add_pop_to_observation(observation, population, mapping):
    return dataclasses.replace(
        observation,
        name=rename(observation.name, mapping),
        mean=substitute_identifiers(observation.mean, mapping),
        sd=substitute_identifiers(observation.sd, mapping),
    )


def unique(items):
    """Drop repeated (equal) items, keeping the first occurrence."""
    kept = []
    for item in items:
        if item not in kept:
            kept.append(item)
    return kept


def _check_unique_names(items, kind):
    seen, clashes = set(), []
    for item in items:
        if item.name in seen:
            clashes.append(item.name)
        seen.add(item.name)
    if clashes:
        raise StratificationError(
            f"Shared {kind}(s) {sorted(set(clashes))} differ between populations; "
            "make them population-specific or give them one common definition"
        )


# ======================================================================
# Whole-model stratification
# ======================================================================

def stratify(inputs, reactions, observations, populations, shared=(), log=_noop):
    """Replicate a model once per population.

    Parameters
    ----------
    inputs, reactions, observations : list
        The user-authored model.
    populations : list of str
        Ordered, distinct population labels.
    shared : iterable of str
        Identifiers exempt from qualification.
    log : callable, optional

    Returns
    -------
    dict
        Keys ``'inputs'``, ``'reactions'``, ``'observations'`` and
        ``'names_var_pop'`` (the final set of population-specific names).

    Raises
    ------
    StratificationError
        For invalid labels, unresolved keyed values / rates, ambiguous
        values, or shared elements that differ between populations.
    """
    populations = check_populations(populations)
    shared = set(shared or ())

    names_var_pop = [inp.name for inp in inputs if inp.name not in shared]
    log(f"Population-specific inputs: {names_var_pop}", 1)
    inputs_pop = unique(
        add_pop_to_input(inp, pop, population_mapping(names_var_pop, pop))
        for inp in inputs
        for pop in populations
    )
    _check_unique_names(inputs_pop, "input")

    for reaction in reactions:
        for name in reaction.accumulators:
            if name not in shared and name not in names_var_pop:
                names_var_pop.append(name)
    reactions_pop = unique(
        add_pop_to_reaction(reaction, pop, population_mapping(names_var_pop, pop))
        for reaction in reactions
        for pop in populations
    )

    for obs in observations:
        if obs.name not in shared and obs.name not in names_var_pop:
            names_var_pop.append(obs.name)
    observations_pop = unique(
        add_pop_to_observation(obs, pop, population_mapping(names_var_pop, pop))
        for obs in observations
        for pop in populations
    )
    _check_unique_names(observations_pop, "observation")

    log(
        f"Stratified into {len(populations)} populations: {len(inputs_pop)} inputs, "
        f"{len(reactions_pop)} reactions, {len(observations_pop)} observations", 1,
    )
    return {
        'inputs': inputs_pop,
        'reactions': reactions_pop,
        'observations': observations_pop,
        'names_var_pop': names_var_pop,
    }


def resolve_single_population(inputs, reactions, population):
    """Resolve keyed values, priors and rates of an unstratified model."""
    return (
        [resolve_input(inp, population) for inp in inputs],
        [resolve_rate(reaction, population) for reaction in reactions],
    )


# ======================================================================
# Erlang maps
# ======================================================================

def _per_population(entries, populations, what):
    """Normalise a flat or population-keyed map to ``{pop: {state: x}}``."""
    if entries is None:
        return {}
    if not isinstance(entries, dict):
        raise ErlangError(
            f"Population-specific erlang {what} need population names as keys, "
            f"got {entries!r}"
        )
    if not entries:
        return {}

    nested = [isinstance(v, dict) for v in entries.values()]
    if all(nested):
        unknown = [pop for pop in entries if pop not in populations]
        if unknown:
            raise ErlangError(f"Erlang {what} given for unknown population(s) {unknown}")
        return {pop: dict(entries[pop]) for pop in populations if pop in entries}
    if any(nested):
        raise ErlangError(
            f"Erlang {what} mix population-keyed and plain entries: {entries!r}"
        )
    return {pop: dict(entries) for pop in populations}


def stratify_erlang_map(entries, populations, names_var_pop, what="shapes"):
    """Split an Erlang map into qualified per-population and shared entries.

    Parameters
    ----------
    entries : dict or None
        ``{state: x}`` applied to every population, or
        ``{population: {state: x}}``.
    populations : list of str
    names_var_pop : iterable of str
        Population-specific names; other states are shared.
    what : str
        ``'shapes'`` or ``'priors'`` (used in error messages).

    Returns
    -------
    dict
        Flat map keyed by qualified (or shared) state names.

    Raises
    ------
    ErlangError
        If population keys are missing or unknown, or if a shared state is
        given different values in different populations.
    """
    names_var_pop = set(names_var_pop)
    flat = {}
    shared = {}
    for pop, mapping in _per_population(entries, populations, what).items():
        for state, x in mapping.items():
            if state in names_var_pop:
                flat[qualify_for_population(state, pop)] = x
            elif state in shared and shared[state] != x:
                raise ErlangError(
                    f"Shared state {state!r} has different erlang {what} across "
                    f"populations: {shared[state]!r} and {x!r}"
                )
            else:
                shared[state] = x
    flat.update(shared)
    return flat
