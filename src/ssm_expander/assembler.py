"""
assembler.py
============
Expands a user-authored compartmental model into the flat form consumed by
the SSM compiler.

The expansion is an explicit, ordered sequence of named stages
(``PIPELINE``).  Each stage consumes one :class:`Generation` of the model
and produces the next; a generation records which stages produced it, and
a stage refuses to run unless exactly its predecessors have run.  The order
matters:

1. ``validate``          — identifiers, tags and reserved markers.
2. ``stratify``          — one copy per population (or resolution of keyed
   values for an unstratified model).
3. ``erlang_inputs``     — Erlang maps are qualified per population and the
   inputs of Erlang compartments are split into stages.
4. ``split``             — branching reactions become one reaction per
   target, *before* Erlang expansion so each branch is rewired on its own.
5. ``erlang_reactions``  — chains and pass-through reactions; observations
   of expanded compartments observe the sum of their stages.
6. ``split_rates``       — branch weights multiply the rates.
7. ``linear``            — density correction of ``linear`` reactions.
8. ``positivity``        — ``heaviside`` guards; sets the workaround flag.
9. ``simplify``          — symbolic simplification of every rate.
10. ``populations``      — state variables and SSM population blocks.
11. ``remainder``        — remainder compartments replaced in rates.
12. ``observations``     — common ``start`` date on every observation.

Key entry points
----------------
- ``ModelAssembler``  — configurable pipeline, ``assemble()``
- ``ModelBundle``     — the normalised result, ``to_ssm()``
- ``build_model()``   — one-call convenience wrapper
"""

import dataclasses
import datetime
from dataclasses import dataclass, field
from typing import Optional

from ssm_expander.erlang import (
    check_erlang,
    make_erlang_inputs,
    make_erlang_reactions,
    redirect_observations,
)
from ssm_expander.errors import ModelSpecificationError, NamingError, PipelineError
from ssm_expander.expressions import free_identifiers
from ssm_expander.model import UNIVERSE, ErlangSpec, Scalar
from ssm_expander.naming import check_identifier
from ssm_expander.reactions import (
    apply_linear_correction,
    apply_positivity_guard,
    apply_split_rates,
    check_single_target,
    get_state_variables,
    make_populations,
    simplify_rates,
    split_reactions,
    substitute_remainder,
)
from ssm_expander.resources import (
    default_covmat,
    extract_priors,
    initial_theta,
    make_sde,
    prior_store,
)
from ssm_expander.stratify import (
    check_populations,
    resolve_single_population,
    stratify,
    stratify_erlang_map,
)


PIPELINE = (
    "validate",
    "stratify",
    "erlang_inputs",
    "split",
    "erlang_reactions",
    "split_rates",
    "linear",
    "positivity",
    "simplify",
    "populations",
    "remainder",
    "observations",
)


@dataclass(frozen=True)
class Generation:
    """The model as it stands between two pipeline stages."""

    inputs: list
    reactions: list
    observations: list
    names_var_pop: tuple = ()
    erlang_shapes: dict = field(default_factory=dict)
    state_variables: list = field(default_factory=list)
    populations: list = field(default_factory=list)
    requires_special_function_workaround: bool = False
    completed: tuple = ()


@dataclass(frozen=True)
class ModelBundle:
    """The normalised model handed to the serialisation / compilation stage.

    Attributes
    ----------
    inputs : list of Input
        Expanded inputs with resolved (non-keyed) values and priors.
    reactions : list of Reaction
        Single-target reactions with resolved, simplified rate strings.
    observations : list of Observation
        With ``start`` set (``YYYY-MM-DD``).
    erlang_shapes : dict
        Expanded compartment → shape (population-qualified names).
    priors : list of dict
        Estimated priors (``dirac`` excluded).
    populations : list of dict
        SSM population blocks.
    state_variables : list of str
    prior_store : dict
        Input name → prior descriptor, ``dirac`` included.
    sde : dict or None
        Drift / dispersion block.
    start_date : str
    requires_special_function_workaround : bool
        True when a rate has a state variable inside a special function
        (positivity guard); the compiler stage must special-case it.
    """

    inputs: list
    reactions: list
    observations: list
    erlang_shapes: dict
    priors: list
    populations: list
    state_variables: list
    prior_store: dict
    sde: Optional[dict]
    start_date: str
    requires_special_function_workaround: bool = False

    def to_ssm(self):
        """Render the serialisation contract as plain dicts and lists.

        Every input carries either its value or a reference to its prior,
        never both; the remainder compartment is dropped (it is derived, not
        estimated).
        """
        inputs = []
        for inp in self.inputs:
            if inp.tag == "remainder":
                continue
            entry = {'name': inp.name}
            if inp.description:
                entry['description'] = inp.description
            if inp.transformation is not None:
                entry['transformation'] = inp.transformation
            if inp.prior is not None:
                entry['require'] = {'name': inp.name}
            elif inp.forced_input is not None:
                entry['require'] = {'name': inp.name, 'fields': ['date', inp.name]}
            elif inp.value is not None:
                entry['value'] = inp.scalar_value
            inputs.append(entry)

        reactions = []
        for r in self.reactions:
            entry = {'from': r.from_, 'to': r.to, 'rate': r.scalar_rate}
            if r.description:
                entry['description'] = r.description
            if r.accumulators:
                entry['accumulators'] = list(r.accumulators)
            if r.white_noise is not None:
                entry['white_noise'] = {'name': r.white_noise.name, 'sd': r.white_noise.sd}
            reactions.append(entry)

        observations = []
        for obs in self.observations:
            entry = {
                'name': obs.name,
                'start': obs.start,
                'distribution': obs.distribution,
                'mean': obs.mean,
            }
            if obs.sd is not None:
                entry['sd'] = obs.sd
            observations.append(entry)

        ssm = {
            'inputs': inputs,
            'populations': self.populations,
            'reactions': reactions,
            'observations': observations,
        }
        if self.sde is not None:
            ssm['sde'] = self.sde
        return ssm

    def starting_point(self, rng=None):
        """Return ``(theta, covmat)``: one prior draw and its covariance."""
        theta = initial_theta(self.priors, self.inputs, rng)
        return theta, default_covmat(theta)


class ModelAssembler:
    """Expand a compartmental model through the ordered ``PIPELINE``.

    Parameters
    ----------
    inputs : list of Input
    reactions : list of Reaction
    observations : list of Observation
    start_date : str, datetime.date or datetime.datetime
        Start of the model integration; copied to every observation.
    populations : list of str, optional
        Population labels.  When given, the model is stratified and every
        non-shared identifier is qualified per population.
    shared_inputs : iterable of str, optional
        Names exempt from population qualification.
    erlang : ErlangSpec or dict, optional
        Erlang shapes and prior modes.  A dict is read as
        ``{'shapes': ..., 'priors': ...}``.
    name : str, optional
        Label of the population block of an unstratified model, and the key
        used to resolve its population-keyed values.
    verbose : bool, optional
        If True, prints a trace of every stage.

    Examples
    --------
    >>> assembler = ModelAssembler(inputs, reactions, observations,
    ...                            start_date='2014-05-18',
    ...                            populations=['city1', 'city2'],
    ...                            shared_inputs=['N', 'gamma'])
    >>> bundle = assembler.assemble()
    """

    def __init__(self, inputs, reactions, observations, start_date,
                 populations=None, shared_inputs=None, erlang=None,
                 name="all", verbose=False):
        self.inputs = list(inputs)
        self.reactions = list(reactions)
        self.observations = list(observations)
        self.start_date = _as_date(start_date)
        self.populations = None if populations is None else check_populations(populations)
        self.shared_inputs = set(shared_inputs or ())
        self.erlang = _as_erlang(erlang)
        self.name = name
        self.verbose = verbose

    def log(self, message, depth=0):
        """Print an indented trace message when ``verbose=True``."""
        if self.verbose:
            indent = "  " * depth
            print(f"[ssm-expander] {indent}{message}")

    # ------------------------------------------------------------------
    # Pipeline driver
    # ------------------------------------------------------------------

    def initial_generation(self):
        return Generation(
            inputs=list(self.inputs),
            reactions=list(self.reactions),
            observations=list(self.observations),
        )

    def run_stage(self, stage, generation):
        """Run one named stage on ``generation``.

        Raises
        ------
        PipelineError
            If ``stage`` is unknown, or the stages that produced
            ``generation`` are not exactly the ones preceding ``stage``.
        """
        if stage not in PIPELINE:
            raise PipelineError(f"Unknown pipeline stage: {stage!r}")
        index = PIPELINE.index(stage)
        if generation.completed != PIPELINE[:index]:
            raise PipelineError(
                f"Stage {stage!r} expects {list(PIPELINE[:index])} to have run, "
                f"got {list(generation.completed)}"
            )
        self.log(f"Stage '{stage}'")
        produced = getattr(self, f"_stage_{stage}")(generation)
        return dataclasses.replace(produced, completed=generation.completed + (stage,))

    def assemble(self):
        """Run the whole pipeline and return the :class:`ModelBundle`."""
        generation = self.initial_generation()
        for stage in PIPELINE:
            generation = self.run_stage(stage, generation)
        return self._bundle(generation)

    def _bundle(self, generation):
        return ModelBundle(
            inputs=generation.inputs,
            reactions=generation.reactions,
            observations=generation.observations,
            erlang_shapes=dict(generation.erlang_shapes),
            priors=extract_priors(generation.inputs),
            populations=generation.populations,
            state_variables=generation.state_variables,
            prior_store=prior_store(generation.inputs),
            sde=make_sde(generation.inputs),
            start_date=self.start_date.isoformat(),
            requires_special_function_workaround=(
                generation.requires_special_function_workaround
            ),
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _stage_validate(self, gen):
        names = [inp.name for inp in gen.inputs]
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise ModelSpecificationError(f"Duplicated input name(s): {duplicated}")

        identifiers = set(names)
        for inp in gen.inputs:
            identifiers |= free_identifiers(inp.transformation or "0")
            if inp.sde is not None:
                identifiers |= free_identifiers(inp.sde.volatility)
        for reaction in gen.reactions:
            identifiers |= {reaction.from_, *reaction.targets, *reaction.accumulators}
            if isinstance(reaction.rate, Scalar):
                rates = [reaction.rate.value]
            else:
                rates = list(reaction.rate.values.values())
            for rate in rates:
                identifiers |= free_identifiers(rate)
            if isinstance(reaction.to, dict):
                for weight in reaction.to.values():
                    identifiers |= free_identifiers(weight)
            if reaction.white_noise is not None:
                identifiers |= {reaction.white_noise.name}
                identifiers |= free_identifiers(reaction.white_noise.sd)
        for obs in gen.observations:
            identifiers |= {obs.name} | free_identifiers(obs.mean)
            identifiers |= free_identifiers(obs.sd or "0")
        for identifier in sorted(identifiers - {UNIVERSE}):
            check_identifier(identifier)

        for tag in ("remainder", "pop_size"):
            tagged = [inp.name for inp in gen.inputs if inp.tag == tag]
            if len(tagged) > 1:
                raise NamingError(f"Several inputs tagged {tag!r}: {tagged}")
        self.log(f"{len(identifiers)} identifiers checked", 1)
        return gen

    def _stage_stratify(self, gen):
        if self.populations is None:
            inputs, reactions = resolve_single_population(gen.inputs, gen.reactions, self.name)
            return dataclasses.replace(gen, inputs=inputs, reactions=reactions)

        result = stratify(
            gen.inputs, gen.reactions, gen.observations,
            self.populations, self.shared_inputs, log=self.log,
        )
        return dataclasses.replace(
            gen,
            inputs=result['inputs'],
            reactions=result['reactions'],
            observations=result['observations'],
            names_var_pop=tuple(result['names_var_pop']),
        )

    def _stage_erlang_inputs(self, gen):
        populations = self.populations or [self.name]
        shapes = stratify_erlang_map(
            self.erlang.shapes, populations, gen.names_var_pop, "shapes",
        )
        priors = stratify_erlang_map(
            self.erlang.priors, populations, gen.names_var_pop, "priors",
        )
        shapes, priors = check_erlang(shapes, priors, get_state_variables(gen.reactions))
        if not shapes:
            return gen
        return dataclasses.replace(
            gen,
            inputs=make_erlang_inputs(gen.inputs, shapes, priors, log=self.log),
            erlang_shapes=shapes,
        )

    def _stage_split(self, gen):
        return dataclasses.replace(gen, reactions=split_reactions(gen.reactions, log=self.log))

    def _stage_erlang_reactions(self, gen):
        if not gen.erlang_shapes:
            return gen
        return dataclasses.replace(
            gen,
            reactions=make_erlang_reactions(gen.reactions, gen.erlang_shapes, log=self.log),
            observations=redirect_observations(gen.observations, gen.erlang_shapes),
        )

    def _stage_split_rates(self, gen):
        return dataclasses.replace(gen, reactions=apply_split_rates(gen.reactions))

    def _stage_linear(self, gen):
        return dataclasses.replace(gen, reactions=apply_linear_correction(gen.reactions))

    def _stage_positivity(self, gen):
        reactions, flag = apply_positivity_guard(gen.reactions)
        if flag:
            self.log("(!) Positivity guards put state variables inside special functions", 1)
        return dataclasses.replace(
            gen, reactions=reactions, requires_special_function_workaround=flag,
        )

    def _stage_simplify(self, gen):
        known = [inp.name for inp in gen.inputs] + get_state_variables(gen.reactions)
        return dataclasses.replace(
            gen, reactions=simplify_rates(gen.reactions, known, log=self.log),
        )

    def _stage_populations(self, gen):
        check_single_target(gen.reactions)
        state_variables = get_state_variables(gen.reactions)
        blocks = make_populations(state_variables, gen.inputs, self.populations, self.name)
        return dataclasses.replace(gen, state_variables=state_variables, populations=blocks)

    def _stage_remainder(self, gen):
        return dataclasses.replace(
            gen, reactions=substitute_remainder(gen.reactions, gen.populations, log=self.log),
        )

    def _stage_observations(self, gen):
        start = self.start_date.isoformat()
        return dataclasses.replace(
            gen,
            observations=[dataclasses.replace(obs, start=start) for obs in gen.observations],
        )


# ======================================================================
# Module-level convenience functions
# ======================================================================

def build_model(inputs, reactions, observations, start_date, **kwargs):
    """Expand a model in one call; ``kwargs`` go to :class:`ModelAssembler`."""
    return ModelAssembler(inputs, reactions, observations, start_date, **kwargs).assemble()


def _as_date(value):
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError as exc:
        raise ModelSpecificationError(
            f"start_date must be a date in YYYY-MM-DD format, got {value!r}"
        ) from exc


def _as_erlang(erlang):
    if erlang is None:
        return ErlangSpec()
    if isinstance(erlang, ErlangSpec):
        return erlang
    if isinstance(erlang, dict):
        return ErlangSpec(shapes=erlang.get('shapes') or {}, priors=erlang.get('priors') or {})
    raise ModelSpecificationError(f"erlang must be an ErlangSpec or a dict, got {erlang!r}")
