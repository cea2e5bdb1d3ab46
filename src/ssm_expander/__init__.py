"""
ssm-expander — Expansion of compartmental models for the SSM compiler.

Turn an algebraic description of a compartmental model (inputs, reactions,
observations) into the flat form SSM compiles: stratified by population,
with Erlang-distributed sojourn times expanded into chains, branching
reactions split, and every rate rewritten and simplified symbolically.

Quick start::

    from ssm_expander import Input, Reaction, poisson_obs, unif, build_model

    bundle = build_model(inputs, reactions, [poisson_obs('incidence', 'rho')],
                         start_date='2014-05-18',
                         populations=['city1', 'city2'],
                         shared_inputs=['N', 'gamma'])
    ssm = bundle.to_ssm()

"""

from ssm_expander.assembler import (
    PIPELINE,
    ModelAssembler,
    ModelBundle,
    build_model,
)
from ssm_expander.errors import (
    ErlangError,
    ExpressionError,
    ModelSpecificationError,
    NamingError,
    PipelineError,
    ReactionError,
    StratificationError,
)
from ssm_expander.expressions import (
    simplify,
    substitute_identifier,
    substitute_identifiers,
)
from ssm_expander.model import (
    ErlangSpec,
    Input,
    Observation,
    PerPopulation,
    Prior,
    Reaction,
    Scalar,
    WhiteNoise,
    diffusion,
    dirac,
    discretized_normal_obs,
    normal,
    overdispersed_poisson_obs,
    poisson_obs,
    truncnorm,
    unif,
)
from ssm_expander.naming import (
    qualify_for_erlang_stage,
    qualify_for_population,
    unqualify,
)

__version__ = "0.1.0"

__all__ = [
    "PIPELINE",
    "ModelAssembler",
    "ModelBundle",
    "build_model",
    "ErlangError",
    "ExpressionError",
    "ModelSpecificationError",
    "NamingError",
    "PipelineError",
    "ReactionError",
    "StratificationError",
    "simplify",
    "substitute_identifier",
    "substitute_identifiers",
    "ErlangSpec",
    "Input",
    "Observation",
    "PerPopulation",
    "Prior",
    "Reaction",
    "Scalar",
    "WhiteNoise",
    "diffusion",
    "dirac",
    "discretized_normal_obs",
    "normal",
    "overdispersed_poisson_obs",
    "poisson_obs",
    "truncnorm",
    "unif",
    "qualify_for_erlang_stage",
    "qualify_for_population",
    "unqualify",
]
