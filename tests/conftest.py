"""
Shared test fixtures for ssm-expander.

Provides:
- ``same_expr``: compares two expressions symbolically (term order and
  formatting of printed rates are not part of the contract).
- ``sir_inputs`` / ``sir_reactions`` / ``sir_observations``: the classic SIR
  model with a remainder susceptible compartment and a population size.
- ``seir_reactions``: an SEIR variant whose latent compartment ``E`` is the
  usual candidate for Erlang expansion.
"""

import pytest
import sympy as sp

from ssm_expander import Input, Reaction, discretized_normal_obs, dirac, unif
from ssm_expander.expressions import parse_expression


@pytest.fixture
def same_expr():
    """Return ``check(a, b)`` → True when ``a - b`` simplifies to zero."""
    def check(a, b):
        return sp.simplify(parse_expression(a) - parse_expression(b)) == 0
    return check


# =====================================================================
# SIR
# =====================================================================

@pytest.fixture
def sir_inputs():
    """Inputs of an SIR model: remainder S, pop_size N, per-capita rates."""
    return [
        Input(name="N", description="population size", value=1e7, tag="pop_size"),
        Input(name="S", description="initial number of susceptible", tag="remainder"),
        Input(name="I", description="initial number of infectious", prior=unif(1, 1000)),
        Input(name="R", description="initial number of recovered", value=0),
        Input(name="beta", description="effective contact rate", prior=unif(0, 5)),
        Input(name="gamma", description="recovery rate", prior=dirac(0.1)),
    ]


@pytest.fixture
def sir_reactions():
    """Infection (accumulated into ``incidence``) and recovery."""
    return [
        Reaction(from_="S", to="I", rate="beta*I/N", description="infection",
                 accumulators="incidence"),
        Reaction(from_="I", to="R", rate="gamma", description="recovery"),
    ]


@pytest.fixture
def sir_observations():
    return [discretized_normal_obs("incidence", "incidence", "sqrt(incidence)")]


# =====================================================================
# SEIR
# =====================================================================

@pytest.fixture
def seir_reactions():
    """SEIR with mean latent period ``T`` and mean infectious period ``D``."""
    return [
        Reaction(from_="S", to="E", rate="beta*I/N", description="infection",
                 accumulators="incidence"),
        Reaction(from_="E", to="I", rate="1/T", description="end of latency"),
        Reaction(from_="I", to="R", rate="1/D", description="recovery"),
    ]
