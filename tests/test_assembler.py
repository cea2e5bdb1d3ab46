"""
End-to-end tests for ssm_expander.assembler.

Covers:
- the two-population SIR example (shared N and gamma)
- Erlang expansion of a stratified compartment with population-keyed rates
- positivity guards, linear reactions and remainder substitution
- pipeline ordering, configuration errors and the verbose trace
- the resources handed to the SSM stage (priors, sde, starting point)
"""

import datetime

import numpy as np
import pytest

from ssm_expander import (
    PIPELINE,
    Input,
    ModelAssembler,
    Reaction,
    build_model,
    diffusion,
    normal,
    poisson_obs,
    truncnorm,
    unif,
)
from ssm_expander.errors import (
    ErlangError,
    ModelSpecificationError,
    NamingError,
    PipelineError,
    StratificationError,
)
from ssm_expander.expressions import free_identifiers
from ssm_expander.naming import unqualify
from ssm_expander.resources import sample_prior


START = "2014-05-18"
CITIES = ["city1", "city2"]


@pytest.fixture
def two_city_bundle(sir_inputs, sir_reactions, sir_observations):
    return build_model(
        sir_inputs, sir_reactions, sir_observations, START,
        populations=CITIES, shared_inputs=["N", "gamma"],
    )


# ======================================================================
# 1. Two-population SIR
# ======================================================================

class TestTwoPopulationSIR:

    def test_inputs(self, two_city_bundle):
        names = [inp.name for inp in two_city_bundle.inputs]
        states = [n for n in names if unqualify(n)[0] in ("S", "I", "R")]
        assert len(states) == 6
        assert {"N", "gamma"} <= set(names)
        assert names.count("N") == names.count("gamma") == 1
        assert len(names) == 10

    def test_reactions_are_fully_qualified(self, two_city_bundle):
        reactions = two_city_bundle.reactions
        assert len(reactions) == 4
        for r in reactions:
            identifiers = {r.from_, r.to} | free_identifiers(r.scalar_rate)
            assert not identifiers & {"S", "I", "R", "beta"}
        assert [r.accumulators for r in reactions[:2]] == [
            ("incidence__pop_city1",), ("incidence__pop_city2",),
        ]

    def test_population_blocks(self, two_city_bundle):
        blocks = two_city_bundle.populations
        assert [b['name'] for b in blocks] == CITIES
        assert blocks[0]['remainder'] == {'name': "S__pop_city1", 'pop_size': "N"}
        assert set(blocks[1]['composition']) == {"S__pop_city2", "I__pop_city2", "R__pop_city2"}
        assert two_city_bundle.state_variables == [
            "S__pop_city1", "I__pop_city1", "S__pop_city2", "I__pop_city2",
            "R__pop_city1", "R__pop_city2",
        ]

    def test_to_ssm_inputs(self, two_city_bundle):
        """The remainder is dropped; each input has a value or a prior, never both."""
        inputs = {entry['name']: entry for entry in two_city_bundle.to_ssm()['inputs']}
        assert "S__pop_city1" not in inputs
        assert len(inputs) == 8
        assert inputs["N"]['value'] == 1e7
        assert inputs["R__pop_city2"]['value'] == 0
        assert inputs["I__pop_city1"]['require'] == {'name': "I__pop_city1"}
        assert inputs["gamma"]['require'] == {'name': "gamma"}
        for entry in inputs.values():
            assert not ('value' in entry and 'require' in entry)

    def test_priors(self, two_city_bundle):
        """Fixed (dirac) priors are stored but not estimated."""
        estimated = {p['name'] for p in two_city_bundle.priors}
        assert estimated == {"I__pop_city1", "I__pop_city2", "beta__pop_city1", "beta__pop_city2"}
        assert two_city_bundle.prior_store["gamma"] == {'dist': "dirac", 'value': 0.1}
        assert two_city_bundle.prior_store["beta__pop_city1"] == {'dist': "unif", 'min': 0, 'max': 5}

    def test_observations(self, two_city_bundle):
        observations = two_city_bundle.to_ssm()['observations']
        assert [o['name'] for o in observations] == ["incidence__pop_city1", "incidence__pop_city2"]
        assert all(o['start'] == START for o in observations)
        assert observations[1]['mean'] == "incidence__pop_city2"
        assert two_city_bundle.start_date == START

    def test_no_sde(self, two_city_bundle):
        assert two_city_bundle.sde is None
        assert 'sde' not in two_city_bundle.to_ssm()


# ======================================================================
# 2. Erlang expansion of stratified compartments
# ======================================================================

class TestStratifiedErlang:

    @pytest.fixture
    def bundle(self, sir_inputs, sir_observations):
        """Recovery is twice as fast in city2; I has an Erlang(2) sojourn time."""
        reactions = [
            Reaction(from_="S", to="I", rate="beta*I/N", accumulators="incidence"),
            Reaction(from_="I", to="R", rate={"city1": "gamma", "city2": "2*gamma"}),
        ]
        return build_model(
            sir_inputs, reactions, sir_observations, START,
            populations=CITIES, shared_inputs=["N", "gamma"],
            erlang={'shapes': {"I": 2}},
        )

    def test_shapes_are_qualified(self, bundle):
        assert bundle.erlang_shapes == {"I__pop_city1": 2, "I__pop_city2": 2}

    def test_chain_rates_use_the_population_rate(self, bundle, same_expr):
        """Stratification runs first, so each chain scales its own resolved rate."""
        for city, expected in [("city1", "2*gamma"), ("city2", "4*gamma")]:
            stages = {f"I__pop_{city}__erlang_1", f"I__pop_{city}__erlang_2"}
            chain = [r for r in bundle.reactions if r.from_ in stages]
            assert len(chain) == 2
            for r in chain:
                assert same_expr(r.scalar_rate, expected)

    def test_infection_sees_every_stage(self, bundle, same_expr):
        infection = [r for r in bundle.reactions if r.from_ == "S__pop_city1"][0]
        assert infection.to == "I__pop_city1__erlang_1"
        assert same_expr(
            infection.scalar_rate,
            "beta__pop_city1*(I__pop_city1__erlang_1 + I__pop_city1__erlang_2)/N",
        )

    def test_stages_belong_to_their_population(self, bundle):
        block = bundle.populations[1]
        assert block['name'] == "city2"
        assert "I__pop_city2__erlang_2" in block['composition']
        assert "I__pop_city2" not in block['composition']

    def test_sum_mode_inputs(self, bundle):
        inputs = {inp.name: inp for inp in bundle.inputs}
        assert inputs["I__pop_city1"].scalar_prior == unif(1, 1000)
        assert inputs["I__pop_city1__erlang_1"].prior is None
        assert inputs["I__pop_city1__erlang_1"].transformation is not None


class TestErlangPriorModes:

    def test_each_mode(self, sir_inputs, sir_reactions, sir_observations):
        bundle = build_model(
            sir_inputs, sir_reactions, sir_observations, START,
            erlang={'shapes': {"I": 2}, 'priors': {"I": "each"}},
        )
        estimated = {p['name'] for p in bundle.priors}
        assert {"I__erlang_1", "I__erlang_2"} <= estimated
        assert "I" not in estimated

    def test_non_state_shape(self, sir_inputs, sir_reactions, sir_observations):
        with pytest.raises(ErlangError, match="not state variables"):
            build_model(
                sir_inputs, sir_reactions, sir_observations, START,
                erlang={'shapes': {"beta": 2}},
            )


# ======================================================================
# 3. Rate rewriting
# ======================================================================

class TestRateRewriting:

    def test_positivity_flag(self, sir_inputs, sir_reactions, sir_observations):
        reactions = sir_reactions + [
            Reaction(from_="I", to="U", rate="mu", keywords="while_from_is_positive"),
        ]
        bundle = build_model(sir_inputs, reactions, sir_observations, START)
        assert bundle.requires_special_function_workaround is True
        assert "heaviside(I - 1)" in bundle.reactions[-1].scalar_rate

    def test_no_positivity_flag(self, two_city_bundle):
        assert two_city_bundle.requires_special_function_workaround is False

    def test_linear_reaction(self, sir_inputs, sir_observations, same_expr):
        reactions = [
            Reaction(from_="S", to="I", rate="beta*S*I/N", keywords="linear"),
            Reaction(from_="I", to="R", rate="gamma"),
        ]
        bundle = build_model(sir_inputs, reactions, sir_observations, START)
        assert same_expr(bundle.reactions[0].scalar_rate, "beta*I/N")

    def test_remainder_in_rates(self, sir_inputs, sir_reactions, sir_observations, same_expr):
        """Importation proportional to S uses N - I - R instead."""
        reactions = sir_reactions + [Reaction(from_="U", to="I", rate="iota*S/N")]
        bundle = build_model(sir_inputs, reactions, sir_observations, START)
        assert same_expr(bundle.reactions[-1].scalar_rate, "iota*(N - I - R)/N")
        assert bundle.populations == [{
            'name': "all",
            'composition': ["S", "I", "R"],
            'remainder': {'name': "S", 'pop_size': "N"},
        }]

    def test_split_reaction(self, sir_inputs, sir_observations, same_expr):
        reactions = [
            Reaction(from_="S", to="I", rate="beta*I/N"),
            Reaction(from_="I", to={"R": "1 - p", "D": "p"}, rate="gamma"),
        ]
        bundle = build_model(sir_inputs, reactions, sir_observations, START)
        assert [(r.from_, r.to) for r in bundle.reactions[1:]] == [("I", "R"), ("I", "D")]
        assert same_expr(bundle.reactions[2].scalar_rate, "gamma*p")

    def test_euler_number_is_not_the_latent_compartment(self, same_expr):
        """exp(1) in an SEIR rate stays a constant through every stage."""
        inputs = [
            Input(name="N", value=1e6, tag="pop_size"),
            Input(name="S", tag="remainder"),
            Input(name="E", value=0),
            Input(name="I", value=10),
            Input(name="R", value=0),
            Input(name="D", value=0),
        ]
        reactions = [
            Reaction(from_="S", to="E", rate="beta*I/N", accumulators="incidence"),
            Reaction(from_="E", to="I", rate="1/T"),
            Reaction(from_="I", to={"R": "1 - p", "D": "p"}, rate="gamma*exp(1)"),
        ]
        bundle = build_model(
            inputs, reactions, [poisson_obs("incidence", "rho")], START,
            erlang={'shapes': {"E": 2}},
        )
        for r in bundle.reactions:
            assert "E" not in free_identifiers(r.scalar_rate)
        to_d = [r for r in bundle.reactions if r.to == "D"][0]
        assert same_expr(to_d.scalar_rate, "gamma*p*exp(1)")


# ======================================================================
# 4. Configuration
# ======================================================================

class TestConfiguration:

    def test_named_single_population(self, sir_reactions, sir_observations):
        inputs = [
            Input(name="I", value={"paris": 3, "lyon": 5}),
            Input(name="beta", value=0.5),
        ]
        bundle = build_model(inputs, sir_reactions, sir_observations, START, name="paris")
        assert bundle.populations[0]['name'] == "paris"
        assert {inp.name: inp.scalar_value for inp in bundle.inputs}["I"] == 3

    def test_start_date_objects(self, sir_inputs, sir_reactions, sir_observations):
        bundle = build_model(
            sir_inputs, sir_reactions, sir_observations, datetime.date(2014, 5, 18),
        )
        assert bundle.observations[0].start == START

    def test_bad_start_date(self, sir_inputs, sir_reactions, sir_observations):
        with pytest.raises(ModelSpecificationError, match="start_date"):
            ModelAssembler(sir_inputs, sir_reactions, sir_observations, "18/05/2014")

    def test_bad_erlang_argument(self, sir_inputs, sir_reactions, sir_observations):
        with pytest.raises(ModelSpecificationError, match="erlang"):
            ModelAssembler(sir_inputs, sir_reactions, sir_observations, START, erlang=[2])

    def test_keyed_rate_missing_population(self, sir_inputs, sir_observations):
        reactions = [Reaction(from_="I", to="R", rate={"city1": "gamma"})]
        with pytest.raises(StratificationError, match="city2"):
            build_model(sir_inputs, reactions, sir_observations, START,
                        populations=CITIES, shared_inputs=["N", "gamma"])

    def test_reserved_marker_in_user_name(self, sir_reactions, sir_observations):
        inputs = [Input(name="I__pop_A")]
        with pytest.raises(NamingError, match="reserved marker"):
            build_model(inputs, sir_reactions, sir_observations, START)

    def test_duplicated_input(self, sir_reactions, sir_observations):
        inputs = [Input(name="I"), Input(name="I")]
        with pytest.raises(ModelSpecificationError, match="Duplicated"):
            build_model(inputs, sir_reactions, sir_observations, START)

    def test_several_remainders(self, sir_reactions, sir_observations):
        inputs = [Input(name="S", tag="remainder"), Input(name="R", tag="remainder")]
        with pytest.raises(NamingError, match="remainder"):
            build_model(inputs, sir_reactions, sir_observations, START)


# ======================================================================
# 5. Pipeline driver
# ======================================================================

class TestPipeline:

    def test_stage_by_stage(self, sir_inputs, sir_reactions, sir_observations):
        assembler = ModelAssembler(sir_inputs, sir_reactions, sir_observations, START)
        generation = assembler.initial_generation()
        for stage in PIPELINE:
            generation = assembler.run_stage(stage, generation)
        assert generation.completed == PIPELINE
        assert generation.observations[0].start == START

    def test_out_of_order(self, sir_inputs, sir_reactions, sir_observations):
        assembler = ModelAssembler(sir_inputs, sir_reactions, sir_observations, START)
        with pytest.raises(PipelineError, match="expects"):
            assembler.run_stage("split", assembler.initial_generation())

    def test_stage_cannot_run_twice(self, sir_inputs, sir_reactions, sir_observations):
        assembler = ModelAssembler(sir_inputs, sir_reactions, sir_observations, START)
        generation = assembler.run_stage("validate", assembler.initial_generation())
        with pytest.raises(PipelineError):
            assembler.run_stage("validate", generation)

    def test_unknown_stage(self, sir_inputs, sir_reactions, sir_observations):
        assembler = ModelAssembler(sir_inputs, sir_reactions, sir_observations, START)
        with pytest.raises(PipelineError, match="Unknown"):
            assembler.run_stage("compile", assembler.initial_generation())

    def test_verbose_trace(self, sir_inputs, sir_reactions, sir_observations, capsys):
        build_model(sir_inputs, sir_reactions, sir_observations, START, verbose=True)
        out = capsys.readouterr().out
        assert "[ssm-expander] Stage 'validate'" in out
        assert "[ssm-expander] Stage 'observations'" in out

    def test_quiet_by_default(self, sir_inputs, sir_reactions, sir_observations, capsys):
        build_model(sir_inputs, sir_reactions, sir_observations, START)
        assert capsys.readouterr().out == ""


# ======================================================================
# 6. Resources
# ======================================================================

class TestResources:

    def test_sde_block(self, sir_reactions, sir_observations):
        inputs = [
            Input(name="beta", prior=unif(0, 5), sde=diffusion(volatility="vol", transformation="log")),
            Input(name="vol", prior=unif(0, 1)),
        ]
        bundle = build_model(inputs, sir_reactions, sir_observations, START)
        assert bundle.sde == {
            'drift': [{'name': "beta", 'f': 0, 'transformation': "log(beta)"}],
            'dispersion': [["vol"]],
        }
        assert bundle.to_ssm()['sde'] == bundle.sde

    def test_starting_point(self, sir_inputs, sir_reactions, sir_observations):
        bundle = build_model(sir_inputs, sir_reactions, sir_observations, START)
        theta, covmat = bundle.starting_point(rng=0)
        assert list(theta) == ["I", "beta"]
        assert 1 <= theta["I"] <= 1000
        assert 0 <= theta["beta"] <= 5
        assert covmat.shape == (2, 2)
        np.testing.assert_allclose(np.diag(covmat), [theta["I"] / 10, theta["beta"] / 10])

    def test_starting_point_is_reproducible(self, two_city_bundle):
        first, _ = two_city_bundle.starting_point(rng=42)
        second, _ = two_city_bundle.starting_point(rng=42)
        assert first == second

    def test_forced_input_is_required_with_dates(self, sir_inputs, sir_reactions, sir_observations):
        inputs = sir_inputs + [Input(name="temperature", forced_input="temperature.csv")]
        bundle = build_model(inputs, sir_reactions, sir_observations, START)
        [entry] = [e for e in bundle.to_ssm()['inputs'] if e['name'] == "temperature"]
        assert entry['require'] == {'name': "temperature", 'fields': ["date", "temperature"]}
        assert 'value' not in entry

    def test_normal_and_truncnorm_priors(self, sir_reactions, sir_observations):
        inputs = [
            Input(name="beta", prior=normal(1, 0.1)),
            Input(name="gamma", prior=truncnorm(0.2, 0.05, a=0.1, b=0.3)),
        ]
        bundle = build_model(inputs, sir_reactions, sir_observations, START)
        assert bundle.priors == [
            {'name': "beta", 'dist': "normal", 'mean': 1, 'sd': 0.1},
            {'name': "gamma", 'dist': "truncnorm", 'mean': 0.2, 'sd': 0.05, 'a': 0.1, 'b': 0.3},
        ]
        theta, _ = bundle.starting_point(rng=1)
        assert 0.1 <= theta["gamma"] <= 0.3
        assert np.isfinite(theta["beta"])


class TestSamplePrior:

    def test_truncnorm_draws_stay_in_bounds(self):
        """Rejection sampling keeps every draw inside [a, b]."""
        rng = np.random.default_rng(3)
        entry = {'name': "x", 'dist': "truncnorm", 'mean': 0, 'sd': 1, 'a': 0.5, 'b': 0.6}
        draws = [sample_prior(entry, rng) for _ in range(20)]
        assert all(0.5 <= x <= 0.6 for x in draws)

    def test_one_sided_truncnorm(self):
        rng = np.random.default_rng(4)
        entry = {'name': "x", 'dist': "truncnorm", 'mean': 0, 'sd': 1, 'a': 0}
        assert all(sample_prior(entry, rng) >= 0 for _ in range(20))

    def test_unreachable_truncnorm(self):
        entry = {'name': "x", 'dist': "truncnorm", 'mean': 0, 'sd': 1e-6, 'a': 10, 'b': 11}
        with pytest.raises(ModelSpecificationError, match="Could not sample"):
            sample_prior(entry, np.random.default_rng(0))

    def test_unknown_distribution(self):
        with pytest.raises(ModelSpecificationError, match="Unknown prior"):
            sample_prior({'name': "x", 'dist': "gamma"}, np.random.default_rng(0))
