"""Tests for the derivative equations and the parameter set."""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from equations import (
    TUNABLE_KEYS,
    TUNABLE_PARAMETERS,
    Parameters,
    agent_derivatives,
    cultural_tolerance_rate,
    democratic_adherence_rate,
    institutional_quality_rate,
    macro_derivatives,
    perceived_threat_rate,
    polarization_rate,
    security_rate,
)
from model import RandomSource, Realization


def _pair():
    realization = Realization(n_agents=2, rng=RandomSource(21))
    a, b = realization.population
    a.democratic_adherence, b.democratic_adherence = 0.5, 0.1
    a.civic_energy, b.civic_energy = 0.2, 0.4
    a.education, b.education = 0.5, 0.5
    a.cultural_tolerance, b.cultural_tolerance = 0.0, 0.2
    a.security, b.security = 0.6, 0.8
    society = realization.society
    society.institutional_quality = 0.6
    society.polarization = 0.3
    society.gini = 0.25
    society.external_threat = 0.2
    return realization


def test_parameter_groups():
    names = Parameters.names()
    assert len(names) == 30
    groups = {}
    for name in names:
        prefix = name.rstrip("0123456789")
        groups[prefix] = groups.get(prefix, 0) + 1
    assert groups == {"beta": 4, "gamma": 4, "delta": 5, "eta": 3, "lambda": 4, "mu": 3, "nu": 3, "rho": 4}
    assert TUNABLE_KEYS == ["beta1", "beta2", "beta3", "beta4", "mu1", "mu2", "mu3"]
    assert [s.virtuous for s in TUNABLE_PARAMETERS] == [True, False, True, False, True, False, False]


def test_unknown_parameter_is_ignored():
    params = Parameters()
    assert params.set("beta9", 1.0) is False
    assert "beta9" not in params.as_dict()
    copy = params.with_value("nope", 2.0)
    assert copy == params and copy is not params


def test_with_value_leaves_original_untouched():
    params = Parameters()
    changed = params.with_value("mu1", 0.9)
    assert changed.mu1 == 0.9
    assert params.mu1 == 0.3


def test_adherence_rate_isolated_agent():
    realization = Realization(n_agents=1, rng=RandomSource(0))
    agent = realization.population[0]
    agent.democratic_adherence = 0.2
    agent.permeability = 0.5
    agent.education = 0.6
    agent.security = 0.4
    society = realization.society
    society.institutional_quality = 0.7
    society.perceived_threat = 0.2
    # own value stands in for the neighbourhood average
    expected = 0.5 * 0.2 + 0.5 * 0.6 * 0.8 - 0.3 * 0.6 * 0.2 + 0.4 * 0.7 - 0.6 * 0.2 * 0.5
    assert democratic_adherence_rate(agent, society, Parameters()) == pytest.approx(expected)


def test_tolerance_rate_contacts():
    realization = Realization(n_agents=1, rng=RandomSource(0))
    agent = realization.population[0]
    agent.cultural_tolerance = -0.5
    agent.education = 0.0
    agent.security = 1.0
    agent.positive_contact = 0.0
    agent.negative_contact = 0.4
    rate = cultural_tolerance_rate(agent, realization.society, Parameters())
    assert rate == pytest.approx(-0.5 * 0.4 * 0.5)


def test_security_rate_zero_mean_wealth():
    realization = Realization(n_agents=3, rng=RandomSource(1))
    for agent in realization.population:
        agent.wealth = 0.0
    society = realization.society
    agent = realization.population[0]
    params = Parameters()
    expected = (
        params.delta1 * 1.0
        + params.delta2 * society.institutional_quality
        - params.delta3 * society.precarity
        - params.delta4 * society.perceived_threat
        - params.delta5 * agent.permeability * society.polarization
    )
    assert security_rate(agent, society, params) == pytest.approx(expected)


def test_macro_rates():
    realization = _pair()
    society = realization.society
    params = Parameters()
    assert institutional_quality_rate(society, params) == pytest.approx(-0.107)
    assert polarization_rate(society, params) == pytest.approx(0.055)
    assert perceived_threat_rate(society, params) == pytest.approx(0.143)
    macro = macro_derivatives(society, params)
    assert macro.institutional_quality == pytest.approx(-0.107)


def test_derivatives_are_pure():
    realization = _pair()
    agent = realization.population[0]
    before = agent.as_dict()
    first = agent_derivatives(agent, realization.society, realization.parameters)
    second = agent_derivatives(agent, realization.society, realization.parameters)
    assert first == second
    assert agent.as_dict() == before
