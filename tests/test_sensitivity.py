"""Tests for steady-state averaging and the threshold search."""
import os
import sys
import threading

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import numpy as np
import pytest

from equations import ParameterSpec, Parameters
from model import RandomSource, SessionContext
from sensitivity import (
    SensitivityConfig,
    SteadyStateEstimate,
    SteadyStateEvaluator,
    early_stop_bias,
    find_parameter_for_psi,
    run_sensitivity_analysis,
    sample_psi_curve,
    search_threshold,
    sensitivity_frame,
    threshold_extrema,
)

SMALL = SensitivityConfig(t_max=5.0, dt=0.05, n_agents=30, realizations=3)


def linear(params):
    return params.beta1


def test_linear_autocratic_threshold():
    value = find_parameter_for_psi("beta1", 0.0, Parameters(), 0.0, 2.0, 0.02, "max", evaluate=linear)
    assert abs(value - 0.0) <= 0.02


def test_linear_democratic_threshold():
    value = find_parameter_for_psi("beta1", 0.3, Parameters(), 0.0, 2.0, 0.02, "min", evaluate=linear)
    assert abs(value - 0.3) <= 0.02


def test_decreasing_thresholds():
    def falling(params):
        return 1.0 - params.beta2

    auto = search_threshold("beta2", 0.0, Parameters(), 0.0, 2.0, 0.02, "min", evaluate=falling)
    demo = search_threshold("beta2", 0.3, Parameters(), 0.0, 2.0, 0.02, "max", evaluate=falling)
    assert not auto.increasing
    assert abs(auto.value - 1.0) <= 0.02
    assert abs(demo.value - 0.7) <= 0.02
    assert auto.reachable and demo.reachable


def test_most_extreme_candidate_kept():
    result = search_threshold("beta1", 0.0, Parameters(), 0.0, 2.0, 0.02, "max", evaluate=linear)
    assert len(result.candidates) > 1
    assert result.value == max(result.candidates)


@pytest.mark.parametrize(
    "slope,extremum,expected",
    [
        (0.1, "max", 2.0),
        (0.1, "min", 0.0),
        (-0.1, "max", 0.0),
        (-0.1, "min", 2.0),
    ],
)
def test_unreachable_target_returns_bound(slope, extremum, expected):
    def flat(params):
        return 0.5 + slope * params.beta1

    result = search_threshold("beta1", 0.0, Parameters(), 0.0, 2.0, 0.02, extremum, evaluate=flat)
    assert result.value == expected
    assert not result.reachable
    assert result.iterations == 0


def test_invalid_search_arguments():
    with pytest.raises(ValueError):
        search_threshold("beta1", 0.0, Parameters(), 0.0, 2.0, extremum="mid", evaluate=linear)
    with pytest.raises(ValueError):
        search_threshold("beta1", 0.0, Parameters(), 1.0, 1.0, evaluate=linear)


def test_extrema_pairing():
    assert threshold_extrema(True) == ("max", "min")
    assert threshold_extrema(False) == ("min", "max")


def _synthetic(params):
    return 0.5 * params.beta1 - 0.5 * params.beta2 + 0.15


def test_sweep_orders_zones_by_classification():
    specs = [ParameterSpec("beta1", 0.0, 2.0, True, "education"), ParameterSpec("beta2", 0.0, 2.0, False, "insecurity")]
    calls = []
    zones = run_sensitivity_analysis(
        Parameters(),
        progress_callback=lambda name, done, total: calls.append((name, done, total)),
        parameter_specs=specs,
        evaluate=_synthetic,
    )
    assert calls == [("beta1", 1, 2), ("beta2", 2, 2)]
    education, insecurity = zones["beta1"], zones["beta2"]
    assert education.autocratic < education.democratic
    assert abs(education.democratic - 0.6) <= 0.04
    assert insecurity.autocratic > insecurity.democratic
    assert abs(insecurity.democratic - 0.2) <= 0.04
    assert 0.76 <= insecurity.autocratic <= 0.84
    assert education.warnings == [] and insecurity.warnings == []
    record = insecurity.to_dict()
    assert set(record) == {"autocratic", "democratic", "min", "max", "virtuous"}
    assert record["min"] == insecurity.democratic and record["max"] == insecurity.autocratic

    frame = sensitivity_frame(zones)
    assert list(frame["parameter"]) == ["beta1", "beta2"]
    assert list(frame["kind"]) == ["virtuous", "harmful"]


def test_declared_direction_mismatch_flagged():
    specs = [ParameterSpec("beta1", 0.0, 2.0, False)]
    zones = run_sensitivity_analysis(Parameters(), parameter_specs=specs, evaluate=_synthetic)
    zone = zones["beta1"]
    assert zone.measured_increasing is True
    assert any("declared decreasing" in w for w in zone.warnings)


def test_cancel_between_parameters():
    cancel = threading.Event()
    specs = [ParameterSpec("beta1", 0.0, 2.0, True), ParameterSpec("beta2", 0.0, 2.0, False)]
    zones = run_sensitivity_analysis(
        Parameters(),
        progress_callback=lambda name, done, total: cancel.set(),
        parameter_specs=specs,
        evaluate=_synthetic,
        cancel_event=cancel,
    )
    assert list(zones) == ["beta1"]


def _noise(params, config, rng):
    return rng.next_uniform()


def test_averaging_shrinks_spread_by_sqrt_k():
    spreads = {}
    for k in (1, 16):
        evaluator = SteadyStateEvaluator(SensitivityConfig(realizations=k), RandomSource(123), realization_fn=_noise)
        means = [evaluator.estimate(Parameters()).mean for _ in range(400)]
        spreads[k] = np.std(means)
    ratio = spreads[1] / spreads[16]
    assert 3.0 < ratio < 5.3


def test_estimate_surfaces_spread():
    evaluator = SteadyStateEvaluator(SensitivityConfig(realizations=5), RandomSource(1), realization_fn=_noise)
    estimate = evaluator.estimate(Parameters())
    assert len(estimate.values) == 5
    assert estimate.std == pytest.approx(np.std(estimate.values))
    assert estimate.cv == pytest.approx(estimate.std / max(abs(estimate.mean), 0.1))
    assert evaluator.evaluations == 1
    assert SteadyStateEstimate(mean=0.0, std=0.0).cv == 0.0
    assert SteadyStateEstimate(mean=0.0, std=0.01).cv == pytest.approx(0.1)
    assert not SteadyStateEstimate(mean=0.0, std=0.01).noisy
    assert SteadyStateEstimate(mean=0.5, std=0.2).noisy
    with pytest.raises(ValueError):
        evaluator.estimate(Parameters(), realizations=0)


def _paired_psi(name, low, high):
    # Same seed for both ends so only the weight differs.
    at_low = SteadyStateEvaluator(SMALL, RandomSource(7))(Parameters().with_value(name, low))
    at_high = SteadyStateEvaluator(SMALL, RandomSource(7))(Parameters().with_value(name, high))
    return at_low, at_high


def test_institutions_weight_raises_psi():
    low, high = _paired_psi("beta3", 0.0, 2.0)
    assert high > low


def test_fear_weight_lowers_psi():
    low, high = _paired_psi("beta4", 0.0, 2.0)
    assert high < low


def test_psi_curve_and_early_stop_bias():
    curve = sample_psi_curve("beta1", Parameters(), 0.0, 2.0, num_points=5, evaluate=linear)
    assert list(curve.columns) == ["p", "psi", "std"]
    assert list(curve["p"]) == pytest.approx([0.0, 0.5, 1.0, 1.5, 2.0])
    assert list(curve["psi"]) == pytest.approx([0.0, 0.5, 1.0, 1.5, 2.0])

    bias = early_stop_bias(Parameters(), SensitivityConfig(t_max=1.0, dt=0.05, n_agents=20, realizations=2), RandomSource(3))
    assert set(bias) == {"early_mean", "early_std", "full_mean", "full_std", "bias"}
    assert bias["bias"] == pytest.approx(bias["early_mean"] - bias["full_mean"])


def test_high_cv_surfaces_as_zone_warning():
    def jittery(params):
        return SteadyStateEstimate(mean=0.5 * params.beta1, std=0.04)

    specs = [ParameterSpec("beta1", 0.0, 2.0, True)]
    zone = run_sensitivity_analysis(Parameters(), parameter_specs=specs, evaluate=jittery)["beta1"]
    assert any("coefficient of variation" in w for w in zone.warnings)
    assert not any("max std" in w for w in zone.warnings)

    search = search_threshold("beta1", 0.0, Parameters(), 0.0, 2.0, evaluate=jittery)
    assert search.noisy
    assert search.max_cv == pytest.approx(0.4)


def test_sweep_leaves_live_session_untouched():
    config = SensitivityConfig(t_max=0.5, dt=0.05, n_agents=10, realizations=1, max_iterations=2)
    specs = [ParameterSpec("beta1", 0.0, 2.0, True)]
    trajectories = []
    for sweep_first in (False, True):
        ctx = SessionContext.create(n_agents=20, seed=42)
        if sweep_first:
            run_sensitivity_analysis(Parameters(), config=config, rng=ctx.batch_source(), parameter_specs=specs)
        ctx.simulator.advance(20, force=True)
        trajectories.append(ctx.simulator.state()["order_parameter"])
    assert trajectories[0] == trajectories[1]
