"""Parameter sensitivity of the order parameter.

For each tunable weight the engine locates the two critical values that
delimit the transition zone between the autocratic (psi <= 0) and the
democratic (psi >= 0.3) regimes:

1. ``SteadyStateEvaluator`` averages the final psi of K independent
   realizations to damp the stochastic contact noise.
2. ``search_threshold`` bisects the parameter range using the direction it
   measured at the two endpoints, keeping the most extreme point that lands
   within tolerance of the target.
3. ``run_sensitivity_analysis`` pairs the searches with each weight's
   virtuous/harmful classification and reports one ``TransitionZone`` per
   weight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from equations import TUNABLE_PARAMETERS, ParameterSpec, Parameters
from model import (
    AUTOCRATIC_PSI,
    BATCH_AREA,
    BATCH_RADIUS,
    DEMOCRATIC_PSI,
    RandomSource,
    Realization,
    UniformSource,
)

logger = logging.getLogger(__name__)

HIGH_VARIANCE_STD = 0.05
# Means closer to zero than this are treated as this far for the CV.
CV_MEAN_FLOOR = 0.1


@dataclass
class SensitivityConfig:
    t_max: float = 100.0
    dt: float = 0.02
    n_agents: int = 75
    realizations: int = 10
    tolerance: float = 0.02
    max_iterations: int = 30
    collapse_threshold: float = 0.05
    democracy_threshold: float = 0.95
    early_stop: bool = True
    cv_warning: float = 0.2
    area: float = BATCH_AREA
    radius: float = BATCH_RADIUS


@dataclass
class SteadyStateEstimate:
    mean: float
    std: float
    values: List[float] = field(default_factory=list)
    cv_warning: float = 0.2

    @property
    def cv(self) -> float:
        """Coefficient of variation across realizations.

        The denominator is floored at ``CV_MEAN_FLOOR`` so estimates sitting
        on the autocratic target psi = 0 stay finite.
        """
        return self.std / max(abs(self.mean), CV_MEAN_FLOOR)

    @property
    def noisy(self) -> bool:
        return self.cv > self.cv_warning


RealizationFn = Callable[[Parameters, SensitivityConfig, UniformSource], float]
Evaluator = Callable[[Parameters], Union[float, SteadyStateEstimate]]


def single_realization(params: Parameters, config: SensitivityConfig, rng: UniformSource) -> float:
    realization = Realization(
        n_agents=config.n_agents,
        parameters=params,
        dt=config.dt,
        area=config.area,
        radius=config.radius,
        rng=rng,
    )
    return realization.run(
        config.t_max,
        early_stop=config.early_stop,
        collapse_threshold=config.collapse_threshold,
        democracy_threshold=config.democracy_threshold,
    )


class SteadyStateEvaluator:
    """Variance-reduced steady state: mean of K independent realizations."""

    def __init__(
        self,
        config: SensitivityConfig | None = None,
        rng: UniformSource | None = None,
        realization_fn: RealizationFn | None = None,
    ):
        self.config = config if config is not None else SensitivityConfig()
        self.source = rng if rng is not None else RandomSource()
        self.realization_fn = realization_fn or single_realization
        self.evaluations = 0

    def estimate(self, params: Parameters, realizations: int | None = None) -> SteadyStateEstimate:
        k = self.config.realizations if realizations is None else realizations
        if k < 1:
            raise ValueError(f"realizations must be at least 1, got {k}")
        values = [float(self.realization_fn(params, self.config, self.source)) for _ in range(k)]
        arr = np.asarray(values, dtype=float)
        estimate = SteadyStateEstimate(
            mean=float(arr.mean()),
            std=float(arr.std()),
            values=values,
            cv_warning=self.config.cv_warning,
        )
        self.evaluations += 1
        if estimate.std > HIGH_VARIANCE_STD or estimate.noisy:
            logger.warning(
                "high variance across %d realizations: mean=%.3f std=%.3f cv=%.2f, consider raising K",
                k,
                estimate.mean,
                estimate.std,
                estimate.cv,
            )
        return estimate

    def __call__(self, params: Parameters) -> float:
        return self.estimate(params).mean


def simulate_to_steady_state(
    params: Parameters,
    t_max: float = 100.0,
    dt: float = 0.01,
    n_agents: int = 100,
    realizations: int = 10,
    rng: UniformSource | None = None,
) -> SteadyStateEstimate:
    config = SensitivityConfig(t_max=t_max, dt=dt, n_agents=n_agents, realizations=realizations)
    return SteadyStateEvaluator(config, rng).estimate(params)


@dataclass
class ThresholdSearch:
    param_name: str
    target: float
    extremum: str
    value: float
    increasing: bool
    psi_low: float
    psi_high: float
    reachable: bool
    iterations: int = 0
    candidates: List[float] = field(default_factory=list)
    max_std: float = 0.0
    max_cv: float = 0.0
    noisy: bool = False


def _evaluate(evaluate: Evaluator, params: Parameters) -> SteadyStateEstimate:
    result = evaluate(params)
    if isinstance(result, SteadyStateEstimate):
        return result
    return SteadyStateEstimate(mean=float(result), std=0.0)


def _spread(estimates: Sequence[SteadyStateEstimate]) -> Dict[str, object]:
    return dict(
        max_std=max(e.std for e in estimates),
        max_cv=max(e.cv for e in estimates),
        noisy=any(e.noisy for e in estimates),
    )


def satisfies_target(psi: float, target: float, tolerance: float) -> bool:
    # The autocratic target accepts anything at or below zero (plus tolerance).
    if target == AUTOCRATIC_PSI:
        return psi <= target + tolerance
    return abs(psi - target) <= tolerance


def unreachable_endpoint(p_min: float, p_max: float, extremum: str, increasing: bool) -> float:
    if extremum == "min":
        return p_min if increasing else p_max
    return p_max if increasing else p_min


def search_threshold(
    param_name: str,
    target: float,
    base_params: Parameters,
    p_min: float,
    p_max: float,
    tolerance: float = 0.02,
    extremum: str = "min",
    evaluate: Evaluator | None = None,
    max_iterations: int = 30,
    config: SensitivityConfig | None = None,
    rng: UniformSource | None = None,
) -> ThresholdSearch:
    """Locate the parameter value whose averaged psi reaches ``target``.

    ``extremum`` picks the smallest ("min") or largest ("max") qualifying
    value. The bracket moves according to the direction measured at the
    endpoints, never an assumed one.
    """
    if extremum not in ("min", "max"):
        raise ValueError(f"extremum must be 'min' or 'max', got {extremum!r}")
    if p_min >= p_max:
        raise ValueError(f"empty parameter range [{p_min}, {p_max}]")
    if evaluate is None:
        evaluate = SteadyStateEvaluator(config, rng).estimate

    estimates = [
        _evaluate(evaluate, base_params.with_value(param_name, p_min)),
        _evaluate(evaluate, base_params.with_value(param_name, p_max)),
    ]
    psi_low, psi_high = estimates[0].mean, estimates[1].mean
    increasing = psi_high > psi_low
    logger.info(
        "%s -> psi=%.2f (%s): psi(%g)=%.3f psi(%g)=%.3f %s",
        param_name,
        target,
        extremum,
        p_min,
        psi_low,
        p_max,
        psi_high,
        "increasing" if increasing else "decreasing",
    )

    if target < min(psi_low, psi_high) or target > max(psi_low, psi_high):
        value = unreachable_endpoint(p_min, p_max, extremum, increasing)
        logger.warning(
            "%s: target psi=%.2f outside [%.3f, %.3f], returning bound %g",
            param_name,
            target,
            min(psi_low, psi_high),
            max(psi_low, psi_high),
            value,
        )
        return ThresholdSearch(
            param_name=param_name,
            target=target,
            extremum=extremum,
            value=value,
            increasing=increasing,
            psi_low=psi_low,
            psi_high=psi_high,
            reachable=False,
            **_spread(estimates),
        )

    low, high = p_min, p_max
    best: float | None = None
    candidates: List[float] = []
    iterations = 0
    while iterations < max_iterations and (high - low) > tolerance * 0.01:
        mid = (low + high) / 2
        estimate = _evaluate(evaluate, base_params.with_value(param_name, mid))
        estimates.append(estimate)
        psi_mid = estimate.mean
        if satisfies_target(psi_mid, target, tolerance):
            candidates.append(mid)
            if best is None or (mid < best if extremum == "min" else mid > best):
                best = mid
        if (psi_mid < target) == increasing:
            low = mid
        else:
            high = mid
        iterations += 1
        logger.debug("%s iter=%d mid=%.4f psi=%.4f bracket=[%.4f, %.4f]", param_name, iterations, mid, psi_mid, low, high)

    value = best if best is not None else (low + high) / 2
    logger.info("%s: found %.3f after %d iterations (%d candidates)", param_name, value, iterations, len(candidates))
    return ThresholdSearch(
        param_name=param_name,
        target=target,
        extremum=extremum,
        value=value,
        increasing=increasing,
        psi_low=psi_low,
        psi_high=psi_high,
        reachable=True,
        iterations=iterations,
        candidates=candidates,
        **_spread(estimates),
    )


def find_parameter_for_psi(
    param_name: str,
    target: float,
    base_params: Parameters,
    p_min: float,
    p_max: float,
    tolerance: float = 0.02,
    extremum: str = "min",
    evaluate: Evaluator | None = None,
    max_iterations: int = 30,
) -> float:
    return search_threshold(
        param_name, target, base_params, p_min, p_max, tolerance, extremum, evaluate, max_iterations
    ).value


def threshold_extrema(virtuous: bool) -> Tuple[str, str]:
    """Extremum to request for the (autocratic, democratic) searches.

    A virtuous weight leaves autocracy at the last value still <= 0 and
    enters democracy at the first value >= 0.3; a harmful one the reverse.
    """
    return ("max", "min") if virtuous else ("min", "max")


@dataclass
class TransitionZone:
    key: str
    autocratic: float
    democratic: float
    virtuous: bool
    label: str = ""
    measured_increasing: bool | None = None
    warnings: List[str] = field(default_factory=list)

    @property
    def min(self) -> float:
        return min(self.autocratic, self.democratic)

    @property
    def max(self) -> float:
        return max(self.autocratic, self.democratic)

    @property
    def width(self) -> float:
        return abs(self.democratic - self.autocratic)

    def to_dict(self) -> Dict[str, object]:
        return dict(
            autocratic=self.autocratic,
            democratic=self.democratic,
            min=self.min,
            max=self.max,
            virtuous=self.virtuous,
        )


def quality_warnings(spec: ParameterSpec, searches: Sequence[ThresholdSearch]) -> List[str]:
    warnings: List[str] = []
    declared = "increasing" if spec.virtuous else "decreasing"
    directions = {s.increasing for s in searches}
    if len(directions) > 1:
        warnings.append("measured direction differs between searches")
    for s in searches:
        measured = "increasing" if s.increasing else "decreasing"
        if measured != declared:
            warnings.append(
                f"declared {declared} but psi measured {measured} for target {s.target:g} "
                f"(psi({spec.low:g})={s.psi_low:.3f}, psi({spec.high:g})={s.psi_high:.3f})"
            )
        if not s.reachable:
            warnings.append(f"target {s.target:g} unreachable in [{spec.low:g}, {spec.high:g}], bound {s.value:g} returned")
        if s.max_std > HIGH_VARIANCE_STD:
            warnings.append(f"noisy estimates for target {s.target:g} (max std {s.max_std:.3f})")
        if s.noisy:
            warnings.append(
                f"coefficient of variation {s.max_cv:.2f} for target {s.target:g} exceeds the warning level, raise K"
            )
    return warnings


def run_sensitivity_analysis(
    parameters: Parameters,
    progress_callback: Callable[[str, int, int], None] | None = None,
    config: SensitivityConfig | None = None,
    rng: UniformSource | None = None,
    cancel_event=None,
    parameter_specs: Sequence[ParameterSpec] | None = None,
    evaluate: Evaluator | None = None,
) -> Dict[str, TransitionZone]:
    """Transition zone of every tunable weight.

    ``cancel_event`` (anything with ``is_set()``) is checked between
    weights; a cancelled sweep returns the zones finished so far.
    """
    config = config if config is not None else SensitivityConfig()
    specs = list(parameter_specs) if parameter_specs is not None else list(TUNABLE_PARAMETERS)
    if evaluate is None:
        evaluate = SteadyStateEvaluator(config, rng).estimate
    total = len(specs)
    results: Dict[str, TransitionZone] = {}
    logger.info("sensitivity analysis: %d parameters, K=%d, n=%d", total, config.realizations, config.n_agents)

    for done, spec in enumerate(specs, start=1):
        if cancel_event is not None and cancel_event.is_set():
            logger.warning("sensitivity analysis cancelled after %d/%d parameters", done - 1, total)
            break
        autocratic_extremum, democratic_extremum = threshold_extrema(spec.virtuous)
        searches = [
            search_threshold(
                spec.key,
                target,
                parameters,
                spec.low,
                spec.high,
                tolerance=config.tolerance,
                extremum=extremum,
                evaluate=evaluate,
                max_iterations=config.max_iterations,
            )
            for target, extremum in (
                (AUTOCRATIC_PSI, autocratic_extremum),
                (DEMOCRATIC_PSI, democratic_extremum),
            )
        ]
        zone = TransitionZone(
            key=spec.key,
            autocratic=searches[0].value,
            democratic=searches[1].value,
            virtuous=spec.virtuous,
            label=spec.label,
            measured_increasing=searches[0].increasing,
            warnings=quality_warnings(spec, searches),
        )
        for message in zone.warnings:
            logger.warning("%s: %s", spec.key, message)
        logger.info(
            "%s (%s): zone [%.3f, %.3f] width=%.3f",
            spec.key,
            "virtuous" if spec.virtuous else "harmful",
            zone.autocratic,
            zone.democratic,
            zone.width,
        )
        results[spec.key] = zone
        if progress_callback is not None:
            progress_callback(spec.key, done, total)
    return results


def sensitivity_frame(zones: Dict[str, TransitionZone]) -> pd.DataFrame:
    rows = []
    for key, zone in zones.items():
        rows.append(
            dict(
                parameter=key,
                label=zone.label,
                kind="virtuous" if zone.virtuous else "harmful",
                autocratic=zone.autocratic,
                democratic=zone.democratic,
                min=zone.min,
                max=zone.max,
                width=zone.width,
                warnings="; ".join(zone.warnings),
            )
        )
    columns = ["parameter", "label", "kind", "autocratic", "democratic", "min", "max", "width", "warnings"]
    return pd.DataFrame(rows, columns=columns)


def sample_psi_curve(
    param_name: str,
    base_params: Parameters,
    p_min: float,
    p_max: float,
    num_points: int = 10,
    config: SensitivityConfig | None = None,
    rng: UniformSource | None = None,
    evaluate: Evaluator | None = None,
) -> pd.DataFrame:
    """Averaged psi on an evenly spaced grid over ``[p_min, p_max]``."""
    if num_points < 2:
        raise ValueError("num_points must be at least 2")
    if evaluate is None:
        config = config if config is not None else SensitivityConfig(n_agents=50)
        evaluate = SteadyStateEvaluator(config, rng).estimate
    rows = []
    for p in np.linspace(p_min, p_max, num_points):
        estimate = _evaluate(evaluate, base_params.with_value(param_name, float(p)))
        rows.append(dict(p=float(p), psi=estimate.mean, std=estimate.std))
    return pd.DataFrame(rows, columns=["p", "psi", "std"])


def early_stop_bias(
    parameters: Parameters,
    config: SensitivityConfig | None = None,
    rng: UniformSource | None = None,
) -> Dict[str, float]:
    """Compare averaged psi with and without the absorbing-boundary early stop."""
    config = config if config is not None else SensitivityConfig()
    source = rng if rng is not None else RandomSource()
    early = SteadyStateEvaluator(replace(config, early_stop=True), source).estimate(parameters)
    full = SteadyStateEvaluator(replace(config, early_stop=False), source).estimate(parameters)
    bias = early.mean - full.mean
    logger.info("early stop bias: %.4f (early=%.3f full=%.3f)", bias, early.mean, full.mean)
    return dict(
        early_mean=early.mean,
        early_std=early.std,
        full_mean=full.mean,
        full_std=full.std,
        bias=bias,
    )
