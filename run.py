import argparse
import json
import logging
import os

import numpy as np

from equations import TUNABLE_PARAMETERS, Parameters
from model import RandomSource, Simulator
from sensitivity import SensitivityConfig, early_stop_bias, run_sensitivity_analysis, sample_psi_curve, sensitivity_frame


parser = argparse.ArgumentParser()
parser.add_argument("--steps", type=int, default=1000)
parser.add_argument("--agents", type=int, default=100)
parser.add_argument("--dt", type=float, default=0.01)
parser.add_argument("--seed", type=int, default=None)

parser.add_argument("--initialquality", type=float, default=0.7)
parser.add_argument("--initialgini", type=float, default=0.3)
parser.add_argument("--externalthreat", type=float, default=0.2)

# Tunable weights; anything not given keeps its model default.
for _spec in TUNABLE_PARAMETERS:
    parser.add_argument(f"--{_spec.key}", type=float, default=None)

parser.add_argument("--sensitivity", action="store_true", default=False)
parser.add_argument("--realizations", type=int, default=10)
parser.add_argument("--tmax", type=float, default=100.0)
parser.add_argument("--batchdt", type=float, default=0.02)
parser.add_argument("--batchagents", type=int, default=75)
parser.add_argument("--tolerance", type=float, default=0.02)
parser.add_argument("--curve", type=str, default=None)
parser.add_argument("--curvepoints", type=int, default=10)
parser.add_argument("--checkearlystop", action="store_true", default=False)

parser.add_argument("--outdir", type=str, default="results")
parser.add_argument("--loglevel", type=str, default="INFO")

args, unknown = parser.parse_known_args()


def build_parameters() -> Parameters:
    params = Parameters()
    for spec in TUNABLE_PARAMETERS:
        value = getattr(args, spec.key)
        if value is not None:
            params.set(spec.key, value)
    return params


def run_live(params: Parameters) -> None:
    simulator = Simulator(n_agents=args.agents, dt=args.dt, parameters=params, rng=RandomSource(args.seed))
    simulator.set_initial_condition("institutional_quality", args.initialquality)
    simulator.set_initial_condition("gini", args.initialgini)
    simulator.set_initial_condition("external_threat", args.externalthreat)

    print("Starting simulation...")
    stats = simulator.realization.neighborhood_stats()
    print(
        f"Neighborhoods: mean degree={stats['degree_mean']:.2f} "
        f"fallback={stats['fallback_share']:.1%} reciprocity={stats['reciprocity']:.2f}"
    )

    simulator.start()
    for step in range(args.steps):
        simulator.advance(1)
        if step % 100 == 0:
            s = simulator.state()
            print(
                f"t={s['time']:.2f} | Regime={s['regime']} "
                f"Psi={s['order_parameter']:.3f} "
                f"Q={s['institutional_quality']:.3f} "
                f"Phi={s['polarization']:.3f} "
                f"M={s['perceived_threat']:.3f}"
            )
    simulator.pause()

    final = simulator.state()
    print("\n" + "=" * 30 + " FINAL STATE " + "=" * 30)
    for key in ("order_parameter", "mean_adherence", "institutional_quality", "polarization", "perceived_threat", "gini"):
        print(f"{key:24} {final[key]:8.3f}")
    print(f"{'regime':24} {final['regime']:>8}")

    population = simulator.population_frame()
    alpha = population["democratic_adherence"].to_numpy()
    print(
        f"\nAdherence: mean={np.mean(alpha):.3f} std={np.std(alpha):.3f} "
        f"share>0={np.mean(alpha > 0):.1%}"
    )

    os.makedirs(args.outdir, exist_ok=True)
    series_path = os.path.join(args.outdir, "psi_timeseries.csv")
    simulator.export_history_csv(series_path)
    simulator.society.history_frame().to_csv(os.path.join(args.outdir, "macro_history.csv"), index=False)
    population.to_csv(os.path.join(args.outdir, "population.csv"), index=False)
    print(f"Data saved in {series_path}, {args.outdir}/macro_history.csv and {args.outdir}/population.csv")


def print_progress(name: str, done: int, total: int) -> None:
    print(f"[{done}/{total}] {name} done")


def run_batch(params: Parameters) -> None:
    config = SensitivityConfig(
        t_max=args.tmax,
        dt=args.batchdt,
        n_agents=args.batchagents,
        realizations=args.realizations,
        tolerance=args.tolerance,
    )
    rng = RandomSource(args.seed)
    os.makedirs(args.outdir, exist_ok=True)

    if args.checkearlystop:
        bias = early_stop_bias(params, config, rng)
        print(
            f"Early stop psi={bias['early_mean']:.3f}±{bias['early_std']:.3f} | "
            f"full psi={bias['full_mean']:.3f}±{bias['full_std']:.3f} | bias={bias['bias']:+.4f}"
        )

    if args.curve:
        spec = next((s for s in TUNABLE_PARAMETERS if s.key == args.curve), None)
        if spec is None:
            print(f"Unknown parameter {args.curve}, curve skipped")
        else:
            curve = sample_psi_curve(spec.key, params, spec.low, spec.high, args.curvepoints, config, rng)
            curve.to_csv(os.path.join(args.outdir, f"psi_curve_{spec.key}.csv"), index=False)
            print(curve.to_string(index=False, float_format=lambda v: f"{v:.3f}"))

    print("Starting sensitivity analysis...")
    zones = run_sensitivity_analysis(params, progress_callback=print_progress, config=config, rng=rng)
    frame = sensitivity_frame(zones)

    print("\n" + "=" * 30 + " TRANSITION ZONES " + "=" * 30)
    print(f"{'Parameter':10} {'Type':10} {'p_auto':>8} {'p_demo':>8} {'width':>8}")
    print("-" * 50)
    for row in frame.itertuples(index=False):
        print(f"{row.parameter:10} {row.kind:10} {row.autocratic:8.3f} {row.democratic:8.3f} {row.width:8.3f}")
        if row.warnings:
            print(f"  ! {row.warnings}")

    frame.to_csv(os.path.join(args.outdir, "sensitivity_zones.csv"), index=False)
    with open(os.path.join(args.outdir, "sensitivity_zones.json"), "w", encoding="utf-8") as f:
        payload = {
            "config": vars(config),
            "parameters": params.as_dict(),
            "zones": {key: zone.to_dict() for key, zone in zones.items()},
        }
        json.dump(payload, f, ensure_ascii=False, indent=2)
    print(f"Data saved in {args.outdir}/sensitivity_zones.csv and {args.outdir}/sensitivity_zones.json")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, args.loglevel.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    params = build_parameters()
    if args.sensitivity:
        run_batch(params)
    else:
        run_live(params)


if __name__ == "__main__":
    main()
