from __future__ import annotations

from dataclasses import replace
from typing import Dict

from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure
import pandas as pd
import solara

from equations import TUNABLE_PARAMETERS
from model import DEMOCRATIC_PSI, SessionContext, Simulator
from sensitivity import SensitivityConfig, run_sensitivity_analysis, sensitivity_frame

DEFAULTPARAMS: Dict[str, object] = dict(
    seed=42,
    agents=100,
    dt=0.01,
    institutional_quality=0.7,
    gini=0.3,
    external_threat=0.2,
    realizations=3,
    batch_agents=40,
    batch_tmax=20.0,
)


def makeagentfigure(simulator: Simulator) -> Figure:
    fig = Figure(figsize=(5.5, 5.5))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)
    frame = simulator.population_frame()
    if not frame.empty:
        ax.scatter(
            frame["x"],
            frame["y"],
            c=frame["democratic_adherence"],
            cmap="RdYlGn",
            vmin=-1,
            vmax=1,
            s=40,
            alpha=0.85,
            edgecolors="k",
            linewidths=0.4,
        )
    ax.set_xlim(0, simulator.area)
    ax.set_ylim(0, simulator.area)
    ax.set_xticks([])
    ax.set_yticks([])
    ax.set_title("Agents: colour = democratic adherence")
    return fig


def makelinefigure(history: pd.DataFrame, column: str, title: str, color: str) -> Figure:
    fig = Figure(figsize=(4.5, 3))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)
    if column in history and not history.empty:
        ax.plot(history["time"], history[column], color=color, linewidth=2)
        ax.set_ylabel(column)
    else:
        ax.text(0.5, 0.5, "no data", ha="center", va="center")
    if column == "order_parameter":
        ax.axhline(DEMOCRATIC_PSI, color="#16a34a", linestyle="--", linewidth=1)
        ax.axhline(0.0, color="#dc2626", linestyle="--", linewidth=1)
    ax.set_title(title)
    ax.set_xlabel("t")
    ax.grid(True, linestyle="--", alpha=0.3)
    return fig


def run_analysis(ctx: SessionContext, config: SensitivityConfig, on_progress=None) -> pd.DataFrame:
    ctx.cancel_event.clear()
    # Snapshot the weights so live tuning cannot leak into a running sweep.
    params = replace(ctx.simulator.parameters)

    def progress(name, done, total):
        ctx.report_progress(name, done, total)
        if on_progress is not None:
            on_progress((name, done, total))

    zones = run_sensitivity_analysis(
        params,
        progress_callback=progress,
        config=config,
        rng=ctx.batch_source(),
        cancel_event=ctx.cancel_event,
    )
    ctx.sensitivity = {key: zone.to_dict() for key, zone in zones.items()}
    return sensitivity_frame(zones)


@solara.component
def InfoPanel(ctx: SessionContext):
    s = ctx.simulator.state()
    return solara.Card(
        title="Metrics",
        children=[
            solara.Markdown(f"**Regime:** {s['regime']}"),
            solara.Markdown(f"Psi={s['order_parameter']:.3f} | <alpha>={s['mean_adherence']:.3f}"),
            solara.Markdown(
                f"Q={s['institutional_quality']:.3f} | "
                f"Phi={s['polarization']:.3f} | M={s['perceived_threat']:.3f}"
            ),
            solara.Markdown(f"Gini={s['gini']:.3f} | t={s['time']:.2f}"),
        ],
    )


@solara.component
def Controls(ctx: SessionContext, paramsstate, refresh):
    p = paramsstate.value
    simulator = ctx.simulator

    def setparam(key, value):
        paramsstate.value = {**paramsstate.value, key: value}

    def setweight(key, value):
        simulator.set_parameter(key, float(value))
        refresh()

    def setinitial(key, value):
        setparam(key, float(value))
        simulator.set_initial_condition(key, float(value))
        refresh()

    def settimestep(value):
        setparam("dt", float(value))
        simulator.set_time_step(float(value))

    solara.Markdown("### Weights")
    for spec in TUNABLE_PARAMETERS:
        solara.SliderFloat(
            f"{spec.key} ({spec.label})",
            value=float(getattr(simulator.parameters, spec.key)),
            min=spec.low,
            max=spec.high,
            step=0.05,
            on_value=lambda v, key=spec.key: setweight(key, v),
        )

    solara.Markdown("### Initial conditions")
    solara.SliderFloat("Q0", value=float(p["institutional_quality"]), min=0.0, max=1.0, step=0.05,
                       on_value=lambda v: setinitial("institutional_quality", v))
    solara.SliderFloat("Gini0", value=float(p["gini"]), min=0.0, max=1.0, step=0.05,
                       on_value=lambda v: setinitial("gini", v))
    solara.SliderFloat("External threat", value=float(p["external_threat"]), min=0.0, max=1.0, step=0.05,
                       on_value=lambda v: setinitial("external_threat", v))

    solara.Markdown("### Simulation")
    solara.SliderInt("Agents", value=int(p["agents"]), min=10, max=500, step=10,
                     on_value=lambda v: setparam("agents", int(v)))
    solara.SliderFloat("dt", value=float(p["dt"]), min=0.001, max=0.1, step=0.001,
                       on_value=settimestep)


@solara.component
def SensitivityPanel(ctx: SessionContext, paramsstate):
    p = paramsstate.value
    runid = solara.use_reactive(0)
    progress = solara.use_reactive(None)

    def work():
        if runid.value == 0:
            return None
        config = SensitivityConfig(
            t_max=float(p["batch_tmax"]),
            n_agents=int(p["batch_agents"]),
            realizations=int(p["realizations"]),
        )
        return run_analysis(ctx, config, on_progress=progress.set)

    # The sweep runs off the render thread so Cancel and progress stay live.
    result = solara.use_thread(work, dependencies=[runid.value], intrusive_cancel=False)
    busy = result.state == solara.ResultState.RUNNING

    def analyse():
        progress.value = None
        runid.value = runid.value + 1

    def setparam(key, value):
        paramsstate.value = {**paramsstate.value, key: value}

    with solara.Card(title="Sensitivity"):
        solara.SliderInt("Realizations K", value=int(p["realizations"]), min=1, max=20,
                         on_value=lambda v: setparam("realizations", int(v)))
        solara.SliderInt("Agents per realization", value=int(p["batch_agents"]), min=10, max=200, step=5,
                         on_value=lambda v: setparam("batch_agents", int(v)))
        solara.SliderFloat("t_max", value=float(p["batch_tmax"]), min=5.0, max=100.0, step=5.0,
                           on_value=lambda v: setparam("batch_tmax", float(v)))
        solara.Button("Run analysis", on_click=analyse, color="primary", text=True, disabled=busy)
        solara.Button("Cancel", on_click=ctx.cancel_event.set, color="warning", text=True, disabled=not busy)
        if busy:
            solara.ProgressLinear(True)
        if progress.value:
            name, done, total = progress.value
            solara.Markdown(f"Progress: {name} ({done}/{total})")
        if result.state == solara.ResultState.ERROR:
            solara.Error(f"Analysis failed: {result.error}")
        elif result.value is not None:
            solara.DataFrame(result.value)


@solara.component
def Page():
    paramsstate = solara.use_reactive(dict(DEFAULTPARAMS))
    tick = solara.use_reactive(0)
    ctxref = solara.use_ref(None)

    if ctxref.current is None:
        p = paramsstate.value
        ctx = SessionContext.create(n_agents=int(p["agents"]), dt=float(p["dt"]), seed=int(p["seed"]))
        for key in ("institutional_quality", "gini", "external_threat"):
            ctx.simulator.set_initial_condition(key, float(p[key]))
        ctxref.current = ctx
    ctx = ctxref.current
    simulator = ctx.simulator

    def refresh():
        tick.value = tick.value + 1

    def advance(n: int, force: bool = False):
        simulator.advance(n, force=force)
        refresh()

    def start():
        simulator.start()
        advance(50)

    def pause():
        simulator.pause()
        refresh()

    def resetmodel():
        simulator.reset(int(paramsstate.value["agents"]))
        refresh()

    history = simulator.society.history_frame()

    with solara.Column(gap="1.25rem"):
        solara.Markdown("# Regime dynamics")
        with solara.Row(gap="1rem"):
            with solara.Column(gap="0.8rem", style={"minWidth": "320px"}):
                Controls(ctx=ctx, paramsstate=paramsstate, refresh=refresh)
                solara.Button("Start", on_click=start, color="primary", text=True)
                solara.Button("Pause", on_click=pause, text=True)
                solara.Button("Step", on_click=lambda: advance(1, force=True))
                solara.Button("Run x50", on_click=lambda: advance(50), text=True, color="primary")
                solara.Button("Run x1000", on_click=lambda: advance(1000), text=True, color="primary")
                solara.Button("Reset", on_click=resetmodel, icon_name="refresh", color="warning", text=True)
                solara.Markdown(f"**Running:** {simulator.running} | **Steps:** {simulator.realization.step_count}")

            with solara.Column(gap="1rem", style={"alignItems": "stretch"}):
                InfoPanel(ctx=ctx)
                solara.FigureMatplotlib(makeagentfigure(simulator))

        with solara.Tabs():
            with solara.Tab("Order parameter"):
                solara.FigureMatplotlib(makelinefigure(history, "order_parameter", "Psi", "#2563eb"))
                solara.FigureMatplotlib(makelinefigure(history, "mean_adherence", "Mean adherence", "#059669"))
            with solara.Tab("Macro"):
                solara.FigureMatplotlib(makelinefigure(history, "institutional_quality", "Institutional quality", "#9333ea"))
                solara.FigureMatplotlib(makelinefigure(history, "polarization", "Polarization", "#f59e0b"))
                solara.FigureMatplotlib(makelinefigure(history, "perceived_threat", "Perceived threat", "#dc2626"))
            with solara.Tab("Sensitivity"):
                SensitivityPanel(ctx=ctx, paramsstate=paramsstate)


if __name__ == "__main__":
    print("Run: python -m solara run server:Page")
