"""Tests for the page's sensitivity worker."""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from model import SessionContext
from sensitivity import SensitivityConfig
from server import run_analysis

TINY = SensitivityConfig(t_max=0.5, dt=0.05, n_agents=10, realizations=1, max_iterations=2)


def test_cancel_during_analysis_returns_partial_frame():
    ctx = SessionContext.create(n_agents=20, seed=42)
    seen = []

    def on_progress(update):
        seen.append(update)
        ctx.cancel_event.set()

    frame = run_analysis(ctx, TINY, on_progress=on_progress)
    assert seen == [("beta1", 1, 7)]
    assert ctx.progress == ("beta1", 1, 7)
    assert list(frame["parameter"]) == ["beta1"]
    assert list(ctx.sensitivity) == ["beta1"]


def test_analysis_does_not_touch_live_weights_or_stream():
    ctx = SessionContext.create(n_agents=20, seed=7)
    reference = SessionContext.create(n_agents=20, seed=7)
    weights = ctx.simulator.parameters.as_dict()

    run_analysis(ctx, TINY, on_progress=lambda update: ctx.cancel_event.set())

    assert ctx.simulator.parameters.as_dict() == weights
    ctx.simulator.advance(10, force=True)
    reference.simulator.advance(10, force=True)
    assert ctx.simulator.state()["order_parameter"] == reference.simulator.state()["order_parameter"]
