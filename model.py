"""Democratic adherence model: citizens, society and realizations (Mesa 3)."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Protocol, Tuple

import networkx as nx
import numpy as np
import pandas as pd
from mesa import Agent, Model

from equations import AgentDerivatives, MacroDerivatives, Parameters, agent_derivatives, macro_derivatives

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 1000
HISTORY_STRIDE = 10
NEAREST_FALLBACK = 5
CONTACT_RATE = 0.1
MAX_CONTACT_INTENSITY = 0.5

DEMOCRATIC_PSI = 0.3
AUTOCRATIC_PSI = 0.0

# Live geometry is a quarter of the unit square with a halved radius.
LIVE_AREA = 0.5
LIVE_RADIUS = 0.1
BATCH_AREA = 1.0
BATCH_RADIUS = 0.2

DEFAULT_INITIAL_CONDITIONS: Dict[str, float] = {
    "institutional_quality": 0.7,
    "gini": 0.3,
    "external_threat": 0.2,
}
INITIAL_CONDITION_ALIASES = {
    "institutionalQuality": "institutional_quality",
    "externalThreat": "external_threat",
}


class UniformSource(Protocol):
    def next_uniform(self) -> float:
        ...


class RandomSource:
    """Uniform draws in [0, 1) from a numpy Generator, seeded or not."""

    def __init__(self, seed: int | None = None, generator: np.random.Generator | None = None):
        self.rng = generator if generator is not None else np.random.default_rng(seed)

    def next_uniform(self) -> float:
        return float(self.rng.random())


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def gini(values: List[float]) -> float:
    arr = np.sort(np.asarray(values, dtype=float))
    n = arr.size
    if n == 0:
        return 0.0
    total = arr.sum()
    if total <= 0:
        return 0.0
    index = np.arange(1, n + 1)
    return float(np.sum((2 * index - n - 1) * arr) / (n * total))


def classify_regime(psi: float) -> str:
    if psi >= DEMOCRATIC_PSI:
        return "democratic"
    if psi <= AUTOCRATIC_PSI:
        return "autocratic"
    return "transition"


class Citizen(Agent):
    """One population member.

    Neighbors are stored as indices into the owning realization's
    ``population`` list, never as object references.
    """

    STATE_FIELDS = (
        "wealth",
        "education",
        "security",
        "economic_tolerance",
        "physical_tolerance",
        "cultural_tolerance",
        "civic_energy",
        "permeability",
        "democratic_adherence",
    )

    def __init__(self, model: "Realization", index: int, pos: Tuple[float, float]):
        super().__init__(model)
        self.index = index
        self.pos = pos
        self.neighbor_ids: Tuple[int, ...] = ()
        self.reset()

    @property
    def neighbors(self) -> List["Citizen"]:
        population = self.model.population
        return [population[i] for i in self.neighbor_ids]

    def reset(self):
        draw = self.model.source.next_uniform
        self.wealth = draw()
        self.education = draw()
        self.security = draw()
        self.economic_tolerance = draw() * 2 - 1
        self.physical_tolerance = draw() * 2 - 1
        self.cultural_tolerance = draw() * 2 - 1
        self.civic_energy = draw()
        self.permeability = draw()
        self.democratic_adherence = draw() * 2 - 1
        self.positive_contact = 0.0
        self.negative_contact = 0.0

    def neighborhood_average(self, field_name: str) -> float:
        if not self.neighbor_ids:
            return getattr(self, field_name)
        population = self.model.population
        total = sum(getattr(population[i], field_name) for i in self.neighbor_ids)
        return total / len(self.neighbor_ids)

    def apply_derivatives(self, d: AgentDerivatives, dt: float):
        self.democratic_adherence = clamp(self.democratic_adherence + d.democratic_adherence * dt, -1.0, 1.0)
        self.cultural_tolerance = clamp(self.cultural_tolerance + d.cultural_tolerance * dt, -1.0, 1.0)
        self.security = clamp(self.security + d.security * dt)
        self.permeability = clamp(self.permeability + d.permeability * dt)
        self.civic_energy = clamp(self.civic_energy + d.civic_energy * dt)
        self.economic_tolerance = clamp(self.economic_tolerance, -1.0, 1.0)
        self.physical_tolerance = clamp(self.physical_tolerance, -1.0, 1.0)
        self.wealth = max(0.0, self.wealth)

    def as_dict(self) -> Dict[str, float]:
        row = {"index": self.index, "x": self.pos[0], "y": self.pos[1]}
        row.update({key: getattr(self, key) for key in self.STATE_FIELDS})
        return row


class Society:
    """Macro state of one realization; holds the population by reference."""

    def __init__(self, agents: List[Citizen]):
        self.agents = agents
        self.gini = DEFAULT_INITIAL_CONDITIONS["gini"]
        self.precarity = 0.2
        self.diversity = 0.5
        self.institutional_quality = DEFAULT_INITIAL_CONDITIONS["institutional_quality"]
        self.polarization = 0.2
        self.perceived_threat = 0.2
        self.external_threat = DEFAULT_INITIAL_CONDITIONS["external_threat"]
        self.history: List[Dict[str, float]] = []

    def compute_gini(self) -> float:
        return gini([a.wealth for a in self.agents])

    def mean(self, field_name: str) -> float:
        if not self.agents:
            return 0.0
        return sum(getattr(a, field_name) for a in self.agents) / len(self.agents)

    def std_dev(self, field_name: str) -> float:
        if not self.agents:
            return 0.0
        # Population deviation (ddof=0): the agents are the whole system.
        return float(np.std([getattr(a, field_name) for a in self.agents]))

    def order_parameter(self) -> float:
        return self.mean("democratic_adherence") * self.institutional_quality

    def regime(self) -> str:
        return classify_regime(self.order_parameter())

    def apply_macro_derivatives(self, d: MacroDerivatives, dt: float):
        self.institutional_quality = clamp(self.institutional_quality + d.institutional_quality * dt)
        self.polarization = clamp(self.polarization + d.polarization * dt)
        self.perceived_threat = clamp(self.perceived_threat + d.perceived_threat * dt)
        self.gini = self.compute_gini()
        self.precarity = 1 - self.mean("security")

    def record_snapshot(self, time: float):
        self.history.append(
            {
                "time": time,
                "order_parameter": self.order_parameter(),
                "mean_adherence": self.mean("democratic_adherence"),
                "institutional_quality": self.institutional_quality,
                "polarization": self.polarization,
                "perceived_threat": self.perceived_threat,
            }
        )
        if len(self.history) > HISTORY_LIMIT:
            del self.history[0]

    def reinitialize(
        self,
        initial_quality: float = 0.7,
        initial_gini: float = 0.3,
        external_threat: float = 0.2,
    ):
        self.institutional_quality = initial_quality
        self.gini = initial_gini
        self.external_threat = external_threat
        self.precarity = 0.2
        self.polarization = 0.2
        self.perceived_threat = 0.2
        self.diversity = 0.5
        self.history = []
        for agent in self.agents:
            agent.reset()

    def snapshot(self) -> Dict[str, float]:
        return dict(
            order_parameter=self.order_parameter(),
            mean_adherence=self.mean("democratic_adherence"),
            institutional_quality=self.institutional_quality,
            polarization=self.polarization,
            perceived_threat=self.perceived_threat,
            gini=self.gini,
            precarity=self.precarity,
            external_threat=self.external_threat,
        )

    def history_frame(self) -> pd.DataFrame:
        columns = [
            "time",
            "order_parameter",
            "mean_adherence",
            "institutional_quality",
            "polarization",
            "perceived_threat",
        ]
        return pd.DataFrame(self.history, columns=columns)

    def export_history_csv(self, target) -> None:
        """Write ``time,order_parameter`` rows with six decimals."""
        frame = self.history_frame()[["time", "order_parameter"]]
        frame.to_csv(target, index=False, float_format="%.6f")


class Realization(Model):
    """One self-contained, runnable instance of the model.

    Owns its population, society and neighborhood graph; nothing is shared
    with other realizations except the (read-only) parameter set.
    """

    def __init__(
        self,
        n_agents: int = 100,
        parameters: Parameters | None = None,
        dt: float = 0.01,
        area: float = BATCH_AREA,
        radius: float = BATCH_RADIUS,
        rng: UniformSource | None = None,
        record_history: bool = False,
    ):
        if n_agents < 1:
            raise ValueError(f"n_agents must be positive, got {n_agents}")
        if dt <= 0:
            raise ValueError(f"dt must be positive, got {dt}")
        super().__init__()
        self.source = rng if rng is not None else RandomSource()
        self.parameters = parameters if parameters is not None else Parameters()
        self.dt = float(dt)
        self.area = float(area)
        self.radius = float(radius)
        self.record_history = record_history
        self.clock = 0.0
        self.step_count = 0
        self.fallback_count = 0

        self.population: List[Citizen] = []
        for i in range(n_agents):
            x = self.source.next_uniform() * self.area
            y = self.source.next_uniform() * self.area
            self.population.append(Citizen(self, i, (x, y)))
        self.neighborhood = self.build_neighborhoods()
        self.society = Society(self.population)
        self.running = True

    @property
    def n_agents(self) -> int:
        return len(self.population)

    def build_neighborhoods(self) -> nx.DiGraph:
        """Radius graph with a k-nearest fallback for isolated agents."""
        n = len(self.population)
        coords = np.array([a.pos for a in self.population], dtype=float)
        dist = np.sqrt(((coords[:, None, :] - coords[None, :, :]) ** 2).sum(axis=-1))
        graph = nx.DiGraph()
        graph.add_nodes_from(range(n))
        self.fallback_count = 0
        for i in range(n):
            close = [int(j) for j in np.flatnonzero(dist[i] < self.radius) if j != i]
            if not close:
                order = np.argsort(dist[i], kind="stable")
                close = [int(j) for j in order if j != i][:NEAREST_FALLBACK]
                if close:
                    self.fallback_count += 1
            graph.add_edges_from((i, j) for j in close)
            self.population[i].neighbor_ids = tuple(graph.successors(i))
        logger.debug(
            "neighborhoods built: n=%d edges=%d fallback=%d",
            n,
            graph.number_of_edges(),
            self.fallback_count,
        )
        return graph

    def neighborhood_stats(self) -> Dict[str, float]:
        graph = self.neighborhood
        degrees = np.array([d for _, d in graph.out_degree()], dtype=float)
        has_edges = graph.number_of_edges() > 0
        return {
            "degree_mean": float(degrees.mean()) if degrees.size else 0.0,
            "degree_std": float(degrees.std()) if degrees.size else 0.0,
            "fallback_share": self.fallback_count / max(1, self.n_agents),
            "reciprocity": float(nx.overall_reciprocity(graph)) if has_edges else 0.0,
        }

    def contact_pass(self):
        probability = self.society.diversity * CONTACT_RATE
        draw = self.source.next_uniform
        for agent in self.population:
            agent.positive_contact = 0.0
            agent.negative_contact = 0.0
            if draw() < probability:
                intensity = draw() * MAX_CONTACT_INTENSITY
                if agent.cultural_tolerance > 0:
                    agent.positive_contact = intensity
                else:
                    agent.negative_contact = intensity

    def step(self):
        self.contact_pass()
        # Every rate is taken from the pre-step state before anything moves.
        rates = [agent_derivatives(a, self.society, self.parameters) for a in self.population]
        macro = macro_derivatives(self.society, self.parameters)
        for agent, d in zip(self.population, rates):
            agent.apply_derivatives(d, self.dt)
        self.society.apply_macro_derivatives(macro, self.dt)
        self.clock += self.dt
        self.step_count += 1
        if self.record_history and self.step_count % HISTORY_STRIDE == 0:
            self.society.record_snapshot(self.clock)

    def should_stop(self, collapse_threshold: float = 0.05, democracy_threshold: float = 0.95) -> bool:
        society = self.society
        return society.institutional_quality <= collapse_threshold or society.order_parameter() >= democracy_threshold

    def run(
        self,
        t_max: float,
        early_stop: bool = True,
        collapse_threshold: float = 0.05,
        democracy_threshold: float = 0.95,
    ) -> float:
        """Integrate up to ``t_max`` and return the final order parameter."""
        n_steps = int(t_max / self.dt + 1e-9)
        for _ in range(n_steps):
            self.step()
            if early_stop and self.should_stop(collapse_threshold, democracy_threshold):
                self.running = False
                break
        return self.society.order_parameter()

    def reinitialize(self, initial_quality: float, initial_gini: float, external_threat: float):
        self.clock = 0.0
        self.step_count = 0
        self.running = True
        self.society.reinitialize(initial_quality, initial_gini, external_threat)


class Simulator:
    """Interactive driver around a single live realization.

    ``start``/``pause`` only flip a flag; the caller's loop decides when to
    call ``advance``.
    """

    def __init__(
        self,
        n_agents: int = 100,
        dt: float = 0.01,
        parameters: Parameters | None = None,
        rng: UniformSource | None = None,
        area: float = LIVE_AREA,
        radius: float = LIVE_RADIUS,
    ):
        self.parameters = parameters if parameters is not None else Parameters()
        self.source = rng if rng is not None else RandomSource()
        self.dt = float(dt)
        self.area = area
        self.radius = radius
        self.running = False
        self.initial_conditions = dict(DEFAULT_INITIAL_CONDITIONS)
        self.realization = self._build(n_agents)

    def _build(self, n_agents: int) -> Realization:
        realization = Realization(
            n_agents=n_agents,
            parameters=self.parameters,
            dt=self.dt,
            area=self.area,
            radius=self.radius,
            rng=self.source,
            record_history=True,
        )
        society = realization.society
        society.institutional_quality = self.initial_conditions["institutional_quality"]
        society.gini = self.initial_conditions["gini"]
        society.external_threat = self.initial_conditions["external_threat"]
        return realization

    @property
    def time(self) -> float:
        return self.realization.clock

    @property
    def society(self) -> Society:
        return self.realization.society

    @property
    def population(self) -> List[Citizen]:
        return self.realization.population

    @property
    def n_agents(self) -> int:
        return self.realization.n_agents

    def start(self):
        self.running = True

    def pause(self):
        self.running = False

    def step(self):
        self.realization.step()

    def advance(self, n: int = 1, force: bool = False) -> int:
        done = 0
        for _ in range(n):
            if not (self.running or force):
                break
            self.realization.step()
            done += 1
        return done

    def reset(self, n_agents: int | None = None):
        self.running = False
        if n_agents is not None and n_agents != self.n_agents:
            self.realization = self._build(n_agents)
            logger.info("population rebuilt with %d agents", n_agents)
            return
        self.realization.reinitialize(
            self.initial_conditions["institutional_quality"],
            self.initial_conditions["gini"],
            self.initial_conditions["external_threat"],
        )

    def set_parameter(self, name: str, value: float) -> bool:
        return self.parameters.set(name, value)

    def set_initial_condition(self, name: str, value: float) -> bool:
        key = INITIAL_CONDITION_ALIASES.get(name, name)
        if key not in self.initial_conditions:
            return False
        self.initial_conditions[key] = float(value)
        setattr(self.society, key, float(value))
        return True

    def set_time_step(self, dt: float):
        if dt <= 0:
            raise ValueError(f"dt must be positive, got {dt}")
        self.dt = float(dt)
        self.realization.dt = self.dt

    def set_population_size(self, n_agents: int):
        self.reset(n_agents)

    def state(self) -> Dict[str, object]:
        society = self.society
        psi = society.order_parameter()
        return dict(
            time=self.time,
            order_parameter=psi,
            mean_adherence=society.mean("democratic_adherence"),
            institutional_quality=society.institutional_quality,
            polarization=society.polarization,
            perceived_threat=society.perceived_threat,
            gini=society.gini,
            regime=classify_regime(psi),
            running=self.running,
        )

    def population_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [dict(index=a.index, x=a.pos[0], y=a.pos[1], democratic_adherence=a.democratic_adherence) for a in self.population]
        )

    def export_history_csv(self, target) -> None:
        self.society.export_history_csv(target)


@dataclass
class SessionContext:
    """Everything one interactive session owns."""

    simulator: Simulator
    sensitivity: Dict[str, object] = field(default_factory=dict)
    progress: Tuple[str, int, int] | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def create(cls, n_agents: int = 100, dt: float = 0.01, seed: int | None = None) -> "SessionContext":
        return cls(simulator=Simulator(n_agents=n_agents, dt=dt, rng=RandomSource(seed)))

    def batch_source(self) -> RandomSource:
        """Independent stream for sensitivity sweeps.

        Spawned children never advance the live generator, so the
        interactive trajectory is unaffected by any sweep.
        """
        live = self.simulator.source
        if isinstance(live, RandomSource):
            return RandomSource(generator=live.rng.spawn(1)[0])
        return RandomSource()

    def report_progress(self, name: str, done: int, total: int):
        self.progress = (name, done, total)
