"""Coupled derivative equations of the democratic adherence model."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import TYPE_CHECKING, Dict, List, NamedTuple

if TYPE_CHECKING:  # pragma: no cover
    from model import Citizen, Society


@dataclass
class Parameters:
    # democratic adherence
    beta1: float = 0.5  # education
    beta2: float = 0.3  # insecurity erosion
    beta3: float = 0.4  # institutional effect
    beta4: float = 0.6  # fear
    # cultural tolerance
    gamma1: float = 0.3
    gamma2: float = 0.4
    gamma3: float = 0.5
    gamma4: float = 0.3
    # perceived security
    delta1: float = 0.4
    delta2: float = 0.3
    delta3: float = 0.2
    delta4: float = 0.3
    delta5: float = 0.2
    # permeability
    eta1: float = 0.3
    eta2: float = 0.4
    eta3: float = 0.3
    # civic energy
    lambda1: float = 0.4
    lambda2: float = 0.3
    lambda3: float = 0.3
    lambda4: float = 0.2
    # institutional quality
    mu1: float = 0.3  # democratic engagement
    mu2: float = 0.4  # authoritarian capture
    mu3: float = 0.2  # corruption by inequality
    # polarization
    nu1: float = 0.5
    nu2: float = 0.3
    nu3: float = 0.4
    # perceived threat
    rho1: float = 0.5
    rho2: float = 0.4
    rho3: float = 0.3
    rho4: float = 0.2

    @classmethod
    def names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def set(self, name: str, value: float) -> bool:
        """Set a named weight in place. Unknown names are ignored."""
        if name not in self.names():
            return False
        setattr(self, name, float(value))
        return True

    def with_value(self, name: str, value: float) -> "Parameters":
        if name not in self.names():
            return replace(self)
        return replace(self, **{name: float(value)})

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class ParameterSpec:
    key: str
    low: float
    high: float
    virtuous: bool
    label: str = ""


# Only these weights are exposed to interactive tuning and sensitivity analysis.
# virtuous: raising the weight raises the order parameter.
TUNABLE_PARAMETERS: List[ParameterSpec] = [
    ParameterSpec("beta1", 0.0, 2.0, True, "education"),
    ParameterSpec("beta2", 0.0, 2.0, False, "insecurity"),
    ParameterSpec("beta3", 0.0, 2.0, True, "institutions"),
    ParameterSpec("beta4", 0.0, 2.0, False, "fear"),
    ParameterSpec("mu1", 0.0, 1.0, True, "engagement"),
    ParameterSpec("mu2", 0.0, 1.0, False, "capture"),
    ParameterSpec("mu3", 0.0, 1.0, False, "corruption"),
]

TUNABLE_KEYS = [spec.key for spec in TUNABLE_PARAMETERS]


class AgentDerivatives(NamedTuple):
    democratic_adherence: float
    cultural_tolerance: float
    security: float
    permeability: float
    civic_energy: float


class MacroDerivatives(NamedTuple):
    institutional_quality: float
    polarization: float
    perceived_threat: float


def democratic_adherence_rate(agent: "Citizen", society: "Society", params: Parameters) -> float:
    """d(alpha)/dt = pi*<alpha>_n + b1*e*(1-alpha) - b2*(1-s)*alpha + b3*Q - b4*M*pi"""
    alpha = agent.democratic_adherence
    social_influence = agent.permeability * agent.neighborhood_average("democratic_adherence")
    education_effect = params.beta1 * agent.education * (1 - alpha)
    insecurity_erosion = -params.beta2 * (1 - agent.security) * alpha
    institutional_effect = params.beta3 * society.institutional_quality
    fear_effect = -params.beta4 * society.perceived_threat * agent.permeability
    return social_influence + education_effect + insecurity_erosion + institutional_effect + fear_effect


def cultural_tolerance_rate(agent: "Citizen", society: "Society", params: Parameters) -> float:
    tau = agent.cultural_tolerance
    openness = params.gamma1 * agent.education * (1 - tau)
    positive = params.gamma2 * agent.positive_contact * (1 - tau)
    negative = -params.gamma3 * agent.negative_contact * (1 + tau)
    retreat = -params.gamma4 * (1 - agent.security) * society.polarization * tau
    return openness + positive + negative + retreat


def security_rate(agent: "Citizen", society: "Society", params: Parameters) -> float:
    mean_wealth = society.mean("wealth")
    relative_wealth = agent.wealth / mean_wealth if mean_wealth > 0 else 1.0
    return (
        params.delta1 * relative_wealth
        + params.delta2 * society.institutional_quality
        - params.delta3 * society.precarity
        - params.delta4 * society.perceived_threat
        - params.delta5 * agent.permeability * society.polarization
    )


def permeability_rate(agent: "Citizen", society: "Society", params: Parameters) -> float:
    pi = agent.permeability
    critical_thinking = -params.eta1 * agent.education * pi
    vulnerability = params.eta2 * (1 - agent.security) * (1 - pi)
    media_pressure = params.eta3 * society.polarization * (1 - pi)
    return critical_thinking + vulnerability + media_pressure


def civic_energy_rate(agent: "Citizen", society: "Society", params: Parameters) -> float:
    s = agent.security
    availability = params.lambda1 * s * (1 - agent.civic_energy)
    exhaustion = -params.lambda2 * (1 - s)
    social_drive = params.lambda3 * agent.neighborhood_average("civic_energy")
    discouragement = -params.lambda4 * (1 - society.institutional_quality)
    return availability + exhaustion + social_drive + discouragement


def institutional_quality_rate(society: "Society", params: Parameters) -> float:
    """dQ/dt = mu1*<alpha>*<eps> - mu2*(1-<alpha>)*Phi - mu3*G"""
    mean_alpha = society.mean("democratic_adherence")
    engagement = params.mu1 * mean_alpha * society.mean("civic_energy")
    capture = -params.mu2 * (1 - mean_alpha) * society.polarization
    corruption = -params.mu3 * society.gini
    return engagement + capture + corruption


def polarization_rate(society: "Society", params: Parameters) -> float:
    return (
        params.nu1 * society.std_dev("democratic_adherence")
        + params.nu2 * society.gini
        - params.nu3 * society.mean("education") * society.institutional_quality
    )


def perceived_threat_rate(society: "Society", params: Parameters) -> float:
    real_threat = params.rho1 * society.external_threat
    amplification = params.rho2 * society.polarization * (1 - society.institutional_quality)
    xenophobia = params.rho3 * society.diversity * (1 - society.mean("cultural_tolerance"))
    resilience = -params.rho4 * society.mean("security")
    return real_threat + amplification + xenophobia + resilience


def agent_derivatives(agent: "Citizen", society: "Society", params: Parameters) -> AgentDerivatives:
    return AgentDerivatives(
        democratic_adherence=democratic_adherence_rate(agent, society, params),
        cultural_tolerance=cultural_tolerance_rate(agent, society, params),
        security=security_rate(agent, society, params),
        permeability=permeability_rate(agent, society, params),
        civic_energy=civic_energy_rate(agent, society, params),
    )


def macro_derivatives(society: "Society", params: Parameters) -> MacroDerivatives:
    return MacroDerivatives(
        institutional_quality=institutional_quality_rate(society, params),
        polarization=polarization_rate(society, params),
        perceived_threat=perceived_threat_rate(society, params),
    )
