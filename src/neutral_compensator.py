"""
Neutral current compensator (EQUI8), vendor CME formulas:

    dU_eq  = dU * 2 Zph / (Zph + Zn) / (0.9119 ln(Zph) + 3.8654)
    U_eq,i = U_mean + (U_i - U_mean) / dU * dU_eq
    I_eq   = 0.392 * Zph^-0.8065 * dU * 2 Zph / (Zph + Zn)

with dU = Umax - Umin of the voltages before compensation.
"""
from dataclasses import dataclass
from typing import Optional, Tuple
import math
import numpy as np


MIN_IMPEDANCE_OHM = 0.15
MIN_SPREAD_V = 0.01
THERMAL_LIMITS_A = {"15min": 80.0, "3h": 60.0, "permanent": 45.0}


@dataclass
class CompensatorConfig:
    node_id: object = None
    name: str = ""
    enabled: bool = True
    max_power_kva: float = 30.0
    tolerance_a: float = 5.0
    zph_ohm: Optional[float] = None          # None: upstream impedance of the node
    zn_ohm: Optional[float] = None
    thermal_window: Optional[str] = None     # "15min", "3h" or "permanent"


@dataclass
class CompensatorResult:
    node_id: object = None
    active: bool = False
    eligible: bool = True
    advisory: str = ""
    zph_ohm: float = 0.0
    zn_ohm: float = 0.0
    impedance_clamped: bool = False
    initial_voltages: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    compensated_voltages: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    mean_voltage: float = 0.0
    initial_spread_v: float = 0.0
    compensated_spread_v: float = 0.0
    neutral_current_initial_a: float = 0.0
    injected_current_a: float = 0.0
    neutral_current_after_a: float = 0.0
    reduction_percent: float = 0.0
    limited: bool = False
    thermal_limited: bool = False
    reactive_power_kvar: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    injected_phasor: complex = 0j

    @property
    def voltage_scale(self) -> np.ndarray:
        """Per-phase factor from initial to compensated magnitudes."""
        return np.array([c / i if i > 0 else 1.0
                         for c, i in zip(self.compensated_voltages, self.initial_voltages)])


def neutral_current(currents) -> complex:
    """Vector sum of the three phase currents."""
    return complex(np.sum(np.asarray(currents, dtype=complex)))


def clamp_impedances(zph: float, zn: float) -> Tuple[float, float, bool]:
    zph_eff = max(MIN_IMPEDANCE_OHM, float(zph))
    zn_eff = max(MIN_IMPEDANCE_OHM, float(zn))
    return zph_eff, zn_eff, (zph_eff != zph or zn_eff != zn)


def cme_targets(voltages, zph: float, zn: float) -> Tuple[Tuple[float, float, float], float]:
    """Compensated voltages and the target spread for already clamped impedances."""
    u = [float(v) for v in voltages]
    u_mean = sum(u) / 3
    spread = max(u) - min(u)
    if spread < MIN_SPREAD_V:
        return tuple(u), spread
    factor = 2 * zph / (zph + zn)
    spread_eq = spread * factor / (0.9119 * math.log(zph) + 3.8654)
    return tuple(u_mean + (v - u_mean) / spread * spread_eq for v in u), spread_eq


def compensate(config: CompensatorConfig, voltages, currents, zph: float, zn: float,
               four_wire: bool = True) -> CompensatorResult:
    """
    Compensation at the node for the given voltages (reported reference) and
    phase currents (complex, A) of the cable feeding it. zph and zn are the
    upstream impedances used when the config leaves them unset.
    """
    u = tuple(float(v) for v in voltages)
    i_n = neutral_current(currents)
    zph_in = config.zph_ohm if config.zph_ohm is not None else zph
    zn_in = config.zn_ohm if config.zn_ohm is not None else zn
    zph_eff, zn_eff, clamped = clamp_impedances(zph_in, zn_in)
    spread = max(u) - min(u)

    result = CompensatorResult(
        node_id=config.node_id,
        zph_ohm=zph_eff,
        zn_ohm=zn_eff,
        impedance_clamped=clamped,
        initial_voltages=u,
        compensated_voltages=u,
        mean_voltage=sum(u) / 3,
        initial_spread_v=spread,
        compensated_spread_v=spread,
        neutral_current_initial_a=abs(i_n),
        neutral_current_after_a=abs(i_n),
    )
    if not four_wire:
        result.eligible = False
        result.advisory = "three-wire network, no neutral to compensate"
    elif spread < MIN_SPREAD_V and abs(i_n) <= config.tolerance_a:
        result.eligible = False
        result.advisory = "no imbalance at the node"

    if not config.enabled:
        return result
    if abs(i_n) <= config.tolerance_a or spread < MIN_SPREAD_V:
        return result

    targets, spread_eq = cme_targets(u, zph_eff, zn_eff)
    factor = 2 * zph_eff / (zph_eff + zn_eff)
    injected = 0.392 * zph_eff ** -0.8065 * spread * factor

    u_mean = result.mean_voltage
    power_kva = math.sqrt(3) * u_mean * injected / 1000
    if power_kva > config.max_power_kva:
        result.limited = True
        injected = config.max_power_kva * 1000 / (math.sqrt(3) * u_mean)
    if config.thermal_window in THERMAL_LIMITS_A and injected > THERMAL_LIMITS_A[config.thermal_window]:
        result.thermal_limited = True
        injected = THERMAL_LIMITS_A[config.thermal_window]
    # never more than the neutral current itself
    injected = min(injected, abs(i_n))

    result.active = True
    result.compensated_voltages = targets
    result.compensated_spread_v = spread_eq
    result.injected_current_a = injected
    result.neutral_current_after_a = max(0.0, abs(i_n) - injected)
    result.reduction_percent = (1 - result.neutral_current_after_a / abs(i_n)) * 100 if abs(i_n) > 0 else 0.0
    result.injected_phasor = -injected * i_n / abs(i_n)
    q = min(math.sqrt(3) * u_mean * injected / 1000, config.max_power_kva) / 3
    result.reactive_power_kvar = (q, q, q)
    return result


def compensators_by_node(compensators) -> dict:
    return {comp.node_id: comp for comp in compensators}
