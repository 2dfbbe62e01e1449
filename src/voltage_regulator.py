"""
Series step voltage regulator (SRG2).

Each phase is switched independently on four thresholds:
    LO2 (full lowering)  V >= lower2
    LO1                  lower1 <= V < lower2
    BYP                  boost1 < V < lower1
    BO1                  boost2 < V <= boost1
    BO2 (full boost)     V <= boost2
and the output is V_in * (1 + coefficient / 100).
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import network_state as NS

INACTIVE, ACTIVE, FAULT, MAINTENANCE = "INACTIVE", "ACTIVE", "FAULT", "MAINTENANCE"
SRG2_400, SRG2_230 = "SRG2-400", "SRG2-230"
BOOST_STATES = ("BO1", "BO2")
LOWER_STATES = ("LO1", "LO2")

# Datasheet settings per regulator type
DEFAULTS = {
    SRG2_400: {"boost2_v": 214.0, "boost1_v": 222.0, "lower1_v": 238.0, "lower2_v": 246.0,
               "coef_boost2": 7.0, "coef_boost1": 3.5, "coef_lower1": -3.5, "coef_lower2": -7.0},
    SRG2_230: {"boost2_v": 216.0, "boost1_v": 223.0, "lower1_v": 237.0, "lower2_v": 244.0,
               "coef_boost2": 6.0, "coef_boost1": 3.0, "coef_lower1": -3.0, "coef_lower2": -6.0},
}


@dataclass
class RegulatorConfig:
    node_id: object = None
    name: str = ""
    enabled: bool = True
    fault: bool = False
    maintenance: bool = False
    regulator_type: str = SRG2_400
    mode: str = "AUTO"                       # AUTO or MANUAL
    manual_coefficients: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    reference_v: float = NS.REFERENCE_VOLTAGE
    boost2_v: float = 214.0
    boost1_v: float = 222.0
    lower1_v: float = 238.0
    lower2_v: float = 246.0
    coef_boost2: float = 7.0
    coef_boost1: float = 3.5
    coef_lower1: float = -3.5
    coef_lower2: float = -7.0
    hysteresis_v: float = 2.0
    max_load_kva: float = 100.0
    max_production_kva: float = 85.0


@dataclass
class RegulatorResult:
    node_id: object = None
    state: str = INACTIVE
    input_voltages: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    switch_states: Tuple[str, str, str] = ("BYP", "BYP", "BYP")
    coefficients: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    output_voltages: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    downstream_load_kva: float = 0.0
    downstream_production_kva: float = 0.0
    power_limit_reached: bool = False
    err_msg: str = ""

    @property
    def is_active(self) -> bool:
        return self.state == ACTIVE


def default_regulator(node_id, voltage_system: str = NS.FOUR_WIRE_400V, **overrides) -> RegulatorConfig:
    reg_type = SRG2_230 if voltage_system == NS.THREE_WIRE_230V else SRG2_400
    params = dict(DEFAULTS[reg_type])
    params.update(overrides)
    return RegulatorConfig(node_id=node_id, name=f"SRG2 {node_id}", regulator_type=reg_type, **params)


def regulator_state(config: RegulatorConfig) -> str:
    """Fault wins over maintenance, both win over the enabled flag."""
    if config.fault:
        return FAULT
    if config.maintenance:
        return MAINTENANCE
    return ACTIVE if config.enabled else INACTIVE


def check_thresholds(config: RegulatorConfig) -> str:
    if not (config.boost2_v < config.boost1_v < config.reference_v < config.lower1_v < config.lower2_v):
        return (f"regulator thresholds of node {config.node_id} are not ordered "
                f"(boost2 < boost1 < reference < lower1 < lower2)")
    return ""


def switch_state(voltage: float, config: RegulatorConfig, previous: Optional[str] = None) -> Tuple[str, float]:
    """
    Switch position and coefficient (%) for one phase. A phase already in a
    position keeps it until the voltage leaves the threshold by the hysteresis.
    """
    hyst = config.hysteresis_v if previous else 0.0
    if voltage >= config.lower2_v - (hyst if previous == "LO2" else 0.0):
        return "LO2", config.coef_lower2
    if voltage >= config.lower1_v - (hyst if previous == "LO1" else 0.0):
        return "LO1", config.coef_lower1
    if voltage <= config.boost2_v + (hyst if previous == "BO2" else 0.0):
        return "BO2", config.coef_boost2
    if voltage <= config.boost1_v + (hyst if previous == "BO1" else 0.0):
        return "BO1", config.coef_boost1
    return "BYP", 0.0


def coefficient_of(position: str, config: RegulatorConfig) -> float:
    return {
        "LO2": config.coef_lower2,
        "LO1": config.coef_lower1,
        "BO1": config.coef_boost1,
        "BO2": config.coef_boost2,
    }.get(position, 0.0)


def apply_three_wire_constraint(positions, voltages, reference: float = NS.REFERENCE_VOLTAGE) -> list:
    """
    A three-wire regulator cannot boost and lower at the same time: the phase
    furthest from the reference sets the direction, opposite phases bypass.
    """
    positions = list(positions)
    if not (any(p in BOOST_STATES for p in positions) and any(p in LOWER_STATES for p in positions)):
        return positions
    max_deviation = -1.0
    direction = "boost"
    for v in voltages:
        deviation = abs(v - reference)
        if deviation > max_deviation:
            max_deviation = deviation
            direction = "lower" if v > reference else "boost"
    blocked = BOOST_STATES if direction == "lower" else LOWER_STATES
    return ["BYP" if p in blocked else p for p in positions]


def regulate(config: RegulatorConfig, input_voltages, downstream_load_kva: float = 0.0,
             downstream_production_kva: float = 0.0, previous_states=None) -> RegulatorResult:
    """
    Regulator response to the input voltages measured at its node (reported
    reference, 230 V nominal). Not ACTIVE: zero coefficients, output = input.
    """
    vin = tuple(float(v) for v in input_voltages)
    result = RegulatorResult(
        node_id=config.node_id,
        state=regulator_state(config),
        input_voltages=vin,
        output_voltages=vin,
        downstream_load_kva=downstream_load_kva,
        downstream_production_kva=downstream_production_kva,
        power_limit_reached=(downstream_load_kva > config.max_load_kva
                             or downstream_production_kva > config.max_production_kva),
    )
    err_msg = check_thresholds(config)
    if err_msg:
        result.state = FAULT
        result.err_msg = err_msg
        return result
    if result.state != ACTIVE:
        return result

    if config.mode.upper() == "MANUAL":
        coefficients = [float(c) for c in config.manual_coefficients]
        positions = ["MANUAL" if c else "BYP" for c in coefficients]
    else:
        previous = previous_states or (None, None, None)
        positions = [switch_state(v, config, prev)[0] for v, prev in zip(vin, previous)]
        if config.regulator_type == SRG2_230:
            positions = apply_three_wire_constraint(positions, vin, config.reference_v)
        coefficients = [coefficient_of(p, config) for p in positions]

    result.switch_states = tuple(positions)
    result.coefficients = tuple(coefficients)
    result.output_voltages = tuple(v * (1 + c / 100) for v, c in zip(vin, coefficients))
    return result


def is_stabilized(current: RegulatorResult, previous: Optional[RegulatorResult]) -> bool:
    """No tap change between two successive solves."""
    if previous is None:
        return False
    return current.coefficients == previous.coefficients and current.state == previous.state


def regulators_by_node(regulators) -> Dict:
    """node id -> config, the last config given for a node wins."""
    return {reg.node_id: reg for reg in regulators}
