from dataclasses import dataclass, field
from typing import Dict, Optional
import math
import numpy as np
import pandas as pd

import network_state as NS
from network_state import NetworkConfig, NetworkSnapshot
from topology_discovery import TopologyIndex
import phase_allocation
import thermal_correction

# Bus types of the radial tree
SUBSTATION, BIFURCATION, INTERMEDIATE, NEXT_TO_END, END = 1, 2, 3, 4, 5


@dataclass
class PreparedNetwork:
    """Arrays and tables of one calculation, indexed by preorder number."""
    buses: pd.DataFrame = field(default_factory=pd.DataFrame)
    lines: pd.DataFrame = field(default_factory=pd.DataFrame)
    loads: pd.DataFrame = field(default_factory=pd.DataFrame)
    allocations: Dict = field(default_factory=dict)
    parent: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    s_load: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=complex))
    r_phase: np.ndarray = field(default_factory=lambda: np.zeros(0))
    r_neutral: np.ndarray = field(default_factory=lambda: np.zeros(0))
    ELN: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=complex))
    ELL: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=complex))
    z_transformer: complex = 0j


def working_buses(topology: TopologyIndex) -> pd.DataFrame:
    """
    Classifies each reachable bus as substation, bifurcation, intermediate,
    next-to-end or end, and numbers them in preorder (parents first).
    """
    order = topology.preorder()
    number = {bus: i for i, bus in enumerate(order)}
    rows = []
    for bus in order:
        children = topology.children(bus)
        if bus == topology.source:
            bus_type = SUBSTATION
        elif len(children) == 0:
            bus_type = END
        elif len(children) > 1:
            bus_type = BIFURCATION
        elif len(topology.children(children[0])) == 0:
            bus_type = NEXT_TO_END
        else:
            bus_type = INTERMEDIATE
        parent = topology.parent(bus)
        rows.append({
            "id": bus,
            "number": number[bus],
            "type": bus_type,
            "parent_number": -1 if parent is None else number[parent],
            "cable_id": topology.parent_cable(bus),
        })
    return pd.DataFrame(rows, columns=["id", "number", "type", "parent_number", "cable_id"])


def working_lines(snapshot: NetworkSnapshot, topology: TopologyIndex, config: NetworkConfig,
                  currents: Optional[Dict] = None) -> pd.DataFrame:
    """
    Tree cables with their 20 degC and temperature-corrected resistances (ohm).
    `currents` maps cable id -> largest phase current (A) of the previous solve.
    """
    cables = snapshot.cables.set_index("id")
    types = snapshot.cable_types.set_index("id")
    rows = []
    for bus in topology.preorder():
        if bus == topology.source:
            continue
        cab_id = topology.parent_cable(bus)
        cab = cables.loc[cab_id]
        typ = types.loc[cab["type_id"]]
        km = topology.lengths[cab_id] / 1000.0
        if config.thermal_correction:
            current = 0.0 if currents is None else currents.get(cab_id, 0.0)
            factor = thermal_correction.correction_factor(
                config.season, cab["pose"], typ["material"], current, typ["max_current_a"])
        else:
            factor = 1.0
        rows.append({
            "id": cab_id,
            "bus1": topology.parent(bus),
            "bus2": bus,
            "length_m": topology.lengths[cab_id],
            "pose": cab["pose"],
            "material": typ["material"],
            "max_current_a": float(typ["max_current_a"]),
            "factor": factor,
            "r_phase": float(typ["r_phase_ohm_km"]) * km * factor,
            "r_neutral": float(typ["r_neutral_ohm_km"]) * km * factor,
        })
    columns = ["id", "bus1", "bus2", "length_m", "pose", "material", "max_current_a",
               "factor", "r_phase", "r_neutral"]
    return pd.DataFrame(rows, columns=columns)


def transformer_impedance(config: NetworkConfig) -> complex:
    """Series impedance (ohm, phase equivalent) from rating, ucc and X/R."""
    if config.transformer_kva <= 0 or config.transformer_ucc_percent <= 0:
        return 0j
    z = config.transformer_ucc_percent / 100 * config.nominal_line_voltage ** 2 / (config.transformer_kva * 1000)
    r = z / math.sqrt(1 + config.transformer_x_over_r ** 2)
    return complex(r, r * config.transformer_x_over_r)


def scenario_factors(config: NetworkConfig, scenario: str):
    """Multipliers of (loads, productions) for a scenario."""
    load = config.load_diversity_percent / 100
    prod = config.production_diversity_percent / 100 * config.weather_factor
    if scenario == NS.CONSUMPTION:
        return load, 0.0
    if scenario == NS.MIXED:
        return load, prod
    if scenario == NS.PRODUCTION:
        return 0.0, prod
    raise ValueError(f"unknown scenario '{scenario}', expected one of {NS.SCENARIOS}")


def node_loads(buses: pd.DataFrame, allocations: Dict, config: NetworkConfig, scenario: str) -> pd.DataFrame:
    """Net complex power per phase (VA, consumption positive) of each bus."""
    k_load, k_prod = scenario_factors(config, scenario)
    sin_load = math.sqrt(max(0.0, 1 - config.cos_phi ** 2))
    sin_prod = math.sqrt(max(0.0, 1 - config.cos_phi_production ** 2))
    load_unit = complex(config.cos_phi, sin_load) * 1000
    prod_unit = complex(config.cos_phi_production, sin_prod) * 1000

    rows = []
    for bus in buses["id"]:
        alloc = allocations[bus]
        loads = alloc.loads * k_load
        prods = alloc.productions * k_prod
        s = loads * load_unit - prods * prod_unit
        rows.append({
            "id": bus,
            "load_kva_ph1": loads[0], "load_kva_ph2": loads[1], "load_kva_ph3": loads[2],
            "prod_kva_ph1": prods[0], "prod_kva_ph2": prods[1], "prod_kva_ph3": prods[2],
            "s_ph1": s[0], "s_ph2": s[1], "s_ph3": s[2],
        })
    return pd.DataFrame(rows)


def data_preparation(snapshot: NetworkSnapshot, topology: TopologyIndex, config: NetworkConfig,
                     scenario: str, currents: Optional[Dict] = None) -> PreparedNetwork:
    """
    Prepares every array the sweep needs: bus numbering, line resistances,
    per-phase powers and the base voltages at the source.
    """
    # 1. Classify and number buses
    buses = working_buses(topology)

    # 2. Line resistances with temperature correction
    lines = working_lines(snapshot, topology, config, currents)

    # 3. Base nominal voltages and transformer impedance
    ELN, ELL = NS.base_voltages(config)
    z_transformer = transformer_impedance(config)

    # 4. Phase allocation and scenario powers
    allocations = phase_allocation.network_allocation(snapshot, config, buses["id"])
    loads = node_loads(buses, allocations, config, scenario)

    # 5. Arrays by bus number, the cable of bus i is the one feeding it
    n = len(buses)
    r_phase = np.zeros(n)
    r_neutral = np.zeros(n)
    if not lines.empty:
        number = dict(zip(buses["id"], buses["number"]))
        idx = lines["bus2"].map(number).to_numpy(dtype=int)
        r_phase[idx] = lines["r_phase"].to_numpy()
        r_neutral[idx] = lines["r_neutral"].to_numpy()
    s_load = loads[["s_ph1", "s_ph2", "s_ph3"]].to_numpy(dtype=complex)

    return PreparedNetwork(
        buses=buses,
        lines=lines,
        loads=loads,
        allocations=allocations,
        parent=buses["parent_number"].to_numpy(dtype=int),
        s_load=s_load,
        r_phase=r_phase,
        r_neutral=r_neutral,
        ELN=ELN,
        ELL=ELL,
        z_transformer=z_transformer,
    )
