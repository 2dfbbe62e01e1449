from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple
import math
import numpy as np
import pandas as pd

import network_state as NS

BALANCED_SPLIT = (33.33, 33.33, 33.34)
PHASE_INDEX = {"A": 0, "B": 1, "C": 2}
COUPLINGS = ("A-B", "B-C", "A-C")
MODES = ("mono_only", "all_clients")

UNBALANCE_WARNING = 10.0
UNBALANCE_CRITICAL = 20.0

# client field per quantity
QUANTITY_COLUMN = {"load": "contract_kva", "production": "pv_kva"}
NODE_COLUMN = {"load": "load_kva", "production": "production_kva"}


def normalize_connection_type(raw) -> str:
    """
    Standard connection type of a raw client coupling.
    Empty or undetermined values are single-phase, unknown values too.
    """
    value = raw.strip().upper() if isinstance(raw, str) else ""
    if value in ("MONO", "?", ""):
        return "MONO"
    if value in ("TRI", "TRIPHASÉ", "TRIPHASE"):
        return "TRI"
    if value in ("TETRA", "TÉTRA", "TÉTRAPHASÉ", "TETRAPHASE"):
        return "TETRA"
    return "MONO"


def convert_connection_type(connection_type: str, voltage_system: str, client_name: str = "") -> Tuple[str, str]:
    """
    Makes the connection type consistent with the network.
    Returns the corrected type and a warning ("" when unchanged).
    """
    if voltage_system == NS.THREE_WIRE_230V and connection_type == "TETRA":
        return "TRI", f"client '{client_name}' (TETRA) converted to TRI for a 230 V network"
    if voltage_system == NS.FOUR_WIRE_400V and connection_type == "TRI":
        return "TETRA", f"client '{client_name}' (TRI) converted to TETRA for a 400 V network"
    return connection_type, ""


def parse_phase(phase) -> Tuple[int, ...]:
    """Phase indexes of 'A', 'B', 'C' or a coupling like 'A-B'. Empty when invalid."""
    if not isinstance(phase, str) or not phase:
        return ()
    parts = [p for p in phase.upper().replace(" ", "").split("-") if p]
    if not parts or any(p not in PHASE_INDEX for p in parts) or len(set(parts)) != len(parts):
        return ()
    if len(parts) > 2:
        return ()
    return tuple(sorted(PHASE_INDEX[p] for p in parts))


def client_phase_split(client, value: float, voltage_system: str = NS.FOUR_WIRE_400V) -> np.ndarray:
    """
    Per-phase share (kVA) of one client quantity.
    MONO on one phase: everything on it. MONO on a phase-to-phase coupling
    of the 230 V three-wire system: value/sqrt(3) on both phases.
    TRI/TETRA, or MONO without a valid phase: value/3 on each phase.
    """
    split = np.zeros(3)
    if value == 0:
        return split
    phases = parse_phase(client["phase"]) if client["connection_type"] == "MONO" else ()
    if len(phases) == 1:
        split[phases[0]] = value
    elif len(phases) == 2:
        share = value / math.sqrt(3) if voltage_system == NS.THREE_WIRE_230V else value / 2
        split[list(phases)] = share
    else:
        split[:] = value / 3
    return split


def normalize_split(values) -> Tuple[float, float, float]:
    """Percentages that always sum to 100, balanced when the total is zero."""
    a, b, c = (max(0.0, float(v)) for v in values)
    total = a + b + c
    if total <= 0:
        return BALANCED_SPLIT
    pa = a / total * 100
    pb = b / total * 100
    return pa, pb, 100.0 - pa - pb


def percent_split(a: float, b: float, c: float) -> Tuple[float, float, float]:
    return normalize_split((a, b, c))


def redistribute_manual_split(split, phase: str, new_value: float) -> Tuple[float, float, float]:
    """
    Pins one phase to new_value and shares the remainder between the other
    two, keeping their previous ratio (even split when both were zero).
    """
    idx = PHASE_INDEX[phase.upper()]
    new_value = min(100.0, max(0.0, float(new_value)))
    others = [i for i in range(3) if i != idx]
    remainder = 100.0 - new_value
    old = [max(0.0, float(split[i])) for i in others]
    out = [0.0, 0.0, 0.0]
    out[idx] = new_value
    if sum(old) > 0:
        out[others[0]] = remainder * old[0] / sum(old)
    else:
        out[others[0]] = remainder / 2
    out[others[1]] = 100.0 - new_value - out[others[0]]
    return tuple(out)


def unbalance_percent(a: float, b: float, c: float) -> float:
    """Largest deviation of a phase from the mean, in percent of the mean."""
    mean = (a + b + c) / 3
    if mean <= 0:
        return 0.0
    return max(abs(v - mean) / mean * 100 for v in (a, b, c))


def unbalance_status(percent: float) -> str:
    if percent >= UNBALANCE_CRITICAL:
        return "critical"
    if percent >= UNBALANCE_WARNING:
        return "warning"
    return "normal"


@dataclass
class NodeAllocation:
    node_id: object = None
    loads_mono: np.ndarray = field(default_factory=lambda: np.zeros(3))
    loads_poly: np.ndarray = field(default_factory=lambda: np.zeros(3))
    productions_mono: np.ndarray = field(default_factory=lambda: np.zeros(3))
    productions_poly: np.ndarray = field(default_factory=lambda: np.zeros(3))
    mono_clients_count: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=int))
    poly_clients_count: int = 0

    @property
    def loads(self) -> np.ndarray:
        return self.loads_mono + self.loads_poly

    @property
    def productions(self) -> np.ndarray:
        return self.productions_mono + self.productions_poly

    @property
    def unbalance_percent(self) -> float:
        return unbalance_percent(*self.loads)


def _split_array(split) -> np.ndarray:
    return np.array(normalize_split(split)) / 100


def node_phase_allocation(node, clients: pd.DataFrame, config: NS.NetworkConfig) -> NodeAllocation:
    """
    Per-phase loads and productions (kVA) of one node.

    With a pinned split, single-phase clients always follow it and
    polyphase clients follow it only in the "all_clients" mode, otherwise
    they are balanced. Without a pinned split, every client sits on its
    measured phase(s). Manual node items follow the split when the node is
    declared MONO, otherwise they are balanced.
    """
    alloc = NodeAllocation(node_id=node["id"])
    system = config.voltage_system
    pinned = {"load": config.load_split, "production": config.production_split}
    modes = {"load": config.load_split_mode, "production": config.production_split_mode}
    targets = {"load": (alloc.loads_mono, alloc.loads_poly),
               "production": (alloc.productions_mono, alloc.productions_poly)}

    for _, client in clients.iterrows():
        is_mono = client["connection_type"] == "MONO"
        if is_mono:
            phases = parse_phase(client["phase"])
            if len(phases) == 1:
                alloc.mono_clients_count[phases[0]] += 1
        else:
            alloc.poly_clients_count += 1
        for quantity, column in QUANTITY_COLUMN.items():
            value = float(client[column])
            mono, poly = targets[quantity]
            split = pinned[quantity]
            if split is not None and (is_mono or modes[quantity] == "all_clients"):
                share = value * _split_array(split)
            else:
                share = client_phase_split(client, value, system)
            if is_mono:
                mono += share
            else:
                poly += share

    for quantity, column in NODE_COLUMN.items():
        value = float(node[column])
        if value == 0:
            continue
        mono, poly = targets[quantity]
        split = pinned[quantity]
        if node["manual_load_type"] == "MONO" and split is not None:
            mono += value * _split_array(split)
        elif node["manual_load_type"] == "MONO":
            mono += value / 3
        else:
            poly += value / 3
    return alloc


def network_allocation(snapshot: NS.NetworkSnapshot, config: NS.NetworkConfig,
                       node_ids: Optional[Iterable] = None) -> Dict:
    """node id -> NodeAllocation for the requested (default all) nodes."""
    nodes = snapshot.nodes
    if node_ids is not None:
        wanted = list(node_ids)
        nodes = nodes[nodes["id"].isin(wanted)]
    by_node = {k: g for k, g in snapshot.clients.groupby("node_id", sort=False)} if not snapshot.clients.empty else {}
    empty = snapshot.clients.iloc[0:0]
    return {row["id"]: node_phase_allocation(row, by_node.get(row["id"], empty), config)
            for _, row in nodes.iterrows()}


def real_mono_distribution(nodes: pd.DataFrame, clients: pd.DataFrame, quantity: str = "load",
                           voltage_system: str = NS.FOUR_WIRE_400V) -> Tuple[float, float, float]:
    """
    Percentages of the single-phase population on their assigned phases.
    Manual items of MONO nodes count as balanced.
    """
    totals = np.zeros(3)
    column = QUANTITY_COLUMN[quantity]
    mono = clients[clients["connection_type"] == "MONO"] if not clients.empty else clients
    for _, client in mono.iterrows():
        if parse_phase(client["phase"]):
            totals += client_phase_split(client, float(client[column]), voltage_system)
    manual = nodes.loc[nodes["manual_load_type"] == "MONO", NODE_COLUMN[quantity]].sum()
    totals += manual / 3
    return normalize_split(totals)


def balanced_poly_plus_real_mono(clients: pd.DataFrame, quantity: str = "load",
                                 voltage_system: str = NS.FOUR_WIRE_400V) -> Tuple[float, float, float]:
    """Percentages of the whole population, polyphase clients balanced, single-phase on their phases."""
    totals = np.zeros(3)
    column = QUANTITY_COLUMN[quantity]
    for _, client in clients.iterrows():
        totals += client_phase_split(client, float(client[column]), voltage_system)
    return normalize_split(totals)


def project_unbalance(allocations: Dict) -> dict:
    loads = np.zeros(3)
    for alloc in allocations.values():
        loads += alloc.loads
    percent = unbalance_percent(*loads)
    return {
        "unbalance_percent": percent,
        "status": unbalance_status(percent),
        "phase_loads": tuple(float(v) for v in loads),
    }


def auto_assign_phase(client, clients: pd.DataFrame, voltage_system: str = NS.FOUR_WIRE_400V) -> str:
    """
    Least loaded phase (400 V) or phase-to-phase coupling (230 V) for a new
    single-phase client, weighting existing clients by contract + PV power.
    Ties go to the first candidate in A, B, C order.
    """
    loads = np.zeros(3)
    if not clients.empty:
        mono = clients[(clients["connection_type"] == "MONO") & (clients["id"] != client["id"])]
        for _, other in mono.iterrows():
            phases = parse_phase(other["phase"])
            if not phases:
                continue
            power = float(other["contract_kva"]) + float(other["pv_kva"])
            for p in phases:
                loads[p] += power / len(phases)

    if voltage_system == NS.THREE_WIRE_230V:
        coupling_loads = [sum(loads[i] for i in parse_phase(c)) for c in COUPLINGS]
        return COUPLINGS[int(np.argmin(coupling_loads))]
    return NS.PHASES[int(np.argmin(loads))]


def prepare_measured_voltages(measured, voltage_system: str = NS.FOUR_WIRE_400V) -> Tuple[float, float, float]:
    """
    Completes measured U1/U2/U3 (reported reference). Missing or non-positive
    values become 230 V, except on the three-wire system where a single
    missing value is the mean of the two others.
    """
    values = [float(v) if v is not None and not pd.isna(v) and float(v) > 0 else 0.0 for v in measured]
    valid = [v for v in values if v > 0]
    fill = NS.REFERENCE_VOLTAGE
    if voltage_system == NS.THREE_WIRE_230V and len(valid) == 2:
        fill = sum(valid) / 2
    return tuple(v if v > 0 else fill for v in values)


def production_split_from_voltages(u1: float, u2: float, u3: float) -> Tuple[float, float, float]:
    """
    Production percentages per phase from measured voltages: each phase
    gets the share of its rise above the lowest phase. Equal voltages give
    a balanced split.
    """
    low = min(u1, u2, u3)
    return normalize_split((u1 - low, u2 - low, u3 - low))
