"""
Siting of the regulation devices on a baseline calculation (no device).

EQUI8: maximise I_N / Z_up where the neutral current is high but the
upstream impedance is not yet dominant (10 %-70 % of the feeder).
SRG2:  minimise dU * Z_up at a homogeneous, representative midpoint
(15 %-60 % of the feeder), or maximise the share of out-of-band nodes an
estimated boost brings back close to the source.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import network_state as NS
from network_state import CalculationResult, NetworkSnapshot
import topology_discovery
import voltage_regulator

MIN_IMPEDANCE_OHM = NS.MIN_IMPEDANCE_OHM

COMPENSATOR_WINDOW = (0.10, 0.70)
MIN_NEUTRAL_CURRENT_A = 2.0

REGULATOR_WINDOW = (0.15, 0.60)
MAX_DELTA_U_V = 8.0

IMPACT_MAX_DISTANCE_M = 500.0
IMPACT_BAND_PERCENT = 10.0

# no_result_reason values
THREE_WIRE = "three-wire network"
IMPEDANCE_TOO_SMALL = "network impedance too small"
NO_IMBALANCE = "no imbalance detected"
NO_CANDIDATE_IN_WINDOW = "no candidate in window"
ALL_COMPLIANT = "all nodes compliant"
NO_CANDIDATE_IN_DISTANCE = "no candidate within distance"
NO_IMPROVEMENT = "no candidate improves compliance"
NO_BASELINE = "baseline calculation not available"


@dataclass
class PlacementCandidate:
    node_id: object = None
    name: str = ""
    score: float = 0.0
    zph_ohm: float = 0.0
    zn_ohm: float = 0.0
    path_length_m: float = 0.0
    position_ratio: float = 0.0
    neutral_current_a: float = 0.0
    voltages: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    delta_u_v: float = 0.0
    mean_voltage_v: float = 0.0
    fixed_nodes: List = field(default_factory=list)
    justification: str = ""


@dataclass
class PlacementAnalysis:
    device: str = ""
    candidates: List[PlacementCandidate] = field(default_factory=list)   # ranked, best first
    total_zph_ohm: float = 0.0
    bounds: Tuple[float, float] = (0.0, 0.0)
    out_of_band_nodes: List = field(default_factory=list)
    no_result_reason: str = ""

    @property
    def optimal(self) -> Optional[PlacementCandidate]:
        return self.candidates[0] if self.candidates else None


def _topology(snapshot: NetworkSnapshot, topology, verbose: int):
    if topology is not None:
        return topology, ""
    return topology_discovery.build_topology(snapshot, verbose)


def _neutral_current(baseline: CalculationResult, node_id) -> float:
    row = baseline.nodes[baseline.nodes["id"] == node_id]
    if row.empty:
        return 0.0
    return float(row.iloc[0]["neutral_current_a"])


def _candidate_nodes(topology) -> List:
    return [n for n in topology.preorder() if n != topology.source]


def find_compensator_placement(snapshot: NetworkSnapshot, baseline: CalculationResult, topology=None,
                               voltage_system: str = NS.FOUR_WIRE_400V, verbose: int = 0) -> PlacementAnalysis:
    """Ranks nodes for an EQUI8 by neutral current over upstream phase impedance."""
    analysis = PlacementAnalysis(device="EQUI8")
    if voltage_system != NS.FOUR_WIRE_400V:
        analysis.no_result_reason = THREE_WIRE
        return analysis
    if baseline.convergence_status == NS.CANNOT_COMPUTE or baseline.nodes.empty:
        analysis.no_result_reason = NO_BASELINE
        return analysis
    topology, err_msg = _topology(snapshot, topology, verbose)
    if err_msg:
        analysis.no_result_reason = err_msg
        return analysis

    total_z = topology.max_upstream_impedance()
    if total_z < MIN_IMPEDANCE_OHM:
        analysis.no_result_reason = IMPEDANCE_TOO_SMALL
        return analysis
    z_min, z_max = total_z * COMPENSATOR_WINDOW[0], total_z * COMPENSATOR_WINDOW[1]
    analysis.total_zph_ohm = total_z
    analysis.bounds = (z_min, z_max)

    nodes = _candidate_nodes(topology)
    currents = {n: _neutral_current(baseline, n) for n in nodes}
    if all(i < MIN_NEUTRAL_CURRENT_A for i in currents.values()):
        analysis.no_result_reason = NO_IMBALANCE
        return analysis

    if verbose > 1:
        print(f"EQUI8 placement: Z_total {total_z:.4f} ohm, window {z_min:.4f} - {z_max:.4f} ohm")
    for node_id in nodes:
        zph, zn = topology.upstream_impedance(node_id)
        name = snapshot.node_name(node_id)
        if zph < z_min or zph > z_max:
            if verbose > 1:
                print(f"   {name}: Z={zph:.4f} ohm outside window")
            continue
        i_n = currents[node_id]
        if i_n < MIN_NEUTRAL_CURRENT_A:
            continue
        ratio = zph / total_z
        analysis.candidates.append(PlacementCandidate(
            node_id=node_id,
            name=name,
            score=i_n / max(zph, MIN_IMPEDANCE_OHM),
            zph_ohm=zph,
            zn_ohm=zn,
            path_length_m=topology.path_length(node_id),
            position_ratio=ratio,
            neutral_current_a=i_n,
            voltages=baseline.node_voltages(node_id),
            justification=f"I_N={i_n:.1f} A, Z_up={zph:.3f} ohm, position={ratio * 100:.0f} % of the feeder",
        ))

    analysis.candidates.sort(key=lambda c: -c.score)
    if not analysis.candidates:
        analysis.no_result_reason = NO_CANDIDATE_IN_WINDOW
    elif verbose != 0:
        print(f"EQUI8 optimal node: {analysis.optimal.name} (score {analysis.optimal.score:.2f})")
    return analysis


def find_regulator_placement(snapshot: NetworkSnapshot, baseline: CalculationResult, topology=None,
                             verbose: int = 0) -> PlacementAnalysis:
    """Ranks nodes for an SRG2 measurement point by phase spread times upstream impedance."""
    analysis = PlacementAnalysis(device="SRG2")
    if baseline.convergence_status == NS.CANNOT_COMPUTE or baseline.nodes.empty:
        analysis.no_result_reason = NO_BASELINE
        return analysis
    topology, err_msg = _topology(snapshot, topology, verbose)
    if err_msg:
        analysis.no_result_reason = err_msg
        return analysis

    total_z = topology.max_upstream_impedance()
    if total_z < MIN_IMPEDANCE_OHM:
        analysis.no_result_reason = IMPEDANCE_TOO_SMALL
        return analysis
    z_min, z_max = total_z * REGULATOR_WINDOW[0], total_z * REGULATOR_WINDOW[1]
    analysis.total_zph_ohm = total_z
    analysis.bounds = (z_min, z_max)

    for node_id in _candidate_nodes(topology):
        zph, zn = topology.upstream_impedance(node_id)
        if zph < z_min or zph > z_max:
            continue
        voltages = baseline.node_voltages(node_id)
        if voltages is None:
            continue
        delta_u = max(voltages) - min(voltages)
        if delta_u > MAX_DELTA_U_V:
            if verbose > 1:
                print(f"   {snapshot.node_name(node_id)}: dU={delta_u:.1f} V above {MAX_DELTA_U_V} V")
            continue
        ratio = zph / total_z
        analysis.candidates.append(PlacementCandidate(
            node_id=node_id,
            name=snapshot.node_name(node_id),
            score=delta_u * zph,
            zph_ohm=zph,
            zn_ohm=zn,
            path_length_m=topology.path_length(node_id),
            position_ratio=ratio,
            voltages=voltages,
            delta_u_v=delta_u,
            mean_voltage_v=sum(voltages) / 3,
            justification=f"dU={delta_u:.1f} V, Z_up={zph:.3f} ohm, position={ratio * 100:.0f} % of the feeder",
        ))

    analysis.candidates.sort(key=lambda c: c.score)
    if not analysis.candidates:
        analysis.no_result_reason = NO_CANDIDATE_IN_WINDOW
    elif verbose != 0:
        print(f"SRG2 optimal node: {analysis.optimal.name} (score {analysis.optimal.score:.3f})")
    return analysis


def _in_band(voltages, low: float, high: float) -> bool:
    return all(low <= v <= high for v in voltages)


def _boosted(voltages, coefficient: float, low: float, high: float):
    """Linear estimate of the regulated voltages, the direction follows the violation."""
    if min(voltages) < low:
        return [v * (1 + coefficient / 100) for v in voltages]
    if max(voltages) > high:
        return [v * (1 - coefficient / 100) for v in voltages]
    return list(voltages)


def find_regulator_placement_by_impact(snapshot: NetworkSnapshot, baseline: CalculationResult, topology=None,
                                       voltage_system: str = NS.FOUR_WIRE_400V,
                                       max_distance_m: float = IMPACT_MAX_DISTANCE_M,
                                       band_percent: float = IMPACT_BAND_PERCENT,
                                       verbose: int = 0) -> PlacementAnalysis:
    """
    Ranks nodes close to the source by the share of out-of-band nodes of the
    whole network that a full regulator boost would bring back in band.
    """
    analysis = PlacementAnalysis(device="SRG2")
    if baseline.convergence_status == NS.CANNOT_COMPUTE or baseline.nodes.empty:
        analysis.no_result_reason = NO_BASELINE
        return analysis
    topology, err_msg = _topology(snapshot, topology, verbose)
    if err_msg:
        analysis.no_result_reason = err_msg
        return analysis

    low = NS.REFERENCE_VOLTAGE * (1 - band_percent / 100)
    high = NS.REFERENCE_VOLTAGE * (1 + band_percent / 100)
    analysis.bounds = (low, high)
    analysis.total_zph_ohm = topology.max_upstream_impedance()
    reg = voltage_regulator.default_regulator(None, voltage_system)
    coefficient = max(abs(reg.coef_boost2), abs(reg.coef_lower2))

    voltages = {n: baseline.node_voltages(n) for n in topology.preorder()}
    out_of_band = [n for n, v in voltages.items() if v is not None and not _in_band(v, low, high)]
    analysis.out_of_band_nodes = out_of_band
    if not out_of_band:
        analysis.no_result_reason = ALL_COMPLIANT
        return analysis

    nodes = [n for n in _candidate_nodes(topology) if topology.path_length(n) <= max_distance_m]
    if not nodes:
        analysis.no_result_reason = NO_CANDIDATE_IN_DISTANCE
        return analysis

    for node_id in nodes:
        downstream = set(topology.downstream_nodes(node_id))
        fixed = [n for n in out_of_band
                 if n in downstream and _in_band(_boosted(voltages[n], coefficient, low, high), low, high)]
        if not fixed:
            continue
        zph, zn = topology.upstream_impedance(node_id)
        score = len(fixed) / len(out_of_band) * 100
        analysis.candidates.append(PlacementCandidate(
            node_id=node_id,
            name=snapshot.node_name(node_id),
            score=score,
            zph_ohm=zph,
            zn_ohm=zn,
            path_length_m=topology.path_length(node_id),
            position_ratio=zph / analysis.total_zph_ohm if analysis.total_zph_ohm > 0 else 0.0,
            voltages=voltages[node_id],
            fixed_nodes=fixed,
            justification=f"{len(fixed)}/{len(out_of_band)} out-of-band nodes restored, "
                          f"{topology.path_length(node_id):.0f} m from the source",
        ))

    # closer to the source wins on equal score
    analysis.candidates.sort(key=lambda c: (-c.score, c.path_length_m))
    if not analysis.candidates:
        analysis.no_result_reason = NO_IMPROVEMENT
    elif verbose != 0:
        print(f"SRG2 optimal node: {analysis.optimal.name} ({analysis.optimal.score:.1f} % restored)")
    return analysis


def format_placement(analysis: PlacementAnalysis) -> str:
    """Textual summary of the recommended node and the next candidates."""
    best = analysis.optimal
    if best is None:
        return analysis.no_result_reason or "no optimal node found"

    lines = [f"Recommended node for {analysis.device}: {best.name}"]
    if best.neutral_current_a:
        lines.append(f"   neutral current: {best.neutral_current_a:.1f} A")
    if best.delta_u_v or best.mean_voltage_v:
        lines.append(f"   phase spread: {best.delta_u_v:.1f} V, mean voltage: {best.mean_voltage_v:.1f} V")
    if best.fixed_nodes:
        lines.append(f"   restored nodes: {len(best.fixed_nodes)} of {len(analysis.out_of_band_nodes)}")
    lines.append(f"   upstream impedance: {best.zph_ohm:.3f} ohm")
    lines.append(f"   position: {best.position_ratio * 100:.0f} % of the feeder")
    lines.append(f"   score: {best.score:.3f}")
    others = analysis.candidates[1:4]
    if others:
        lines.append("")
        lines.append(f"Other candidates ({len(analysis.candidates) - 1}):")
        for i, c in enumerate(others, start=1):
            lines.append(f"   {i}. {c.name} (score: {c.score:.3f})")
    return "\n".join(lines)
