import numpy as np
import pandas as pd

import network_state as NS
from network_state import CalculationResult
import phase_allocation

# Deviation from the reference voltage (%)
WARNING_DEVIATION = 5.0
CRITICAL_DEVIATION = 10.0
STATUS_ORDER = ["normal", "warning", "critical"]


def voltage_status(voltage: float, reference: float = NS.REFERENCE_VOLTAGE) -> str:
    deviation = abs(voltage - reference) / reference * 100
    if deviation > CRITICAL_DEVIATION:
        return "critical"
    if deviation > WARNING_DEVIATION:
        return "warning"
    return "normal"


def sequence_components(v) -> np.ndarray:
    """Zero, positive and negative sequence phasors of a phase triplet."""
    return NS.AS_MATRIX.dot(np.asarray(v, dtype=complex)) / 3


def results(snapshot, topology, net, st, config, scenario) -> CalculationResult:
    """
    Build the node and cable result tables of a solved sweep, the source
    busbar summary and the aggregate losses.
    """
    factor = config.report_factor
    reference = NS.REFERENCE_VOLTAGE
    buses = net.buses

    # Node voltage report
    volts = buses[["id", "number"]].copy()
    volts["name"] = [snapshot.node_name(n) for n in volts["id"]]
    for k, ph in enumerate(NS.PHASES):
        volts[f"v_{ph.lower()}"] = np.abs(st.v[:, k]) * factor
        volts[f"deg_{ph.lower()}"] = np.degrees(np.angle(st.v[:, k]))
    for ph in ("a", "b", "c"):
        volts[f"v_pu_{ph}"] = volts[f"v_{ph}"] / reference
    vmat = volts[["v_a", "v_b", "v_c"]].to_numpy()
    deviation = (vmat - reference) / reference * 100
    volts["deviation_pct"] = [row[np.argmax(np.abs(row))] for row in deviation]
    volts["spread_v"] = vmat.max(axis=1) - vmat.min(axis=1)

    # Line-to-line voltages and voltage unbalance factor
    vll = st.v.dot(NS.D_MATRIX.T)
    volts["v_ab"] = np.abs(vll[:, 0])
    volts["v_bc"] = np.abs(vll[:, 1])
    volts["v_ca"] = np.abs(vll[:, 2])
    vuf = []
    for v in st.v:
        seq = sequence_components(v)
        vuf.append(abs(seq[2]) / abs(seq[1]) * 100 if abs(seq[1]) > 0 else 0.0)
    volts["vuf_pct"] = vuf

    volts["neutral_current_a"] = np.abs(st.i_neutral) if config.has_neutral else 0.0
    volts["path_length_m"] = [topology.path_length(n) for n in volts["id"]]
    volts["z_upstream_ohm"] = [topology.upstream_impedance(n)[0] for n in volts["id"]]
    volts["unbalance_pct"] = [net.allocations[n].unbalance_percent for n in volts["id"]]
    # worst phase decides
    volts["compliance"] = [max((voltage_status(x, reference) for x in row), key=STATUS_ORDER.index)
                           for row in vmat]
    volts["production_disconnect"] = (scenario != NS.CONSUMPTION) & (vmat.max(axis=1) > NS.PRODUCTION_DISCONNECT_VOLTAGE)
    volts = volts.drop(columns=["number"]).reset_index(drop=True)

    # Cable flow report
    number = dict(zip(buses["id"], buses["number"]))
    cflow = net.lines[["id", "bus1", "bus2", "length_m", "factor", "r_phase", "r_neutral", "max_current_a"]].copy()
    idx = cflow["bus2"].map(number).to_numpy(dtype=int) if not cflow.empty else np.zeros(0, dtype=int)
    i_ph = st.i_branch[idx] if len(idx) else np.zeros((0, 3), dtype=complex)
    for k in range(3):
        cflow[f"i_ph{k + 1}"] = np.abs(i_ph[:, k])
        cflow[f"deg_i_ph{k + 1}"] = np.degrees(np.angle(i_ph[:, k]))
    i_n = np.abs(st.i_neutral[idx]) if config.has_neutral else np.zeros(len(idx))
    cflow["i_neutral"] = i_n
    ploss = (np.abs(i_ph) ** 2).sum(axis=1) * cflow["r_phase"].to_numpy() + i_n ** 2 * cflow["r_neutral"].to_numpy()
    cflow["ploss_kw"] = ploss / 1000
    parents = cflow["bus1"].map(number).to_numpy(dtype=int) if len(idx) else np.zeros(0, dtype=int)
    drop = (np.abs(st.v[parents]) - np.abs(st.v_in[idx])) * factor / reference * 100 if len(idx) else np.zeros((0, 3))
    cflow["voltage_drop_pct"] = drop.max(axis=1) if len(idx) else []
    cflow["loading_pct"] = np.where(cflow["max_current_a"] > 0,
                                    np.abs(i_ph).max(axis=1) / cflow["max_current_a"].replace(0, np.nan) * 100,
                                    np.nan) if len(idx) else []
    cflow = cflow.rename(columns={"bus1": "from", "bus2": "to"}).reset_index(drop=True)

    total_losses_kw = float(cflow["ploss_kw"].sum()) if not cflow.empty else 0.0

    # Virtual busbar at the source
    i_total = st.i_branch[0]
    v_bus = st.v[0]
    s_total = (v_bus * np.conj(i_total)).sum()
    trf_losses = float((np.abs(i_total) ** 2).sum() * net.z_transformer.real)
    busbar = {
        "node_id": topology.source,
        "voltage_v": tuple(float(x) for x in np.abs(v_bus) * factor),
        "current_a": tuple(float(x) for x in np.abs(i_total)),
        "neutral_current_a": float(abs(st.i_neutral[0])) if config.has_neutral else 0.0,
        "net_power_kva": float(abs(s_total)) / 1000,
        "net_active_power_kw": float(s_total.real) / 1000,
        "net_reactive_power_kvar": float(s_total.imag) / 1000,
        "transformer_loading_pct": float(abs(s_total)) / (config.transformer_kva * 1000) * 100
        if config.transformer_kva > 0 else 0.0,
        "transformer_losses_kw": trf_losses / 1000,
        "losses_kw": total_losses_kw,
        "reverse_flow": bool(s_total.real < 0),
        "unbalance": phase_allocation.project_unbalance(net.allocations),
    }

    return CalculationResult(
        scenario=scenario,
        nodes=volts,
        cables=cflow,
        total_losses_kw=total_losses_kw,
        excluded_nodes=list(topology.unreachable),
        busbar=busbar,
    )


def extreme_voltages(result: CalculationResult) -> pd.DataFrame:
    """Maximum and minimum phase voltage over the network with their nodes."""
    ext_v = pd.DataFrame([[0.0, None, np.inf, None]], columns=["max", "node_max", "min", "node_min"])
    if result.nodes.empty:
        ext_v.at[0, "min"] = 0.0
        return ext_v
    for i in result.nodes.index:
        for phase_col in ["v_a", "v_b", "v_c"]:
            val = result.nodes.at[i, phase_col]
            if val > ext_v.at[0, "max"]:
                ext_v.at[0, "max"] = val
                ext_v.at[0, "node_max"] = result.nodes.at[i, "id"]
            if val < ext_v.at[0, "min"]:
                ext_v.at[0, "min"] = val
                ext_v.at[0, "node_min"] = result.nodes.at[i, "id"]
    return ext_v


def compliance_summary(result: CalculationResult) -> dict:
    counts = result.nodes["compliance"].value_counts() if not result.nodes.empty else {}
    return {status: int(counts.get(status, 0)) for status in ("normal", "warning", "critical")}


def display_summary(result: CalculationResult):
    if result.convergence_status == NS.CANNOT_COMPUTE:
        print(f"Execution aborted, {result.err_msg}")
        return
    ext_v = extreme_voltages(result)
    bb = result.busbar
    print(f"scenario: {result.scenario}, status: {result.convergence_status} "
          f"({result.iterations} outer iterations)")
    print(f"maximum voltage: {round(ext_v.at[0, 'max'], 1)} V at node {ext_v.at[0, 'node_max']}")
    print(f"minimum voltage: {round(ext_v.at[0, 'min'], 1)} V at node {ext_v.at[0, 'node_min']}")
    print(f"busbar voltage: {tuple(round(v, 1) for v in bb['voltage_v'])} V")
    print(f"busbar current: {tuple(round(i, 1) for i in bb['current_a'])} A, "
          f"neutral {round(bb['neutral_current_a'], 1)} A")
    print(f"Total Input Power:  {round(bb['net_power_kva'], 3)} kVA "
          f"(transformer loading {round(bb['transformer_loading_pct'], 1)} %)")
    print(f"Total Active Power Losses:  {round(result.total_losses_kw, 3)} kW")
    print(f"Compliance: {compliance_summary(result)}")
    if result.excluded_nodes:
        print(f"Excluded nodes (unreachable): {result.excluded_nodes}")
    for reg in result.regulators:
        print(f"SRG2 at {reg.node_id}: {reg.state}, {reg.switch_states}, coefficients {reg.coefficients} %"
              f"{', power limit reached' if reg.power_limit_reached else ''}")
    for comp in result.compensators:
        print(f"EQUI8 at {comp.node_id}: I_N {round(comp.neutral_current_initial_a, 1)} A -> "
              f"{round(comp.neutral_current_after_a, 1)} A"
              f"{', limited' if comp.limited else ''}")
    if result.err_msg:
        print(result.err_msg)
    print()
