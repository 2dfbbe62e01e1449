from dataclasses import replace
from typing import Dict, Iterable, Optional
import numpy as np

import network_state as NS
from network_state import CalculationResult, NetworkConfig, NetworkSnapshot
import topology_discovery   # provides build_topology function
import data_preparation     # provides data_preparation function
import sweep_procedures     # provides forward_backward_sweep function
import voltage_regulator
import neutral_compensator
import print_results        # provides results function
import phase_allocation

# Measurement-driven calibration
DIVERSITY_SWEEP_PERCENT = range(50, 151, 5)
FORCED_TOLERANCE_V = 1.0        # largest phase error at the measurement node
FORCED_MIN_PROGRESS_V = 0.01
FORCED_MAX_ITERATIONS = 50


def downstream_powers(topology, allocations: Dict, config: NetworkConfig, node_id):
    """Diversified load and production (kVA) of every node fed through node_id."""
    k_load = config.load_diversity_percent / 100
    k_prod = config.production_diversity_percent / 100 * config.weather_factor
    load, prod = 0.0, 0.0
    for bus in topology.downstream_nodes(node_id):
        alloc = allocations.get(bus)
        if alloc is None:
            continue
        load += float(alloc.loads.sum()) * k_load
        prod += float(alloc.productions.sum()) * k_prod
    return load, prod


def apply_devices(n_buses: int, number: Dict, reg_results: Dict, comp_results: Dict):
    """Per-bus voltage factors and absorbed neutral currents of the devices."""
    scale = np.ones((n_buses, 3))
    neutral_injection = np.zeros(n_buses, dtype=complex)
    for node_id, res in reg_results.items():
        if res.is_active and node_id in number:
            scale[number[node_id]] *= 1 + np.array(res.coefficients) / 100
    for node_id, res in comp_results.items():
        if res.active and node_id in number:
            scale[number[node_id]] *= res.voltage_scale
            neutral_injection[number[node_id]] += res.injected_phasor
    return scale, neutral_injection


def evaluate_devices(topology, net, st, config: NetworkConfig, regulators: Dict, compensators: Dict,
                     previous_regs: Dict):
    """Device responses to the voltages of the latest sweep, read upstream of each device."""
    number = dict(zip(net.buses["id"], net.buses["number"]))
    factor = config.report_factor
    reg_results, comp_results = {}, {}

    for node_id, reg in regulators.items():
        if node_id not in number:
            reg_results[node_id] = voltage_regulator.RegulatorResult(
                node_id=node_id, state=voltage_regulator.INACTIVE,
                err_msg=f"node {node_id} is not reachable from the source")
            continue
        idx = number[node_id]
        vin = np.abs(st.v_in[idx]) * factor
        load, prod = downstream_powers(topology, net.allocations, config, node_id)
        prev = previous_regs.get(node_id)
        reg_results[node_id] = voltage_regulator.regulate(
            reg, vin, load, prod, previous_states=None if prev is None else prev.switch_states)

    for node_id, comp in compensators.items():
        if node_id not in number:
            res = neutral_compensator.CompensatorResult(node_id=node_id, eligible=False)
            res.advisory = f"node {node_id} is not reachable from the source"
            comp_results[node_id] = res
            continue
        idx = number[node_id]
        u = np.abs(st.v_in[idx]) * factor
        reg = reg_results.get(node_id)
        if reg is not None and reg.is_active:
            u = np.array(reg.output_voltages)
        zph, zn = topology.upstream_impedance(node_id)
        comp_results[node_id] = neutral_compensator.compensate(
            comp, u, st.i_branch[idx], zph, zn, four_wire=config.has_neutral)
    return reg_results, comp_results


def powerflow(snapshot: NetworkSnapshot, config: Optional[NetworkConfig] = None,
              scenario: str = NS.CONSUMPTION,
              regulators: Iterable = (), compensators: Iterable = (),
              display_summary: bool = False, verbose: int = 0) -> CalculationResult:
    """
    Evaluate node voltage levels and cable flows of a radial low-voltage network.
    Discovers the topology, performs forward-backward sweeps and repeats them
    while cable temperatures and device coefficients settle. Returns a new
    CalculationResult, with convergence_status "cannot-compute" and the error
    message when the network cannot be solved.
    """
    config = config or NetworkConfig()
    if scenario not in NS.SCENARIOS:
        raise ValueError(f"unknown scenario '{scenario}', expected one of {NS.SCENARIOS}")
    if config.voltage_system not in NS.VOLTAGE_SYSTEMS:
        raise ValueError(f"unknown voltage system '{config.voltage_system}'")

    # 1. Topology discovery
    topology, err_msg = topology_discovery.build_topology(snapshot, verbose)
    if err_msg:
        if verbose != 0:
            print(f"Execution aborted, {err_msg}")
        return CalculationResult(scenario=scenario, convergence_status=NS.CANNOT_COMPUTE,
                                 excluded_nodes=list(snapshot.nodes["id"]), err_msg=err_msg)

    regulators = voltage_regulator.regulators_by_node(regulators)
    compensators = neutral_compensator.compensators_by_node(compensators)
    feedback = config.thermal_correction or any(r.enabled for r in regulators.values()) \
        or any(c.enabled for c in compensators.values())

    # 2. Outer loop: thermal and device feedback
    currents = None
    st = None
    reg_results: Dict = {}
    comp_results: Dict = {}
    previous_v = None
    status = NS.NON_CONVERGED
    sweep_err = ""
    outer = 0
    inner = 0
    while outer < max(1, config.max_outer_iterations):
        outer += 1
        net = data_preparation.data_preparation(snapshot, topology, config, scenario, currents)
        number = dict(zip(net.buses["id"], net.buses["number"]))
        scale, neutral_injection = apply_devices(len(net.buses), number, reg_results, comp_results)

        st, sweep_err, inner = sweep_procedures.forward_backward_sweep(
            net, config.tolerance, config.max_iterations, start=st, scale=scale,
            neutral_injection=neutral_injection)
        if sweep_err:
            if verbose != 0:
                print(f"Outer iteration {outer}: {sweep_err}")
            break

        new_regs, new_comps = evaluate_devices(topology, net, st, config, regulators, compensators, reg_results)
        taps_unchanged = all(voltage_regulator.is_stabilized(res, reg_results.get(node_id))
                             for node_id, res in new_regs.items())
        comps_unchanged = all(
            node_id in comp_results
            and abs(res.injected_current_a - comp_results[node_id].injected_current_a) < config.outer_tolerance_a
            and np.allclose(res.compensated_voltages, comp_results[node_id].compensated_voltages,
                            atol=config.outer_tolerance_v, rtol=0.0)
            for node_id, res in new_comps.items())

        v_report = np.abs(st.v) * config.report_factor
        max_diff = float(np.max(np.abs(v_report - previous_v))) if previous_v is not None else float("inf")
        previous_v = v_report

        devices_settled = taps_unchanged and comps_unchanged
        reg_results, comp_results = new_regs, new_comps
        cable_ids = net.buses["cable_id"].to_numpy()
        currents = {cable_ids[i]: float(np.max(np.abs(st.i_branch[i]))) for i in range(1, len(cable_ids))}

        if verbose > 1:
            print(f"Outer iteration {outer}: {inner} sweeps, max voltage change {max_diff:.4f} V")
        if not feedback:
            status = NS.CONVERGED
            break
        if (max_diff < config.outer_tolerance_v or not config.thermal_correction) and devices_settled:
            status = NS.CONVERGED
            break

    # 3. Results of the latest solve
    result = print_results.results(snapshot, topology, net, st, config, scenario)
    result.convergence_status = status
    result.iterations = outer
    result.inner_iterations = inner
    result.regulators = [reg_results[k] for k in regulators if k in reg_results]
    result.compensators = [comp_results[k] for k in compensators if k in comp_results]
    result.err_msg = sweep_err
    if status != NS.CONVERGED and not sweep_err:
        result.err_msg = f"outer loop did not settle within {config.max_outer_iterations} iterations"

    if verbose != 0:
        print(f"Execution finished, {outer} outer iterations, "
              f"{inner} inner iterations (for latest outer round), {config.tolerance} tolerance")
    if display_summary:
        print_results.display_summary(result)
    return result


def calibrate_load_diversity(snapshot: NetworkSnapshot, config: Optional[NetworkConfig], measurement_node,
                             target_v: float = NS.REFERENCE_VOLTAGE, scenario: str = NS.CONSUMPTION,
                             verbose: int = 0) -> float:
    """
    Load diversity (%) whose mean voltage at the measurement node comes
    closest to target_v, searched from 50 % to 150 % in 5 % steps with no
    production and balanced loads. Ties keep the lowest value. Returns the
    configured diversity when the node cannot be evaluated.
    """
    config = config or NetworkConfig()
    best = config.load_diversity_percent
    min_diff = float("inf")
    for percent in DIVERSITY_SWEEP_PERCENT:
        night = replace(config, load_diversity_percent=float(percent), production_diversity_percent=0.0,
                        load_split=phase_allocation.BALANCED_SPLIT,
                        production_split=phase_allocation.BALANCED_SPLIT)
        result = powerflow(snapshot, night, scenario)
        voltages = result.node_voltages(measurement_node)
        if voltages is None:
            continue
        diff = abs(sum(voltages) / 3 - target_v)
        if verbose > 1:
            print(f"  diversity {percent} %: mean voltage {sum(voltages) / 3:.1f} V, difference {diff:.2f} V")
        if diff < min_diff:
            min_diff = diff
            best = float(percent)
    if verbose != 0:
        if min_diff == float("inf"):
            print(f"Calibration skipped, node {measurement_node} has no computed voltage")
        else:
            print(f"Calibrated load diversity {best:.0f} % (difference {min_diff:.2f} V)")
    return best


def forced_powerflow(snapshot: NetworkSnapshot, config: Optional[NetworkConfig], measurement_node,
                     measured_voltages, target_v: Optional[float] = None, scenario: str = NS.MIXED,
                     regulators: Iterable = (), compensators: Iterable = (),
                     verbose: int = 0) -> CalculationResult:
    """
    Calculation fitted to field measurements at one node.
    First calibrates the load diversity against target_v (the mean of the
    measured voltages by default), then derives the production split per
    phase from the measured voltages and refines it from the simulated
    voltages until the largest phase error falls below 1 V or stops
    improving. The final calculation carries the calibrated diversity and
    the production split used.
    """
    config = config or NetworkConfig()
    measured = phase_allocation.prepare_measured_voltages(measured_voltages, config.voltage_system)
    if target_v is None:
        target_v = sum(measured) / 3
    regulators = list(regulators)
    compensators = list(compensators)

    # 1. Load diversity at night
    diversity = calibrate_load_diversity(snapshot, config, measurement_node, target_v, verbose=verbose)
    day = replace(config, load_diversity_percent=diversity)

    # 2. Production split per phase
    split = phase_allocation.production_split_from_voltages(*measured)
    previous_error = float("inf")
    converged = False
    err_msg = ""
    iterations = 0
    while iterations < FORCED_MAX_ITERATIONS:
        iterations += 1
        result = powerflow(snapshot, replace(day, production_split=split), scenario, regulators, compensators)
        simulated = result.node_voltages(measurement_node)
        if simulated is None:
            err_msg = f"measurement node {measurement_node} has no computed voltage"
            converged = True
            break
        max_error = max(abs(s - m) for s, m in zip(simulated, measured))
        if verbose > 1:
            print(f"Forced iteration {iterations}: largest phase error {max_error:.2f} V")
        if max_error < FORCED_TOLERANCE_V or abs(max_error - previous_error) < FORCED_MIN_PROGRESS_V:
            converged = True
            break
        split = phase_allocation.production_split_from_voltages(*simulated)
        previous_error = max_error

    # 3. Final calculation with the fitted parameters
    result = powerflow(snapshot, replace(day, production_split=split), scenario, regulators, compensators,
                       verbose=verbose)
    result.calibrated_load_diversity_percent = diversity
    result.production_split = split
    if not converged and result.convergence_status == NS.CONVERGED:
        result.convergence_status = NS.NON_CONVERGED
        result.err_msg = f"measured voltages not matched within {FORCED_MAX_ITERATIONS} iterations"
    if err_msg and not result.err_msg:
        result.err_msg = err_msg
    if verbose != 0:
        print(f"Forced mode finished, {iterations} iterations, production split "
              f"{split[0]:.1f} / {split[1]:.1f} / {split[2]:.1f} %")
    return result
