# run_powerflow.py
import os
from datetime import datetime

import network_state as NS
from data_input import build_snapshot
from neutral_compensator import CompensatorConfig
from placement import find_compensator_placement, find_regulator_placement_by_impact, format_placement
from power_flow import powerflow
from voltage_regulator import default_regulator


def example_network():
    """Small four-wire feeder: source, a main branch and a side branch with single-phase PV."""
    nodes = [
        {"id": "SRC", "name": "Transformer", "is_source": True},
        {"id": "N1", "name": "Cabinet 1"},
        {"id": "N2", "name": "Cabinet 2"},
        {"id": "N3", "name": "Street end"},
        {"id": "N4", "name": "Side branch", "load_kva": 6.0, "manual_load_type": "MONO"},
    ]
    cable_types = [
        {"id": "EAXVB_4x150", "r_phase_ohm_km": 0.206, "r_neutral_ohm_km": 0.206,
         "material": "AL", "max_current_a": 270},
        {"id": "BAXB_4x95", "r_phase_ohm_km": 0.320, "r_neutral_ohm_km": 0.320,
         "material": "ALUMINIUM", "max_current_a": 190},
    ]
    cables = [
        {"id": "C1", "node_a": "SRC", "node_b": "N1", "type_id": "EAXVB_4x150", "length_m": 150},
        {"id": "C2", "node_a": "N1", "node_b": "N2", "type_id": "EAXVB_4x150", "length_m": 200},
        {"id": "C3", "node_a": "N2", "node_b": "N3", "type_id": "BAXB_4x95", "length_m": 180, "pose": "AERIAL"},
        {"id": "C4", "node_a": "N1", "node_b": "N4", "type_id": "BAXB_4x95", "length_m": 120},
    ]
    clients = [
        {"id": "K1", "node_id": "N1", "contract_kva": 9.2, "connection_type": "MONO", "phase": "A"},
        {"id": "K2", "node_id": "N2", "contract_kva": 17.3, "connection_type": "TETRA"},
        {"id": "K3", "node_id": "N2", "contract_kva": 9.2, "pv_kva": 5.0, "connection_type": "MONO", "phase": "A"},
        {"id": "K4", "node_id": "N3", "contract_kva": 13.8, "pv_kva": 8.0, "connection_type": "MONO", "phase": "A"},
        {"id": "K5", "node_id": "N3", "contract_kva": 9.2, "connection_type": "MONO", "phase": "B"},
    ]
    return build_snapshot(nodes, cables, cable_types, clients, verbose=1)


def write_results(result, output: str, timestamp: bool = False):
    os.makedirs(output, exist_ok=True)

    def write_csv(df, base_name):
        fname = f"{base_name}{('-' + datetime.now().strftime('%Y%m%d-%H%M')) if timestamp else ''}.csv"
        df.to_csv(os.path.join(output, fname), index=False)

    write_csv(result.nodes, f"node_voltages_{result.scenario.lower()}")
    write_csv(result.cables, f"cable_flows_{result.scenario.lower()}")


if __name__ == "__main__":
    OUTPUT_DIR = os.environ.get("POWERFLOW_OUTPUT", "")

    snapshot, err_msg = example_network()
    if err_msg:
        raise SystemExit(f"Execution aborted, {err_msg}")

    config = NS.NetworkConfig(load_diversity_percent=60, season="WINTER")
    for scenario in NS.SCENARIOS:
        result = powerflow(snapshot, config, scenario, display_summary=True, verbose=1)
        if OUTPUT_DIR:
            write_results(result, OUTPUT_DIR)

    # Device siting on the consumption baseline, then the solve with both devices
    baseline = powerflow(snapshot, config, NS.CONSUMPTION)
    equi8 = find_compensator_placement(snapshot, baseline)
    print(format_placement(equi8))
    srg2 = find_regulator_placement_by_impact(snapshot, baseline)
    print(format_placement(srg2))

    regulators = [default_regulator(srg2.optimal.node_id)] if srg2.optimal else []
    compensators = [CompensatorConfig(node_id=equi8.optimal.node_id)] if equi8.optimal else []
    result = powerflow(snapshot, config, NS.CONSUMPTION, regulators, compensators,
                       display_summary=True, verbose=1)
    if OUTPUT_DIR:
        write_results(result, OUTPUT_DIR, timestamp=True)
