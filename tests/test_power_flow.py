import math

import numpy as np
import pandas as pd
import pytest

import data_preparation
import network_state as NS
import print_results
from conftest import make_snapshot, plain_config
from neutral_compensator import CompensatorConfig
import phase_allocation
from power_flow import DIVERSITY_SWEEP_PERCENT, calibrate_load_diversity, forced_powerflow, powerflow
from voltage_regulator import RegulatorConfig, default_regulator


def test_two_node_drop_matches_current_times_resistance(two_node_network):
    result = powerflow(two_node_network, plain_config(), NS.CONSUMPTION)
    assert result.converged
    e = 400 / math.sqrt(3)
    r = 0.5 * 0.1
    cable = result.cables.set_index("id").loc["C1"]
    v_a, v_b, v_c = result.node_voltages("N1")

    assert e - v_a == pytest.approx(cable["i_ph1"] * r, abs=1e-3)
    assert cable["i_ph1"] == pytest.approx(10000 / v_a, rel=1e-4)
    assert e - v_a == pytest.approx(2.19, abs=0.01)
    assert cable["i_ph2"] == pytest.approx(0.0, abs=1e-9)
    assert cable["i_ph3"] == pytest.approx(0.0, abs=1e-9)
    assert v_b == pytest.approx(e, abs=1e-6)
    assert v_c == pytest.approx(e, abs=1e-6)
    # single loaded phase, the neutral carries the same current
    assert cable["i_neutral"] == pytest.approx(cable["i_ph1"], rel=1e-6)
    expected_loss = cable["i_ph1"] ** 2 * r * 2 / 1000
    assert result.total_losses_kw == pytest.approx(expected_loss, rel=1e-6)


def test_voltage_drops_monotonically_without_production(feeder):
    result = powerflow(feeder, NS.NetworkConfig(), NS.CONSUMPTION)
    assert result.converged
    volts = result.nodes.set_index("id")
    for _, cable in result.cables.iterrows():
        for col in ("v_a", "v_b", "v_c"):
            assert volts.at[cable["to"], col] <= volts.at[cable["from"], col] + 1e-9


def test_results_are_deterministic(feeder):
    config = NS.NetworkConfig()
    first = powerflow(feeder, config, NS.MIXED)
    second = powerflow(feeder, config, NS.MIXED)
    pd.testing.assert_frame_equal(first.nodes, second.nodes)
    pd.testing.assert_frame_equal(first.cables, second.cables)
    assert first.total_losses_kw == second.total_losses_kw


def test_unreachable_node_is_excluded(feeder_nodes, feeder_cables, feeder_clients):
    nodes = feeder_nodes + [{"id": "X", "load_kva": 5.0}]
    result = powerflow(make_snapshot(nodes, feeder_cables, feeder_clients), plain_config())
    assert result.converged
    assert result.excluded_nodes == ["X"]
    assert "X" not in set(result.nodes["id"])
    assert result.node_voltages("X") is None


def test_loop_cannot_compute(feeder_nodes, feeder_cables):
    cables = feeder_cables + [{"id": "C5", "node_a": "N3", "node_b": "N4", "type_id": "T50", "length_m": 50}]
    result = powerflow(make_snapshot(feeder_nodes, cables), plain_config())
    assert result.convergence_status == NS.CANNOT_COMPUTE
    assert "loop" in result.err_msg
    assert set(result.excluded_nodes) == {"S", "N1", "N2", "N3", "N4"}


def test_unknown_scenario_raises(feeder):
    with pytest.raises(ValueError):
        powerflow(feeder, scenario="NIGHT")


def test_scenario_factors():
    config = NS.NetworkConfig(load_diversity_percent=50, production_diversity_percent=80, weather_factor=0.5)
    assert data_preparation.scenario_factors(config, NS.CONSUMPTION) == (0.5, 0.0)
    assert data_preparation.scenario_factors(config, NS.MIXED) == pytest.approx((0.5, 0.4))
    assert data_preparation.scenario_factors(config, NS.PRODUCTION) == pytest.approx((0.0, 0.4))


def test_production_raises_voltage(feeder_nodes, feeder_cables):
    clients = [{"id": "K1", "node_id": "N3", "contract_kva": 3.0, "pv_kva": 10.0,
                "connection_type": "MONO", "phase": "A"}]
    snapshot = make_snapshot(feeder_nodes, feeder_cables, clients)
    result = powerflow(snapshot, plain_config(), NS.PRODUCTION)
    assert result.node_voltages("N3")[0] > 400 / math.sqrt(3)
    assert result.busbar["reverse_flow"]


def test_three_wire_reports_line_reference(feeder):
    config = plain_config(voltage_system=NS.THREE_WIRE_230V)
    result = powerflow(feeder, config)
    assert result.converged
    v_src = result.node_voltages("S")
    assert v_src == pytest.approx((230.0, 230.0, 230.0))
    assert (result.nodes["neutral_current_a"] == 0).all()
    assert (result.cables["i_neutral"] == 0).all()


def test_thermal_loop_converges(feeder):
    result = powerflow(feeder, NS.NetworkConfig(season="SUMMER"), NS.CONSUMPTION)
    assert result.converged
    assert result.iterations > 1
    assert result.err_msg == ""


def test_transformer_impedance():
    config = NS.NetworkConfig(transformer_kva=250, transformer_ucc_percent=4, transformer_x_over_r=4)
    z = data_preparation.transformer_impedance(config)
    assert abs(z) == pytest.approx(0.04 * 400 ** 2 / 250000)
    assert z.imag / z.real == pytest.approx(4.0)
    assert data_preparation.transformer_impedance(NS.NetworkConfig(transformer_ucc_percent=0)) == 0j


def test_busbar_summary(feeder):
    result = powerflow(feeder, plain_config(), NS.CONSUMPTION)
    bb = result.busbar
    assert bb["node_id"] == "S"
    assert bb["net_active_power_kw"] == pytest.approx(27.0 + result.total_losses_kw, rel=1e-3)
    assert bb["transformer_loading_pct"] == pytest.approx(bb["net_power_kva"] / 250 * 100)
    assert bb["unbalance"]["status"] in ("normal", "warning", "critical")


def test_compliance_and_extremes(long_feeder):
    result = powerflow(long_feeder, plain_config(), NS.CONSUMPTION)
    nodes = result.nodes.set_index("id")
    assert nodes.at["N2", "compliance"] == "critical"
    assert nodes.at["S", "compliance"] == "normal"
    ext_v = print_results.extreme_voltages(result)
    assert ext_v.at[0, "node_min"] == "N2"
    assert print_results.compliance_summary(result)["critical"] == 1


def test_voltage_status_boundaries():
    assert print_results.voltage_status(241.0) == "normal"
    assert print_results.voltage_status(242.0) == "warning"
    assert print_results.voltage_status(252.0) == "warning"
    assert print_results.voltage_status(206.0) == "critical"


def test_manual_regulator_raises_downstream_voltages(feeder):
    config = plain_config()
    baseline = powerflow(feeder, config)
    reg = RegulatorConfig(node_id="N1", mode="MANUAL", manual_coefficients=(3.5, 3.5, 3.5))
    result = powerflow(feeder, config, regulators=[reg])
    assert result.converged
    assert result.regulators[0].is_active
    for node in ("N1", "N2", "N3", "N4"):
        assert result.node_voltages(node)[1] > baseline.node_voltages(node)[1]
    assert result.node_voltages("S") == pytest.approx(baseline.node_voltages("S"), abs=0.5)


def test_disabled_regulator_changes_nothing(feeder):
    config = plain_config()
    baseline = powerflow(feeder, config)
    reg = RegulatorConfig(node_id="N2", enabled=False)
    result = powerflow(feeder, config, regulators=[reg])
    assert result.regulators[0].coefficients == (0.0, 0.0, 0.0)
    assert result.regulators[0].state == "INACTIVE"
    np.testing.assert_allclose(result.nodes[["v_a", "v_b", "v_c"]], baseline.nodes[["v_a", "v_b", "v_c"]])


def test_compensator_reduces_neutral_current(feeder):
    config = plain_config()
    baseline = powerflow(feeder, config)
    result = powerflow(feeder, config, compensators=[CompensatorConfig(node_id="N3")])
    comp = result.compensators[0]
    assert comp.active
    assert comp.neutral_current_after_a <= comp.neutral_current_initial_a
    before = baseline.cables.set_index("id").at["C3", "i_neutral"]
    after = result.cables.set_index("id").at["C3", "i_neutral"]
    assert after < before


def test_device_on_unreachable_node(feeder_nodes, feeder_cables, feeder_clients):
    nodes = feeder_nodes + [{"id": "X"}]
    snapshot = make_snapshot(nodes, feeder_cables, feeder_clients)
    result = powerflow(snapshot, plain_config(), regulators=[RegulatorConfig(node_id="X")],
                       compensators=[CompensatorConfig(node_id="X")])
    assert result.regulators[0].state == "INACTIVE"
    assert "not reachable" in result.regulators[0].err_msg
    assert not result.compensators[0].eligible


def test_auto_regulator_boosts_undervoltage(long_feeder):
    config = NS.NetworkConfig()
    baseline = powerflow(long_feeder, config)
    result = powerflow(long_feeder, config, regulators=[default_regulator("N2")])
    assert result.converged
    assert result.iterations > 1
    reg = result.regulators[0]
    assert reg.is_active
    assert reg.switch_states == ("BO2", "BO2", "BO2")
    assert reg.coefficients == (7.0, 7.0, 7.0)
    # the regulator reads its input upstream of its own boost
    assert max(reg.input_voltages) < 214.0
    for before, after in zip(baseline.node_voltages("N2"), result.node_voltages("N2")):
        assert after > before


def test_oscillating_regulator_is_non_converged():
    nodes = [{"id": "S", "is_source": True}, {"id": "N1"}, {"id": "N2"}]
    cables = [
        {"id": "C1", "node_a": "S", "node_b": "N1", "type_id": "T50", "length_m": 300},
        {"id": "C2", "node_a": "N1", "node_b": "N2", "type_id": "T50", "length_m": 300},
    ]
    clients = [{"id": "K1", "node_id": "N2", "contract_kva": 38.25, "connection_type": "TETRA"}]
    snapshot = make_snapshot(nodes, cables, clients)
    config = plain_config()
    # N1 sits on the BO1 threshold, without hysteresis the tap toggles every round
    result = powerflow(snapshot, config, regulators=[RegulatorConfig(node_id="N1", hysteresis_v=0.0)])
    assert result.convergence_status == NS.NON_CONVERGED
    assert not result.converged
    assert result.iterations == config.max_outer_iterations
    assert "did not settle" in result.err_msg
    assert not result.nodes.empty
    assert set(result.nodes["id"]) == {"S", "N1", "N2"}
    assert result.node_voltages("N2") is not None


def test_regulator_and_compensator_on_same_node(feeder):
    result = powerflow(feeder, plain_config(), regulators=[default_regulator("N3")],
                       compensators=[CompensatorConfig(node_id="N3")])
    assert result.converged
    reg, comp = result.regulators[0], result.compensators[0]
    assert reg.is_active
    # the compensator works on the regulated output
    assert comp.initial_voltages == pytest.approx(reg.output_voltages)
    assert comp.neutral_current_after_a <= comp.neutral_current_initial_a


def test_compensator_settles_on_current_tolerance(feeder):
    assert NS.NetworkConfig().outer_tolerance_a == 0.01
    config = plain_config(outer_tolerance_v=1e6, outer_tolerance_a=1e6)
    result = powerflow(feeder, config, compensators=[CompensatorConfig(node_id="N3")])
    assert result.converged
    # the first round has nothing to compare against
    assert result.iterations == 2


def test_calibrated_diversity_matches_target(long_feeder):
    config = plain_config()
    reference = powerflow(long_feeder, plain_config(load_diversity_percent=80.0))
    target = sum(reference.node_voltages("N2")) / 3
    assert calibrate_load_diversity(long_feeder, config, "N2", target) == 80.0
    # a higher target needs less load
    assert calibrate_load_diversity(long_feeder, config, "N2", target + 5.0) < 80.0


def test_calibration_keeps_diversity_without_measurement(long_feeder):
    config = plain_config(load_diversity_percent=90.0)
    assert calibrate_load_diversity(long_feeder, config, "UNKNOWN", 225.0) == 90.0


def test_forced_powerflow_reports_fitted_parameters(feeder_nodes, feeder_cables):
    clients = [
        {"id": "K1", "node_id": "N3", "contract_kva": 6.0, "pv_kva": 6.0, "connection_type": "MONO", "phase": "A"},
        {"id": "K2", "node_id": "N3", "contract_kva": 6.0, "pv_kva": 3.0, "connection_type": "MONO", "phase": "B"},
        {"id": "K3", "node_id": "N4", "contract_kva": 9.0, "connection_type": "TETRA"},
    ]
    snapshot = make_snapshot(feeder_nodes, feeder_cables, clients)
    result = forced_powerflow(snapshot, plain_config(), "N3", (234.0, 231.0, 229.0))
    assert result.scenario == NS.MIXED
    assert result.calibrated_load_diversity_percent in DIVERSITY_SWEEP_PERCENT
    assert sum(result.production_split) == pytest.approx(100.0)
    assert result.convergence_status in (NS.CONVERGED, NS.NON_CONVERGED)
    assert result.node_voltages("N3") is not None


def test_forced_powerflow_unknown_measurement_node(feeder):
    result = forced_powerflow(feeder, plain_config(), "UNKNOWN", (235.0, 230.0, 230.0))
    assert result.calibrated_load_diversity_percent == 100.0
    assert result.production_split == pytest.approx(phase_allocation.production_split_from_voltages(235.0, 230.0, 230.0))
    assert result.production_split == pytest.approx((100.0, 0.0, 0.0))
    assert "measurement node UNKNOWN" in result.err_msg
    assert result.converged
