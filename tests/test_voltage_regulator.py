import pytest

import network_state as NS
import voltage_regulator as VR


@pytest.fixture
def reg():
    return VR.default_regulator("N1")


@pytest.mark.parametrize("voltage, position", [
    (250.0, "LO2"),
    (246.0, "LO2"),
    (245.9, "LO1"),
    (238.0, "LO1"),
    (237.9, "BYP"),
    (230.0, "BYP"),
    (222.1, "BYP"),
    (222.0, "BO1"),
    (214.1, "BO1"),
    (214.0, "BO2"),
    (200.0, "BO2"),
])
def test_threshold_boundaries(reg, voltage, position):
    assert VR.switch_state(voltage, reg)[0] == position


def test_coefficients_follow_position(reg):
    result = VR.regulate(reg, (210.0, 230.0, 247.0))
    assert result.switch_states == ("BO2", "BYP", "LO2")
    assert result.coefficients == (7.0, 0.0, -7.0)
    assert result.output_voltages == pytest.approx((224.7, 230.0, 229.71))


def test_hysteresis_holds_previous_position(reg):
    assert VR.switch_state(237.0, reg)[0] == "BYP"
    assert VR.switch_state(237.0, reg, previous="LO1")[0] == "LO1"
    assert VR.switch_state(235.9, reg, previous="LO1")[0] == "BYP"
    assert VR.switch_state(223.0, reg, previous="BO1")[0] == "BO1"
    assert VR.switch_state(237.0, reg, previous="BYP")[0] == "BYP"


def test_disabled_regulator_has_zero_coefficients(reg):
    reg.enabled = False
    result = VR.regulate(reg, (200.0, 250.0, 230.0))
    assert result.state == VR.INACTIVE
    assert result.coefficients == (0.0, 0.0, 0.0)
    assert result.output_voltages == result.input_voltages


def test_fault_wins_over_maintenance(reg):
    reg.fault = True
    reg.maintenance = True
    assert VR.regulator_state(reg) == VR.FAULT
    reg.fault = False
    assert VR.regulator_state(reg) == VR.MAINTENANCE
    result = VR.regulate(reg, (200.0, 200.0, 200.0))
    assert result.coefficients == (0.0, 0.0, 0.0)


def test_unordered_thresholds_fault(reg):
    reg.boost1_v = 240.0
    result = VR.regulate(reg, (230.0, 230.0, 230.0))
    assert result.state == VR.FAULT
    assert "not ordered" in result.err_msg


def test_manual_mode(reg):
    reg.mode = "MANUAL"
    reg.manual_coefficients = (2.0, 0.0, -3.0)
    result = VR.regulate(reg, (230.0, 230.0, 230.0))
    assert result.coefficients == (2.0, 0.0, -3.0)
    assert result.output_voltages == pytest.approx((234.6, 230.0, 223.1))


def test_three_wire_type_defaults():
    reg = VR.default_regulator("N1", NS.THREE_WIRE_230V)
    assert reg.regulator_type == VR.SRG2_230
    assert (reg.boost2_v, reg.boost1_v, reg.lower1_v, reg.lower2_v) == (216.0, 223.0, 237.0, 244.0)
    assert reg.coef_boost2 == 6.0


def test_three_wire_blocks_opposite_directions():
    reg = VR.default_regulator("N1", NS.THREE_WIRE_230V)
    # the overvoltage phase deviates most, boosting phases bypass
    result = VR.regulate(reg, (212.0, 250.0, 230.0))
    assert result.switch_states == ("BYP", "LO2", "BYP")
    result = VR.regulate(reg, (205.0, 240.0, 230.0))
    assert result.switch_states == ("BO2", "BYP", "BYP")


def test_power_limit_is_advisory(reg):
    result = VR.regulate(reg, (210.0, 210.0, 210.0), downstream_load_kva=120.0)
    assert result.power_limit_reached
    assert result.coefficients == (7.0, 7.0, 7.0)
    result = VR.regulate(reg, (210.0, 210.0, 210.0), downstream_production_kva=90.0)
    assert result.power_limit_reached
    assert not VR.regulate(reg, (210.0, 210.0, 210.0), 50.0, 50.0).power_limit_reached


def test_is_stabilized(reg):
    first = VR.regulate(reg, (210.0, 230.0, 230.0))
    second = VR.regulate(reg, (211.0, 230.0, 230.0), previous_states=first.switch_states)
    assert not VR.is_stabilized(first, None)
    assert VR.is_stabilized(second, first)
