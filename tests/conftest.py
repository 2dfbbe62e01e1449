import pytest

import network_state as NS
from data_input import build_snapshot

CABLE_TYPES = [
    {"id": "T50", "r_phase_ohm_km": 0.5, "r_neutral_ohm_km": 0.5, "material": "CU", "max_current_a": 200},
    {"id": "T95", "r_phase_ohm_km": 0.32, "r_neutral_ohm_km": 0.64, "material": "AL", "max_current_a": 190},
]


def make_snapshot(nodes, cables, clients=None, cable_types=None, voltage_system=None):
    snapshot, err_msg = build_snapshot(nodes, cables, cable_types or CABLE_TYPES, clients, voltage_system)
    assert err_msg == ""
    return snapshot


def plain_config(**kwargs):
    """Resistive loads, cold cables and an ideal transformer."""
    params = {"thermal_correction": False, "transformer_ucc_percent": 0.0, "cos_phi": 1.0}
    params.update(kwargs)
    return NS.NetworkConfig(**params)


@pytest.fixture
def two_node_network():
    nodes = [{"id": "S", "is_source": True}, {"id": "N1"}]
    cables = [{"id": "C1", "node_a": "S", "node_b": "N1", "type_id": "T50", "length_m": 100}]
    clients = [{"id": "K1", "node_id": "N1", "contract_kva": 10.0, "connection_type": "MONO", "phase": "A"}]
    return make_snapshot(nodes, cables, clients)


@pytest.fixture
def feeder_nodes():
    return [
        {"id": "S", "name": "Source", "is_source": True},
        {"id": "N1", "name": "Cabinet"},
        {"id": "N2"},
        {"id": "N3", "name": "End"},
        {"id": "N4", "name": "Branch"},
    ]


@pytest.fixture
def feeder_cables():
    return [
        {"id": "C1", "node_a": "S", "node_b": "N1", "type_id": "T50", "length_m": 100},
        {"id": "C2", "node_a": "N1", "node_b": "N2", "type_id": "T50", "length_m": 150},
        {"id": "C3", "node_a": "N2", "node_b": "N3", "type_id": "T50", "length_m": 200},
        {"id": "C4", "node_a": "N1", "node_b": "N4", "type_id": "T50", "length_m": 100},
    ]


@pytest.fixture
def feeder_clients():
    return [
        {"id": "K1", "node_id": "N3", "contract_kva": 10.0, "connection_type": "MONO", "phase": "A"},
        {"id": "K2", "node_id": "N4", "contract_kva": 5.0, "connection_type": "MONO", "phase": "B"},
        {"id": "K3", "node_id": "N2", "contract_kva": 12.0, "connection_type": "TETRA"},
    ]


@pytest.fixture
def feeder(feeder_nodes, feeder_cables, feeder_clients):
    """
    S --C1-- N1 --C2-- N2 --C3-- N3
              |
              +--C4-- N4
    """
    return make_snapshot(feeder_nodes, feeder_cables, feeder_clients)


@pytest.fixture
def balanced_feeder(feeder_nodes, feeder_cables):
    clients = [
        {"id": "K1", "node_id": "N3", "contract_kva": 15.0, "connection_type": "TETRA"},
        {"id": "K2", "node_id": "N4", "contract_kva": 9.0, "connection_type": "TETRA"},
    ]
    return make_snapshot(feeder_nodes, feeder_cables, clients)


@pytest.fixture
def long_feeder():
    """Heavy balanced load at the end of a long cable, undervoltage at N2 only."""
    nodes = [{"id": "S", "is_source": True}, {"id": "N1"}, {"id": "N2"}]
    cables = [
        {"id": "C1", "node_a": "S", "node_b": "N1", "type_id": "T50", "length_m": 100},
        {"id": "C2", "node_a": "N1", "node_b": "N2", "type_id": "T50", "length_m": 700},
    ]
    clients = [{"id": "K1", "node_id": "N2", "contract_kva": 45.0, "connection_type": "TETRA"}]
    return make_snapshot(nodes, cables, clients)
