import pytest

import data_preparation
import topology_discovery
from conftest import make_snapshot


def test_haversine_one_degree_of_latitude():
    assert topology_discovery.haversine(50.0, 4.0, 51.0, 4.0) == pytest.approx(111195, rel=1e-3)


def test_cable_length_from_coordinates_when_length_missing():
    cable = {"length_m": 0.0, "coordinates": [(50.0, 4.0), (50.001, 4.0), (50.002, 4.0)],
             "node_a": "S", "node_b": "N1"}
    assert topology_discovery.cable_length(cable) == pytest.approx(222.4, rel=1e-3)


def test_explicit_length_wins():
    cable = {"length_m": 42.0, "coordinates": [(50.0, 4.0), (51.0, 4.0)], "node_a": "S", "node_b": "N1"}
    assert topology_discovery.cable_length(cable) == 42.0


def test_tree_queries(feeder):
    topo, err_msg = topology_discovery.build_topology(feeder)
    assert err_msg == ""
    assert topo.source == "S"
    order = topo.preorder()
    assert order[0] == "S"
    for node in order[1:]:
        assert order.index(topo.parent(node)) < order.index(node)
    assert topo.path_to("N3") == ["C1", "C2", "C3"]
    assert topo.path_to("S") == []
    assert topo.path_length("N3") == pytest.approx(450.0)
    assert set(topo.downstream_nodes("N1")) == {"N1", "N2", "N3", "N4"}
    assert topo.downstream_nodes("N3") == ["N3"]
    assert topo.children("N1") == ["N2", "N4"]
    assert sorted(topo.tree_cables()) == ["C1", "C2", "C3", "C4"]
    assert topo.unreachable == []


def test_upstream_impedance_uses_utility_formula(feeder_nodes):
    cables = [
        {"id": "C1", "node_a": "S", "node_b": "N1", "type_id": "T95", "length_m": 1000},
        {"id": "C2", "node_a": "N1", "node_b": "N2", "type_id": "T95", "length_m": 500},
    ]
    snapshot = make_snapshot(feeder_nodes[:3], cables)
    topo, _ = topology_discovery.build_topology(snapshot)
    z_ph, z_n = topo.upstream_impedance("N2")
    # R12 = 0.32, R0 = 0.64 ohm/km over 1.5 km
    assert z_ph == pytest.approx((0.64 + 2 * 0.32) / 3 * 1.5)
    assert z_n == pytest.approx(0.64 * 1.5)
    assert topo.max_upstream_impedance() == pytest.approx(z_ph)
    z_hot, _ = topo.upstream_impedance("N2", thermal={"C1": 1.1, "C2": 1.1})
    assert z_hot == pytest.approx(z_ph * 1.1)


def test_unreachable_node_is_listed(feeder_nodes, feeder_cables):
    nodes = feeder_nodes + [{"id": "X"}]
    topo, err_msg = topology_discovery.build_topology(make_snapshot(nodes, feeder_cables))
    assert err_msg == ""
    assert topo.unreachable == ["X"]
    assert topo.path_to("X") is None
    assert not topo.reachable("X")


def test_loop_cannot_compute(feeder_nodes, feeder_cables):
    cables = feeder_cables + [{"id": "C5", "node_a": "N3", "node_b": "N4", "type_id": "T50", "length_m": 50}]
    topo, err_msg = topology_discovery.build_topology(make_snapshot(feeder_nodes, cables))
    assert topo is None
    assert err_msg.startswith("cannot compute")
    assert "loop" in err_msg


def test_missing_or_several_sources(feeder_nodes, feeder_cables):
    no_source = [dict(n, is_source=False) for n in feeder_nodes]
    _, err_msg = topology_discovery.build_topology(make_snapshot(no_source, feeder_cables))
    assert "no source" in err_msg

    two_sources = [dict(n, is_source=n["id"] in ("S", "N3")) for n in feeder_nodes]
    _, err_msg = topology_discovery.build_topology(make_snapshot(two_sources, feeder_cables))
    assert "several source" in err_msg


def test_bus_types(feeder):
    topo, _ = topology_discovery.build_topology(feeder)
    buses = data_preparation.working_buses(topo).set_index("id")
    assert buses.at["S", "type"] == data_preparation.SUBSTATION
    assert buses.at["N1", "type"] == data_preparation.BIFURCATION
    assert buses.at["N2", "type"] == data_preparation.NEXT_TO_END
    assert buses.at["N3", "type"] == data_preparation.END
    assert buses.at["N4", "type"] == data_preparation.END
    assert buses.at["S", "parent_number"] == -1


def test_cable_resistances_resolved_at_build(feeder):
    topo, _ = topology_discovery.build_topology(feeder)
    z_ph, z_n = topo.upstream_impedance("N3")
    assert topo.cable_resistances("C2") == (0.5, 0.5)
    # later edits of the type table do not reach an existing index
    feeder.cable_types.loc[feeder.cable_types["id"] == "T50", "r_phase_ohm_km"] = 5.0
    assert topo.cable_resistances("C2") == (0.5, 0.5)
    assert topo.upstream_impedance("N3") == (z_ph, z_n)
    z_hot, _ = topo.upstream_impedance("N3", thermal={"C1": 2.0, "C2": 2.0, "C3": 2.0})
    assert z_hot == pytest.approx(2 * z_ph)
    assert topo.upstream_impedance("N3") == (z_ph, z_n)
