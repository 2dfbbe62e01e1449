from collections import deque
from typing import Dict, List, Optional, Tuple
import numpy as np
import pandas as pd

from network_state import NetworkSnapshot

EARTH_RADIUS_M = 6371000.0


def haversine(lat1, lng1, lat2, lng2) -> float:
    """Great-circle distance in metres between two (lat, lng) points in degrees."""
    phi1, phi2 = np.deg2rad(lat1), np.deg2rad(lat2)
    dphi = phi2 - phi1
    dlmb = np.deg2rad(lng2 - lng1)
    a = np.sin(dphi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(dlmb / 2) ** 2
    return float(2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(min(1.0, a))))


def cable_length(cable, nodes: pd.DataFrame = None) -> float:
    """
    Explicit length when given, otherwise integrated over the cable coordinates.
    Falls back to the straight distance between both end nodes.
    """
    length = cable["length_m"]
    if length is not None and not pd.isna(length) and float(length) > 0:
        return float(length)

    coords = cable["coordinates"]
    if isinstance(coords, (list, tuple)) and len(coords) >= 2:
        total = 0.0
        for (lat1, lng1), (lat2, lng2) in zip(coords[:-1], coords[1:]):
            total += haversine(lat1, lng1, lat2, lng2)
        return total

    if nodes is not None:
        a = nodes[nodes["id"] == cable["node_a"]]
        b = nodes[nodes["id"] == cable["node_b"]]
        if not a.empty and not b.empty:
            return haversine(a.iloc[0]["lat"], a.iloc[0]["lng"], b.iloc[0]["lat"], b.iloc[0]["lng"])
    return 0.0


def adjacency_map(nodes: pd.DataFrame, cables: pd.DataFrame) -> Dict:
    """node id -> list of (cable id, neighbour id), in cable table order."""
    adj = {node_id: [] for node_id in nodes["id"]}
    for _, cab in cables.iterrows():
        adj[cab["node_a"]].append((cab["id"], cab["node_b"]))
        if cab["node_b"] != cab["node_a"]:
            adj[cab["node_b"]].append((cab["id"], cab["node_a"]))
    return adj


class TopologyIndex:
    """
    Radial tree of the reachable network rooted at the source.
    Built once per calculation and shared by every sweep and placement query.
    """

    def __init__(self, snapshot: NetworkSnapshot, source, parent_node: Dict, parent_cable: Dict,
                 children: Dict, lengths: Dict, unreachable: List):
        self.snapshot = snapshot
        self.source = source
        self._parent_node = parent_node
        self._parent_cable = parent_cable
        self._children = children
        self.lengths = lengths
        self.unreachable = unreachable
        types = snapshot.cable_types
        r_type = dict(zip(types["id"], zip(types["r_phase_ohm_km"].astype(float),
                                           types["r_neutral_ohm_km"].astype(float))))
        # (R12, R0) in ohm/km per cable, resolved once
        self._resistances = {cab: r_type[typ] for cab, typ in zip(snapshot.cables["id"], snapshot.cables["type_id"])}
        self._upstream_cache: Dict = {}
        self._preorder = self._build_preorder()
        self._path_cache: Dict = {}

    def _build_preorder(self) -> List:
        order = []
        stack = [self.source]
        while stack:
            node = stack.pop()
            order.append(node)
            # reversed so that the first child is visited first
            stack.extend(reversed(self._children[node]))
        return order

    def preorder(self) -> List:
        return list(self._preorder)

    def reachable(self, node_id) -> bool:
        return node_id in self._parent_node

    def children(self, node_id) -> List:
        return list(self._children.get(node_id, []))

    def parent(self, node_id):
        return self._parent_node.get(node_id)

    def parent_cable(self, node_id):
        return self._parent_cable.get(node_id)

    def tree_cables(self) -> List:
        """Cable ids of the tree in preorder of their downstream node."""
        return [self._parent_cable[n] for n in self._preorder if n != self.source]

    def path_to(self, node_id) -> Optional[List]:
        """Ordered cable ids from the source to the node, None when unreachable."""
        if node_id not in self._parent_node:
            return None
        if node_id in self._path_cache:
            return list(self._path_cache[node_id])
        path = []
        node = node_id
        while node != self.source:
            path.append(self._parent_cable[node])
            node = self._parent_node[node]
        path.reverse()
        self._path_cache[node_id] = path
        return list(path)

    def downstream_nodes(self, node_id) -> List:
        """The node and every node fed through it, in preorder."""
        if node_id not in self._parent_node:
            return []
        out = []
        stack = [node_id]
        while stack:
            node = stack.pop()
            out.append(node)
            stack.extend(reversed(self._children[node]))
        return out

    def path_length(self, node_id) -> float:
        path = self.path_to(node_id)
        if path is None:
            return float("nan")
        return float(sum(self.lengths[c] for c in path))

    def cable_resistances(self, cable_id) -> Tuple[float, float]:
        """(R12, R0) in ohm/km at 20 degC of the cable's type."""
        r12, r0 = self._resistances[cable_id]
        return float(r12), float(r0)

    def upstream_impedance(self, node_id, thermal: Dict = None) -> Tuple[float, float]:
        """
        Summed phase and neutral resistance (ohm) from the source to the node.
        Phase resistance per cable is (R0 + 2 R12) / 3, neutral uses R0.
        `thermal` maps cable id -> resistance correction factor.
        """
        if thermal is None and node_id in self._upstream_cache:
            return self._upstream_cache[node_id]
        path = self.path_to(node_id)
        if path is None:
            return float("nan"), float("nan")
        z_ph, z_n = 0.0, 0.0
        for cab in path:
            r12, r0 = self._resistances[cab]
            km = self.lengths[cab] / 1000.0
            factor = 1.0 if thermal is None else thermal.get(cab, 1.0)
            z_ph += (r0 + 2 * r12) / 3 * km * factor
            z_n += r0 * km * factor
        if thermal is None:
            self._upstream_cache[node_id] = (z_ph, z_n)
        return z_ph, z_n

    def max_upstream_impedance(self) -> float:
        zs = [self.upstream_impedance(n)[0] for n in self._preorder if n != self.source]
        return max(zs) if zs else 0.0


def build_topology(snapshot: NetworkSnapshot, verbose: int = 0) -> Tuple[Optional[TopologyIndex], str]:
    err_msg = ""
    nodes, cables = snapshot.nodes, snapshot.cables

    # Check for the source
    sources = nodes.loc[nodes["is_source"].astype(bool), "id"].tolist()
    if len(sources) == 0:
        return None, "cannot compute, the network has no source node"
    if len(sources) > 1:
        return None, f"cannot compute, the network has several source nodes {sources}"
    source = sources[0]

    adj = adjacency_map(nodes, cables)

    # Filtering out disconnected nodes, first discovery wins
    parent_node = {source: None}
    parent_cable = {source: None}
    children = {source: []}
    queue = deque([source])
    while queue:
        node = queue.popleft()
        for cab_id, other in adj[node]:
            if other in parent_node:
                continue
            parent_node[other] = node
            parent_cable[other] = cab_id
            children[other] = []
            children[node].append(other)
            queue.append(other)

    unreachable = [n for n in nodes["id"] if n not in parent_node]

    # Check for loops (radial only)
    working_cables = cables[cables["node_a"].isin(list(parent_node)) & cables["node_b"].isin(list(parent_node))]
    if len(working_cables) - len(parent_node) + 1 > 0:
        err_msg = "cannot compute, topology has a loop, only radial topologies are supported"
        return None, err_msg

    lengths = {cab["id"]: cable_length(cab, nodes) for _, cab in cables.iterrows()}

    topology = TopologyIndex(snapshot, source, parent_node, parent_cable, children, lengths, unreachable)
    if verbose != 0:
        print(f"Topology: {len(parent_node)} reachable nodes, {len(unreachable)} unreachable")
    return topology, err_msg
