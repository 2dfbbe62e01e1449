import pandas as pd
from typing import Tuple

import network_state as NS
from network_state import NetworkSnapshot
from phase_allocation import convert_connection_type, normalize_connection_type

# Columns that may be left out by the caller, with their defaults
OPTIONAL_COLUMNS = {
    "nodes": {"name": "", "lat": 0.0, "lng": 0.0, "is_source": False, "load_kva": 0.0,
              "production_kva": 0.0, "manual_load_type": "POLY"},
    "cables": {"length_m": 0.0, "coordinates": None, "pose": "UNDERGROUND"},
    "cable_types": {"r_neutral_ohm_km": None, "material": "", "max_current_a": 0.0},
    "clients": {"pv_kva": 0.0, "connection_type": "MONO", "phase": ""},
}

TRUE_STRINGS = ("TRUE", "1", "YES", "Y", "T")

EXPECTED_COLUMNS = {
    "nodes": NS.NODE_COLUMNS,
    "cables": NS.CABLE_COLUMNS,
    "cable_types": NS.CABLE_TYPE_COLUMNS,
    "clients": NS.CLIENT_COLUMNS,
}


def read_table(records, table: str) -> Tuple[pd.DataFrame, str]:
    """
    Turns caller records (DataFrame, list of dicts or None) into a DataFrame
    with the expected columns of the given table.

    Returns:
      - df: pandas.DataFrame (empty if no records)
      - err_msg: "" if successful, "empty table" if no rows, or a column message
    """
    err_msg = ""
    if records is None:
        df = pd.DataFrame(columns=EXPECTED_COLUMNS[table])
        return df, "empty table"

    df = records.copy() if isinstance(records, pd.DataFrame) else pd.DataFrame(list(records))
    if df.empty:
        return pd.DataFrame(columns=EXPECTED_COLUMNS[table]), "empty table"

    for col, default in OPTIONAL_COLUMNS[table].items():
        if col not in df.columns:
            df[col] = default
    missing = [c for c in EXPECTED_COLUMNS[table] if c not in df.columns]
    if missing:
        return df, f"check for column names in '{table}' table (missing {missing})"

    df = df[EXPECTED_COLUMNS[table]].reset_index(drop=True)
    return df, err_msg


def _as_float(series: pd.Series) -> pd.Series:
    return pd.to_numeric(series, errors="coerce").fillna(0.0).astype(float)


def _as_bool(value) -> bool:
    """Flag from a bool, a number or a text such as "true", "0" or "no"."""
    if isinstance(value, str):
        return value.strip().upper() in TRUE_STRINGS
    if value is None or pd.isna(value):
        return False
    return bool(value)


def build_snapshot(nodes, cables, cable_types, clients=None, voltage_system: str = None,
                   verbose: int = 0) -> Tuple[NetworkSnapshot, str]:
    """
    Validates the network tables and returns an immutable snapshot. With a
    voltage_system, client connection types are made consistent with it.
    On error an empty snapshot and the message are returned.
    """
    empty = NetworkSnapshot()

    # nodes
    nodes, err_msg = read_table(nodes, "nodes")
    if err_msg == "empty table":
        return empty, "'nodes' table is empty"
    if err_msg:
        return empty, err_msg
    if nodes.shape[0] != nodes[["id"]].drop_duplicates().shape[0]:
        return empty, "check for duplicated node id in 'nodes' table"
    nodes["name"] = nodes["name"].fillna("").astype(str)
    nodes["is_source"] = nodes["is_source"].map(_as_bool).astype(bool)
    for col in ["lat", "lng", "load_kva", "production_kva"]:
        nodes[col] = _as_float(nodes[col])
    nodes["manual_load_type"] = nodes["manual_load_type"].fillna("POLY").astype(str).str.upper()
    nodes.loc[nodes["manual_load_type"] != "MONO", "manual_load_type"] = "POLY"

    # cable_types
    cable_types, err_msg = read_table(cable_types, "cable_types")
    if err_msg == "empty table":
        return empty, "'cable_types' table is empty"
    if err_msg:
        return empty, err_msg
    if cable_types.shape[0] != cable_types[["id"]].drop_duplicates().shape[0]:
        return empty, "check for duplicated type id in 'cable_types' table"
    cable_types["r_phase_ohm_km"] = _as_float(cable_types["r_phase_ohm_km"])
    # a type without neutral data keeps the phase resistance on the neutral
    cable_types["r_neutral_ohm_km"] = pd.to_numeric(cable_types["r_neutral_ohm_km"], errors="coerce")
    cable_types["r_neutral_ohm_km"] = cable_types["r_neutral_ohm_km"].fillna(cable_types["r_phase_ohm_km"])
    cable_types["max_current_a"] = _as_float(cable_types["max_current_a"])
    cable_types["material"] = cable_types["material"].fillna("").astype(str).str.upper()
    if (cable_types[["r_phase_ohm_km", "r_neutral_ohm_km"]] < 0).any().any():
        return empty, "check for negative resistances in 'cable_types' table"

    # cables
    cables, err_msg = read_table(cables, "cables")
    if err_msg == "empty table":
        cables = pd.DataFrame(columns=NS.CABLE_COLUMNS)
    elif err_msg:
        return empty, err_msg
    if cables.shape[0] != cables[["id"]].drop_duplicates().shape[0]:
        return empty, "check for duplicated cable id in 'cables' table"
    unknown_nodes = cables.loc[~cables["node_a"].isin(nodes["id"]) | ~cables["node_b"].isin(nodes["id"]), "id"]
    if not unknown_nodes.empty:
        return empty, f"check for node ids of cable(s) {unknown_nodes.tolist()} in 'cables' table"
    unknown_types = cables.loc[~cables["type_id"].isin(cable_types["id"]), "id"]
    if not unknown_types.empty:
        return empty, f"check for type ids of cable(s) {unknown_types.tolist()} in 'cables' table"
    cables["length_m"] = _as_float(cables["length_m"])
    cables["pose"] = cables["pose"].fillna("UNDERGROUND").astype(str).str.upper()

    # clients
    clients, err_msg = read_table(clients, "clients")
    if err_msg == "empty table":
        clients = pd.DataFrame(columns=NS.CLIENT_COLUMNS)
        if verbose != 0:
            print("no clients")
    elif err_msg:
        return empty, err_msg
    else:
        if clients.shape[0] != clients[["id"]].drop_duplicates().shape[0]:
            return empty, "check for duplicated client id in 'clients' table"
        orphans = clients.loc[~clients["node_id"].isin(nodes["id"])]
        if not orphans.empty:
            print(f"clients {orphans['id'].tolist()} are linked to unknown nodes and will be ignored.")
            clients = clients.loc[clients["node_id"].isin(nodes["id"])].reset_index(drop=True)
        clients["contract_kva"] = _as_float(clients["contract_kva"])
        clients["pv_kva"] = _as_float(clients["pv_kva"])
        clients["connection_type"] = clients["connection_type"].map(normalize_connection_type)
        if voltage_system is not None:
            converted = [convert_connection_type(t, voltage_system, str(i))
                         for t, i in zip(clients["connection_type"], clients["id"])]
            clients["connection_type"] = [t for t, _ in converted]
            for _, warning in converted:
                if warning and verbose != 0:
                    print(warning)
        clients["phase"] = clients["phase"].fillna("").astype(str).str.upper().str.replace(" ", "")

    snapshot = NetworkSnapshot(nodes=nodes, cables=cables, cable_types=cable_types, clients=clients)
    if verbose != 0:
        print(f"Snapshot loaded: {len(nodes)} nodes, {len(cables)} cables, {len(clients)} clients")
    return snapshot, ""
