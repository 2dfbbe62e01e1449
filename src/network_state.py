from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import math
import pandas as pd
import numpy as np

# Nominal voltage systems
FOUR_WIRE_400V = "FOUR_WIRE_400V"    # 3 phases + neutral, phase-neutral reference 230 V
THREE_WIRE_230V = "THREE_WIRE_230V"  # 3 phases without neutral, phase-phase reference 230 V
VOLTAGE_SYSTEMS = (FOUR_WIRE_400V, THREE_WIRE_230V)

# Calculation scenarios
CONSUMPTION = "CONSUMPTION"
MIXED = "MIXED"
PRODUCTION = "PRODUCTION"
SCENARIOS = (CONSUMPTION, MIXED, PRODUCTION)

# Convergence status
CONVERGED = "converged"
NON_CONVERGED = "non-converged"
CANNOT_COMPUTE = "cannot-compute"

PHASES = ("A", "B", "C")
REFERENCE_VOLTAGE = 230.0         # reported reference voltage for both systems (V)
MIN_IMPEDANCE_OHM = 0.001         # floor before any division by an impedance
MIN_VOLTAGE_V = 1e-6              # floor before any division by a voltage
PRODUCTION_DISCONNECT_VOLTAGE = 253.0

# Expected columns of the network tables
NODE_COLUMNS = ["id", "name", "lat", "lng", "is_source", "load_kva", "production_kva", "manual_load_type"]
CABLE_COLUMNS = ["id", "node_a", "node_b", "type_id", "length_m", "coordinates", "pose"]
CABLE_TYPE_COLUMNS = ["id", "r_phase_ohm_km", "r_neutral_ohm_km", "material", "max_current_a"]
CLIENT_COLUMNS = ["id", "node_id", "contract_kva", "pv_kva", "connection_type", "phase"]

# Rotation factor, phase-to-line and symmetrical component matrices
A_EXP = np.exp(1j * np.deg2rad(120))
D_MATRIX = np.array([[1, -1, 0],
                     [0, 1, -1],
                     [-1, 0, 1]], dtype=float)
AS_MATRIX = np.array([[1, 1, 1],
                      [1, A_EXP ** 2, A_EXP],
                      [1, A_EXP, A_EXP ** 2]], dtype=complex)


@dataclass(frozen=True)
class NetworkSnapshot:
    """
    Immutable view of the network handed to the engine.
    Tables are copied by data_input.build_snapshot and never mutated afterwards.
    """
    nodes: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=NODE_COLUMNS))
    cables: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=CABLE_COLUMNS))
    cable_types: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=CABLE_TYPE_COLUMNS))
    clients: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=CLIENT_COLUMNS))

    def node_name(self, node_id) -> str:
        row = self.nodes[self.nodes["id"] == node_id]
        if row.empty:
            return str(node_id)
        name = row.iloc[0]["name"]
        return str(name) if isinstance(name, str) and name else str(node_id)

    def clients_of(self, node_id) -> pd.DataFrame:
        return self.clients[self.clients["node_id"] == node_id]


@dataclass
class NetworkConfig:
    """Caller-side configuration surface of a calculation."""
    voltage_system: str = FOUR_WIRE_400V
    source_voltage_v: Optional[float] = None  # line-to-line at the transformer secondary, None: nominal
    transformer_kva: float = 250.0
    transformer_ucc_percent: float = 4.0     # short-circuit voltage, 0 disables the transformer impedance
    transformer_x_over_r: float = 4.0
    cos_phi: float = 0.95                    # loads
    cos_phi_production: float = 1.0          # PV injection
    season: str = "WINTER"
    thermal_correction: bool = True
    load_diversity_percent: float = 100.0
    production_diversity_percent: float = 100.0
    weather_factor: float = 1.0              # weather-derived production factor
    load_split: Optional[Tuple[float, float, float]] = None        # pinned percentages A/B/C
    production_split: Optional[Tuple[float, float, float]] = None
    load_split_mode: str = "mono_only"       # "mono_only" or "all_clients"
    production_split_mode: str = "mono_only"
    tolerance: float = 1e-6                  # relative voltage change between sweeps
    max_iterations: int = 100
    outer_tolerance_v: float = 0.01          # device/thermal feedback loop
    outer_tolerance_a: float = 0.01          # compensator current between outer rounds
    max_outer_iterations: int = 20

    @property
    def has_neutral(self) -> bool:
        return self.voltage_system == FOUR_WIRE_400V

    @property
    def nominal_line_voltage(self) -> float:
        return 400.0 if self.voltage_system == FOUR_WIRE_400V else 230.0

    @property
    def report_factor(self) -> float:
        """Factor converting phase-neutral magnitudes to the reported reference."""
        return 1.0 if self.voltage_system == FOUR_WIRE_400V else math.sqrt(3)


@dataclass
class CalculationResult:
    """Fresh output of one powerflow invocation. Never patched incrementally."""
    scenario: str = CONSUMPTION
    nodes: pd.DataFrame = field(default_factory=pd.DataFrame)     # per-node per-phase voltages
    cables: pd.DataFrame = field(default_factory=pd.DataFrame)    # per-cable currents and losses
    total_losses_kw: float = 0.0
    convergence_status: str = CONVERGED
    iterations: int = 0                      # outer feedback iterations
    inner_iterations: int = 0                # sweeps of the latest outer round
    excluded_nodes: List = field(default_factory=list)
    busbar: dict = field(default_factory=dict)
    regulators: list = field(default_factory=list)
    compensators: list = field(default_factory=list)
    calibrated_load_diversity_percent: Optional[float] = None    # measurement-driven runs
    production_split: Optional[Tuple[float, float, float]] = None
    err_msg: str = ""

    @property
    def converged(self) -> bool:
        return self.convergence_status == CONVERGED

    def node_voltages(self, node_id) -> Optional[Tuple[float, float, float]]:
        if self.nodes.empty:
            return None
        row = self.nodes[self.nodes["id"] == node_id]
        if row.empty:
            return None
        r = row.iloc[0]
        return float(r["v_a"]), float(r["v_b"]), float(r["v_c"])


def base_voltages(config: NetworkConfig):
    """
    Complex base phase-to-neutral voltages (120 deg apart) and line-to-line
    voltages at the source, as in the sweep data preparation.
    """
    source = config.source_voltage_v if config.source_voltage_v is not None else config.nominal_line_voltage
    eln = source / math.sqrt(3)
    ELN = np.array([
        eln,
        eln * np.exp(-1j * np.deg2rad(120)),
        eln * np.exp(1j * np.deg2rad(120))
    ], dtype=complex)
    ELL = D_MATRIX.dot(ELN)
    return ELN, ELL
