from dataclasses import dataclass, field
from typing import Optional, Tuple
import numpy as np

import network_state as NS
from data_preparation import PreparedNetwork


@dataclass
class SweepState:
    """Complex phase quantities by bus number (preorder, source first)."""
    v: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=complex))
    v_in: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=complex))  # before any device at the bus
    i_bus: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=complex))
    i_branch: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=complex))
    i_neutral: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=complex))


def flat_start(net: PreparedNetwork) -> SweepState:
    n = len(net.parent)
    v = np.tile(net.ELN, (n, 1))
    zeros = np.zeros((n, 3), dtype=complex)
    return SweepState(v=v, v_in=v.copy(), i_bus=zeros.copy(), i_branch=zeros.copy(),
                      i_neutral=np.zeros(n, dtype=complex))


def backwardsweep(net: PreparedNetwork, st: SweepState, neutral_injection: Optional[np.ndarray] = None):
    """
    From the ending buses to the source: bus currents I = conj(S/V), then
    each cable carries the current of its bus plus everything downstream.
    """
    v = st.v.copy()
    mag = np.abs(v)
    small = mag < NS.MIN_VOLTAGE_V
    if small.any():
        v[small] = NS.MIN_VOLTAGE_V
    st.i_bus = np.conj(net.s_load / v)

    i_branch = st.i_bus.copy()
    i_neutral = i_branch.sum(axis=1)
    if neutral_injection is not None:
        i_neutral = i_neutral + neutral_injection
    # children always come after their parent in preorder
    for n in range(len(net.parent) - 1, 0, -1):
        p = net.parent[n]
        i_branch[p] += i_branch[n]
        i_neutral[p] += i_neutral[n]
    st.i_branch = i_branch
    st.i_neutral = i_neutral


def forwardsweep(net: PreparedNetwork, st: SweepState, scale: Optional[np.ndarray] = None):
    """
    From the source outward: V_bus = V_parent - I_cable * R_cable.
    The source bus sits behind the transformer impedance. `scale` holds the
    per-phase factor of a device located at the bus (1 elsewhere).
    """
    v = np.zeros_like(st.v)
    v_in = np.zeros_like(st.v)
    v_in[0] = net.ELN - st.i_branch[0] * net.z_transformer
    v[0] = v_in[0] if scale is None else v_in[0] * scale[0]
    for n in range(1, len(net.parent)):
        p = net.parent[n]
        v_in[n] = v[p] - st.i_branch[n] * net.r_phase[n]
        v[n] = v_in[n] if scale is None else v_in[n] * scale[n]
    st.v = v
    st.v_in = v_in


def forward_backward_sweep(net: PreparedNetwork, tolerance: float = 1e-6, max_iterations: int = 100,
                           start: Optional[SweepState] = None, scale: Optional[np.ndarray] = None,
                           neutral_injection: Optional[np.ndarray] = None) -> Tuple[SweepState, str, int]:
    """
    Runs sweeps until the largest voltage change between two sweeps,
    relative to the base phase voltage, is within tolerance.
    Returns (state, err_msg, iter_number); the state is kept on failure.
    """
    err_msg = ""
    st = flat_start(net) if start is None else SweepState(
        v=start.v.copy(), v_in=start.v_in.copy(), i_bus=start.i_bus.copy(),
        i_branch=start.i_branch.copy(), i_neutral=start.i_neutral.copy())
    base = abs(net.ELN[0]) if abs(net.ELN[0]) > 0 else 1.0
    max_error = 1.0
    iter_number = 0
    while max_error > tolerance:
        iter_number += 1
        previous = st.v.copy()
        backwardsweep(net, st, neutral_injection)
        forwardsweep(net, st, scale)
        max_error = float(np.max(np.abs(st.v - previous))) / base if st.v.size else 0.0
        if not np.isfinite(max_error):
            err_msg = "Program halted, voltages diverged during forward-backward iterations"
            break
        if max_error > tolerance and iter_number == max_iterations:
            err_msg = f"Program halted, maximum number of forward-backward iteration reached ({max_iterations})"
            break
    # currents consistent with the final voltages
    backwardsweep(net, st, neutral_injection)
    return st, err_msg, iter_number
