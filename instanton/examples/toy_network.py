# toy_network.py
# Temporal instanton analysis on a two-bus, one-wind-farm system over two steps.
# Builds the DC power-flow blocks by hand and prints the per-line summary.

import logging

import numpy as np

from instanton import (
    InstantonConfig,
    LineParams,
    LineProblem,
    ThermalConstants,
    objective_matrix,
    solve_temporal_instanton,
    thermal_matrix,
)

# ---------------------------
# System data
# ---------------------------
n, nr, T = 2, 1, 2
wind_bus = 0
ref = 0
x_line = 0.1
k = np.array([0.5, 0.5])          # participation factors
G0 = np.array([0.6, 0.4])         # conventional dispatch
P0 = np.array([0.5, 0.0])         # wind forecast
D0 = np.array([0.2, 1.3])         # demand
dt = 300.0                        # interval length (s)

Y = np.array([[1.0, -1.0], [-1.0, 1.0]]) / x_line
lines = [LineParams(0, 1, 0.01, x_line, 1.2e4), LineParams(1, 1, 0.0, 0.0, 0.0)]
thermal = ThermalConstants(a=-4.0e-3, c=1.0, d=0.0, f=40.0)
t_lim = 65.0


# ---------------------------
# Constraint blocks
# ---------------------------
def network_block():
    """Power balance per bus and angle reference, per time step."""
    stride = nr + n + 1
    nvar = stride * T + T
    rows, rhs = [], []
    for t in range(T):
        base = stride * t
        for i in range(n):
            row = np.zeros(nvar)
            if i == wind_bus:
                row[base] = -1.0
            row[base + nr : base + nr + n] = Y[i]
            row[base + nr + n] = -k[i]
            rows.append(row)
            rhs.append(G0[i] + P0[i] - D0[i])
        row = np.zeros(nvar)
        row[base + nr + ref] = 1.0
        rows.append(row)
        rhs.append(0.0)
    return np.array(rows), np.array(rhs)


def line_builder(idx, line):
    """Angle-difference rows, weighted by the thermal decay over the horizon."""
    stride = nr + n + 1
    nvar = stride * T + T
    decay = np.exp(thermal.a * dt * (T - 1 - np.arange(T)))
    A2 = np.zeros((T, nvar))
    for t in range(T):
        base = stride * t
        A2[t, nvar - T + t] = 1.0
        A2[t, base + nr + line.from_bus] = -np.sqrt(decay[t])
        A2[t, base + nr + line.to_bus] = np.sqrt(decay[t])
    return LineProblem(A2=A2, k_qtheta=thermal.k_qtheta(t_lim))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    A1, b = network_block()
    b = np.concatenate([b, np.zeros(T)])  # line rows: Δθ = s·(θ_from - θ_to)
    results = solve_temporal_instanton(
        lines,
        [ln.length for ln in lines],
        A1,
        b,
        objective_matrix(n, nr, T),
        thermal_matrix(n, nr, T),
        n,
        nr,
        T,
        line_builder,
        config=InstantonConfig(verbose=True),
        progress=lambda done, total: print(f"{done}/{total} lines"),
    )
    print(results.to_frame())
    best = results.best()
    if best is not None:
        print("wind deviations:", results.deviations[best].ravel())
        print("angle differences:", results.angle_diffs[best])
