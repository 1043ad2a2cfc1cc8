"""
Temporal instanton analysis over a set of transmission lines.

For every line with nonzero length the caller supplies the line-specific
constraint block and thermal constant (``line_builder``); the network-wide
block ``A1``, the injection vector ``b`` and both quadratic matrices are shared
read-only across lines. Each line is an independent QCQP solve.

Solution layout (fixed contract with ``objective_matrix``/``thermal_matrix``)
---------------------------------------------------------------------------
    [ dev_1 (nr) | θ_1 (n) | α_1 (1) | ... | dev_T | θ_T | α_T | Δθ_1 ... Δθ_T ]

where dev are renewable deviations, θ bus angles, α the mismatch shared by the
conventional generators and Δθ the line's angle differences.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .blocks.aux import (
    ArrayLike,
    IllPosedInputError,
    InstantonConfig,
    QuadraticForm,
    SolveStatus,
    _as1d,
    _safe_dense,
)
from .qcqp import InstantonQCQPSolver, InstantonSolution


# ---------------------------- Data contracts ---------------------------- #
@dataclass(frozen=True)
class LineParams:
    from_bus: int
    to_bus: int
    resistance: float
    reactance: float
    length: float


@dataclass(frozen=True)
class ThermalConstants:
    """Constants of the linearized conductor heat balance for one line."""

    a: float
    c: float
    d: float
    f: float

    def k_qtheta(self, t_lim: float) -> float:
        """Constant term of the thermal constraint for limit temperature ``t_lim``."""
        return (self.a / self.c) * (t_lim - self.f)


@dataclass(frozen=True, eq=False)
class LineProblem:
    A2: ArrayLike
    k_qtheta: float


LineLike = Union[LineParams, Tuple[int, int], Sequence]
LineBuilder = Callable[[int, LineLike], LineProblem]


def _endpoints(line: LineLike) -> Tuple[int, int]:
    if isinstance(line, LineParams):
        return line.from_bus, line.to_bus
    return int(line[0]), int(line[1])


# ---------------------------- Layout ---------------------------- #
def num_variables(n: int, nr: int, T: int) -> int:
    return (nr + n + 1) * T + T


def objective_matrix(n: int, nr: int, T: int) -> np.ndarray:
    """Unit weight on every renewable deviation, zero elsewhere."""
    Qobj = np.zeros((num_variables(n, nr, T),) * 2)
    for t in range(T):
        start = (nr + n + 1) * t
        idx = np.arange(start, start + nr)
        Qobj[idx, idx] = 1.0
    return Qobj


def thermal_matrix(n: int, nr: int, T: int) -> np.ndarray:
    """Unit weight on the trailing T angle differences."""
    N = num_variables(n, nr, T)
    Qtheta = np.zeros((N, N))
    idx = np.arange(N - T, N)
    Qtheta[idx, idx] = 1.0
    return Qtheta


def split_solution(
    x: np.ndarray, n: int, nr: int, T: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Return (deviations T×nr, angles T×n, mismatch T, angle_diffs T)."""
    x = _as1d(x, num_variables(n, nr, T))
    steps = x[: (nr + n + 1) * T].reshape(T, nr + n + 1)
    return (
        steps[:, :nr].copy(),
        steps[:, nr : nr + n].copy(),
        steps[:, nr + n].copy(),
        x[(nr + n + 1) * T :].copy(),
    )


# ---------------------------- Results ---------------------------- #
@dataclass
class TemporalInstantonResults:
    """Per-line results, one entry per solved (nonzero-length) line."""

    n: int
    nr: int
    T: int
    line_index: List[int] = field(default_factory=list)
    lines: List[Tuple[int, int]] = field(default_factory=list)
    score: List[float] = field(default_factory=list)
    status: List[SolveStatus] = field(default_factory=list)
    deviations: List[np.ndarray] = field(default_factory=list)
    angles: List[np.ndarray] = field(default_factory=list)
    mismatch: List[np.ndarray] = field(default_factory=list)
    angle_diffs: List[np.ndarray] = field(default_factory=list)
    xopt: List[np.ndarray] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.line_index)

    def append(self, index: int, line: LineLike, sol: InstantonSolution) -> None:
        self.line_index.append(int(index))
        self.lines.append(_endpoints(line))
        self.score.append(float(sol.score))
        self.status.append(sol.status)
        if sol.found:
            dev, ang, alpha, diffs = split_solution(sol.x, self.n, self.nr, self.T)
        else:
            dev = np.zeros((0, self.nr))
            ang = np.zeros((0, self.n))
            alpha = np.full(self.T, np.nan)
            diffs = np.zeros(0)
        self.deviations.append(dev)
        self.angles.append(ang)
        self.mismatch.append(alpha)
        self.angle_diffs.append(diffs)
        self.xopt.append(np.asarray(sol.x, dtype=float))

    def best(self) -> Optional[int]:
        """Position of the lowest finite score, or None."""
        scores = np.asarray(self.score, dtype=float)
        finite = np.isfinite(scores)
        if not np.any(finite):
            return None
        return int(np.flatnonzero(finite)[np.argmin(scores[finite])])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "line_index": self.line_index,
                "from_bus": [ln[0] for ln in self.lines],
                "to_bus": [ln[1] for ln in self.lines],
                "score": self.score,
                "status": [s.value for s in self.status],
            }
        )


# ---------------------------- Orchestration ---------------------------- #
def solve_temporal_instanton(
    lines: Sequence[LineLike],
    line_lengths: Sequence[float],
    A1: ArrayLike,
    b: np.ndarray,
    Qobj: ArrayLike,
    Qtheta: ArrayLike,
    n: int,
    nr: int,
    T: int,
    line_builder: LineBuilder,
    config: Optional[InstantonConfig] = None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> TemporalInstantonResults:
    """
    Run the instanton QCQP for every line of nonzero length.

    Parameters
    ----------
    lines : sequence
        ``LineParams`` or (from, to) pairs, aligned with ``line_lengths``.
    A1 : network-wide linear constraint block.
    b : right-hand side of the stacked ``[A1; A2]`` rows (``A2`` has T rows).
    Qobj, Qtheta : objective and thermal matrices in the solution layout.
    n, nr, T : buses, renewable sites and time steps.
    line_builder : callable
        ``line_builder(index, line) -> LineProblem`` with the line's constraint
        block ``A2`` and thermal constant ``k_qtheta``.
    progress : callable, optional
        ``progress(done, total)`` called after each line.

    Zero-length lines are skipped and get no entry. Numerical failures of a
    line are recorded with score ``inf``; ``IllPosedInputError`` propagates.
    """
    if len(lines) != len(line_lengths):
        raise IllPosedInputError(
            f"{len(lines)} lines but {len(line_lengths)} line lengths"
        )
    nvar = num_variables(n, nr, T)
    A1 = _safe_dense(A1)
    Qobj = _safe_dense(Qobj)
    Qtheta = _safe_dense(Qtheta)
    if A1.shape[1] != nvar or Qobj.shape != (nvar, nvar) or Qtheta.shape != (nvar, nvar):
        raise IllPosedInputError(
            f"expected {nvar} variables for n={n}, nr={nr}, T={T}; got A1 {A1.shape}, "
            f"Qobj {Qobj.shape}, Qtheta {Qtheta.shape}"
        )

    cfg = InstantonConfig() if config is None else config
    solver = InstantonQCQPSolver(cfg)
    G_of_x = QuadraticForm(Qobj, 0.0, 0.0)
    results = TemporalInstantonResults(n=n, nr=nr, T=T)

    nz_line_idx = np.flatnonzero(np.asarray(line_lengths, dtype=float) != 0)
    total = int(nz_line_idx.size)
    logging.info(f"[Instanton] {total} of {len(lines)} lines to analyze (T={T})")

    for done, idx in enumerate(nz_line_idx, start=1):
        line = lines[idx]
        prob = line_builder(int(idx), line)
        A = np.vstack([A1, _safe_dense(prob.A2)])
        Q_of_x = QuadraticForm(Qtheta, 0.0, prob.k_qtheta)

        sol = solver.solve(G_of_x, Q_of_x, A, b, T)
        results.append(int(idx), line, sol)

        if sol.status == SolveStatus.DEGENERATE:
            logging.warning(f"[Instanton] line {idx} {_endpoints(line)}: {sol.info.get('error')}")
        msg = f"[Instanton] line {idx} {_endpoints(line)}: {sol.status.value} score={sol.score:.6e}"
        if cfg.verbose:
            logging.info(msg)
        else:
            logging.debug(msg)
        if progress is not None:
            progress(done, total)

    return results
