# qcqp.py
# Single-line temporal-instanton QCQP:
#
#     min  x'Qobj x   s.t.  A x = b,   x'Qθ x + k = 0
#
# Translate to a feasible point, rotate into null(A), diagonalize the thermal
# form, eliminate the at-pole block, solve the secular equation and map every
# root back; the cheapest verified candidate is the instanton.
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import scipy.linalg as la

from .blocks.aux import (
    ArrayLike,
    DegenerateBlockError,
    IllPosedInputError,
    InstantonConfig,
    QuadraticForm,
    RootKind,
    SolveStatus,
    _as1d,
    _safe_dense,
)
from .blocks.secular import SecularSolver
from .blocks.transforms import (
    BlockPartition,
    ReductionChain,
    completing_shift,
    diagonalize,
    find_translation_point,
    kernel_rotation,
    partition_blocks,
    partition_columns,
    recover_at_pole,
    rotate_quadratic,
    scaling_rotation,
    schur_complement,
    translate_quadratic,
)

FormLike = Union[QuadraticForm, Tuple]


@dataclass(frozen=True, eq=False)
class Candidate:
    """One back-mapped stationary point."""

    v: float
    w: np.ndarray
    x: np.ndarray
    score: float
    kind: RootKind = RootKind.REGULAR
    linear_residual: float = 0.0
    thermal_residual: float = 0.0


@dataclass
class InstantonSolution:
    status: SolveStatus
    x: np.ndarray
    score: float
    candidates: List[Candidate] = field(default_factory=list)
    info: Dict = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return self.status == SolveStatus.OPTIMAL

    def __iter__(self):
        # allows ``x, score = solve_instanton_qcqp(...)``
        yield self.x
        yield self.score


def _empty(status: SolveStatus, info: Dict) -> InstantonSolution:
    return InstantonSolution(status, np.zeros(0), float("inf"), [], info)


class InstantonQCQPSolver:
    """
    Solver for the single-quadratic-constraint QCQP of one transmission line.

    Structural problems (dimension mismatch, rank-deficient constraints,
    indefinite thermal form) raise ``IllPosedInputError``. Numerical
    degeneracy of the at-pole block is reported through
    ``SolveStatus.DEGENERATE`` rather than raised.
    """

    def __init__(self, config: Optional[InstantonConfig] = None):
        self.cfg = InstantonConfig() if config is None else config
        self.secular = SecularSolver(self.cfg)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def solve(
        self,
        G_of_x: FormLike,
        Q_of_x: FormLike,
        A: ArrayLike,
        b: np.ndarray,
        T: int,
    ) -> InstantonSolution:
        G_of_x = QuadraticForm.from_triple(G_of_x)
        Q_of_x = QuadraticForm.from_triple(Q_of_x)
        A = _safe_dense(A)
        if A.ndim != 2:
            raise IllPosedInputError(f"A must be 2-D, got shape {A.shape}")
        m, n = A.shape
        b = _as1d(b, m)
        if G_of_x.dim != n or Q_of_x.dim != n:
            raise IllPosedInputError(
                f"quadratics of size {G_of_x.dim}/{Q_of_x.dim} do not match A ({m}x{n})"
            )

        try:
            chain, blocks, info = self._reduce(G_of_x, Q_of_x, A, b, int(T))
            pairs, info = self._candidates(blocks, info)
        except DegenerateBlockError as e:
            logging.warning(f"[QCQP] degenerate at-pole block: {e}")
            return _empty(SolveStatus.DEGENERATE, dict(error=str(e)))

        candidates = self._back_map(pairs, blocks, chain, G_of_x, Q_of_x, A, b, info)
        if not candidates:
            status = SolveStatus.STALLED if info.get("stalled", 0) else SolveStatus.NO_INSTANTON
            logging.debug(f"[QCQP] no candidate ({status.value})")
            return _empty(status, info)

        best = min(candidates, key=lambda cand: cand.score)
        info["candidates"] = len(candidates)
        msg = f"[QCQP] score={best.score:.6e} v={best.v:.6e} candidates={len(candidates)}"
        if self.cfg.verbose:
            logging.info(msg)
        else:
            logging.debug(msg)
        return InstantonSolution(SolveStatus.OPTIMAL, best.x, best.score, candidates, info)

    # ------------------------------------------------------------------ #
    # Reduction
    # ------------------------------------------------------------------ #
    def _reduce(
        self,
        G_of_x: QuadraticForm,
        Q_of_x: QuadraticForm,
        A: np.ndarray,
        b: np.ndarray,
        T: int,
    ) -> Tuple[ReductionChain, BlockPartition, Dict]:
        cfg = self.cfg
        n = A.shape[1]

        A1, A2, idx1, idx2, idx3 = partition_columns(A, G_of_x.Q, T, cfg.round_tol)
        x_star = find_translation_point(A1, A2, idx1, idx2, n, b, cfg.max_cond)

        G_of_y = translate_quadratic(G_of_x, x_star)
        Q_of_y = translate_quadratic(Q_of_x, x_star)

        N = kernel_rotation(A)
        G_of_z = rotate_quadratic(G_of_y, N.T)
        Q_of_z = rotate_quadratic(Q_of_y, N.T)

        U, D, k_diag, Q_of_z = diagonalize(Q_of_z, cfg.round_tol)
        R = scaling_rotation(U, k_diag)
        G_of_w = rotate_quadratic(G_of_z, R)
        Q_of_w = rotate_quadratic(Q_of_z, R)

        blocks = partition_blocks(G_of_w, Q_of_w, cfg.round_tol)
        shift = completing_shift(Q_of_w, blocks.i2)
        if np.any(shift):
            G_of_w = translate_quadratic(G_of_w, shift)
            Q_of_w = translate_quadratic(Q_of_w, shift)
            blocks = partition_blocks(G_of_w, Q_of_w, cfg.round_tol)

        logging.debug(
            f"[QCQP] n={n} m={A.shape[0]} |idx1|={idx1.size} |idx2|={idx2.size} "
            f"|idx3|={idx3.size} null={N.shape[1]} at_pole={blocks.at_pole} "
            f"off_pole={blocks.off_pole}"
        )
        chain = ReductionChain(x_star=x_star, N=N, U=U, k_diag=k_diag, shift=shift)
        info = dict(
            n=n,
            m=A.shape[0],
            null_dim=int(N.shape[1]),
            at_pole=blocks.at_pole,
            off_pole=blocks.off_pole,
            eigenvalues=D,
            stalled=0,
            rejected=0,
        )
        return chain, blocks, info

    # ------------------------------------------------------------------ #
    # Candidate generation
    # ------------------------------------------------------------------ #
    def _candidates(
        self, blocks: BlockPartition, info: Dict
    ) -> Tuple[List[Tuple[float, np.ndarray, RootKind]], Dict]:
        """(v, w, kind) triples with w the full reduced vector."""
        cfg = self.cfg
        coupled = np.any(np.abs(blocks.g1) > cfg.linear_tol)

        if blocks.off_pole == 0:
            return self._affine_candidates(blocks, coupled), info
        if coupled:
            raise DegenerateBlockError(
                "thermal form has linear weight on at-pole coordinates"
            )

        Bhat, bhat = schur_complement(blocks, cfg.round_tol, cfg.max_cond)
        sec = self.secular.solve(Bhat, 0.5 * bhat, -blocks.k_theta)
        info["stalled"] = sec.stalled
        info["secular"] = sec.info

        out = []
        for root in sec.roots:
            w = np.zeros(blocks.at_pole + blocks.off_pole)
            w[blocks.i2] = root.w
            w[blocks.i1] = recover_at_pole(blocks, root.w)
            out.append((root.v, w, root.kind))
        return out, info

    def _affine_candidates(
        self, blocks: BlockPartition, coupled: bool
    ) -> List[Tuple[float, np.ndarray, RootKind]]:
        """No off-pole coordinate: the thermal constraint is g1'w1 + k = 0."""
        cfg = self.cfg
        p = blocks.at_pole
        if p == 0:
            return [(0.0, np.zeros(0), RootKind.AFFINE)] if abs(blocks.k_theta) <= cfg.secular_ftol else []

        if not coupled:
            if abs(blocks.k_theta) > cfg.secular_ftol:
                return []
            w1 = recover_at_pole(self._checked(blocks), np.zeros(0))
            return [(0.0, w1, RootKind.AFFINE)]

        K = np.zeros((p + 1, p + 1))
        K[:p, :p] = 2.0 * blocks.B11
        K[:p, p] = blocks.g1
        K[p, :p] = blocks.g1
        rhs = np.concatenate([-blocks.b1, [-blocks.k_theta]])
        if not np.isfinite(np.linalg.cond(K)) or np.linalg.cond(K) > cfg.max_cond:
            raise DegenerateBlockError("affine KKT system is singular")
        sol = la.solve(K, rhs)
        return [(float(sol[p]), sol[:p], RootKind.AFFINE)]

    def _checked(self, blocks: BlockPartition) -> BlockPartition:
        if np.linalg.cond(blocks.B11) > self.cfg.max_cond:
            raise DegenerateBlockError(
                f"at-pole block B11 ({blocks.at_pole}x{blocks.at_pole}) is singular"
            )
        return blocks

    # ------------------------------------------------------------------ #
    # Back-mapping and verification
    # ------------------------------------------------------------------ #
    def _back_map(
        self,
        pairs: List[Tuple[float, np.ndarray, RootKind]],
        blocks: BlockPartition,
        chain: ReductionChain,
        G_of_x: QuadraticForm,
        Q_of_x: QuadraticForm,
        A: np.ndarray,
        b: np.ndarray,
        info: Dict,
    ) -> List[Candidate]:
        tol = self.cfg.feas_tol
        lin_scale = max(1.0, float(np.linalg.norm(b)))
        th_scale = max(1.0, abs(Q_of_x.k))
        out: List[Candidate] = []
        for v, w, kind in pairs:
            x = chain.to_original(w)
            r_lin = float(np.linalg.norm(A @ x - b))
            r_th = abs(Q_of_x(x))
            if not np.all(np.isfinite(x)) or r_lin > tol * lin_scale or r_th > tol * th_scale:
                info["rejected"] = info.get("rejected", 0) + 1
                logging.warning(
                    f"[QCQP] candidate v={v:.6e} rejected: |Ax-b|={r_lin:.3e} |Q(x)|={r_th:.3e}"
                )
                continue
            out.append(Candidate(float(v), w, x, G_of_x(x), kind, r_lin, r_th))
        return out


def solve_instanton_qcqp(
    G_of_x: FormLike,
    Q_of_x: FormLike,
    A: ArrayLike,
    b: np.ndarray,
    T: int,
    config: Optional[InstantonConfig] = None,
) -> InstantonSolution:
    """
    Solve

        min  G(x)   s.t.  A x = b,  Q(x) = 0

    with G = (Qobj, 0, 0) and Q = (Qθ, 0, kQθ). ``T`` trailing variables are
    the angle differences pinned to zero at the translation point.

    Returns an ``InstantonSolution``; it unpacks as ``x, score`` and carries
    ``x = []``/``score = inf`` when the thermal limit is unreachable.
    """
    return InstantonQCQPSolver(config).solve(G_of_x, Q_of_x, A, b, T)
