"""
Affine reductions of the single-constraint QCQP

    minimize    x'Qobj x
    subject to  A x = b
                x'Qθ x + q'x + k = 0

down to the coordinates in which the thermal constraint is a plain sum of
squares. The chain is

    x = N · U · K⁻¹ · (u + s) + x*

- ``x*``: minimum-norm point of ``A x = b`` with the trailing T variables at 0
- ``N``: orthonormal basis of null(A)
- ``U``, ``K``: eigenvectors of the rotated thermal matrix and √|eigenvalues|
- ``s``: shift that removes the thermal linear term on off-pole coordinates

Every helper is a pure function of its inputs; quadratics are passed around as
immutable ``QuadraticForm`` instances.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import scipy.linalg as la

from .aux import (
    DegenerateBlockError,
    IllPosedInputError,
    QuadraticForm,
    _as1d,
    _sym,
    cond_ok,
    tol_round,
)


# ---------------------------- Partitioner ---------------------------- #
def partition_columns(
    A: np.ndarray, Qobj: np.ndarray, T: int, tol: float = 1e-10
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Split the columns of ``A`` into objective-weighted (idx1), unweighted (idx2)
    and the trailing ``T`` angle-difference columns (idx3).

    Returns (A1, A2, idx1, idx2, idx3) with A1 = A[:, idx1], A2 = A[:, idx2].
    """
    n = A.shape[1]
    if not 0 <= T <= n:
        raise IllPosedInputError(f"T must lie in [0, {n}], got {T}")
    head = np.arange(n - T)
    weighted = np.abs(np.diag(Qobj)[: n - T]) > tol
    idx1 = head[weighted]
    idx2 = head[~weighted]
    idx3 = np.arange(n - T, n)
    return A[:, idx1], A[:, idx2], idx1, idx2, idx3


# ---------------------------- Translator ---------------------------- #
def find_translation_point(
    A1: np.ndarray,
    A2: np.ndarray,
    idx1: np.ndarray,
    idx2: np.ndarray,
    n: int,
    b: np.ndarray,
    max_cond: float = 1e12,
) -> np.ndarray:
    """Minimum-norm x* with [A1 A2] x*[idx1 ∪ idx2] = b and x*[idx3] = 0."""
    x_star = np.zeros(n)
    if b.size == 0:
        return x_star
    Z = np.hstack([A1, A2]).T
    if Z.shape[0] < Z.shape[1] or not cond_ok(Z, max_cond):
        raise IllPosedInputError(
            "[A1 A2] is rank deficient; no translation point with idx3 = 0"
        )
    x_star[np.concatenate([idx1, idx2])] = la.lstsq(Z.T, b)[0]
    return x_star


def translate_quadratic(G: QuadraticForm, x: np.ndarray) -> QuadraticForm:
    """Form H with H(z) = G(z + x)."""
    Q, q, k = G.as_tuple()
    Qx = Q @ x
    return QuadraticForm(Q, q + 2.0 * Qx, k + float(x @ Qx) + float(q @ x))


# ---------------------------- Kernel rotation ---------------------------- #
def kernel_rotation(A: np.ndarray) -> np.ndarray:
    """Orthonormal basis of null(A) from the full QR factorization of A'."""
    m, n = A.shape
    if m > n or np.linalg.matrix_rank(A) < m:
        raise IllPosedInputError(f"A ({m}x{n}) does not have full row rank")
    Qf, _ = la.qr(A.T, mode="full")
    return Qf[:, m:]


def rotate_quadratic(G: QuadraticForm, R: np.ndarray) -> QuadraticForm:
    """Form H with H(w) = G(R'w), i.e. (R Q R', R q, k)."""
    Q, q, k = G.as_tuple()
    return QuadraticForm(_sym(R @ Q @ R.T), R @ q, k)


# ---------------------------- Diagonalizer ---------------------------- #
def diagonalize(
    Q_of_z: QuadraticForm, tol: float = 1e-10
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, QuadraticForm]:
    """
    Eigendecompose the rotated thermal matrix and build the scaling K.

    Returns (U, D, k_diag, Q_of_z) where D is rounded at ``tol`` and
    k_diag[i] = √|D[i]| (1 where D[i] = 0). A negative semidefinite form is
    negated first, so the returned D is never negative.
    """
    dim = Q_of_z.dim
    if dim == 0:
        return np.zeros((0, 0)), np.zeros(0), np.zeros(0), Q_of_z

    lam, U = la.eigh(_sym(Q_of_z.Q))
    D = tol_round(lam, tol)
    if np.any(D < 0):
        if np.any(D > 0):
            raise IllPosedInputError(
                "thermal form is indefinite on the constraint manifold"
            )
        logging.debug("[Diag] thermal form negative semidefinite; negating")
        Q_of_z = Q_of_z.negated()
        D = -D + 0.0

    # unrounded spectrum: off-pole weights of the scaled form are 1
    k_diag = np.where(D != 0, np.sqrt(np.abs(lam)), 1.0)
    return U, D, k_diag, Q_of_z


def scaling_rotation(U: np.ndarray, k_diag: np.ndarray) -> np.ndarray:
    """(U K⁻¹)', the map applied to z-space forms."""
    return (U / k_diag).T


# ---------------------------- Block partition ---------------------------- #
@dataclass(frozen=True, eq=False)
class BlockPartition:
    """Objective blocks split by at-pole (i1) / off-pole (i2) coordinates."""

    i1: np.ndarray
    i2: np.ndarray
    B11: np.ndarray
    B12: np.ndarray
    B21: np.ndarray
    B22: np.ndarray
    b1: np.ndarray
    b2: np.ndarray
    g1: np.ndarray  # thermal linear term, at-pole part
    g2: np.ndarray  # thermal linear term, off-pole part
    k_theta: float

    @property
    def at_pole(self) -> int:
        return self.i1.size

    @property
    def off_pole(self) -> int:
        return self.i2.size


def partition_blocks(
    G_of_w: QuadraticForm, Q_of_w: QuadraticForm, tol: float = 1e-10
) -> BlockPartition:
    diag = tol_round(np.diag(Q_of_w.Q), tol)
    i1 = np.flatnonzero(diag == 0)
    i2 = np.flatnonzero(diag != 0)
    B = G_of_w.Q
    return BlockPartition(
        i1=i1,
        i2=i2,
        B11=B[np.ix_(i1, i1)],
        B12=B[np.ix_(i1, i2)],
        B21=B[np.ix_(i2, i1)],
        B22=B[np.ix_(i2, i2)],
        b1=G_of_w.q[i1],
        b2=G_of_w.q[i2],
        g1=Q_of_w.q[i1],
        g2=Q_of_w.q[i2],
        k_theta=Q_of_w.k,
    )


def completing_shift(Q_of_w: QuadraticForm, i2: np.ndarray) -> np.ndarray:
    """Shift s with s[i2] = -g2/(2 diag) so the translated thermal form has no off-pole linear term."""
    s = np.zeros(Q_of_w.dim)
    if i2.size:
        s[i2] = -Q_of_w.q[i2] / (2.0 * np.diag(Q_of_w.Q)[i2])
    return s


# ---------------------------- Schur reduction ---------------------------- #
def schur_complement(
    blocks: BlockPartition, tol: float = 1e-10, max_cond: float = 1e12
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Eliminate the at-pole block through its stationarity condition:

        Bhat = B22 - B12' B11⁻¹ B12
        bhat = b2  - B12' B11⁻¹ b1
    """
    if blocks.at_pole == 0:
        return tol_round(_sym(blocks.B22), tol), tol_round(blocks.b2, tol)
    if not cond_ok(blocks.B11, max_cond):
        raise DegenerateBlockError(
            f"at-pole block B11 ({blocks.at_pole}x{blocks.at_pole}) is singular"
        )
    X = la.solve(blocks.B11, np.column_stack([blocks.B12, blocks.b1]), assume_a="sym")
    Bhat = blocks.B22 - blocks.B12.T @ X[:, :-1]
    bhat = blocks.b2 - blocks.B12.T @ X[:, -1]
    return tol_round(_sym(Bhat), tol), tol_round(bhat, tol)


def recover_at_pole(blocks: BlockPartition, w2: np.ndarray) -> np.ndarray:
    """w1 = -B11⁻¹ (B12 w2 + b1/2)."""
    if blocks.at_pole == 0:
        return np.zeros(0)
    return -la.solve(blocks.B11, blocks.B12 @ w2 + 0.5 * blocks.b1, assume_a="sym")


# ---------------------------- Affine chain ---------------------------- #
@dataclass(frozen=True, eq=False)
class ReductionChain:
    """x = N · U · K⁻¹ · (u + shift) + x_star, and its inverse on the feasible set."""

    x_star: np.ndarray
    N: np.ndarray
    U: np.ndarray
    k_diag: np.ndarray
    shift: np.ndarray

    @property
    def reduced_dim(self) -> int:
        return self.N.shape[1]

    def to_original(self, u: np.ndarray) -> np.ndarray:
        u = _as1d(u, self.reduced_dim)
        if self.reduced_dim == 0:
            return self.x_star.copy()
        return self.N @ (self.U @ ((u + self.shift) / self.k_diag)) + self.x_star

    def to_reduced(self, x: np.ndarray) -> np.ndarray:
        """Inverse map; exact for x with A x = b."""
        x = _as1d(x, self.x_star.size)
        if self.reduced_dim == 0:
            return np.zeros(0)
        return self.k_diag * (self.U.T @ (self.N.T @ (x - self.x_star))) - self.shift
