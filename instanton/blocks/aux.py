# aux.py
# Shared pieces of the instanton QCQP pipeline: configuration, status enums,
# the exception hierarchy and the immutable quadratic-form container.

from __future__ import annotations

# =========================
# Standard library
# =========================
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

# =========================
# Third-party
# =========================
import numpy as np
import scipy.sparse as sp

ArrayLike = Union[np.ndarray, sp.spmatrix]


# ======================================
# Enums
# ======================================
class SolveStatus(Enum):
    """Outcome of a single-line QCQP solve."""

    OPTIMAL = "optimal"
    NO_INSTANTON = "no_instanton"
    STALLED = "stalled"
    DEGENERATE = "degenerate_block"


class RootKind(Enum):
    REGULAR = "regular"
    DOUBLE = "double"
    HARD_CASE = "hard_case"
    AFFINE = "affine"


# ======================================
# Errors
# ======================================
class InstantonError(Exception):
    """Base class for solver errors."""


class IllPosedInputError(InstantonError, ValueError):
    """Structural precondition violated (dimensions, rank, indefinite form)."""


class DegenerateBlockError(InstantonError):
    """The at-pole block cannot be eliminated (singular or coupled)."""


# ======================================
# Global configuration
# ======================================
@dataclass
class InstantonConfig:
    """
    Configuration for the instanton QCQP pipeline.

    Notes
    -----
    • ``round_tol`` is the tolerant-equality threshold used wherever values are
      rounded before comparison (eigenvalue dedup, pole detection, Schur cleanup).
    • The secular fields bound every bisection loop; no loop runs unbounded.
    """

    # ---------------- Tolerant equality ----------------
    round_tol: float = 1e-10
    linear_tol: float = 1e-8

    # ---------------- Secular equation ----------------
    secular_ftol: float = 1e-8
    secular_xtol: float = 1e-15  # relative bracket width
    secular_max_iter: int = 200
    secular_max_expand: int = 100

    # ---------------- Linear algebra guards ----------------
    max_cond: float = 1e12

    # ---------------- Candidate verification ----------------
    feas_tol: float = 1e-6

    # ---------------- Reporting ----------------
    verbose: bool = False

    def __post_init__(self):
        if self.round_tol <= 0:
            raise ValueError(f"round_tol must be positive, got {self.round_tol}")
        if self.secular_ftol <= 0:
            raise ValueError(f"secular_ftol must be positive, got {self.secular_ftol}")
        if self.secular_max_iter < 1:
            raise ValueError(
                f"secular_max_iter must be positive, got {self.secular_max_iter}"
            )


# ---------------------------- Utilities ---------------------------- #
def _safe_dense(A: ArrayLike) -> np.ndarray:
    return np.asarray(A.toarray() if sp.issparse(A) else A, dtype=float)


def _sym(A: np.ndarray) -> np.ndarray:
    return 0.5 * (A + A.T)


def tol_decimals(tol: float) -> int:
    """Number of decimals equivalent to rounding at ``tol`` (1e-10 -> 10)."""
    return int(round(-math.log10(tol)))


def tol_round(a, tol: float):
    """Round to the decimal grid implied by ``tol``; maps -0.0 to 0.0."""
    out = np.round(np.asarray(a, dtype=float), tol_decimals(tol))
    return out + 0.0


def unique_tol(values: np.ndarray, tol: float) -> np.ndarray:
    """Sorted distinct values after rounding at ``tol``."""
    return np.unique(tol_round(values, tol))


def cond_ok(M: np.ndarray, max_cond: float) -> bool:
    if M.size == 0:
        return True
    c = np.linalg.cond(M)
    return bool(np.isfinite(c) and c <= max_cond)


# ======================================
# Quadratic form
# ======================================
@dataclass(frozen=True, eq=False)
class QuadraticForm:
    """
    ``x'Qx + q'x + k`` with symmetric ``Q``.

    Instances are never mutated; every pipeline stage returns a new one.
    """

    Q: np.ndarray
    q: np.ndarray
    k: float

    def __post_init__(self):
        Q = _safe_dense(self.Q)
        if Q.ndim != 2 or Q.shape[0] != Q.shape[1]:
            raise IllPosedInputError(f"Q must be square, got shape {Q.shape}")
        n = Q.shape[0]
        q = np.asarray(self.q, dtype=float)
        if q.ndim == 0:
            if float(q) != 0.0:
                raise IllPosedInputError("a scalar linear term must be zero")
            q = np.zeros(n)
        q = q.reshape(-1)
        if q.size != n:
            raise IllPosedInputError(f"Expected linear term of shape ({n},) got {q.shape}")
        object.__setattr__(self, "Q", Q)
        object.__setattr__(self, "q", q)
        object.__setattr__(self, "k", float(self.k))

    @classmethod
    def from_triple(cls, triple: Union["QuadraticForm", Tuple]) -> "QuadraticForm":
        if isinstance(triple, cls):
            return triple
        Q, q, k = triple
        return cls(Q, q, k)

    @property
    def dim(self) -> int:
        return self.Q.shape[0]

    def __call__(self, x: np.ndarray) -> float:
        x = np.asarray(x, dtype=float)
        return float(x @ self.Q @ x + self.q @ x + self.k)

    def negated(self) -> "QuadraticForm":
        return QuadraticForm(-self.Q, -self.q, -self.k)

    def as_tuple(self) -> Tuple[np.ndarray, np.ndarray, float]:
        return self.Q, self.q, self.k


def _as1d(v, n: Optional[int] = None) -> np.ndarray:
    a = np.asarray(v, dtype=float).reshape(-1)
    if n is not None and a.size != n:
        raise IllPosedInputError(f"expected shape ({n},) got {a.shape}")
    return a
