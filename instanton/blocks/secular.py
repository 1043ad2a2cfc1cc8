"""
Secular-equation root finder for the single-constraint QCQP.

After the at-pole block is eliminated the problem reads

    minimize    w'Bhat w + bhat'w
    subject to  w'w = c

and stationarity of the Lagrangian gives (vI - Bhat) w = bhat/2. With
Bhat = U diag(D) U' and d = U'(bhat/2) the multiplier v solves

    f(v) = Σᵢ (dᵢ / (v - Dᵢ))² - c = 0.

Shape of f used by the search
-----------------------------
- f → +∞ at every *active* pole (an eigenvalue whose group carries some dᵢ ≠ 0).
- Left of the first active pole f increases from -c; right of the last one it
  decreases to -c. Each side holds exactly one root when c > 0.
- Between consecutive active poles f is convex, so it has 0, 1 (double) or 2
  roots depending on the sign of its minimum.
- A *removable* pole (all dᵢ of its group zero) does not split intervals. It
  still yields the "hard case" candidates w = w_red ± t·e when the remaining
  norm deficit c - ‖w_red‖² is positive.

Every bisection is capped by ``secular_max_iter``. A search that cannot certify
a root is reported as stalled and contributes no candidate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import scipy.linalg as la

from .aux import InstantonConfig, RootKind, _as1d, _sym, tol_round

# Bisection outcomes
_BI_ROOT = 0
_BI_STALL = 1


@dataclass(frozen=True, eq=False)
class SecularRoot:
    v: float
    w: np.ndarray
    residual: float
    kind: RootKind = RootKind.REGULAR


@dataclass
class SecularResult:
    roots: List[SecularRoot] = field(default_factory=list)
    poles: np.ndarray = field(default_factory=lambda: np.zeros(0))
    stalled: int = 0
    info: Dict = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.roots)

    @property
    def values(self) -> np.ndarray:
        return np.array([r.v for r in self.roots])


class SecularSolver:
    """
    Finds every real root of Σ (dᵢ/(v - Dᵢ))² = c.

    Parameters
    ----------
    config : InstantonConfig, optional
        Uses ``round_tol`` (pole dedup / activity), ``secular_ftol`` (residual
        convergence, scaled by c when c < 1), ``secular_xtol`` (relative bracket width),
        ``secular_max_iter`` and ``secular_max_expand`` (loop caps).
    """

    def __init__(self, config: Optional[InstantonConfig] = None):
        self.cfg = InstantonConfig() if config is None else config

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def solve(self, Bhat: np.ndarray, bhat_half: np.ndarray, c: float) -> SecularResult:
        """Eigendecompose ``Bhat`` and return roots with w in the original coordinates."""
        Bhat = np.atleast_2d(np.asarray(Bhat, dtype=float))
        d_full = _as1d(bhat_half, Bhat.shape[0])
        if Bhat.size == 0:
            return SecularResult(info=dict(poles=0, active_poles=0))
        D, U = la.eigh(_sym(Bhat))
        D = tol_round(D, self.cfg.round_tol)
        d = U.T @ d_full
        res = self.solve_diagonal(D, d, c)
        rotated = [
            SecularRoot(r.v, U @ r.w, r.residual, r.kind) for r in res.roots
        ]
        return SecularResult(rotated, res.poles, res.stalled, res.info)

    def solve_diagonal(self, D: np.ndarray, d: np.ndarray, c: float) -> SecularResult:
        """Roots for an already diagonal D; returned w live in the eigenbasis."""
        cfg = self.cfg
        D = tol_round(_as1d(D), cfg.round_tol)
        d = _as1d(d, D.size)
        c = float(c)
        # residual tolerance relative to the target, floored at round_tol
        ftol = cfg.secular_ftol * min(1.0, max(abs(c), cfg.round_tol))

        poles = np.unique(D)
        active_mask = np.abs(d) > cfg.round_tol
        active_poles = np.unique(D[active_mask])
        removable = np.setdiff1d(poles, active_poles)
        Da, da = D[active_mask], d[active_mask]

        def f(v: float) -> float:
            with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
                return float(np.sum((da / (v - Da)) ** 2) - c)

        def df(v: float) -> float:
            with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
                return float(-2.0 * np.sum(da**2 / (v - Da) ** 3))

        def w_of(v: float) -> np.ndarray:
            w = np.zeros(D.size)
            w[active_mask] = da / (v - Da)
            return w

        logging.debug(
            f"[Secular] poles={poles.size} active={active_poles.size} "
            f"removable={removable.size} c={c:.6e}"
        )

        out = SecularResult(poles=poles)
        found: List[Tuple[float, RootKind]] = []

        if active_poles.size:
            found, out.stalled = self._scan_intervals(f, df, active_poles, c, ftol)
        elif abs(c) <= ftol:
            # f ≡ -c: the zero vector satisfies the constraint
            found = [(0.0, RootKind.DOUBLE)]

        for v, kind in found:
            w = w_of(v)
            out.roots.append(SecularRoot(v, w, abs(float(w @ w) - c), kind))

        for p in removable:
            out.roots.extend(self._hard_case(p, D, d, active_mask, c, ftol))

        v0 = 0.0 not in poles and abs(f(0.0)) < ftol
        if v0:
            logging.debug("[Secular] v=0 is a root")
        if out.stalled:
            logging.warning(f"[Secular] {out.stalled} root search(es) stalled")

        out.roots.sort(key=lambda r: r.v)
        out.info = dict(
            poles=int(poles.size),
            active_poles=int(active_poles.size),
            removable_poles=int(removable.size),
            roots=len(out.roots),
            stalled=out.stalled,
            v0_root=bool(v0),
        )
        return out

    # ------------------------------------------------------------------ #
    # Interval scan
    # ------------------------------------------------------------------ #
    def _scan_intervals(
        self,
        f: Callable[[float], float],
        df: Callable[[float], float],
        P: np.ndarray,
        c: float,
        ftol: float,
    ) -> Tuple[List[Tuple[float, RootKind]], int]:
        found: List[Tuple[float, RootKind]] = []
        stalled = 0

        # outer intervals carry a root only when f tends to -c < 0
        if c > 0:
            gap_lo = P[1] - P[0] if P.size > 1 else max(1.0, abs(P[0]))
            gap_hi = P[-1] - P[-2] if P.size > 1 else max(1.0, abs(P[-1]))
            for side, pole, gap in (("left", P[0], gap_lo), ("right", P[-1], gap_hi)):
                v, status = self._outer_root(f, pole, gap, side, ftol)
                if status == _BI_ROOT:
                    found.append((v, RootKind.REGULAR))
                else:
                    stalled += 1
                    logging.debug(f"[Secular] stalled {side} of pole {pole:.6e}")

        for lo, hi in zip(P[:-1], P[1:]):
            vmin, status = self._bisect(
                df, lo, hi, increasing=True, lo_pole=True, hi_pole=True, ftol=ftol
            )
            if status != _BI_ROOT:
                stalled += 1
                logging.debug(f"[Secular] minimum search stalled on ({lo:.6e}, {hi:.6e})")
                continue
            fmin = f(vmin)
            if fmin > ftol:
                continue
            if fmin >= -ftol:
                found.append((vmin, RootKind.DOUBLE))
                continue
            for a, b, inc, lp, hp in ((lo, vmin, False, True, False), (vmin, hi, True, False, True)):
                v, status = self._bisect(
                    f, a, b, increasing=inc, lo_pole=lp, hi_pole=hp, ftol=ftol
                )
                if status == _BI_ROOT:
                    found.append((v, RootKind.REGULAR))
                else:
                    stalled += 1
                    logging.debug(f"[Secular] stalled on ({a:.6e}, {b:.6e})")
        return found, stalled

    def _outer_root(
        self, f, pole: float, gap: float, side: str, ftol: float
    ) -> Tuple[float, int]:
        """Expand away from the outermost pole until f < 0, then bisect."""
        sgn = -1.0 if side == "left" else 1.0
        h = gap
        end = pole + sgn * h
        for _ in range(self.cfg.secular_max_expand):
            fe = f(end)
            if abs(fe) < ftol:
                return end, _BI_ROOT
            if fe < 0:
                break
            h *= 2.0
            end = pole + sgn * h
        else:
            return end, _BI_STALL
        if side == "left":
            return self._bisect(
                f, end, pole, increasing=True, lo_pole=False, hi_pole=True, ftol=ftol
            )
        return self._bisect(
            f, pole, end, increasing=False, lo_pole=True, hi_pole=False, ftol=ftol
        )

    def _bisect(
        self,
        fun: Callable[[float], float],
        lo: float,
        hi: float,
        increasing: bool,
        lo_pole: bool,
        hi_pole: bool,
        ftol: float,
    ) -> Tuple[float, int]:
        """
        Bisection for a sign change of a monotone ``fun`` on (lo, hi).

        Endpoints flagged as poles are never evaluated. Converges on
        |fun| < ftol, or when the bracket collapses between two
        evaluated points; a collapse onto a pole endpoint is a stall.
        """
        cfg = self.cfg
        for _ in range(cfg.secular_max_iter):
            mid = 0.5 * (lo + hi)
            fm = fun(mid)
            if np.isnan(fm):
                return mid, _BI_STALL
            if abs(fm) < ftol:
                return mid, _BI_ROOT
            if (fm < 0) == increasing:
                lo, lo_pole = mid, False
            else:
                hi, hi_pole = mid, False
            if hi - lo <= cfg.secular_xtol * max(1.0, abs(lo), abs(hi)):
                if lo_pole or hi_pole:
                    return 0.5 * (lo + hi), _BI_STALL
                return 0.5 * (lo + hi), _BI_ROOT
        return 0.5 * (lo + hi), _BI_STALL

    # ------------------------------------------------------------------ #
    # Hard case
    # ------------------------------------------------------------------ #
    def _hard_case(
        self,
        p: float,
        D: np.ndarray,
        d: np.ndarray,
        active_mask: np.ndarray,
        c: float,
        ftol: float,
    ) -> List[SecularRoot]:
        w = np.zeros(D.size)
        w[active_mask] = d[active_mask] / (p - D[active_mask])
        deficit = c - float(w @ w)
        if deficit < -ftol:
            return []
        e = int(np.flatnonzero(D == p)[0])
        if deficit <= ftol:
            return [SecularRoot(float(p), w, abs(deficit), RootKind.HARD_CASE)]
        t = np.sqrt(deficit)
        roots = []
        for sgn in (1.0, -1.0):
            wh = w.copy()
            wh[e] = sgn * t
            roots.append(SecularRoot(float(p), wh, abs(float(wh @ wh) - c), RootKind.HARD_CASE))
        logging.debug(f"[Secular] hard case at removable pole {p:.6e}, t={t:.6e}")
        return roots
