"""
reg.py

Newton step p solving (H + E) p = -g, with E the modification that makes
H + E safely positive definite.

Strategies:
- BKP        : dense Bunch-Kaufman factorization P·L·D·Lᵀ·Pᵀ (scipy.linalg.ldl).
               Each 1×1 / 2×2 block of D is eigen-decomposed and eigenvalues
               below δ = sqrt(eps)·max(1, ‖H‖_max) are raised to δ.
- ITERATIVE  : add τI, τ doubled until a Cholesky factorization succeeds.
               Dense via cho_factor; sparse via SuperLU restricted to diagonal
               pivots, accepting only symmetric permutations with positive pivots.
Sparse Hessians always take the ITERATIVE path.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np
import scipy.linalg as la
import scipy.sparse as sp
from scipy.sparse.linalg import splu

from .aux import FactorizationMethod, SolverConfig


# ---------- telemetry ----------
@dataclass
class RegInfo:
    mode: str
    sigma: float = 0.0               # τ, or the largest eigenvalue lift
    modified_eigenvalues: int = 0
    attempts: int = 1
    factorization_time: float = 0.0
    solve_time: float = 0.0


# ---------- helpers ----------
ArrayLike = Union[np.ndarray, sp.spmatrix]


def _sym(A: ArrayLike) -> ArrayLike:
    return 0.5 * (A + A.T)


def _bkp_blocks(d: np.ndarray):
    """Yield (start, size) of the 1×1 and 2×2 diagonal blocks of D."""
    n = d.shape[0]
    i = 0
    while i < n:
        if i + 1 < n and d[i + 1, i] != 0.0:
            yield i, 2
            i += 2
        else:
            yield i, 1
            i += 1


# ---------- main class ----------
class Regularizer:
    BETA = 1e-3  # smallest nonzero shift of the iterative modification

    def __init__(self, cfg: SolverConfig):
        self.cfg = cfg
        self.method = cfg.factorization_method
        self.sigma_history: list[float] = []

    # ---------- public API ----------
    def solve(self, H: ArrayLike, g: np.ndarray) -> Tuple[np.ndarray, RegInfo]:
        if H.shape[0] != H.shape[1]:
            raise ValueError(f"Hessian must be square, got {H.shape}")
        if H.shape[0] != g.shape[0]:
            raise ValueError(f"Hessian {H.shape} does not match gradient {g.shape}")

        if sp.issparse(H):
            p, info = self._iterative_sparse(H, g)
        elif self.method is FactorizationMethod.BKP:
            p, info = self._bkp(H, g)
        else:
            p, info = self._iterative_dense(H, g)

        if info.sigma > 0.0:
            logging.debug(
                f"{info.mode}: Hessian modified (sigma={info.sigma:.3e}, "
                f"modified={info.modified_eigenvalues}, attempts={info.attempts})"
            )
        self.sigma_history.append(info.sigma)
        return p, info

    def reset(self) -> None:
        self.sigma_history.clear()

    # ---------- BKP block diagonal modification ----------
    def _bkp(self, H: np.ndarray, g: np.ndarray) -> Tuple[np.ndarray, RegInfo]:
        n = H.shape[0]
        H = _sym(np.asarray(H, dtype=float))
        delta = np.sqrt(np.finfo(float).eps) * max(1.0, float(np.max(np.abs(H), initial=0.0)))

        t0 = time.perf_counter()
        lu, d, perm = la.ldl(H, lower=True, hermitian=True)
        L = lu[perm]  # lower triangular

        # modified D: eigenvalues of each block clamped from below
        blocks = []
        modified = 0
        sigma = 0.0
        for i, k in _bkp_blocks(d):
            w, V = la.eigh(d[i : i + k, i : i + k])
            low = w < delta
            if np.any(low):
                modified += int(np.count_nonzero(low))
                sigma = max(sigma, float(np.max(delta - w[low])))
                w = np.where(low, delta, w)
            blocks.append((i, k, w, V))
        t1 = time.perf_counter()

        # A = lu·D·luᵀ with lu = Pᵀ·L
        b = -g
        y = la.solve_triangular(L, b[perm], lower=True)
        z = np.empty(n)
        for i, k, w, V in blocks:
            z[i : i + k] = V @ ((V.T @ y[i : i + k]) / w)
        v = la.solve_triangular(L, z, lower=True, trans="T")
        p = np.empty(n)
        p[perm] = v
        t2 = time.perf_counter()

        return p, RegInfo(
            mode="BKP",
            sigma=sigma,
            modified_eigenvalues=modified,
            factorization_time=t1 - t0,
            solve_time=t2 - t1,
        )

    # ---------- iterative diagonal modification ----------
    def _initial_shift(self, diag: np.ndarray) -> float:
        min_diag = float(np.min(diag, initial=np.inf))
        return 0.0 if min_diag > 0.0 else self.BETA - min_diag

    def _next_shift(self, tau: float) -> float:
        tau = max(2.0 * tau, self.BETA)
        if not np.isfinite(tau):
            raise la.LinAlgError("No positive definite shift of the Hessian found")
        return tau

    def _iterative_dense(self, H: np.ndarray, g: np.ndarray) -> Tuple[np.ndarray, RegInfo]:
        n = H.shape[0]
        H = _sym(np.asarray(H, dtype=float))
        I = np.eye(n)
        tau = self._initial_shift(np.diag(H))

        t0 = time.perf_counter()
        attempts = 0
        while True:
            attempts += 1
            try:
                factor = la.cho_factor(H + tau * I, lower=True)
                break
            except la.LinAlgError:
                tau = self._next_shift(tau)
        t1 = time.perf_counter()
        p = la.cho_solve(factor, -g)
        t2 = time.perf_counter()

        return p, RegInfo(
            mode="ITERATIVE",
            sigma=tau,
            attempts=attempts,
            factorization_time=t1 - t0,
            solve_time=t2 - t1,
        )

    def _iterative_sparse(self, H: sp.spmatrix, g: np.ndarray) -> Tuple[np.ndarray, RegInfo]:
        n = H.shape[0]
        H = sp.csc_matrix(_sym(H))
        I = sp.identity(n, format="csc")
        tau = self._initial_shift(H.diagonal())

        t0 = time.perf_counter()
        attempts = 0
        while True:
            attempts += 1
            factor = self._positive_definite_lu((H + tau * I).tocsc())
            if factor is not None:
                break
            tau = self._next_shift(tau)
        t1 = time.perf_counter()
        p = factor.solve(-g)
        t2 = time.perf_counter()

        return p, RegInfo(
            mode="ITERATIVE",
            sigma=tau,
            attempts=attempts,
            factorization_time=t1 - t0,
            solve_time=t2 - t1,
        )

    @staticmethod
    def _positive_definite_lu(A: sp.csc_matrix):
        """SuperLU factor of A if A is positive definite, else None."""
        try:
            factor = splu(
                A,
                permc_spec="MMD_AT_PLUS_A",
                diag_pivot_thresh=0.0,
                options={"SymmetricMode": True},
            )
        except RuntimeError:
            # exactly singular
            return None
        # symmetric permutation and positive pivots <=> P·A·Pᵀ = L·D·Lᵀ with D > 0
        if not np.array_equal(factor.perm_r, factor.perm_c):
            return None
        if not np.all(factor.U.diagonal() > 0.0):
            return None
        return factor
