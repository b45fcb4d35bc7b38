from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Deque, Optional, Tuple

import numpy as np

from .blocks.aux import (
    CallbackInformation,
    ExitCondition,
    SolverBase,
    SolverConfig,
    SolverResults,
)
from .blocks.linesearch import LineSearcher
from .function import Function

Pair = Tuple[np.ndarray, np.ndarray, float]  # (s, y, 1/sᵀy)


# =============================================================================
# L-BFGS solver
# =============================================================================
class LBFGSSolver(SolverBase):
    """
    Limited-memory BFGS with the two-loop recursion. Only values and
    gradients are evaluated.

    The history is discarded (steepest descent restart) when the relative
    function improvement drops below `lbfgs_restart_tolerance` or when the
    recursion does not produce a descent direction.
    """

    CURVATURE_EPS = 1e-12
    COLUMNS = f"{'Itr':>4} {'f':>14} {'max|g_i|':>12} {'alpha':>10} {'hist':>5}"

    def __init__(self, cfg: SolverConfig):
        super().__init__(cfg)
        self.ls = LineSearcher(cfg)
        self.history: Deque[Pair] = deque(maxlen=cfg.lbfgs_history_size)

    # ---------- history ----------
    def update(self, s: np.ndarray, y: np.ndarray) -> bool:
        sy = float(s @ y)
        if sy <= self.CURVATURE_EPS * np.linalg.norm(s) * np.linalg.norm(y):
            logging.debug(f"L-BFGS: skipping update with sᵀy={sy:.3e}")
            return False
        self.history.append((s, y, 1.0 / sy))
        return True

    def direction(self, g: np.ndarray) -> np.ndarray:
        """Two-loop recursion: approximate -H⁻¹g from the stored pairs."""
        q = -g.copy()
        alphas = []
        for s, y, rho in reversed(self.history):
            a = rho * float(s @ q)
            alphas.append(a)
            q -= a * y
        if self.history:
            s, y, _ = self.history[-1]
            q *= float(s @ y) / float(y @ y)
        for (s, y, rho), a in zip(self.history, reversed(alphas)):
            b = rho * float(y @ q)
            q += (a - b) * s
        return q

    def search_direction(self, g: np.ndarray) -> Tuple[np.ndarray, float]:
        """
        Direction and initial step length for the line search.

        Without history (first iteration, after a restart) this is steepest
        descent with the first trial step capped at unit length in ‖·‖∞.
        """
        start_alpha = self.cfg.start_alpha
        if self.history:
            p = self.direction(g)
            if float(g @ p) < 0.0:
                return p, start_alpha
            logging.debug("L-BFGS: not a descent direction, restarting")
            self.history.clear()
        gmax = float(np.max(np.abs(g), initial=0.0))
        if gmax > 1.0:
            start_alpha /= gmax
        return -g, start_alpha

    def _internal_error(self, results: SolverResults, stage: str, err: Exception) -> None:
        results.exit_condition = ExitCondition.INTERNAL_ERROR
        message = f"L-BFGS: {stage} failed: {type(err).__name__}: {err}"
        logging.warning(message)
        self.log(results, message)

    def solve(self, function: Function, results: Optional[SolverResults] = None) -> SolverResults:
        results = results if results is not None else SolverResults()
        t_begin = time.perf_counter()
        cfg = self.cfg

        # ---- 0) startup ---------------------------------------------------
        x = function.copy_user_to_global()
        self.history.clear()

        fprev = math.nan
        gnorm0: Optional[float] = None
        dxnorm: Optional[float] = None
        last_ok = False
        alpha = 0.0
        x_prev: Optional[np.ndarray] = None
        g_prev: Optional[np.ndarray] = None

        self.log(
            results,
            f"L-BFGS: {x.shape[0]} variables, {function.number_of_terms} terms, "
            f"history {cfg.lbfgs_history_size}",
        )
        self.log_header(results, self.COLUMNS)
        results.startup_time += time.perf_counter() - t_begin

        while True:
            # ---- 1) evaluate ----------------------------------------------
            t0 = time.perf_counter()
            try:
                fval, g = function.evaluate_gradient(x)
            except Exception as err:
                results.function_evaluation_time += time.perf_counter() - t0
                self._internal_error(results, "evaluation", err)
                break
            results.function_evaluation_time += time.perf_counter() - t0

            # ---- 2) stopping criteria -------------------------------------
            t0 = time.perf_counter()
            gnorm = float(np.max(np.abs(g), initial=0.0))
            if gnorm0 is None:
                gnorm0 = gnorm
            xnorm = float(np.linalg.norm(x))
            stop = self.check_exit_conditions(
                fval, fprev, gnorm, gnorm0, xnorm, dxnorm, last_ok, results
            )
            results.stopping_criteria_time += time.perf_counter() - t0

            self.log_row(
                results,
                f"{results.iterations:>4} {fval:>14.6e} {gnorm:>12.4e} {alpha:>10.3e} {len(self.history):>5}",
            )
            if stop:
                break

            if not self.callback(CallbackInformation(objective_value=fval, x=x, g=g)):
                results.exit_condition = ExitCondition.USER_ABORT
                break

            # ---- 3) history update & direction ----------------------------
            t0 = time.perf_counter()
            if x_prev is not None:
                self.update(x - x_prev, g - g_prev)
                tol = cfg.lbfgs_restart_tolerance
                if abs(fprev - fval) < tol * (abs(fval) + tol):
                    logging.debug(f"L-BFGS: restart at iteration {results.iterations}")
                    self.history.clear()
            p, alpha0 = self.search_direction(g)
            results.lbfgs_update_time += time.perf_counter() - t0

            # ---- 4) line search -------------------------------------------
            t0 = time.perf_counter()
            try:
                alpha = self.ls.search(function, x, fval, g, p, alpha0)
            except Exception as err:
                results.backtracking_time += time.perf_counter() - t0
                self._internal_error(results, "line search", err)
                break
            results.backtracking_time += time.perf_counter() - t0

            # ---- 5) step --------------------------------------------------
            x_prev, g_prev = x, g
            step = alpha * p
            x = x + step
            dxnorm = float(np.linalg.norm(step))
            fprev = fval
            last_ok = alpha > 0.0
            results.iterations += 1

        function.copy_global_to_user(x)
        results.total_time += time.perf_counter() - t_begin
        self.log(results, str(results))
        return results
