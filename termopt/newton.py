from __future__ import annotations

import logging
import math
import time
from typing import Optional

import numpy as np

from .blocks.aux import (
    CallbackInformation,
    ExitCondition,
    SolverBase,
    SolverConfig,
    SolverResults,
    SparsityMode,
)
from .blocks.linesearch import LineSearcher
from .blocks.reg import Regularizer
from .function import Function


# =============================================================================
# Newton solver
# =============================================================================
class NewtonSolver(SolverBase):
    """
    Line-search Newton method:

        evaluate f, g, H  ->  check exits  ->  (H + E) p = -g  ->  Armijo α  ->  x += αp

    E is chosen by the Regularizer (BKP or iterative shifts) so that p is a
    descent direction even where H is indefinite. The final point is written
    back to the variables' storage.
    """

    COLUMNS = f"{'Itr':>4} {'f':>14} {'max|g_i|':>12} {'alpha':>10} {'H_reg':>10}"

    def __init__(self, cfg: SolverConfig):
        super().__init__(cfg)
        self.ls = LineSearcher(cfg)
        self.regularizer = Regularizer(cfg)

    def use_sparse(self, function: Function) -> bool:
        cfg = self.cfg
        if cfg.sparsity_mode is SparsityMode.SPARSE:
            return True
        if cfg.sparsity_mode is SparsityMode.DENSE:
            return False
        return (
            function.number_of_scalars >= cfg.auto_sparse_min_size
            and function.estimate_hessian_density() <= cfg.auto_sparse_max_density
        )

    def _internal_error(self, results: SolverResults, stage: str, err: Exception) -> None:
        results.exit_condition = ExitCondition.INTERNAL_ERROR
        message = f"Newton: {stage} failed: {type(err).__name__}: {err}"
        logging.warning(message)
        self.log(results, message)

    def solve(self, function: Function, results: Optional[SolverResults] = None) -> SolverResults:
        results = results if results is not None else SolverResults()
        t_begin = time.perf_counter()
        cfg = self.cfg

        # ---- 0) startup ---------------------------------------------------
        x = function.copy_user_to_global()
        sparse = self.use_sparse(function)
        self.regularizer.reset()

        fprev = math.nan
        gnorm0: Optional[float] = None
        dxnorm: Optional[float] = None   # None until the first line search
        last_ok = False
        alpha = 0.0
        sigma = 0.0

        self.log(
            results,
            f"Newton: {x.shape[0]} variables, {function.number_of_terms} terms, "
            f"{'sparse' if sparse else 'dense'} Hessian, {cfg.factorization_method.name}",
        )
        self.log_header(results, self.COLUMNS)
        results.startup_time += time.perf_counter() - t_begin

        while True:
            # ---- 1) evaluate ----------------------------------------------
            t0 = time.perf_counter()
            try:
                fval, g, H = function.evaluate_hessian(x, sparse=sparse)
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
                f"{results.iterations:>4} {fval:>14.6e} {gnorm:>12.4e} {alpha:>10.3e} {sigma:>10.3e}",
            )
            if stop:
                break

            info = CallbackInformation(
                objective_value=fval,
                x=x,
                g=g,
                H_dense=None if sparse else H,
                H_sparse=H if sparse else None,
            )
            if not self.callback(info):
                results.exit_condition = ExitCondition.USER_ABORT
                break

            # ---- 3) modified factorization --------------------------------
            try:
                p, reg = self.regularizer.solve(H, g)
            except Exception as err:
                self._internal_error(results, "factorization", err)
                break
            results.matrix_factorization_time += reg.factorization_time
            results.linear_solver_time += reg.solve_time
            sigma = reg.sigma

            # ---- 4) line search -------------------------------------------
            t0 = time.perf_counter()
            try:
                alpha = self.ls.search(function, x, fval, g, p, cfg.start_alpha)
            except Exception as err:
                results.backtracking_time += time.perf_counter() - t0
                self._internal_error(results, "line search", err)
                break
            results.backtracking_time += time.perf_counter() - t0

            # ---- 5) step --------------------------------------------------
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
