# Solver configuration, results and the pieces shared by every solver.

from __future__ import annotations

# =========================
# Standard library
# =========================
import logging
import math
import time
from dataclasses import dataclass, fields
from enum import Enum
from typing import Callable, Optional

# =========================
# Third-party
# =========================
import numpy as np
import scipy.sparse as sp


# ======================================
# Enums
# ======================================
class Method(Enum):
    """Minimization methods known to the solver facade."""

    NEWTON = "newton"
    LBFGS = "lbfgs"
    NELDER_MEAD = "nelder_mead"
    PATTERN_SEARCH = "pattern_search"
    GLOBAL = "global"


class SparsityMode(Enum):
    """How the Newton solver stores the Hessian."""

    DENSE = "dense"
    SPARSE = "sparse"
    AUTO = "auto"


class FactorizationMethod(Enum):
    BKP = "bkp"              # Bunch-Kaufman block diagonal modification
    ITERATIVE = "iterative"  # τI shifts until Cholesky succeeds


class ExitCondition(Enum):
    GRADIENT_TOLERANCE = "gradient_tolerance"
    FUNCTION_TOLERANCE = "function_tolerance"
    ARGUMENT_TOLERANCE = "argument_tolerance"
    NO_CONVERGENCE = "no_convergence"
    FUNCTION_NAN = "function_nan"
    FUNCTION_INFINITY = "function_infinity"
    USER_ABORT = "user_abort"
    INTERNAL_ERROR = "internal_error"
    NA = "na"


# ======================================
# Global configuration
# ======================================
@dataclass(frozen=True)
class SolverConfig:
    """
    Settings for one solve call.

    Notes
    -----
    • Frozen: derive variations with `dataclasses.replace`.
    • Tolerances follow the usual relative definitions:
        gradient  : ‖g‖∞ / ‖g0‖∞                 < gradient_tolerance
        function  : |Δf| / (|f| + tol)            < function_improvement_tolerance
        argument  : ‖Δx‖₂ / (‖x‖₂ + tol)          < argument_improvement_tolerance
    """

    # ---------------- Limits & tolerances ----------------
    maximum_iterations: int = 100
    gradient_tolerance: float = 1e-12
    function_improvement_tolerance: float = 1e-12
    argument_improvement_tolerance: float = 1e-12

    # ---------------- L-BFGS ----------------
    lbfgs_history_size: int = 10
    lbfgs_restart_tolerance: float = 1e-6

    # ---------------- Line search ----------------
    line_search_c: float = 1e-4
    line_search_rho: float = 0.5
    start_alpha: float = 1.0

    # ---------------- Newton linear algebra ----------------
    sparsity_mode: SparsityMode = SparsityMode.AUTO
    factorization_method: FactorizationMethod = FactorizationMethod.BKP
    auto_sparse_min_size: int = 100
    auto_sparse_max_density: float = 0.1

    # ---------------- Hooks ----------------
    log_function: Optional[Callable[[str], None]] = None
    callback_function: Optional[Callable[["CallbackInformation"], bool]] = None

    def __post_init__(self):
        if self.maximum_iterations < 0:
            raise ValueError(f"maximum_iterations must be >= 0, got {self.maximum_iterations}")
        for name in (
            "gradient_tolerance",
            "function_improvement_tolerance",
            "argument_improvement_tolerance",
            "lbfgs_restart_tolerance",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")
        if self.lbfgs_history_size <= 0:
            raise ValueError(f"lbfgs_history_size must be positive, got {self.lbfgs_history_size}")
        if not 0.0 < self.line_search_c < 1.0:
            raise ValueError(f"line_search_c must lie in (0, 1), got {self.line_search_c}")
        if not 0.0 < self.line_search_rho < 1.0:
            raise ValueError(f"line_search_rho must lie in (0, 1), got {self.line_search_rho}")
        if self.start_alpha <= 0.0:
            raise ValueError(f"start_alpha must be positive, got {self.start_alpha}")
        if not isinstance(self.sparsity_mode, SparsityMode):
            raise ValueError(f"Unknown sparsity_mode {self.sparsity_mode!r}")
        if not isinstance(self.factorization_method, FactorizationMethod):
            raise ValueError(f"Unknown factorization_method {self.factorization_method!r}")


# ======================================
# Callback & results
# ======================================
@dataclass
class CallbackInformation:
    """Passed to `callback_function` once per iteration; fields may be None depending on the solver."""

    objective_value: float = math.nan
    x: Optional[np.ndarray] = None
    g: Optional[np.ndarray] = None
    H_dense: Optional[np.ndarray] = None
    H_sparse: Optional[sp.spmatrix] = None


@dataclass
class SolverResults:
    exit_condition: ExitCondition = ExitCondition.NA
    iterations: int = 0

    startup_time: float = 0.0
    function_evaluation_time: float = 0.0
    stopping_criteria_time: float = 0.0
    matrix_factorization_time: float = 0.0
    lbfgs_update_time: float = 0.0
    linear_solver_time: float = 0.0
    backtracking_time: float = 0.0
    log_time: float = 0.0
    total_time: float = 0.0

    # only set by global solvers
    optimum_lower: float = -math.inf
    optimum_upper: float = math.inf

    def exit_success(self) -> bool:
        return self.exit_condition in (
            ExitCondition.GRADIENT_TOLERANCE,
            ExitCondition.FUNCTION_TOLERANCE,
            ExitCondition.ARGUMENT_TOLERANCE,
        )

    def __str__(self) -> str:
        rule = "-" * 50
        lines = [
            rule,
            f"Exit condition            : {self.exit_condition.name}",
            f"Iterations                : {self.iterations}",
        ]
        for f in fields(self):
            if f.name.endswith("_time") and f.name != "total_time":
                label = f.name[: -len("_time")].replace("_", " ").capitalize()
                lines.append(f"  {label:<24}: {getattr(self, f.name):10.6f} s")
        lines.append(f"Total time                : {self.total_time:10.6f} s")
        if math.isfinite(self.optimum_lower) or math.isfinite(self.optimum_upper):
            lines.append(f"Optimum in                : [{self.optimum_lower:.6g}, {self.optimum_upper:.6g}]")
        lines.append(rule)
        return "\n".join(lines)


# ======================================
# Shared solver logic
# ======================================
class SolverBase:
    """Exit tests, callback invocation and timed logging shared by the solvers."""

    TABLE_HEADER_EVERY = 20

    def __init__(self, cfg: SolverConfig):
        self.cfg = cfg
        self.log_function: Callable[[str], None] = cfg.log_function or logging.info
        self._rows = 0

    # ---------- logging ----------
    def log(self, results: SolverResults, message: str) -> None:
        start = time.perf_counter()
        self.log_function(message)
        results.log_time += time.perf_counter() - start

    def log_header(self, results: SolverResults, columns: str) -> None:
        self._rows = 0
        self._columns = columns
        self.log(results, columns)

    def log_row(self, results: SolverResults, row: str) -> None:
        if self._rows and self._rows % self.TABLE_HEADER_EVERY == 0:
            self.log(results, self._columns)
        self.log(results, row)
        self._rows += 1

    # ---------- stopping ----------
    def check_exit_conditions(
        self,
        fval: float,
        fprev: float,
        gnorm: float,
        gnorm0: float,
        xnorm: float,
        dxnorm: Optional[float],
        last_iteration_successful: bool,
        results: SolverResults,
    ) -> bool:
        """
        Set results.exit_condition and return True if the solve should stop.

        `dxnorm` is None until the first line search has been performed.
        """
        cfg = self.cfg
        if math.isnan(fval):
            results.exit_condition = ExitCondition.FUNCTION_NAN
            return True
        if math.isinf(fval):
            results.exit_condition = ExitCondition.FUNCTION_INFINITY
            return True

        if gnorm0 == 0.0 or gnorm < cfg.gradient_tolerance * gnorm0:
            results.exit_condition = ExitCondition.GRADIENT_TOLERANCE
            return True

        ftol = cfg.function_improvement_tolerance
        if last_iteration_successful and abs(fval - fprev) < ftol * (abs(fval) + ftol):
            results.exit_condition = ExitCondition.FUNCTION_TOLERANCE
            return True

        atol = cfg.argument_improvement_tolerance
        if dxnorm is not None and dxnorm < atol * (xnorm + atol):
            results.exit_condition = ExitCondition.ARGUMENT_TOLERANCE
            return True

        if results.iterations >= cfg.maximum_iterations:
            results.exit_condition = ExitCondition.NO_CONVERGENCE
            return True
        return False

    def callback(self, info: CallbackInformation) -> bool:
        """False means the user asked to stop."""
        if self.cfg.callback_function is None:
            return True
        return bool(self.cfg.callback_function(info))
