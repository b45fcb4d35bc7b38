import logging

import numpy as np

from .aux import SolverConfig


class LineSearcher:
    """Backtracking line search with the Armijo sufficient decrease condition.

    Accepts the first α in start_alpha·ρ^k with
        f(x + αp) <= f(x) + c·α·gᵀp.
    There is no iteration cap: the search ends when α no longer moves x,
    in which case α = 0 is returned and the caller treats the iteration
    as unsuccessful.
    """

    def __init__(self, cfg: SolverConfig):
        self.cfg = cfg
        self.evaluations = 0  # trial evaluations of the most recent search

    def search(
        self,
        function,
        x: np.ndarray,
        fval: float,
        g: np.ndarray,
        p: np.ndarray,
        start_alpha: float = None,
    ) -> float:
        cfg = self.cfg
        c = cfg.line_search_c
        rho = cfg.line_search_rho
        alpha = float(cfg.start_alpha if start_alpha is None else start_alpha)
        self.evaluations = 0

        gTp = float(g @ p)
        if not gTp < 0.0:
            logging.debug(f"Line search: not a descent direction (gᵀp={gTp:.3e})")
            return 0.0

        while alpha > 0.0:
            x_t = x + alpha * p
            if np.array_equal(x_t, x):
                break
            f_t = function.evaluate(x_t)
            self.evaluations += 1
            # NaN compares False and is backtracked
            if f_t <= fval + c * alpha * gTp:
                return alpha
            alpha *= rho

        logging.debug(
            f"Line search failed: step underflow after {self.evaluations} evaluations "
            f"(alpha={alpha:.2e})"
        )
        return 0.0
