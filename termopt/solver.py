"""
Solver facade.

    solver = Solver(gradient_tolerance=1e-8)
    results = solver.solve(function, Method.NEWTON)
    if not results.exit_success():
        ...

A Solver is a thin holder of an immutable SolverConfig; each `solve` call
builds a fresh method object and a fresh SolverResults.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional, Union

from .blocks.aux import Method, SolverConfig, SolverResults
from .function import Function
from .lbfgs import LBFGSSolver
from .newton import NewtonSolver


class Solver:
    def __init__(self, config: Optional[SolverConfig] = None, **overrides):
        config = config if config is not None else SolverConfig()
        self.config = replace(config, **overrides) if overrides else config

    def solve(self, function: Function, method: Union[Method, str] = Method.NEWTON) -> SolverResults:
        method = Method(method) if isinstance(method, str) else method
        if method is Method.NEWTON:
            return NewtonSolver(self.config).solve(function)
        if method is Method.LBFGS:
            return LBFGSSolver(self.config).solve(function)
        raise NotImplementedError(f"Method {method.name} is not available in this package")

    def __repr__(self) -> str:
        return f"Solver({self.config!r})"


def minimize(
    function: Function,
    method: Union[Method, str] = Method.NEWTON,
    config: Optional[SolverConfig] = None,
    **overrides,
) -> SolverResults:
    """Solve with a one-off Solver; the result point is left in the variables."""
    return Solver(config, **overrides).solve(function, method)
