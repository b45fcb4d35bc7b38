# tests/test_solver.py

from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from termopt.blocks.aux import (
    ExitCondition,
    Method,
    SolverBase,
    SolverConfig,
    SolverResults,
)
from termopt.function import Function
from termopt.solver import Solver, minimize
from terms import Quadratic


def _quiet(**kw):
    kw.setdefault("log_function", lambda msg: None)
    return kw


def test_overrides_replace_the_config():
    base = SolverConfig(maximum_iterations=7)
    solver = Solver(base, gradient_tolerance=1e-3)
    assert solver.config.maximum_iterations == 7
    assert solver.config.gradient_tolerance == 1e-3
    assert base.gradient_tolerance == 1e-12
    assert Solver(base).config is base


def test_invalid_settings_are_rejected():
    with pytest.raises(ValueError):
        Solver(line_search_rho=1.5)
    with pytest.raises(ValueError):
        SolverConfig(maximum_iterations=-1)
    with pytest.raises(ValueError):
        SolverConfig(lbfgs_history_size=0)
    with pytest.raises(TypeError):
        Solver(not_a_setting=1)


def test_config_is_frozen():
    cfg = SolverConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.maximum_iterations = 3


@pytest.mark.parametrize("method", [Method.NEWTON, Method.LBFGS, "newton", "lbfgs"])
def test_solve_dispatches_to_method(method):
    x = np.array([10.0, -10.0])
    f = Function(1)
    f.add_term(Quadratic([1.0, 2.0], dim=2), x)

    results = Solver(**_quiet()).solve(f, method)

    assert results.exit_success()
    np.testing.assert_allclose(x, [1.0, 2.0], atol=1e-10)


@pytest.mark.parametrize("method", [Method.NELDER_MEAD, Method.PATTERN_SEARCH, Method.GLOBAL])
def test_unavailable_methods_raise(method):
    f = Function(1)
    f.add_term(Quadratic(), np.zeros(1))
    with pytest.raises(NotImplementedError):
        Solver(**_quiet()).solve(f, method)


def test_unknown_method_name():
    f = Function(1)
    with pytest.raises(ValueError):
        Solver(**_quiet()).solve(f, "simplex")


def test_minimize_helper(messages):
    x = np.array([4.0])
    f = Function(1)
    f.add_term(Quadratic(-1.0), x)

    results = minimize(f, Method.LBFGS, log_function=messages.append)

    assert results.exit_success()
    assert float(x[0]) == pytest.approx(-1.0)
    assert messages


def test_results_summary():
    results = SolverResults()
    assert not results.exit_success()
    results.exit_condition = ExitCondition.ARGUMENT_TOLERANCE
    results.iterations = 3
    assert results.exit_success()

    text = str(results)
    assert "ARGUMENT_TOLERANCE" in text
    assert "Iterations                : 3" in text
    assert "Function evaluation" in text
    assert "Total time" in text
    assert "Optimum in" not in text


def test_table_header_repeats(messages):
    base = SolverBase(SolverConfig(log_function=messages.append))
    results = SolverResults()
    base.log_header(results, "HEADER")
    for i in range(45):
        base.log_row(results, f"row {i}")
    assert messages.count("HEADER") == 3
    assert len(messages) == 48
    assert messages[21] == "HEADER"


def test_default_log_function_uses_logging(caplog):
    x = np.array([0.0])
    f = Function(1)
    f.add_term(Quadratic(1.0), x)
    with caplog.at_level("INFO"):
        Solver().solve(f)
    assert any("Newton" in r.getMessage() for r in caplog.records)
