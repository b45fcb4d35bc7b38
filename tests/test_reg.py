# tests/test_reg.py

from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp

from termopt.blocks.aux import FactorizationMethod, SolverConfig
from termopt.blocks.reg import Regularizer


def _regularizer(method: FactorizationMethod) -> Regularizer:
    return Regularizer(SolverConfig(factorization_method=method))


def _random_symmetric(n: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    A = rng.standard_normal((n, n))
    return 0.5 * (A + A.T)


@pytest.mark.parametrize("method", list(FactorizationMethod))
def test_positive_definite_system_is_solved_exactly(method):
    rng = np.random.default_rng(0)
    B = rng.standard_normal((6, 6))
    H = B @ B.T + 6.0 * np.eye(6)
    g = rng.standard_normal(6)

    p, info = _regularizer(method).solve(H, g)
    np.testing.assert_allclose(p, np.linalg.solve(H, -g), rtol=1e-10, atol=1e-12)
    assert info.sigma == 0.0
    assert info.modified_eigenvalues == 0


@pytest.mark.parametrize("method", list(FactorizationMethod))
def test_indefinite_hessian_yields_descent_direction(method):
    H = np.diag([2.0, -1.0, 0.5])
    g = np.array([1.0, 1.0, -1.0])
    p, info = _regularizer(method).solve(H, g)
    assert g @ p < 0.0
    assert info.sigma > 0.0


@pytest.mark.parametrize("method", list(FactorizationMethod))
@pytest.mark.parametrize("seed", range(5))
def test_random_indefinite_matrices_yield_descent(method, seed):
    H = _random_symmetric(8, seed)
    g = np.random.default_rng(100 + seed).standard_normal(8)
    p, _ = _regularizer(method).solve(H, g)
    assert np.all(np.isfinite(p))
    assert g @ p < 0.0


def test_bkp_handles_two_by_two_pivots():
    # zero diagonal forces a 2x2 block in the Bunch-Kaufman factorization
    H = np.array([[0.0, 1.0], [1.0, 0.0]])
    g = np.array([1.0, 2.0])
    p, info = _regularizer(FactorizationMethod.BKP).solve(H, g)
    assert g @ p < 0.0
    assert info.modified_eigenvalues == 1


def test_iterative_shift_solves_shifted_system():
    H = np.array([[1.0, 0.0], [0.0, -4.0]])
    g = np.array([1.0, 1.0])
    p, info = _regularizer(FactorizationMethod.ITERATIVE).solve(H, g)
    assert info.sigma > 4.0
    assert info.attempts >= 1
    np.testing.assert_allclose((H + info.sigma * np.eye(2)) @ p, -g, atol=1e-12)


def test_sparse_positive_definite_matches_direct_solve():
    n = 30
    H = sp.diags([-1.0, 2.5, -1.0], [-1, 0, 1], shape=(n, n), format="csr")
    g = np.linspace(-1.0, 1.0, n)
    # sparse input always goes down the iterative path
    p, info = _regularizer(FactorizationMethod.BKP).solve(H, g)
    assert info.mode == "ITERATIVE"
    assert info.sigma == 0.0
    np.testing.assert_allclose(p, np.linalg.solve(H.toarray(), -g), rtol=1e-10, atol=1e-12)


def test_sparse_indefinite_yields_descent():
    n = 20
    H = sp.diags([1.0, -3.0, 1.0], [-1, 0, 1], shape=(n, n), format="csr")
    g = np.ones(n)
    p, info = _regularizer(FactorizationMethod.ITERATIVE).solve(H, g)
    assert info.sigma > 0.0
    assert g @ p < 0.0
    np.testing.assert_allclose((H.toarray() + info.sigma * np.eye(n)) @ p, -g, atol=1e-10)


def test_shape_mismatch_is_rejected():
    with pytest.raises(ValueError):
        _regularizer(FactorizationMethod.BKP).solve(np.eye(3), np.ones(2))
    with pytest.raises(ValueError):
        _regularizer(FactorizationMethod.BKP).solve(np.ones((2, 3)), np.ones(2))
