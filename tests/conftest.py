# tests/conftest.py

import numpy as np
import pytest

from termopt.function import Function
from terms import Pair, Quadratic, Rosenbrock


@pytest.fixture
def messages():
    """Collects solver log lines; pass `messages.append` as log_function."""
    return []


@pytest.fixture
def rosenbrock():
    x = np.array([-1.2])
    y = np.array([1.0])
    f = Function()
    f.add_term(Rosenbrock(), x, y)
    yield f, x, y
    f.close()


@pytest.fixture
def chain():
    """
    n scalar variables tied together:
        Σ_i 0.5 (x_i - a_i)^2 + Σ_i 0.5 (x_i - x_{i+1})^2
    with a_i = i. Quadratic, so the Hessian is constant and SPD.
    """

    def build(n: int, threads: int = 1):
        xs = [np.array([0.0]) for _ in range(n)]
        f = Function(threads)
        for i, x in enumerate(xs):
            f.add_term(Quadratic(float(i)), x)
        for a, b in zip(xs[:-1], xs[1:]):
            f.add_term(Pair(), a, b)
        return f, xs

    return build
