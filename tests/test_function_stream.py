# tests/test_function_stream.py

from __future__ import annotations

import io

import numpy as np
import pytest

from termopt.errors import CapabilityError, StreamFormatError
from termopt.function import STREAM_MAGIC, Function, platform_fingerprint
from termopt.term import TermFactory
from terms import ExpChange, Pair, Quadratic, Rosenbrock


@pytest.fixture
def factory():
    fac = TermFactory()
    fac.teach_term(Quadratic)
    fac.teach_term(Pair, "pair")
    fac.teach_term(Rosenbrock)
    return fac


def _build():
    x = np.array([1.0, -2.0])
    y = np.array([0.25, 4.0])
    z = np.array([7.0])
    w = np.array([-3.5])
    f = Function(1)
    f.add_term(Quadratic([1.0, 2.0], dim=2), x)
    f.add_term(Pair([0.5, 0.5], dim=2), x, y)
    f.add_term(Rosenbrock(), z, w)
    f.set_constant(y)
    f += 0.125
    return f


def _write(f: Function, factory=None) -> str:
    out = io.StringIO()
    f.write_to_stream(out, factory)
    return out.getvalue()


def test_round_trip_reproduces_function(factory):
    f = _build()
    text = _write(f, factory)
    assert text.startswith(STREAM_MAGIC + "\n")

    g = Function(1)
    storage = g.read_from_stream(io.StringIO(text), factory)

    assert g.number_of_terms == f.number_of_terms
    assert g.number_of_variables == f.number_of_variables
    assert g.number_of_scalars == f.number_of_scalars
    assert g.number_of_constants == f.number_of_constants
    assert g.constant == f.constant
    assert sorted(v.user_dimension for v in g.variables) == sorted(v.user_dimension for v in f.variables)
    np.testing.assert_array_equal(g.copy_user_to_global(), f.copy_user_to_global())
    assert storage.shape == (f.number_of_scalars + f.number_of_constants,)

    point = f.copy_user_to_global() + 0.3
    assert g.evaluate(point) == pytest.approx(f.evaluate(point))
    np.testing.assert_allclose(g.evaluate_gradient(point)[1], f.evaluate_gradient(point)[1])


def test_read_variables_are_views_of_returned_storage(factory):
    f = _build()
    g = Function(1)
    storage = g.read_from_stream(io.StringIO(_write(f, factory)), factory)

    before = g.evaluate()
    storage[:] = 0.0
    assert g.evaluate() != before
    for var in g.variables:
        assert np.shares_memory(var.storage, storage)


def test_registered_names_are_written(factory):
    f = Function(1)
    f.add_term(Pair(), np.zeros(1), np.zeros(1))
    lines = _write(f, factory).splitlines()
    assert "pair" in lines
    assert TermFactory.term_name(Pair) not in lines


def test_default_names_without_factory():
    f = Function(1)
    f.add_term(Quadratic(3.0), np.zeros(1))
    text = _write(f)
    assert TermFactory.term_name(Quadratic) in text.splitlines()

    fac = TermFactory()
    fac.teach_term(Quadratic)
    g = Function(1)
    g.read_from_stream(io.StringIO(text), fac)
    assert g.evaluate(np.array([3.0])) == pytest.approx(0.0)


def test_header_fields(factory):
    lines = _write(_build(), factory).splitlines()
    assert lines[0] == STREAM_MAGIC
    assert lines[1] == "1"
    assert lines[2] == platform_fingerprint()
    assert lines[3] == "3"  # terms
    assert lines[4] == "4"  # variables
    assert lines[5] == "6"  # scalars, constants included


def test_mismatched_fingerprint_fails_fast(factory):
    lines = _write(_build(), factory).splitlines()
    lines[2] = "big:>f8:>i8" if lines[2] != "big:>f8:>i8" else "little:<f8:<i8"
    g = Function(1)
    with pytest.raises(StreamFormatError, match="Type format"):
        g.read_from_stream(io.StringIO("\n".join(lines) + "\n"), factory)
    assert g.number_of_terms == 0
    assert g.number_of_variables == 0


@pytest.mark.parametrize(
    "line, replacement",
    [
        (0, "other::function"),
        (1, "2"),
        (3, "three"),
        (7, "2 2"),
    ],
)
def test_malformed_header_is_rejected(factory, line, replacement):
    lines = _write(_build(), factory).splitlines()
    lines[line] = replacement
    with pytest.raises(StreamFormatError):
        Function(1).read_from_stream(io.StringIO("\n".join(lines) + "\n"), factory)


def test_truncated_stream_is_rejected(factory):
    text = _write(_build(), factory)
    truncated = "\n".join(text.splitlines()[:-3]) + "\n"
    g = Function(1)
    with pytest.raises(StreamFormatError):
        g.read_from_stream(io.StringIO(truncated), factory)
    assert g.number_of_terms == 0


def test_unknown_term_name_is_rejected():
    f = Function(1)
    f.add_term(Quadratic(1.0), np.zeros(1))
    text = _write(f)
    with pytest.raises(StreamFormatError, match="unknown term"):
        Function(1).read_from_stream(io.StringIO(text), TermFactory())


def test_reparametrized_function_cannot_be_written():
    x = np.array([1.0])
    f = Function(1)
    f.add_variable(x, 1, ExpChange())
    f.add_term(Quadratic(0.0), x)
    out = io.StringIO()
    with pytest.raises(CapabilityError):
        f.write_to_stream(out)
    assert out.getvalue() == ""


def test_factory_only_accepts_terms():
    fac = TermFactory()
    with pytest.raises(TypeError):
        fac.teach_term(int)
    assert not fac.knows("int")
