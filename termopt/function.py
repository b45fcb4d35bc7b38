"""
Function: a sum of independently evaluable terms over user-owned variables.

The Function keeps two registries:

    variables : user storage handles (1-D float64 numpy arrays, identified
                by object identity) with their dimension, constancy, optional
                change of variables and global scalar offset.
    terms     : bindings of a (shared, immutable) Term to an ordered tuple of
                registered variables, plus cached per-pair Hessian blocks.

Global layout
-------------
Non-constant variables occupy [0, number_of_scalars) in registration order,
constant ones [number_of_scalars, number_of_scalars + number_of_constants).
Toggling constancy recomputes the whole layout (`_relayout`, O(#variables)).

Evaluation
----------
`evaluate`, `evaluate_gradient`, `evaluate_hessian` and `evaluate_interval`
scatter the global point into per-variable scratch buffers, evaluate the
term bindings in contiguous chunks on a thread pool (one private gradient
buffer per worker), join, re-raise the first captured fault in worker order
and reduce. Hessians are assembled after the join from the per-binding
block caches, dense or as summed (row, col, value) triplets.

Local storage is allocated lazily on the first evaluation after any
structural mutation. Registries must not be mutated while an evaluation is
in flight.
"""

from __future__ import annotations

import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, TextIO, Tuple

import numpy as np
import scipy.sparse as sp

from .errors import (
    ArityMismatch,
    CapabilityError,
    DimensionMismatch,
    HessianDisabled,
    ReparametrizationHessianUnsupported,
    ReparametrizationMismatch,
    StreamFormatError,
    TermVariableDimensionMismatch,
    VariableNotFound,
)
from .interval import Interval
from .term import ChangeOfVariables, Term, TermFactory

STREAM_MAGIC = "termopt::function"
STREAM_VERSION = 1


def platform_fingerprint() -> str:
    """Byte order and scalar layout; streams are only portable between equal fingerprints."""
    return f"{sys.byteorder}:{np.dtype(np.float64).str}:{np.dtype(np.intp).str}"


def _check_storage(handle, dimension: int) -> None:
    if not isinstance(handle, np.ndarray):
        raise TypeError(
            f"Variable storage must be a numpy array, got {type(handle).__name__}"
        )
    if handle.dtype != np.float64 or handle.ndim != 1:
        raise TypeError(
            f"Variable storage must be a 1-D float64 array, got {handle.dtype} "
            f"with shape {handle.shape}"
        )
    if dimension <= 0:
        raise ValueError(f"Variable dimension must be positive, got {dimension}")
    if handle.shape[0] != dimension:
        raise DimensionMismatch(
            f"Variable storage holds {handle.shape[0]} scalars, dimension is {dimension}"
        )


# ---------- registry records ----------
@dataclass(eq=False)
class Variable:
    storage: np.ndarray              # user-owned; never copied or reallocated
    user_dimension: int              # what the Term sees
    solver_dimension: int            # what the solver sees
    global_index: int = 0
    is_constant: bool = False
    change_of_variables: Optional[ChangeOfVariables] = None
    temp_space: np.ndarray = field(init=False, repr=False)
    argument: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        self.temp_space = np.zeros(self.user_dimension)
        # read-only view handed to terms
        self.argument = self.temp_space.view()
        self.argument.flags.writeable = False


@dataclass(eq=False)
class TermBinding:
    term: Term
    variable_indices: List[int]
    arguments: List[np.ndarray] = field(default_factory=list, repr=False)
    dimensions: List[int] = field(default_factory=list, repr=False)
    hessian: Optional[List[List[np.ndarray]]] = field(default=None, repr=False)


class Function:
    """
    Objective f(x) = constant + Σ_terms term(x_{i1}, ..., x_{ik}).

    Variables are numpy arrays owned by the caller. Solvers read the start
    point from them (`copy_user_to_global`) and write the result back
    (`copy_global_to_user`).
    """

    def __init__(self, number_of_threads: Optional[int] = None):
        self._hessian_is_enabled = True
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_size = 0
        if number_of_threads is None:
            number_of_threads = os.cpu_count() or 1
        if number_of_threads <= 0:
            raise ValueError(f"Invalid number of threads: {number_of_threads}")
        self.number_of_threads = int(number_of_threads)

        self.evaluations_without_gradient = 0
        self.evaluations_with_gradient = 0
        self.allocation_time = 0.0
        self.evaluate_time = 0.0
        self.evaluate_with_hessian_time = 0.0
        self.write_gradient_hessian_time = 0.0
        self.copy_time = 0.0

        self.clear()

    # ---------- lifecycle ----------
    def clear(self) -> None:
        self.constant = 0.0
        self.variables: List[Variable] = []
        self.terms: List[TermBinding] = []
        self._variables_map: Dict[int, int] = {}
        self.number_of_scalars = 0
        self.number_of_constants = 0
        self.number_of_hessian_elements = 0
        self._invalidate()

    def close(self) -> None:
        """Shut down the evaluation thread pool (recreated on demand)."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
            self._executor_size = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _invalidate(self) -> None:
        self._local_storage_allocated = False
        self._sparse_pattern: Optional[Tuple[np.ndarray, np.ndarray]] = None

    @property
    def hessian_is_enabled(self) -> bool:
        return self._hessian_is_enabled

    @hessian_is_enabled.setter
    def hessian_is_enabled(self, enabled: bool) -> None:
        self._hessian_is_enabled = bool(enabled)
        self._invalidate()

    def set_number_of_threads(self, num: int) -> None:
        if num <= 0:
            raise ValueError(f"Function.set_number_of_threads: invalid number of threads {num}")
        self.number_of_threads = int(num)
        self._invalidate()

    # ---------- counters ----------
    @property
    def number_of_variables(self) -> int:
        return len(self.variables)

    @property
    def number_of_terms(self) -> int:
        return len(self.terms)

    def _find(self, handle, where: str) -> Variable:
        idx = self._variables_map.get(id(handle))
        if idx is None:
            raise VariableNotFound(f"Function.{where}: variable not found.")
        return self.variables[idx]

    def get_variable_global_index(self, handle) -> int:
        return self._find(handle, "get_variable_global_index").global_index

    def is_constant(self, handle) -> bool:
        return self._find(handle, "is_constant").is_constant

    # ---------- variable registry ----------
    def add_variable(
        self,
        handle: np.ndarray,
        dimension: int,
        change_of_variables: Optional[ChangeOfVariables] = None,
    ) -> None:
        """
        Register `handle`.

        Re-adding a registered handle with the same dimension replaces its
        change of variables; passing None removes it.
        """
        idx = self._variables_map.get(id(handle))
        if idx is not None:
            var = self.variables[idx]
            if var.user_dimension != dimension:
                raise DimensionMismatch(
                    "Function.add_variable: dimension mismatch with previously added "
                    f"variable ({var.user_dimension} != {dimension})."
                )
            if change_of_variables is not None:
                if var.user_dimension != change_of_variables.x_dimension():
                    raise ReparametrizationMismatch(
                        "Function.add_variable: x_dimension can not change."
                    )
                if var.solver_dimension != change_of_variables.t_dimension():
                    raise ReparametrizationMismatch(
                        "Function.add_variable: t_dimension can not change."
                    )
            var.change_of_variables = change_of_variables
            if change_of_variables is None and var.solver_dimension != var.user_dimension:
                var.solver_dimension = var.user_dimension
                self._relayout()
            self._invalidate()
            return

        _check_storage(handle, dimension)
        if change_of_variables is not None:
            if dimension != change_of_variables.x_dimension():
                raise ReparametrizationMismatch(
                    "Function.add_variable: dimension does not match the change of variables."
                )
            solver_dimension = int(change_of_variables.t_dimension())
        else:
            solver_dimension = int(dimension)

        var = Variable(
            storage=handle,
            user_dimension=int(dimension),
            solver_dimension=solver_dimension,
            global_index=self.number_of_scalars,
            change_of_variables=change_of_variables,
        )
        self.variables.append(var)
        self._variables_map[id(handle)] = len(self.variables) - 1
        if self.number_of_constants:
            # constants sit after all non-constant scalars
            self._relayout()
        else:
            self.number_of_scalars += solver_dimension
        self._invalidate()

    def set_constant(self, handle, is_constant: bool = True) -> None:
        var = self._find(handle, "set_constant")
        var.is_constant = bool(is_constant)
        self._relayout()
        self._invalidate()

    def _relayout(self) -> None:
        """Fresh global index assignment: non-constants first, then constants."""
        n = 0
        for var in self.variables:
            if not var.is_constant:
                var.global_index = n
                n += var.solver_dimension
        c = 0
        for var in self.variables:
            if var.is_constant:
                var.global_index = n + c
                c += var.solver_dimension
        self.number_of_scalars = n
        self.number_of_constants = c

    def _drop_variables_from(self, count: int) -> None:
        for var in self.variables[count:]:
            del self._variables_map[id(var.storage)]
        del self.variables[count:]
        self._relayout()

    # ---------- term registry ----------
    def add_term(self, term: Term, *handles) -> None:
        """
        Bind `term` to variables: ``add_term(term, x, y)`` or ``add_term(term, [x, y])``.

        Unknown handles are registered with the term's declared dimensions.
        On failure nothing of this call is retained.
        """
        if not isinstance(term, Term):
            raise TypeError(f"Function.add_term: {type(term).__name__} is not a Term")
        if len(handles) == 1 and isinstance(handles[0], (list, tuple)):
            handles = tuple(handles[0])
        if term.number_of_variables() != len(handles):
            raise ArityMismatch(
                "Function.add_term: incorrect number of arguments "
                f"({len(handles)} given, term takes {term.number_of_variables()})."
            )

        n_before = len(self.variables)
        indices: List[int] = []
        try:
            for var, handle in enumerate(handles):
                dim = term.variable_dimension(var)
                idx = self._variables_map.get(id(handle))
                if idx is None:
                    self.add_variable(handle, dim)
                    idx = self._variables_map[id(handle)]
                elif self.variables[idx].user_dimension != dim:
                    raise TermVariableDimensionMismatch(
                        "Function.add_term: variable dimension does not match term "
                        f"(argument {var}: {self.variables[idx].user_dimension} != {dim})."
                    )
                indices.append(idx)
        except Exception:
            self._drop_variables_from(n_before)
            self._invalidate()
            raise

        self.terms.append(TermBinding(term=term, variable_indices=indices))
        self._invalidate()

    # ---------- composition ----------
    def __iadd__(self, other):
        if isinstance(other, Function):
            self._merge(other)
            return self
        if isinstance(other, (int, float, np.floating, np.integer)):
            self.constant += float(other)
            return self
        return NotImplemented

    def _merge(self, other: "Function") -> None:
        for var in self.variables + other.variables:
            if var.change_of_variables is not None:
                raise CapabilityError(
                    "Function +=: change of variables is not supported when merging."
                )
        for var in other.variables:
            idx = self._variables_map.get(id(var.storage))
            if idx is not None and self.variables[idx].user_dimension != var.user_dimension:
                raise DimensionMismatch(
                    "Function +=: variable registered with different dimensions."
                )

        # snapshots: `other` may be `self`
        other_variables = list(other.variables)
        other_terms = list(other.terms)
        other_constant = other.constant
        n_variables, n_terms = len(self.variables), len(self.terms)
        try:
            for var in other_variables:
                self.add_variable(var.storage, var.user_dimension)
            for binding in other_terms:
                self.add_term(binding.term, [other_variables[i].storage for i in binding.variable_indices])
        except Exception:
            del self.terms[n_terms:]
            self._drop_variables_from(n_variables)
            self._invalidate()
            raise
        self.constant += other_constant

    def copy(self) -> "Function":
        """New Function over the same storage handles and terms."""
        f = Function(self.number_of_threads)
        f.hessian_is_enabled = self.hessian_is_enabled
        f.constant = self.constant
        for var in self.variables:
            f.add_variable(var.storage, var.user_dimension, var.change_of_variables)
        for var in self.variables:
            if var.is_constant:
                f.set_constant(var.storage, True)
        for binding in self.terms:
            f.add_term(binding.term, [self.variables[i].storage for i in binding.variable_indices])
        return f

    __copy__ = copy

    # ---------- local storage ----------
    def _worker_count(self) -> int:
        return max(1, min(self.number_of_threads, len(self.terms)))

    def _allocate_local_storage(self) -> None:
        start = time.perf_counter()

        max_arity = max([1] + [len(b.variable_indices) for b in self.terms])
        max_variable_dimension = max([1] + [v.user_dimension for v in self.variables])
        workers = self._worker_count()
        total = self.number_of_scalars + self.number_of_constants

        self._thread_gradient_storage = [np.zeros(total) for _ in range(workers)]
        self._thread_gradient_scratch = [
            [np.zeros(max_variable_dimension) for _ in range(max_arity)] for _ in range(workers)
        ]

        for binding in self.terms:
            vars_ = [self.variables[i] for i in binding.variable_indices]
            binding.arguments = [v.argument for v in vars_]
            binding.dimensions = [v.user_dimension for v in vars_]
            if self._hessian_is_enabled:
                binding.hessian = [
                    [np.zeros((d0, d1)) for d1 in binding.dimensions]
                    for d0 in binding.dimensions
                ]
            else:
                binding.hessian = None

        # contiguous static partition of the bindings
        bounds = np.linspace(0, len(self.terms), workers + 1).astype(int)
        self._chunks = [(int(bounds[k]), int(bounds[k + 1])) for k in range(workers)]

        self.number_of_hessian_elements = sum(
            sum(v.user_dimension for v in self._free_variables(b)) ** 2 for b in self.terms
        )

        if workers > 1 and (self._executor is None or self._executor_size != workers):
            self.close()
            self._executor = ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="termopt-eval"
            )
            self._executor_size = workers

        self._local_storage_allocated = True
        self.allocation_time += time.perf_counter() - start

    def _free_variables(self, binding: TermBinding) -> List[Variable]:
        return [self.variables[i] for i in binding.variable_indices if not self.variables[i].is_constant]

    # ---------- scatter / gather ----------
    def _as_point(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=float).reshape(-1)
        if x.shape[0] != self.number_of_scalars:
            raise ValueError(
                f"Point has {x.shape[0]} scalars, the function has {self.number_of_scalars}"
            )
        return x

    def _copy_global_to_local(self, x: np.ndarray) -> None:
        start = time.perf_counter()
        for var in self.variables:
            if var.is_constant:
                # not part of x; read from the user's storage
                var.temp_space[:] = var.storage
            elif var.change_of_variables is None:
                gi = var.global_index
                var.temp_space[:] = x[gi : gi + var.user_dimension]
            else:
                gi = var.global_index
                var.temp_space[:] = var.change_of_variables.t_to_x(
                    x[gi : gi + var.solver_dimension]
                )
        self.copy_time += time.perf_counter() - start

    def _copy_user_to_local(self) -> None:
        start = time.perf_counter()
        for var in self.variables:
            var.temp_space[:] = var.storage
        self.copy_time += time.perf_counter() - start

    def copy_user_to_global(self) -> np.ndarray:
        """Current point (solver parametrization) read from the user storage."""
        start = time.perf_counter()
        x = np.zeros(self.number_of_scalars)
        for var in self.variables:
            if var.is_constant:
                continue
            gi = var.global_index
            if var.change_of_variables is None:
                x[gi : gi + var.user_dimension] = var.storage
            else:
                x[gi : gi + var.solver_dimension] = var.change_of_variables.x_to_t(var.storage)
        self.copy_time += time.perf_counter() - start
        return x

    def copy_global_to_user(self, x) -> None:
        x = self._as_point(x)
        start = time.perf_counter()
        for var in self.variables:
            if var.is_constant:
                continue
            gi = var.global_index
            if var.change_of_variables is None:
                var.storage[:] = x[gi : gi + var.user_dimension]
            else:
                var.storage[:] = var.change_of_variables.t_to_x(x[gi : gi + var.solver_dimension])
        self.copy_time += time.perf_counter() - start

    # ---------- parallel term evaluation ----------
    def _evaluate_chunk(
        self,
        worker: int,
        start: int,
        stop: int,
        x: Optional[np.ndarray],
        want_gradient: bool,
        want_hessian: bool,
    ) -> Tuple[float, Optional[Exception]]:
        value = 0.0
        try:
            if not want_gradient:
                for binding in self.terms[start:stop]:
                    value += float(binding.term.evaluate(binding.arguments))
                return value, None

            storage = self._thread_gradient_storage[worker]
            scratch = self._thread_gradient_scratch[worker]
            for binding in self.terms[start:stop]:
                grads = [scratch[k][:d] for k, d in enumerate(binding.dimensions)]
                for g in grads:
                    g.fill(0.0)
                hess = binding.hessian if want_hessian else None
                if hess is not None:
                    for row in hess:
                        for block in row:
                            block.fill(0.0)

                value += float(binding.term.evaluate(binding.arguments, grads, hess))

                for k, idx in enumerate(binding.variable_indices):
                    var = self.variables[idx]
                    if var.is_constant:
                        continue
                    gi = var.global_index
                    if var.change_of_variables is None:
                        storage[gi : gi + var.user_dimension] += grads[k]
                    else:
                        # x-gradient -> t-gradient
                        storage[gi : gi + var.solver_dimension] += var.change_of_variables.update_gradient(
                            x[gi : gi + var.solver_dimension], grads[k]
                        )
        except Exception as err:
            return value, err
        return value, None

    def _run_workers(self, x: Optional[np.ndarray], want_gradient: bool, want_hessian: bool) -> float:
        if want_gradient:
            for buf in self._thread_gradient_storage:
                buf.fill(0.0)

        if self._executor is None or len(self._chunks) == 1:
            results = [
                self._evaluate_chunk(w, a, b, x, want_gradient, want_hessian)
                for w, (a, b) in enumerate(self._chunks)
            ]
        else:
            futures = [
                self._executor.submit(self._evaluate_chunk, w, a, b, x, want_gradient, want_hessian)
                for w, (a, b) in enumerate(self._chunks)
            ]
            results = [fut.result() for fut in futures]

        # join barrier passed: report the first fault in worker order
        for _, err in results:
            if err is not None:
                raise err
        value = self.constant
        for partial, _ in results:
            value += partial
        return value

    def _reduce_gradient(self) -> np.ndarray:
        n = self.number_of_scalars
        gradient = np.zeros(n)
        for buf in self._thread_gradient_storage:
            gradient += buf[:n]
        return gradient

    # ---------- public evaluation ----------
    def evaluate(self, x=None) -> float:
        """Value at `x`, or at the point held in the user storage when `x` is None."""
        if not self._local_storage_allocated:
            self._allocate_local_storage()
        if x is None:
            self._copy_user_to_local()
        else:
            self._copy_global_to_local(self._as_point(x))

        self.evaluations_without_gradient += 1
        start = time.perf_counter()
        value = self._run_workers(None, want_gradient=False, want_hessian=False)
        self.evaluate_time += time.perf_counter() - start
        return value

    def evaluate_gradient(self, x) -> Tuple[float, np.ndarray]:
        x = self._as_point(x)
        if not self._local_storage_allocated:
            self._allocate_local_storage()
        self._copy_global_to_local(x)

        self.evaluations_with_gradient += 1
        start = time.perf_counter()
        value = self._run_workers(x, want_gradient=True, want_hessian=False)
        self.evaluate_with_hessian_time += time.perf_counter() - start

        start = time.perf_counter()
        gradient = self._reduce_gradient()
        self.write_gradient_hessian_time += time.perf_counter() - start
        return value, gradient

    def evaluate_hessian(self, x, sparse: bool = False):
        """Return (value, gradient, hessian); hessian is an ndarray or a CSR matrix."""
        self._check_hessian_capability()
        x = self._as_point(x)
        if not self._local_storage_allocated:
            self._allocate_local_storage()
        self._copy_global_to_local(x)

        self.evaluations_with_gradient += 1
        start = time.perf_counter()
        value = self._run_workers(x, want_gradient=True, want_hessian=True)
        self.evaluate_with_hessian_time += time.perf_counter() - start

        start = time.perf_counter()
        gradient = self._reduce_gradient()
        H = self._assemble_sparse_hessian() if sparse else self._assemble_dense_hessian()
        self.write_gradient_hessian_time += time.perf_counter() - start
        return value, gradient, H

    def _check_hessian_capability(self) -> None:
        if not self._hessian_is_enabled:
            raise HessianDisabled("Function.evaluate: Hessian computation is not enabled.")
        for var in self.variables:
            if not var.is_constant and var.change_of_variables is not None:
                raise ReparametrizationHessianUnsupported(
                    "Function.evaluate: change of variables not supported for Hessians."
                )

    def _assemble_dense_hessian(self) -> np.ndarray:
        n = self.number_of_scalars
        H = np.zeros((n, n))
        for binding in self.terms:
            vars_ = [self.variables[i] for i in binding.variable_indices]
            for a, va in enumerate(vars_):
                if va.is_constant:
                    continue
                ia = va.global_index
                for b, vb in enumerate(vars_):
                    if vb.is_constant:
                        continue
                    ib = vb.global_index
                    H[ia : ia + va.user_dimension, ib : ib + vb.user_dimension] += binding.hessian[a][b]
        return H

    def _hessian_pattern(self) -> Tuple[np.ndarray, np.ndarray]:
        """(rows, cols) of every emitted triplet, in emission order; cached until the next mutation."""
        if self._sparse_pattern is not None:
            return self._sparse_pattern
        count = self.number_of_hessian_elements
        rows = np.empty(count, dtype=np.intp)
        cols = np.empty(count, dtype=np.intp)
        pos = 0
        for binding in self.terms:
            vars_ = [self.variables[i] for i in binding.variable_indices]
            for va in vars_:
                if va.is_constant:
                    continue
                for vb in vars_:
                    if vb.is_constant:
                        continue
                    da, db = va.user_dimension, vb.user_dimension
                    k = da * db
                    rows[pos : pos + k] = np.repeat(np.arange(va.global_index, va.global_index + da), db)
                    cols[pos : pos + k] = np.tile(np.arange(vb.global_index, vb.global_index + db), da)
                    pos += k
        self._sparse_pattern = (rows, cols)
        return self._sparse_pattern

    def _assemble_sparse_hessian(self) -> sp.csr_matrix:
        rows, cols = self._hessian_pattern()
        values = np.empty(self.number_of_hessian_elements)
        pos = 0
        for binding in self.terms:
            vars_ = [self.variables[i] for i in binding.variable_indices]
            for a, va in enumerate(vars_):
                if va.is_constant:
                    continue
                for b, vb in enumerate(vars_):
                    if vb.is_constant:
                        continue
                    block = binding.hessian[a][b]
                    values[pos : pos + block.size] = block.ravel()
                    pos += block.size
        n = self.number_of_scalars
        # duplicates are summed by the conversion
        return sp.coo_matrix((values, (rows, cols)), shape=(n, n)).tocsr()

    def create_sparse_hessian(self) -> sp.csr_matrix:
        """Sparsity pattern of the Hessian (entries set to the number of contributions)."""
        if not self._local_storage_allocated:
            self._allocate_local_storage()
        rows, cols = self._hessian_pattern()
        n = self.number_of_scalars
        return sp.coo_matrix((np.ones(rows.shape[0]), (rows, cols)), shape=(n, n)).tocsr()

    def estimate_hessian_density(self) -> float:
        """Upper bound on the fraction of nonzero Hessian entries."""
        if not self._local_storage_allocated:
            self._allocate_local_storage()
        n = self.number_of_scalars
        if n == 0:
            return 0.0
        return min(1.0, self.number_of_hessian_elements / float(n * n))

    def evaluate_interval(self, x: Sequence[Interval]) -> Interval:
        x = list(x)
        if len(x) != self.number_of_scalars:
            raise ValueError(
                f"Interval point has {len(x)} entries, the function has {self.number_of_scalars}"
            )
        self.evaluations_without_gradient += 1
        start = time.perf_counter()
        value = Interval.point(self.constant)
        for binding in self.terms:
            args = []
            for idx in binding.variable_indices:
                var = self.variables[idx]
                if var.is_constant:
                    args.append([Interval.point(v) for v in var.storage])
                elif var.change_of_variables is not None:
                    raise CapabilityError(
                        "Function.evaluate_interval: change of variables not supported."
                    )
                else:
                    args.append(x[var.global_index : var.global_index + var.user_dimension])
            value = value + binding.term.evaluate_interval(args)
        self.evaluate_time += time.perf_counter() - start
        return value

    # ---------- diagnostics ----------
    def print_timing_information(self, out: Optional[TextIO] = None) -> None:
        out = out or sys.stdout
        rule = "-" * 52
        print(rule, file=out)
        print(f"Function evaluations without gradient : {self.evaluations_without_gradient}", file=out)
        print(f"Function evaluations with gradient    : {self.evaluations_with_gradient}", file=out)
        print(f"Function memory allocation time   : {self.allocation_time:.6f}", file=out)
        print(f"Function evaluate time            : {self.evaluate_time:.6f}", file=out)
        print(f"Function evaluate time (with g/H) : {self.evaluate_with_hessian_time:.6f}", file=out)
        print(f"Function write g/H time           : {self.write_gradient_hessian_time:.6f}", file=out)
        print(f"Function copy data time           : {self.copy_time:.6f}", file=out)
        print(rule, file=out)

    def __repr__(self) -> str:
        return (
            f"Function(variables={self.number_of_variables}, terms={self.number_of_terms}, "
            f"scalars={self.number_of_scalars}, constants={self.number_of_constants})"
        )

    # ---------- persistence ----------
    def write_to_stream(self, out: TextIO, factory: Optional[TermFactory] = None) -> None:
        for var in self.variables:
            if var.change_of_variables is not None:
                raise CapabilityError(
                    "Function.write_to_stream: change of variables not allowed."
                )

        order = sorted(range(len(self.variables)), key=lambda i: self.variables[i].global_index)
        position = {idx: p for p, idx in enumerate(order)}
        ordered = [self.variables[i] for i in order]

        lines = [
            STREAM_MAGIC,
            str(STREAM_VERSION),
            platform_fingerprint(),
            str(len(self.terms)),
            str(len(self.variables)),
            str(self.number_of_scalars + self.number_of_constants),
            repr(float(self.constant)),
            " ".join(str(v.user_dimension) for v in ordered),
            " ".join("1" if v.is_constant else "0" for v in ordered),
            " ".join(repr(float(s)) for v in ordered for s in v.storage),
        ]
        for binding in self.terms:
            payload = binding.term.serialize()
            if "\n" in payload:
                raise ValueError(
                    f"{type(binding.term).__name__}.serialize() must return a single line"
                )
            name = factory.name_of(binding.term) if factory is not None else TermFactory.term_name(binding.term)
            lines.append(name)
            lines.append(str(len(binding.variable_indices)))
            lines.append(" ".join(str(position[i]) for i in binding.variable_indices))
            lines.append(payload)
        out.write("\n".join(lines) + "\n")

    def read_from_stream(self, stream: TextIO, factory: TermFactory) -> np.ndarray:
        """
        Replace this Function by the one stored in `stream`.

        Returns the freshly allocated array holding every scalar; the
        registered variable handles are views into it.
        """
        self.clear()
        try:
            return self._read(stream, factory)
        except Exception:
            self.clear()
            raise

    def _read(self, stream: TextIO, factory: TermFactory) -> np.ndarray:
        def line(what: str) -> str:
            text = stream.readline()
            if not text:
                raise StreamFormatError(f"Function.read_from_stream: Reading {what} failed.")
            return text.rstrip("\n")

        def integers(what: str) -> List[int]:
            try:
                return [int(tok) for tok in line(what).split()]
            except ValueError as err:
                raise StreamFormatError(f"Function.read_from_stream: Reading {what} failed.") from err

        def integer(what: str) -> int:
            values = integers(what)
            if len(values) != 1 or values[0] < 0:
                raise StreamFormatError(f"Function.read_from_stream: Reading {what} failed.")
            return values[0]

        if line("header") != STREAM_MAGIC:
            raise StreamFormatError("Function.read_from_stream: Not a function stream.")
        version = integer("version")
        if version != STREAM_VERSION:
            raise StreamFormatError(f"Function.read_from_stream: Unsupported version {version}.")
        if line("type format") != platform_fingerprint():
            raise StreamFormatError(
                "Function.read_from_stream: Type format does not match. "
                "Files can not be shared between platforms."
            )

        number_of_terms = integer("number_of_terms")
        number_of_variables = integer("number_of_variables")
        number_of_scalars = integer("number_of_scalars")
        try:
            constant = float(line("constant"))
        except ValueError as err:
            raise StreamFormatError("Function.read_from_stream: Reading constant failed.") from err

        dimensions = integers("variable dimensions")
        flags = integers("constant flags")
        if len(dimensions) != number_of_variables or len(flags) != number_of_variables:
            raise StreamFormatError("Function.read_from_stream: Not enough variables in stream.")
        if sum(dimensions) != number_of_scalars:
            raise StreamFormatError("Function.read_from_stream: Variable dimensions do not add up.")

        try:
            user_space = np.array([float(tok) for tok in line("point").split()], dtype=float)
        except ValueError as err:
            raise StreamFormatError("Function.read_from_stream: Reading point failed.") from err
        if user_space.shape[0] != number_of_scalars:
            raise StreamFormatError("Function.read_from_stream: Not enough scalars in stream.")

        handles = []
        offset = 0
        for dim in dimensions:
            handle = user_space[offset : offset + dim]
            self.add_variable(handle, dim)
            handles.append(handle)
            offset += dim
        for handle, flag in zip(handles, flags):
            if flag:
                self.set_constant(handle, True)

        for _ in range(number_of_terms):
            name = line("term name")
            arity = integer("term arity")
            positions = integers("term variables")
            if len(positions) != arity or any(p < 0 or p >= number_of_variables for p in positions):
                raise StreamFormatError(
                    f"Function.read_from_stream: Invalid variables for term '{name}'."
                )
            term = factory.create(name, line("term payload"))
            self.add_term(term, [handles[p] for p in positions])

        self.constant = constant
        return user_space
