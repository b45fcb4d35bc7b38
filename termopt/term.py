"""
Capabilities consumed by `Function`.

Term
    An immutable, independently evaluable piece of the objective over a
    fixed tuple of variables. A single `evaluate` covers value,
    value+gradient and value+gradient+Hessian: the caller passes zeroed
    output buffers for the parts it wants.

ChangeOfVariables
    Invertible map between the parametrization a Term sees (x) and the one
    the solver works in (t), with the rule to carry x-gradients over to t.

TermFactory
    Name -> Term class registry, used only when reading a serialized
    Function back from a stream.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Type, Union

import numpy as np

from .errors import StreamFormatError
from .interval import Interval


class Term(ABC):
    @abstractmethod
    def number_of_variables(self) -> int: ...

    @abstractmethod
    def variable_dimension(self, var: int) -> int: ...

    @abstractmethod
    def evaluate(
        self,
        x: Sequence[np.ndarray],
        gradient: Optional[List[np.ndarray]] = None,
        hessian: Optional[List[List[np.ndarray]]] = None,
    ) -> float:
        """
        Value of the term at `x` (one array per bound variable).

        If `gradient` is given, gradient[i] (shape (dim_i,)) must be filled
        with the derivative w.r.t. variable i. If `hessian` is given,
        hessian[i][j] (shape (dim_i, dim_j)) must be filled with the second
        derivative block. Buffers arrive zeroed; `x` is read-only.
        """

    def evaluate_interval(self, x: Sequence[Sequence[Interval]]) -> Interval:
        raise NotImplementedError(
            f"{type(self).__name__} does not support interval evaluation"
        )

    # ---------- persistence ----------
    def serialize(self) -> str:
        """One-line payload written after the term name in a Function stream."""
        return ""

    @classmethod
    def deserialize(cls, text: str) -> "Term":
        return cls()


class ChangeOfVariables(ABC):
    @abstractmethod
    def x_dimension(self) -> int: ...

    @abstractmethod
    def t_dimension(self) -> int: ...

    @abstractmethod
    def t_to_x(self, t: np.ndarray) -> np.ndarray: ...

    @abstractmethod
    def x_to_t(self, x: np.ndarray) -> np.ndarray: ...

    @abstractmethod
    def update_gradient(self, t: np.ndarray, x_gradient: np.ndarray) -> np.ndarray:
        """Return the t-gradient contribution (chain rule applied to x_gradient)."""


class TermFactory:
    """Creates terms by registered name; see `Function.read_from_stream`."""

    def __init__(self):
        self._creators: Dict[str, Type[Term]] = {}

    @staticmethod
    def term_name(term: Union[Term, Type[Term]]) -> str:
        cls = term if isinstance(term, type) else type(term)
        return f"{cls.__module__}.{cls.__qualname__}"

    def teach_term(self, cls: Type[Term], name: Optional[str] = None) -> None:
        if not (isinstance(cls, type) and issubclass(cls, Term)):
            raise TypeError(f"{cls!r} is not a Term subclass")
        self._creators[name or self.term_name(cls)] = cls

    def knows(self, name: str) -> bool:
        return name in self._creators

    def name_of(self, term: Term) -> str:
        for name, cls in self._creators.items():
            if type(term) is cls:
                return name
        return self.term_name(term)

    def create(self, name: str, payload: str) -> Term:
        cls = self._creators.get(name)
        if cls is None:
            raise StreamFormatError(f"TermFactory: unknown term '{name}'")
        return cls.deserialize(payload)
