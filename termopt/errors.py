"""
Exceptions raised by the Function registry and evaluation engine.

Structural errors come from mutations (adding variables/terms, toggling
constancy) and leave the registry untouched. Capability errors come from
evaluation requests the current Function cannot honor. Numeric trouble
inside a solve (NaN/Inf objective) is *not* an exception: it is reported
through `SolverResults.exit_condition`.
"""

from __future__ import annotations


class StructuralError(ValueError):
    """Invalid structural mutation of a Function."""


class DimensionMismatch(StructuralError):
    """A variable was re-added with a different dimension."""


class ReparametrizationMismatch(StructuralError):
    """A change of variables does not agree with the registered dimensions."""


class VariableNotFound(StructuralError, KeyError):
    """The storage handle is not registered with the Function."""

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0]) if self.args else ""


class ArityMismatch(StructuralError):
    """A term was added with the wrong number of variables."""


class TermVariableDimensionMismatch(StructuralError):
    """A registered variable has another dimension than the term expects."""


class CapabilityError(RuntimeError):
    """The Function cannot perform the requested evaluation."""


class HessianDisabled(CapabilityError):
    pass


class ReparametrizationHessianUnsupported(CapabilityError):
    pass


class StreamFormatError(ValueError):
    """A serialized Function stream could not be read."""
