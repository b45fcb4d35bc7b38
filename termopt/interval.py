"""Closed real intervals for the interval evaluation path of a Function."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

Number = Union[int, float]


@dataclass(frozen=True)
class Interval:
    lower: float
    upper: float

    def __post_init__(self):
        if self.lower > self.upper:
            raise ValueError(f"Empty interval [{self.lower}, {self.upper}]")

    @staticmethod
    def point(v: Number) -> "Interval":
        return Interval(float(v), float(v))

    @staticmethod
    def _lift(other) -> "Interval":
        if isinstance(other, Interval):
            return other
        return Interval.point(other)

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def contains(self, v: Number) -> bool:
        return self.lower <= v <= self.upper

    # ---------- arithmetic ----------
    def __add__(self, other) -> "Interval":
        o = self._lift(other)
        return Interval(self.lower + o.lower, self.upper + o.upper)

    __radd__ = __add__

    def __neg__(self) -> "Interval":
        return Interval(-self.upper, -self.lower)

    def __sub__(self, other) -> "Interval":
        o = self._lift(other)
        return Interval(self.lower - o.upper, self.upper - o.lower)

    def __rsub__(self, other) -> "Interval":
        return self._lift(other) - self

    def __mul__(self, other) -> "Interval":
        o = self._lift(other)
        p = (
            self.lower * o.lower,
            self.lower * o.upper,
            self.upper * o.lower,
            self.upper * o.upper,
        )
        return Interval(min(p), max(p))

    __rmul__ = __mul__

    def square(self) -> "Interval":
        # tighter than self * self when the interval straddles zero
        lo, hi = self.lower, self.upper
        if lo >= 0.0:
            return Interval(lo * lo, hi * hi)
        if hi <= 0.0:
            return Interval(hi * hi, lo * lo)
        return Interval(0.0, max(lo * lo, hi * hi))

    def __repr__(self) -> str:
        return f"[{self.lower:.6g}, {self.upper:.6g}]"
