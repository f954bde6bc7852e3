"""Iteration and precision budgets as a function of magnification.

Both grow with ``log(magnification)``: escape times near the boundary grow
roughly linearly in the number of zoom decades, and the reference orbit needs
one more mantissa bit per doubling of magnification to keep the view center
distinguishable from its neighbours.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from mpmath import mpf, log, frexp, isfinite

from deepzoom.errors import InvalidInput


@dataclass(frozen=True)
class IterationBudget:
    orbit_length: int
    escape_threshold: float = 4.0
    precision_bits: int = 64
    # True when the precision wanted by the magnification was cut at the ceiling.
    precision_clamped: bool = False

    @property
    def max_iter(self) -> int:
        return self.orbit_length


def as_magnification(magnification) -> mpf:
    try:
        m = mpf(magnification)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"magnification is not a number: {magnification!r}") from e
    if not isfinite(m) or m <= 0:
        raise InvalidInput(f"magnification must be finite and > 0, got {magnification!r}")
    return m


def required_precision_bits(magnification, *, guard_bits: int = 32, base_bits: int = 64) -> int:
    """Mantissa bits needed to resolve one pixel step at ``magnification``."""
    m = as_magnification(magnification)
    if m <= 1:
        return base_bits + guard_bits
    # ceil(log2(m)) taken exactly from the binary exponent.
    man, exp = frexp(m)
    return base_bits + (exp - 1 if man == 0.5 else exp) + guard_bits


class AdaptiveIterationPolicy:
    def __init__(
        self,
        *,
        base_iterations: int = 500,
        iterations_per_decade: int = 100,
        max_iterations: int = 20000,
        escape_threshold: float = 4.0,
        guard_bits: int = 32,
        base_precision_bits: int = 64,
        max_precision_bits: int = 4096,
    ):
        if base_iterations < 1 or max_iterations < base_iterations:
            raise ValueError("need 1 <= base_iterations <= max_iterations")
        if iterations_per_decade < 0:
            raise ValueError("iterations_per_decade must be >= 0")
        if not math.isfinite(escape_threshold) or escape_threshold <= 0:
            raise ValueError("escape_threshold must be > 0")
        self.base_iterations = int(base_iterations)
        self.iterations_per_decade = int(iterations_per_decade)
        self.max_iterations = int(max_iterations)
        self.escape_threshold = float(escape_threshold)
        self.guard_bits = int(guard_bits)
        self.base_precision_bits = int(base_precision_bits)
        self.max_precision_bits = int(max_precision_bits)

    @classmethod
    def from_config(cls, cfg) -> "AdaptiveIterationPolicy":
        return cls(
            base_iterations=cfg["base_iterations"],
            iterations_per_decade=cfg["iterations_per_decade"],
            max_iterations=cfg["max_iterations"],
            escape_threshold=cfg["escape_threshold"],
            guard_bits=cfg["guard_bits"],
            base_precision_bits=cfg["base_precision_bits"],
            max_precision_bits=cfg["max_precision_bits"],
        )

    def orbit_length_for(self, magnification) -> int:
        m = as_magnification(magnification)
        if m <= 1:
            return self.base_iterations
        decades = float(log(m, 10))
        length = self.base_iterations + int(self.iterations_per_decade * decades)
        return min(length, self.max_iterations)

    def budget_for(self, magnification) -> IterationBudget:
        wanted = required_precision_bits(
            magnification, guard_bits=self.guard_bits, base_bits=self.base_precision_bits
        )
        return IterationBudget(
            orbit_length=self.orbit_length_for(magnification),
            escape_threshold=self.escape_threshold,
            precision_bits=min(wanted, self.max_precision_bits),
            precision_clamped=wanted > self.max_precision_bits,
        )
