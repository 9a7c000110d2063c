"""Checkpoint cadence for reference orbits and per-pixel periodicity windows.

A period rule maps a 1-indexed iteration ``n`` to the 1-indexed distance back
to the most recent *anchor* iteration. The value is 1 exactly at anchors, which
is where a checkpoint is taken, and grows by one per iteration until the next
anchor.

When a pixel's value returns to its checkpoint value, the iteration at which
that was first seen (``pp``) gives the orbital period directly:
``period = rule(pp)``. The checkpoint holds the value from *before* the step
at the anchor iteration, so no ``- 1`` correction applies.
"""

from __future__ import annotations

from typing import Callable, Dict, List

PeriodRule = Callable[[int], int]


def fibonacci_period(iteration: int) -> int:
    # Anchors: 1, 2, 3, 5, 8, 13, 21, 34, ...
    if iteration <= 1:
        return 1
    a, b = 1, 1
    while b < iteration:
        a, b = b, a + b
    if b == iteration:
        return 1
    return iteration - a + 1


def cubic_period(iteration: int) -> int:
    # Anchors are multiples of the smallest power of two tail with (n // tail)^3 <= tail.
    tail = 1
    if iteration:
        while (iteration // tail) ** 3 > tail:
            tail *= 2
    return iteration - (iteration // tail) * tail + 1


_RULES: Dict[str, PeriodRule] = {
    "fibonacci": fibonacci_period,
    "cubic": cubic_period,
}


def get_period_rule(name: str) -> PeriodRule:
    try:
        return _RULES[name]
    except KeyError:
        raise ValueError(f"period_rule must be one of: {', '.join(sorted(_RULES))}") from None


def is_anchor(iteration: int, rule: PeriodRule = fibonacci_period) -> bool:
    return iteration >= 1 and rule(iteration) == 1


def anchor_iterations(limit: int, rule: PeriodRule = fibonacci_period) -> List[int]:
    """All anchor iterations in ``[1, limit]``, ascending."""
    return [n for n in range(1, limit + 1) if rule(n) == 1]
