"""Shared high-precision reference orbit for perturbation rendering.

The orbit ``z[0..n)`` is iterated once in mpmath at the session centre and
mirrored into a complex128 array for the per-pixel delta iteration. Values are
only ever appended: a single writer extends the orbit under a lock while any
number of pixel iterators read the already-written prefix.

Checkpoints are recorded at the anchor iterations of a period rule. Their
number grows sub-linearly with orbit length.
"""

from __future__ import annotations

import bisect
import math
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np
from mpmath import mp, mpf, mpc, log10

from perturbzoom.errors import EscapeRadiusExceeded, OrbitExtensionError, OrbitIndexOutOfRange, PrecisionExhaustedError
from perturbzoom.period import PeriodRule, fibonacci_period
from perturbzoom.util.logging_setup import get_logger

Number = Union[str, int, float, mpf]


@dataclass(frozen=True)
class Checkpoint:
    iteration: int
    value: complex
    exact: mpc


@dataclass(frozen=True)
class EscapeState:
    escaped: bool = False
    escape_iteration: int = 0


def precision_for(
    pixel_size: Number,
    iteration_cap: int,
    *,
    extra_digits: int = 20,
    min_digits: int = 50,
    max_digits: int = 3000,
) -> int:
    try:
        zdigits = max(0, int(-log10(mpf(pixel_size))))
    except Exception:
        zdigits = 500

    required = zdigits + extra_digits
    if required > max_digits:
        raise PrecisionExhaustedError(required, max_digits)

    iter_term = int(max(0.0, math.log10(max(10, int(iteration_cap)))) * 10)
    return min(max(min_digits, required + iter_term), max_digits)


def set_reference_precision(pixel_size: Number, iteration_cap: int, **kwargs) -> int:
    dps = precision_for(pixel_size, iteration_cap, **kwargs)
    mp.dps = dps
    get_logger().debug("Reference precision set to %s digits for pixel_size=%s", dps, pixel_size)
    return dps


class ReferenceOrbitEngine:
    def __init__(
        self,
        center: Tuple[Number, Number],
        *,
        exponent: int = 2,
        seed: Number = 0,
        escape_radius_sq: float = 1e10,
        period_rule: PeriodRule = fibonacci_period,
        initial_capacity: int = 1024,
    ):
        if exponent < 2:
            raise ValueError("exponent must be >= 2")
        re, im = center
        self.c = mpc(mpf(re), mpf(im))
        self.exponent = int(exponent)
        self.escape_radius_sq = float(escape_radius_sq)
        self.period_rule = period_rule

        z0 = mpc(mpf(seed), 0)
        self._exact: List[mpc] = [z0]
        self._values = np.empty(max(2, int(initial_capacity)), dtype=np.complex128)
        self._values[0] = complex(z0)
        self._length = 1

        self._checkpoints: List[Checkpoint] = []
        self._cp_iters: List[int] = []
        self._escape = EscapeState()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return self._length

    @property
    def escape(self) -> EscapeState:
        return self._escape

    @property
    def escaped(self) -> bool:
        return self._escape.escaped

    @property
    def seed(self) -> complex:
        return complex(self._values[0])

    @property
    def values(self) -> np.ndarray:
        """Read-only complex128 view of every value written so far."""
        with self._lock:
            view = self._values[:self._length]
        view = view.view()
        view.flags.writeable = False
        return view

    def _append(self, z: mpc, zf: complex) -> int:
        n = self._length
        if n >= self._values.size:
            grown = np.empty(self._values.size * 2, dtype=np.complex128)
            grown[:n] = self._values[:n]
            self._values = grown
        self._values[n] = zf
        self._exact.append(z)
        self._length = n + 1
        return n

    def extend(self, *, raise_on_escape: bool = False) -> bool:
        """Append one orbit value. Returns False once the orbit has escaped.

        With ``raise_on_escape`` the escape is reported as
        :class:`EscapeRadiusExceeded` instead.
        """
        with self._lock:
            if self._escape.escaped:
                if raise_on_escape:
                    raise EscapeRadiusExceeded(self._escape.escape_iteration)
                return False

            z = self._exact[-1]
            if self.exponent == 2:
                z = z * z + self.c
            else:
                z = z ** self.exponent + self.c

            zf = complex(z)
            if not (math.isfinite(zf.real) and math.isfinite(zf.imag)):
                raise OrbitExtensionError(f"Reference orbit value at iteration {self._length} is not representable: {z}")

            n = self._append(z, zf)
            if zf.real * zf.real + zf.imag * zf.imag > self.escape_radius_sq:
                self._escape = EscapeState(escaped=True, escape_iteration=n)
                get_logger().info("Reference orbit escaped at iteration %s", n)
                if raise_on_escape:
                    raise EscapeRadiusExceeded(n)
                return False

            if self.period_rule(n) == 1:
                self._checkpoints.append(Checkpoint(iteration=n, value=zf, exact=z))
                self._cp_iters.append(n)
            return True

    def extend_to(self, length: int) -> int:
        with self._lock:
            while self._length < length and self.extend():
                pass
            return self._length

    def value_at(self, iteration: int) -> complex:
        if iteration < 0 or iteration >= self._length:
            raise OrbitIndexOutOfRange(iteration, self._length)
        return complex(self._values[iteration])

    def exact_value_at(self, iteration: int) -> mpc:
        if iteration < 0 or iteration >= self._length:
            raise OrbitIndexOutOfRange(iteration, self._length)
        return self._exact[iteration]

    @property
    def checkpoints(self) -> List[Checkpoint]:
        with self._lock:
            return list(self._checkpoints)

    def checkpoint_at_or_before(self, iteration: int) -> Optional[Checkpoint]:
        with self._lock:
            limit = min(iteration, self._length - 1)
            i = bisect.bisect_right(self._cp_iters, limit) - 1
            if i < 0:
                return None
            return self._checkpoints[i]

    def checkpoint_iterations(self) -> np.ndarray:
        with self._lock:
            return np.asarray(self._cp_iters, dtype=np.int64)

    def checkpoint_values(self) -> np.ndarray:
        with self._lock:
            return np.asarray([cp.value for cp in self._checkpoints], dtype=np.complex128)

    def find_near_periodic_checkpoints(self, tolerance: float = 1e-15) -> List[int]:
        """Checkpoint iterations whose exact value lies within ``tolerance`` of the latest orbit value."""
        with self._lock:
            current = self._length - 1
            z = self._exact[current]
            out = []
            for cp in self._checkpoints:
                if cp.iteration >= current:
                    continue
                d = z - cp.exact
                if max(abs(d.real), abs(d.imag)) < tolerance:
                    out.append(cp.iteration)
            return out
