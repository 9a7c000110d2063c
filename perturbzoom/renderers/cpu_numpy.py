"""Per-pixel perturbation iteration against a shared reference orbit (NumPy).

Every active pixel of a board keeps a complex128 delta relative to one entry
of the reference orbit. One step advances all active pixels at once using
boolean masks over the board's active index list.

Step at board counter ``it`` (the pixel holds ``z_it``):

* at anchor iterations the pixel's own checkpoint becomes ``z_it`` and ``pp``
  is cleared;
* ``delta' = (Z + delta)^k - Z^k + dc`` with ``Z = orbit[base]``, expanded
  binomially so no term of size ``|Z|^k`` is formed, then ``base += 1``;
* ``|orbit[base] + delta'|^2 > bailout`` means escaped with ``nn = it + 1``;
* a delta that is no longer small next to the full value is a glitch and the
  pixel is rebased (see :meth:`PerturbationIterator.rebase`);
* the periodicity test against the checkpoint runs on every step, anchor
  steps included. ``pp`` is the first step within ``epsilon2`` and the
  reported period is ``rule(pp)``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from math import comb
from typing import Optional

import numpy as np

from perturbzoom.board import Board, PixelState
from perturbzoom.errors import GlitchUnrecoverable
from perturbzoom.orbit import ReferenceOrbitEngine
from perturbzoom.period import PeriodRule, fibonacci_period
from perturbzoom.util.logging_setup import get_logger


@dataclass(frozen=True)
class BatchStats:
    board_id: int
    pixels: int
    iterations: int
    elapsed: float
    newly_escaped: int
    newly_periodic: int


def _cheb(z: np.ndarray) -> np.ndarray:
    return np.maximum(np.abs(z.real), np.abs(z.imag))


def _mag2(z: np.ndarray) -> np.ndarray:
    return z.real * z.real + z.imag * z.imag


def advance_delta(zref: np.ndarray, delta: np.ndarray, dc: np.ndarray, exponent: int = 2) -> np.ndarray:
    if exponent == 2:
        return (2.0 * zref + delta) * delta + dc
    # Horner in delta over sum_{j=1..k} C(k, j) Z^(k-j) delta^(j-1)
    acc = np.ones_like(delta)
    zp = np.ones_like(zref)
    for j in range(exponent - 1, 0, -1):
        zp = zp * zref
        acc = acc * delta + comb(exponent, j) * zp
    return acc * delta + dc


class PerturbationIterator:
    def __init__(
        self,
        *,
        exponent: int = 2,
        period_rule: PeriodRule = fibonacci_period,
        glitch_tolerance: float = 0.5,
        orbit_lookahead: int = 100,
    ):
        self.exponent = int(exponent)
        self.period_rule = period_rule
        self.glitch_tolerance = float(glitch_tolerance)
        self.orbit_lookahead = int(orbit_lookahead)

    def _ensure_orbit(self, board: Board, engine: ReferenceOrbitEngine, idx: np.ndarray, steps: int = 1) -> np.ndarray:
        need = int(board.base[idx].max()) + steps + 1 if idx.size else 2
        target = max(need, min(need + self.orbit_lookahead, board.iteration_cap + 2))
        if len(engine) < need:
            engine.extend_to(target)
        return engine.values

    def _mark_escaped(self, board: Board, idx: np.ndarray, iteration: int) -> None:
        board.state[idx] = PixelState.ESCAPED
        board.nn[idx] = iteration
        board.escaped_count += int(idx.size)

    def _mark_uninteresting(self, board: Board, idx: np.ndarray) -> None:
        board.state[idx] = PixelState.UNINTERESTING
        board.uninteresting_count += int(idx.size)

    def _mark_periodic(self, board: Board, idx: np.ndarray, iteration: int) -> None:
        board.state[idx] = PixelState.PERIODIC
        board.converged_at[idx] = iteration
        rule = self.period_rule
        board.period[idx] = np.fromiter((rule(int(p)) for p in board.pp[idx]), dtype=np.int64, count=idx.size)
        board.periodic_count += int(idx.size)

    def _rebase_to_seed(self, board: Board, idx: np.ndarray, zref: np.ndarray) -> None:
        actual = zref[board.base[idx]] + board.delta[idx]
        board.delta[idx] = actual - zref[0]
        board.base[idx] = 0
        board.rebase_count += int(idx.size)

    def rebase(self, board: Board, idx: np.ndarray, engine: ReferenceOrbitEngine, zref: Optional[np.ndarray] = None) -> np.ndarray:
        """Move pixels onto the checkpoint at or before their base, or onto the seed.

        The checkpoint is kept only if the new delta passes the glitch test;
        otherwise the pixel restarts from the seed (``orbit[0]``) carrying
        its full value as the delta. Pixels whose target equals their
        current base are left untouched, so rebasing twice is the same as
        rebasing once. Returns the indices whose delta is still not finite.
        """
        idx = np.asarray(idx, dtype=np.int64)
        if idx.size == 0:
            return idx
        if zref is None:
            zref = engine.values

        base = board.base[idx]
        actual = zref[base] + board.delta[idx]

        cp_iters = engine.checkpoint_iterations()
        pos = np.searchsorted(cp_iters, base, side="right") - 1
        has = pos >= 0
        target = np.zeros_like(base)
        if cp_iters.size:
            target[has] = cp_iters[pos[has]]

        candidate = actual - zref[target]
        ok = has & (_cheb(candidate) <= self.glitch_tolerance * _cheb(actual))
        target = np.where(ok, target, 0)
        candidate = np.where(ok, candidate, actual - zref[0])

        move = target != base
        moved = idx[move]
        board.base[moved] = target[move]
        board.delta[moved] = candidate[move]
        board.rebase_count += int(moved.size)

        return idx[~np.isfinite(board.delta[idx])]

    def _rebase_glitched(self, board: Board, idx: np.ndarray, engine: ReferenceOrbitEngine, zref: np.ndarray,
                         iteration: int) -> None:
        broken = self.rebase(board, idx, engine, zref)
        if broken.size:
            raise GlitchUnrecoverable(broken, iteration)

    def escape_seed(self, board: Board, engine: ReferenceOrbitEngine) -> None:
        """Bailout test on ``z_1 = c`` for pixels still at the first iteration.

        Runs ahead of the iteration cap so that ``iteration_cap == 1`` still
        reports ``nn = 1``. Pixels already tested have left the active list or
        stayed inside, so repeating the call changes nothing.
        """
        idx = board.active
        if board.it != 1 or idx.size == 0:
            return
        zref = self._ensure_orbit(board, engine, idx, 0)
        out = _mag2(zref[board.base[idx]] + board.delta[idx]) > board.bailout_sq
        if out.any():
            self._mark_escaped(board, idx[out], 1)
            board.active = idx[~out]

    def iterate(self, board: Board, engine: ReferenceOrbitEngine) -> None:
        it = board.it
        self.escape_seed(board, engine)
        if it >= board.iteration_cap:
            self.finalize(board)
            return

        idx = board.active
        if idx.size == 0:
            board.it += 1
            return

        zref = self._ensure_orbit(board, engine, idx)

        if self.period_rule(it) == 1:
            board.checkpoint[idx] = zref[board.base[idx]] + board.delta[idx]
            board.pp[idx] = 0

        exhausted = board.base[idx] + 1 >= zref.size
        if exhausted.any():
            self._rebase_to_seed(board, idx[exhausted], zref)

        base = board.base[idx]
        delta = advance_delta(zref[base], board.delta[idx], board.dc[idx], self.exponent)
        base = base + 1
        board.delta[idx] = delta
        board.base[idx] = base
        actual = zref[base] + delta

        escaped = _mag2(actual) > board.bailout_sq
        if escaped.any():
            self._mark_escaped(board, idx[escaped], it + 1)

        live = ~escaped
        glitched = live & (base != 0) & (_cheb(delta) > self.glitch_tolerance * _cheb(actual))
        if glitched.any():
            board.glitch_count += int(np.count_nonzero(glitched))
            try:
                self._rebase_glitched(board, idx[glitched], engine, zref, it + 1)
            except GlitchUnrecoverable as e:
                get_logger().debug("Board %s: %s", board.board_id, e)
                self._mark_uninteresting(board, e.pixels)
                live &= board.state[idx] == PixelState.ACTIVE

        cp = board.checkpoint[idx]
        db = np.abs(actual.real - cp.real) + np.abs(actual.imag - cp.imag)
        near = live & (db <= board.epsilon2)
        first = near & (board.pp[idx] == 0)
        if first.any():
            board.pp[idx[first]] = it
        converged = live & (db <= board.epsilon)
        if converged.any():
            self._mark_periodic(board, idx[converged], it)

        board.it = it + 1
        board.active = idx[board.state[idx] == PixelState.ACTIVE]
        if board.it >= board.iteration_cap:
            self.finalize(board)

    def finalize(self, board: Board) -> None:
        idx = board.active
        if idx.size:
            self._mark_uninteresting(board, idx)
            board.active = idx[:0]

    def run(self, board: Board, engine: ReferenceOrbitEngine, steps: int) -> BatchStats:
        t0 = time.perf_counter()
        start_it = board.it
        pixels = board.unfinished
        escaped0 = board.escaped_count
        periodic0 = board.periodic_count
        self.escape_seed(board, engine)
        for _ in range(steps):
            if board.finished:
                self.finalize(board)
                break
            self.iterate(board, engine)
        return BatchStats(
            board_id=board.board_id,
            pixels=pixels,
            iterations=board.it - start_it,
            elapsed=time.perf_counter() - t0,
            newly_escaped=board.escaped_count - escaped0,
            newly_periodic=board.periodic_count - periodic0,
        )
