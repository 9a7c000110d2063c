"""Board-to-worker assignment with load rebalancing.

Each board carries an effort estimate (remaining pixel-iterations). A
worker's load is the sum of the efforts of the unfinished boards it owns.
All bookkeeping lives in one ``WorkScheduler`` guarded by a single lock; a
board is stepped only inside :meth:`WorkScheduler.claim`, which holds the
board's step lock, so a board is never in flight on two workers.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set

from perturbzoom.board import Board
from perturbzoom.errors import SchedulerNoSafeSuspensionPoint
from perturbzoom.util.logging_setup import get_logger


@dataclass(frozen=True)
class Migration:
    board_id: int
    source: int
    target: int
    effort: float


class WorkScheduler:
    def __init__(self, worker_count: int):
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.worker_count = int(worker_count)
        self._lock = threading.Lock()
        self._boards: Dict[int, Board] = {}
        self._owner: Dict[int, int] = {}
        self._effort: Dict[int, float] = {}
        self._completed: Set[int] = set()
        self.migrations = 0
        self.deferred = 0

    def _load(self, worker_id: int) -> float:
        return sum(
            e for b, e in self._effort.items()
            if self._owner[b] == worker_id and b not in self._completed
        )

    def _loads(self) -> List[float]:
        loads = [0.0] * self.worker_count
        for b, e in self._effort.items():
            if b not in self._completed:
                loads[self._owner[b]] += e
        return loads

    def assign(self, board: Board, effort: Optional[float] = None) -> int:
        if effort is None:
            effort = float(board.size * board.iteration_cap)
        with self._lock:
            if board.board_id in self._owner:
                raise ValueError(f"Board {board.board_id} is already assigned")
            loads = self._loads()
            worker_id = min(range(self.worker_count), key=lambda w: (loads[w], w))
            self._boards[board.board_id] = board
            self._owner[board.board_id] = worker_id
            self._effort[board.board_id] = max(0.0, float(effort))
        get_logger().debug("Board %s assigned to worker %s effort=%s", board.board_id, worker_id, effort)
        return worker_id

    def report_progress(self, board_id: int, effort_delta: float) -> None:
        with self._lock:
            self._effort[board_id] = max(0.0, self._effort[board_id] + float(effort_delta))

    def set_effort(self, board_id: int, effort: float) -> None:
        with self._lock:
            self._effort[board_id] = max(0.0, float(effort))

    def complete(self, board_id: int) -> None:
        with self._lock:
            self._completed.add(board_id)
            self._effort[board_id] = 0.0

    def effort(self, board_id: int) -> float:
        with self._lock:
            return self._effort[board_id]

    def owner(self, board_id: int) -> int:
        with self._lock:
            return self._owner[board_id]

    def worker_load(self, worker_id: int) -> float:
        with self._lock:
            return self._load(worker_id)

    def loads(self) -> List[float]:
        with self._lock:
            return self._loads()

    def boards_for(self, worker_id: int) -> List[int]:
        with self._lock:
            return sorted(
                b for b, w in self._owner.items()
                if w == worker_id and b not in self._completed
            )

    def partition(self) -> Dict[int, List[int]]:
        with self._lock:
            out: Dict[int, List[int]] = {w: [] for w in range(self.worker_count)}
            for b, w in self._owner.items():
                out[w].append(b)
            for w in out:
                out[w].sort()
            return out

    @property
    def finished(self) -> bool:
        with self._lock:
            return len(self._completed) == len(self._owner)

    def _pick(self) -> Optional[Migration]:
        loads = self._loads()
        low = min(loads)
        high = max(loads)
        if not (low * 2 < high):
            return None
        source = loads.index(high)
        target = loads.index(low)
        # Moving effort e helps only if 0 < e < high - low; prefer the largest such board.
        candidates = [
            (e, b) for b, e in self._effort.items()
            if self._owner[b] == source and b not in self._completed and 0 < e < high - low
        ]
        if not candidates:
            return None
        e, b = max(candidates, key=lambda eb: (eb[0], -eb[1]))
        return Migration(board_id=b, source=source, target=target, effort=e)

    def _migrate(self, migration: Migration) -> None:
        board = self._boards[migration.board_id]
        if not board.lock.acquire(blocking=False):
            raise SchedulerNoSafeSuspensionPoint(migration.board_id)
        try:
            self._owner[migration.board_id] = migration.target
            self.migrations += 1
        finally:
            board.lock.release()

    def rebalance(self) -> Optional[Migration]:
        logger = get_logger()
        with self._lock:
            migration = self._pick()
            if migration is None:
                return None
            try:
                self._migrate(migration)
            except SchedulerNoSafeSuspensionPoint as e:
                self.deferred += 1
                logger.debug("%s", e)
                return None
        logger.debug("Board %s transferred worker %s -> %s effort=%s",
                     migration.board_id, migration.source, migration.target, migration.effort)
        return migration

    @contextmanager
    def claim(self, board_id: int, worker_id: int) -> Iterator[Optional[Board]]:
        """Exclusive stepping access to a board, or ``None`` if the worker no longer owns it."""
        board = self._boards[board_id]
        with board.lock:
            with self._lock:
                owned = self._owner.get(board_id) == worker_id and board_id not in self._completed
            yield board if owned else None
