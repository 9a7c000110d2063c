from __future__ import annotations

import threading
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

import numpy as np


class PixelState(IntEnum):
    ACTIVE = 0
    PERIODIC = 1
    ESCAPED = 2
    UNINTERESTING = 3


class Board:
    """Rectangular pixel region with per-pixel perturbation state.

    A pixel's current value is ``orbit[base] + delta`` and equals ``z_it``
    for the board counter ``it``. Pixels start at ``base = 1`` with
    ``delta = dc`` so that ``z_1 = c_ref + dc = c``.
    """

    def __init__(
        self,
        board_id: int,
        dc,
        *,
        pixel_size: float,
        iteration_cap: int,
        shape: Optional[Tuple[int, int]] = None,
        origin: Tuple[int, int] = (0, 0),
        bailout_sq: float = 4.0,
    ):
        dc = np.asarray(dc, dtype=np.complex128).ravel()
        n = dc.size
        if shape is None:
            shape = (1, n)
        if shape[0] * shape[1] != n:
            raise ValueError(f"shape {shape} does not match {n} pixels")
        if iteration_cap < 1:
            raise ValueError("iteration_cap must be >= 1")

        self.board_id = int(board_id)
        self.shape = (int(shape[0]), int(shape[1]))
        self.origin = (int(origin[0]), int(origin[1]))
        self.pixel_size = float(pixel_size)
        self.iteration_cap = int(iteration_cap)
        self.bailout_sq = float(bailout_sq)

        self.epsilon = min(1e-12, self.pixel_size / 10)
        self.epsilon2 = min(1e-9, self.pixel_size * 10)

        self.dc = dc
        self.delta = dc.copy()
        self.base = np.ones(n, dtype=np.int64)
        self.checkpoint = np.zeros(n, dtype=np.complex128)
        self.nn = np.zeros(n, dtype=np.int64)
        self.pp = np.zeros(n, dtype=np.int64)
        self.period = np.zeros(n, dtype=np.int64)
        self.converged_at = np.zeros(n, dtype=np.int64)
        self.state = np.full(n, PixelState.ACTIVE, dtype=np.uint8)
        self.active = np.arange(n, dtype=np.int64)

        self.it = 1
        self.escaped_count = 0
        self.periodic_count = 0
        self.uninteresting_count = 0
        self.rebase_count = 0
        self.glitch_count = 0

        # Held for the duration of one batch; free means the board is at a step boundary.
        self.lock = threading.Lock()

    @classmethod
    def from_region(
        cls,
        board_id: int,
        *,
        x0: int,
        y0: int,
        width: int,
        height: int,
        image_width: int,
        image_height: int,
        pixel_size: float,
        iteration_cap: int,
        **kwargs,
    ) -> "Board":
        # dc comes straight from pixel offsets; c = c_ref + dc is never formed in floats.
        xs = (np.arange(x0, x0 + width, dtype=np.float64) + 0.5 - image_width * 0.5) * pixel_size
        ys = (image_height * 0.5 - (np.arange(y0, y0 + height, dtype=np.float64) + 0.5)) * pixel_size
        dc = xs[np.newaxis, :] + 1j * ys[:, np.newaxis]
        return cls(
            board_id,
            dc,
            pixel_size=pixel_size,
            iteration_cap=iteration_cap,
            shape=(height, width),
            origin=(x0, y0),
            **kwargs,
        )

    @property
    def size(self) -> int:
        return self.dc.size

    @property
    def unfinished(self) -> int:
        return int(self.active.size)

    @property
    def finished(self) -> bool:
        return self.active.size == 0 or self.it >= self.iteration_cap

    def effort(self) -> float:
        return float(self.active.size * max(0, self.iteration_cap - self.it))

    def counts(self) -> Dict[str, int]:
        return {
            "active": self.unfinished,
            "escaped": self.escaped_count,
            "periodic": self.periodic_count,
            "uninteresting": self.uninteresting_count,
        }

    def results(self) -> Dict[str, np.ndarray]:
        h, w = self.shape
        return {
            "nn": self.nn.reshape(h, w),
            "pp": self.pp.reshape(h, w),
            "period": self.period.reshape(h, w),
            "state": self.state.reshape(h, w),
        }


def make_boards(
    *,
    width: int,
    height: int,
    board_size: int,
    pixel_size: float,
    iteration_cap: int,
    **kwargs,
) -> List[Board]:
    boards: List[Board] = []
    board_id = 0
    for y in range(0, height, board_size):
        for x in range(0, width, board_size):
            boards.append(Board.from_region(
                board_id,
                x0=x,
                y0=y,
                width=min(board_size, width - x),
                height=min(board_size, height - y),
                image_width=width,
                image_height=height,
                pixel_size=pixel_size,
                iteration_cap=iteration_cap,
                **kwargs,
            ))
            board_id += 1
    return boards
