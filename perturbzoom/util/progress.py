from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable

from tqdm import tqdm

from perturbzoom.util.logging_setup import get_logger


@dataclass(frozen=True)
class ProgressEvent:
    board_id: int
    worker_id: int
    pixels: int
    iterations: int
    elapsed: float
    escaped: int
    periodic: int
    active: int

    @property
    def finished(self) -> int:
        """Pixels of the batch that reached a terminal state."""
        return self.pixels - self.active


ProgressSink = Callable[[ProgressEvent], None]


def logging_sink(event: ProgressEvent) -> None:
    get_logger().debug(
        "Batch board=%s worker=%s pixels=%s iterations=%s elapsed=%.4fs escaped=%s periodic=%s active=%s",
        event.board_id, event.worker_id, event.pixels, event.iterations, event.elapsed,
        event.escaped, event.periodic, event.active,
    )


class TqdmSink:
    """Progress bar counting pixels that reached a terminal state."""

    def __init__(self, total_pixels: int, desc: str = "Rendering"):
        self._bar = tqdm(total=total_pixels, desc=desc, unit="px")
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent) -> None:
        with self._lock:
            self._bar.update(event.finished)

    def close(self) -> None:
        self._bar.close()
