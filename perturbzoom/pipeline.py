from __future__ import annotations

import os
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np

from perturbzoom.board import PixelState, make_boards
from perturbzoom.config import SessionConfig
from perturbzoom.errors import BackendCapabilityExceeded
from perturbzoom.orbit import ReferenceOrbitEngine, set_reference_precision
from perturbzoom.period import get_period_rule
from perturbzoom.renderers.cpu_numpy import PerturbationIterator
from perturbzoom.renderers.gpu import GpuPerturbationIterator, board_dims_fit, probe_cuda
from perturbzoom.scheduler import WorkScheduler
from perturbzoom.util.logging_setup import get_logger
from perturbzoom.util.progress import ProgressEvent, ProgressSink, logging_sink

def choose_backend(requested: str, board_dims: Tuple[int, int]) -> str:
    if requested == "cpu":
        return "cpu"
    if requested not in ("auto", "gpu"):
        raise ValueError("backend must be one of: auto, cpu, gpu")

    logger = get_logger()
    cuda_info = probe_cuda()
    try:
        if not cuda_info.get("available"):
            raise BackendCapabilityExceeded("CUDA device not available")
        if not board_dims_fit(board_dims, cuda_info):
            raise BackendCapabilityExceeded(
                f"Board {board_dims[0]}x{board_dims[1]} exceeds GPU buffer or grid limits"
            )
    except BackendCapabilityExceeded as e:
        if requested == "gpu":
            logger.warning("%s; falling back to cpu", e)
        else:
            logger.info("%s; using cpu", e)
        return "cpu"
    return "gpu"

def backend_info(resolved: str, board_dims: Tuple[int, int]) -> Dict[str, Any]:
    info: Dict[str, Any] = {"resolved": resolved, "board_dims": list(board_dims)}
    info.update({"cuda": probe_cuda()})
    return info


@dataclass
class SessionResult:
    nn: np.ndarray
    pp: np.ndarray
    period: np.ndarray
    state: np.ndarray
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return bool(self.stats.get("cancelled", False))

    def save_npz(self, path: str) -> None:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        np.savez_compressed(path, nn=self.nn, pp=self.pp, period=self.period, state=self.state)


class RenderSession:
    """One render at a fixed centre and pixel size.

    Owns the shared reference orbit, the boards and their scheduler. ``run``
    drives ``worker_count`` worker threads; the calling thread acts as the
    coordinator and rebalances between waits.
    """

    def __init__(self, config: SessionConfig, sink: Optional[ProgressSink] = None):
        self.config = config
        self.sink = sink or logging_sink
        self._cancel = threading.Event()
        self.elapsed = 0.0

        self.dps = set_reference_precision(
            config.pixel_size,
            config.iteration_cap,
            min_digits=config.min_precision_digits,
            max_digits=config.max_precision_digits,
        )
        self.period_rule = get_period_rule(config.period_rule)
        self.engine = ReferenceOrbitEngine(
            config.center,
            exponent=config.exponent,
            escape_radius_sq=config.escape_radius_sq,
            period_rule=self.period_rule,
        )
        self.boards = make_boards(
            width=config.width,
            height=config.height,
            board_size=config.board_size,
            pixel_size=config.pixel_size,
            iteration_cap=config.iteration_cap,
        )
        self.scheduler = WorkScheduler(config.worker_count)
        for board in self.boards:
            self.scheduler.assign(board)

        self.board_dims = (min(config.board_size, config.width), min(config.board_size, config.height))
        self.backend = choose_backend(config.backend, self.board_dims)
        iterator_cls = GpuPerturbationIterator if self.backend == "gpu" else PerturbationIterator
        self.iterator = iterator_cls(
            exponent=config.exponent,
            period_rule=self.period_rule,
            glitch_tolerance=config.glitch_tolerance,
        )

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _worker_loop(self, worker_id: int) -> None:
        logger = get_logger()
        batch = self.config.batch_iterations
        idle_wait = self.config.rebalance_interval
        while not self._cancel.is_set():
            board_ids = self.scheduler.boards_for(worker_id)
            if not board_ids:
                if self.scheduler.finished:
                    break
                # Nothing owned right now; a migration may hand work over.
                self._cancel.wait(idle_wait)
                continue
            for board_id in board_ids:
                if self._cancel.is_set():
                    break
                with self.scheduler.claim(board_id, worker_id) as board:
                    if board is None:
                        continue
                    stats = self.iterator.run(board, self.engine, batch)
                    if board.finished:
                        self.scheduler.complete(board_id)
                        logger.debug("Board %s finished on worker %s at it=%s", board_id, worker_id, board.it)
                    else:
                        self.scheduler.set_effort(board_id, board.effort())
                    active = board.unfinished
                self.sink(ProgressEvent(
                    board_id=board_id,
                    worker_id=worker_id,
                    pixels=stats.pixels,
                    iterations=stats.iterations,
                    elapsed=stats.elapsed,
                    escaped=stats.newly_escaped,
                    periodic=stats.newly_periodic,
                    active=active,
                ))

    def run(self) -> SessionResult:
        logger = get_logger()
        cfg = self.config
        logger.info(
            "Session start center=(%s, %s) pixel_size=%s size=%sx%s cap=%s boards=%s workers=%s backend=%s dps=%s",
            cfg.center[0], cfg.center[1], cfg.pixel_size, cfg.width, cfg.height, cfg.iteration_cap,
            len(self.boards), cfg.worker_count, self.backend, self.dps,
        )
        t0 = time.perf_counter()
        try:
            with ThreadPoolExecutor(max_workers=cfg.worker_count, thread_name_prefix="worker") as pool:
                futures = [pool.submit(self._worker_loop, w) for w in range(cfg.worker_count)]
                try:
                    while True:
                        done, pending = wait(futures, timeout=cfg.rebalance_interval, return_when=FIRST_EXCEPTION)
                        for f in done:
                            if f.exception() is not None:
                                logger.error("Worker failed; cancelling session")
                                f.result()
                        if not pending:
                            break
                        self.scheduler.rebalance()
                except BaseException:
                    self._cancel.set()
                    raise
        finally:
            self.elapsed = time.perf_counter() - t0

        result = self.result()
        logger.info(
            "Session %s elapsed=%.3fs escaped=%s periodic=%s uninteresting=%s migrations=%s deferred=%s orbit=%s",
            "cancelled" if self.cancelled else "complete", self.elapsed,
            result.stats["escaped"], result.stats["periodic"], result.stats["uninteresting"],
            result.stats["migrations"], result.stats["deferred"], result.stats["orbit_length"],
        )
        return result

    def result(self) -> SessionResult:
        cfg = self.config
        nn = np.zeros((cfg.height, cfg.width), dtype=np.int64)
        pp = np.zeros_like(nn)
        period = np.zeros_like(nn)
        state = np.full((cfg.height, cfg.width), PixelState.ACTIVE, dtype=np.uint8)
        totals = {"active": 0, "escaped": 0, "periodic": 0, "uninteresting": 0}
        rebases = 0
        glitches = 0
        for board in self.boards:
            x0, y0 = board.origin
            h, w = board.shape
            region = (slice(y0, y0 + h), slice(x0, x0 + w))
            arrays = board.results()
            nn[region] = arrays["nn"]
            pp[region] = arrays["pp"]
            period[region] = arrays["period"]
            state[region] = arrays["state"]
            for k, v in board.counts().items():
                totals[k] += v
            rebases += board.rebase_count
            glitches += board.glitch_count

        escape = self.engine.escape
        stats: Dict[str, Any] = dict(totals)
        stats.update({
            "cancelled": self.cancelled,
            "elapsed": self.elapsed,
            "backend": self.backend,
            "precision_digits": self.dps,
            "boards": len(self.boards),
            "pixels": cfg.width * cfg.height,
            "rebases": rebases,
            "glitches": glitches,
            "migrations": self.scheduler.migrations,
            "deferred": self.scheduler.deferred,
            "orbit_length": len(self.engine),
            "reference_escaped": escape.escaped,
            "reference_escape_iteration": escape.escape_iteration,
            "checkpoints": len(self.engine.checkpoints),
        })
        return SessionResult(nn=nn, pp=pp, period=period, state=state, stats=stats)


class SessionManager:
    """Runs at most one session at a time in a background thread.

    ``retarget`` cancels the current session and waits for its workers to
    drain before the next session is built, so two sessions never share the
    global mpmath precision or step the same boards.
    """

    def __init__(self, sink: Optional[ProgressSink] = None):
        self._sink = sink
        self._lock = threading.Lock()
        self._session: Optional[RenderSession] = None
        self._thread: Optional[threading.Thread] = None
        self._result: Optional[SessionResult] = None
        self._error: Optional[BaseException] = None

    @property
    def session(self) -> Optional[RenderSession]:
        return self._session

    def _run(self, session: RenderSession) -> None:
        try:
            self._result = session.run()
        except Exception as e:
            get_logger().exception("Session failed")
            self._error = e

    def _launch(self, config: SessionConfig) -> RenderSession:
        session = RenderSession(config, sink=self._sink)
        self._session = session
        self._result = None
        self._error = None
        self._thread = threading.Thread(target=self._run, args=(session,), name="session", daemon=True)
        self._thread.start()
        return session

    def _stop_current(self) -> None:
        if self._session is not None:
            self._session.cancel()
        if self._thread is not None:
            self._thread.join()

    def start(self, config: SessionConfig) -> RenderSession:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise RuntimeError("A session is already running; use retarget().")
            return self._launch(config)

    def retarget(self, config: SessionConfig) -> RenderSession:
        with self._lock:
            self._stop_current()
            get_logger().info("Retargeting session center=(%s, %s) pixel_size=%s",
                              config.center[0], config.center[1], config.pixel_size)
            return self._launch(config)

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionResult]:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        if self._error is not None:
            raise self._error
        return self._result

    def shutdown(self) -> None:
        with self._lock:
            self._stop_current()
