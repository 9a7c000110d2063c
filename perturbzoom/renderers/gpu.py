from __future__ import annotations

import math
import time
from math import comb
from typing import Any, Dict, Optional, Tuple

import numpy as np

from perturbzoom.board import Board, PixelState
from perturbzoom.orbit import ReferenceOrbitEngine
from perturbzoom.renderers.cpu_numpy import BatchStats, PerturbationIterator
from perturbzoom.util.logging_setup import get_logger

# Device-resident per-pixel buffers of advance_batch_kernel:
# dc_re, dc_im, d_re, d_im, cp_re, cp_im (float64); base, nn, pp, conv, rebases (int64); state (uint8)
GPU_BYTES_PER_PIXEL = 6 * 8 + 5 * 8 + 1
GPU_BUFFER_BUDGET = 200 * 1024 * 1024
THREADS_PER_BLOCK = 256
MAX_GRID_DIM_X = 2 ** 31 - 1

def probe_cuda() -> Dict[str, Any]:
    info: Dict[str, Any] = {"available": False}
    try:
        from numba import cuda  # type: ignore
        if not cuda.is_available():
            return info
        dev = cuda.get_current_device()
        info.update({
            "available": True,
            "name": getattr(dev, "name", None),
            "compute_capability": getattr(dev, "compute_capability", None),
            "max_threads_per_block": getattr(dev, "MAX_THREADS_PER_BLOCK", None),
            "max_grid_dim_x": getattr(dev, "MAX_GRID_DIM_X", None),
            "warp_size": getattr(dev, "WARP_SIZE", None),
        })
        return info
    except Exception as e:
        info["error"] = str(e)
        return info

def gpu_buffers_fit(
    width: int,
    height: int,
    *,
    bytes_per_pixel: int = GPU_BYTES_PER_PIXEL,
    budget_bytes: int = GPU_BUFFER_BUDGET,
    threads_per_block: int = THREADS_PER_BLOCK,
    max_grid_dim_x: Optional[int] = None,
) -> bool:
    """Conservative check that one board's device buffers and launch grid fit the device.

    Monotonic: shrinking either dimension never turns a True into a False.
    """
    if width <= 0 or height <= 0:
        return False
    pixels = int(width) * int(height)
    if pixels * int(bytes_per_pixel) > int(budget_bytes):
        return False
    blocks = math.ceil(pixels / threads_per_block)
    return blocks <= (max_grid_dim_x or MAX_GRID_DIM_X)

def board_dims_fit(dims: Tuple[int, int], cuda_info: Dict[str, Any], **kwargs) -> bool:
    width, height = dims
    return gpu_buffers_fit(width, height, max_grid_dim_x=cuda_info.get("max_grid_dim_x"), **kwargs)


class GpuPerturbationIterator(PerturbationIterator):
    """Runs whole batches of the perturbation step in advance_batch_kernel.

    The first board step (escape test on z_1) runs on the CPU path.
    """

    def run(self, board: Board, engine: ReferenceOrbitEngine, steps: int) -> BatchStats:
        from numba import cuda  # type: ignore
        from perturbzoom.renderers.gpu_kernels import advance_batch_kernel

        t0 = time.perf_counter()
        start_it = board.it
        pixels = board.unfinished
        escaped0 = board.escaped_count
        periodic0 = board.periodic_count

        self.escape_seed(board, engine)
        if board.it == 1 and not board.finished and steps > 0:
            self.iterate(board, engine)
            steps -= 1

        steps = min(steps, board.iteration_cap - board.it)
        idx = board.active
        if steps > 0 and idx.size:
            zref = self._ensure_orbit(board, engine, idx, steps)
            cp_iters = engine.checkpoint_iterations()
            anchors = np.fromiter(
                (self.period_rule(board.it + s) == 1 for s in range(steps)), dtype=np.uint8, count=steps
            )
            binom = np.array([comb(self.exponent, j) for j in range(self.exponent + 1)], dtype=np.float64)

            dc = board.dc[idx]
            delta = board.delta[idx]
            cp = board.checkpoint[idx]
            d_re = cuda.to_device(np.ascontiguousarray(delta.real))
            d_im = cuda.to_device(np.ascontiguousarray(delta.imag))
            cp_re = cuda.to_device(np.ascontiguousarray(cp.real))
            cp_im = cuda.to_device(np.ascontiguousarray(cp.imag))
            base = cuda.to_device(board.base[idx])
            nn = cuda.to_device(board.nn[idx])
            pp = cuda.to_device(board.pp[idx])
            state = cuda.to_device(board.state[idx])
            conv = cuda.to_device(board.converged_at[idx])
            rebases = cuda.to_device(np.zeros(idx.size, dtype=np.int64))

            blocks = math.ceil(idx.size / THREADS_PER_BLOCK)
            advance_batch_kernel[blocks, THREADS_PER_BLOCK](
                cuda.to_device(np.ascontiguousarray(zref.real)),
                cuda.to_device(np.ascontiguousarray(zref.imag)),
                int(zref.size),
                cuda.to_device(cp_iters),
                int(cp_iters.size),
                cuda.to_device(binom),
                int(self.exponent),
                cuda.to_device(np.ascontiguousarray(dc.real)),
                cuda.to_device(np.ascontiguousarray(dc.imag)),
                d_re, d_im, base,
                cp_re, cp_im,
                nn, pp, state, conv, rebases,
                int(board.it), int(steps), cuda.to_device(anchors),
                float(board.bailout_sq), float(self.glitch_tolerance),
                float(board.epsilon), float(board.epsilon2),
            )

            board.delta[idx] = d_re.copy_to_host() + 1j * d_im.copy_to_host()
            board.checkpoint[idx] = cp_re.copy_to_host() + 1j * cp_im.copy_to_host()
            board.base[idx] = base.copy_to_host()
            board.nn[idx] = nn.copy_to_host()
            board.pp[idx] = pp.copy_to_host()
            board.converged_at[idx] = conv.copy_to_host()
            new_state = state.copy_to_host()
            board.state[idx] = new_state
            board.rebase_count += int(rebases.copy_to_host().sum())

            periodic = idx[new_state == PixelState.PERIODIC]
            if periodic.size:
                rule = self.period_rule
                board.period[periodic] = np.fromiter(
                    (rule(int(p)) for p in board.pp[periodic]), dtype=np.int64, count=periodic.size
                )
            board.escaped_count += int(np.count_nonzero(new_state == PixelState.ESCAPED))
            board.periodic_count += int(periodic.size)
            board.uninteresting_count += int(np.count_nonzero(new_state == PixelState.UNINTERESTING))

            board.it += steps
            board.active = idx[new_state == PixelState.ACTIVE]
            get_logger().debug("GPU batch board=%s pixels=%s steps=%s", board.board_id, idx.size, steps)

        if board.it >= board.iteration_cap:
            self.finalize(board)

        return BatchStats(
            board_id=board.board_id,
            pixels=pixels,
            iterations=board.it - start_it,
            elapsed=time.perf_counter() - t0,
            newly_escaped=board.escaped_count - escaped0,
            newly_periodic=board.periodic_count - periodic0,
        )
