import numpy as np
import pytest

pytest.importorskip("numba")
from numba import cuda  # noqa: E402

from perturbzoom.board import Board, PixelState  # noqa: E402
from perturbzoom.orbit import ReferenceOrbitEngine  # noqa: E402
from perturbzoom.period import cubic_period, fibonacci_period  # noqa: E402
from perturbzoom.renderers.cpu_numpy import PerturbationIterator  # noqa: E402
from perturbzoom.renderers.gpu import GpuPerturbationIterator  # noqa: E402

pytestmark = pytest.mark.skipif(not cuda.is_available(), reason="needs a CUDA device or NUMBA_ENABLE_CUDASIM=1")

# batch 37 crosses the anchors 1, 2, 3, 5, 8, 13, 21, 34, 55, ...
BATCH = 37
CAP = 300


def _render(iterator, center, pixel_size, *, exponent=2, cap=CAP, batch=BATCH):
    engine = ReferenceOrbitEngine(center, exponent=exponent, period_rule=iterator.period_rule)
    board = Board.from_region(
        0, x0=0, y0=0, width=6, height=6, image_width=6, image_height=6,
        pixel_size=pixel_size, iteration_cap=cap,
    )
    while not board.finished:
        iterator.run(board, engine, batch)
    iterator.finalize(board)
    return board, engine


def _assert_same(cpu, gpu):
    assert np.array_equal(cpu.state, gpu.state)
    assert np.array_equal(cpu.nn, gpu.nn)
    assert np.array_equal(cpu.pp, gpu.pp)
    assert np.array_equal(cpu.period, gpu.period)
    assert cpu.counts() == gpu.counts()


@pytest.mark.parametrize(
    "center, pixel_size",
    [
        (("-0.75", "0.1"), 0.01),
        (("-1", "0"), 1e-3),
        (("1", "0"), 0.1),
    ],
)
def test_kernel_matches_cpu_iterator(center, pixel_size):
    cpu, _ = _render(PerturbationIterator(), center, pixel_size)
    gpu, _ = _render(GpuPerturbationIterator(), center, pixel_size)

    _assert_same(cpu, gpu)
    assert not np.any(gpu.state == PixelState.ACTIVE)


def test_kernel_rebases_to_seed_after_reference_escape():
    # Reference at 0.3 escapes; pixels near 0.2 stay bounded past the orbit end.
    cpu, engine = _render(PerturbationIterator(), ("0.3", "0"), 0.05)
    gpu, _ = _render(GpuPerturbationIterator(), ("0.3", "0"), 0.05)

    assert engine.escape.escaped
    assert len(engine) < CAP
    assert gpu.rebase_count > 0
    _assert_same(cpu, gpu)
    assert np.any(gpu.state == PixelState.ESCAPED)
    assert np.any(gpu.state != PixelState.ESCAPED)


def test_kernel_matches_cpu_for_cubic_rule_and_exponent_three():
    cpu, _ = _render(PerturbationIterator(exponent=3, period_rule=cubic_period), ("0", "0"), 0.25, exponent=3)
    gpu, _ = _render(GpuPerturbationIterator(exponent=3, period_rule=cubic_period), ("0", "0"), 0.25, exponent=3)

    _assert_same(cpu, gpu)


def test_gpu_iterator_escapes_seed_at_single_iteration_cap():
    engine = ReferenceOrbitEngine(("0", "0"), period_rule=fibonacci_period)
    board = Board(0, [3.0, 0.1], pixel_size=1e-3, iteration_cap=1)
    stats = GpuPerturbationIterator().run(board, engine, BATCH)

    assert list(board.state) == [PixelState.ESCAPED, PixelState.UNINTERESTING]
    assert list(board.nn) == [1, 0]
    assert stats.newly_escaped == 1
