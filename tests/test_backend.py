import itertools

import pytest

from perturbzoom import pipeline
from perturbzoom.pipeline import backend_info, choose_backend
from perturbzoom.renderers.gpu import GPU_BUFFER_BUDGET, GPU_BYTES_PER_PIXEL, board_dims_fit, gpu_buffers_fit

SIZES = [1, 16, 64, 256, 1024, 1536, 2048, 4096]


def test_small_boards_fit():
    assert gpu_buffers_fit(64, 64)
    assert gpu_buffers_fit(1, 1)


def test_buffer_budget_is_enforced():
    pixels = GPU_BUFFER_BUDGET // GPU_BYTES_PER_PIXEL
    assert gpu_buffers_fit(pixels, 1)
    assert not gpu_buffers_fit(pixels + 1, 1)
    assert not gpu_buffers_fit(4096, 4096)


def test_grid_limit_is_enforced():
    assert gpu_buffers_fit(512, 1, max_grid_dim_x=2)
    assert not gpu_buffers_fit(513, 1, max_grid_dim_x=2)


def test_empty_dims_do_not_fit():
    assert not gpu_buffers_fit(0, 10)
    assert not gpu_buffers_fit(10, -1)


@pytest.mark.parametrize("max_grid", [None, 4, 4096])
def test_admission_is_monotonic(max_grid):
    for w, h in itertools.product(SIZES, SIZES):
        if not gpu_buffers_fit(w, h, max_grid_dim_x=max_grid):
            continue
        for w2, h2 in itertools.product([s for s in SIZES if s <= w], [s for s in SIZES if s <= h]):
            assert gpu_buffers_fit(w2, h2, max_grid_dim_x=max_grid)


def test_board_dims_fit_uses_device_grid_limit():
    assert board_dims_fit((64, 64), {"available": True, "max_grid_dim_x": None})
    assert not board_dims_fit((64, 64), {"available": True, "max_grid_dim_x": 1})


def test_cpu_requested_skips_probe(monkeypatch):
    def boom():
        raise AssertionError("probe_cuda should not be called")

    monkeypatch.setattr(pipeline, "probe_cuda", boom)
    assert choose_backend("cpu", (64, 64)) == "cpu"


def test_unknown_backend_rejected():
    with pytest.raises(ValueError):
        choose_backend("tpu", (64, 64))


@pytest.mark.parametrize("requested", ["auto", "gpu"])
def test_falls_back_without_cuda(monkeypatch, requested):
    monkeypatch.setattr(pipeline, "probe_cuda", lambda: {"available": False})
    assert choose_backend(requested, (64, 64)) == "cpu"


@pytest.mark.parametrize("requested", ["auto", "gpu"])
def test_gpu_chosen_when_board_fits(monkeypatch, requested):
    monkeypatch.setattr(pipeline, "probe_cuda", lambda: {"available": True, "max_grid_dim_x": 2 ** 31 - 1})
    assert choose_backend(requested, (64, 64)) == "gpu"
    assert choose_backend(requested, (8192, 8192)) == "cpu"


def test_backend_info(monkeypatch):
    monkeypatch.setattr(pipeline, "probe_cuda", lambda: {"available": False})
    info = backend_info("cpu", (32, 16))
    assert info == {"resolved": "cpu", "board_dims": [32, 16], "cuda": {"available": False}}
