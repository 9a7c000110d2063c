import numpy as np
import pytest

from perturbzoom.board import Board
from perturbzoom.scheduler import Migration, WorkScheduler


def _board(board_id, pixels=4, cap=100):
    return Board(board_id, np.zeros(pixels), pixel_size=1e-3, iteration_cap=cap)


def _assert_partition(scheduler, board_ids):
    seen = [b for ids in scheduler.partition().values() for b in ids]
    assert sorted(seen) == sorted(board_ids)
    for w, ids in scheduler.partition().items():
        for b in ids:
            assert scheduler.owner(b) == w


def _piled_on_first_worker(worker_count, efforts):
    """All boards assigned to worker 0 (zero initial effort), then given their real efforts."""
    scheduler = WorkScheduler(worker_count)
    boards = [_board(i) for i in range(len(efforts))]
    for b in boards:
        assert scheduler.assign(b, effort=0) == 0
    for b, e in zip(boards, efforts):
        scheduler.set_effort(b.board_id, e)
    return scheduler, boards


def test_worker_count_must_be_positive():
    with pytest.raises(ValueError):
        WorkScheduler(0)


def test_assign_picks_least_loaded_lowest_id():
    scheduler = WorkScheduler(3)
    owners = [scheduler.assign(_board(i), effort=e) for i, e in enumerate([10, 5, 5, 1, 2])]
    assert owners == [0, 1, 2, 1, 2]
    assert scheduler.loads() == [10, 6, 7]


def test_default_effort_is_pixels_times_cap():
    scheduler = WorkScheduler(1)
    scheduler.assign(_board(0, pixels=6, cap=50))
    assert scheduler.effort(0) == 300


def test_double_assign_rejected():
    scheduler = WorkScheduler(2)
    board = _board(0)
    scheduler.assign(board)
    with pytest.raises(ValueError, match="already assigned"):
        scheduler.assign(board)


def test_report_progress_clamps_at_zero():
    scheduler = WorkScheduler(1)
    scheduler.assign(_board(0), effort=10)
    scheduler.report_progress(0, -4)
    assert scheduler.worker_load(0) == 6
    scheduler.report_progress(0, -100)
    assert scheduler.effort(0) == 0


def test_completed_boards_leave_load_and_work_lists():
    scheduler = WorkScheduler(2)
    for i in range(4):
        scheduler.assign(_board(i), effort=5)
    assert scheduler.boards_for(0) == [0, 2]

    scheduler.complete(0)
    assert scheduler.boards_for(0) == [2]
    assert scheduler.worker_load(0) == 5
    assert not scheduler.finished
    _assert_partition(scheduler, range(4))

    for i in range(1, 4):
        scheduler.complete(i)
    assert scheduler.finished
    assert scheduler.loads() == [0, 0]


def test_rebalance_noop_when_balanced():
    scheduler = WorkScheduler(2)
    scheduler.assign(_board(0), effort=10)
    scheduler.assign(_board(1), effort=8)
    assert scheduler.rebalance() is None
    assert scheduler.migrations == 0


def test_rebalance_moves_largest_fitting_board():
    scheduler, _ = _piled_on_first_worker(2, [10, 1])
    migration = scheduler.rebalance()
    assert migration == Migration(board_id=0, source=0, target=1, effort=10)
    assert scheduler.owner(0) == 1
    assert scheduler.loads() == [1, 10]


def test_rebalance_skips_board_larger_than_gap():
    # Moving the only board would just swap the imbalance.
    scheduler, _ = _piled_on_first_worker(2, [10])
    assert scheduler.rebalance() is None
    assert scheduler.owner(0) == 0


def test_rebalance_converges_and_keeps_partition():
    efforts = [10 * (i + 1) for i in range(10)]
    scheduler, boards = _piled_on_first_worker(3, efforts)
    ids = [b.board_id for b in boards]

    def sum_sq():
        return sum(load * load for load in scheduler.loads())

    previous = sum_sq()
    for _ in range(len(efforts) * 10):
        migration = scheduler.rebalance()
        _assert_partition(scheduler, ids)
        if migration is None:
            break
        current = sum_sq()
        assert current < previous
        previous = current
    else:
        pytest.fail("rebalance did not converge")

    loads = scheduler.loads()
    low, high = min(loads), max(loads)
    heavy = loads.index(high)
    fitting = [scheduler.effort(b) for b in scheduler.boards_for(heavy) if 0 < scheduler.effort(b) < high - low]
    assert low * 2 >= high or not fitting
    assert sum(loads) == sum(efforts)


def test_rebalance_deferred_while_board_is_stepping():
    scheduler, boards = _piled_on_first_worker(2, [10, 1])

    with boards[0].lock:
        assert scheduler.rebalance() is None
        assert scheduler.deferred == 1
        assert scheduler.owner(0) == 0

    migration = scheduler.rebalance()
    assert migration is not None
    assert migration.board_id == 0
    assert scheduler.owner(0) == 1
    assert scheduler.migrations == 1


def test_claim_requires_ownership():
    scheduler = WorkScheduler(2)
    board = _board(0)
    scheduler.assign(board)

    with scheduler.claim(0, 0) as claimed:
        assert claimed is board
        assert board.lock.locked()
    assert not board.lock.locked()

    with scheduler.claim(0, 1) as claimed:
        assert claimed is None


def test_claim_after_migration_and_completion():
    scheduler, boards = _piled_on_first_worker(2, [10, 1])
    scheduler.rebalance()

    with scheduler.claim(0, 0) as claimed:
        assert claimed is None
    with scheduler.claim(0, 1) as claimed:
        assert claimed is boards[0]

    scheduler.complete(0)
    with scheduler.claim(0, 1) as claimed:
        assert claimed is None
