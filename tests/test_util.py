import json
import logging
import logging.handlers
import threading

from perturbzoom.util.logging_setup import configure_logging, get_logger, stop_logging
from perturbzoom.util.manifest import build_manifest, write_manifest
from perturbzoom.util.progress import ProgressEvent, TqdmSink, logging_sink


def _event(**overrides):
    fields = dict(board_id=1, worker_id=0, pixels=10, iterations=5, elapsed=0.01, escaped=3, periodic=2, active=5)
    fields.update(overrides)
    return ProgressEvent(**fields)


def test_queue_listener_writes_worker_records(tmp_path):
    log_file = tmp_path / "render.log"
    listener = configure_logging(level=logging.DEBUG, console=False, log_file=str(log_file))
    try:
        handlers = get_logger().handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.handlers.QueueHandler)
        get_logger().info("board %s finished", 7)
    finally:
        stop_logging(listener)

    text = log_file.read_text(encoding="utf-8")
    assert "board 7 finished" in text
    assert "INFO perturbzoom" in text


def test_records_from_worker_threads_keep_thread_name(tmp_path):
    log_file = tmp_path / "render.log"
    listener = configure_logging(level=logging.INFO, console=False, log_file=str(log_file))
    try:
        t = threading.Thread(target=lambda: get_logger().info("batch done"), name="worker_3")
        t.start()
        t.join()
    finally:
        stop_logging(listener)

    assert "worker_3 INFO perturbzoom - batch done" in log_file.read_text(encoding="utf-8")


def test_progress_event_finished_count():
    assert _event().finished == 5


def test_logging_sink_emits_debug(quiet_logger, caplog):
    quiet_logger.propagate = True
    with caplog.at_level(logging.DEBUG, logger="perturbzoom"):
        logging_sink(_event())
    assert "board=1" in caplog.text


def test_tqdm_sink_counts_finished_pixels():
    sink = TqdmSink(20)
    sink(_event())
    sink(_event(active=0))
    assert sink._bar.n == 15
    sink.close()


def test_manifest_round_trip(tmp_path):
    manifest = build_manifest(
        config={"width": 8},
        backend_info={"resolved": "cpu"},
        git_commit=None,
        summary={"escaped": 3},
    )
    assert "numpy" in manifest.packages
    assert "mpmath" in manifest.packages

    path = tmp_path / "artifacts" / "run.json"
    write_manifest(str(path), manifest)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["config"] == {"width": 8}
    assert data["backend"] == {"resolved": "cpu"}
    assert data["summary"] == {"escaped": 3}
    assert data["git"] == {"commit": None}
