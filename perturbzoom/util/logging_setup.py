import logging
import logging.handlers
import queue
from typing import List, Optional

_LOGGER_NAME = "perturbzoom"

def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)

def _build_handlers(
    level: int, console: bool, log_file: Optional[str], rotate_bytes: int, rotate_count: int
) -> List[logging.Handler]:
    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03dZ %(threadName)s %(levelname)s %(name)s - %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=rotate_bytes, backupCount=rotate_count, encoding="utf-8"
        ))
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(fmt)
    return handlers

def configure_logging(
    *,
    level: int = logging.INFO,
    console: bool = True,
    log_file: Optional[str] = "render.log",
    rotate_bytes: int = 5 * 1024 * 1024,
    rotate_count: int = 5,
) -> logging.handlers.QueueListener:
    """Attach a QueueHandler to the package logger and start its listener.

    Session and worker threads only enqueue records. Console and rotating
    file output happen on the listener thread. Pass the returned listener to
    :func:`stop_logging` when the run ends.
    """
    log_queue: queue.Queue = queue.Queue(-1)
    listener = logging.handlers.QueueListener(
        log_queue,
        *_build_handlers(level, console, log_file, rotate_bytes, rotate_count),
        respect_handler_level=True,
    )

    logger = get_logger()
    logger.setLevel(level)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
    qh = logging.handlers.QueueHandler(log_queue)
    qh.setLevel(level)
    logger.addHandler(qh)

    listener.start()
    return listener

def stop_logging(listener: logging.handlers.QueueListener) -> None:
    # Drains queued records before the handlers close.
    listener.stop()
    for h in listener.handlers:
        h.close()
