"""Logging for qemu-driver.

The ``qemu_driver`` logger only carries a NullHandler; output is up to the
application.  ``QEMU_DRIVER_LOG_LEVEL`` sets its level at import time.

``configure_logging()`` is what the CLI uses.  Driver records print as::

    WARNING [2026-02-25 10:02:54] qemu_driver.shutdown - QMP unusable, forcibly killing QEMU

Lines read from QEMU and virtiofsd pipes (records carrying ``child_output``)
print as the tagged raw line instead::

    virtiofsd-0[stderr] | virtiofsd: waiting for vhost-user socket connection

Records go through a bounded queue drained by a listener thread, so a chatty
child never blocks the event loop on stderr; overflow is dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "qemu_driver"
CHILD_OUTPUT_ATTR: str = "child_output"
CHILD_LINE_ATTR: str = "child_line"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("QEMU_DRIVER_LOG_LEVEL", "").strip().upper())
if _env_level:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_CAPACITY = 4096


def child_output_extra(source: str, line: str) -> dict[str, str]:
    """``extra=`` mapping that marks a record as one line of child output."""
    return {CHILD_OUTPUT_ATTR: source, CHILD_LINE_ATTR: line}


class DriverFormatter(logging.Formatter):
    """Standard CLI format, except child output keeps its source tag only."""

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        source = getattr(record, CHILD_OUTPUT_ATTR, None)
        if source is None:
            return super().format(record)
        return f"{source} | {getattr(record, CHILD_LINE_ATTR, record.getMessage())}"


class _ClickHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.formatter = DriverFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            dim = record.levelno < logging.WARNING or hasattr(record, CHILD_OUTPUT_ATTR)
            click.echo(click.style(self.format(record), dim=dim), err=True)
        except BlockingIOError:
            pass  # stderr full, drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """QueueHandler over a bounded queue; ``put_nowait`` drops on overflow."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the listener formats the record itself
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Attach the CLI handler to the ``qemu_driver`` logger (once) and set its level.

    Args:
        level: Log level; overrides QEMU_DRIVER_LOG_LEVEL
        quiet: Only log errors (wins over ``level``)
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
