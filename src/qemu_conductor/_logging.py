"""Centralized logging for qemu-conductor.

Library logging conventions:
- Attach NullHandler to library root logger
- Never add other handlers from library code -- that's the application's job
- Support QEMU_CONDUCTOR_LOG_LEVEL env var for level control
- Provide configure_logging() for the CLI entry point

CLI output format (context fields from `extra` appended in brackets):
    WARNING [2026-02-25 10:02:54] qemu_conductor.supervisor - QEMU exited [vm_id=win11 exit_code=1]

Non-blocking logging:
    Uses QueueHandler + QueueListener (stdlib) so that a burst of emulator
    output from several VMs never blocks the event loop on stderr writes.
    A daemon thread drains records to click.echo(err=True); when the
    bounded queue is full, records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue
from enum import Enum

import click

LIBRARY_LOGGER_NAME: str = "qemu_conductor"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor QEMU_CONDUCTOR_LOG_LEVEL env var (e.g. "DEBUG", "WARNING", "ERROR")
_env_level = os.environ.get("QEMU_CONDUCTOR_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096

# Keys passed via extra={...} that identify what a record is about, in display order
CONTEXT_FIELDS: tuple[str, ...] = ("vm_id", "context_id", "pid", "backend", "fault", "exit_code", "url", "path")


class ContextFormatter(logging.Formatter):
    """Appends the VM and transfer context carried in `extra` to the message.

    Only CONTEXT_FIELDS are shown; other extra keys (stderr text, argv) stay
    available to handlers installed by the application.
    """

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def formatMessage(self, record: logging.LogRecord) -> str:  # noqa: N802
        message = super().formatMessage(record)
        context = []
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            context.append(f"{key}={value}")
        if not context:
            return message
        return f"{message} [{' '.join(context)}]"


class _ClickHandler(logging.Handler):
    """Target handler: writes to stderr via click.echo with dim styling.

    Runs on the QueueListener's daemon thread. click.echo() strips ANSI
    codes automatically when stderr is not a TTY.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = ContextFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, dim=True), err=True)
        except BlockingIOError:
            pass  # Stderr buffer full -- drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Skip serialization -- same-process queue, no pickle needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All qemu_conductor modules use this instead of logging.getLogger()
    so every logger hangs off the library logger.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for the CLI / application entry points.

    Adds a _NonBlockingHandler if none exists (idempotent), then sets the
    log level. Applications that install their own handlers are unaffected.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
