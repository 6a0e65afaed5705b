"""Subprocess lifecycle utilities.

- drain_subprocess_output: concurrent stdout/stderr draining (prevents 64KB pipe deadlock)
- log_task_exception: done-callback that surfaces failures of background tasks
"""

from __future__ import annotations

import asyncio
import codecs
from typing import TYPE_CHECKING

from qemu_conductor._logging import get_logger
from qemu_conductor.constants import OUTPUT_READ_CHUNK_BYTES

if TYPE_CHECKING:
    from collections.abc import Callable

    from qemu_conductor.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def _pump(stream: asyncio.StreamReader, handler: Callable[[str], None]) -> None:
    """Read a stream in chunks until EOF and pass decoded text to handler.

    Chunks rather than lines: QEMU prints prompts and partial lines without a
    trailing newline, and those must reach the listener immediately. The
    incremental decoder keeps multi-byte characters split across reads intact.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while chunk := await stream.read(OUTPUT_READ_CHUNK_BYTES):
        text = decoder.decode(chunk)
        if text:
            handler(text)
    if tail := decoder.decode(b"", final=True):
        handler(tail)


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
    stdout_handler: Callable[[str], None] | None = None,
    stderr_handler: Callable[[str], None] | None = None,
) -> None:
    """Drain subprocess stdout/stderr concurrently to prevent 64KB pipe deadlock.

    Without concurrent draining the emulator blocks once one pipe buffer
    fills while a sequential reader waits on the other pipe.

    Args:
        process: ProcessWrapper instance with stdout/stderr pipes
        process_name: Process identifier for logging (e.g., "QEMU")
        context_id: Context identifier (e.g., vm_id) for log correlation
        stdout_handler: Optional callback for stdout text (default: debug log)
        stderr_handler: Optional callback for stderr text (default: warning log)

    Example:
        >>> task = asyncio.create_task(drain_subprocess_output(
        ...     proc, process_name="QEMU", context_id=vm_id
        ... ))
    """

    if stdout_handler is None:

        def default_stdout_handler(text: str) -> None:
            logger.debug(f"[{process_name} stdout] {text.rstrip()}", extra={"context_id": context_id})

        stdout_handler = default_stdout_handler

    if stderr_handler is None:

        def default_stderr_handler(text: str) -> None:
            logger.warning(f"[{process_name} stderr] {text.rstrip()}", extra={"context_id": context_id})

        stderr_handler = default_stderr_handler

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(_pump(process.stdout, stdout_handler))
        if process.stderr:
            tg.create_task(_pump(process.stderr, stderr_handler))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
