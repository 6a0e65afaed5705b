"""Emulator capability probes.

Both probes run the emulator binary briefly and never raise: a missing or
broken binary is reported as None / an empty set and logged.
"""

import asyncio

from qemu_conductor._logging import get_logger
from qemu_conductor.constants import EMULATOR_PROBE_TIMEOUT_SECONDS

logger = get_logger(__name__)


async def _run_probe(binary: str, *args: str, timeout: float) -> str | None:
    """Run `binary args...` and return its stdout, or None on any failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        logger.warning("QEMU binary not found", extra={"qemu_bin": binary})
        return None
    except OSError as e:
        logger.warning("QEMU probe could not start", extra={"qemu_bin": binary, "error": str(e)})
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        logger.warning("QEMU probe timed out", extra={"qemu_bin": binary, "args": list(args)})
        proc.kill()
        await proc.wait()
        return None

    if proc.returncode != 0:
        logger.warning("QEMU probe failed", extra={"qemu_bin": binary, "returncode": proc.returncode})
        return None
    return stdout.decode(errors="replace")


async def probe_emulator_version(binary: str, timeout: float = EMULATOR_PROBE_TIMEOUT_SECONDS) -> str | None:
    """First line of `<binary> --version`, or None if the emulator is unusable.

    Example:
        >>> await probe_emulator_version("qemu-system-x86_64")
        'QEMU emulator version 8.2.2 (Debian 1:8.2.2+ds-0ubuntu1)'
    """
    output = await _run_probe(binary, "--version", timeout=timeout)
    if output is None:
        return None
    first_line = output.strip().splitlines()[0] if output.strip() else ""
    return first_line or None


async def probe_accelerators(binary: str, timeout: float = EMULATOR_PROBE_TIMEOUT_SECONDS) -> set[str]:
    """Accelerators compiled into the emulator (`-accel help`).

    Output looks like "Accelerators supported in QEMU binary:\\ntcg\\nkvm\\n";
    the header line is skipped.
    """
    output = await _run_probe(binary, "-accel", "help", timeout=timeout)
    if output is None:
        return set()
    accels: set[str] = set()
    for raw_line in output.splitlines():
        name = raw_line.strip().lower()
        if name and not name.startswith("accelerator"):
            accels.add(name)
    logger.debug("QEMU accelerator probe complete", extra={"qemu_bin": binary, "accelerators": sorted(accels)})
    return accels
