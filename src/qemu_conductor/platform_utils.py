"""Host platform detection and emulator process handles.

Uses psutil's OS constants for platform identification and wraps asyncio
subprocesses with psutil for PID-reuse safe signalling.
"""

import asyncio
import contextlib
import os
import sys
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil


class HostOS(Enum):
    """Host operating systems with a native QEMU accelerator."""

    LINUX = auto()
    """Linux (KVM)."""

    WINDOWS = auto()
    """Windows (WHPX, Windows Hypervisor Platform)."""

    MACOS = auto()
    """macOS (HVF, Hypervisor.framework)."""

    UNKNOWN = auto()
    """Anything else; only software emulation is assumed to work."""


@cache
def detect_host_os() -> HostOS:
    """Detect the current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.WINDOWS:
        return HostOS.WINDOWS
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


def get_data_dir() -> Path:
    """Per-user data directory for downloaded media.

    Detection order:
    1. QEMU_CONDUCTOR_DATA_DIR environment variable
    2. Platform default:
       - Linux: ~/.local/share/qemu-conductor
       - macOS: ~/Library/Application Support/qemu-conductor
       - Windows: %APPDATA%/qemu-conductor
    """
    if env_path := os.environ.get("QEMU_CONDUCTOR_DATA_DIR"):
        return Path(env_path)
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "qemu-conductor"
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / "qemu-conductor"
    return Path.home() / ".local" / "share" / "qemu-conductor"


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process so that a signal
    sent after the emulator exited cannot hit an unrelated process that
    inherited the PID.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None while running)."""
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def is_running(self) -> bool:
        """Check if the process is still running (PID-reuse safe).

        The psutil call runs in a worker thread so a stuck /proc read cannot
        stall the event loop.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self.async_proc.wait()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit, raising TimeoutError after `timeout` seconds.

        Pipes are drained by the supervisor's monitor task, so a plain
        wait() cannot deadlock on a full pipe buffer here.
        """
        return await asyncio.wait_for(self.async_proc.wait(), timeout=timeout)

    async def terminate(self) -> None:
        """Request graceful termination (SIGTERM; TerminateProcess on Windows)."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        elif self.async_proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.terminate()

    async def kill(self) -> None:
        """Force kill (SIGKILL)."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        elif self.async_proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.kill()
