"""Shared pytest fixtures for qemu-conductor tests."""

import asyncio
import itertools
from collections.abc import Callable
from pathlib import Path

import pytest

from qemu_conductor.events import VmEvent
from qemu_conductor.models import VmDescriptor
from qemu_conductor.settings import Settings

# ============================================================================
# Fake emulator processes
# ============================================================================
# Stand-ins for asyncio.subprocess.Process. PIDs start above Linux's pid_max
# so psutil.Process() raises NoSuchProcess and ProcessWrapper signals the fake
# directly. Output goes through real StreamReaders, so the supervisor's drain
# and classification code runs unmodified.

_pids = itertools.count(10_000_000)


class FakeProcess:
    """Scripted emulator process.

    With auto_exit the scripted output is followed by EOF and the exit code;
    otherwise the process runs until terminate(), kill() or finish().
    """

    def __init__(
        self,
        stdout_text: str = "",
        stderr_text: str = "",
        exit_code: int = 0,
        auto_exit: bool = True,
    ) -> None:
        self.pid = next(_pids)
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()
        if stdout_text:
            self.stdout.feed_data(stdout_text.encode())
        if stderr_text:
            self.stderr.feed_data(stderr_text.encode())
        if auto_exit:
            self.finish(exit_code)

    def emit_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode())

    def finish(self, exit_code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = exit_code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.finish(-15)

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)


@pytest.fixture
def fake_process() -> type[FakeProcess]:
    """FakeProcess class, for tests that script emulator runs."""
    return FakeProcess


# ============================================================================
# Settings / descriptors
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with no fallback delays and a temporary media directory."""
    return Settings(
        emulator_path="qemu-system-x86_64",
        extra_args="",
        auto_start_vnc=True,
        show_output=True,
        show_args=False,
        disable_hardware_acceleration=False,
        fallback_init_delay_seconds=0,
        fallback_runtime_delay_seconds=0,
        shutdown_term_timeout_seconds=0.5,
        media_dir=tmp_path / "media",
    )


@pytest.fixture
def make_descriptor() -> Callable[..., VmDescriptor]:
    """Factory for VmDescriptor with test defaults (2 GiB, 2 CPUs)."""

    def _make(vm_id: str = "vm-1", **overrides: object) -> VmDescriptor:
        fields: dict[str, object] = {"id": vm_id, "name": vm_id, "memory_mb": 2048, "cpus": 2}
        fields.update(overrides)
        return VmDescriptor.model_validate(fields)

    return _make


@pytest.fixture
def events() -> list[VmEvent]:
    """List that a supervisor listener can append to."""
    return []

