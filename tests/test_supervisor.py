"""Tests for VmSupervisor.

The emulator is replaced by scripted FakeProcess objects returned from a
patched asyncio.create_subprocess_exec; everything else (port pool,
acceleration selector, command builder, output draining, classification,
tenacity retry loop) is real.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import TypeVar
from unittest.mock import AsyncMock, patch

import pytest
from tenacity import RetryCallState

from qemu_conductor.accel import AccelBackend
from qemu_conductor.events import VmError, VmEvent, VmOutput, VmStarted, VmStopped
from qemu_conductor.exceptions import (
    AccelerationInitError,
    AccelerationRuntimeError,
    AlreadyRunningError,
    FallbackExhaustedError,
    SpawnFailedError,
    VmNotFoundError,
)
from qemu_conductor.fault_classifier import FaultKind
from qemu_conductor.models import DisplayMode, VmDescriptor
from qemu_conductor.platform_utils import HostOS
from qemu_conductor.settings import Settings
from qemu_conductor.supervisor import VmSupervisor

KVM_INIT_FAILURE = "qemu-system-x86_64: -accel kvm: failed to initialize kvm: No such file or directory\n"
WHPX_RUNTIME_FAILURE = "qemu-system-x86_64: WHPX: Unexpected VP exit code 4\n"

# ============================================================================
# Helpers
# ============================================================================


def _spawner(*results: object) -> AsyncMock:
    """AsyncMock for create_subprocess_exec returning/raising results in order."""
    return AsyncMock(side_effect=list(results))


def _patch_spawn(mock: AsyncMock):  # noqa: ANN202
    return patch("qemu_conductor.supervisor.asyncio.create_subprocess_exec", new=mock)


def _argv(mock: AsyncMock, call: int = 0) -> list[str]:
    """Emulator arguments (binary excluded) of the n-th spawn."""
    return list(mock.call_args_list[call].args[1:])


def _flag_value(argv: list[str], flag: str) -> str:
    return argv[argv.index(flag) + 1]


T = TypeVar("T")


def _of_type(events: list[VmEvent], kind: type[T]) -> list[T]:
    return [e for e in events if isinstance(e, kind)]


@pytest.fixture
async def supervisor(settings: Settings, events: list[VmEvent]) -> AsyncGenerator[VmSupervisor, None]:
    sup = VmSupervisor(settings, host_os=HostOS.LINUX)
    sup.subscribe(events.append)
    yield sup
    await sup.shutdown()


# ============================================================================
# Start
# ============================================================================


class TestStart:
    """Tests for start() and the process registry."""

    async def test_start_returns_process_details(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        """start() reports pid, display port and the exact command."""
        proc = fake_process(auto_exit=False)
        mock = _spawner(proc)
        with _patch_spawn(mock):
            result = await supervisor.start(make_descriptor())

        assert result.pid == proc.pid
        assert result.display_port == 5900
        assert result.display_mode is DisplayMode.VNC
        assert _flag_value(result.argv, "-vnc") == ":0"
        assert result.command.startswith("qemu-system-x86_64 -accel kvm")
        assert mock.call_args_list[0].args[0] == "qemu-system-x86_64"

        status = supervisor.status("vm-1")
        assert status.running is True
        assert status.pid == proc.pid

        started = _of_type(events, VmStarted)
        assert len(started) == 1
        assert started[0].argv == result.argv

    async def test_second_start_of_running_id_rejected(
        self, supervisor: VmSupervisor, fake_process, make_descriptor
    ) -> None:
        """A running id cannot be started again."""
        with _patch_spawn(_spawner(fake_process(auto_exit=False))) as mock:
            await supervisor.start(make_descriptor())
            with pytest.raises(AlreadyRunningError):
                await supervisor.start(make_descriptor())
        assert mock.await_count == 1

    async def test_concurrent_starts_of_one_id(self, supervisor: VmSupervisor, fake_process, make_descriptor) -> None:
        """Two simultaneous starts of one id: exactly one wins."""
        with _patch_spawn(_spawner(fake_process(auto_exit=False), fake_process(auto_exit=False))) as mock:
            results = await asyncio.gather(
                supervisor.start(make_descriptor()),
                supervisor.start(make_descriptor()),
                return_exceptions=True,
            )
        assert sum(isinstance(r, AlreadyRunningError) for r in results) == 1
        assert mock.await_count == 1

    async def test_two_vnc_vms_get_consecutive_display_indexes(
        self, supervisor: VmSupervisor, fake_process, make_descriptor
    ) -> None:
        """Auto-allocated VNC ports map to :0 then :1."""
        mock = _spawner(fake_process(auto_exit=False), fake_process(auto_exit=False))
        with _patch_spawn(mock):
            first = await supervisor.start(make_descriptor("vm-a", display_mode="vnc"))
            second = await supervisor.start(make_descriptor("vm-b", display_mode="vnc"))

        assert (first.display_port, second.display_port) == (5900, 5901)
        assert _flag_value(_argv(mock, 0), "-vnc") == ":0"
        assert _flag_value(_argv(mock, 1), "-vnc") == ":1"

    async def test_preferred_display_port_honored(
        self, supervisor: VmSupervisor, fake_process, make_descriptor
    ) -> None:
        with _patch_spawn(_spawner(fake_process(auto_exit=False))):
            result = await supervisor.start(make_descriptor(display_mode="embedded-vnc", display_port=5905))
        assert result.display_port == 5905
        assert _flag_value(result.argv, "-vnc") == ":5"

    async def test_headless_vm_gets_no_port(self, supervisor: VmSupervisor, fake_process, make_descriptor) -> None:
        with _patch_spawn(_spawner(fake_process(auto_exit=False))):
            result = await supervisor.start(make_descriptor(display_mode="none"))
        assert result.display_port is None
        assert _flag_value(result.argv, "-display") == "none"
        assert len(supervisor.ports) == 0

    async def test_display_mode_defaults_from_settings(
        self, settings: Settings, fake_process, make_descriptor
    ) -> None:
        """Without a display mode, auto_start_vnc=False means headless."""
        sup = VmSupervisor(settings.model_copy(update={"auto_start_vnc": False}), host_os=HostOS.LINUX)
        async with sup:
            with _patch_spawn(_spawner(fake_process(auto_exit=False))):
                result = await sup.start(make_descriptor())
        assert result.display_mode is DisplayMode.NONE
        assert "-vnc" not in result.argv

    async def test_spawn_failure_raises_and_releases_port(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        """A missing binary surfaces as SpawnFailedError and leaves no state behind."""
        mock = _spawner(FileNotFoundError(2, "No such file or directory"), fake_process(auto_exit=False))
        with _patch_spawn(mock):
            with pytest.raises(SpawnFailedError, match="No such file"):
                await supervisor.start(make_descriptor())

            assert supervisor.status("vm-1").running is False
            assert len(supervisor.ports) == 0
            assert _of_type(events, VmError)

            # Same id can be started once the environment is fixed
            result = await supervisor.start(make_descriptor())
        assert result.display_port == 5900


# ============================================================================
# Stop
# ============================================================================


class TestStop:
    """Tests for stop()."""

    async def test_stop_unknown_id_mutates_nothing(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        with _patch_spawn(_spawner(fake_process(auto_exit=False))):
            await supervisor.start(make_descriptor())
        before = (supervisor.ports.in_use(), len(events), [vm.vm_id for vm in supervisor.list_running()])

        with pytest.raises(VmNotFoundError):
            await supervisor.stop("nope")

        after = (supervisor.ports.in_use(), len(events), [vm.vm_id for vm in supervisor.list_running()])
        assert before == after

    async def test_stop_terminates_and_releases(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        """stop() sends SIGTERM, frees the port and emits exactly one stopped event."""
        proc = fake_process(auto_exit=False)
        with _patch_spawn(_spawner(proc)):
            await supervisor.start(make_descriptor())

        waiter = asyncio.create_task(supervisor.wait("vm-1"))
        await asyncio.sleep(0)
        await supervisor.stop("vm-1")

        assert proc.terminated is True
        assert proc.killed is False
        assert supervisor.status("vm-1").running is False
        assert len(supervisor.ports) == 0

        outcome = await asyncio.wait_for(waiter, timeout=5)
        assert outcome.stopped is True
        assert outcome.exit_code == -15
        assert outcome.fell_back is False
        assert len(_of_type(events, VmStopped)) == 1

    async def test_restart_after_stop(self, supervisor: VmSupervisor, fake_process, make_descriptor) -> None:
        """An id is free again as soon as stop() returns."""
        with _patch_spawn(_spawner(fake_process(auto_exit=False), fake_process(auto_exit=False))) as mock:
            await supervisor.start(make_descriptor())
            await supervisor.stop("vm-1")
            result = await supervisor.start(make_descriptor())
        assert mock.await_count == 2
        assert supervisor.status("vm-1").pid == result.pid

    async def test_natural_exit_emits_stopped(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        with _patch_spawn(_spawner(fake_process(exit_code=0))):
            await supervisor.start(make_descriptor())
            outcome = await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert outcome.exit_code == 0
        assert outcome.stopped is False
        assert len(_of_type(events, VmStopped)) == 1
        assert supervisor.list_running() == []
        assert len(supervisor.ports) == 0


# ============================================================================
# Software-Emulation Fallback
# ============================================================================


class TestFallback:
    """Tests for the single tcg retry after an acceleration fault."""

    async def test_init_fault_retries_once_with_tcg(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        mock = _spawner(fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1), fake_process(exit_code=0))
        with _patch_spawn(mock):
            await supervisor.start(make_descriptor())
            outcome = await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert mock.await_count == 2
        assert _flag_value(_argv(mock, 0), "-accel") == "kvm"
        retry_argv = _argv(mock, 1)
        assert _flag_value(retry_argv, "-accel") == "tcg"
        assert "-cpu" not in retry_argv

        assert outcome.fell_back is True
        assert outcome.exit_code == 0
        assert len(_of_type(events, VmStarted)) == 2
        assert supervisor.selector.failure_count == 0

    async def test_fault_in_retry_is_not_retried(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        """The same signature under tcg ends the chain with FallbackExhaustedError."""
        mock = _spawner(
            fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1),
            fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1),
        )
        with _patch_spawn(mock):
            await supervisor.start(make_descriptor())
            with pytest.raises(FallbackExhaustedError) as exc_info:
                await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert mock.await_count == 2
        assert exc_info.value.exit_code == 1
        assert any("software emulation as well" in e.message for e in _of_type(events, VmError))
        # Both attempts count; a failed retry does not reset the counter
        assert supervisor.selector.failure_count == 2

    async def test_runtime_fault_terminates_and_falls_back(
        self, supervisor: VmSupervisor, fake_process, make_descriptor
    ) -> None:
        """A runtime fault on a live process ends it, then the chain retries."""
        hung = fake_process(stderr_text=WHPX_RUNTIME_FAILURE, auto_exit=False)
        mock = _spawner(hung, fake_process(exit_code=0))
        with _patch_spawn(mock):
            await supervisor.start(make_descriptor())
            outcome = await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert hung.terminated is True
        assert outcome.fell_back is True
        assert _flag_value(_argv(mock, 1), "-accel") == "tcg"

    async def test_fault_split_across_reads_detected(
        self, supervisor: VmSupervisor, fake_process, make_descriptor
    ) -> None:
        proc = fake_process(stderr_text="qemu: WHPX: failed to ", auto_exit=False)
        mock = _spawner(proc, fake_process(exit_code=0))
        with _patch_spawn(mock):
            await supervisor.start(make_descriptor())
            await asyncio.sleep(0.01)
            proc.emit_stderr("initialize\n")
            proc.finish(1)
            outcome = await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)
        assert outcome.fell_back is True

    async def test_disabled_acceleration_on_windows_is_not_retried(
        self, settings: Settings, fake_process, make_descriptor
    ) -> None:
        """Forced tcg has nothing to fall back to."""
        sup = VmSupervisor(
            settings.model_copy(update={"disable_hardware_acceleration": True}),
            host_os=HostOS.WINDOWS,
        )
        mock = _spawner(fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1))
        async with sup:
            with _patch_spawn(mock):
                await sup.start(make_descriptor())
                outcome = await asyncio.wait_for(sup.wait("vm-1"), timeout=5)

        assert mock.await_count == 1
        assert _flag_value(_argv(mock), "-accel") == "tcg"
        assert outcome.fault is FaultKind.ACCEL_INIT
        assert outcome.fell_back is False

    async def test_appliance_accel_override_is_not_retried(
        self, supervisor: VmSupervisor, fake_process, make_descriptor
    ) -> None:
        mock = _spawner(fake_process(stderr_text="WHPX: failed to initialize\n", exit_code=1))
        with _patch_spawn(mock):
            await supervisor.start(make_descriptor(guest_class="appliance", appliance_accel="whpx"))
            outcome = await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert mock.await_count == 1
        assert _flag_value(_argv(mock), "-accel") == "whpx"
        assert outcome.fell_back is False

    async def test_generic_error_is_advisory(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        """Generic errors never trigger a retry; the exit code is reported."""
        mock = _spawner(fake_process(stderr_text="qemu: could not open disk: error: Permission denied\n", exit_code=1))
        with _patch_spawn(mock):
            await supervisor.start(make_descriptor())
            outcome = await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert mock.await_count == 1
        assert outcome.fault is FaultKind.GENERIC
        assert outcome.exit_code == 1
        messages = [e.message for e in _of_type(events, VmError)]
        assert any("Permission denied" in m for m in messages)
        assert "QEMU exited with code 1" in messages

    async def test_advisory_after_repeated_failures(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        supervisor.selector.failure_count = 2
        mock = _spawner(fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1), fake_process(exit_code=0))
        with _patch_spawn(mock):
            await supervisor.start(make_descriptor())
            await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert any("3 times in a row" in e.message for e in _of_type(events, VmError))
        assert supervisor.selector.failure_count == 0

    async def test_advisory_when_fallback_keeps_failing(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        """Chains where kvm and tcg both fault accumulate failures until the advisory fires."""
        for _ in range(3):
            mock = _spawner(
                fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1),
                fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1),
            )
            with _patch_spawn(mock):
                await supervisor.start(make_descriptor())
                with pytest.raises(FallbackExhaustedError):
                    await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert supervisor.selector.failure_count == 6
        assert any("times in a row" in e.message for e in _of_type(events, VmError))

    async def test_failed_retry_then_successful_retry_resets_counter(
        self, supervisor: VmSupervisor, fake_process, make_descriptor
    ) -> None:
        failing = _spawner(
            fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1),
            fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1),
        )
        with _patch_spawn(failing):
            await supervisor.start(make_descriptor())
            with pytest.raises(FallbackExhaustedError):
                await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)
        assert supervisor.selector.failure_count == 2

        recovering = _spawner(fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1), fake_process(exit_code=0))
        with _patch_spawn(recovering):
            await supervisor.start(make_descriptor())
            await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)
        assert supervisor.selector.failure_count == 0

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (AccelerationRuntimeError("runtime", fault=FaultKind.ACCEL_RUNTIME), 1.5),
            (AccelerationInitError("init", fault=FaultKind.ACCEL_INIT), 0.25),
        ],
    )
    def test_runtime_faults_wait_longer_before_retry(
        self, settings: Settings, error: Exception, expected: float
    ) -> None:
        sup = VmSupervisor(
            settings.model_copy(
                update={"fallback_init_delay_seconds": 0.25, "fallback_runtime_delay_seconds": 1.5}
            ),
            host_os=HostOS.LINUX,
        )
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.set_exception((type(error), error, None))

        assert sup._fallback_wait(state) == expected

    def test_default_fallback_delays(self) -> None:
        settings = Settings(emulator_path="qemu-system-x86_64")
        assert settings.fallback_runtime_delay_seconds > settings.fallback_init_delay_seconds

    async def test_stop_during_fallback_delay_cancels_retry(
        self, settings: Settings, fake_process, make_descriptor
    ) -> None:
        seen: list[VmEvent] = []
        sup = VmSupervisor(settings.model_copy(update={"fallback_init_delay_seconds": 0.5}), host_os=HostOS.LINUX)
        sup.subscribe(seen.append)
        mock = _spawner(fake_process(stderr_text=KVM_INIT_FAILURE, exit_code=1), fake_process(exit_code=0))
        async with sup:
            with _patch_spawn(mock):
                await sup.start(make_descriptor())
                waiter = asyncio.create_task(sup.wait("vm-1"))
                async with asyncio.timeout(5):
                    while not _of_type(seen, VmStopped):
                        await asyncio.sleep(0.01)

                await sup.stop("vm-1")
                outcome = await asyncio.wait_for(waiter, timeout=5)

        assert mock.await_count == 1
        assert outcome.stopped is True
        assert outcome.fell_back is False


# ============================================================================
# Output and Events
# ============================================================================


class TestOutputEvents:
    """Tests for output streaming and listener handling."""

    async def test_output_streamed_when_enabled(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        with _patch_spawn(_spawner(fake_process(stdout_text="SeaBIOS (version 1.16)\n"))):
            await supervisor.start(make_descriptor())
            await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        text = "".join(e.text for e in _of_type(events, VmOutput))
        assert "SeaBIOS" in text

    async def test_output_suppressed_when_disabled(
        self, settings: Settings, fake_process, make_descriptor
    ) -> None:
        seen: list[VmEvent] = []
        sup = VmSupervisor(settings.model_copy(update={"show_output": False}), host_os=HostOS.LINUX)
        sup.subscribe(seen.append)
        async with sup:
            with _patch_spawn(_spawner(fake_process(stdout_text="booting\n", stderr_text="warning: foo\n"))):
                await sup.start(make_descriptor())
                await asyncio.wait_for(sup.wait("vm-1"), timeout=5)
        assert _of_type(seen, VmOutput) == []

    async def test_command_banner_when_show_args(
        self, settings: Settings, fake_process, make_descriptor
    ) -> None:
        seen: list[VmEvent] = []
        sup = VmSupervisor(settings.model_copy(update={"show_args": True}), host_os=HostOS.LINUX)
        sup.subscribe(seen.append)
        async with sup:
            with _patch_spawn(_spawner(fake_process(stdout_text="booting\n"))):
                result = await sup.start(make_descriptor())
                await asyncio.wait_for(sup.wait("vm-1"), timeout=5)

        outputs = _of_type(seen, VmOutput)
        assert outputs[0].text == f"QEMU command: {result.command}\n"

    async def test_failing_listener_does_not_break_supervision(
        self, supervisor: VmSupervisor, fake_process, make_descriptor, events: list[VmEvent]
    ) -> None:
        def explode(event: VmEvent) -> None:
            raise RuntimeError("listener bug")

        supervisor.subscribe(explode)
        with _patch_spawn(_spawner(fake_process(exit_code=0))):
            await supervisor.start(make_descriptor())
            outcome = await asyncio.wait_for(supervisor.wait("vm-1"), timeout=5)

        assert outcome.exit_code == 0
        assert _of_type(events, VmStarted)

    async def test_unsubscribe(self, supervisor: VmSupervisor, fake_process, make_descriptor) -> None:
        seen: list[VmEvent] = []
        unsubscribe = supervisor.subscribe(seen.append)
        unsubscribe()
        with _patch_spawn(_spawner(fake_process(auto_exit=False))):
            await supervisor.start(make_descriptor())
        assert seen == []


# ============================================================================
# Queries, Settings, Shutdown
# ============================================================================


class TestQueries:
    """Tests for status(), list_running(), wait() and attach_drivers()."""

    async def test_status_of_unknown_id(self, supervisor: VmSupervisor) -> None:
        status = supervisor.status("ghost")
        assert status.running is False
        assert status.pid is None

    async def test_list_running(self, supervisor: VmSupervisor, fake_process, make_descriptor) -> None:
        with _patch_spawn(_spawner(fake_process(auto_exit=False), fake_process(auto_exit=False))):
            await supervisor.start(make_descriptor("vm-a", name="Windows 11"))
            await supervisor.start(make_descriptor("vm-b", display_mode="gui"))

        running = {vm.vm_id: vm for vm in supervisor.list_running()}
        assert set(running) == {"vm-a", "vm-b"}
        assert running["vm-a"].name == "Windows 11"
        assert running["vm-b"].display_port is None

    async def test_wait_unknown_id(self, supervisor: VmSupervisor) -> None:
        with pytest.raises(VmNotFoundError):
            await supervisor.wait("ghost")

    async def test_attach_drivers(self, supervisor: VmSupervisor, make_descriptor) -> None:
        original = make_descriptor(disk_path="/vms/win.qcow2")
        updated = supervisor.attach_drivers(original, "/isos/virtio-win.iso")

        assert updated.drivers_attached is True
        assert updated.install_media == "/isos/virtio-win.iso"
        assert original.drivers_attached is False

    async def test_attach_drivers_refused_while_running(
        self, supervisor: VmSupervisor, fake_process, make_descriptor
    ) -> None:
        with _patch_spawn(_spawner(fake_process(auto_exit=False))):
            await supervisor.start(make_descriptor())
        with pytest.raises(AlreadyRunningError):
            supervisor.attach_drivers(make_descriptor(), "/isos/virtio-win.iso")

    async def test_update_settings_invalidates_backend(self, supervisor: VmSupervisor, settings: Settings) -> None:
        assert supervisor.selector.resolve() is AccelBackend.KVM
        supervisor.update_settings(settings.model_copy(update={"emulator_path": "/opt/qemu/bin/qemu-system-x86_64"}))
        assert supervisor.selector.cached is None
        assert supervisor.settings.emulator_path == "/opt/qemu/bin/qemu-system-x86_64"

    async def test_update_settings_arch_change_invalidates_backend(self, settings: Settings) -> None:
        """With no explicit path, the derived binary decides whether the cache still applies."""
        derived = settings.model_copy(update={"emulator_path": None, "emulator_arch": "x86_64"})
        sup = VmSupervisor(derived, host_os=HostOS.LINUX)
        sup.selector.resolve()
        sup.selector.failure_count = 2

        sup.update_settings(derived.model_copy(update={"emulator_arch": "aarch64"}))

        assert sup.selector.emulator_path == "qemu-system-aarch64"
        assert sup.selector.cached is None
        assert sup.selector.failure_count == 0

    async def test_update_settings_same_binary_keeps_backend(self, supervisor: VmSupervisor, settings: Settings) -> None:
        supervisor.selector.resolve()
        supervisor.update_settings(settings.model_copy(update={"show_output": False}))
        assert supervisor.selector.cached is AccelBackend.KVM

    async def test_shutdown_terminates_everything(
        self, supervisor: VmSupervisor, fake_process, make_descriptor: Callable[..., VmDescriptor]
    ) -> None:
        procs = [fake_process(auto_exit=False), fake_process(auto_exit=False)]
        with _patch_spawn(_spawner(*procs)):
            await supervisor.start(make_descriptor("vm-a"))
            await supervisor.start(make_descriptor("vm-b"))

        await supervisor.shutdown()

        assert all(p.terminated for p in procs)
        assert supervisor.list_running() == []
        assert len(supervisor.ports) == 0
