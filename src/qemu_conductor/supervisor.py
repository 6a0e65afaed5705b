"""Emulator process supervision with software-emulation fallback.

VmSupervisor owns every piece of mutable orchestration state: the running
process registry, the VNC port pool and the acceleration selector. All of it
is touched only from the event loop thread, without locks.

Each start() runs a *chain*: the original launch plus at most one retry.
When an attempt ends with a classified acceleration fault, the chain waits
briefly and relaunches the same descriptor under tcg. The retry policy is a
tenacity AsyncRetrying loop whose retry predicate is the session's
eligibility check.

Lifecycle per chain:

    Starting ──spawn──> Running ──exit──> Exited(code)
        │                  │
        │                  └─accel fault──> [delay] ──> Starting (tcg, once)
        └─spawn error──> Failed(SpawnFailedError)
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from types import TracebackType
from typing import Self

from tenacity import AsyncRetrying, RetryCallState, before_sleep_log, retry_if_exception, stop_after_attempt

from qemu_conductor._logging import get_logger
from qemu_conductor.accel import AccelBackend, AccelerationSelector
from qemu_conductor.constants import FALLBACK_MAX_ATTEMPTS
from qemu_conductor.events import EventBus, EventListener, VmError, VmOutput, VmStarted, VmStopped
from qemu_conductor.exceptions import (
    AccelerationFaultError,
    AccelerationInitError,
    AccelerationRuntimeError,
    AlreadyRunningError,
    ConductorError,
    FallbackExhaustedError,
    SpawnFailedError,
    VmNotFoundError,
)
from qemu_conductor.fault_classifier import DiagnosticWatcher, FaultKind
from qemu_conductor.models import (
    ApplianceAccel,
    DisplayMode,
    ExitOutcome,
    RunningVm,
    StartResult,
    VmDescriptor,
    VmStatus,
)
from qemu_conductor.platform_utils import HostOS, ProcessWrapper
from qemu_conductor.port_pool import VncPortPool
from qemu_conductor.qemu_cmd import (
    build_qemu_args,
    choose_backend,
    effective_display_mode,
    format_command,
    resolve_emulator_binary,
)
from qemu_conductor.resource_cleanup import cleanup_process
from qemu_conductor.settings import Settings
from qemu_conductor.subprocess_utils import drain_subprocess_output, log_task_exception

logger = get_logger(__name__)


@dataclass(eq=False)
class _ProcessEntry:
    """One spawned emulator process."""

    vm_id: str
    name: str
    process: ProcessWrapper
    display_port: int | None
    display_mode: DisplayMode
    argv: list[str]
    command: str
    backend: AccelBackend
    exited: asyncio.Future[int]
    watcher: DiagnosticWatcher = field(default_factory=DiagnosticWatcher)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stopped: bool = False
    monitor_task: asyncio.Task[None] | None = None

    def start_result(self) -> StartResult:
        return StartResult(
            vm_id=self.vm_id,
            pid=self.process.pid,
            display_port=self.display_port,
            display_mode=self.display_mode,
            argv=self.argv,
            command=self.command,
        )


@dataclass(eq=False)
class _RetrySession:
    """State of one start chain (original attempt plus optional fallback)."""

    descriptor: VmDescriptor
    launched: asyncio.Future[StartResult]
    done: asyncio.Event = field(default_factory=asyncio.Event)
    backend: AccelBackend | None = None
    forced: bool = False
    retried: bool = False
    stopped: bool = False
    outcome: ExitOutcome | None = None
    error: ConductorError | None = None

    @property
    def vm_id(self) -> str:
        return self.descriptor.id

    def may_fall_back(self, exc: BaseException) -> bool:
        """Retry predicate: one tcg retry after an acceleration fault."""
        return (
            isinstance(exc, AccelerationFaultError)
            and not self.forced
            and self.backend is not AccelBackend.TCG
            and not self.retried
            and not self.stopped
        )


class VmSupervisor:
    """Starts, stops and watches QEMU processes.

    Usage:
        async with VmSupervisor(settings) as supervisor:
            unsubscribe = supervisor.subscribe(print)
            result = await supervisor.start(descriptor)
            outcome = await supervisor.wait(result.vm_id)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        selector: AccelerationSelector | None = None,
        ports: VncPortPool | None = None,
        host_os: HostOS | None = None,
    ):
        self._settings = settings or Settings()
        self._host_os = host_os
        self._selector = selector or AccelerationSelector(
            emulator_path=resolve_emulator_binary(self._settings),
            disabled=self._settings.disable_hardware_acceleration,
            host_os=host_os,
        )
        self._ports = ports or VncPortPool()
        self._events = EventBus()
        self._entries: dict[str, _ProcessEntry] = {}
        self._sessions: dict[str, _RetrySession] = {}
        self._live: set[_ProcessEntry] = set()
        self._chains: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def selector(self) -> AccelerationSelector:
        return self._selector

    @property
    def ports(self) -> VncPortPool:
        return self._ports

    # =========================================================================
    # Public operations
    # =========================================================================

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register an event listener. Returns a callable that unsubscribes it."""
        return self._events.subscribe(listener)

    def update_settings(self, settings: Settings) -> None:
        """Swap settings. Changing the emulator or the disable flag resets acceleration state."""
        self._settings = settings
        self._selector.configure(resolve_emulator_binary(settings), settings.disable_hardware_acceleration)

    async def start(self, descriptor: VmDescriptor) -> StartResult:
        """Launch a VM and return once the emulator process exists.

        The rest of the chain (exit monitoring, the optional tcg retry) runs
        in the background; use wait() for the final outcome.

        Raises:
            AlreadyRunningError: The id has a live process or an active start
            SpawnFailedError: The OS could not create the emulator process
        """
        vm_id = descriptor.id
        if vm_id in self._entries or vm_id in self._sessions:
            raise AlreadyRunningError(f"VM {vm_id} is already running", {"vm_id": vm_id})

        # Reserved before the first await so concurrent starts of one id cannot both pass
        session = _RetrySession(descriptor=descriptor, launched=asyncio.get_running_loop().create_future())
        self._sessions[vm_id] = session

        task = asyncio.create_task(self._run_chain(session), name=f"vm-chain-{vm_id}")
        self._chains.add(task)
        task.add_done_callback(self._chains.discard)
        task.add_done_callback(log_task_exception)

        return await asyncio.shield(session.launched)

    async def stop(self, vm_id: str) -> None:
        """Send SIGTERM to a VM and forget it.

        Bookkeeping is released immediately; the process is not awaited and
        not escalated to SIGKILL. A chain waiting to retry is cancelled.

        Raises:
            VmNotFoundError: Nothing is running or starting under this id
        """
        entry = self._entries.get(vm_id)
        session = self._sessions.get(vm_id)
        if entry is None and session is None:
            raise VmNotFoundError(f"VM {vm_id} is not running", {"vm_id": vm_id})

        if session is not None:
            session.stopped = True
            del self._sessions[vm_id]
        if entry is not None:
            entry.stopped = True
            del self._entries[vm_id]
            self._ports.release(entry.display_port)
            logger.info("Stopping VM", extra={"vm_id": vm_id, "pid": entry.process.pid})
            await entry.process.terminate()

        self._events.emit(VmStopped(vm_id=vm_id))

    def status(self, vm_id: str) -> VmStatus:
        entry = self._entries.get(vm_id)
        if entry is None:
            return VmStatus(running=False)
        return VmStatus(
            running=True,
            pid=entry.process.pid,
            display_port=entry.display_port,
            display_mode=entry.display_mode,
        )

    def list_running(self) -> list[RunningVm]:
        return [
            RunningVm(
                vm_id=entry.vm_id,
                name=entry.name,
                pid=entry.process.pid,
                display_port=entry.display_port,
                display_mode=entry.display_mode,
                started_at=entry.started_at,
            )
            for entry in self._entries.values()
        ]

    async def wait(self, vm_id: str) -> ExitOutcome:
        """Wait for the active chain of a VM to finish.

        Raises:
            VmNotFoundError: No chain is active for this id
            FallbackExhaustedError: The software-emulation retry failed too
            SpawnFailedError: The retry could not be spawned
        """
        session = self._sessions.get(vm_id)
        if session is None:
            raise VmNotFoundError(f"VM {vm_id} has no active start", {"vm_id": vm_id})
        await session.done.wait()
        if session.error is not None:
            raise session.error
        if session.outcome is None:
            raise VmNotFoundError(f"VM {vm_id} ended without an outcome", {"vm_id": vm_id})
        return session.outcome

    def attach_drivers(self, descriptor: VmDescriptor, iso_path: str) -> VmDescriptor:
        """Copy of the descriptor with a paravirtualized driver ISO attached.

        The disk and NIC switch to virtio devices on the next start.

        Raises:
            AlreadyRunningError: The VM is running; devices cannot change under it
        """
        if descriptor.id in self._entries:
            raise AlreadyRunningError(
                f"Stop VM {descriptor.id} before attaching drivers",
                {"vm_id": descriptor.id, "iso_path": iso_path},
            )
        return descriptor.model_copy(update={"install_media": str(iso_path), "drivers_attached": True})

    async def shutdown(self) -> None:
        """Terminate every emulator process (SIGTERM, then SIGKILL) and clear all state."""
        for session in self._sessions.values():
            session.stopped = True
        live = list(self._live)
        for entry in live:
            entry.stopped = True
        self._sessions.clear()
        self._entries.clear()
        self._ports.clear()

        if live:
            logger.info("Shutting down emulator processes", extra={"count": len(live)})
        await asyncio.gather(
            *(
                cleanup_process(
                    entry.process,
                    "QEMU",
                    entry.vm_id,
                    term_timeout=self._settings.shutdown_term_timeout_seconds,
                )
                for entry in live
            )
        )
        pending = [*self._chains, *(entry.monitor_task for entry in live if entry.monitor_task)]
        await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Start chain
    # =========================================================================

    def _fallback_wait(self, retry_state: RetryCallState) -> float:
        """Delay before the tcg retry; runtime faults wait longer than init faults."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, AccelerationRuntimeError):
            return self._settings.fallback_runtime_delay_seconds
        return self._settings.fallback_init_delay_seconds

    async def _run_chain(self, session: _RetrySession) -> None:
        vm_id = session.vm_id
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(FALLBACK_MAX_ATTEMPTS),
                wait=self._fallback_wait,
                retry=retry_if_exception(session.may_fall_back),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    fallback = attempt.retry_state.attempt_number > 1
                    session.outcome = await self._run_attempt(session, fallback=fallback)
        except AccelerationFaultError as e:
            if session.retried:
                self._fail_chain(
                    session,
                    FallbackExhaustedError(
                        f"VM {vm_id} failed under software emulation as well: {e.message}",
                        {**e.context, "fault": e.fault.value},
                        exit_code=e.exit_code,
                    ),
                )
            else:
                # Backend was forced or already tcg, or the VM was stopped: no fallback
                session.outcome = ExitOutcome(
                    vm_id=vm_id, exit_code=e.exit_code, fault=e.fault, stopped=session.stopped
                )
                if not session.stopped:
                    self._events.emit(VmError(vm_id=vm_id, message=e.message))
        except ConductorError as e:
            self._fail_chain(session, e)
        except Exception as e:
            if not session.launched.done():
                session.launched.set_exception(e)
            raise
        finally:
            if not session.launched.done():
                session.launched.set_exception(
                    session.error or VmNotFoundError(f"VM {vm_id} was stopped before it started", {"vm_id": vm_id})
                )
            session.done.set()
            if self._sessions.get(vm_id) is session:
                del self._sessions[vm_id]
            logger.debug(
                "Start chain finished",
                extra={"vm_id": vm_id, "retried": session.retried, "error": repr(session.error)},
            )

    def _fail_chain(self, session: _RetrySession, error: ConductorError) -> None:
        session.error = error
        logger.error(error.message, extra={"vm_id": session.vm_id, **error.context})
        self._events.emit(VmError(vm_id=session.vm_id, message=error.message))
        if not session.launched.done():
            session.launched.set_exception(error)

    async def _run_attempt(self, session: _RetrySession, *, fallback: bool) -> ExitOutcome:
        """Launch once and wait for exit. Raises AccelerationFaultError on an accel fault."""
        descriptor = session.descriptor
        vm_id = descriptor.id

        if session.stopped:
            return ExitOutcome(vm_id=vm_id, exit_code=None, fell_back=session.retried, stopped=True)

        if fallback:
            session.retried = True
            session.backend, session.forced = AccelBackend.TCG, True
            self._events.emit(
                VmError(vm_id=vm_id, message="Hardware acceleration failed, retrying with software emulation (tcg)")
            )
            entry = await self._launch(session, AccelBackend.TCG, forced=True)
        else:
            resolved = self._selector.resolve()
            session.backend = choose_backend(descriptor, resolved)
            session.forced = self._selector.is_forced_software() or (
                descriptor.is_appliance and descriptor.appliance_accel is not ApplianceAccel.AUTO
            )
            entry = await self._launch(session, resolved, forced=False)

        if not session.launched.done():
            session.launched.set_result(entry.start_result())

        exit_code = await entry.exited
        fault = entry.watcher.primary_fault
        stopped = entry.stopped or session.stopped

        logger.info(
            "QEMU exited",
            extra={"vm_id": vm_id, "exit_code": exit_code, "fault": fault, "stopped": stopped},
        )

        if stopped:
            return ExitOutcome(vm_id=vm_id, exit_code=exit_code, fault=fault, fell_back=session.retried, stopped=True)

        if fault is not None and fault.is_acceleration:
            if advisory := self._selector.record_failure():
                self._events.emit(VmError(vm_id=vm_id, message=advisory))
            error_cls = AccelerationRuntimeError if fault is FaultKind.ACCEL_RUNTIME else AccelerationInitError
            raise error_cls(
                f"QEMU hit a hardware acceleration fault ({fault.value}) and exited with code {exit_code}",
                {"vm_id": vm_id, "backend": entry.backend.value, "exit_code": exit_code},
                fault=fault,
                exit_code=exit_code,
            )

        if exit_code != 0:
            self._events.emit(VmError(vm_id=vm_id, message=f"QEMU exited with code {exit_code}"))

        if fallback:
            # tcg run ended without an accelerator fault
            self._selector.record_success()

        return ExitOutcome(vm_id=vm_id, exit_code=exit_code, fault=fault, fell_back=session.retried)

    async def _launch(self, session: _RetrySession, backend: AccelBackend, *, forced: bool) -> _ProcessEntry:
        """Allocate a port, build the command, spawn and register the process."""
        descriptor = session.descriptor
        vm_id = descriptor.id
        mode = effective_display_mode(descriptor, self._settings)

        port: int | None = None
        if mode.uses_vnc:
            port = self._ports.allocate(descriptor.display_port or None)

        argv = build_qemu_args(
            descriptor,
            self._settings,
            backend,
            self._host_os,
            display_port=port,
            display_mode=mode,
            forced=forced,
        )
        binary = resolve_emulator_binary(self._settings)
        command = format_command(binary, argv)

        logger.info(
            "Starting QEMU",
            extra={"vm_id": vm_id, "binary": binary, "backend": backend.value, "display_port": port},
        )
        try:
            async_proc = await asyncio.create_subprocess_exec(
                binary,
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            self._ports.release(port)
            raise SpawnFailedError(
                f"Failed to start {binary}: {e}",
                {"vm_id": vm_id, "binary": binary, "error": str(e), "error_type": type(e).__name__},
            ) from e

        entry = _ProcessEntry(
            vm_id=vm_id,
            name=descriptor.name or vm_id,
            process=ProcessWrapper(async_proc),
            display_port=port,
            display_mode=mode,
            argv=argv,
            command=command,
            backend=choose_backend(descriptor, backend, forced=forced),
            exited=asyncio.get_running_loop().create_future(),
        )
        self._live.add(entry)

        if session.stopped:
            # stop() or shutdown() ran while the process was being created
            entry.stopped = True
            self._ports.release(port)
            await entry.process.terminate()
        else:
            self._entries[vm_id] = entry
            self._events.emit(
                VmStarted(
                    vm_id=vm_id,
                    display_port=port,
                    display_mode=mode,
                    pid=entry.process.pid,
                    argv=argv,
                    command=command,
                )
            )
            if self._settings.show_args:
                self._events.emit(VmOutput(vm_id=vm_id, text=f"QEMU command: {command}\n"))

        entry.monitor_task = asyncio.create_task(self._monitor(entry), name=f"vm-monitor-{vm_id}")
        entry.monitor_task.add_done_callback(log_task_exception)
        return entry

    # =========================================================================
    # Process monitoring
    # =========================================================================

    async def _monitor(self, entry: _ProcessEntry) -> None:
        """Drain output until EOF, then reap the process and release its resources."""
        try:
            await drain_subprocess_output(
                entry.process,
                process_name="QEMU",
                context_id=entry.vm_id,
                stdout_handler=partial(self._on_stdout, entry),
                stderr_handler=partial(self._on_stderr, entry),
            )
        finally:
            exit_code = await entry.process.wait()
            self._teardown(entry)
            if not entry.exited.done():
                entry.exited.set_result(exit_code)

    def _on_stdout(self, entry: _ProcessEntry, text: str) -> None:
        if self._settings.show_output:
            self._events.emit(VmOutput(vm_id=entry.vm_id, text=text))

    def _on_stderr(self, entry: _ProcessEntry, text: str) -> None:
        logger.debug("QEMU stderr", extra={"vm_id": entry.vm_id, "output": text.rstrip()})
        for kind in entry.watcher.feed(text):
            if kind is FaultKind.GENERIC:
                self._events.emit(VmError(vm_id=entry.vm_id, message=text.strip()))
                continue
            logger.warning(
                "Hardware acceleration fault detected",
                extra={"vm_id": entry.vm_id, "fault": kind.value, "backend": entry.backend.value},
            )
            if kind is FaultKind.ACCEL_RUNTIME and entry.process.returncode is None and not entry.stopped:
                # The guest cannot make progress; end the process so the chain can fall back
                task = asyncio.create_task(entry.process.terminate(), name=f"vm-terminate-{entry.vm_id}")
                task.add_done_callback(log_task_exception)
        if self._settings.show_output:
            self._events.emit(VmOutput(vm_id=entry.vm_id, text=text))

    def _teardown(self, entry: _ProcessEntry) -> None:
        self._live.discard(entry)
        if self._entries.get(entry.vm_id) is entry:
            del self._entries[entry.vm_id]
            self._ports.release(entry.display_port)
            self._events.emit(VmStopped(vm_id=entry.vm_id))
