"""qemu-conductor: launch and supervise QEMU virtual machines.

Turns declarative VM descriptors into QEMU invocations, supervises the
emulator processes, and falls back to software emulation once when the
hardware accelerator fails.

Quick Start:
    ```python
    from qemu_conductor import VmDescriptor, VmSupervisor

    vm = VmDescriptor(id="win11", memory_mb=4096, cpus=4, disk_path="/vms/win11.qcow2")

    async with VmSupervisor() as supervisor:
        supervisor.subscribe(print)
        result = await supervisor.start(vm)
        print(result.display_port)  # 5900
        outcome = await supervisor.wait(vm.id)
    ```

Downloads:
    ```python
    from qemu_conductor import TransferManager

    async with TransferManager() as transfers:
        path = await transfers.download(url, "/isos/virtio-win.iso", on_progress=print)
    ```

Requirements:
    - QEMU with KVM (Linux), WHPX (Windows) or HVF (macOS); tcg works everywhere
    - Python 3.12+
"""

from qemu_conductor.accel import AccelBackend, AccelerationSelector
from qemu_conductor.events import VmError, VmEvent, VmOutput, VmStarted, VmStopped
from qemu_conductor.exceptions import (
    AccelerationFaultError,
    AccelerationInitError,
    AccelerationRuntimeError,
    AlreadyRunningError,
    ConductorError,
    FallbackExhaustedError,
    MediaNotFoundError,
    MissingRedirectTargetError,
    PermanentError,
    SpawnFailedError,
    TooManyRedirectsError,
    TransferError,
    TransferHttpError,
    TransientError,
    VmNotFoundError,
)
from qemu_conductor.fault_classifier import DiagnosticWatcher, FaultKind, classify
from qemu_conductor.media import MediaKind, fetch_media
from qemu_conductor.models import (
    DisplayMode,
    ExitOutcome,
    GuestClass,
    MediaResult,
    NetworkConfig,
    NetworkMode,
    RunningVm,
    StartResult,
    TransferProgress,
    VmDescriptor,
    VmStatus,
)
from qemu_conductor.port_pool import VncPortPool
from qemu_conductor.qemu_cmd import build_qemu_args
from qemu_conductor.settings import Settings
from qemu_conductor.supervisor import VmSupervisor
from qemu_conductor.transfer import TransferManager

__all__ = [
    "AccelBackend",
    "AccelerationFaultError",
    "AccelerationInitError",
    "AccelerationRuntimeError",
    "AccelerationSelector",
    "AlreadyRunningError",
    "ConductorError",
    "DiagnosticWatcher",
    "DisplayMode",
    "ExitOutcome",
    "FallbackExhaustedError",
    "FaultKind",
    "GuestClass",
    "MediaKind",
    "MediaNotFoundError",
    "MediaResult",
    "MissingRedirectTargetError",
    "NetworkConfig",
    "NetworkMode",
    "PermanentError",
    "RunningVm",
    "Settings",
    "SpawnFailedError",
    "StartResult",
    "TooManyRedirectsError",
    "TransferError",
    "TransferHttpError",
    "TransferManager",
    "TransferProgress",
    "TransientError",
    "VmDescriptor",
    "VmError",
    "VmEvent",
    "VmNotFoundError",
    "VmOutput",
    "VmStarted",
    "VmStatus",
    "VmStopped",
    "VmSupervisor",
    "build_qemu_args",
    "classify",
    "fetch_media",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qemu-conductor")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
