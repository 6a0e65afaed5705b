"""QEMU command line builder.

Turns a VmDescriptor plus settings into the emulator argument vector. The
builder is pure: identical inputs always yield the identical list, because
the exact command is shown to users for diagnostics.
"""

import shlex
from pathlib import PurePath

from qemu_conductor._logging import get_logger
from qemu_conductor.accel import AccelBackend
from qemu_conductor.constants import VNC_BASE_PORT, VNC_MAX_PORT
from qemu_conductor.models import ApplianceAccel, DisplayMode, NetworkMode, VmDescriptor
from qemu_conductor.platform_utils import HostOS, detect_host_os
from qemu_conductor.settings import Settings

logger = get_logger(__name__)

_DISK_FORMATS: dict[str, str] = {
    ".qcow2": "qcow2",
    ".vmdk": "vmdk",
    ".vdi": "vdi",
    ".vhdx": "vhdx",
    ".vpc": "vpc",
    ".vhd": "vpc",
}

_ACCEL_FLAGS = ("-accel", "--accel")


def resolve_emulator_binary(settings: Settings) -> str:
    """Explicit emulator path from settings, else qemu-system-<arch> on PATH."""
    if settings.emulator_path:
        return settings.emulator_path
    return f"qemu-system-{settings.emulator_arch}"


def infer_disk_format(disk_path: str) -> str:
    """Map a disk image extension to a QEMU format name (raw when unknown)."""
    return _DISK_FORMATS.get(PurePath(disk_path).suffix.lower(), "raw")


def display_index_for_port(port: int | None) -> int:
    """Convert a VNC TCP port to the display index QEMU expects.

    Ports outside [5900, 5999] map to index 0.
    """
    if port is None:
        logger.debug("No VNC port supplied, using display index 0")
        return 0
    if not VNC_BASE_PORT <= port <= VNC_MAX_PORT:
        logger.warning(
            "VNC port out of range, using display index 0",
            extra={"port": port, "floor": VNC_BASE_PORT, "ceiling": VNC_MAX_PORT},
        )
        return 0
    return port - VNC_BASE_PORT


def choose_backend(descriptor: VmDescriptor, resolved: AccelBackend, forced: bool = False) -> AccelBackend:
    """Effective backend for a launch.

    A forced backend (the software-emulation retry) always wins. Otherwise an
    appliance guest's explicit accelerator override replaces the resolved one.
    """
    if forced:
        return resolved
    if descriptor.is_appliance and descriptor.appliance_accel is not ApplianceAccel.AUTO:
        return AccelBackend(descriptor.appliance_accel.value)
    return resolved


def effective_display_mode(descriptor: VmDescriptor, settings: Settings) -> DisplayMode:
    """Descriptor's display mode, or vnc/none depending on auto_start_vnc."""
    if descriptor.display_mode is not None:
        return descriptor.display_mode
    return DisplayMode.VNC if settings.auto_start_vnc else DisplayMode.NONE


def strip_accel_args(args: list[str]) -> list[str]:
    """Drop acceleration flags (and their values) from a user argument list."""
    kept: list[str] = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if arg in _ACCEL_FLAGS:
            skip_next = True
            continue
        if arg.startswith(("-accel=", "--accel=")) or arg == "-enable-kvm":
            continue
        kept.append(arg)
    return kept


def build_qemu_args(  # noqa: PLR0912
    descriptor: VmDescriptor,
    settings: Settings,
    backend: AccelBackend,
    host_os: HostOS | None = None,
    *,
    display_port: int | None = None,
    display_mode: DisplayMode | None = None,
    forced: bool = False,
) -> list[str]:
    """Build the emulator argument vector (binary excluded).

    Args:
        descriptor: VM to launch
        settings: Global settings (extra args, auto VNC default)
        backend: Backend resolved by the AccelerationSelector
        host_os: Host OS for the windowed display backend (detected if None)
        display_port: VNC port allocated for this launch
        display_mode: Effective display mode (derived from descriptor/settings if None)
        forced: Backend must be used as-is, ignoring appliance overrides

    Returns:
        Ordered argument list
    """
    host_os = host_os if host_os is not None else detect_host_os()
    mode = display_mode if display_mode is not None else effective_display_mode(descriptor, settings)
    accel = choose_backend(descriptor, backend, forced=forced)

    args: list[str] = ["-accel", accel.value]

    if not descriptor.is_appliance:
        args.extend(["-machine", "q35"])

    args.extend(["-m", str(descriptor.memory_mb), "-smp", str(descriptor.cpus)])

    # -cpu host requires a hardware accelerator
    if accel is not AccelBackend.TCG:
        args.extend(["-cpu", "host"])

    if descriptor.disk_path:
        if descriptor.uses_virtio:
            disk_format = descriptor.disk_format or infer_disk_format(descriptor.disk_path)
            args.extend(["-drive", f"file={descriptor.disk_path},if=virtio,format={disk_format},cache=writeback"])
        else:
            args.extend(["-hda", descriptor.disk_path])

    if descriptor.install_media:
        args.extend(["-cdrom", descriptor.install_media])
    if descriptor.boot_order:
        args.extend(["-boot", descriptor.boot_order])

    if descriptor.network is not None:
        if descriptor.network.mode is NetworkMode.BRIDGE and descriptor.network.bridge:
            args.extend(["-netdev", f"bridge,id=net0,br={descriptor.network.bridge}"])
        else:
            args.extend(["-netdev", "user,id=net0"])
        nic = "virtio-net-pci" if descriptor.uses_virtio else "e1000"
        args.extend(["-device", f"{nic},netdev=net0"])

    if mode.uses_vnc:
        args.extend(["-vnc", f":{display_index_for_port(display_port)}"])
    elif mode is DisplayMode.GUI:
        args.extend(["-display", "cocoa" if host_os is HostOS.MACOS else "gtk"])
    else:
        args.extend(["-display", "none"])
        if not descriptor.is_appliance:
            args.extend(["-vga", "std"])

    if descriptor.is_appliance:
        args.extend(
            [
                "-machine",
                "type=q35",
                "-device",
                "virtio-vga",
                "-device",
                "virtio-tablet",
                "-device",
                "virtio-keyboard",
                "-audiodev",
                "none,id=snd0",
                "-device",
                "ES1370,audiodev=snd0",
            ]
        )
    else:
        args.extend(descriptor.extra_fragments)

    args.extend(strip_accel_args(settings.extra_args.split()))
    return args


def format_command(binary: str, args: list[str]) -> str:
    """Shell-quoted rendering of the full command line."""
    return shlex.join([binary, *args])
