"""Data models for qemu-conductor."""

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from qemu_conductor.fault_classifier import FaultKind


class GuestClass(str, Enum):
    """Guest class. Appliance guests get a fixed paravirtualized device set."""

    GENERIC = "generic"
    APPLIANCE = "appliance"


class DisplayMode(str, Enum):
    """How the guest display is exposed."""

    NONE = "none"
    VNC = "vnc"
    EMBEDDED_VNC = "embedded-vnc"
    GUI = "gui"

    @classmethod
    def _missing_(cls, value: object) -> "DisplayMode | None":
        # Names written by older versions of the desktop application
        legacy = {"embedded": cls.EMBEDDED_VNC, "gtk": cls.GUI, "sdl": cls.GUI}
        if isinstance(value, str):
            return legacy.get(value.lower())
        return None

    @property
    def uses_vnc(self) -> bool:
        return self in (DisplayMode.VNC, DisplayMode.EMBEDDED_VNC)


class NetworkMode(str, Enum):
    USER = "user"
    BRIDGE = "bridge"


class ApplianceAccel(str, Enum):
    """Per-descriptor accelerator override for appliance guests."""

    AUTO = "auto"
    KVM = "kvm"
    HAXM = "haxm"
    WHPX = "whpx"
    HVF = "hvf"
    TCG = "tcg"


class NetworkConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: NetworkMode = NetworkMode.USER
    bridge: str | None = Field(default=None, description="Host bridge name (bridge mode only)")


class VmDescriptor(BaseModel):
    """Declarative description of one virtual machine.

    Unknown keys are ignored so descriptors persisted by the desktop
    application (which carry UI bookkeeping fields) load unchanged.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(pattern=r"^[A-Za-z0-9_-]+$", min_length=1, max_length=128)
    name: str = ""
    guest_class: GuestClass = GuestClass.GENERIC
    memory_mb: int = Field(ge=1, description="Guest memory in MiB")
    cpus: int = Field(ge=1, description="Virtual CPU count")
    disk_path: str | None = None
    disk_format: str | None = Field(default=None, description="Explicit disk format; inferred from extension if None")
    drivers_attached: bool = False
    install_media: str | None = None
    boot_order: str | None = None
    network: NetworkConfig | None = Field(default_factory=NetworkConfig)
    display_mode: DisplayMode | None = None
    display_port: int | None = Field(default=None, description="Preferred VNC port; 0 or None means auto")
    extra_fragments: list[str] = Field(default_factory=list)
    appliance_accel: ApplianceAccel = ApplianceAccel.AUTO

    @field_validator("extra_fragments", mode="before")
    @classmethod
    def _split_fragments(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        if isinstance(value, list):
            return [token for item in value for token in str(item).split()]
        return value

    @field_validator("display_mode", mode="before")
    @classmethod
    def _legacy_display_mode(cls, value: object) -> object:
        if isinstance(value, str) and value:
            return DisplayMode(value)
        return value or None

    @property
    def is_appliance(self) -> bool:
        return self.guest_class is GuestClass.APPLIANCE

    @property
    def uses_virtio(self) -> bool:
        """Disk and NIC use paravirtualized devices."""
        return self.is_appliance or self.drivers_attached


class StartResult(BaseModel):
    """Outcome of a successful VM start."""

    vm_id: str
    pid: int | None
    display_port: int | None
    display_mode: DisplayMode
    argv: list[str] = Field(description="Emulator arguments (binary excluded)")
    command: str = Field(description="Shell-quoted full command line")


class VmStatus(BaseModel):
    running: bool
    pid: int | None = None
    display_port: int | None = None
    display_mode: DisplayMode | None = None


class RunningVm(BaseModel):
    vm_id: str
    name: str
    pid: int | None
    display_port: int | None
    display_mode: DisplayMode
    started_at: datetime


class ExitOutcome(BaseModel):
    """Final result of a start chain (original attempt plus optional fallback)."""

    vm_id: str
    exit_code: int | None
    fault: FaultKind | None = Field(default=None, description="Primary fault seen in the last attempt")
    fell_back: bool = Field(default=False, description="Software-emulation retry was taken")
    stopped: bool = Field(default=False, description="Ended by an explicit stop()")


class TransferProgress(BaseModel):
    downloaded: int
    total: int | None = Field(default=None, description="Content-Length, None when the server sent none")
    percent: float | None = Field(default=None, description="0-100, None when total is unknown")


class MediaResult(BaseModel):
    path: Path
    cached: bool = Field(description="File was already present, nothing downloaded")
