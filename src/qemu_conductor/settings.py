"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from qemu_conductor import constants
from qemu_conductor.platform_utils import get_data_dir


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with QEMU_CONDUCTOR_ prefix.
    Example: QEMU_CONDUCTOR_DISABLE_HARDWARE_ACCELERATION=true
    """

    model_config = SettingsConfigDict(
        env_prefix="QEMU_CONDUCTOR_",
        extra="ignore",
    )

    # Emulator
    emulator_path: str | None = None
    """Explicit emulator binary. None derives qemu-system-<emulator_arch> from PATH."""
    emulator_arch: str = constants.DEFAULT_EMULATOR_ARCH
    extra_args: str = ""
    """Whitespace-separated arguments appended to every invocation."""

    # Display / output
    auto_start_vnc: bool = True
    """Display mode used when a descriptor does not name one: vnc if True, else none."""
    show_output: bool = True
    show_args: bool = False

    # Acceleration
    disable_hardware_acceleration: bool = False
    """Run under software emulation on Windows hosts (WHPX compatibility escape hatch)."""
    fallback_init_delay_seconds: float = Field(default=constants.FALLBACK_INIT_DELAY_SECONDS, ge=0)
    fallback_runtime_delay_seconds: float = Field(default=constants.FALLBACK_RUNTIME_DELAY_SECONDS, ge=0)
    shutdown_term_timeout_seconds: float = Field(default=constants.SHUTDOWN_TERM_TIMEOUT_SECONDS, ge=0)

    # Transfers
    max_redirects: int = Field(default=constants.MAX_REDIRECTS, ge=0)
    progress_interval_seconds: float = Field(default=constants.PROGRESS_INTERVAL_SECONDS, ge=0)
    media_dir: Path = Field(default_factory=lambda: get_data_dir() / "media")
