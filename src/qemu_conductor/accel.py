"""Hardware acceleration backend selection.

The selector picks the host's native accelerator once and caches it. The
cache is invalidated when the emulator binary or the disable flag changes,
since either can change which backend actually works.
"""

from enum import Enum

from qemu_conductor._logging import get_logger
from qemu_conductor.constants import ACCEL_FAILURE_ADVISORY_THRESHOLD
from qemu_conductor.platform_utils import HostOS, detect_host_os

logger = get_logger(__name__)


class AccelBackend(str, Enum):
    """QEMU accelerator passed to -accel."""

    KVM = "kvm"
    WHPX = "whpx"
    HVF = "hvf"
    HAXM = "haxm"
    TCG = "tcg"
    """Software emulation. Always available, slow."""


NATIVE_BACKENDS: dict[HostOS, AccelBackend] = {
    HostOS.LINUX: AccelBackend.KVM,
    HostOS.WINDOWS: AccelBackend.WHPX,
    HostOS.MACOS: AccelBackend.HVF,
}


class AccelerationSelector:
    """Chooses the acceleration backend for new VMs.

    Attributes:
        emulator_path: Emulator binary the cached choice belongs to
        disabled: User asked for software emulation (honored on Windows only)
        failure_count: Consecutive acceleration failures since the last success
    """

    def __init__(
        self,
        emulator_path: str | None = None,
        disabled: bool = False,
        host_os: HostOS | None = None,
    ) -> None:
        self.emulator_path = emulator_path
        self.disabled = disabled
        self.failure_count = 0
        self._host_os = host_os
        self._cached: AccelBackend | None = None

    @property
    def host_os(self) -> HostOS:
        return self._host_os if self._host_os is not None else detect_host_os()

    @property
    def cached(self) -> AccelBackend | None:
        return self._cached

    def resolve(self) -> AccelBackend:
        """Return the backend for the next launch.

        The disable flag only applies on Windows, where WHPX has known guest
        compatibility problems. That result is never cached so clearing the
        flag takes effect immediately.
        """
        if self.disabled and self.host_os is HostOS.WINDOWS:
            logger.debug("Hardware acceleration disabled by settings, using tcg")
            return AccelBackend.TCG

        if self._cached is None:
            self._cached = NATIVE_BACKENDS.get(self.host_os, AccelBackend.TCG)
            logger.info(
                "Selected acceleration backend",
                extra={"backend": self._cached.value, "host_os": self.host_os.name},
            )
        return self._cached

    def is_forced_software(self) -> bool:
        """True when resolve() returns tcg because of the disable flag."""
        return self.disabled and self.host_os is HostOS.WINDOWS

    def invalidate(self) -> None:
        self._cached = None
        self.failure_count = 0

    def configure(self, emulator_path: str | None, disabled: bool) -> None:
        """Apply new settings; invalidates the cache if anything relevant changed."""
        if emulator_path != self.emulator_path or disabled != self.disabled:
            logger.debug(
                "Acceleration settings changed, invalidating cached backend",
                extra={"emulator_path": emulator_path, "disabled": disabled},
            )
            self.emulator_path = emulator_path
            self.disabled = disabled
            self.invalidate()

    def record_failure(self) -> str | None:
        """Count an acceleration failure.

        Returns:
            An advisory message once the consecutive count reaches the
            threshold, else None. Acceleration is never disabled automatically.
        """
        self.failure_count += 1
        logger.warning("Acceleration failure recorded", extra={"failure_count": self.failure_count})
        if self.failure_count >= ACCEL_FAILURE_ADVISORY_THRESHOLD:
            return (
                f"Hardware acceleration has failed {self.failure_count} times in a row. "
                "Consider enabling 'disable hardware acceleration' in settings."
            )
        return None

    def record_success(self) -> None:
        self.failure_count = 0
