"""Classification of emulator diagnostic output.

The emulator reports accelerator trouble only as free-form text on stderr.
This module maps that text onto a small set of fault kinds with an ordered
rule table: the first rule with a matching phrase wins. Matching is plain
case-sensitive substring search, since the phrases are emitted verbatim by
QEMU and the host hypervisor APIs.
"""

from enum import Enum

from qemu_conductor._logging import get_logger

logger = get_logger(__name__)


class FaultKind(str, Enum):
    """Kind of fault recognized in emulator output."""

    ACCEL_INIT = "accel_init"
    """Accelerator could not be brought up (module missing, no permission, API error)."""

    ACCEL_RUNTIME = "accel_runtime"
    """Accelerator faulted while the guest was executing."""

    GENERIC = "generic"
    """Any other error line. Advisory only, never triggers a fallback."""

    @property
    def is_acceleration(self) -> bool:
        return self in (FaultKind.ACCEL_INIT, FaultKind.ACCEL_RUNTIME)


# Runtime phrases are more specific than the init ones ("WHPX: Failed to
# initialize" vs "WHPX: Unexpected VP exit code"), so they are checked first.
FAULT_RULES: tuple[tuple[tuple[str, ...], FaultKind], ...] = (
    (
        (
            "Unexpected VP exit code",
            "Failed to inject",
            "WHvRunVirtualProcessor failed",
            "KVM internal error",
            "emulation failure",
        ),
        FaultKind.ACCEL_RUNTIME,
    ),
    (
        (
            "failed to initialize",
            "No accelerator found",
            "Could not access KVM kernel module",
            "HV_ERROR",
            "HV_UNSUPPORTED",
            "HRESULT",
        ),
        FaultKind.ACCEL_INIT,
    ),
    (
        (
            "error:",
            "cannot find",
            "not supported",
        ),
        FaultKind.GENERIC,
    ),
)

_CARRY_OVER_CHARS = max(len(phrase) for phrases, _ in FAULT_RULES for phrase in phrases) - 1


def classify(text: str) -> FaultKind | None:
    """Return the fault kind of the first matching rule, or None."""
    for phrases, kind in FAULT_RULES:
        if any(phrase in text for phrase in phrases):
            return kind
    return None


class DiagnosticWatcher:
    """Incremental classifier for one emulator process's stderr stream.

    Keeps the tail of the previous chunk so a signature split across two
    reads is still recognized. Every distinct kind seen is recorded; feed()
    reports only kinds that were not seen before.

    Example:
        watcher = DiagnosticWatcher()
        watcher.feed("qemu-system-x86_64: WHPX: Failed to ")
        watcher.feed("initialize\\n")   # -> [FaultKind.ACCEL_INIT]
        watcher.primary_fault           # -> FaultKind.ACCEL_INIT
    """

    def __init__(self) -> None:
        self._tail = ""
        self._seen: list[FaultKind] = []

    @property
    def faults(self) -> tuple[FaultKind, ...]:
        """All fault kinds seen so far, in order of first appearance."""
        return tuple(self._seen)

    @property
    def primary_fault(self) -> FaultKind | None:
        """Most significant fault seen: acceleration faults outrank generic errors."""
        for kind in (FaultKind.ACCEL_RUNTIME, FaultKind.ACCEL_INIT, FaultKind.GENERIC):
            if kind in self._seen:
                return kind
        return None

    def feed(self, chunk: str) -> list[FaultKind]:
        """Classify a chunk of output and return newly seen fault kinds."""
        if not chunk:
            return []
        window = self._tail + chunk
        self._tail = window[-_CARRY_OVER_CHARS:]

        new: list[FaultKind] = []
        for phrases, kind in FAULT_RULES:
            if kind in self._seen:
                continue
            if any(phrase in window for phrase in phrases):
                self._seen.append(kind)
                new.append(kind)
                logger.debug("Fault signature detected", extra={"fault": kind.value})
        return new
