"""Exception hierarchy for qemu-conductor.

All exceptions inherit from ConductorError.

Hierarchy:
    ConductorError (base)
    ├── TransientError (retryable marker base)
    │   └── AccelerationFaultError
    │       ├── AccelerationInitError     ← accelerator failed to come up
    │       └── AccelerationRuntimeError  ← accelerator faulted mid-run
    ├── PermanentError (non-retryable marker base)
    │   ├── AlreadyRunningError           ← start for an id that is live
    │   ├── SpawnFailedError              ← binary missing, permissions
    │   ├── FallbackExhaustedError        ← software retry failed as well
    │   └── VmNotFoundError               ← stop/wait on an unknown id
    ├── TransferError                     ← download failed (partial removed)
    │   ├── TransferHttpError             ← non-200 terminal status
    │   ├── TooManyRedirectsError         ← redirect chain exceeded hop limit
    │   └── MissingRedirectTargetError    ← 3xx without Location
    └── MediaNotFoundError                ← unknown catalog entry
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from qemu_conductor.fault_classifier import FaultKind


class ConductorError(Exception):
    """Base exception for all qemu-conductor errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(ConductorError):
    """Base for errors that may succeed when the operation is retried."""


class PermanentError(ConductorError):
    """Base for errors that will not succeed on retry without a change."""


# =============================================================================
# Emulator Process Errors
# =============================================================================


class AccelerationFaultError(TransientError):
    """The emulator reported a hardware-acceleration fault.

    Recoverable: the supervisor re-launches the VM once under software
    emulation when the failed attempt did not already force a backend.

    Attributes:
        fault: Classified fault kind
        exit_code: Emulator exit code (None if it was still running)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        fault: FaultKind,
        exit_code: int | None = None,
    ):
        super().__init__(message, context)
        self.fault = fault
        self.exit_code = exit_code


class AccelerationInitError(AccelerationFaultError):
    """Accelerator could not be initialized (module missing, no permission, ...)."""


class AccelerationRuntimeError(AccelerationFaultError):
    """Accelerator faulted while the guest was running."""


class AlreadyRunningError(PermanentError):
    """A VM with this id already has a running process or an active start."""


class SpawnFailedError(PermanentError):
    """The OS refused to create the emulator process.

    Raised for a missing binary, missing execute permission, or any other
    OSError from process creation. Surfaced verbatim to the caller.
    """


class FallbackExhaustedError(PermanentError):
    """The software-emulation retry failed as well.

    Attributes:
        exit_code: Exit code of the retried emulator process
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, *, exit_code: int | None = None):
        super().__init__(message, context)
        self.exit_code = exit_code


class VmNotFoundError(PermanentError):
    """No running VM is registered under this id."""


# =============================================================================
# Transfer Errors
# =============================================================================


class TransferError(ConductorError):
    """Download failed. Any partially written destination file was removed."""


class TransferHttpError(TransferError):
    """Server answered with a terminal status other than 200.

    Attributes:
        status_code: HTTP status code
        reason: HTTP reason phrase
    """

    def __init__(self, status_code: int, reason: str, context: dict[str, Any] | None = None):
        super().__init__(f"HTTP {status_code}: {reason}", context)
        self.status_code = status_code
        self.reason = reason


class TooManyRedirectsError(TransferError):
    """Redirect chain exceeded the configured hop limit."""


class MissingRedirectTargetError(TransferError):
    """Redirect response carried no Location header."""


class MediaNotFoundError(ConductorError):
    """Requested install media kind or version is not in the catalog."""
