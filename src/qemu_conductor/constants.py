"""Constants for qemu-conductor limits and fixed protocol values."""

from typing import Final

# ============================================================================
# Remote Display (VNC)
# ============================================================================

VNC_BASE_PORT: Final[int] = 5900
"""TCP port of VNC display :0. QEMU's -vnc takes a display index, not a port."""

VNC_MAX_PORT: Final[int] = 5999
"""Highest port handed out by the display port pool (display :99)."""

# ============================================================================
# Acceleration
# ============================================================================

ACCEL_FAILURE_ADVISORY_THRESHOLD: Final[int] = 3
"""Consecutive acceleration failures before advising the user to disable it."""

FALLBACK_INIT_DELAY_SECONDS: Final[float] = 0.5
"""Pause before the software-emulation retry after an accelerator init failure."""

FALLBACK_RUNTIME_DELAY_SECONDS: Final[float] = 1.0
"""Pause before the retry after a runtime accelerator fault.
Longer than the init delay: the host needs time to release the partition."""

FALLBACK_MAX_ATTEMPTS: Final[int] = 2
"""Original attempt plus at most one software-emulation retry per start."""

# ============================================================================
# Emulator Process
# ============================================================================

DEFAULT_EMULATOR_ARCH: Final[str] = "x86_64"
"""Guest architecture used to derive qemu-system-<arch> when no path is set."""

OUTPUT_READ_CHUNK_BYTES: Final[int] = 4096
"""Bytes read per chunk from emulator stdout/stderr."""

SHUTDOWN_TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period between SIGTERM and SIGKILL when the supervisor shuts down."""

EMULATOR_PROBE_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for `<emulator> --version`."""

# ============================================================================
# Transfers
# ============================================================================

MAX_REDIRECTS: Final[int] = 10
"""Maximum redirect hops followed by a single download."""

REDIRECT_STATUS_CODES: Final[frozenset[int]] = frozenset({301, 302, 307, 308})
"""HTTP statuses treated as redirects."""

PROGRESS_INTERVAL_SECONDS: Final[float] = 0.2
"""Minimum time between two progress callbacks during a download."""

INFERRED_FILENAME_EXTENSIONS: Final[tuple[str, ...]] = (".iso", ".img")
"""Content-Disposition filenames accepted as a new download destination."""

TRANSFER_CHUNK_BYTES: Final[int] = 64 * 1024
"""Chunk size used when streaming a download to disk."""
