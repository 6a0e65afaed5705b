"""Command-line interface for qemu-conductor.

Usage:
    qemu-conductor args vm.json                 # Print the QEMU command for a descriptor
    qemu-conductor run vm.json                  # Start, stream output, wait for exit
    qemu-conductor download URL DEST            # Redirect-following download
    qemu-conductor fetch-media virtio-drivers   # Download a catalog ISO
    qemu-conductor check                        # Probe the emulator binary
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from qemu_conductor import __version__
from qemu_conductor._logging import configure_logging
from qemu_conductor.accel import AccelerationSelector
from qemu_conductor.events import VmError, VmEvent, VmOutput, VmStarted, VmStopped
from qemu_conductor.exceptions import ConductorError, MediaNotFoundError, SpawnFailedError, TransferError
from qemu_conductor.media import CATALOG, MediaKind, fetch_media
from qemu_conductor.models import TransferProgress, VmDescriptor
from qemu_conductor.port_pool import VncPortPool
from qemu_conductor.qemu_cmd import build_qemu_args, effective_display_mode, format_command, resolve_emulator_binary
from qemu_conductor.settings import Settings
from qemu_conductor.supervisor import VmSupervisor
from qemu_conductor.system_probes import probe_accelerators, probe_emulator_version
from qemu_conductor.transfer import TransferManager

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_CONDUCTOR_ERROR = 125
EXIT_INTERRUPTED = 130


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def shell_exit_code(exit_code: int | None) -> int:
    """Map an emulator exit code to a shell status.

    A process killed by signal N reports -N; shells report that as 128 + N.
    """
    if exit_code is None:
        return EXIT_SUCCESS
    if exit_code < 0:
        return 128 - exit_code
    return exit_code


def load_descriptor(source: str) -> VmDescriptor:
    """Read a VM descriptor from a JSON file, or stdin when source is "-".

    Raises:
        click.UsageError: Missing file or invalid descriptor
    """
    if source == "-":
        if sys.stdin.isatty():
            raise click.UsageError("No input provided. Pipe a descriptor to stdin or pass a file.")
        text = sys.stdin.read()
    else:
        path = Path(source)
        if not path.is_file():
            raise click.UsageError(f"Descriptor file not found: {source}")
        text = path.read_text()

    try:
        return VmDescriptor.model_validate_json(text)
    except ValidationError as exc:
        raise click.UsageError(f"Invalid VM descriptor:\n{exc}") from exc


def _print_progress(progress: TransferProgress) -> None:
    mib = progress.downloaded / (1024 * 1024)
    if progress.percent is None:
        click.echo(f"\r  {mib:.1f} MiB", nl=False, err=True)
    else:
        click.echo(f"\r  {mib:.1f} MiB ({progress.percent:.0f}%)", nl=False, err=True)


def _print_event(event: VmEvent) -> None:
    match event:
        case VmOutput():
            click.echo(event.text, nl=False)
        case VmError():
            click.echo(click.style(event.message, fg="yellow"), err=True)
        case VmStarted():
            where = f", VNC on port {event.display_port}" if event.display_port is not None else ""
            click.echo(click.style(f"✓ {event.vm_id} started (pid {event.pid}{where})", fg="green"), err=True)
        case VmStopped():
            click.echo(click.style(f"{event.vm_id} stopped", dim=True), err=True)


def _report(exc: ConductorError) -> int:
    if isinstance(exc, SpawnFailedError):
        suggestions = [
            "Check that QEMU is installed: apt install qemu-system-x86 / brew install qemu",
            "Point QEMU_CONDUCTOR_EMULATOR_PATH at the qemu-system binary",
        ]
        title = "Could not start QEMU"
    elif isinstance(exc, TransferError):
        suggestions = ["Check the URL and your network connection"]
        title = "Download failed"
    elif isinstance(exc, MediaNotFoundError):
        suggestions = [f"{kind.value}: {', '.join(versions)}" for kind, versions in CATALOG.items()]
        title = "Unknown media"
    else:
        suggestions = None
        title = type(exc).__name__
    click.echo(format_error(title, exc.message, suggestions), err=True)
    return EXIT_CONDUCTOR_ERROR


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="qemu-conductor")
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool) -> None:
    """Launch and supervise QEMU virtual machines."""
    configure_logging(level="DEBUG" if verbose else None, quiet=quiet)
    ctx.obj = Settings()


@main.command("args")
@click.argument("descriptor")
@click.pass_obj
def args_command(settings: Settings, descriptor: str) -> None:
    """Print the QEMU command that `run` would execute for DESCRIPTOR."""
    vm = load_descriptor(descriptor)
    selector = AccelerationSelector(resolve_emulator_binary(settings), settings.disable_hardware_acceleration)
    mode = effective_display_mode(vm, settings)
    port = VncPortPool().allocate(vm.display_port or None) if mode.uses_vnc else None
    argv = build_qemu_args(vm, settings, selector.resolve(), display_port=port, display_mode=mode)
    click.echo(format_command(resolve_emulator_binary(settings), argv))


async def _run_vm(settings: Settings, vm: VmDescriptor) -> int:
    async with VmSupervisor(settings) as supervisor:
        supervisor.subscribe(_print_event)
        try:
            await supervisor.start(vm)
            outcome = await supervisor.wait(vm.id)
        except ConductorError as exc:
            return _report(exc)
    if outcome.fell_back:
        click.echo(click.style("Ran under software emulation (tcg)", dim=True), err=True)
    return shell_exit_code(outcome.exit_code)


@main.command("run")
@click.argument("descriptor")
@click.pass_obj
def run_command(settings: Settings, descriptor: str) -> NoReturn:
    """Start DESCRIPTOR, stream its output and wait for it to exit.

    Ctrl-C terminates the VM.
    """
    vm = load_descriptor(descriptor)
    try:
        exit_code = asyncio.run(_run_vm(settings, vm))
    except KeyboardInterrupt:
        exit_code = EXIT_INTERRUPTED
    sys.exit(exit_code)


async def _download(url: str, dest: Path, infer_name: bool, settings: Settings) -> Path:
    async with TransferManager(
        max_redirects=settings.max_redirects,
        progress_interval=settings.progress_interval_seconds,
    ) as transfers:
        return await transfers.download(url, dest, on_progress=_print_progress, infer_filename=infer_name)


@main.command("download")
@click.argument("url")
@click.argument("dest", type=click.Path(path_type=Path))
@click.option("--infer-name", is_flag=True, help="Use the server-supplied .iso/.img filename")
@click.pass_obj
def download_command(settings: Settings, url: str, dest: Path, infer_name: bool) -> NoReturn:
    """Download URL to DEST, following redirects."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        path = asyncio.run(_download(url, dest, infer_name, settings))
    except ConductorError as exc:
        click.echo(err=True)
        sys.exit(_report(exc))
    click.echo(err=True)
    click.echo(str(path))
    sys.exit(EXIT_SUCCESS)


async def _fetch(kind: str, version: str, media_dir: Path, settings: Settings) -> Path:
    async with TransferManager(
        max_redirects=settings.max_redirects,
        progress_interval=settings.progress_interval_seconds,
    ) as transfers:
        result = await fetch_media(kind, version, media_dir, transfers, on_progress=_print_progress)
    if result.cached:
        click.echo(click.style("Already downloaded", dim=True), err=True)
    return result.path


@main.command("fetch-media")
@click.argument("kind", type=click.Choice([kind.value for kind in MediaKind]))
@click.argument("version", default="latest")
@click.option("--media-dir", type=click.Path(path_type=Path), help="Download directory")
@click.pass_obj
def fetch_media_command(settings: Settings, kind: str, version: str, media_dir: Path | None) -> NoReturn:
    """Download install media KIND (VirtIO drivers or appliance image)."""
    try:
        path = asyncio.run(_fetch(kind, version, media_dir or settings.media_dir, settings))
    except ConductorError as exc:
        click.echo(err=True)
        sys.exit(_report(exc))
    click.echo(err=True)
    click.echo(str(path))
    sys.exit(EXIT_SUCCESS)


async def _check(binary: str) -> tuple[str | None, set[str]]:
    return await probe_emulator_version(binary), await probe_accelerators(binary)


@main.command("check")
@click.pass_obj
def check_command(settings: Settings) -> NoReturn:
    """Check that the emulator runs and report its accelerators."""
    binary = resolve_emulator_binary(settings)
    version, accels = asyncio.run(_check(binary))
    if version is None:
        click.echo(
            format_error(
                "QEMU not available",
                f"{binary} --version did not succeed.",
                [
                    "Install QEMU or set QEMU_CONDUCTOR_EMULATOR_PATH",
                    "Run with -v for the probe log",
                ],
            ),
            err=True,
        )
        sys.exit(EXIT_CONDUCTOR_ERROR)

    backend = AccelerationSelector(binary, settings.disable_hardware_acceleration).resolve()
    click.echo(version)
    click.echo(f"Accelerators: {', '.join(sorted(accels)) or 'unknown'}")
    click.echo(f"Selected backend: {backend.value}")
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
