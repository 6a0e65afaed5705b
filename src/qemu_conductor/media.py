"""Catalog of downloadable install media.

Two kinds are known: the VirtIO driver ISOs for Windows guests (Fedora
project) and Android-x86 appliance images (SourceForge). Files already
present in the media directory are reused instead of downloaded again.
"""

import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import aiofiles.os

from qemu_conductor._logging import get_logger
from qemu_conductor.exceptions import MediaNotFoundError
from qemu_conductor.models import MediaResult
from qemu_conductor.transfer import ProgressCallback, TransferManager

logger = get_logger(__name__)

_VIRTIO_BASE = "https://fedorapeople.org/groups/virt/virtio-win/direct-downloads"
_ANDROID_BASE = "https://sourceforge.net/projects/android-x86/files"


class MediaKind(str, Enum):
    VIRTIO_DRIVERS = "virtio-drivers"
    APPLIANCE = "appliance"


@dataclass(frozen=True)
class MediaEntry:
    name: str
    url: str
    filename: str
    rolling: bool = False
    """URL always points at the newest release; the real name comes from the server."""


CATALOG: dict[MediaKind, dict[str, MediaEntry]] = {
    MediaKind.VIRTIO_DRIVERS: {
        "latest": MediaEntry(
            name="VirtIO drivers (latest stable)",
            url=f"{_VIRTIO_BASE}/stable-virtio/virtio-win.iso",
            filename="virtio-win.iso",
        ),
        "0.1.240": MediaEntry(
            name="VirtIO drivers 0.1.240",
            url=f"{_VIRTIO_BASE}/archive-virtio/virtio-win-0.1.240-1/virtio-win-0.1.240.iso",
            filename="virtio-win-0.1.240.iso",
        ),
        "0.1.229": MediaEntry(
            name="VirtIO drivers 0.1.229",
            url=f"{_VIRTIO_BASE}/archive-virtio/virtio-win-0.1.229-1/virtio-win-0.1.229.iso",
            filename="virtio-win-0.1.229.iso",
        ),
    },
    MediaKind.APPLIANCE: {
        "latest": MediaEntry(
            name="Android-x86 (latest)",
            url=f"{_ANDROID_BASE}/latest/download",
            filename="android-x86-latest.iso",
            rolling=True,
        ),
        "9.0": MediaEntry(
            name="Android-x86 9.0-r2",
            url=f"{_ANDROID_BASE}/Release%209.0/android-x86_64-9.0-r2.iso/download",
            filename="android-x86_64-9.0-r2.iso",
        ),
        "8.1": MediaEntry(
            name="Android-x86 8.1-r6",
            url=f"{_ANDROID_BASE}/Release%208.1/android-x86_64-8.1-r6.iso/download",
            filename="android-x86_64-8.1-r6.iso",
        ),
        "7.1": MediaEntry(
            name="Android-x86 7.1-r5",
            url=f"{_ANDROID_BASE}/Release%207.1/android-x86_64-7.1-r5.iso/download",
            filename="android-x86_64-7.1-r5.iso",
        ),
    },
}


def lookup_media(kind: MediaKind | str, version: str = "latest") -> MediaEntry:
    """Find a catalog entry.

    Raises:
        MediaNotFoundError: Unknown kind or version
    """
    try:
        return CATALOG[MediaKind(kind)][version]
    except (KeyError, ValueError) as e:
        raise MediaNotFoundError(
            f"No {kind} media for version {version!r}",
            {"kind": str(kind), "version": version},
        ) from e


async def _find_cached(entry: MediaEntry, media_dir: Path) -> Path | None:
    if not entry.rolling:
        path = media_dir / entry.filename
        return path if await aiofiles.os.path.exists(path) else None

    # Rolling downloads are saved under a timestamped or server-supplied name
    prefix = Path(entry.filename).stem
    matches = sorted(
        name for name in await aiofiles.os.listdir(media_dir) if name.startswith(prefix) and name.endswith(".iso")
    )
    return media_dir / matches[-1] if matches else None


async def fetch_media(
    kind: MediaKind | str,
    version: str,
    media_dir: Path,
    transfer: TransferManager,
    on_progress: ProgressCallback | None = None,
) -> MediaResult:
    """Return a local copy of a catalog entry, downloading it if needed.

    Raises:
        MediaNotFoundError: Unknown kind or version
        TransferError: Download failed
    """
    entry = lookup_media(kind, version)
    await aiofiles.os.makedirs(media_dir, exist_ok=True)

    if cached := await _find_cached(entry, media_dir):
        logger.debug("Media already downloaded", extra={"media": entry.name, "path": str(cached)})
        return MediaResult(path=cached, cached=True)

    if entry.rolling:
        dest = media_dir / f"{Path(entry.filename).stem}-{int(time.time() * 1000)}.iso"
    else:
        dest = media_dir / entry.filename

    logger.info("Downloading media", extra={"media": entry.name, "url": entry.url})
    path = await transfer.download(entry.url, dest, on_progress=on_progress, infer_filename=entry.rolling)
    return MediaResult(path=path, cached=False)
