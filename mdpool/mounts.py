"""Mount table lookups backed by psutil."""

import logging
import os
from typing import Iterable, List, Optional

import psutil

from .models import MountEntry


logger = logging.getLogger(__name__)


def list_mounts() -> List[MountEntry]:
    """Return every mounted filesystem, including pseudo filesystems."""
    try:
        partitions = psutil.disk_partitions(all=True)
    except OSError as e:
        logger.error(f"Failed to read mount table: {e}")
        return []

    return [
        MountEntry(device=part.device, mount_point=part.mountpoint,
                   fstype=part.fstype, options=part.opts)
        for part in partitions
    ]


def _same_device(mounted: str, candidate: str) -> bool:
    if mounted == candidate:
        return True
    # /dev/md/<name> is a symlink to /dev/mdNNN
    return os.path.realpath(mounted) == os.path.realpath(candidate)


def find_mount_for_device(device_paths: Iterable[str]) -> Optional[MountEntry]:
    """First mount whose source is one of the given device paths."""
    candidates = [path for path in device_paths if path]
    for entry in list_mounts():
        if any(_same_device(entry.device, candidate) for candidate in candidates):
            return entry
    return None


def find_mount_at(path: str) -> Optional[MountEntry]:
    normalized = os.path.normpath(path)
    for entry in list_mounts():
        if os.path.normpath(entry.mount_point) == normalized:
            return entry
    return None


def get_usage(mount_point: str):
    """Return psutil disk usage for a mount point, or None."""
    try:
        return psutil.disk_usage(mount_point)
    except OSError as e:
        logger.warning(f"Cannot read usage for {mount_point}: {e}")
        return None
