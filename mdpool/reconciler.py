"""Brings stored pool metadata in line with the kernel's current view."""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, List, Optional, Tuple

from . import mounts
from .drive_monitor import DriveMonitor
from .mdstat_reader import MdStatReader, find_array_by_members, md_device_path
from .metadata_store import PoolMetadataStore
from .models import MountEntry


logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass."""
    updated: List[Tuple[str, str, str]] = field(default_factory=list)
    unresolved: List[Tuple[str, str]] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    mount_state_corrected: List[str] = field(default_factory=list)
    failed_writes: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self):
        return {
            'updated': [{'pool_group_guid': guid, 'old': old, 'new': new}
                        for guid, old, new in self.updated],
            'unresolved': [{'pool_group_guid': guid, 'reason': reason}
                           for guid, reason in self.unresolved],
            'unchanged': list(self.unchanged),
            'mount_state_corrected': list(self.mount_state_corrected),
            'failed_writes': [{'pool_group_guid': guid, 'error': error}
                              for guid, error in self.failed_writes],
        }


class MetadataReconciler:
    """
    Corrects md device names and mount state in the metadata store.

    The live kernel state is authoritative: when the array holding a
    pool's member drives is known under a different name than the one
    stored, the stored name is rewritten. Pools whose drives cannot all
    be found are reported and left untouched.
    """

    def __init__(self, metadata_store: PoolMetadataStore, drive_monitor: DriveMonitor,
                 mdstat_reader: MdStatReader,
                 mount_lookup: Optional[Callable[[Iterable[str]], Optional[MountEntry]]] = None):
        self.metadata_store = metadata_store
        self.drive_monitor = drive_monitor
        self.mdstat_reader = mdstat_reader
        self.mount_lookup = mount_lookup or mounts.find_mount_for_device

    def reconcile(self) -> ReconciliationReport:
        report = ReconciliationReport()

        self.mdstat_reader.invalidate_cache()
        arrays = self.mdstat_reader.read_all(use_cache=False)

        for record in self.metadata_store.list_all():
            guid = record.pool_group_guid

            if not record.drive_serials:
                report.unresolved.append((guid, "record lists no member drives"))
                continue

            found, missing = self.drive_monitor.resolve_serials(record.drive_serials)
            if missing:
                reason = f"member drives not attached: {', '.join(missing)}"
                logger.warning(f"Cannot reconcile pool {guid}: {reason}", extra={'pool_guid': guid})
                report.unresolved.append((guid, reason))
                continue

            descriptor = find_array_by_members(arrays, [drive.device_name for drive in found.values()])
            if descriptor is None:
                reason = "no assembled array contains the member drives"
                logger.warning(f"Cannot reconcile pool {guid}: {reason}", extra={'pool_guid': guid})
                report.unresolved.append((guid, reason))
                continue

            corrected = replace(record, md_device_name=descriptor.device_name)
            renamed = descriptor.device_name != record.md_device_name

            mount = self.mount_lookup([descriptor.device_path, md_device_path(guid)])
            corrected.is_mounted = mount is not None
            if mount is not None:
                corrected.last_mount_path = mount.mount_point
            mount_changed = (corrected.is_mounted != record.is_mounted
                             or corrected.last_mount_path != record.last_mount_path)

            if not renamed and not mount_changed:
                report.unchanged.append(guid)
                continue

            success, message = self.metadata_store.update(corrected)
            if not success:
                report.failed_writes.append((guid, message))
                continue

            if renamed:
                logger.info(
                    f"Pool {guid} moved from {record.md_device_name} to {descriptor.device_name}",
                    extra={'pool_guid': guid},
                )
                report.updated.append((guid, record.md_device_name, descriptor.device_name))
            if mount_changed:
                logger.info(
                    f"Pool {guid} mount state corrected: mounted={corrected.is_mounted} "
                    f"at {corrected.last_mount_path}",
                    extra={'pool_guid': guid},
                )
                report.mount_state_corrected.append(guid)

        logger.info(
            f"Reconciliation finished: {len(report.updated)} renamed, "
            f"{len(report.unresolved)} unresolved, {len(report.unchanged)} unchanged"
        )
        return report
