"""Pool lifecycle steps and merged pool queries."""

import logging
import os
import time
import uuid as uuid_module
from dataclasses import asdict, replace
from typing import Any, Callable, Dict, List, Optional

from . import mounts
from .config_manager import AgentConfig
from .drive_monitor import DriveMonitor
from .exceptions import CommandTimeoutError, OperationCancelledError, StepFailedError
from .mdstat_reader import MdStatReader, md_device_path
from .metadata_store import PoolMetadataStore
from .models import (
    ArrayDescriptor,
    DriveRecord,
    MountEntry,
    PoolDriveSummary,
    PoolMetadataRecord,
    PoolSummary,
)
from .process_manager import ProcessManager
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)


def mdadm_uuid(pool_group_guid: str) -> str:
    """Pool GUID in mdadm's xxxxxxxx:xxxxxxxx:xxxxxxxx:xxxxxxxx notation."""
    hex_value = uuid_module.UUID(pool_group_guid).hex
    return ':'.join(hex_value[i:i + 8] for i in range(0, 32, 8))


class PoolService:
    """
    Implements each pool operation as a sequence of steps.

    Step methods receive an operation context exposing ``run`` (execute a
    command as a recorded step), ``log``, ``progress`` and ``checkpoint``;
    they return a result message or raise StepFailedError.
    """

    def __init__(self, config: AgentConfig, executor: SystemCommandExecutor,
                 drive_monitor: DriveMonitor, mdstat_reader: MdStatReader,
                 metadata_store: PoolMetadataStore, process_manager: ProcessManager,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.executor = executor
        self.drive_monitor = drive_monitor
        self.mdstat_reader = mdstat_reader
        self.metadata_store = metadata_store
        self.process_manager = process_manager
        self._sleep = sleep

    # create

    def create_pool(self, ctx, params: Dict[str, Any]) -> str:
        guid = ctx.pool_group_guid
        label = params['label']
        serials: List[str] = params['drive_serials']
        mount_path = params['mount_path']
        drive_labels = params.get('drive_labels') or {}

        ctx.progress(5, "Resolving drives")
        drives = self._resolve_drives_for_create(serials)
        self._check_mount_path_free(guid, mount_path, require_empty=True)

        md_path = md_device_path(guid)
        devices = [drives[serial].stable_id_path for serial in serials]
        created = False
        mounted = False

        try:
            ctx.progress(15, "Creating RAID1 array")
            ctx.run("Create RAID1 array", self.executor.mdadm_create,
                    md_path, devices, mdadm_uuid(guid), cancellable=False)
            created = True

            kernel_name = self._wait_for_array(
                ctx, md_path, [drives[serial].device_name for serial in serials]
            )

            ctx.progress(50, "Creating filesystem")
            ctx.run("Create filesystem", self.executor.make_filesystem,
                    md_path, self.config.filesystem_type, label)

            ctx.progress(80, "Mounting filesystem")
            ctx.run("Create mount point", self.executor.make_directory, mount_path)
            ctx.run("Mount filesystem", self.executor.mount, md_path, mount_path)
            mounted = True

            self._persist_array_definition(ctx, guid)

            record = PoolMetadataRecord(
                pool_group_guid=guid,
                md_device_name=kernel_name,
                label=label,
                drive_serials=list(serials),
                drive_labels={serial: drive_labels[serial] for serial in serials if serial in drive_labels},
                last_mount_path=mount_path,
                is_mounted=True,
            )
            success, message = self.metadata_store.save(record)
            if not success:
                raise StepFailedError(message, 'metadata_error')
        except (StepFailedError, CommandTimeoutError, OperationCancelledError):
            self._cleanup_failed_create(ctx, md_path, devices, mount_path if mounted else None, created)
            raise
        finally:
            self.mdstat_reader.invalidate_cache()

        return f"Pool '{label}' created on {kernel_name} and mounted at {mount_path}"

    def _resolve_drives_for_create(self, serials: List[str]) -> Dict[str, DriveRecord]:
        found, missing = self.drive_monitor.resolve_serials(serials)
        if missing:
            raise StepFailedError(
                f"Drives not found: {', '.join(missing)}", 'resolution_failed',
                details={'missing_serials': missing},
            )

        busy = [serial for serial, drive in found.items() if drive.busy]
        if busy:
            raise StepFailedError(
                f"Drives are mounted or already RAID members: {', '.join(busy)}", 'drive_in_use',
                details={'busy_serials': busy},
            )

        for serial in serials:
            owner = self.metadata_store.find_by_serial(serial)
            if owner is not None:
                raise StepFailedError(
                    f"Drive {serial} belongs to pool {owner.pool_group_guid}", 'drive_in_use',
                    details={'pool_group_guid': owner.pool_group_guid},
                )
        return found

    def _check_mount_path_free(self, guid: str, mount_path: str, require_empty: bool) -> None:
        owner = self.metadata_store.find_by_mount_path(mount_path)
        if owner is not None and owner.pool_group_guid != guid:
            raise StepFailedError(
                f"{mount_path} is used by pool {owner.pool_group_guid}", 'mount_conflict',
                details={'pool_group_guid': owner.pool_group_guid},
            )

        existing = mounts.find_mount_at(mount_path)
        if existing is not None:
            raise StepFailedError(f"{existing.device} is already mounted at {mount_path}", 'mount_conflict')

        if require_empty and os.path.isdir(mount_path) and os.listdir(mount_path):
            raise StepFailedError(f"Mount point {mount_path} is not empty", 'mount_conflict')

    def _wait_for_array(self, ctx, md_path: str, member_names: List[str]) -> str:
        """Wait for a new or assembled array and return its kernel name (e.g. md127)."""
        if self.executor.dry_run:
            return os.path.basename(md_path)

        ctx.progress(None, "Waiting for array device")
        deadline = time.monotonic() + self.config.device_wait_timeout_seconds
        while True:
            self.mdstat_reader.invalidate_cache()
            descriptor = self.mdstat_reader.find_array_by_members(member_names, use_cache=False)
            if descriptor is not None:
                ctx.log(f"Array is {descriptor.device_path}")
                return descriptor.device_name
            if os.path.exists(md_path):
                kernel_name = os.path.basename(os.path.realpath(md_path))
                ctx.log(f"Array is /dev/{kernel_name}")
                return kernel_name
            if time.monotonic() >= deadline:
                raise CommandTimeoutError(
                    f"Array device {md_path} did not appear within "
                    f"{self.config.device_wait_timeout_seconds}s"
                )
            self._sleep(1)

    def _persist_array_definition(self, ctx, guid: str) -> None:
        """Append the array's ARRAY line to mdadm.conf so it assembles at boot."""
        conf_path = self.config.mdadm_conf_path
        if not conf_path:
            return

        scan = ctx.run("Scan array definitions", self.executor.mdadm_detail_scan, critical=False)
        if not scan.success:
            return

        marker = f"UUID={mdadm_uuid(guid)}"
        lines = [line for line in scan.stdout.splitlines() if marker in line]
        if not lines:
            ctx.log(f"No ARRAY line found for {marker}")
            return

        try:
            with open(conf_path, 'r') as f:
                existing = f.read()
        except OSError as e:
            logger.warning(f"Cannot read {conf_path}: {e}")
            existing = ''
        if marker in existing:
            ctx.log(f"{conf_path} already defines {marker}")
            return

        ctx.run("Persist array definition", self.executor.append_to_file,
                conf_path, '\n'.join(lines) + '\n', critical=False)

    def _cleanup_failed_create(self, ctx, md_path: str, devices: List[str],
                               mount_path: Optional[str], created: bool) -> None:
        ctx.log("Cleaning up partially created pool")
        if mount_path:
            ctx.run("Cleanup: unmount", self.executor.unmount, mount_path, lazy=True,
                    critical=False, checkpoint=False)
        if created:
            ctx.run("Cleanup: stop array", self.executor.mdadm_stop, md_path,
                    critical=False, checkpoint=False)
            for device in devices:
                ctx.run("Cleanup: clear superblock", self.executor.mdadm_zero_superblock, device,
                        critical=False, checkpoint=False)

    # mount

    def mount_pool(self, ctx, params: Dict[str, Any]) -> str:
        guid = ctx.pool_group_guid
        record = self._require_record(guid)

        mount_path = params.get('mount_path') or record.last_mount_path
        if not mount_path:
            raise StepFailedError("No mount path given and none recorded for the pool", 'validation')

        owner = self.metadata_store.find_by_mount_path(mount_path)
        if owner is not None and owner.pool_group_guid != guid:
            raise StepFailedError(
                f"{mount_path} is used by pool {owner.pool_group_guid}", 'mount_conflict',
                details={'pool_group_guid': owner.pool_group_guid},
            )

        ctx.progress(10, "Locating array")
        descriptor = self.resolve_array(record)
        if descriptor is not None:
            current = self._find_pool_mount(record, descriptor)
            if current is not None:
                current_path = os.path.normpath(current.mount_point)
                if params.get('mount_path') and current_path != mount_path:
                    raise StepFailedError(
                        f"Pool is already mounted at {current_path}", 'mount_conflict',
                        details={'mount_path': current_path},
                    )
                self._update_record(record, md_device_name=descriptor.device_name,
                                    is_mounted=True, last_mount_path=current_path)
                return f"Pool already mounted at {current_path}"

        existing = mounts.find_mount_at(mount_path)
        if existing is not None:
            if descriptor is not None and self._is_array_mount(existing, descriptor, guid):
                self._update_record(record, md_device_name=descriptor.device_name,
                                    is_mounted=True, last_mount_path=mount_path)
                return f"Pool already mounted at {mount_path}"
            raise StepFailedError(f"{existing.device} is already mounted at {mount_path}", 'mount_conflict')

        if descriptor is None:
            kernel_name = self._assemble(ctx, record)
        else:
            kernel_name = descriptor.device_name
            ctx.log(f"Array already assembled as /dev/{kernel_name}")

        ctx.progress(70, "Mounting filesystem")
        ctx.run("Create mount point", self.executor.make_directory, mount_path)
        ctx.run("Mount filesystem", self.executor.mount, f"/dev/{kernel_name}", mount_path)

        self._update_record(record, md_device_name=kernel_name, is_mounted=True,
                            last_mount_path=mount_path)
        self.mdstat_reader.invalidate_cache()
        return f"Pool '{record.label}' mounted at {mount_path}"

    def _assemble(self, ctx, record: PoolMetadataRecord) -> str:
        found, missing = self.drive_monitor.resolve_serials(record.drive_serials)
        if not found:
            raise StepFailedError(
                "None of the pool's drives are attached", 'resolution_failed',
                details={'missing_serials': missing},
            )
        if missing:
            ctx.log(f"Assembling degraded, missing drives: {', '.join(missing)}")

        md_path = md_device_path(record.pool_group_guid)
        ctx.progress(30, "Assembling array")
        ctx.run("Assemble array", self.executor.mdadm_assemble, md_path,
                uuid=mdadm_uuid(record.pool_group_guid),
                devices=[drive.stable_id_path for drive in found.values()],
                cancellable=False)
        try:
            return self._wait_for_array(ctx, md_path, [drive.device_name for drive in found.values()])
        finally:
            self.mdstat_reader.invalidate_cache()

    # unmount

    def unmount_pool(self, ctx, params: Dict[str, Any]) -> str:
        guid = ctx.pool_group_guid
        force = bool(params.get('force'))
        record = self._require_record(guid)

        ctx.progress(10, "Locating mount")
        mount = self._find_pool_mount(record)
        if mount is None:
            ctx.log("Pool is not mounted")
            self._update_record(record, is_mounted=False)
            return "Pool is not mounted"

        holders = self.process_manager.find_processes_using(mount.mount_point)
        if holders and not force:
            raise StepFailedError(
                f"Mount point {mount.mount_point} is busy ({len(holders)} processes)", 'mount_busy',
                details={'mount_path': mount.mount_point,
                         'processes': [asdict(holder) for holder in holders]},
            )

        ctx.progress(50, "Unmounting")
        result = ctx.run("Unmount filesystem", self.executor.unmount, mount.mount_point,
                         lazy=force, critical=False)
        if not result.success:
            if not force and 'busy' in result.output.lower():
                raise StepFailedError(
                    f"Mount point {mount.mount_point} is busy", 'mount_busy',
                    details={'mount_path': mount.mount_point, 'processes': []},
                )
            raise StepFailedError(f"Unmount failed: {result.output}", 'command_failed')

        self._update_record(record, is_mounted=False, last_mount_path=mount.mount_point)
        return f"Pool '{record.label}' unmounted from {mount.mount_point}"

    # remove

    def remove_pool(self, ctx, params: Dict[str, Any]) -> str:
        guid = ctx.pool_group_guid
        record = self._require_record(guid)
        found, missing = self.drive_monitor.resolve_serials(record.drive_serials)
        if missing:
            ctx.log(f"Drives not attached, their signatures are left in place: {', '.join(missing)}")

        ctx.progress(5, "Unmounting")
        mount = self._find_pool_mount(record)
        if mount is not None:
            result = ctx.run("Unmount filesystem", self.executor.unmount, mount.mount_point,
                             lazy=True, critical=False)
            if not result.success:
                ctx.log(f"Unmount failed, continuing: {result.output}")
        else:
            ctx.log("Pool is not mounted")

        ctx.checkpoint()
        ctx.progress(25, "Stopping array")
        descriptor = self.resolve_array(record)
        if descriptor is not None:
            ctx.run("Stop array", self.executor.mdadm_stop, descriptor.device_path)
        else:
            ctx.log("Array is not assembled")
        self.mdstat_reader.invalidate_cache()

        drives = list(found.values())
        for index, drive in enumerate(drives):
            ctx.progress(40 + 50 * index // max(len(drives), 1), f"Wiping {drive.device_name}")
            # Fails on an already wiped drive, which keeps retries safe
            ctx.run(f"Clear RAID superblock on {drive.device_name}",
                    self.executor.mdadm_zero_superblock, drive.stable_id_path, critical=False)
            ctx.run(f"Wipe signatures on {drive.device_name}",
                    self.executor.wipe_signatures, drive.stable_id_path)

        ctx.progress(95, "Removing pool metadata")
        success, message = self.metadata_store.remove(guid)
        if not success:
            raise StepFailedError(message, 'metadata_error')

        return f"Pool '{record.label}' removed"

    # queries

    def resolve_array(self, record: PoolMetadataRecord) -> Optional[ArrayDescriptor]:
        """
        Find the live array for a pool.

        Member drives are matched first; the GUID-named device node and
        then the stored name are used only when no member drive is attached.
        """
        found, _ = self.drive_monitor.resolve_serials(record.drive_serials)
        if found:
            return self.mdstat_reader.find_array_by_members(
                [drive.device_name for drive in found.values()]
            )

        md_path = md_device_path(record.pool_group_guid)
        if os.path.exists(md_path):
            descriptor = self.mdstat_reader.read_one(os.path.basename(os.path.realpath(md_path)))
            if descriptor is not None:
                return descriptor
        return self.mdstat_reader.read_one(record.md_device_name) if record.md_device_name else None

    def list_pools(self) -> List[PoolSummary]:
        return [self._summarize(record, detailed=False) for record in self.metadata_store.list_all()]

    def get_pool_detail(self, pool_group_guid: str) -> Optional[PoolSummary]:
        record = self.metadata_store.get(pool_group_guid)
        if record is None:
            return None
        return self._summarize(record, detailed=True)

    def _summarize(self, record: PoolMetadataRecord, detailed: bool) -> PoolSummary:
        mapping = self.drive_monitor.current_mapping()
        drives = []
        for serial in record.drive_serials:
            drive = mapping.by_serial.get(serial)
            drives.append(PoolDriveSummary(
                serial=serial,
                label=record.drive_labels.get(serial),
                is_connected=drive is not None,
                device_path=drive.device_path if drive else None,
                stable_id_name=drive.stable_id_name if drive else None,
            ))

        descriptor = self.resolve_array(record)
        mount = self._find_pool_mount(record, descriptor)

        summary = PoolSummary(
            pool_group_guid=record.pool_group_guid,
            label=record.label,
            md_device_name=descriptor.device_name if descriptor else record.md_device_name,
            status=descriptor.health if descriptor else 'missing',
            is_mounted=mount is not None,
            mount_path=mount.mount_point if mount else record.last_mount_path,
            drives=drives,
        )

        if detailed:
            summary.array = descriptor
            if descriptor is not None:
                summary.size_bytes = descriptor.array_size_bytes
            if mount is not None:
                usage = mounts.get_usage(mount.mount_point)
                if usage is not None:
                    summary.size_bytes = usage.total
                    summary.used_bytes = usage.used
                    summary.available_bytes = usage.free
        return summary

    # helpers

    def _require_record(self, guid: str) -> PoolMetadataRecord:
        record = self.metadata_store.get(guid)
        if record is None:
            raise StepFailedError(f"Pool {guid} not found", 'resolution_failed')
        return record

    def _find_pool_mount(self, record: PoolMetadataRecord,
                         descriptor: Optional[ArrayDescriptor] = None) -> Optional[MountEntry]:
        if descriptor is None:
            descriptor = self.resolve_array(record)
        candidates = [md_device_path(record.pool_group_guid)]
        if descriptor is not None:
            candidates.insert(0, descriptor.device_path)
        return mounts.find_mount_for_device(candidates)

    @staticmethod
    def _is_array_mount(mount: MountEntry, descriptor: ArrayDescriptor, guid: str) -> bool:
        return mount.device in {descriptor.device_path, md_device_path(guid)} or \
            os.path.realpath(mount.device) == descriptor.device_path

    def _update_record(self, record: PoolMetadataRecord, **changes) -> None:
        success, message = self.metadata_store.update(replace(record, **changes))
        if not success:
            raise StepFailedError(message, 'metadata_error')
