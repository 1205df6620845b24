"""Physical drive discovery and stable identity tracking."""

import fnmatch
import json
import logging
import os
import re
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .events import DriveChangeEvent, DriveEventBus
from .exceptions import DriveScanError
from .models import DriveMapping, DriveRecord
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)


LSBLK_COLUMNS = "NAME,SIZE,TYPE,MOUNTPOINT,SERIAL,MODEL,FSTYPE,PATH"

# by-id links that identify something other than a whole physical disk
SKIPPED_LINK_PREFIXES = ('wwn-', 'nvme-eui.', 'dm-name-', 'dm-uuid-', 'md-', 'lvm-pv-uuid-')
PARTITION_LINK_PATTERN = re.compile(r'-part\d+$')
VIRTUAL_DISK_PREFIXES = ('loop', 'sr', 'ram', 'zram')


class _StableIdEventHandler(FileSystemEventHandler):
    """Forwards by-id directory changes to the monitor."""

    def __init__(self, monitor: 'DriveMonitor'):
        super().__init__()
        self.monitor = monitor

    def on_created(self, event):
        self.monitor.schedule_refresh()

    on_deleted = on_created
    on_moved = on_created


class DriveMonitor:
    """Maintains the mapping between by-id names, device paths and serials."""

    def __init__(self, executor: SystemCommandExecutor,
                 by_id_dir: str = '/dev/disk/by-id',
                 excluded_drives: Optional[List[str]] = None,
                 settle_delay_seconds: float = 2.0,
                 poll_interval_seconds: float = 60,
                 event_bus: Optional[DriveEventBus] = None):
        """
        Initialize the drive monitor.

        Args:
            executor: Command executor used for lsblk
            by_id_dir: Directory of stable by-id symlinks
            excluded_drives: Device names or paths to ignore; '*' wildcards allowed
            settle_delay_seconds: Debounce delay after a by-id change
            poll_interval_seconds: Refresh period when the by-id directory is absent
            event_bus: Channel that receives a DriveChangeEvent after each refresh
        """
        self.executor = executor
        self.by_id_dir = by_id_dir
        self.excluded_drives = list(excluded_drives or [])
        self.settle_delay_seconds = settle_delay_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.event_bus = event_bus or DriveEventBus()

        self._mapping = DriveMapping()
        self._last_refresh_time: Optional[datetime] = None
        self._refresh_lock = threading.Lock()

        self._observer: Optional[Observer] = None
        self._poll_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._settle_timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()

    @property
    def last_refresh_time(self) -> Optional[datetime]:
        return self._last_refresh_time

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_lock.locked()

    @property
    def is_watching(self) -> bool:
        return self._observer is not None or self._poll_thread is not None

    def initialize(self) -> bool:
        """Build the first mapping."""
        success = self.refresh(force=True)
        if success:
            logger.info(f"Drive monitor initialized with {len(self._mapping)} drives")
        else:
            logger.error("Drive monitor failed to build the initial drive mapping")
        return success

    def current_mapping(self) -> DriveMapping:
        """Return the current read-only mapping snapshot."""
        return self._mapping

    def refresh(self, force: bool = False) -> bool:
        """
        Rescan block devices and swap in a new mapping.

        A non-forced call made while another refresh is running returns
        True straight away; a forced call waits for it.

        Args:
            force: Wait for an in-flight refresh instead of skipping

        Returns:
            True on success, False if devices could not be enumerated
        """
        if force:
            self._refresh_lock.acquire()
        elif not self._refresh_lock.acquire(blocking=False):
            logger.debug("Drive refresh already in progress, skipping")
            return True

        try:
            try:
                drives = self._scan_drives()
            except DriveScanError as e:
                logger.error(f"Drive refresh failed, keeping previous mapping: {e}")
                return False

            new_mapping = DriveMapping(drives, last_updated=datetime.now())
            old_mapping = self._mapping
            self._mapping = new_mapping
            self._last_refresh_time = new_mapping.last_updated
        finally:
            self._refresh_lock.release()

        event = DriveChangeEvent.between(old_mapping, new_mapping)
        if event.has_changes:
            logger.info(
                f"Drive mapping changed: {len(event.added)} added, "
                f"{len(event.removed)} removed, {len(event.changed)} changed"
            )
        self.event_bus.publish(event)
        return True

    def resolve_serials(self, serials: Iterable[str]) -> Tuple[Dict[str, DriveRecord], List[str]]:
        """
        Map serial numbers to currently attached drives.

        Returns:
            Tuple of ({serial: DriveRecord} for found drives, [missing serials])
        """
        mapping = self._mapping
        found: Dict[str, DriveRecord] = {}
        missing: List[str] = []
        for serial in serials:
            drive = mapping.by_serial.get(serial)
            if drive is None:
                missing.append(serial)
            else:
                found[serial] = drive
        return found, missing

    def find_by_serial(self, serial: str) -> Optional[DriveRecord]:
        return self._mapping.by_serial.get(serial)

    def find_by_device(self, device: str) -> Optional[DriveRecord]:
        """Look up a drive by device name or path."""
        mapping = self._mapping
        return mapping.by_device_path.get(device) or mapping.by_device_name.get(device)

    # scanning

    def _scan_drives(self) -> List[DriveRecord]:
        result = self.executor.list_block_devices(LSBLK_COLUMNS)
        if not result.success:
            raise DriveScanError(result.stderr or f"lsblk exited with {result.exit_code}")

        try:
            devices = json.loads(result.stdout).get('blockdevices', [])
        except (ValueError, AttributeError) as e:
            raise DriveScanError(f"Unparseable lsblk output: {e}")

        links = self._read_stable_id_links()
        drives = []
        for device in devices:
            drive = self._build_record(device, links)
            if drive is not None:
                drives.append(drive)
        return drives

    def _read_stable_id_links(self) -> List[Tuple[str, str, str]]:
        """Return (name, link path, resolved target) for every usable by-id link."""
        try:
            names = sorted(os.listdir(self.by_id_dir))
        except OSError as e:
            logger.warning(f"Cannot list {self.by_id_dir}: {e}")
            return []

        links = []
        for name in names:
            if name.startswith(SKIPPED_LINK_PREFIXES) or PARTITION_LINK_PATTERN.search(name):
                continue
            link_path = os.path.join(self.by_id_dir, name)
            links.append((name, link_path, os.path.realpath(link_path)))
        return links

    def _build_record(self, device: Dict, links: List[Tuple[str, str, str]]) -> Optional[DriveRecord]:
        name = device.get('name') or ''
        if device.get('type') != 'disk' or not name or name.startswith(VIRTUAL_DISK_PREFIXES):
            return None

        device_path = device.get('path') or f'/dev/{name}'
        if self._is_excluded(name, device_path):
            logger.debug(f"Skipping excluded drive {device_path}")
            return None

        stable = next((link for link in links if link[2] == device_path), None)
        if stable is None:
            # Without a stable id the drive cannot be tracked across renumbering
            logger.debug(f"No stable id link for {device_path}")
            return None

        serial = (device.get('serial') or '').strip() or None
        model = (device.get('model') or '').strip() or None
        children = device.get('children') or []

        return DriveRecord(
            stable_id_name=stable[0],
            stable_id_path=stable[1],
            device_name=name,
            device_path=device_path,
            serial=serial,
            size_bytes=int(device.get('size') or 0),
            busy=self._is_busy(device),
            partitions=tuple(child.get('name') for child in children
                             if child.get('type') == 'part' and child.get('name')),
            model=model,
        )

    def _is_busy(self, device: Dict) -> bool:
        """True when the device or a descendant is mounted or in a RAID array."""
        if device.get('mountpoint') or any(device.get('mountpoints') or []):
            return True
        if device.get('fstype') == 'linux_raid_member':
            return True
        for child in device.get('children') or []:
            if (child.get('type') or '').startswith('raid') or self._is_busy(child):
                return True
        return False

    def _is_excluded(self, name: str, path: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(path, pattern)
                   for pattern in self.excluded_drives)

    # watching

    def start_watching(self) -> None:
        """Watch the by-id directory, or poll when it does not exist."""
        if self.is_watching:
            return
        self._stop_event.clear()

        if os.path.isdir(self.by_id_dir):
            self._observer = Observer()
            self._observer.schedule(_StableIdEventHandler(self), self.by_id_dir, recursive=False)
            self._observer.daemon = True
            self._observer.start()
            logger.info(f"Watching {self.by_id_dir} for drive changes")
            return

        logger.warning(f"{self.by_id_dir} not found, polling every {self.poll_interval_seconds}s")
        self._poll_thread = threading.Thread(target=self._poll_loop, daemon=True)
        self._poll_thread.start()

    def stop_watching(self) -> None:
        self._stop_event.set()
        with self._timer_lock:
            if self._settle_timer is not None:
                self._settle_timer.cancel()
                self._settle_timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=5)
            self._poll_thread = None

    def schedule_refresh(self) -> None:
        """Debounce bursts of by-id events into a single refresh."""
        with self._timer_lock:
            if self._settle_timer is not None:
                self._settle_timer.cancel()
            self._settle_timer = threading.Timer(self.settle_delay_seconds, self._refresh_after_settle)
            self._settle_timer.daemon = True
            self._settle_timer.start()

    def _refresh_after_settle(self) -> None:
        with self._timer_lock:
            self._settle_timer = None
        if not self._stop_event.is_set():
            self.refresh(force=True)

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval_seconds):
            self.refresh(force=False)
