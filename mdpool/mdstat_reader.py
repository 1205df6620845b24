"""Reader and parser for the kernel's software-RAID status text."""

import copy
import logging
import re
import threading
import time
import uuid
from typing import Dict, Iterable, Optional, Tuple

from .models import ArrayDescriptor, MdStatSnapshot
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)


PERSONALITIES_PATTERN = re.compile(r'^Personalities\s*:\s*(.*)$')
PERSONALITY_PATTERN = re.compile(r'\[(.*?)\]')
UNUSED_DEVICES_PATTERN = re.compile(r'^unused devices\s*:\s*(.*?)\s*$')
ARRAY_HEADER_PATTERN = re.compile(r'^(md[\w/-]*)\s*:\s*(\S+)\s*(.*)$')
READ_ONLY_PATTERN = re.compile(r'^\(([\w-]+)\)\s*')
LEVEL_PATTERN = re.compile(r'^(raid\d+|linear|multipath|faulty)$')
COMPONENT_PATTERN = re.compile(r'^([\w.:+-]+?)\[(\d+)\]((?:\([A-Z]\))*)$')
BLOCKS_PATTERN = re.compile(r'(\d+) blocks')
STATUS_PATTERN = re.compile(r'\[(\d+)/(\d+)\]\s*\[([^\]]*)\]')
SYNC_ACTION_PATTERN = re.compile(r'\b(resync|recovery|check|reshape|repair)\s*=')
SYNC_PERCENT_PATTERN = re.compile(r'=\s*([0-9.]+)%')
SYNC_FINISH_PATTERN = re.compile(r'finish=([0-9.]+)min')
SYNC_SPEED_PATTERN = re.compile(r'speed=([0-9.]+[KMG])/sec')

NO_DEVICES_PLACEHOLDER = '<none>'
# nvme0n1p2 / mmcblk0p1 for disks whose name ends in a digit, sdb1 otherwise
PARTITION_SUFFIX_PATTERN = re.compile(r'^\d+$')
NUMBERED_DISK_PARTITION_SUFFIX_PATTERN = re.compile(r'^p\d+$')


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def _parse_header(line: str) -> Optional[ArrayDescriptor]:
    """Parse `mdX : state [(ro)] [level] dev[n](F) ...`."""
    match = ARRAY_HEADER_PATTERN.match(line)
    if not match:
        return None

    descriptor = ArrayDescriptor(device_name=match.group(1), state=match.group(2))
    descriptor.is_active = descriptor.state == 'active'

    rest = match.group(3)
    # e.g. "active (auto-read-only) raid1 ..."
    read_only = READ_ONLY_PATTERN.match(rest)
    if read_only:
        rest = rest[read_only.end():]

    tokens = rest.split()
    if tokens and LEVEL_PATTERN.match(tokens[0]):
        descriptor.level = tokens.pop(0)

    for token in tokens:
        component = COMPONENT_PATTERN.match(token)
        if not component:
            continue
        name, flags = component.group(1), component.group(3)
        descriptor.component_devices.append(name)
        if '(F)' in flags:
            descriptor.faulty_devices.append(name)
        if '(S)' in flags:
            descriptor.spare_devices.append(name)

    descriptor.working_count = len(descriptor.component_devices) - len(descriptor.faulty_devices)
    return descriptor


def _apply_status_line(descriptor: ArrayDescriptor, line: str) -> None:
    """Fill size and slot counts from the `N blocks ... [t/a] [UU]` line."""
    blocks = BLOCKS_PATTERN.search(line)
    if blocks:
        descriptor.array_size_bytes = int(blocks.group(1)) * 1024

    status = STATUS_PATTERN.search(line)
    if not status:
        return

    declared_total = int(status.group(1))
    chars = status.group(3)
    descriptor.status_chars = chars
    if not chars or len(chars) != declared_total:
        # Malformed summary leaves the counts at zero
        return

    descriptor.total_count = len(chars)
    descriptor.active_count = chars.count('U')
    descriptor.failed_count = chars.count('_')
    descriptor.spare_count = descriptor.total_count - descriptor.active_count - descriptor.failed_count


def _apply_sync_line(descriptor: ArrayDescriptor, line: str) -> bool:
    """Fill resync progress; returns False if the line is not a sync line."""
    action = SYNC_ACTION_PATTERN.search(line)
    if not action:
        return False

    descriptor.resync_in_progress = True
    descriptor.sync_action = action.group(1)

    percent = SYNC_PERCENT_PATTERN.search(line)
    if percent:
        descriptor.resync_percentage = _to_float(percent.group(1))

    finish = SYNC_FINISH_PATTERN.search(line)
    if finish:
        descriptor.resync_eta_minutes = _to_float(finish.group(1))

    speed = SYNC_SPEED_PATTERN.search(line)
    if speed:
        descriptor.resync_speed = speed.group(1)

    return True


def parse_mdstat(content: str) -> MdStatSnapshot:
    """
    Parse mdstat text into a snapshot.

    Each array block is handled by a small state machine
    (header -> optional status line -> optional sync line) so a
    malformed block never affects the ones after it.

    Args:
        content: Raw mdstat text

    Returns:
        MdStatSnapshot with one descriptor per array header
    """
    snapshot = MdStatSnapshot()
    current: Optional[ArrayDescriptor] = None
    expecting_status = False

    for raw_line in (content or '').splitlines():
        line = raw_line.rstrip()
        stripped = line.strip()

        if not stripped:
            current = None
            continue

        personalities = PERSONALITIES_PATTERN.match(stripped)
        if personalities:
            current = None
            snapshot.personalities = PERSONALITY_PATTERN.findall(personalities.group(1))
            continue

        unused = UNUSED_DEVICES_PATTERN.match(stripped)
        if unused:
            current = None
            value = unused.group(1)
            if value and value != NO_DEVICES_PLACEHOLDER:
                snapshot.unused_devices = value.split()
            continue

        if not line[0].isspace():
            current = _parse_header(stripped)
            expecting_status = current is not None
            if current is not None:
                snapshot.arrays[current.device_name] = current
            continue

        if current is None:
            continue

        if _apply_sync_line(current, stripped):
            expecting_status = False
            continue

        if expecting_status:
            _apply_status_line(current, stripped)
            expecting_status = False
        # Anything else (bitmap lines) is ignored

    return snapshot


def device_belongs_to(component: str, disk: str) -> bool:
    """True when component is the disk itself or one of its partitions."""
    if component == disk:
        return True
    if not disk or not component.startswith(disk):
        return False
    pattern = NUMBERED_DISK_PARTITION_SUFFIX_PATTERN if disk[-1].isdigit() else PARTITION_SUFFIX_PATTERN
    return bool(pattern.match(component[len(disk):]))


def md_device_path(pool_group_guid: str) -> str:
    """Named array node for a pool, e.g. /dev/md/3f2a...; stable across reboots."""
    return f"/dev/md/{uuid.UUID(pool_group_guid).hex}"


def find_array_by_members(arrays: Dict[str, ArrayDescriptor],
                          device_names: Iterable[str]) -> Optional[ArrayDescriptor]:
    """
    Find the array whose components cover every given disk.

    Args:
        arrays: Parsed arrays keyed by device name
        device_names: Kernel names of the member disks (e.g. sdb)

    Returns:
        Matching descriptor, preferring active arrays, or None
    """
    wanted = [name for name in device_names if name]
    if not wanted:
        return None

    matches = []
    for descriptor in arrays.values():
        if all(any(device_belongs_to(component, disk) for component in descriptor.component_devices)
               for disk in wanted):
            matches.append(descriptor)

    if not matches:
        return None
    matches.sort(key=lambda d: (not d.is_active, d.device_name))
    return matches[0]


class MdStatReader:
    """Reads kernel RAID state with a short-lived snapshot cache."""

    def __init__(self, executor: SystemCommandExecutor,
                 mdstat_path: str = '/proc/mdstat',
                 cache_ttl_seconds: float = 5.0,
                 metadata_store=None,
                 drive_monitor=None):
        """
        Initialize the reader.

        Args:
            executor: Command executor used for the fallback read
            mdstat_path: Kernel status text location
            cache_ttl_seconds: Lifetime of a cached snapshot
            metadata_store: Optional PoolMetadataStore for GUID lookups
            drive_monitor: Optional DriveMonitor for serial-based lookups
        """
        self.executor = executor
        self.mdstat_path = mdstat_path
        self.cache_ttl_seconds = cache_ttl_seconds
        self.metadata_store = metadata_store
        self.drive_monitor = drive_monitor
        # (monotonic timestamp, snapshot); replaced as a whole, never mutated
        self._cache: Optional[Tuple[float, MdStatSnapshot]] = None
        self._cache_lock = threading.Lock()

    def read_snapshot(self, use_cache: bool = True) -> MdStatSnapshot:
        """Return the parsed status, re-reading when the cache has expired."""
        cached = self._cache
        if use_cache and cached and time.monotonic() - cached[0] < self.cache_ttl_seconds:
            return copy.deepcopy(cached[1])

        content = self._read_content()
        if content is None:
            return MdStatSnapshot()

        snapshot = parse_mdstat(content)
        with self._cache_lock:
            self._cache = (time.monotonic(), snapshot)
        return copy.deepcopy(snapshot)

    def read_all(self, use_cache: bool = True) -> Dict[str, ArrayDescriptor]:
        return self.read_snapshot(use_cache=use_cache).arrays

    def read_one(self, device_name: str) -> Optional[ArrayDescriptor]:
        """Look up one array by kernel name ("md0" or "/dev/md0")."""
        if device_name.startswith('/dev/'):
            device_name = device_name[len('/dev/'):]
        return self.read_all().get(device_name)

    def read_by_pool_guid(self, pool_group_guid: str) -> Optional[ArrayDescriptor]:
        """
        Resolve a pool's array through its metadata record.

        Member-drive membership is checked first so a stale stored
        device name does not hide a renumbered array.
        """
        if self.metadata_store is None:
            logger.error("GUID lookup requested without a metadata store")
            return None

        record = self.metadata_store.get(pool_group_guid)
        if record is None:
            return None

        arrays = self.read_all()
        if self.drive_monitor is not None and record.drive_serials:
            found, missing = self.drive_monitor.resolve_serials(record.drive_serials)
            if found:
                descriptor = find_array_by_members(
                    arrays, [drive.device_name for drive in found.values()]
                )
                if descriptor:
                    return descriptor

        return arrays.get(record.md_device_name)

    def find_array_by_members(self, device_names: Iterable[str],
                              use_cache: bool = True) -> Optional[ArrayDescriptor]:
        return find_array_by_members(self.read_all(use_cache=use_cache), device_names)

    def invalidate_cache(self) -> None:
        """Drop the cached snapshot so the next read goes to the kernel."""
        with self._cache_lock:
            self._cache = None

    def _read_content(self) -> Optional[str]:
        try:
            with open(self.mdstat_path, 'r') as f:
                return f.read()
        except OSError as e:
            logger.warning(f"Cannot read {self.mdstat_path} directly ({e}), using cat fallback")

        try:
            result = self.executor.read_file(self.mdstat_path)
        except ValueError as e:
            logger.error(f"Invalid mdstat path {self.mdstat_path}: {e}")
            return None

        if result.success:
            return result.stdout

        logger.error(f"Failed to read RAID status from {self.mdstat_path}: {result.stderr}")
        return None
