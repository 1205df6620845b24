"""Data models for RAID arrays, drives, pool metadata and pool operations."""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class OperationType(Enum):
    """Kinds of tracked pool work."""
    CREATE = "create"
    MOUNT = "mount"
    UNMOUNT = "unmount"
    REMOVE = "remove"
    EXPAND = "expand"
    SCRUB = "scrub"
    ADD_DRIVE = "add_drive"
    REMOVE_DRIVE = "remove_drive"
    REBALANCE = "rebalance"
    CHECK = "check"
    REPAIR = "repair"
    MAINTENANCE = "maintenance"
    CUSTOM = "custom"


class OperationStatus(Enum):
    """Lifecycle state of a pool operation."""
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({
    OperationStatus.PENDING,
    OperationStatus.QUEUED,
    OperationStatus.RUNNING,
    OperationStatus.PAUSED,
})

TERMINAL_STATUSES = frozenset({
    OperationStatus.CANCELLED,
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.TIMED_OUT,
})

# Operation types that may be paused between steps
SUSPENDABLE_TYPES = frozenset({
    OperationType.REMOVE,
    OperationType.SCRUB,
    OperationType.CHECK,
    OperationType.REBALANCE,
    OperationType.MAINTENANCE,
})


@dataclass
class ArrayDescriptor:
    """One md array as reported by the kernel."""
    device_name: str
    state: str = ""
    level: str = ""
    is_active: bool = False
    component_devices: List[str] = field(default_factory=list)
    faulty_devices: List[str] = field(default_factory=list)
    spare_devices: List[str] = field(default_factory=list)
    array_size_bytes: int = 0
    total_count: int = 0
    active_count: int = 0
    working_count: int = 0
    failed_count: int = 0
    spare_count: int = 0
    status_chars: str = ""
    resync_in_progress: bool = False
    sync_action: Optional[str] = None
    resync_percentage: Optional[float] = None
    resync_eta_minutes: Optional[float] = None
    resync_speed: Optional[str] = None

    @property
    def device_path(self) -> str:
        return f"/dev/{self.device_name}"

    @property
    def health(self) -> str:
        """Summarise the array state as a single word."""
        if not self.is_active:
            return "inactive"
        if self.resync_in_progress:
            return "recovering" if self.sync_action == "recovery" else "resyncing"
        if self.failed_count > 0 or (self.total_count and self.active_count < self.total_count):
            return "degraded"
        return "active"

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['health'] = self.health
        return result


@dataclass
class MdStatSnapshot:
    """Complete parse of one mdstat document."""
    personalities: List[str] = field(default_factory=list)
    arrays: Dict[str, ArrayDescriptor] = field(default_factory=dict)
    unused_devices: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DriveRecord:
    """A physical disk and the identifiers it is currently known by."""
    stable_id_name: str
    stable_id_path: str
    device_name: str
    device_path: str
    serial: Optional[str]
    size_bytes: int
    busy: bool = False
    partitions: Tuple[str, ...] = ()
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['partitions'] = list(self.partitions)
        return result


class DriveMapping:
    """Read-only snapshot of every known drive, indexed four ways.

    Instances are built completely by the drive monitor and then swapped in,
    so holders of a reference never see it change.
    """

    def __init__(self, drives: Optional[List[DriveRecord]] = None,
                 last_updated: Optional[datetime] = None):
        by_stable_id: Dict[str, DriveRecord] = {}
        by_device_path: Dict[str, DriveRecord] = {}
        by_device_name: Dict[str, DriveRecord] = {}
        by_serial: Dict[str, DriveRecord] = {}

        for drive in drives or []:
            by_stable_id[drive.stable_id_name] = drive
            by_device_path[drive.device_path] = drive
            by_device_name[drive.device_name] = drive
            if drive.serial:
                by_serial[drive.serial] = drive

        self.by_stable_id: Mapping[str, DriveRecord] = MappingProxyType(by_stable_id)
        self.by_device_path: Mapping[str, DriveRecord] = MappingProxyType(by_device_path)
        self.by_device_name: Mapping[str, DriveRecord] = MappingProxyType(by_device_name)
        self.by_serial: Mapping[str, DriveRecord] = MappingProxyType(by_serial)
        self.last_updated = last_updated

    @property
    def drives(self) -> List[DriveRecord]:
        return list(self.by_stable_id.values())

    def __len__(self) -> int:
        return len(self.by_stable_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'drives': [drive.to_dict() for drive in self.drives],
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass
class PoolMetadataRecord:
    """Durable identity of a pool, independent of kernel device naming."""
    pool_group_guid: str
    md_device_name: str
    label: str
    drive_serials: List[str] = field(default_factory=list)
    drive_labels: Dict[str, str] = field(default_factory=dict)
    last_mount_path: Optional[str] = None
    is_mounted: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PoolMetadataRecord':
        created_at = data.get('created_at')
        return cls(
            pool_group_guid=str(data['pool_group_guid']),
            md_device_name=data.get('md_device_name', ''),
            label=data.get('label', ''),
            drive_serials=list(data.get('drive_serials') or []),
            drive_labels=dict(data.get('drive_labels') or {}),
            last_mount_path=data.get('last_mount_path'),
            is_mounted=bool(data.get('is_mounted', False)),
            created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(),
        )


@dataclass
class CommandResult:
    """Outcome of one external command invocation."""
    command: str
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def output(self) -> str:
        """Cleaned stdout and stderr combined."""
        parts = [part.strip('\n') for part in (self.stdout, self.stderr) if part and part.strip()]
        return '\n'.join(parts)

    @property
    def output_lines(self) -> List[str]:
        return [line for line in self.output.splitlines() if line.strip()]


@dataclass
class ProcessInfo:
    """A process holding files open under a path."""
    pid: int
    command: str
    user: Optional[str] = None
    path: Optional[str] = None


@dataclass
class MountEntry:
    device: str
    mount_point: str
    fstype: str = ""
    options: str = ""


@dataclass
class PoolOperation:
    """A tracked, asynchronous unit of pool lifecycle work."""
    pool_group_guid: str
    operation_type: OperationType
    status: OperationStatus = OperationStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    description: str = ""
    status_message: str = ""
    result_message: str = ""
    error_code: Optional[str] = None
    progress_percentage: float = 0.0
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_updated_at: datetime = field(default_factory=datetime.now)
    success: bool = False
    command_outputs: List[str] = field(default_factory=list)
    can_be_cancelled: bool = True
    parameters: Dict[str, Any] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable dictionary."""
        result = asdict(self)
        result['operation_type'] = self.operation_type.value
        result['status'] = self.status.value
        for key in ('created_at', 'started_at', 'completed_at', 'last_updated_at'):
            value = getattr(self, key)
            result[key] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PoolOperation':
        def _parse_time(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data['id'],
            pool_group_guid=data['pool_group_guid'],
            operation_type=OperationType(data['operation_type']),
            status=OperationStatus(data['status']),
            description=data.get('description', ''),
            status_message=data.get('status_message', ''),
            result_message=data.get('result_message', ''),
            error_code=data.get('error_code'),
            progress_percentage=float(data.get('progress_percentage', 0.0)),
            created_at=_parse_time(data.get('created_at')) or datetime.now(),
            started_at=_parse_time(data.get('started_at')),
            completed_at=_parse_time(data.get('completed_at')),
            last_updated_at=_parse_time(data.get('last_updated_at')) or datetime.now(),
            success=bool(data.get('success', False)),
            command_outputs=list(data.get('command_outputs') or []),
            can_be_cancelled=bool(data.get('can_be_cancelled', False)),
            parameters=dict(data.get('parameters') or {}),
            details=dict(data.get('details') or {}),
        )


@dataclass
class PoolDriveSummary:
    serial: str
    label: Optional[str]
    is_connected: bool
    device_path: Optional[str] = None
    stable_id_name: Optional[str] = None


@dataclass
class PoolSummary:
    """Merged view of a pool from metadata, kernel state and drive identity."""
    pool_group_guid: str
    label: str
    md_device_name: str
    status: str
    is_mounted: bool
    mount_path: Optional[str]
    drives: List[PoolDriveSummary] = field(default_factory=list)
    array: Optional[ArrayDescriptor] = None
    size_bytes: Optional[int] = None
    used_bytes: Optional[int] = None
    available_bytes: Optional[int] = None

    @property
    def drive_count(self) -> int:
        return len(self.drives)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['drive_count'] = self.drive_count
        result['array'] = self.array.to_dict() if self.array else None
        return result
