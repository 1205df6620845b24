"""Asynchronous, cancellable pool operations and their lifecycle."""

import fcntl
import json
import logging
import os
import re
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from .exceptions import (
    CommandTimeoutError,
    InvalidTransitionError,
    OperationCancelledError,
    OperationConflictError,
    OperationNotFoundError,
    OperationsLockedError,
    PoolValidationError,
    StepFailedError,
)
from .models import (
    ACTIVE_STATUSES,
    SUSPENDABLE_TYPES,
    CommandResult,
    OperationStatus,
    OperationType,
    PoolOperation,
)
from .pool_service import PoolService


logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    OperationStatus.PENDING: {OperationStatus.QUEUED, OperationStatus.CANCELLED, OperationStatus.FAILED},
    OperationStatus.QUEUED: {OperationStatus.RUNNING, OperationStatus.CANCELLED, OperationStatus.FAILED},
    OperationStatus.RUNNING: {
        OperationStatus.PAUSED, OperationStatus.COMPLETED, OperationStatus.FAILED,
        OperationStatus.TIMED_OUT, OperationStatus.CANCELLED,
    },
    OperationStatus.PAUSED: {OperationStatus.RUNNING, OperationStatus.CANCELLED, OperationStatus.FAILED},
}

LABEL_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{1,16}$')

AGENT_LOCK_FILENAME = '.agent.lock'

StepExecutor = Callable[['OperationContext', Dict[str, Any]], str]


class _OperationControl:
    """Cancel and pause requests for one operation."""

    def __init__(self):
        self.condition = threading.Condition()
        self.cancel_requested = False
        self.pause_requested = False


class OperationContext:
    """Handle given to step executors for recording steps and honouring control requests."""

    def __init__(self, manager: 'PoolOperationManager', operation: PoolOperation,
                 control: _OperationControl):
        self._manager = manager
        self._control = control
        self.operation_id = operation.id
        self.pool_group_guid = operation.pool_group_guid
        self.operation_type = operation.operation_type

    def run(self, description: str, func: Callable[..., CommandResult], *args,
            cancellable: bool = True, critical: bool = True, checkpoint: bool = True,
            **kwargs) -> CommandResult:
        """
        Run one command as a recorded step.

        Args:
            description: Human readable step name
            func: Executor method returning a CommandResult
            cancellable: Whether the operation may be cancelled while this step runs
            critical: Raise StepFailedError / CommandTimeoutError when the command fails
            checkpoint: Honour cancel and pause requests before the step

        Returns:
            The CommandResult
        """
        if checkpoint:
            self.checkpoint()

        self._manager._update(self.operation_id, status_message=description,
                              can_be_cancelled=cancellable)
        try:
            result = func(*args, **kwargs)
        except ValueError as e:
            self.log(f"{description}: {e}")
            raise StepFailedError(f"{description}: {e}", 'validation')

        lines = [f"$ {result.command}"] + result.output_lines
        if not result.success:
            lines.append(f"[exit code {result.exit_code}]")
        self._manager._append_outputs(self.operation_id, lines)

        if critical and result.timed_out:
            raise CommandTimeoutError(f"{description} timed out: {result.command}")
        if critical and not result.success:
            raise StepFailedError(f"{description} failed: {result.output or result.stderr}",
                                  'command_failed')

        self._manager._update(self.operation_id, can_be_cancelled=True)
        return result

    def log(self, message: str) -> None:
        self._manager._append_outputs(self.operation_id, [message])

    def progress(self, percentage: Optional[float], message: Optional[str] = None) -> None:
        changes: Dict[str, Any] = {}
        if percentage is not None:
            changes['progress_percentage'] = float(percentage)
        if message:
            changes['status_message'] = message
        if changes:
            self._manager._update(self.operation_id, **changes)

    def checkpoint(self) -> None:
        """Raise if cancelled; block here while paused."""
        control = self._control
        with control.condition:
            if control.cancel_requested:
                raise OperationCancelledError("Operation cancelled")
            if not control.pause_requested:
                return

        self._manager._transition(self.operation_id, OperationStatus.PAUSED, "Paused")
        with control.condition:
            while control.pause_requested and not control.cancel_requested:
                control.condition.wait()
            cancelled = control.cancel_requested
        if cancelled:
            raise OperationCancelledError("Operation cancelled while paused")
        self._manager._transition(self.operation_id, OperationStatus.RUNNING, "Resumed")


class PoolOperationManager:
    """Submits pool operations, runs them on a worker pool and tracks their state."""

    def __init__(self, pool_service: PoolService, max_workers: int = 4,
                 operations_dir: Optional[str] = None):
        """
        Initialize the operation manager.

        Args:
            pool_service: Provides the step executor for each operation type
            max_workers: Number of operations that may run at once
            operations_dir: Directory mirroring each operation as JSON, or None.
                Only one manager at a time may run operations from it.
        """
        self.pool_service = pool_service
        self.operations_dir = operations_dir or None
        self._async_operations: Dict[str, PoolOperation] = {}
        self._controls: Dict[str, _OperationControl] = {}
        self._operation_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._versions: Dict[str, int] = {}
        self._persisted_versions: Dict[str, int] = {}
        # Held for as long as this manager owns operations_dir
        self._agent_lock_file = None
        self._agent_lock_guard = threading.RLock()
        # Loaded from operations_dir while another manager owned it
        self._foreign_ids: Set[str] = set()
        self._worker_pool = ThreadPoolExecutor(max_workers=max_workers,
                                               thread_name_prefix='pool-operation')
        self._executors: Dict[OperationType, StepExecutor] = {
            OperationType.CREATE: pool_service.create_pool,
            OperationType.MOUNT: pool_service.mount_pool,
            OperationType.UNMOUNT: pool_service.unmount_pool,
            OperationType.REMOVE: pool_service.remove_pool,
        }

    # submission

    def submit_create(self, label: str, drive_serials: List[str], mount_path: str,
                      drive_labels: Optional[Dict[str, str]] = None,
                      pool_group_guid: Optional[str] = None) -> PoolOperation:
        """
        Validate and queue a pool creation.

        Raises:
            PoolValidationError: If the request is malformed
            OperationConflictError: If the GUID already has an active operation
            OperationsLockedError: If another agent owns the operations directory
        """
        if not label or not label.strip():
            raise PoolValidationError("Pool label must not be empty")
        if not LABEL_PATTERN.match(label):
            raise PoolValidationError(
                "Pool label may only contain letters, digits, '_' and '-' (max 16 characters)"
            )
        if not drive_serials or any(not serial or not str(serial).strip() for serial in drive_serials):
            raise PoolValidationError("At least one drive serial is required")
        if len(set(drive_serials)) != len(drive_serials):
            raise PoolValidationError("Drive serials must be unique")
        self._validate_mount_path(mount_path)

        guid = self._normalize_guid(pool_group_guid) if pool_group_guid else str(uuid.uuid4())
        params = {
            'label': label,
            'drive_serials': list(drive_serials),
            'mount_path': os.path.normpath(mount_path),
            'drive_labels': dict(drive_labels or {}),
        }
        return self._submit(guid, OperationType.CREATE, params, f"Create pool '{label}'")

    def submit_mount(self, pool_group_guid: str, mount_path: Optional[str] = None) -> PoolOperation:
        guid = self._normalize_guid(pool_group_guid)
        if mount_path is not None:
            self._validate_mount_path(mount_path)
            mount_path = os.path.normpath(mount_path)
        return self._submit(guid, OperationType.MOUNT, {'mount_path': mount_path}, "Mount pool")

    def submit_unmount(self, pool_group_guid: str, force: bool = False) -> PoolOperation:
        guid = self._normalize_guid(pool_group_guid)
        description = "Force unmount pool" if force else "Unmount pool"
        return self._submit(guid, OperationType.UNMOUNT, {'force': bool(force)}, description)

    def submit_remove(self, pool_group_guid: str) -> PoolOperation:
        guid = self._normalize_guid(pool_group_guid)
        return self._submit(guid, OperationType.REMOVE, {}, "Remove pool")

    def submit(self, pool_group_guid: str, operation_type: OperationType,
               parameters: Optional[Dict[str, Any]] = None) -> PoolOperation:
        """Generic submission; only types with a step executor are accepted."""
        if operation_type not in self._executors:
            raise PoolValidationError(f"Operation type {operation_type.value} is not supported")
        guid = self._normalize_guid(pool_group_guid)
        return self._submit(guid, operation_type, dict(parameters or {}),
                            operation_type.value.replace('_', ' ').capitalize())

    def _submit(self, guid: str, operation_type: OperationType, params: Dict[str, Any],
                description: str) -> PoolOperation:
        self._require_agent_lock()
        with self._operation_lock:
            for existing in self._async_operations.values():
                if existing.pool_group_guid == guid and existing.status in ACTIVE_STATUSES:
                    raise OperationConflictError(guid, existing.id)

            operation = PoolOperation(
                pool_group_guid=guid,
                operation_type=operation_type,
                description=description,
                status_message="Pending",
                parameters=params,
            )
            self._async_operations[operation.id] = operation
            self._controls[operation.id] = _OperationControl()
            self._apply_transition(operation, OperationStatus.QUEUED, "Queued")
            snapshot = self._snapshot(operation)

        self._persist(snapshot)
        logger.info(f"{description} queued as operation {operation.id}",
                    extra={'pool_guid': guid, 'operation_id': operation.id})
        self._worker_pool.submit(self._run_operation, operation.id)
        return operation

    # queries

    def get_operation(self, operation_id: str) -> Optional[PoolOperation]:
        with self._operation_lock:
            return self._async_operations.get(operation_id)

    def get_status(self, pool_group_guid: str) -> Optional[PoolOperation]:
        """Most recent operation for a pool."""
        guid = str(pool_group_guid)
        with self._operation_lock:
            operations = [op for op in self._async_operations.values() if op.pool_group_guid == guid]
        if not operations:
            return None
        return max(operations, key=lambda op: op.created_at)

    def get_command_outputs(self, pool_group_guid: str) -> List[str]:
        operation = self.get_status(pool_group_guid)
        if operation is None:
            return []
        with self._operation_lock:
            return list(operation.command_outputs)

    def list_operations(self, active_only: bool = False) -> List[PoolOperation]:
        """
        List all operations.

        Args:
            active_only: If True, only return non-terminal operations

        Returns:
            Operations, newest first
        """
        with self._operation_lock:
            operations = list(self._async_operations.values())

        if active_only:
            operations = [op for op in operations if op.status in ACTIVE_STATUSES]

        return sorted(operations, key=lambda x: x.created_at, reverse=True)

    # control

    def cancel_operation(self, operation_id: str) -> bool:
        """
        Cancel an operation.

        Queued operations are cancelled at once; running or paused ones stop
        at the next step boundary.

        Returns:
            True if the cancellation was accepted
        """
        with self._operation_lock:
            operation = self._async_operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(f"Operation {operation_id} not found")
            if operation.status not in ACTIVE_STATUSES:
                return False
            if operation_id not in self._controls:
                logger.warning(f"Operation {operation_id} is run by another agent",
                               extra={'operation_id': operation_id})
                return False
            if operation.status in {OperationStatus.PENDING, OperationStatus.QUEUED}:
                self._apply_transition(operation, OperationStatus.CANCELLED, "Operation cancelled by user")
                operation.result_message = "Cancelled before start"
                snapshot = self._snapshot(operation)
                control = None
            elif not operation.can_be_cancelled:
                logger.warning(f"Operation {operation_id} cannot be cancelled during "
                               f"'{operation.status_message}'", extra={'operation_id': operation_id})
                return False
            else:
                operation.status_message = "Cancellation requested"
                snapshot = self._snapshot(operation)
                control = self._controls[operation_id]

        if control is not None:
            with control.condition:
                control.cancel_requested = True
                control.condition.notify_all()
        self._persist(snapshot)
        logger.info(f"Cancellation accepted for operation {operation_id}",
                    extra={'operation_id': operation_id})
        return True

    def pause_operation(self, operation_id: str) -> bool:
        """Ask a running suspendable operation to pause at its next step boundary."""
        with self._operation_lock:
            operation = self._async_operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(f"Operation {operation_id} not found")
            if operation.operation_type not in SUSPENDABLE_TYPES:
                return False
            if operation.status != OperationStatus.RUNNING:
                return False
            control = self._controls.get(operation_id)
            if control is None:
                return False

        with control.condition:
            control.pause_requested = True
        return True

    def resume_operation(self, operation_id: str) -> bool:
        with self._operation_lock:
            operation = self._async_operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(f"Operation {operation_id} not found")
            if operation.status not in {OperationStatus.PAUSED, OperationStatus.RUNNING}:
                return False
            control = self._controls.get(operation_id)
            if control is None:
                return False

        with control.condition:
            if not control.pause_requested:
                return False
            control.pause_requested = False
            control.condition.notify_all()
        return True

    # maintenance

    def cleanup_completed_operations(self, completed_retention: timedelta = timedelta(days=7),
                                     failed_retention: timedelta = timedelta(days=30)) -> int:
        """Forget terminal operations older than their retention period."""
        now = datetime.now()
        removed = []
        with self._operation_lock:
            for operation_id, operation in list(self._async_operations.items()):
                if not operation.is_terminal or operation.completed_at is None:
                    continue
                failed = operation.status in {OperationStatus.FAILED, OperationStatus.TIMED_OUT}
                retention = failed_retention if failed else completed_retention
                if now - operation.completed_at > retention:
                    del self._async_operations[operation_id]
                    self._controls.pop(operation_id, None)
                    self._versions.pop(operation_id, None)
                    removed.append(operation_id)

        for operation_id in removed:
            self._delete_persisted(operation_id)
        if removed:
            logger.info(f"Cleaned up {len(removed)} finished operations")
        return len(removed)

    def find_stale_operations(self, threshold: timedelta = timedelta(hours=12)) -> List[PoolOperation]:
        """Active operations that have not reported progress within the threshold."""
        cutoff = datetime.now() - threshold
        stale = [op for op in self.list_operations(active_only=True) if op.last_updated_at < cutoff]
        for operation in stale:
            logger.warning(
                f"Operation {operation.id} ({operation.operation_type.value}) has not progressed "
                f"since {operation.last_updated_at.isoformat()}",
                extra={'operation_id': operation.id, 'pool_guid': operation.pool_group_guid},
            )
        return stale

    def recover_interrupted_operations(self) -> List[PoolOperation]:
        """
        Load mirrored operations from a previous run.

        Operations that never reached a terminal state are marked failed.
        While another agent holds the operations directory its operations
        are still live: they are loaded read-only and left untouched.
        """
        if not self.operations_dir or not os.path.isdir(self.operations_dir):
            return []

        try:
            owner = self._acquire_agent_lock()
        except OSError as e:
            logger.error(f"Cannot lock operations directory {self.operations_dir}: {e}")
            owner = False

        interrupted = []
        for filename in sorted(os.listdir(self.operations_dir)):
            if not filename.endswith('.json'):
                continue
            path = os.path.join(self.operations_dir, filename)
            try:
                with open(path, 'r') as f:
                    operation = PoolOperation.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Skipping unreadable operation file {path}: {e}")
                continue

            with self._operation_lock:
                if operation.id in self._async_operations:
                    continue
                self._async_operations[operation.id] = operation
                if not owner:
                    self._foreign_ids.add(operation.id)
                    continue
                if operation.is_terminal:
                    continue
                operation.status = OperationStatus.FAILED
                operation.error_code = 'interrupted'
                operation.result_message = "Agent restarted while the operation was in progress"
                operation.completed_at = datetime.now()
                operation.last_updated_at = operation.completed_at
                operation.can_be_cancelled = False
                snapshot = self._snapshot(operation)

            self._persist(snapshot)
            interrupted.append(operation)
            logger.warning(f"Operation {operation.id} was interrupted by a restart",
                           extra={'operation_id': operation.id, 'pool_guid': operation.pool_group_guid})

        if not owner:
            logger.info(f"Operations in {self.operations_dir} belong to another agent, "
                        f"loaded {len(self._foreign_ids)} read-only")
        return interrupted

    def shutdown(self, wait: bool = True) -> None:
        self._worker_pool.shutdown(wait=wait)
        if wait:
            self._release_agent_lock()

    def operation_to_dict(self, operation: PoolOperation) -> Dict[str, Any]:
        with self._operation_lock:
            return operation.to_dict()

    # execution

    def _run_operation(self, operation_id: str) -> None:
        with self._operation_lock:
            operation = self._async_operations.get(operation_id)
            if operation is None or operation.status != OperationStatus.QUEUED:
                return
            self._apply_transition(operation, OperationStatus.RUNNING, "Running")
            operation.started_at = datetime.now()
            snapshot = self._snapshot(operation)
            control = self._controls[operation_id]
            handler = self._executors[operation.operation_type]
            params = dict(operation.parameters)

        self._persist(snapshot)
        context = OperationContext(self, operation, control)
        log_extra = {'operation_id': operation_id, 'pool_guid': operation.pool_group_guid}

        try:
            result_message = handler(context, params)
        except OperationCancelledError as e:
            logger.info(f"Operation {operation_id} cancelled", extra=log_extra)
            self._finish(operation_id, OperationStatus.CANCELLED, str(e))
        except CommandTimeoutError as e:
            logger.error(f"Operation {operation_id} timed out: {e}", extra=log_extra)
            self._finish(operation_id, OperationStatus.TIMED_OUT, str(e), error_code='timeout')
        except StepFailedError as e:
            logger.error(f"Operation {operation_id} failed: {e}", extra=log_extra)
            self._finish(operation_id, OperationStatus.FAILED, str(e),
                         error_code=e.error_code, details=e.details)
        except Exception as e:
            logger.exception(f"Operation {operation_id} failed unexpectedly", extra=log_extra)
            self._finish(operation_id, OperationStatus.FAILED, f"Internal error: {e}",
                         error_code='internal_error')
        else:
            logger.info(f"Operation {operation_id} completed: {result_message}", extra=log_extra)
            self._finish(operation_id, OperationStatus.COMPLETED, result_message, success=True)

    def _finish(self, operation_id: str, status: OperationStatus, message: str,
                success: bool = False, error_code: Optional[str] = None,
                details: Optional[Dict[str, Any]] = None) -> None:
        with self._operation_lock:
            operation = self._async_operations[operation_id]
            self._apply_transition(operation, status, message)
            operation.result_message = message
            operation.success = success
            operation.error_code = error_code
            operation.can_be_cancelled = False
            if success:
                operation.progress_percentage = 100.0
            if details:
                operation.details.update(details)
            snapshot = self._snapshot(operation)
        self._persist(snapshot)

    def _transition(self, operation_id: str, status: OperationStatus, message: str) -> None:
        with self._operation_lock:
            operation = self._async_operations[operation_id]
            self._apply_transition(operation, status, message)
            snapshot = self._snapshot(operation)
        self._persist(snapshot)

    def _apply_transition(self, operation: PoolOperation, status: OperationStatus, message: str) -> None:
        """Change status in place; caller holds the operation lock."""
        if status not in ALLOWED_TRANSITIONS.get(operation.status, set()):
            raise InvalidTransitionError(
                f"Operation {operation.id} cannot go from {operation.status.value} to {status.value}"
            )
        operation.status = status
        operation.status_message = message
        operation.last_updated_at = datetime.now()
        if status.is_terminal:
            operation.completed_at = operation.last_updated_at
            operation.can_be_cancelled = False

    def _update(self, operation_id: str, **changes) -> None:
        with self._operation_lock:
            operation = self._async_operations[operation_id]
            if operation.is_terminal:
                raise InvalidTransitionError(f"Operation {operation_id} is already {operation.status.value}")
            for key, value in changes.items():
                setattr(operation, key, value)
            operation.last_updated_at = datetime.now()
            snapshot = self._snapshot(operation)
        self._persist(snapshot)

    def _append_outputs(self, operation_id: str, lines: List[str]) -> None:
        with self._operation_lock:
            operation = self._async_operations[operation_id]
            if operation.is_terminal:
                raise InvalidTransitionError(f"Operation {operation_id} is already {operation.status.value}")
            operation.command_outputs.extend(lines)
            operation.last_updated_at = datetime.now()
            snapshot = self._snapshot(operation)
        self._persist(snapshot)

    # ownership

    def _acquire_agent_lock(self) -> bool:
        """
        Take the exclusive lock on operations_dir without blocking.

        Returns:
            True if this manager holds the lock, False if another agent does

        Raises:
            OSError: If the lock file cannot be opened
        """
        if not self.operations_dir:
            return True
        with self._agent_lock_guard:
            if self._agent_lock_file is not None:
                return True
            os.makedirs(self.operations_dir, exist_ok=True)
            lock_file = open(os.path.join(self.operations_dir, AGENT_LOCK_FILENAME), 'a+')
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                lock_file.close()
                return False
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
            self._agent_lock_file = lock_file
            logger.debug(f"Acquired operations lock on {self.operations_dir}")
            return True

    def _require_agent_lock(self) -> None:
        """Ensure this manager owns operations_dir before it starts an operation."""
        if not self.operations_dir:
            return
        with self._agent_lock_guard:
            newly_acquired = self._agent_lock_file is None
            try:
                owner = self._acquire_agent_lock()
            except OSError as e:
                raise OperationsLockedError(f"Cannot lock operations directory {self.operations_dir}: {e}")
            if not owner:
                raise OperationsLockedError(
                    f"Another mdpool agent is running operations from {self.operations_dir}"
                )
            if newly_acquired and self._foreign_ids:
                # The previous owner has exited; reload what it left behind
                with self._operation_lock:
                    for operation_id in self._foreign_ids:
                        self._async_operations.pop(operation_id, None)
                    self._foreign_ids.clear()
                self.recover_interrupted_operations()

    def _release_agent_lock(self) -> None:
        with self._agent_lock_guard:
            lock_file = self._agent_lock_file
            if lock_file is None:
                return
            self._agent_lock_file = None
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            finally:
                lock_file.close()

    # persistence

    def _snapshot(self, operation: PoolOperation) -> Optional[Dict[str, Any]]:
        """Serialise under the operation lock, tagged with a version for ordered writes."""
        if not self.operations_dir:
            return None
        version = self._versions.get(operation.id, 0) + 1
        self._versions[operation.id] = version
        return {'version': version, 'operation': operation.to_dict()}

    def _persist(self, snapshot: Optional[Dict[str, Any]]) -> None:
        if snapshot is None:
            return
        data = snapshot['operation']
        operation_id = data['id']
        with self._persist_lock:
            if snapshot['version'] <= self._persisted_versions.get(operation_id, 0):
                return
            try:
                os.makedirs(self.operations_dir, exist_ok=True)
                fd, temp_path = tempfile.mkstemp(dir=self.operations_dir, suffix='.tmp')
                try:
                    with os.fdopen(fd, 'w') as f:
                        json.dump(data, f, indent=2)
                    os.replace(temp_path, self._operation_path(operation_id))
                except Exception:
                    if os.path.exists(temp_path):
                        os.unlink(temp_path)
                    raise
            except OSError as e:
                logger.error(f"Failed to persist operation {operation_id}: {e}",
                             extra={'operation_id': operation_id})
                return
            self._persisted_versions[operation_id] = snapshot['version']

    def _delete_persisted(self, operation_id: str) -> None:
        if not self.operations_dir:
            return
        with self._persist_lock:
            self._persisted_versions.pop(operation_id, None)
            try:
                os.unlink(self._operation_path(operation_id))
            except FileNotFoundError:
                return
            except OSError as e:
                logger.error(f"Failed to delete operation file for {operation_id}: {e}")

    def _operation_path(self, operation_id: str) -> str:
        return os.path.join(self.operations_dir, f"{operation_id}.json")

    # validation

    @staticmethod
    def _validate_mount_path(mount_path: str) -> None:
        if not mount_path or not os.path.isabs(mount_path):
            raise PoolValidationError("Mount path must be an absolute path")
        if os.path.normpath(mount_path) == '/':
            raise PoolValidationError("Mount path must not be the root directory")
        if not re.match(r'^/[a-zA-Z0-9/_.-]+$', mount_path) or '..' in mount_path.split('/'):
            raise PoolValidationError(f"Invalid mount path: {mount_path}")

    @staticmethod
    def _normalize_guid(pool_group_guid: str) -> str:
        try:
            return str(uuid.UUID(str(pool_group_guid)))
        except ValueError:
            raise PoolValidationError(f"Invalid pool GUID: {pool_group_guid}")
