"""Unit tests for PoolOperationManager and the pool lifecycle steps."""

import json
import os
import shutil
import tempfile
import threading
import time
import unittest
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

from mdpool.config_manager import AgentConfig
from mdpool.drive_monitor import DriveMonitor
from mdpool.exceptions import (
    InvalidTransitionError,
    OperationConflictError,
    OperationNotFoundError,
    OperationsLockedError,
    PoolValidationError,
)
from mdpool.mdstat_reader import MdStatReader, parse_mdstat
from mdpool.metadata_store import PoolMetadataStore
from mdpool.models import (
    CommandResult,
    DriveMapping,
    DriveRecord,
    MountEntry,
    OperationStatus,
    OperationType,
    PoolMetadataRecord,
    PoolOperation,
    ProcessInfo,
)
from mdpool.pool_operations import PoolOperationManager
from mdpool.pool_service import PoolService, md_device_path, mdadm_uuid
from mdpool.process_manager import ProcessManager
from mdpool.system_executor import SystemCommandExecutor


GUID = '0123abcd-4567-ef01-89ab-cdef01234567'
OTHER_GUID = 'aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee'

MDSTAT_POOL = """Personalities : [raid1]
md127 : active raid1 sdc[1] sdb[0]
      3906886464 blocks super 1.2 [2/2] [UU]

unused devices: <none>
"""


def ok(command, stdout=''):
    return CommandResult(command=command, success=True, exit_code=0, stdout=stdout)


def failed(command, stderr='error', exit_code=1):
    return CommandResult(command=command, success=False, exit_code=exit_code, stderr=stderr)


def drive(name, serial):
    return DriveRecord(
        stable_id_name=f'ata-DISK_{serial}',
        stable_id_path=f'/dev/disk/by-id/ata-DISK_{serial}',
        device_name=name,
        device_path=f'/dev/{name}',
        serial=serial,
        size_bytes=4000787030016,
    )


def blocking(result):
    """Side effect that signals entry and waits for release before returning result."""
    entered = threading.Event()
    release = threading.Event()

    def side_effect(*args, **kwargs):
        entered.set()
        release.wait(5)
        return result

    return entered, release, side_effect


class TestPoolOperationManager(unittest.TestCase):
    """Test cases for PoolOperationManager."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.temp_dir)
        self.mount_path = os.path.join(self.temp_dir, 'mnt', 'media')
        self.operations_dir = os.path.join(self.temp_dir, 'operations')

        self.store = PoolMetadataStore(os.path.join(self.temp_dir, 'pools.json'))

        self.executor = Mock(spec=SystemCommandExecutor)
        self.executor.dry_run = False
        self.executor.mdadm_create.return_value = ok('sudo mdadm --create')
        self.executor.mdadm_assemble.return_value = ok('sudo mdadm --assemble')
        self.executor.mdadm_stop.return_value = ok('sudo mdadm --stop /dev/md127')
        self.executor.mdadm_zero_superblock.return_value = ok('sudo mdadm --zero-superblock')
        self.executor.make_filesystem.return_value = ok('sudo mkfs -t ext4', 'Writing superblocks: done\n')
        self.executor.make_directory.return_value = ok('sudo mkdir -p')
        self.executor.mount.return_value = ok('sudo mount')
        self.executor.unmount.return_value = ok('sudo umount')
        self.executor.wipe_signatures.return_value = ok('sudo wipefs -a')

        self.mapping = DriveMapping([drive('sdb', 'S1'), drive('sdc', 'S2')], last_updated=datetime.now())
        self.monitor = Mock(spec=DriveMonitor)
        self.monitor.current_mapping.side_effect = lambda: self.mapping
        self.monitor.resolve_serials.side_effect = lambda serials: (
            {s: self.mapping.by_serial[s] for s in serials if s in self.mapping.by_serial},
            [s for s in serials if s not in self.mapping.by_serial],
        )

        self.array = parse_mdstat(MDSTAT_POOL).arrays['md127']
        self.reader = Mock(spec=MdStatReader)
        self.reader.find_array_by_members.return_value = self.array
        self.reader.read_one.return_value = None

        self.process_manager = Mock(spec=ProcessManager)
        self.process_manager.find_processes_using.return_value = []

        self.mounted = None
        for name, side_effect in (
            ('find_mount_at', lambda path: None),
            ('find_mount_for_device', lambda paths: self.mounted),
            ('get_usage', lambda path: None),
        ):
            patcher = patch(f'mdpool.mounts.{name}', side_effect=side_effect)
            patcher.start()
            self.addCleanup(patcher.stop)

        self.config = AgentConfig(mdadm_conf_path='', device_wait_timeout_seconds=0)
        self.service = PoolService(self.config, self.executor, self.monitor, self.reader,
                                   self.store, self.process_manager, sleep=lambda seconds: None)
        self.manager = self.make_manager()

    def make_manager(self, max_workers=4):
        manager = PoolOperationManager(self.service, max_workers=max_workers,
                                       operations_dir=self.operations_dir)
        self.addCleanup(manager.shutdown, True)
        return manager

    def save_record(self, **overrides):
        values = dict(pool_group_guid=GUID, md_device_name='md127', label='media',
                      drive_serials=['S1', 'S2'], last_mount_path=self.mount_path, is_mounted=True)
        values.update(overrides)
        record = PoolMetadataRecord(**values)
        self.store.save(record)
        return record

    def wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                self.fail("Timed out waiting for condition")
            time.sleep(0.01)

    def wait_for_terminal(self, operation, timeout=5.0):
        self.wait_for(lambda: operation.is_terminal, timeout)
        return operation

    # end-to-end scenarios

    def test_create_pool_completes(self):
        """Test a create with resolvable drives ends completed with a stored record."""
        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path,
                                               drive_labels={'S1': 'left'}, pool_group_guid=GUID)

        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.COMPLETED, operation.result_message)
        self.assertTrue(operation.success)
        self.assertEqual(operation.progress_percentage, 100.0)
        self.assertIsNone(operation.error_code)

        record = self.store.get(GUID)
        self.assertIsNotNone(record)
        self.assertEqual(record.drive_serials, ['S1', 'S2'])
        self.assertEqual(record.drive_labels, {'S1': 'left'})
        self.assertEqual(record.md_device_name, 'md127')
        self.assertEqual(record.last_mount_path, self.mount_path)
        self.assertTrue(record.is_mounted)

        self.executor.mdadm_create.assert_called_once_with(
            md_device_path(GUID),
            ['/dev/disk/by-id/ata-DISK_S1', '/dev/disk/by-id/ata-DISK_S2'],
            mdadm_uuid(GUID),
        )
        self.executor.make_filesystem.assert_called_once_with(md_device_path(GUID), 'ext4', 'media')
        self.executor.mount.assert_called_once_with(md_device_path(GUID), self.mount_path)

        outputs = self.manager.get_command_outputs(GUID)
        self.assertIn('$ sudo mdadm --create', outputs)
        self.assertIn('Writing superblocks: done', outputs)
        self.assertIs(self.manager.get_status(GUID), operation)

    def test_create_with_unresolvable_drive_fails_before_commands(self):
        """Test a missing serial fails the create without touching any drive."""
        operation = self.manager.submit_create('media', ['S1', 'S9'], self.mount_path)

        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.FAILED)
        self.assertEqual(operation.error_code, 'resolution_failed')
        self.assertEqual(operation.details['missing_serials'], ['S9'])
        self.assertFalse(operation.success)
        self.assertEqual(self.executor.method_calls, [])
        self.assertEqual(self.store.list_all(), [])

    def test_unmount_busy_reports_holders(self):
        """Test a busy mount point fails distinctly and lists the holding processes."""
        self.save_record()
        self.mounted = MountEntry(device='/dev/md127', mount_point=self.mount_path, fstype='ext4')
        self.process_manager.find_processes_using.return_value = [
            ProcessInfo(pid=4242, command='bash', user='alice', path=self.mount_path),
        ]

        operation = self.manager.submit_unmount(GUID)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.FAILED)
        self.assertEqual(operation.error_code, 'mount_busy')
        self.assertEqual(operation.details['mount_path'], self.mount_path)
        self.assertEqual(operation.details['processes'][0]['pid'], 4242)
        self.executor.unmount.assert_not_called()
        self.assertTrue(self.store.get(GUID).is_mounted)

    def test_force_unmount_uses_lazy_unmount(self):
        """Test force unmount proceeds past busy holders."""
        self.save_record()
        self.mounted = MountEntry(device='/dev/md127', mount_point=self.mount_path, fstype='ext4')
        self.process_manager.find_processes_using.return_value = [
            ProcessInfo(pid=4242, command='bash', path=self.mount_path),
        ]

        operation = self.manager.submit_unmount(GUID, force=True)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.COMPLETED, operation.result_message)
        self.executor.unmount.assert_called_once_with(self.mount_path, lazy=True)
        self.assertFalse(self.store.get(GUID).is_mounted)

    def test_unmount_busy_reported_by_umount(self):
        """Test a 'target is busy' failure from umount maps to mount_busy."""
        self.save_record()
        self.mounted = MountEntry(device='/dev/md127', mount_point=self.mount_path, fstype='ext4')
        self.executor.unmount.return_value = failed('sudo umount', f'umount: {self.mount_path}: target is busy.', 32)

        operation = self.manager.submit_unmount(GUID)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.FAILED)
        self.assertEqual(operation.error_code, 'mount_busy')
        self.assertIn('[exit code 32]', operation.command_outputs)

    def test_mount_assembles_stopped_array(self):
        """Test mounting a pool whose array is not assembled."""
        self.save_record(md_device_name='md0', is_mounted=False)
        self.reader.find_array_by_members.side_effect = [None, self.array]

        operation = self.manager.submit_mount(GUID)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.COMPLETED, operation.result_message)
        self.executor.mdadm_assemble.assert_called_once_with(
            md_device_path(GUID), uuid=mdadm_uuid(GUID),
            devices=['/dev/disk/by-id/ata-DISK_S1', '/dev/disk/by-id/ata-DISK_S2'],
        )
        self.executor.mount.assert_called_once_with('/dev/md127', self.mount_path)
        record = self.store.get(GUID)
        self.assertEqual(record.md_device_name, 'md127')
        self.assertTrue(record.is_mounted)

    def test_mount_path_owned_by_other_pool(self):
        """Test mounting onto another pool's mount path is refused."""
        self.save_record(is_mounted=False)
        self.save_record(pool_group_guid=OTHER_GUID, drive_serials=['S7'],
                         last_mount_path='/srv/other', is_mounted=False)

        operation = self.manager.submit_mount(GUID, '/srv/other')
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.FAILED)
        self.assertEqual(operation.error_code, 'mount_conflict')
        self.executor.mount.assert_not_called()

    def test_mount_refused_when_mounted_elsewhere(self):
        """Test a pool mounted at another path is not mounted a second time."""
        self.save_record(last_mount_path='/srv/a', is_mounted=True)
        self.mounted = MountEntry(device='/dev/md127', mount_point='/srv/a', fstype='ext4')

        operation = self.manager.submit_mount(GUID, '/srv/b')
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.FAILED)
        self.assertEqual(operation.error_code, 'mount_conflict')
        self.assertIn('/srv/a', operation.result_message)
        self.executor.mount.assert_not_called()
        self.assertEqual(self.store.get(GUID).last_mount_path, '/srv/a')

    def test_mount_already_mounted_pool(self):
        """Test mounting without a path reports the existing mount."""
        self.save_record(last_mount_path='/srv/old', is_mounted=False)
        self.mounted = MountEntry(device='/dev/md127', mount_point='/srv/a', fstype='ext4')

        operation = self.manager.submit_mount(GUID)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.COMPLETED, operation.result_message)
        self.assertEqual(operation.result_message, 'Pool already mounted at /srv/a')
        self.executor.mount.assert_not_called()
        self.executor.mdadm_assemble.assert_not_called()
        record = self.store.get(GUID)
        self.assertTrue(record.is_mounted)
        self.assertEqual(record.last_mount_path, '/srv/a')

    # concurrency and control

    def test_conflicting_operation_rejected_until_terminal(self):
        """Test only one active operation per pool."""
        entered, release, side_effect = blocking(ok('sudo mdadm --create'))
        self.executor.mdadm_create.side_effect = side_effect
        self.addCleanup(release.set)

        create = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path, pool_group_guid=GUID)
        self.assertTrue(entered.wait(5))

        with self.assertRaises(OperationConflictError) as context:
            self.manager.submit_unmount(GUID)
        self.assertEqual(context.exception.operation_id, create.id)
        self.assertEqual(len(self.manager.list_operations()), 1)

        release.set()
        self.wait_for_terminal(create)
        self.assertEqual(create.status, OperationStatus.COMPLETED, create.result_message)

        unmount = self.manager.submit_unmount(GUID)
        self.wait_for_terminal(unmount)
        self.assertEqual(unmount.status, OperationStatus.COMPLETED)
        self.assertEqual(unmount.result_message, 'Pool is not mounted')

    def test_operations_on_different_pools_run_concurrently(self):
        """Test operations for other pools are not blocked."""
        self.save_record(pool_group_guid=OTHER_GUID, drive_serials=['S7'], is_mounted=False,
                         last_mount_path='/srv/other')
        entered, release, side_effect = blocking(ok('sudo mdadm --create'))
        self.executor.mdadm_create.side_effect = side_effect
        self.addCleanup(release.set)

        create = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path, pool_group_guid=GUID)
        self.assertTrue(entered.wait(5))

        unmount = self.manager.submit_unmount(OTHER_GUID)
        self.wait_for_terminal(unmount)
        self.assertEqual(unmount.status, OperationStatus.COMPLETED)
        self.assertEqual(create.status, OperationStatus.RUNNING)
        self.assertEqual(len(self.manager.list_operations(active_only=True)), 1)

    def test_cancel_not_allowed_during_array_creation(self):
        """Test steps marked non-cancellable refuse cancellation."""
        entered, release, side_effect = blocking(ok('sudo mdadm --create'))
        self.executor.mdadm_create.side_effect = side_effect
        self.addCleanup(release.set)

        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path)
        self.assertTrue(entered.wait(5))

        self.assertFalse(operation.can_be_cancelled)
        self.assertFalse(self.manager.cancel_operation(operation.id))
        release.set()
        self.wait_for_terminal(operation)
        self.assertEqual(operation.status, OperationStatus.COMPLETED)

    def test_cancel_queued_operation(self):
        """Test a queued operation is cancelled at once and never runs."""
        manager = self.make_manager(max_workers=1)
        entered, release, side_effect = blocking(ok('sudo mdadm --create'))
        self.executor.mdadm_create.side_effect = side_effect
        self.addCleanup(release.set)

        first = manager.submit_create('media', ['S1', 'S2'], self.mount_path, pool_group_guid=GUID)
        self.assertTrue(entered.wait(5))
        queued = manager.submit_remove(OTHER_GUID)
        self.assertEqual(queued.status, OperationStatus.QUEUED)

        self.assertTrue(manager.cancel_operation(queued.id))
        self.assertEqual(queued.status, OperationStatus.CANCELLED)
        self.assertEqual(queued.result_message, 'Cancelled before start')

        release.set()
        self.wait_for_terminal(first)
        manager.shutdown(wait=True)

        self.assertEqual(queued.status, OperationStatus.CANCELLED)
        self.assertIsNone(queued.started_at)
        self.assertFalse(manager.cancel_operation(queued.id))

    def test_cancel_running_operation_at_step_boundary(self):
        """Test cancellation stops before the next step and cleans up."""
        entered, release, side_effect = blocking(ok('sudo mkfs -t ext4'))
        self.executor.make_filesystem.side_effect = side_effect
        self.addCleanup(release.set)

        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path, pool_group_guid=GUID)
        self.assertTrue(entered.wait(5))

        self.assertTrue(self.manager.cancel_operation(operation.id))
        self.assertEqual(operation.status, OperationStatus.RUNNING)
        release.set()
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.CANCELLED)
        self.executor.make_directory.assert_not_called()
        self.executor.mount.assert_not_called()
        self.executor.mdadm_stop.assert_called_once_with(md_device_path(GUID))
        self.assertEqual(self.executor.mdadm_zero_superblock.call_count, 2)
        self.assertIsNone(self.store.get(GUID))

    def test_cancel_unknown_operation(self):
        """Test cancelling a missing operation raises."""
        with self.assertRaises(OperationNotFoundError):
            self.manager.cancel_operation('missing')

    def test_pause_and_resume_remove(self):
        """Test a remove pauses at a step boundary and resumes to completion."""
        self.save_record(is_mounted=False)
        entered, release, side_effect = blocking(ok('sudo mdadm --stop /dev/md127'))
        self.executor.mdadm_stop.side_effect = side_effect
        self.addCleanup(release.set)

        operation = self.manager.submit_remove(GUID)
        self.assertTrue(entered.wait(5))

        self.assertTrue(self.manager.pause_operation(operation.id))
        release.set()
        self.wait_for(lambda: operation.status == OperationStatus.PAUSED)
        self.executor.mdadm_zero_superblock.assert_not_called()
        self.assertIsNone(self.manager.list_operations(active_only=True)[0].completed_at)

        self.assertTrue(self.manager.resume_operation(operation.id))
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.COMPLETED, operation.result_message)
        self.assertEqual(self.executor.wipe_signatures.call_count, 2)
        self.assertIsNone(self.store.get(GUID))

    def test_cancel_while_paused(self):
        """Test a paused operation can be cancelled."""
        self.save_record(is_mounted=False)
        entered, release, side_effect = blocking(ok('sudo mdadm --stop /dev/md127'))
        self.executor.mdadm_stop.side_effect = side_effect
        self.addCleanup(release.set)

        operation = self.manager.submit_remove(GUID)
        self.assertTrue(entered.wait(5))
        self.manager.pause_operation(operation.id)
        release.set()
        self.wait_for(lambda: operation.status == OperationStatus.PAUSED)

        self.assertTrue(self.manager.cancel_operation(operation.id))
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.CANCELLED)
        self.executor.wipe_signatures.assert_not_called()
        self.assertIsNotNone(self.store.get(GUID))

    def test_pause_not_supported_for_create(self):
        """Test only suspendable operation types can pause."""
        entered, release, side_effect = blocking(ok('sudo mdadm --create'))
        self.executor.mdadm_create.side_effect = side_effect
        self.addCleanup(release.set)

        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path)
        self.assertTrue(entered.wait(5))

        self.assertFalse(self.manager.pause_operation(operation.id))
        self.assertFalse(self.manager.resume_operation(operation.id))

    # failures

    def test_command_timeout_marks_timed_out(self):
        """Test a timed out command ends the operation as timed out."""
        self.executor.make_filesystem.return_value = CommandResult(
            command='sudo mkfs -t ext4', success=False, exit_code=-1,
            stderr='Command timed out', timed_out=True,
        )

        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path, pool_group_guid=GUID)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.TIMED_OUT)
        self.assertEqual(operation.error_code, 'timeout')
        self.executor.mdadm_stop.assert_called_once()
        self.assertIsNone(self.store.get(GUID))

    def test_array_device_never_appears(self):
        """Test waiting for the new array gives up after the configured time."""
        self.reader.find_array_by_members.return_value = None

        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path, pool_group_guid=GUID)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.TIMED_OUT)
        self.assertIn('did not appear', operation.result_message)
        self.executor.make_filesystem.assert_not_called()

    def test_create_with_busy_drive(self):
        """Test drives already in use are refused."""
        self.mapping = DriveMapping([drive('sdb', 'S1'), DriveRecord(
            stable_id_name='ata-DISK_S2', stable_id_path='/dev/disk/by-id/ata-DISK_S2',
            device_name='sdc', device_path='/dev/sdc', serial='S2', size_bytes=1, busy=True,
        )])

        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.error_code, 'drive_in_use')
        self.assertEqual(self.executor.method_calls, [])

    def test_remove_partial_failure_can_be_retried(self):
        """Test a failed wipe leaves the record so remove can run again."""
        self.save_record(is_mounted=False)
        self.executor.wipe_signatures.side_effect = [
            ok('sudo wipefs -a /dev/disk/by-id/ata-DISK_S1'),
            failed('sudo wipefs -a /dev/disk/by-id/ata-DISK_S2', 'wipefs: error: probing initialization failed'),
        ]

        first = self.manager.submit_remove(GUID)
        self.wait_for_terminal(first)

        self.assertEqual(first.status, OperationStatus.FAILED)
        self.assertEqual(first.error_code, 'command_failed')
        self.assertIsNotNone(self.store.get(GUID))

        self.reader.find_array_by_members.return_value = None
        self.executor.mdadm_zero_superblock.return_value = failed(
            'sudo mdadm --zero-superblock', 'mdadm: Unrecognised md component device'
        )
        self.executor.wipe_signatures.side_effect = None
        self.executor.wipe_signatures.return_value = ok('sudo wipefs -a')

        retry = self.manager.submit_remove(GUID)
        self.wait_for_terminal(retry)

        self.assertEqual(retry.status, OperationStatus.COMPLETED, retry.result_message)
        self.assertIsNone(self.store.get(GUID))
        self.assertIs(self.manager.get_status(GUID), retry)

    def test_step_exception_becomes_internal_error(self):
        """Test unexpected exceptions fail the operation instead of escaping."""
        self.monitor.resolve_serials.side_effect = RuntimeError('boom')

        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.status, OperationStatus.FAILED)
        self.assertEqual(operation.error_code, 'internal_error')
        self.assertIn('boom', operation.result_message)

    def test_unknown_pool(self):
        """Test operations on pools without metadata fail with resolution_failed."""
        operation = self.manager.submit_mount(GUID)
        self.wait_for_terminal(operation)

        self.assertEqual(operation.error_code, 'resolution_failed')

    def test_terminal_operation_is_immutable(self):
        """Test a finished operation refuses further changes."""
        operation = self.manager.submit_unmount(GUID)
        self.wait_for_terminal(operation)
        outputs = list(operation.command_outputs)

        with self.assertRaises(InvalidTransitionError):
            self.manager._update(operation.id, status_message='again')
        with self.assertRaises(InvalidTransitionError):
            self.manager._append_outputs(operation.id, ['more'])
        with self.assertRaises(InvalidTransitionError):
            self.manager._transition(operation.id, OperationStatus.RUNNING, 'again')
        self.assertFalse(self.manager.cancel_operation(operation.id))
        self.assertEqual(operation.command_outputs, outputs)

    # validation

    def test_submit_validation(self):
        """Test malformed requests are rejected before an operation exists."""
        cases = [
            ('', ['S1'], self.mount_path),
            ('bad label', ['S1'], self.mount_path),
            ('x' * 17, ['S1'], self.mount_path),
            ('media', [], self.mount_path),
            ('media', ['S1', 'S1'], self.mount_path),
            ('media', ['S1', ' '], self.mount_path),
            ('media', ['S1'], 'relative/path'),
            ('media', ['S1'], '/'),
            ('media', ['S1'], '/mnt/../etc'),
        ]
        for label, serials, mount_path in cases:
            with self.subTest(label=label, serials=serials, mount_path=mount_path):
                with self.assertRaises(PoolValidationError):
                    self.manager.submit_create(label, serials, mount_path)

        with self.assertRaises(PoolValidationError):
            self.manager.submit_remove('not-a-guid')
        with self.assertRaises(PoolValidationError):
            self.manager.submit(GUID, OperationType.SCRUB)
        self.assertEqual(self.manager.list_operations(), [])

    def test_guid_is_normalized(self):
        """Test GUIDs given without dashes address the same pool."""
        self.save_record(is_mounted=False)

        operation = self.manager.submit_unmount(GUID.replace('-', '').upper())

        self.assertEqual(operation.pool_group_guid, GUID)
        self.wait_for_terminal(operation)

    # persistence and maintenance

    def test_operation_mirrored_to_disk(self):
        """Test the final state is written to the operations directory."""
        operation = self.manager.submit_unmount(GUID)
        self.wait_for_terminal(operation)
        self.manager.shutdown(wait=True)

        with open(os.path.join(self.operations_dir, f'{operation.id}.json')) as f:
            data = json.load(f)
        self.assertEqual(data['status'], 'failed')
        self.assertEqual(data['error_code'], 'resolution_failed')
        self.assertEqual(data['pool_group_guid'], GUID)

    def test_recover_interrupted_operations(self):
        """Test operations left running by a previous process are marked failed."""
        os.makedirs(self.operations_dir)
        running = PoolOperation(pool_group_guid=GUID, operation_type=OperationType.REMOVE,
                                status=OperationStatus.RUNNING)
        finished = PoolOperation(pool_group_guid=OTHER_GUID, operation_type=OperationType.MOUNT,
                                 status=OperationStatus.COMPLETED, success=True,
                                 completed_at=datetime.now())
        for operation in (running, finished):
            with open(os.path.join(self.operations_dir, f'{operation.id}.json'), 'w') as f:
                json.dump(operation.to_dict(), f)
        with open(os.path.join(self.operations_dir, 'broken.json'), 'w') as f:
            f.write('{')

        interrupted = self.manager.recover_interrupted_operations()

        self.assertEqual([op.id for op in interrupted], [running.id])
        recovered = self.manager.get_operation(running.id)
        self.assertEqual(recovered.status, OperationStatus.FAILED)
        self.assertEqual(recovered.error_code, 'interrupted')
        self.assertEqual(self.manager.get_operation(finished.id).status, OperationStatus.COMPLETED)
        with open(os.path.join(self.operations_dir, f'{running.id}.json')) as f:
            self.assertEqual(json.load(f)['status'], 'failed')

        retry = self.manager.submit_remove(GUID)
        self.wait_for_terminal(retry)

    def test_second_manager_leaves_live_operation_alone(self):
        """Test a manager sharing the operations directory cannot take over live operations."""
        self.save_record(is_mounted=False)
        entered, release, side_effect = blocking(ok('sudo mount'))
        self.executor.mount.side_effect = side_effect
        self.addCleanup(release.set)

        mount = self.manager.submit_mount(GUID)
        self.assertTrue(entered.wait(5))

        other = self.make_manager()
        self.assertEqual(other.recover_interrupted_operations(), [])
        with open(os.path.join(self.operations_dir, f'{mount.id}.json')) as f:
            self.assertEqual(json.load(f)['status'], 'running')
        self.assertEqual(other.get_operation(mount.id).status, OperationStatus.RUNNING)
        with self.assertRaises(OperationsLockedError):
            other.submit_unmount(GUID)
        self.assertFalse(other.cancel_operation(mount.id))

        release.set()
        self.wait_for_terminal(mount)
        self.assertEqual(mount.status, OperationStatus.COMPLETED, mount.result_message)

    def test_operations_taken_over_after_other_manager_stops(self):
        """Test the directory can be used once its previous owner shuts down."""
        self.save_record(is_mounted=False)
        entered, release, side_effect = blocking(ok('sudo mount'))
        self.executor.mount.side_effect = side_effect
        self.addCleanup(release.set)

        mount = self.manager.submit_mount(GUID)
        self.assertTrue(entered.wait(5))
        other = self.make_manager()
        other.recover_interrupted_operations()

        release.set()
        self.wait_for_terminal(mount)
        self.manager.shutdown(wait=True)

        unmount = other.submit_unmount(GUID)
        self.wait_for_terminal(unmount)

        self.assertEqual(unmount.status, OperationStatus.COMPLETED, unmount.result_message)
        self.assertEqual(other.get_operation(mount.id).status, OperationStatus.COMPLETED)
        self.assertEqual(other.get_status(GUID).id, unmount.id)

    def test_cleanup_completed_operations(self):
        """Test finished operations older than their retention are dropped."""
        old = self.manager.submit_unmount(GUID)
        recent = self.manager.submit_unmount(OTHER_GUID)
        self.wait_for_terminal(old)
        self.wait_for_terminal(recent)
        self.manager.shutdown(wait=True)
        old.completed_at = datetime.now() - timedelta(days=31)

        removed = self.manager.cleanup_completed_operations(timedelta(days=7), timedelta(days=30))

        self.assertEqual(removed, 1)
        self.assertIsNone(self.manager.get_operation(old.id))
        self.assertIs(self.manager.get_operation(recent.id), recent)
        self.assertFalse(os.path.exists(os.path.join(self.operations_dir, f'{old.id}.json')))

    def test_find_stale_operations(self):
        """Test active operations without recent progress are reported."""
        entered, release, side_effect = blocking(ok('sudo mdadm --create'))
        self.executor.mdadm_create.side_effect = side_effect
        self.addCleanup(release.set)
        operation = self.manager.submit_create('media', ['S1', 'S2'], self.mount_path)
        self.assertTrue(entered.wait(5))

        self.assertEqual(self.manager.find_stale_operations(timedelta(hours=1)), [])
        operation.last_updated_at = datetime.now() - timedelta(hours=2)
        self.assertEqual(self.manager.find_stale_operations(timedelta(hours=1)), [operation])


class TestPoolNaming(unittest.TestCase):
    """Test cases for GUID based device naming."""

    def test_md_device_path(self):
        self.assertEqual(md_device_path(GUID), '/dev/md/0123abcd4567ef0189abcdef01234567')

    def test_mdadm_uuid(self):
        self.assertEqual(mdadm_uuid(GUID), '0123abcd:4567ef01:89abcdef:01234567')


if __name__ == '__main__':
    unittest.main()
