"""Unit tests for SystemCommandExecutor."""

import unittest
from unittest.mock import Mock, patch
import subprocess

from mdpool.system_executor import SystemCommandExecutor, CommandType, clean_output


GUID_UUID = '0123abcd:4567ef01:89abcdef:01234567'


class TestSystemCommandExecutor(unittest.TestCase):
    """Test cases for SystemCommandExecutor class."""

    def setUp(self):
        """Set up test fixtures."""
        self.executor = SystemCommandExecutor(dry_run=True)
        self.executor_live = SystemCommandExecutor(dry_run=False)

    def test_validate_device_path_valid(self):
        """Test valid device path validation."""
        valid_paths = [
            '/dev/sda',
            '/dev/sdb1',
            '/dev/nvme0n1',
            '/dev/md127',
            '/dev/md/0123abcd4567ef0189abcdef01234567',
            '/dev/disk/by-id/ata-WDC_WD40EFRX-68N32N0_WD-WCC7K0123456',
        ]

        for path in valid_paths:
            with self.subTest(path=path):
                self.assertTrue(self.executor._validate_device_path(path))

    def test_validate_device_path_invalid(self):
        """Test invalid device path validation."""
        invalid_paths = [
            '/dev/../etc/passwd',
            '/dev/disk/../../etc/shadow',
            '/dev/sda; rm -rf /',
            'sda1',
            '/home/user/file',
            '/dev/',
            ''
        ]

        for path in invalid_paths:
            with self.subTest(path=path):
                self.assertFalse(self.executor._validate_device_path(path))

    def test_validate_file_path(self):
        """Test mount point and file path validation."""
        self.assertTrue(self.executor._validate_file_path('/mnt/pool-1'))
        self.assertTrue(self.executor._validate_file_path('/etc/mdadm/mdadm.conf'))
        for path in ['relative/path', '/mnt/a b', '/mnt/../etc', '/mnt;ls', '']:
            with self.subTest(path=path):
                self.assertFalse(self.executor._validate_file_path(path))

    def test_validate_label(self):
        """Test filesystem label validation."""
        self.assertTrue(self.executor._validate_label('media_pool'))
        self.assertFalse(self.executor._validate_label('x' * 17))
        self.assertFalse(self.executor._validate_label('bad label'))

    def test_dry_run_records_history(self):
        """Test dry run returns success without executing."""
        with patch('subprocess.run') as mock_run:
            result = self.executor.mdadm_stop('/dev/md127')

        mock_run.assert_not_called()
        self.assertTrue(result.success)
        self.assertEqual(result.stdout, 'DRY RUN')
        history = self.executor.get_command_history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]['command'], 'sudo mdadm --stop /dev/md127')
        self.assertEqual(history[0]['type'], 'mdadm')
        self.assertTrue(history[0]['dry_run'])

    def test_history_is_bounded(self):
        """Test command history keeps only the newest entries."""
        executor = SystemCommandExecutor(dry_run=True, max_history=3)
        for index in range(5):
            executor.mdadm_stop(f'/dev/md{index}')

        commands = [entry['command'] for entry in executor.get_command_history()]
        self.assertEqual(commands, [f'sudo mdadm --stop /dev/md{i}' for i in (2, 3, 4)])

    @patch('subprocess.run')
    def test_mdadm_create_arguments(self, mock_run):
        """Test mdadm create command construction."""
        mock_run.return_value = Mock(returncode=0, stdout='mdadm: array started.\n', stderr='')

        result = self.executor_live.mdadm_create(
            '/dev/md/pool', ['/dev/disk/by-id/ata-A', '/dev/disk/by-id/ata-B'], GUID_UUID
        )

        self.assertTrue(result.success)
        command = mock_run.call_args[0][0]
        self.assertEqual(command, [
            'sudo', 'mdadm', '--create', '/dev/md/pool', '--level=1',
            f'--uuid={GUID_UUID}', '--raid-devices=2',
            '/dev/disk/by-id/ata-A', '/dev/disk/by-id/ata-B', '--run', '--force',
        ])
        self.assertEqual(mock_run.call_args[1]['timeout'], 300)

    def test_mdadm_create_rejects_bad_input(self):
        """Test mdadm create input validation."""
        with self.assertRaises(ValueError):
            self.executor.mdadm_create('/dev/md/pool', ['/dev/sdb'], GUID_UUID, level=5)
        with self.assertRaises(ValueError):
            self.executor.mdadm_create('/dev/md/pool', [], GUID_UUID)
        with self.assertRaises(ValueError):
            self.executor.mdadm_create('/dev/md/pool', ['/dev/sdb'], 'not-a-uuid')
        with self.assertRaises(ValueError):
            self.executor.mdadm_create('/dev/md/pool', ['/dev/sdb;reboot'], GUID_UUID)

    @patch('subprocess.run')
    def test_command_failure(self, mock_run):
        """Test non-zero exit code is reported, not raised."""
        mock_run.return_value = Mock(returncode=1, stdout='', stderr='mdadm: cannot open /dev/sdb\n')

        result = self.executor_live.mdadm_zero_superblock('/dev/sdb')

        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 1)
        self.assertIn('cannot open', result.output)

    @patch('subprocess.run')
    def test_command_timeout(self, mock_run):
        """Test command timeout handling."""
        mock_run.side_effect = subprocess.TimeoutExpired(['mdadm'], 300)

        result = self.executor_live.mdadm_stop('/dev/md0')

        self.assertFalse(result.success)
        self.assertTrue(result.timed_out)
        self.assertEqual(result.exit_code, -1)
        self.assertEqual(result.stderr, 'Command timed out')

    @patch('subprocess.run')
    def test_missing_binary(self, mock_run):
        """Test a missing binary becomes a failed result."""
        mock_run.side_effect = FileNotFoundError("No such file or directory: 'wipefs'")

        result = self.executor_live.wipe_signatures('/dev/sdb')

        self.assertFalse(result.success)
        self.assertIn('wipefs', result.stderr)

    @patch('subprocess.run')
    def test_output_is_cleaned(self, mock_run):
        """Test ANSI sequences are stripped from captured output."""
        mock_run.return_value = Mock(returncode=0, stdout='\x1b[1mDone\x1b[0m\n', stderr='')

        result = self.executor_live.make_filesystem('/dev/md127', 'ext4', 'media')

        self.assertEqual(result.stdout, 'Done\n')
        command = mock_run.call_args[0][0]
        self.assertEqual(command, ['sudo', 'mkfs', '-t', 'ext4', '-F', '-L', 'media', '/dev/md127'])

    @patch('subprocess.run')
    def test_no_sudo(self, mock_run):
        """Test privileged commands run without sudo when disabled."""
        mock_run.return_value = Mock(returncode=0, stdout='', stderr='')
        executor = SystemCommandExecutor(use_sudo=False)

        executor.unmount('/mnt/pool', lazy=True)

        self.assertEqual(mock_run.call_args[0][0], ['umount', '-l', '/mnt/pool'])

    @patch('subprocess.run')
    def test_append_to_file_uses_stdin(self, mock_run):
        """Test tee receives the appended text on stdin."""
        mock_run.return_value = Mock(returncode=0, stdout='ARRAY /dev/md/pool\n', stderr='')

        self.executor_live.append_to_file('/etc/mdadm/mdadm.conf', 'ARRAY /dev/md/pool\n')

        self.assertEqual(mock_run.call_args[0][0], ['sudo', 'tee', '-a', '/etc/mdadm/mdadm.conf'])
        self.assertEqual(mock_run.call_args[1]['input'], 'ARRAY /dev/md/pool\n')

    def test_kill_process_validation(self):
        """Test kill argument validation."""
        result = self.executor.kill_process(4321, 'TERM')
        self.assertEqual(result.command, 'sudo kill -TERM 4321')

        for pid in [0, 1, -5, '42']:
            with self.subTest(pid=pid):
                with self.assertRaises(ValueError):
                    self.executor.kill_process(pid)
        with self.assertRaises(ValueError):
            self.executor.kill_process(4321, 'KILL; reboot')

    def test_lsblk_is_not_privileged(self):
        """Test read-only commands skip sudo."""
        result = self.executor.list_block_devices('NAME,SIZE,TYPE')
        self.assertEqual(result.command, 'lsblk -J -b -o NAME,SIZE,TYPE')

    def test_validate_command_args_rejects_unknown_option(self):
        """Test unknown options are refused."""
        with self.assertRaises(ValueError):
            self.executor._validate_command_args(CommandType.MDADM, ['--grow'])
        with self.assertRaises(ValueError):
            self.executor._validate_command_args(CommandType.WIPEFS, ['--force'])


class TestCleanOutput(unittest.TestCase):
    """Test cases for terminal output cleaning."""

    def test_strips_ansi_sequences(self):
        self.assertEqual(clean_output('\x1b[31mred\x1b[0m text'), 'red text')

    def test_carriage_return_keeps_last_redraw(self):
        text = 'Writing inode tables:  1/30\rWriting inode tables: 30/30\rWriting inode tables: done\n'
        self.assertEqual(clean_output(text), 'Writing inode tables: done\n')

    def test_crlf_preserved_as_newline(self):
        self.assertEqual(clean_output('one\r\ntwo\r\n'), 'one\ntwo\n')

    def test_backspaces_erase(self):
        self.assertEqual(clean_output('abc\x08\x08de'), 'ade')

    def test_collapses_blank_lines(self):
        self.assertEqual(clean_output('a\n\n\n\n\nb'), 'a\n\nb')

    def test_empty(self):
        self.assertEqual(clean_output(None), '')
        self.assertEqual(clean_output(''), '')


if __name__ == '__main__':
    unittest.main()
