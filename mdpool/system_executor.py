"""Secure system command execution framework."""

import subprocess
import logging
import shlex
from typing import List, Dict, Optional
from enum import Enum
import re

from .models import CommandResult


logger = logging.getLogger(__name__)


# Terminal control sequences found in mdadm/mkfs progress output
ANSI_ESCAPE_PATTERN = re.compile(r'\x1B\[[^@-~]*[@-~]')
CARRIAGE_RETURN_PATTERN = re.compile(r'[^\n]*\r(?=[^\n])')
BACKSPACE_PATTERN = re.compile(r'[^\x08\n]\x08')
EXCESS_NEWLINES_PATTERN = re.compile(r'\n{3,}')


def clean_output(text: Optional[str]) -> str:
    """
    Strip ANSI and control sequences from command output.

    Carriage-return redraws keep only the text written last, and
    backspaces erase the preceding character.
    """
    if not text:
        return ""

    cleaned = ANSI_ESCAPE_PATTERN.sub('', text)
    cleaned = cleaned.replace('\r\n', '\n')
    cleaned = CARRIAGE_RETURN_PATTERN.sub('', cleaned)

    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = BACKSPACE_PATTERN.sub('', cleaned)
    cleaned = cleaned.replace('\x08', '')

    return EXCESS_NEWLINES_PATTERN.sub('\n\n', cleaned)


class CommandType(Enum):
    """Supported command types for validation."""
    MDADM = "mdadm"
    MKFS = "mkfs"
    MOUNT = "mount"
    UMOUNT = "umount"
    MKDIR = "mkdir"
    WIPEFS = "wipefs"
    LSBLK = "lsblk"
    CAT = "cat"
    KILL = "kill"
    TEE = "tee"


class SystemCommandExecutor:
    """Secure system command executor with privilege escalation and validation."""

    # Allowed commands and their argument patterns
    ALLOWED_COMMANDS = {
        CommandType.MDADM: {
            'binary': 'mdadm',
            'allowed_args': {
                '--create', '--assemble', '--stop', '--detail', '--scan',
                '--zero-superblock', '--run', '--force', '--verbose',
                '--examine'
            },
            'allowed_prefixes': ('--level=', '--uuid=', '--raid-devices=', '--metadata='),
            'requires_sudo': True
        },
        CommandType.MKFS: {
            'binary': 'mkfs',
            'allowed_args': {'-t', '-F', '-f', '-L', '-q'},
            'allowed_prefixes': (),
            'requires_sudo': True
        },
        CommandType.MOUNT: {
            'binary': 'mount',
            'allowed_args': {'-t', '-o'},
            'allowed_prefixes': (),
            'requires_sudo': True
        },
        CommandType.UMOUNT: {
            'binary': 'umount',
            'allowed_args': {'-f', '-l'},
            'allowed_prefixes': (),
            'requires_sudo': True
        },
        CommandType.MKDIR: {
            'binary': 'mkdir',
            'allowed_args': {'-p'},
            'allowed_prefixes': (),
            'requires_sudo': True
        },
        CommandType.WIPEFS: {
            'binary': 'wipefs',
            'allowed_args': {'-a', '--all'},
            'allowed_prefixes': (),
            'requires_sudo': True
        },
        CommandType.LSBLK: {
            'binary': 'lsblk',
            'allowed_args': {'-J', '-b', '-o'},
            'allowed_prefixes': (),
            'requires_sudo': False
        },
        CommandType.CAT: {
            'binary': 'cat',
            'allowed_args': set(),
            'allowed_prefixes': (),
            'requires_sudo': False
        },
        CommandType.KILL: {
            'binary': 'kill',
            'allowed_args': set(),
            'allowed_prefixes': (),
            'requires_sudo': True
        },
        CommandType.TEE: {
            'binary': 'tee',
            'allowed_args': {'-a'},
            'allowed_prefixes': (),
            'requires_sudo': True
        },
    }

    # Options whose following argument is a free-form value
    VALUE_OPTIONS = {'-t', '-L', '-o'}

    # Device path validation pattern (covers /dev/md/<name> and /dev/disk/by-id/<name>)
    DEVICE_PATH_PATTERN = re.compile(r'^/dev/[a-zA-Z0-9][a-zA-Z0-9/_.:+-]*$')

    # File path validation pattern (for config files, mount points)
    FILE_PATH_PATTERN = re.compile(r'^/[a-zA-Z0-9/_.-]+$')

    LABEL_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

    MDADM_UUID_PATTERN = re.compile(r'^[0-9a-fA-F]{8}(:[0-9a-fA-F]{8}){3}$')

    SIGNAL_PATTERN = re.compile(r'^-(\d{1,2}|[A-Z]{3,6})$')

    SUPPORTED_FILESYSTEMS = {'ext4', 'ext3', 'xfs', 'btrfs'}

    def __init__(self, dry_run: bool = False, use_sudo: bool = True, timeout: int = 300,
                 max_history: int = 500):
        """
        Initialize the SystemCommandExecutor.

        Args:
            dry_run: If True, commands will be logged but not executed
            use_sudo: Prefix privileged commands with sudo
            timeout: Default per-command timeout in seconds
            max_history: Number of executed commands to remember
        """
        self.dry_run = dry_run
        self.use_sudo = use_sudo
        self.timeout = timeout
        self.max_history = max_history
        self._command_history: List[Dict] = []

    # mdadm

    def mdadm_create(self, md_device: str, devices: List[str], uuid: str,
                     level: int = 1) -> CommandResult:
        """Create a mirrored array from the given member devices."""
        if level != 1:
            raise ValueError(f"Unsupported RAID level: {level}")
        if not devices:
            raise ValueError("At least one member device is required")
        self._require_device_path(md_device)
        for device in devices:
            self._require_device_path(device)
        if not self.MDADM_UUID_PATTERN.match(uuid):
            raise ValueError(f"Invalid array UUID: {uuid}")

        args = [
            '--create', md_device,
            f'--level={level}',
            f'--uuid={uuid}',
            f'--raid-devices={len(devices)}',
            *devices,
            '--run', '--force',
        ]
        return self._execute_command(CommandType.MDADM, args)

    def mdadm_assemble(self, md_device: str, uuid: Optional[str] = None,
                       devices: Optional[List[str]] = None) -> CommandResult:
        """Assemble an existing array by UUID or by explicit member list."""
        self._require_device_path(md_device)
        args = ['--assemble', md_device]
        if uuid:
            if not self.MDADM_UUID_PATTERN.match(uuid):
                raise ValueError(f"Invalid array UUID: {uuid}")
            args.append(f'--uuid={uuid}')
        for device in devices or []:
            self._require_device_path(device)
            args.append(device)
        args.append('--run')
        return self._execute_command(CommandType.MDADM, args)

    def mdadm_stop(self, md_device: str) -> CommandResult:
        self._require_device_path(md_device)
        return self._execute_command(CommandType.MDADM, ['--stop', md_device])

    def mdadm_detail(self, md_device: str) -> CommandResult:
        self._require_device_path(md_device)
        return self._execute_command(CommandType.MDADM, ['--detail', md_device])

    def mdadm_detail_scan(self) -> CommandResult:
        """Emit ARRAY lines for every assembled array."""
        return self._execute_command(CommandType.MDADM, ['--detail', '--scan'])

    def mdadm_zero_superblock(self, device: str) -> CommandResult:
        self._require_device_path(device)
        return self._execute_command(CommandType.MDADM, ['--zero-superblock', device])

    # filesystems and mounts

    def make_filesystem(self, device_path: str, filesystem_type: str = 'ext4',
                        label: Optional[str] = None) -> CommandResult:
        """
        Create a filesystem on a device.

        Args:
            device_path: Device path to format
            filesystem_type: Filesystem type
            label: Optional filesystem label

        Returns:
            CommandResult for the mkfs invocation
        """
        if filesystem_type not in self.SUPPORTED_FILESYSTEMS:
            raise ValueError(f"Unsupported filesystem type: {filesystem_type}")
        self._require_device_path(device_path)

        # ext* takes -F to skip the confirmation prompt, xfs/btrfs take -f
        force_flag = '-F' if filesystem_type.startswith('ext') else '-f'
        args = ['-t', filesystem_type, force_flag]

        if label:
            if not self._validate_label(label):
                raise ValueError(f"Invalid label: {label}")
            args.extend(['-L', label])

        args.append(device_path)
        return self._execute_command(CommandType.MKFS, args)

    def make_directory(self, path: str) -> CommandResult:
        self._require_file_path(path)
        return self._execute_command(CommandType.MKDIR, ['-p', path])

    def mount(self, device_path: str, mount_point: str,
              filesystem_type: Optional[str] = None) -> CommandResult:
        self._require_device_path(device_path)
        self._require_file_path(mount_point)

        args = []
        if filesystem_type:
            if filesystem_type not in self.SUPPORTED_FILESYSTEMS:
                raise ValueError(f"Invalid filesystem type: {filesystem_type}")
            args.extend(['-t', filesystem_type])
        args.extend([device_path, mount_point])
        return self._execute_command(CommandType.MOUNT, args)

    def unmount(self, mount_point: str, force: bool = False, lazy: bool = False) -> CommandResult:
        """Unmount a mount point; force and lazy map to umount -f / -l."""
        self._require_file_path(mount_point)
        args = []
        if force:
            args.append('-f')
        if lazy:
            args.append('-l')
        args.append(mount_point)
        return self._execute_command(CommandType.UMOUNT, args)

    def wipe_signatures(self, device_path: str) -> CommandResult:
        self._require_device_path(device_path)
        return self._execute_command(CommandType.WIPEFS, ['-a', device_path])

    # discovery

    def list_block_devices(self, columns: str) -> CommandResult:
        """Run lsblk with JSON output and byte sizes."""
        if not re.match(r'^[A-Z,-]+$', columns):
            raise ValueError(f"Invalid lsblk columns: {columns}")
        return self._execute_command(CommandType.LSBLK, ['-J', '-b', '-o', columns])

    def read_file(self, path: str) -> CommandResult:
        self._require_file_path(path)
        return self._execute_command(CommandType.CAT, [path])

    def append_to_file(self, path: str, content: str) -> CommandResult:
        """Append content to a root-owned file through tee."""
        self._require_file_path(path)
        return self._execute_command(CommandType.TEE, ['-a', path], input_text=content)

    # processes

    def kill_process(self, pid: int, signal: str = 'KILL') -> CommandResult:
        """Send a signal to a process."""
        if not isinstance(pid, int) or pid <= 1:
            raise ValueError(f"Invalid pid: {pid}")
        signal_arg = f'-{signal}'
        if not self.SIGNAL_PATTERN.match(signal_arg):
            raise ValueError(f"Invalid signal: {signal}")
        return self._execute_command(CommandType.KILL, [signal_arg, str(pid)])

    def _execute_command(self,
                         command_type: CommandType,
                         args: List[str],
                         input_text: Optional[str] = None,
                         timeout: Optional[int] = None) -> CommandResult:
        """
        Execute a validated command with proper logging and error handling.

        Args:
            command_type: Type of command to execute
            args: Command arguments
            input_text: Optional text fed to the command's stdin
            timeout: Override of the default timeout in seconds

        Returns:
            CommandResult with cleaned stdout/stderr
        """
        command_config = self.ALLOWED_COMMANDS[command_type]
        binary = command_config['binary']
        requires_sudo = command_config['requires_sudo'] and self.use_sudo

        # Validate all arguments
        self._validate_command_args(command_type, args)

        # Build the full command
        if requires_sudo:
            full_command = ['sudo', binary] + args
        else:
            full_command = [binary] + args

        command_str = ' '.join(shlex.quote(arg) for arg in full_command)
        logger.info(f"Executing command: {command_str}")

        self._record_history(command_str, command_type)

        if self.dry_run:
            logger.info("DRY RUN: Command would be executed")
            return CommandResult(command=command_str, success=True, exit_code=0, stdout="DRY RUN")

        try:
            result = subprocess.run(
                full_command,
                capture_output=True,
                text=True,
                input=input_text,
                timeout=timeout or self.timeout,
                check=False
            )

            success = result.returncode == 0

            if success:
                logger.info(f"Command executed successfully: {command_str}")
            else:
                logger.error(f"Command failed with return code {result.returncode}: {command_str}",
                             extra={'command': command_str, 'exit_code': result.returncode})
                logger.error(f"Error output: {result.stderr}")

            return CommandResult(
                command=command_str,
                success=success,
                exit_code=result.returncode,
                stdout=clean_output(result.stdout),
                stderr=clean_output(result.stderr),
            )

        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out: {command_str}")
            return CommandResult(command=command_str, success=False, exit_code=-1,
                                 stderr="Command timed out", timed_out=True)

        except Exception as e:
            logger.error(f"Error executing command {command_str}: {e}")
            return CommandResult(command=command_str, success=False, exit_code=-1, stderr=str(e))

    def _record_history(self, command_str: str, command_type: CommandType) -> None:
        self._command_history.append({
            'command': command_str,
            'type': command_type.value,
            'dry_run': self.dry_run
        })
        if len(self._command_history) > self.max_history:
            del self._command_history[:-self.max_history]

    def _validate_command_args(self, command_type: CommandType, args: List[str]) -> None:
        """
        Validate command arguments against allowed patterns.

        Args:
            command_type: Type of command
            args: Arguments to validate

        Raises:
            ValueError: If any argument is not allowed
        """
        config = self.ALLOWED_COMMANDS[command_type]
        allowed_args = config['allowed_args']
        allowed_prefixes = config['allowed_prefixes']

        for index, arg in enumerate(args):
            if arg in allowed_args:
                continue
            if allowed_prefixes and arg.startswith(allowed_prefixes):
                continue
            if self._validate_device_path(arg) or self._validate_file_path(arg):
                continue
            # Value following an option flag
            if index > 0 and args[index - 1] in self.VALUE_OPTIONS:
                continue
            if command_type == CommandType.KILL and (arg.isdigit() or self.SIGNAL_PATTERN.match(arg)):
                continue

            raise ValueError(f"Argument not allowed for {command_type.value}: {arg}")

    def _require_device_path(self, path: str) -> None:
        if not self._validate_device_path(path):
            raise ValueError(f"Invalid device path: {path}")

    def _require_file_path(self, path: str) -> None:
        if not self._validate_file_path(path):
            raise ValueError(f"Invalid path: {path}")

    def _validate_device_path(self, path: str) -> bool:
        """Validate device path format."""
        return bool(self.DEVICE_PATH_PATTERN.match(path)) and '..' not in path

    def _validate_file_path(self, path: str) -> bool:
        """Validate file path format."""
        return bool(self.FILE_PATH_PATTERN.match(path)) and '..' not in path.split('/')

    def _validate_label(self, label: str) -> bool:
        """Validate filesystem label."""
        return bool(self.LABEL_PATTERN.match(label)) and len(label) <= 16

    def get_command_history(self) -> List[Dict]:
        """Get the history of executed commands."""
        return self._command_history.copy()

    def clear_command_history(self) -> None:
        """Clear the command history."""
        self._command_history.clear()
