"""Process inspection and termination for busy mount points."""

import logging
import os
import time
from typing import Iterable, List, Tuple

import psutil

from .models import ProcessInfo
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)


def _is_under(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip('/') + '/')


class ProcessManager:
    """Finds and terminates processes holding a mount point open."""

    def __init__(self, executor: SystemCommandExecutor, kill_grace_seconds: float = 5.0,
                 poll_interval: float = 0.25):
        self.executor = executor
        self.kill_grace_seconds = kill_grace_seconds
        self.poll_interval = poll_interval

    def is_process_alive(self, pid: int) -> bool:
        try:
            process = psutil.Process(pid)
            return process.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return psutil.pid_exists(pid)

    def find_processes_using(self, path: str) -> List[ProcessInfo]:
        """
        List processes with open files or a working directory under path.

        Args:
            path: Mount point or directory

        Returns:
            One ProcessInfo per holding process
        """
        root = os.path.normpath(path)
        holders: List[ProcessInfo] = []

        for process in psutil.process_iter(['pid', 'name', 'username']):
            try:
                held_path = None
                cwd = process.cwd()
                if cwd and _is_under(cwd, root):
                    held_path = cwd
                else:
                    for open_file in process.open_files():
                        if _is_under(open_file.path, root):
                            held_path = open_file.path
                            break

                if held_path:
                    holders.append(ProcessInfo(
                        pid=process.info['pid'],
                        command=process.info.get('name') or '',
                        user=process.info.get('username'),
                        path=held_path,
                    ))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return holders

    def kill_processes(self, pids: Iterable[int], signal: str = 'KILL') -> Tuple[bool, str, List[str]]:
        """
        Signal processes and wait for them to exit.

        Returns:
            Tuple of (all exited, message, command outputs)
        """
        outputs: List[str] = []
        failed: List[int] = []
        targets = [pid for pid in pids if pid != os.getpid()]

        for pid in targets:
            try:
                result = self.executor.kill_process(pid, signal)
            except ValueError as e:
                outputs.append(f"kill {pid}: {e}")
                failed.append(pid)
                continue
            outputs.append(f"$ {result.command}")
            if result.output:
                outputs.append(result.output)
            if not result.success and self.is_process_alive(pid):
                failed.append(pid)

        deadline = time.monotonic() + self.kill_grace_seconds
        survivors = [pid for pid in targets if pid not in failed and self.is_process_alive(pid)]
        while survivors and time.monotonic() < deadline:
            time.sleep(self.poll_interval)
            survivors = [pid for pid in survivors if self.is_process_alive(pid)]

        failed.extend(survivors)
        if failed:
            message = f"Processes still running: {', '.join(str(pid) for pid in sorted(set(failed)))}"
            logger.error(message)
            return False, message, outputs

        message = f"Terminated {len(targets)} processes"
        logger.info(message)
        return True, message, outputs
