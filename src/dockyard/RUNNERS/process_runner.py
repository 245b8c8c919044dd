# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Execution of system processes with log redirection and lifecycle management.
"""
import subprocess
import os
from typing import List, Dict, Optional

import psutil

from ..UTILS.logging import get_logger

log = get_logger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single system process.

    A runner either owns the process it started (``process`` is set) or
    re-attaches to one started by an earlier invocation through its
    ``pid`` and ``create_time``.
    """
    def __init__(self,
                 name: str,
                 log_file: Optional[str] = None,
                 pid: Optional[int] = None,
                 create_time: Optional[float] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
            pid (Optional[int]): Process to re-attach to.
            create_time (Optional[float]): Creation time of ``pid``, guards against pid reuse.
        """
        self.name = name
        self.log_file = log_file
        self.pid = pid
        self.create_time = create_time
        self.process: Optional[subprocess.Popen] = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None) -> int:
        """
        Starts the process in its own session.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Returns:
            int: The pid of the new process.
        """
        if working_dir:
            os.makedirs(working_dir, exist_ok=True)

        log_handle = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            log_handle = open(self.log_file, 'ab')

        log.debug("process_starting", name=self.name, command=command)
        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False
            )
        finally:
            if self.log_file:
                log_handle.close()

        self.pid = self.process.pid
        try:
            self.create_time = psutil.Process(self.pid).create_time()
        except psutil.NoSuchProcess:
            self.create_time = None
        return self.pid

    def stop(self, timeout: float = 10.0) -> Optional[int]:
        """
        Stops the process by sending SIGTERM, followed by SIGKILL if it doesn't stop.

        Args:
            timeout (float): Seconds to wait for termination before killing.

        Returns:
            Optional[int]: The exit code, when known.
        """
        if self.process is not None:
            if self.process.poll() is None:
                log.debug("process_stopping", name=self.name, pid=self.pid)
                self.process.terminate()
                try:
                    self.process.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    log.warning("process_killing", name=self.name, pid=self.pid, grace=timeout)
                    self.process.kill()
                    self.process.wait()
            return self.process.returncode

        proc = self._attached()
        if proc is None:
            return None
        log.debug("process_stopping", name=self.name, pid=self.pid)
        try:
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                log.warning("process_killing", name=self.name, pid=self.pid, grace=timeout)
                proc.kill()
                proc.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            pass
        return None

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        if self.process is not None:
            return self.process.poll() is None
        proc = self._attached()
        if proc is None:
            return False
        try:
            return proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished and is owned by this runner, None otherwise.
        """
        if self.process:
            return self.process.poll()
        return None

    def _attached(self) -> Optional[psutil.Process]:
        """
        The psutil view of ``pid``, unless it exited or the pid was reused.
        """
        if self.pid is None:
            return None
        try:
            proc = psutil.Process(self.pid)
            if self.create_time is not None and abs(proc.create_time() - self.create_time) > 0.01:
                return None
            return proc
        except psutil.NoSuchProcess:
            return None
