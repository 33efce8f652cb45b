#!/usr/bin/env python3
"""
Subprocess Resource Manager for nft-apply

Provides subprocess execution with:
- Context managers for process lifecycle
- Automatic cleanup on all exit paths, including interruption
- Timeout handling with graceful termination
- Optional command tracing (the equivalent of `set -x`)
"""

import logging
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional


_trace_commands = False


def set_command_tracing(enabled: bool):
    """Log every executed command at INFO level when enabled"""
    global _trace_commands
    _trace_commands = enabled


class ProcessState(Enum):
    """Process execution states"""

    COMPLETED = "completed"
    TIMEOUT = "timeout"
    FAILED = "failed"


@dataclass
class ProcessResult:
    """Result from managed subprocess execution"""

    returncode: int
    stdout: str
    stderr: str
    state: ProcessState
    execution_time: float
    command: List[str]
    pid: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == ProcessState.COMPLETED


class ManagedProcess:
    """
    Context manager for subprocess execution with resource management

    The child is terminated (then killed) if the block exits while it is
    still running, e.g. on KeyboardInterrupt.
    """

    def __init__(
        self,
        command: List[str],
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize managed process

        Args:
            command: Command and arguments to execute
            timeout: Execution timeout in seconds
            cwd: Working directory for process
            env: Environment variables
        """
        self.command = command
        self.timeout = timeout
        self.cwd = cwd
        self.env = env

        self.process: Optional[subprocess.Popen] = None
        self.start_time: Optional[float] = None
        self.logger = logging.getLogger(__name__)
        self._cleanup_done = False

    def __enter__(self) -> "ManagedProcess":
        """Start the process"""
        command_line = " ".join(self.command)
        if _trace_commands:
            self.logger.info(f"+ {command_line}")

        self.start_time = time.monotonic()
        self.process = subprocess.Popen(
            self.command,
            cwd=self.cwd,
            env=self.env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
        )
        self.logger.debug(f"Started process {self.process.pid}: {command_line}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Ensure process cleanup on exit"""
        self._cleanup()

    def wait_for_completion(self) -> ProcessResult:
        """
        Wait for process completion

        Returns:
            ProcessResult with execution details
        """
        if not self.process:
            raise RuntimeError("Process not started - use within context manager")

        try:
            stdout, stderr = self.process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            execution_time = time.monotonic() - self.start_time
            self.logger.warning(
                f"Process {self.process.pid} timeout after {self.timeout}s"
            )

            self.process.terminate()
            try:
                stdout, stderr = self.process.communicate(timeout=5)
            except subprocess.TimeoutExpired:
                self.logger.warning(f"Force killing process {self.process.pid}")
                self.process.kill()
                stdout, stderr = self.process.communicate()

            return ProcessResult(
                returncode=self.process.returncode if self.process.returncode is not None else -1,
                stdout=stdout or "",
                stderr=stderr or "",
                state=ProcessState.TIMEOUT,
                execution_time=execution_time,
                command=self.command,
                pid=self.process.pid,
                error_message=f"Process timeout after {self.timeout}s",
            )

        execution_time = time.monotonic() - self.start_time
        state = ProcessState.COMPLETED if self.process.returncode == 0 else ProcessState.FAILED

        return ProcessResult(
            returncode=self.process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            state=state,
            execution_time=execution_time,
            command=self.command,
            pid=self.process.pid,
        )

    def terminate_gracefully(self, timeout: int = 5):
        """
        Gracefully terminate the process

        Args:
            timeout: Time to wait for graceful termination before force kill
        """
        if not self.process:
            return

        try:
            self.process.terminate()
            self.process.wait(timeout=timeout)
            self.logger.debug(f"Process {self.process.pid} terminated gracefully")
        except subprocess.TimeoutExpired:
            self.logger.warning(
                f"Force killing unresponsive process {self.process.pid}"
            )
            self.process.kill()
            self.process.wait()

    def _cleanup(self):
        """Internal cleanup method"""
        if self._cleanup_done:
            return

        self._cleanup_done = True

        if self.process and self.process.poll() is None:
            self.terminate_gracefully()
            self.logger.debug(f"Cleaned up process {self.process.pid}")


@contextmanager
def managed_subprocess(command: List[str], **kwargs):
    """
    Convenience context manager for subprocess execution

    Example:
        with managed_subprocess(['nft', 'list', 'ruleset'], timeout=30) as result:
            if result.state == ProcessState.COMPLETED:
                print(result.stdout)
    """
    with ManagedProcess(command, **kwargs) as managed:
        result = managed.wait_for_completion()
        yield result


def run_with_resource_management(
    command: List[str], timeout: Optional[float] = None, **kwargs
) -> ProcessResult:
    """
    Execute subprocess with resource management

    A missing executable is reported as a FAILED result rather than raised,
    so callers handle one result type.

    Args:
        command: Command and arguments to execute
        timeout: Execution timeout in seconds
        **kwargs: Additional ManagedProcess arguments

    Returns:
        ProcessResult with execution details
    """
    try:
        with managed_subprocess(command, timeout=timeout, **kwargs) as result:
            return result
    except FileNotFoundError as e:
        logging.getLogger(__name__).error(f"Executable not found: {command[0]}")
        return ProcessResult(
            returncode=127,
            stdout="",
            stderr=str(e),
            state=ProcessState.FAILED,
            execution_time=0.0,
            command=command,
            error_message=f"Executable not found: {command[0]}",
        )
