"""
nftables control interface.

Thin wrapper over the `nft` binary: list the live ruleset, validate a
ruleset file without touching the kernel (`nft -c -f`), and load a ruleset
file (`nft -f`). Every call runs through the managed subprocess layer with
a timeout.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from nft_apply.utils.subprocess_manager import ProcessResult, ProcessState, run_with_resource_management
from nft_apply.utils.timeout_config import TimeoutContext, TimeoutType, get_timeout


class NftablesError(Exception):
    """Raised when an nft invocation fails"""

    def __init__(self, message: str, result: Optional[ProcessResult] = None):
        self.result = result
        self.stderr = result.stderr.strip() if result else ""
        super().__init__(message)


class NftablesTimeout(NftablesError):
    """Raised when an nft invocation exceeds its timeout"""


class NftablesEngine:
    """Packet-filter control through the nft command line tool"""

    def __init__(self, nft_path: str = "/usr/sbin/nft",
                 command_timeout: Optional[float] = None,
                 logger: Optional[logging.Logger] = None):
        self.nft_path = nft_path
        self.command_timeout = command_timeout or get_timeout(TimeoutType.NFT_COMMAND)
        self.logger = logger or logging.getLogger(__name__)

    def _run(self, args, timeout: float, action: str) -> ProcessResult:
        command = [self.nft_path] + list(args)
        with TimeoutContext(action, timeout):
            result = run_with_resource_management(command, timeout=timeout)

        if result.state == ProcessState.TIMEOUT:
            raise NftablesTimeout(f"{action} timed out after {timeout}s", result)
        if result.state != ProcessState.COMPLETED:
            detail = result.stderr.strip() or result.error_message or f"exit code {result.returncode}"
            raise NftablesError(f"{action} failed: {detail}", result)

        return result

    def list_ruleset(self) -> str:
        """Return the live ruleset as nft syntax"""
        result = self._run(["list", "ruleset"], self.command_timeout, "Listing ruleset")
        return result.stdout

    def check_file(self, path: Union[str, Path]):
        """Dry-run load of a ruleset file; raises NftablesError when invalid"""
        self._run(["-c", "-f", str(path)], self.command_timeout, f"Validating {path}")

    def load_file(self, path: Union[str, Path], timeout: Optional[float] = None):
        """Load a ruleset file into the kernel as one transaction"""
        self._run(["-f", str(path)], timeout or self.command_timeout, f"Loading {path}")
