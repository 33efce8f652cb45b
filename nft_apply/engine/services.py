"""
systemd service control and scoped suspension of the intrusion-prevention
service.

fail2ban reacts to the connection resets a firewall change causes and may
ban the operator's own address while they test a new connection, so it is
stopped for the apply and confirmation window and started again afterwards
on every exit path.
"""

import logging
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Callable, ContextManager, Optional

from nft_apply.utils.subprocess_manager import ProcessResult, run_with_resource_management
from nft_apply.utils.timeout_config import TimeoutType, get_timeout


class ServiceError(Exception):
    """Raised when a systemctl action fails"""


class SystemdServiceManager:
    """Process supervision through systemctl"""

    def __init__(self, systemctl_path: str = "/usr/bin/systemctl",
                 timeout: Optional[float] = None,
                 logger: Optional[logging.Logger] = None):
        self.systemctl_path = systemctl_path
        self.timeout = timeout or get_timeout(TimeoutType.SERVICE_CONTROL)
        self.logger = logger or logging.getLogger(__name__)

    def _systemctl(self, *args: str) -> ProcessResult:
        return run_with_resource_management([self.systemctl_path, *args], timeout=self.timeout)

    def is_active(self, unit: str) -> bool:
        return self._systemctl("is-active", "--quiet", unit).succeeded

    def is_enabled(self, unit: str) -> bool:
        return self._systemctl("is-enabled", "--quiet", unit).succeeded

    def _control(self, action: str, unit: str):
        result = self._systemctl(action, unit)
        if not result.succeeded:
            detail = (result.stderr or result.stdout).strip()[:200] or result.error_message
            raise ServiceError(f"systemctl {action} {unit} failed: {detail}")
        self.logger.info(f"systemctl {action} {unit}: OK")

    def start(self, unit: str):
        self._control("start", unit)

    def stop(self, unit: str):
        self._control("stop", unit)


@dataclass
class SuspensionRecord:
    """What suspended_service() did, for reporting"""

    unit: Optional[str]
    suspended: bool = False
    resumed: bool = False
    error: Optional[str] = None


@contextmanager
def suspended_service(manager: Optional[SystemdServiceManager], unit: Optional[str],
                      logger: Optional[logging.Logger] = None,
                      shield: Callable[[], ContextManager] = nullcontext):
    """
    Stop `unit` for the duration of the block if it is running, and start it
    again on the way out, whatever the block raised.

    The restart runs inside `shield()`, so a caller can keep termination
    signals from cutting it short. A failed restart is recorded on the
    yielded SuspensionRecord and logged; it never replaces the exception or
    result of the block.
    """
    logger = logger or logging.getLogger(__name__)
    record = SuspensionRecord(unit=unit)

    if manager is None or not unit:
        yield record
        return

    try:
        if manager.is_active(unit):
            # A start is owed from here on, even if stop is interrupted
            record.suspended = True
            try:
                manager.stop(unit)
                logger.info(f"Suspended {unit} for the confirmation window")
            except ServiceError as e:
                record.suspended = False
                record.error = str(e)
                logger.warning(f"Could not suspend {unit}, continuing with it running: {e}")
        elif manager.is_enabled(unit):
            logger.warning(f"{unit} is enabled but not running, leaving it stopped")
        else:
            logger.debug(f"{unit} is not running, nothing to suspend")

        yield record
    finally:
        if record.suspended:
            with shield():
                try:
                    manager.start(unit)
                    record.resumed = True
                    logger.info(f"Resumed {unit}")
                except ServiceError as e:
                    record.error = str(e)
                    logger.error(f"Failed to resume {unit}, start it manually: {e}")
