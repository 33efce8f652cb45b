"""
Centralized timeout configuration for nft-apply

Every auxiliary command (ruleset listing, dry-run validation, service control)
runs with a bounded timeout so the tool never hangs while holding the
firewall in a tentative state. The apply and confirmation timeouts come from
the operator (--timeout), not from here.
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class TimeoutType(Enum):
    """Types of operations that can timeout"""

    NFT_COMMAND = "nft_command"
    SERVICE_CONTROL = "service_control"


@dataclass
class TimeoutConfig:
    """Configuration for a specific timeout type"""

    default: float
    min_value: float
    max_value: float
    env_var: str
    description: str

    def get_value(self) -> float:
        """Get the configured timeout value from environment or default"""
        try:
            value = float(os.environ.get(self.env_var, self.default))
        except (ValueError, TypeError):
            logging.warning(
                f"Invalid timeout value for {self.env_var}, using "
                f"default {self.default}"
            )
            return self.default

        if value < self.min_value:
            logging.warning(
                f"Timeout {self.env_var}={value} below minimum "
                f"{self.min_value}, using minimum"
            )
            return self.min_value
        if value > self.max_value:
            logging.warning(
                f"Timeout {self.env_var}={value} above maximum "
                f"{self.max_value}, using maximum"
            )
            return self.max_value
        return value


class TimeoutManager:
    """Centralized timeout management for nft-apply"""

    _TIMEOUT_CONFIGS = {
        TimeoutType.NFT_COMMAND: TimeoutConfig(
            default=30.0,
            min_value=5.0,
            max_value=300.0,
            env_var="NFT_APPLY_COMMAND_TIMEOUT",
            description="Timeout for nft list/check invocations",
        ),
        TimeoutType.SERVICE_CONTROL: TimeoutConfig(
            default=30.0,
            min_value=5.0,
            max_value=120.0,
            env_var="NFT_APPLY_SERVICE_TIMEOUT",
            description="Timeout for systemctl invocations",
        ),
    }

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._cached_values: Dict[TimeoutType, float] = {}

    def get_timeout(self, timeout_type: TimeoutType) -> float:
        """
        Get timeout value for specified operation type

        Args:
            timeout_type: Type of operation needing timeout

        Returns:
            Timeout value in seconds
        """
        if timeout_type not in self._cached_values:
            config = self._TIMEOUT_CONFIGS[timeout_type]
            self._cached_values[timeout_type] = config.get_value()
            self.logger.debug(
                f"Loaded timeout {timeout_type.value}: {self._cached_values[timeout_type]}s"
            )

        return self._cached_values[timeout_type]


class TimeoutContext:
    """Context manager for timeout-aware operations"""

    def __init__(self, operation_name: str, timeout: float):
        self.operation_name = operation_name
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.debug(f"Starting {self.operation_name} with {self.timeout}s timeout")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = self.elapsed()
        # Warn if using >80% of timeout
        if elapsed > self.timeout * 0.8:
            self.logger.warning(
                f"{self.operation_name} took {elapsed:.2f}s (timeout: {self.timeout}s)"
            )
        else:
            self.logger.debug(f"{self.operation_name} completed in {elapsed:.2f}s")

    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return time.monotonic() - self.start_time


# Global timeout manager instance
timeout_manager = TimeoutManager()


def get_timeout(timeout_type: TimeoutType) -> float:
    """Get timeout value for operation type"""
    return timeout_manager.get_timeout(timeout_type)
