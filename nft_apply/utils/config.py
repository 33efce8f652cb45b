#!/usr/bin/env python3
"""
Configuration Management for nft-apply

Provides centralized configuration handling with:
- Environment variable support
- JSON and YAML configuration file support
- Default values and validation
- Runtime configuration management
"""

import os
import json
import logging
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml


DEFAULT_SOURCE = "/etc/nftables-candidate.conf"
DEFAULT_DESTINATION = "/etc/nftables.conf"
DEFAULT_TIMEOUT = 15

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _env_flag(name: str) -> Optional[bool]:
    """Parse a boolean environment variable, None when unset or unrecognized"""
    value = os.getenv(name)
    if value is None:
        return None
    if value.lower() in ["1", "true", "yes"]:
        return True
    if value.lower() in ["0", "false", "no"]:
        return False
    return None


@dataclass
class ApplyConfig:
    """Guarded apply configuration"""

    source: str = DEFAULT_SOURCE
    destination: str = DEFAULT_DESTINATION
    timeout: int = DEFAULT_TIMEOUT
    snapshot_dir: Optional[str] = None

    def __post_init__(self):
        """Load from environment variables if set"""
        if os.getenv("NFT_APPLY_SOURCE"):
            self.source = os.getenv("NFT_APPLY_SOURCE")
        if os.getenv("NFT_APPLY_DESTINATION"):
            self.destination = os.getenv("NFT_APPLY_DESTINATION")
        if os.getenv("NFT_APPLY_TIMEOUT"):
            try:
                self.timeout = int(os.getenv("NFT_APPLY_TIMEOUT"))
            except ValueError:
                pass
        if os.getenv("NFT_APPLY_SNAPSHOT_DIR"):
            self.snapshot_dir = os.getenv("NFT_APPLY_SNAPSHOT_DIR")


@dataclass
class NftablesConfig:
    """nft binary configuration"""

    nft_path: str = "/usr/sbin/nft"

    def __post_init__(self):
        """Load from environment variables if set"""
        if os.getenv("NFT_APPLY_NFT_PATH"):
            self.nft_path = os.getenv("NFT_APPLY_NFT_PATH")


@dataclass
class IntrusionPreventionConfig:
    """Intrusion-prevention service suspended around the confirmation window"""

    service: str = "fail2ban"
    suspend: bool = True
    systemctl_path: str = "/usr/bin/systemctl"

    def __post_init__(self):
        """Load from environment variables if set"""
        if os.getenv("NFT_APPLY_IPS_SERVICE") is not None:
            self.service = os.getenv("NFT_APPLY_IPS_SERVICE")
        suspend = _env_flag("NFT_APPLY_IPS_SUSPEND")
        if suspend is not None:
            self.suspend = suspend


@dataclass
class LoggingConfig:
    """Logging configuration"""

    level: str = "INFO"
    log_to_file: bool = False
    log_file: Optional[str] = None

    def __post_init__(self):
        """Load from environment variables if set"""
        if os.getenv("NFT_APPLY_LOG_LEVEL"):
            self.level = os.getenv("NFT_APPLY_LOG_LEVEL").upper()
        if os.getenv("NFT_APPLY_LOG_FILE"):
            self.log_file = os.getenv("NFT_APPLY_LOG_FILE")
            self.log_to_file = True


@dataclass
class NftApplyConfig:
    """Main configuration container"""

    apply: ApplyConfig = None
    nftables: NftablesConfig = None
    intrusion_prevention: IntrusionPreventionConfig = None
    logging: LoggingConfig = None

    def __post_init__(self):
        """Initialize subconfigs if not provided"""
        if self.apply is None:
            self.apply = ApplyConfig()
        if self.nftables is None:
            self.nftables = NftablesConfig()
        if self.intrusion_prevention is None:
            self.intrusion_prevention = IntrusionPreventionConfig()
        if self.logging is None:
            self.logging = LoggingConfig()


class ConfigManager:
    """Configuration management for nft-apply"""

    DEFAULT_CONFIG_PATHS = [
        Path.home() / ".config/nft-apply/config.json",
        Path.home() / ".config/nft-apply/config.yaml",
        Path.home() / ".config/nft-apply/config.yml",
        Path("/etc/nft-apply/config.json"),
        Path("/etc/nft-apply/config.yaml"),
        Path("/etc/nft-apply/config.yml"),
    ]

    SECTIONS = {
        "apply": ApplyConfig,
        "nftables": NftablesConfig,
        "intrusion_prevention": IntrusionPreventionConfig,
        "logging": LoggingConfig,
    }

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration manager

        Args:
            config_path: Optional path to configuration file
        """
        self.logger = logging.getLogger(__name__)
        self.config_path = Path(config_path) if config_path else None
        self.loaded_from: Optional[Path] = None
        self.config = NftApplyConfig()

        self._load_config()

    def _load_config(self):
        """Load configuration from file; environment overrides apply in __post_init__"""
        config_file = self._find_config_file()
        if config_file:
            try:
                self._load_from_file(config_file)
                self.loaded_from = config_file
                self.logger.info(f"Loaded configuration from {config_file}")
            except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
                self.logger.warning(f"Failed to load config file {config_file}: {e}")

        self.logger.debug("Configuration loaded with environment variable overrides")

    def _find_config_file(self) -> Optional[Path]:
        """Find configuration file; an explicit path takes precedence"""
        if self.config_path:
            if self.config_path.exists():
                return self.config_path
            self.logger.warning(f"Config file {self.config_path} not found, using defaults")
            return None

        for path in self.DEFAULT_CONFIG_PATHS:
            if path.exists():
                return path

        return None

    def _load_from_file(self, config_path: Path):
        """Load configuration from a JSON or YAML file"""
        with open(config_path, "r") as f:
            if config_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError("configuration root must be a mapping")

        self._load_from_dict(data)

    def _load_from_dict(self, data: dict):
        """Load configuration sections from dictionary"""
        for section, section_cls in self.SECTIONS.items():
            if section in data:
                section_data = data[section] or {}
                setattr(self.config, section, section_cls(**section_data))

        unknown = sorted(set(data) - set(self.SECTIONS))
        if unknown:
            self.logger.warning(f"Ignoring unknown configuration sections: {unknown}")

    def get_config(self) -> NftApplyConfig:
        """Get current configuration"""
        return self.config

    def update_apply_config(self, **kwargs):
        """Override apply settings, ignoring None values (unset CLI flags)"""
        for key, value in kwargs.items():
            if value is not None and hasattr(self.config.apply, key):
                setattr(self.config.apply, key, value)

    def update_nftables_config(self, **kwargs):
        """Override nftables settings, ignoring None values"""
        for key, value in kwargs.items():
            if value is not None and hasattr(self.config.nftables, key):
                setattr(self.config.nftables, key, value)

    def update_ips_config(self, **kwargs):
        """Override intrusion-prevention settings, ignoring None values"""
        for key, value in kwargs.items():
            if value is not None and hasattr(self.config.intrusion_prevention, key):
                setattr(self.config.intrusion_prevention, key, value)

    def validate_config(self) -> List[str]:
        """
        Validate current configuration

        Returns:
            List of validation problems (empty when valid)
        """
        issues = []

        apply_config = self.config.apply
        if not apply_config.source:
            issues.append("apply.source must not be empty")
        if not apply_config.destination:
            issues.append("apply.destination must not be empty")
        if not isinstance(apply_config.timeout, int) or isinstance(apply_config.timeout, bool):
            issues.append(f"apply.timeout must be an integer, got {apply_config.timeout!r}")
        elif apply_config.timeout <= 0:
            issues.append(f"apply.timeout must be positive, got {apply_config.timeout}")

        if not self.config.nftables.nft_path:
            issues.append("nftables.nft_path must not be empty")

        ips = self.config.intrusion_prevention
        if ips.suspend and not ips.systemctl_path:
            issues.append("intrusion_prevention.systemctl_path must not be empty")

        if self.config.logging.level.upper() not in VALID_LOG_LEVELS:
            issues.append(
                f"logging.level must be one of {', '.join(VALID_LOG_LEVELS)}, "
                f"got {self.config.logging.level}"
            )

        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a plain dictionary"""
        return asdict(self.config)

    def print_config(self):
        """Print current configuration"""
        print("nft-apply Configuration:")
        print(f"  Loaded from: {self.loaded_from or 'defaults'}")
        print("  Apply:")
        print(f"    Source: {self.config.apply.source}")
        print(f"    Destination: {self.config.apply.destination}")
        print(f"    Timeout: {self.config.apply.timeout}s")
        print(f"    Snapshot dir: {self.config.apply.snapshot_dir or 'system temp'}")
        print("  nftables:")
        print(f"    nft path: {self.config.nftables.nft_path}")
        print("  Intrusion prevention:")
        ips = self.config.intrusion_prevention
        if ips.suspend and ips.service:
            print(f"    Suspended during confirmation: {ips.service}")
            print(f"    systemctl path: {ips.systemctl_path}")
        else:
            print("    Suspension disabled")
        print("  Logging:")
        print(f"    Level: {self.config.logging.level}")
        print(f"    Log file: {self.config.logging.log_file or 'Not set'}")


# Global configuration instance with thread-safe singleton pattern
_config_manager = None
_config_manager_lock = threading.RLock()


def get_config_manager(config_path: Optional[Path] = None) -> ConfigManager:
    """
    Get global configuration manager instance.

    The first call decides which config file is used; later calls return the
    same instance.
    """
    global _config_manager

    if _config_manager is not None:
        return _config_manager

    with _config_manager_lock:
        if _config_manager is None:
            _config_manager = ConfigManager(config_path)

        return _config_manager


def reset_config_manager():
    """Drop the global configuration manager so the next call reloads it"""
    global _config_manager
    with _config_manager_lock:
        _config_manager = None
